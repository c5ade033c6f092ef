"""BLE adapter boundary used by the connection manager.

The manager never talks to a BLE stack directly. It drives an
``BleAdapter`` implementation through a small set of operations: scan for
advertisements, open and close a link, enumerate services and
characteristics, subscribe to notifications and poll link liveness.

Listener registration is explicit. ``start_scan`` returns a ``ScanHandle``
and ``subscribe`` returns a ``Subscription``; the owner must hand each one
back (``stop_scan`` / ``unsubscribe``) on every exit path so callbacks do
not pile up across reconnect cycles.

``BleakAdapter`` implements the boundary on top of bleak.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Advertisement:
    """An advertisement as seen by the scanner."""

    name: Optional[str]
    device_id: str
    rssi: int
    platform_device: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class DeviceHandle:
    """The peripheral bound for the current connection cycle."""

    name: str
    device_id: str
    platform_device: Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_advertisement(cls, adv: Advertisement) -> "DeviceHandle":
        return cls(
            name=adv.name or "",
            device_id=adv.device_id,
            platform_device=adv.platform_device,
        )


@dataclass(frozen=True)
class ServiceInfo:
    uuid: str
    platform_service: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class CharacteristicInfo:
    uuid: str
    properties: tuple[str, ...]
    platform_characteristic: Any = field(default=None, compare=False, repr=False)

    @property
    def supports_notify(self) -> bool:
        return "notify" in self.properties


AdvertisementCallback = Callable[[Advertisement], None]
NotificationCallback = Callable[[bytes], None]


class ScanHandle:
    """Registration of one advertisement listener for one scan."""

    def __init__(self, on_advertisement: AdvertisementCallback) -> None:
        self._on_advertisement: Optional[AdvertisementCallback] = on_advertisement
        self.platform_scanner: Any = None

    @property
    def active(self) -> bool:
        return self._on_advertisement is not None

    def deliver(self, adv: Advertisement) -> None:
        callback = self._on_advertisement
        if callback is not None:
            callback(adv)

    def detach(self) -> None:
        self._on_advertisement = None


class Subscription:
    """Registration of one notification callback on one characteristic.

    ``detach`` drops the bridge-side callback immediately; notifications the
    platform still delivers afterwards are discarded.
    """

    def __init__(
        self, characteristic: CharacteristicInfo, on_value: NotificationCallback
    ) -> None:
        self.characteristic = characteristic
        self._on_value: Optional[NotificationCallback] = on_value

    @property
    def active(self) -> bool:
        return self._on_value is not None

    def deliver(self, data: bytes) -> None:
        callback = self._on_value
        if callback is not None:
            callback(data)

    def detach(self) -> None:
        self._on_value = None


class BleAdapter(ABC):
    """Abstract BLE capability consumed by the connection manager."""

    @abstractmethod
    async def start_scan(
        self, on_advertisement: AdvertisementCallback, accept_all: bool = True
    ) -> ScanHandle:
        """Start scanning and deliver advertisements to the callback.

        With accept_all False, advertisements without a local name are
        filtered out. The callback may be invoked from any thread.
        """

    @abstractmethod
    async def stop_scan(self, handle: ScanHandle) -> None:
        """Stop the scan started for handle and release its listener."""

    @abstractmethod
    async def open_link(self, device: DeviceHandle) -> Any:
        """Connect to device and return an opaque link object."""

    @abstractmethod
    async def close_link(self, link: Any) -> None:
        """Disconnect link. Closing an already closed link is not an error."""

    @abstractmethod
    async def list_services(self, link: Any) -> list[ServiceInfo]:
        """Primary services in a stable order."""

    @abstractmethod
    async def list_characteristics(
        self, link: Any, service: ServiceInfo
    ) -> list[CharacteristicInfo]:
        """Characteristics of service in a stable order."""

    @abstractmethod
    async def subscribe(
        self,
        link: Any,
        characteristic: CharacteristicInfo,
        on_value: NotificationCallback,
    ) -> Subscription:
        """Register on_value and start notifications on characteristic."""

    @abstractmethod
    async def unsubscribe(self, link: Any, subscription: Subscription) -> bool:
        """Stop notifications for subscription.

        Returns:
            True if notifications were stopped, False if the platform has
            no explicit stop operation. Other failures raise.
        """

    @abstractmethod
    def is_link_connected(self, link: Any) -> bool:
        """Current link liveness."""


class BleakAdapter(BleAdapter):
    """``BleAdapter`` backed by bleak's scanner and client.

    Args:
        connect_timeout: Seconds bleak may spend establishing a link.
    """

    def __init__(self, connect_timeout: float = 10.0) -> None:
        self._connect_timeout = connect_timeout

    async def start_scan(
        self, on_advertisement: AdvertisementCallback, accept_all: bool = True
    ) -> ScanHandle:
        handle = ScanHandle(on_advertisement)

        def detection_callback(dev: BLEDevice, adv: AdvertisementData) -> None:
            name = adv.local_name or dev.name
            if not accept_all and not name:
                return
            handle.deliver(
                Advertisement(
                    name=name,
                    device_id=dev.address,
                    rssi=adv.rssi,
                    platform_device=dev,
                )
            )

        scanner = BleakScanner(detection_callback=detection_callback)
        handle.platform_scanner = scanner
        try:
            await scanner.start()
        except Exception:
            handle.detach()
            raise
        logger.debug("BLE scan started")
        return handle

    async def stop_scan(self, handle: ScanHandle) -> None:
        handle.detach()
        scanner: Optional[BleakScanner] = handle.platform_scanner
        handle.platform_scanner = None
        if scanner is not None:
            await scanner.stop()
            logger.debug("BLE scan stopped")

    async def open_link(self, device: DeviceHandle) -> BleakClient:
        target = device.platform_device or device.device_id
        client = BleakClient(target, timeout=self._connect_timeout)
        await client.connect()
        return client

    async def close_link(self, link: BleakClient) -> None:
        if link.is_connected:
            await link.disconnect()

    async def list_services(self, link: BleakClient) -> list[ServiceInfo]:
        return [
            ServiceInfo(uuid=service.uuid, platform_service=service)
            for service in sorted(link.services, key=lambda s: s.handle)
        ]

    async def list_characteristics(
        self, link: BleakClient, service: ServiceInfo
    ) -> list[CharacteristicInfo]:
        characteristics = sorted(
            service.platform_service.characteristics, key=lambda c: c.handle
        )
        return [
            CharacteristicInfo(
                uuid=char.uuid,
                properties=tuple(char.properties),
                platform_characteristic=char,
            )
            for char in characteristics
        ]

    async def subscribe(
        self,
        link: BleakClient,
        characteristic: CharacteristicInfo,
        on_value: NotificationCallback,
    ) -> Subscription:
        subscription = Subscription(characteristic, on_value)

        def handle(_: BleakGATTCharacteristic, data: bytearray) -> None:
            subscription.deliver(bytes(data))

        try:
            await link.start_notify(characteristic.platform_characteristic, handle)
        except Exception:
            subscription.detach()
            raise
        return subscription

    async def unsubscribe(self, link: BleakClient, subscription: Subscription) -> bool:
        subscription.detach()
        try:
            await link.stop_notify(subscription.characteristic.platform_characteristic)
        except NotImplementedError:
            return False
        return True

    def is_link_connected(self, link: BleakClient) -> bool:
        return bool(link.is_connected)
