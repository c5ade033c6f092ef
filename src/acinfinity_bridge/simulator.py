"""In-memory AC Infinity peripheral for running the bridge without hardware.

``SimulatedAdapter`` implements the ``BleAdapter`` boundary. It advertises
the target device among a few decoys, exposes a GATT table with one notify
characteristic, and pushes payloads in the controller's frame layout with
slowly drifting temperature and humidity:

- Temperature: sinusoid around 24 degC with a 10 minute period plus noise
- Humidity: sinusoid around 55 % with a 15 minute period plus noise

Optional knobs simulate an absent device, a link that drops after a while,
and a platform without an explicit stop-notifications operation.
"""

from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from typing import Optional, Sequence

from .adapter import (
    Advertisement,
    AdvertisementCallback,
    BleAdapter,
    CharacteristicInfo,
    DeviceHandle,
    NotificationCallback,
    ScanHandle,
    ServiceInfo,
    Subscription,
)
from .connection_manager import DEFAULT_DEVICE_NAME
from .sensor_parser import encode_climate_block

logger = logging.getLogger(__name__)

GENERIC_ACCESS_SERVICE = "00001800-0000-1000-8000-00805f9b34fb"
DEVICE_NAME_CHAR = "00002a00-0000-1000-8000-00805f9b34fb"
CONTROLLER_SERVICE = "70d51000-2c7f-4e75-ae8a-d758951ce4e0"
CONTROLLER_WRITE_CHAR = "70d51001-2c7f-4e75-ae8a-d758951ce4e0"
CONTROLLER_NOTIFY_CHAR = "70d51002-2c7f-4e75-ae8a-d758951ce4e0"

SIMULATED_ADDRESS = "AC:1E:00:00:00:01"
DECOY_NAMES = ("LYWSD03MMC", "Govee_H5075", None)

# Opaque leading bytes of a controller frame; the climate block follows.
FRAME_PREFIX = bytes([0x1E, 0xFF, 0x02, 0x09, 0x00, 0x0E, 0x00, 0x01])
FRAME_SUFFIX = bytes([0x00, 0x00, 0x03, 0x00, 0x00, 0x00])


def build_frame(temperature: float, humidity: float) -> bytes:
    """A full notification frame carrying the given climate reading."""
    return FRAME_PREFIX + encode_climate_block(temperature, humidity) + FRAME_SUFFIX


class _SimulatedLink:
    def __init__(self, device: DeviceHandle, drop_after: Optional[float]) -> None:
        self.device = device
        self.connected = True
        self.opened_at = time.monotonic()
        self.drop_after = drop_after
        self.notify_task: Optional[asyncio.Task[None]] = None

    def alive(self) -> bool:
        if not self.connected:
            return False
        if self.drop_after is not None:
            return time.monotonic() - self.opened_at < self.drop_after
        return True


class SimulatedAdapter(BleAdapter):
    """Synthetic peripheral behind the adapter boundary.

    Args:
        device_name: Name the simulated controller advertises.
        rssi: Mean advertised signal strength in dBm.
        present: When False only decoys advertise and links cannot open.
        advertise_interval: Seconds between advertisement bursts.
        notify_interval: Seconds between notifications.
        drop_after: Seconds after which an open link reports disconnected.
        supports_stop_notify: When False, ``unsubscribe`` reports the
            capability gap instead of stopping notifications.
        decoys: Other advertisement names seen during a scan.
    """

    def __init__(
        self,
        device_name: str = DEFAULT_DEVICE_NAME,
        *,
        rssi: int = -62,
        present: bool = True,
        advertise_interval: float = 0.5,
        notify_interval: float = 1.0,
        drop_after: Optional[float] = None,
        supports_stop_notify: bool = True,
        decoys: Sequence[Optional[str]] = DECOY_NAMES,
    ) -> None:
        self.device_name = device_name
        self.rssi = rssi
        self.present = present
        self.advertise_interval = advertise_interval
        self.notify_interval = notify_interval
        self.drop_after = drop_after
        self.supports_stop_notify = supports_stop_notify
        self.decoys = tuple(decoys)
        self._start_time = time.time()

        self.open_links = 0
        self.active_scans = 0

    def current_reading(self) -> tuple[float, float]:
        """Synthetic (temperature, humidity) for the current instant."""
        elapsed = time.time() - self._start_time
        temperature = (
            24.0
            + 2.0 * math.sin(2 * math.pi * elapsed / 600.0)
            + random.gauss(0, 0.05)
        )
        humidity = (
            55.0
            + 5.0 * math.cos(2 * math.pi * elapsed / 900.0)
            + random.gauss(0, 0.2)
        )
        return max(temperature, 0.0), min(max(humidity, 0.0), 100.0)

    def _advertisements(self) -> list[Advertisement]:
        ads = [
            Advertisement(
                name=name,
                device_id=f"00:11:22:33:44:{index:02X}",
                rssi=-80 + random.randint(-5, 5),
            )
            for index, name in enumerate(self.decoys)
        ]
        if self.present:
            ads.append(
                Advertisement(
                    name=self.device_name,
                    device_id=SIMULATED_ADDRESS,
                    rssi=self.rssi + random.randint(-3, 3),
                )
            )
        return ads

    async def start_scan(
        self, on_advertisement: AdvertisementCallback, accept_all: bool = True
    ) -> ScanHandle:
        handle = ScanHandle(on_advertisement)

        async def advertise() -> None:
            while handle.active:
                for adv in self._advertisements():
                    if accept_all or adv.name:
                        handle.deliver(adv)
                await asyncio.sleep(self.advertise_interval)

        handle.platform_scanner = asyncio.create_task(advertise())
        self.active_scans += 1
        return handle

    async def stop_scan(self, handle: ScanHandle) -> None:
        handle.detach()
        task: Optional[asyncio.Task[None]] = handle.platform_scanner
        handle.platform_scanner = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            self.active_scans -= 1

    async def open_link(self, device: DeviceHandle) -> _SimulatedLink:
        await asyncio.sleep(0.05)
        if not self.present or device.device_id != SIMULATED_ADDRESS:
            raise ConnectionError(f"Device {device.device_id} was not found")
        self.open_links += 1
        return _SimulatedLink(device, self.drop_after)

    async def close_link(self, link: _SimulatedLink) -> None:
        if not link.connected:
            return
        link.connected = False
        await self._cancel_notify(link)
        self.open_links -= 1

    async def list_services(self, link: _SimulatedLink) -> list[ServiceInfo]:
        return [ServiceInfo(GENERIC_ACCESS_SERVICE), ServiceInfo(CONTROLLER_SERVICE)]

    async def list_characteristics(
        self, link: _SimulatedLink, service: ServiceInfo
    ) -> list[CharacteristicInfo]:
        if service.uuid == GENERIC_ACCESS_SERVICE:
            return [CharacteristicInfo(DEVICE_NAME_CHAR, ("read",))]
        if service.uuid == CONTROLLER_SERVICE:
            return [
                CharacteristicInfo(
                    CONTROLLER_WRITE_CHAR, ("write", "write-without-response")
                ),
                CharacteristicInfo(CONTROLLER_NOTIFY_CHAR, ("notify",)),
            ]
        return []

    async def subscribe(
        self,
        link: _SimulatedLink,
        characteristic: CharacteristicInfo,
        on_value: NotificationCallback,
    ) -> Subscription:
        subscription = Subscription(characteristic, on_value)

        async def notify() -> None:
            while link.alive():
                subscription.deliver(build_frame(*self.current_reading()))
                await asyncio.sleep(self.notify_interval)

        link.notify_task = asyncio.create_task(notify())
        return subscription

    async def unsubscribe(self, link: _SimulatedLink, subscription: Subscription) -> bool:
        subscription.detach()
        if not self.supports_stop_notify:
            return False
        await self._cancel_notify(link)
        return True

    def is_link_connected(self, link: _SimulatedLink) -> bool:
        return link.alive()

    async def _cancel_notify(self, link: _SimulatedLink) -> None:
        task = link.notify_task
        link.notify_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
