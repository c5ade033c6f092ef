"""Pytest fixtures for acinfinity-bridge tests.

Provides a scriptable in-memory ``BleAdapter`` and a state recorder so the
connection manager can be driven through every lifecycle path with short
timing constants and no Bluetooth hardware.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional, Sequence

import pytest

from acinfinity_bridge.adapter import (
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
from acinfinity_bridge.connection_manager import ConnectionManager, ConnectionState
from acinfinity_bridge.sensor_handler import SensorDataHandler
from acinfinity_bridge.telemetry import TelemetryCache

TARGET_NAME = "ACI-E"
TARGET_ID = "AC:1E:00:00:00:01"

BATTERY_SERVICE = ServiceInfo("0000180f-0000-1000-8000-00805f9b34fb")
CONTROLLER_SERVICE = ServiceInfo("70d51000-2c7f-4e75-ae8a-d758951ce4e0")
SECOND_NOTIFY_SERVICE = ServiceInfo("0000ffe0-0000-1000-8000-00805f9b34fb")

DEFAULT_GATT: list[tuple[ServiceInfo, list[CharacteristicInfo]]] = [
    (BATTERY_SERVICE, [CharacteristicInfo("00002a19-0000-1000-8000-00805f9b34fb", ("read",))]),
    (
        CONTROLLER_SERVICE,
        [
            CharacteristicInfo("70d51001-2c7f-4e75-ae8a-d758951ce4e0", ("write",)),
            CharacteristicInfo("70d51002-2c7f-4e75-ae8a-d758951ce4e0", ("notify",)),
            CharacteristicInfo("70d51003-2c7f-4e75-ae8a-d758951ce4e0", ("read", "notify")),
        ],
    ),
    (
        SECOND_NOTIFY_SERVICE,
        [CharacteristicInfo("0000ffe1-0000-1000-8000-00805f9b34fb", ("notify",))],
    ),
]


def target_advertisement(rssi: int = -58, device_id: str = TARGET_ID) -> Advertisement:
    return Advertisement(name=TARGET_NAME, device_id=device_id, rssi=rssi)


def decoy_advertisement() -> Advertisement:
    return Advertisement(name="Govee_H5075", device_id="00:11:22:33:44:55", rssi=-70)


class FakeLink:
    def __init__(self, device: DeviceHandle) -> None:
        self.device = device
        self.connected = True


class FakeAdapter(BleAdapter):
    """Adapter double whose behaviour is set per test.

    Advertisements in ``advertisements`` are delivered right after each
    scan starts. Every call is appended to ``calls``.
    """

    def __init__(
        self,
        advertisements: Sequence[Advertisement] = (),
        gatt: Optional[list[tuple[ServiceInfo, list[CharacteristicInfo]]]] = None,
        *,
        connect_error: Optional[Exception] = None,
        stop_notify_supported: bool = True,
        unsubscribe_error: Optional[Exception] = None,
        close_error: Optional[Exception] = None,
        connect_delay: float = 0.0,
    ) -> None:
        self.advertisements = list(advertisements)
        self.gatt = DEFAULT_GATT if gatt is None else gatt
        self.connect_error = connect_error
        self.stop_notify_supported = stop_notify_supported
        self.unsubscribe_error = unsubscribe_error
        self.close_error = close_error
        self.connect_delay = connect_delay

        self.calls: list[str] = []
        self.active_scans = 0
        self.scan_handles: list[ScanHandle] = []
        self.links: list[FakeLink] = []
        self.subscriptions: list[Subscription] = []

    def count(self, call: str) -> int:
        return self.calls.count(call)

    async def start_scan(
        self, on_advertisement: AdvertisementCallback, accept_all: bool = True
    ) -> ScanHandle:
        self.calls.append("start_scan")
        handle = ScanHandle(on_advertisement)
        self.scan_handles.append(handle)
        self.active_scans += 1
        loop = asyncio.get_running_loop()
        for adv in self.advertisements:
            loop.call_soon(handle.deliver, adv)
        return handle

    async def stop_scan(self, handle: ScanHandle) -> None:
        self.calls.append("stop_scan")
        handle.detach()
        self.active_scans -= 1

    async def open_link(self, device: DeviceHandle) -> FakeLink:
        self.calls.append("open_link")
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error
        link = FakeLink(device)
        self.links.append(link)
        return link

    async def close_link(self, link: FakeLink) -> None:
        self.calls.append("close_link")
        link.connected = False
        if self.close_error is not None:
            raise self.close_error

    async def list_services(self, link: FakeLink) -> list[ServiceInfo]:
        self.calls.append("list_services")
        return [service for service, _ in self.gatt]

    async def list_characteristics(
        self, link: FakeLink, service: ServiceInfo
    ) -> list[CharacteristicInfo]:
        self.calls.append("list_characteristics")
        for candidate, characteristics in self.gatt:
            if candidate.uuid == service.uuid:
                return list(characteristics)
        return []

    async def subscribe(
        self,
        link: FakeLink,
        characteristic: CharacteristicInfo,
        on_value: NotificationCallback,
    ) -> Subscription:
        self.calls.append("subscribe")
        subscription = Subscription(characteristic, on_value)
        self.subscriptions.append(subscription)
        return subscription

    async def unsubscribe(self, link: FakeLink, subscription: Subscription) -> bool:
        self.calls.append("unsubscribe")
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error
        return self.stop_notify_supported

    def is_link_connected(self, link: FakeLink) -> bool:
        return link.connected


class StateRecorder:
    """Collects manager state transitions with their monotonic timestamps."""

    def __init__(self) -> None:
        self.transitions: list[tuple[ConnectionState, float]] = []

    def __call__(self, old: ConnectionState, new: ConnectionState) -> None:
        self.transitions.append((new, time.monotonic()))

    @property
    def states(self) -> list[ConnectionState]:
        return [state for state, _ in self.transitions]

    def time_of(self, state: ConnectionState, after: float = 0.0) -> Optional[float]:
        for recorded, at in self.transitions:
            if recorded is state and at >= after:
                return at
        return None

    async def wait_for(
        self,
        predicate: Callable[[], bool],
        timeout: float = 2.0,
    ) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError(f"condition not reached; states={self.states}")
            await asyncio.sleep(0.005)

    async def wait_for_state(self, state: ConnectionState, timeout: float = 2.0) -> None:
        await self.wait_for(lambda: state in self.states, timeout)


@pytest.fixture
def cache() -> TelemetryCache:
    return TelemetryCache()


@pytest.fixture
def handler(cache: TelemetryCache) -> SensorDataHandler:
    return SensorDataHandler(cache)


@pytest.fixture
def recorder() -> StateRecorder:
    return StateRecorder()


@pytest.fixture
def make_manager(
    handler: SensorDataHandler, cache: TelemetryCache, recorder: StateRecorder
) -> Callable[..., ConnectionManager]:
    """Factory building a manager with fast timings around a given adapter."""

    def factory(adapter: BleAdapter, **overrides: Any) -> ConnectionManager:
        options: dict[str, Any] = {
            "device_name": TARGET_NAME,
            "scan_timeout": 0.1,
            "reconnect_delay": 0.05,
            "poll_interval": 0.05,
            "teardown_timeout": 0.5,
            "state_listener": recorder,
        }
        options.update(overrides)
        return ConnectionManager(adapter, handler, cache, **options)

    return factory
