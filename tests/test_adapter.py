"""Unit tests for the bleak-backed adapter.

bleak's scanner and client are replaced with small in-memory doubles, so
these tests exercise the mapping between bleak objects and the adapter
boundary without a Bluetooth radio.

Covers:
- scanning: name fallback, unnamed filtering, listener release
- links: connect target and timeout, close of already closed clients
- enumeration: stable handle order for services and characteristics
- notifications: delivery as bytes, stop-notify capability result
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Optional

import pytest

from acinfinity_bridge import adapter as adapter_module
from acinfinity_bridge.adapter import (
    BleakAdapter,
    CharacteristicInfo,
    DeviceHandle,
    ServiceInfo,
)


class StubScanner:
    """Stands in for ``BleakScanner``; keeps the detection callback."""

    instances: list["StubScanner"] = []

    def __init__(self, detection_callback: Any = None, **kwargs: Any) -> None:
        self.detection_callback = detection_callback
        self.started = False
        self.stopped = False
        self.start_error: Optional[Exception] = None
        StubScanner.instances.append(self)

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    def advertise(self, address: str, *, name: Optional[str], local_name: Optional[str], rssi: int) -> None:
        device = SimpleNamespace(address=address, name=name)
        data = SimpleNamespace(local_name=local_name, rssi=rssi)
        self.detection_callback(device, data)


class StubClient:
    """Stands in for a connected ``BleakClient``."""

    def __init__(self, services: Optional[list[Any]] = None) -> None:
        self.is_connected = True
        self.services = services or []
        self.disconnects = 0
        self.notify_handlers: dict[str, Any] = {}
        self.stop_notify_error: Optional[BaseException] = None

    async def disconnect(self) -> None:
        self.disconnects += 1
        self.is_connected = False

    async def start_notify(self, characteristic: Any, callback: Any) -> None:
        self.notify_handlers[characteristic.uuid] = callback

    async def stop_notify(self, characteristic: Any) -> None:
        if self.stop_notify_error is not None:
            raise self.stop_notify_error
        self.notify_handlers.pop(characteristic.uuid, None)


def gatt_characteristic(uuid: str, handle: int, *properties: str) -> SimpleNamespace:
    return SimpleNamespace(uuid=uuid, handle=handle, properties=list(properties))


def gatt_service(uuid: str, handle: int, characteristics: list[Any]) -> SimpleNamespace:
    return SimpleNamespace(uuid=uuid, handle=handle, characteristics=characteristics)


@pytest.fixture
def scanner_class(monkeypatch):
    StubScanner.instances = []
    monkeypatch.setattr(adapter_module, "BleakScanner", StubScanner)
    return StubScanner


@pytest.fixture
def notify_link():
    """A client holding one notify characteristic, plus its boundary view."""
    char = gatt_characteristic("70d51002-2c7f-4e75-ae8a-d758951ce4e0", 12, "notify")
    client = StubClient([gatt_service("70d51000-2c7f-4e75-ae8a-d758951ce4e0", 10, [char])])
    info = CharacteristicInfo(char.uuid, ("notify",), platform_characteristic=char)
    return client, info


# =============================================================================
# Scanning
# =============================================================================


class TestScanning:
    @pytest.mark.asyncio
    async def test_local_name_preferred_over_device_name(self, scanner_class) -> None:
        seen = []
        handle = await BleakAdapter().start_scan(seen.append)
        scanner = scanner_class.instances[0]

        scanner.advertise("AC:1E:00:00:00:01", name="cached", local_name="ACI-E", rssi=-55)
        scanner.advertise("AC:1E:00:00:00:02", name="ACI-E", local_name=None, rssi=-70)

        assert scanner.started
        assert [adv.name for adv in seen] == ["ACI-E", "ACI-E"]
        assert [adv.device_id for adv in seen] == ["AC:1E:00:00:00:01", "AC:1E:00:00:00:02"]
        assert seen[0].rssi == -55
        assert seen[0].platform_device.address == "AC:1E:00:00:00:01"
        assert handle.platform_scanner is scanner

    @pytest.mark.asyncio
    async def test_accept_all_delivers_unnamed(self, scanner_class) -> None:
        seen = []
        await BleakAdapter().start_scan(seen.append, accept_all=True)

        scanner_class.instances[0].advertise("00:11:22:33:44:55", name=None, local_name=None, rssi=-80)

        assert len(seen) == 1
        assert seen[0].name is None

    @pytest.mark.asyncio
    async def test_unnamed_filtered_when_not_accepting_all(self, scanner_class) -> None:
        seen = []
        await BleakAdapter().start_scan(seen.append, accept_all=False)
        scanner = scanner_class.instances[0]

        scanner.advertise("00:11:22:33:44:55", name=None, local_name=None, rssi=-80)
        scanner.advertise("AC:1E:00:00:00:01", name=None, local_name="ACI-E", rssi=-60)

        assert [adv.name for adv in seen] == ["ACI-E"]

    @pytest.mark.asyncio
    async def test_stop_scan_releases_listener(self, scanner_class) -> None:
        seen = []
        adapter = BleakAdapter()
        handle = await adapter.start_scan(seen.append)
        scanner = scanner_class.instances[0]

        await adapter.stop_scan(handle)
        scanner.advertise("AC:1E:00:00:00:01", name="ACI-E", local_name="ACI-E", rssi=-60)

        assert scanner.stopped
        assert not handle.active
        assert handle.platform_scanner is None
        assert seen == []

    @pytest.mark.asyncio
    async def test_failed_start_detaches_listener(self, scanner_class, monkeypatch) -> None:
        original_start = StubScanner.start

        async def failing_start(self) -> None:
            self.start_error = OSError("bluetooth is turned off")
            await original_start(self)

        monkeypatch.setattr(StubScanner, "start", failing_start)
        seen = []

        with pytest.raises(OSError, match="turned off"):
            await BleakAdapter().start_scan(seen.append)
        scanner_class.instances[0].advertise(
            "AC:1E:00:00:00:01", name="ACI-E", local_name="ACI-E", rssi=-60
        )

        assert seen == []


# =============================================================================
# Links and enumeration
# =============================================================================


class TestLinks:
    @pytest.mark.asyncio
    async def test_open_link_prefers_platform_device(self, monkeypatch) -> None:
        created = []

        class RecordingClient(StubClient):
            def __init__(self, target: Any, timeout: float) -> None:
                super().__init__()
                self.connected_calls = 0
                created.append((target, timeout))

            async def connect(self) -> None:
                self.connected_calls += 1

        monkeypatch.setattr(adapter_module, "BleakClient", RecordingClient)
        platform_device = SimpleNamespace(address="AC:1E:00:00:00:01")
        adapter = BleakAdapter(connect_timeout=7.5)

        link = await adapter.open_link(
            DeviceHandle("ACI-E", "AC:1E:00:00:00:01", platform_device=platform_device)
        )
        await adapter.open_link(DeviceHandle("ACI-E", "AC:1E:00:00:00:02"))

        assert created == [(platform_device, 7.5), ("AC:1E:00:00:00:02", 7.5)]
        assert link.connected_calls == 1

    @pytest.mark.asyncio
    async def test_close_link_disconnects_once(self) -> None:
        client = StubClient()
        adapter = BleakAdapter()

        await adapter.close_link(client)
        await adapter.close_link(client)

        assert client.disconnects == 1
        assert not adapter.is_link_connected(client)

    @pytest.mark.asyncio
    async def test_services_and_characteristics_in_handle_order(self) -> None:
        client = StubClient(
            [
                gatt_service(
                    "0000ffe0-0000-1000-8000-00805f9b34fb",
                    40,
                    [gatt_characteristic("0000ffe1-0000-1000-8000-00805f9b34fb", 41, "notify")],
                ),
                gatt_service(
                    "70d51000-2c7f-4e75-ae8a-d758951ce4e0",
                    10,
                    [
                        gatt_characteristic("70d51003-2c7f-4e75-ae8a-d758951ce4e0", 16, "read", "notify"),
                        gatt_characteristic("70d51001-2c7f-4e75-ae8a-d758951ce4e0", 11, "write"),
                        gatt_characteristic("70d51002-2c7f-4e75-ae8a-d758951ce4e0", 13, "notify"),
                    ],
                ),
            ]
        )
        adapter = BleakAdapter()

        services = await adapter.list_services(client)
        characteristics = await adapter.list_characteristics(client, services[0])

        assert [s.uuid for s in services] == [
            "70d51000-2c7f-4e75-ae8a-d758951ce4e0",
            "0000ffe0-0000-1000-8000-00805f9b34fb",
        ]
        assert [c.uuid for c in characteristics] == [
            "70d51001-2c7f-4e75-ae8a-d758951ce4e0",
            "70d51002-2c7f-4e75-ae8a-d758951ce4e0",
            "70d51003-2c7f-4e75-ae8a-d758951ce4e0",
        ]
        assert characteristics[1].supports_notify
        assert characteristics[2].properties == ("read", "notify")
        assert isinstance(services[0], ServiceInfo)


# =============================================================================
# Notifications
# =============================================================================


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notifications_delivered_as_bytes(self, notify_link) -> None:
        client, info = notify_link
        received = []

        subscription = await BleakAdapter().subscribe(client, info, received.append)
        client.notify_handlers[info.uuid](info.platform_characteristic, bytearray(b"\x01\x02"))

        assert received == [b"\x01\x02"]
        assert type(received[0]) is bytes
        assert subscription.characteristic == info

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_notifications(self, notify_link) -> None:
        client, info = notify_link
        received = []
        adapter = BleakAdapter()
        subscription = await adapter.subscribe(client, info, received.append)
        handler = client.notify_handlers[info.uuid]

        assert await adapter.unsubscribe(client, subscription) is True

        handler(info.platform_characteristic, bytearray(b"\x03"))
        assert received == []
        assert info.uuid not in client.notify_handlers

    @pytest.mark.asyncio
    async def test_unsupported_stop_notify_returns_false(self, notify_link) -> None:
        client, info = notify_link
        client.stop_notify_error = NotImplementedError()
        adapter = BleakAdapter()
        subscription = await adapter.subscribe(client, info, lambda data: None)

        assert await adapter.unsubscribe(client, subscription) is False
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_other_stop_notify_errors_propagate(self, notify_link) -> None:
        client, info = notify_link
        client.stop_notify_error = RuntimeError("GATT operation failed")
        adapter = BleakAdapter()
        subscription = await adapter.subscribe(client, info, lambda data: None)

        with pytest.raises(RuntimeError, match="GATT operation failed"):
            await adapter.unsubscribe(client, subscription)
        assert not subscription.active

    @pytest.mark.asyncio
    async def test_failed_start_notify_detaches(self, notify_link) -> None:
        client, info = notify_link

        async def refuse(characteristic: Any, callback: Any) -> None:
            raise OSError("not connected")

        client.start_notify = refuse

        with pytest.raises(OSError):
            await BleakAdapter().subscribe(client, info, lambda data: None)
