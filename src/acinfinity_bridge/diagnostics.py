"""
BLE connection diagnostics and troubleshooting.

Checks the host Bluetooth adapter, lists nearby advertisements with their
signal strength, then connects to the target controller and prints its
GATT table with the characteristic the bridge would subscribe to.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import subprocess
from typing import Optional

from .adapter import Advertisement, BleAdapter, DeviceHandle

logger = logging.getLogger(__name__)


def check_bluetooth_status() -> bool:
    """Best-effort check that the host Bluetooth radio is on."""
    logger.info("🔵 Checking Bluetooth status...")

    system = platform.system().lower()

    if system == "darwin":
        command = ["system_profiler", "SPBluetoothDataType"]
        marker = "State: On"
    elif system == "linux":
        command = ["bluetoothctl", "show"]
        marker = "Powered: yes"
    else:
        logger.warning("⚠️ Bluetooth status check not implemented for %s", system)
        return True

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=10)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("⚠️ Could not check Bluetooth status on %s: %s", system, e)
        return True

    if marker in result.stdout:
        logger.info("✅ Bluetooth is enabled")
        return True
    logger.error("❌ Bluetooth appears to be disabled")
    return False


async def scan_for_devices(adapter: BleAdapter, duration: float) -> dict[str, Advertisement]:
    """Collect advertisements for duration seconds, strongest sample per device."""
    logger.info("📡 Scanning for BLE devices for %.1fs...", duration)
    seen: dict[str, Advertisement] = {}

    def on_advertisement(adv: Advertisement) -> None:
        previous = seen.get(adv.device_id)
        if previous is None or adv.rssi > previous.rssi or (adv.name and not previous.name):
            seen[adv.device_id] = adv

    handle = await adapter.start_scan(on_advertisement, accept_all=True)
    try:
        await asyncio.sleep(duration)
    finally:
        await adapter.stop_scan(handle)
    return seen


async def describe_gatt(adapter: BleAdapter, device: DeviceHandle) -> list[str]:
    """Connect to device and render its services and characteristics.

    The first notify-capable characteristic, the one the bridge subscribes
    to, is marked with an arrow.
    """
    lines: list[str] = []
    link = await adapter.open_link(device)
    try:
        selected = False
        for service in await adapter.list_services(link):
            lines.append(f"Service {service.uuid}")
            for char in await adapter.list_characteristics(link, service):
                marker = "  "
                if char.supports_notify and not selected:
                    marker = "->"
                    selected = True
                lines.append(f"  {marker} {char.uuid} [{', '.join(char.properties)}]")
        if not selected:
            lines.append("No notify characteristic found")
    finally:
        await adapter.close_link(link)
    return lines


async def run_diagnostics(
    adapter: BleAdapter,
    device_name: str,
    scan_duration: float = 10.0,
    *,
    check_host: bool = True,
) -> bool:
    """Full diagnostic pass. Returns True if the target was reachable."""
    logger.info("🔧 AC Infinity BLE Diagnostics")
    logger.info("=" * 40)

    if check_host and not check_bluetooth_status():
        logger.error("❌ Bluetooth issues detected. Please enable Bluetooth and try again.")
        return False

    seen = await scan_for_devices(adapter, scan_duration)
    if not seen:
        logger.error("❌ No BLE devices found")
        return False

    logger.info("✅ Found %d BLE device(s):", len(seen))
    target: Optional[Advertisement] = None
    for adv in sorted(seen.values(), key=lambda a: a.rssi, reverse=True):
        logger.info("   📱 %s (%s) RSSI: %ddBm", adv.name or "Unknown", adv.device_id, adv.rssi)
        if adv.name == device_name and target is None:
            target = adv

    if target is None:
        logger.warning("⚠️ No device advertising as '%s' found", device_name)
        return False

    logger.info("\n🔌 Connecting to %s (%s)...", target.name, target.device_id)
    try:
        lines = await describe_gatt(adapter, DeviceHandle.from_advertisement(target))
    except Exception as e:
        logger.error("❌ Connection test failed: %s", e)
        return False

    for line in lines:
        logger.info("   %s", line)
    logger.info("\n🏁 Diagnostics complete")
    return True
