"""Bridge composition and process lifecycle."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Optional

from .adapter import BleAdapter, BleakAdapter
from .connection_manager import (
    DEFAULT_DEVICE_NAME,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RECONNECT_DELAY,
    DEFAULT_SCAN_TIMEOUT,
    ConnectionManager,
    ConnectionState,
)
from .sensor_handler import SensorDataHandler
from .simulator import SimulatedAdapter
from .telemetry import TelemetryCache, create_registry, start_metrics_server

logger = logging.getLogger(__name__)

DEFAULT_METRICS_PORT = 9464
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SIGINT = 130


@dataclass(frozen=True)
class BridgeConfig:
    """Runtime settings.

    Attributes:
        device_name: Exact advertisement name of the controller.
        scan_timeout: Seconds per scan before giving up on the cycle.
        reconnect_delay: Seconds between connection cycles.
        poll_interval: Seconds between link liveness checks.
        metrics_port: Prometheus endpoint port; 0 disables the endpoint.
        metrics_addr: Interface the endpoint binds to.
        mock: Use the simulated peripheral instead of the BLE stack.
    """

    device_name: str = DEFAULT_DEVICE_NAME
    scan_timeout: float = DEFAULT_SCAN_TIMEOUT
    reconnect_delay: float = DEFAULT_RECONNECT_DELAY
    poll_interval: float = DEFAULT_POLL_INTERVAL
    metrics_port: int = DEFAULT_METRICS_PORT
    metrics_addr: str = "0.0.0.0"
    mock: bool = False


class Bridge:
    """Cache, handler, manager and exporter wired together.

    Args:
        config: Runtime settings.
        adapter: BLE boundary override. Defaults to the simulated adapter
            when ``config.mock`` is set, bleak otherwise.
    """

    def __init__(self, config: BridgeConfig, adapter: Optional[BleAdapter] = None) -> None:
        self.config = config
        self.cache = TelemetryCache()
        self.handler = SensorDataHandler(self.cache)
        if adapter is None:
            adapter = SimulatedAdapter(config.device_name) if config.mock else BleakAdapter()
        self.adapter = adapter
        self.manager = ConnectionManager(
            adapter,
            self.handler,
            self.cache,
            device_name=config.device_name,
            scan_timeout=config.scan_timeout,
            reconnect_delay=config.reconnect_delay,
            poll_interval=config.poll_interval,
        )
        self.registry = create_registry(self.cache)
        self.stop_signal: Optional[signal.Signals] = None

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    def start_metrics(self) -> None:
        if self.config.metrics_port:
            start_metrics_server(
                self.registry, self.config.metrics_port, self.config.metrics_addr
            )

    def stop(self, sig: Optional[signal.Signals] = None) -> None:
        if sig is not None:
            logger.info("Received %s, shutting down", sig.name)
            self.stop_signal = sig
        self.manager.stop()

    async def run(self) -> None:
        await self.manager.run()


async def run_bridge(bridge: Bridge, *, install_signal_handlers: bool = True) -> int:
    """Run until stopped and return the process exit code."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    if install_signal_handlers:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, bridge.stop, sig)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # No loop signal support (Windows); KeyboardInterrupt still applies.
                pass

    logger.info(
        "Starting AC Infinity bridge (device=%s, mock=%s)",
        bridge.config.device_name,
        bridge.config.mock,
    )
    try:
        bridge.start_metrics()
        await bridge.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return EXIT_SIGINT if bridge.stop_signal is signal.SIGINT else EXIT_OK


def run(config: BridgeConfig) -> int:
    """Blocking entry point.

    Returns:
        0 on a clean stop (SIGTERM), 130 on SIGINT/Ctrl+C, 1 if the bridge
        could not start or crashed.
    """
    try:
        return asyncio.run(run_bridge(Bridge(config)))
    except KeyboardInterrupt:
        return EXIT_SIGINT
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return EXIT_FAILURE
