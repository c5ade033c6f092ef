"""
Dash application showing the bridge's live telemetry and connection state.
"""

import asyncio
import logging
import threading
from typing import Any, Optional, Tuple

import dash  # type: ignore
from dash import dcc, html, Input, Output

from ..adapter import DeviceHandle
from ..connection_manager import ConnectionState
from ..service import Bridge
from .plots import create_status_figure

logger = logging.getLogger(__name__)

# state -> (label, color)
STATE_LABELS = {
    ConnectionState.IDLE: ("⚪ Idle", "gray"),
    ConnectionState.SCANNING: ("🔍 Scanning...", "orange"),
    ConnectionState.CONNECTING: ("🟡 Connecting...", "orange"),
    ConnectionState.DISCOVERING_SERVICES: ("🟡 Discovering services...", "orange"),
    ConnectionState.SUBSCRIBING: ("🟡 Subscribing...", "orange"),
    ConnectionState.MONITORING: ("🟢 Connected", "green"),
    ConnectionState.DISCONNECTING: ("🔴 Disconnecting...", "red"),
    ConnectionState.STOPPED: ("⏹️ Stopped", "gray"),
}


def format_connection_status(
    state: ConnectionState, device: Optional[DeviceHandle]
) -> Tuple[str, str, str]:
    """Label, color and detail line for the connection panel."""
    label, color = STATE_LABELS[state]
    details = f"{device.name} ({device.device_id})" if device is not None else ""
    return label, color, details


class StatusApp:
    """Web status page for a running bridge.

    The bridge runs in a background thread with its own asyncio event loop
    so the Dash server keeps the main thread. The page polls the telemetry
    cache and the manager state on a fixed interval; it never writes to
    either.

    Attributes:
        bridge: The bridge whose state is displayed.
        update_interval: Page refresh interval in milliseconds.
        app: Dash application instance.
    """

    def __init__(self, bridge: Bridge, update_interval_ms: int = 1000):
        self.bridge = bridge
        self.update_interval = update_interval_ms

        self._bridge_thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        self.app = dash.Dash(__name__)
        self._setup_layout()
        self._setup_callbacks()

    def _setup_layout(self) -> None:
        panel_style = {
            "padding": "10px",
            "border": "1px solid #ddd",
            "borderRadius": "5px",
            "margin": "5px",
        }
        self.app.layout = html.Div(
            [
                html.H1("AC Infinity Bridge", style={"textAlign": "center"}),
                html.Div(
                    [
                        html.H3("Connection Status"),
                        html.Div(id="connection-status", children="Initializing..."),
                        html.Div(id="connection-details", children=""),
                    ],
                    style=panel_style,
                ),
                dcc.Graph(id="telemetry-gauges"),
                dcc.Interval(
                    id="interval-component",
                    interval=self.update_interval,
                    n_intervals=0,
                ),
            ],
            style={"margin": "20px"},
        )

    def _setup_callbacks(self) -> None:
        @self.app.callback(  # type: ignore
            [
                Output("telemetry-gauges", "figure"),
                Output("connection-status", "children"),
                Output("connection-details", "children"),
            ],
            [Input("interval-component", "n_intervals")],
        )
        def update_status(n_intervals: int) -> Tuple[Any, ...]:
            return self.render()

    def render(self) -> Tuple[Any, ...]:
        """Current figure, status span and detail line."""
        label, color, details = format_connection_status(
            self.bridge.manager.state, self.bridge.manager.device
        )
        figure = create_status_figure(self.bridge.cache.snapshot())
        status = html.Span(label, style={"color": color, "fontWeight": "bold"})
        return figure, status, details

    def _bridge_worker(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_until_complete(self.bridge.run())
        except Exception as e:
            logger.error("💥 Bridge worker fatal error: %s", e)
        finally:
            self._loop.close()

    def start_bridge(self) -> None:
        if self._bridge_thread is None or not self._bridge_thread.is_alive():
            self.bridge.start_metrics()
            self._bridge_thread = threading.Thread(
                target=self._bridge_worker, name="bridge", daemon=True
            )
            self._bridge_thread.start()

    def stop_bridge(self, timeout: float = 10.0) -> None:
        logger.info("🛑 Stopping bridge...")
        self.bridge.stop()
        if self._bridge_thread and self._bridge_thread.is_alive():
            self._bridge_thread.join(timeout=timeout)
            if self._bridge_thread.is_alive():
                logger.warning("⚠️ Bridge thread did not stop gracefully")

    def run(self, host: str = "127.0.0.1", port: int = 8050, debug: bool = False) -> None:
        """Start the bridge and serve the page until interrupted."""
        self.start_bridge()
        try:
            self.app.run(host=host, port=port, debug=debug)
        finally:
            self.stop_bridge()


def create_app(bridge: Bridge, **kwargs: int) -> StatusApp:
    return StatusApp(bridge=bridge, **kwargs)
