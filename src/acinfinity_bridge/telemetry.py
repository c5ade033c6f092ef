"""Latest-value telemetry cache and its Prometheus exporter.

The cache holds one value per exported quantity. Slots are independent:
each has its own lock so a writer on one slot never blocks readers of
another, and a read never observes a half-written value. A slot starts
out unavailable (``read()`` returns None) and, once written, keeps the
most recent value for the lifetime of the process.

The exporter side registers one pull callback per slot with a custom
``prometheus_client`` collector. Callbacks return NaN while a slot is
unavailable and the collector leaves such gauges out of the scrape, so
the backend never records a fake zero.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from prometheus_client import start_http_server
from prometheus_client.core import GaugeMetricFamily, Metric
from prometheus_client.registry import Collector, CollectorRegistry

logger = logging.getLogger(__name__)

METRIC_PREFIX = "ac_infinity"


class TelemetrySlot:
    """A single lock-guarded latest value."""

    def __init__(self, name: str, unit: str, description: str) -> None:
        self.name = name
        self.unit = unit
        self.description = description
        self._lock = threading.Lock()
        self._value: Optional[float] = None

    def write(self, value: float) -> None:
        """Store value, replacing whatever was there."""
        with self._lock:
            self._value = value

    def read(self) -> Optional[float]:
        """Return the last written value, or None if nothing was written yet."""
        with self._lock:
            return self._value

    @property
    def has_value(self) -> bool:
        return self.read() is not None

    def __repr__(self) -> str:
        return f"TelemetrySlot(name={self.name!r}, value={self.read()!r})"


class TelemetryCache:
    """Fixed set of slots written by the bridge and read by exporters.

    Attributes:
        temperature: Air temperature in degC.
        humidity: Relative humidity in %.
        vpd: Vapor pressure deficit in kPa.
        rssi: Signal strength of the advertisement that led to the current
            connection, in dBm. Sampled once per connection.
    """

    def __init__(self) -> None:
        self.temperature = TelemetrySlot(
            "temperature", "celsius", "Current temperature reading from AC Infinity device"
        )
        self.humidity = TelemetrySlot(
            "humidity", "percent", "Current humidity reading from AC Infinity device"
        )
        self.vpd = TelemetrySlot(
            "vpd",
            "kilopascals",
            "Current Vapor Pressure Deficit (VPD) calculated from temperature and humidity",
        )
        self.rssi = TelemetrySlot(
            "rssi", "dbm", "Current Bluetooth signal strength (RSSI) from AC Infinity device"
        )

    def slots(self) -> tuple[TelemetrySlot, ...]:
        return (self.temperature, self.humidity, self.vpd, self.rssi)

    def snapshot(self) -> dict[str, Optional[float]]:
        """Read every slot. Slots are read one by one, not as a consistent set."""
        return {slot.name: slot.read() for slot in self.slots()}


def observe(slot: TelemetrySlot) -> float:
    """Pull callback body: the slot value, or NaN while unavailable."""
    value = slot.read()
    if value is None:
        logger.debug("%s not yet available, skipping", slot.name)
        return math.nan
    return float(value)


@dataclass(frozen=True)
class GaugeCallback:
    name: str
    documentation: str
    unit: str
    callback: Callable[[], float]


class TelemetryCollector(Collector):
    """Prometheus collector evaluating registered gauge callbacks on scrape."""

    def __init__(self) -> None:
        self._gauges: list[GaugeCallback] = []
        self._lock = threading.Lock()

    def register_gauge(
        self,
        name: str,
        callback: Callable[[], float],
        *,
        unit: str = "",
        documentation: str = "",
    ) -> None:
        """Register a pull callback exported as a gauge.

        Args:
            name: Metric name without the unit suffix.
            callback: Returns the current value, or NaN when there is none.
            unit: Prometheus unit, appended to the metric name.
            documentation: HELP text.
        """
        with self._lock:
            self._gauges.append(
                GaugeCallback(name, documentation or name, unit, callback)
            )

    def register_cache(self, cache: TelemetryCache) -> None:
        """Register one gauge per cache slot."""
        for slot in cache.slots():
            self.register_gauge(
                f"{METRIC_PREFIX}_{slot.name}",
                lambda slot=slot: observe(slot),
                unit=slot.unit,
                documentation=slot.description,
            )

    def describe(self) -> Iterator[Metric]:
        with self._lock:
            gauges = list(self._gauges)
        for gauge in gauges:
            yield GaugeMetricFamily(gauge.name, gauge.documentation, unit=gauge.unit)

    def collect(self) -> Iterator[Metric]:
        with self._lock:
            gauges = list(self._gauges)
        for gauge in gauges:
            try:
                value = gauge.callback()
            except Exception:
                logger.exception("Gauge callback %s failed", gauge.name)
                continue
            if value is None or math.isnan(value):
                continue
            yield GaugeMetricFamily(
                gauge.name, gauge.documentation, value=value, unit=gauge.unit
            )


def create_registry(cache: TelemetryCache) -> CollectorRegistry:
    """Build a registry exporting the four cache gauges."""
    collector = TelemetryCollector()
    collector.register_cache(cache)
    registry = CollectorRegistry(auto_describe=True)
    registry.register(collector)
    return registry


def start_metrics_server(
    registry: CollectorRegistry, port: int, addr: str = "0.0.0.0"
) -> None:
    """Serve the registry on http://addr:port/metrics from a daemon thread."""
    start_http_server(port, addr=addr, registry=registry)
    logger.info("Metrics endpoint listening on %s:%d", addr, port)
