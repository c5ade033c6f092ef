"""Notification sink: decode, cache, derive."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .sensor_parser import Measurement, Payload, parse_sensor_data
from .telemetry import TelemetryCache
from .vpd import calculate_vpd

logger = logging.getLogger(__name__)


class SensorDataHandler:
    """Turns notification payloads into telemetry cache updates.

    One decode runs at a time; concurrent deliveries queue on the lock.
    Exceptions never escape ``handle`` so the BLE stack's delivery thread
    is not disturbed by a bad payload.

    Attributes:
        received: Notifications seen, including rejected ones.
        rejected: Notifications too short to decode.
    """

    def __init__(self, cache: TelemetryCache) -> None:
        self._cache = cache
        self._lock = threading.Lock()
        self.received = 0
        self.rejected = 0

    def handle(self, data: Payload) -> Optional[Measurement]:
        if not data:
            return None
        with self._lock:
            self.received += 1
            logger.debug("Notification received: %s", bytes(data).hex(" "))
            try:
                return self._process(data)
            except Exception:
                logger.exception("Failed to process notification")
                return None

    __call__ = handle

    def _process(self, data: Payload) -> Optional[Measurement]:
        measurement = parse_sensor_data(data)
        if measurement is None:
            self.rejected += 1
            return None

        logger.info(
            "Temperature: %.2f°C, humidity: %.2f%%",
            measurement.temperature,
            measurement.humidity,
        )
        self._cache.temperature.write(measurement.temperature)
        self._cache.humidity.write(measurement.humidity)

        vpd = calculate_vpd(measurement)
        self._cache.vpd.write(vpd)
        logger.debug("VPD: %.3f kPa", vpd)
        return measurement
