"""Decoder for AC Infinity controller notification payloads.

The controller pushes a fixed binary frame on its notify characteristic.
Only the climate block is consumed here:

    offset  size  field
    8       2     temperature, big-endian, 0.01 degC
    10      2     relative humidity, big-endian, 0.01 %

Frames shorter than 12 bytes carry no climate block and are rejected.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Optional, Union

logger = logging.getLogger(__name__)

MIN_PAYLOAD_LENGTH = 12
CLIMATE_BLOCK_OFFSET = 8
# raw counts per unit, 0.01 resolution
RESOLUTION = 100.0

_CLIMATE_BLOCK = struct.Struct(">HH")

Payload = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True)
class Measurement:
    """One climate reading decoded from a notification.

    Attributes:
        temperature: Air temperature in degrees Celsius.
        humidity: Relative humidity in percent. Values outside 0-100 are
            passed through as reported by the device.
    """

    temperature: float
    humidity: float


def parse_sensor_data(data: Payload) -> Optional[Measurement]:
    """Decode a raw notification into a Measurement.

    Args:
        data: Notification bytes as delivered by the BLE stack.

    Returns:
        The decoded Measurement, or None when the payload is too short to
        contain the climate block. A short payload is not an error.
    """
    if len(data) < MIN_PAYLOAD_LENGTH:
        logger.debug(
            "Payload too short to parse sensor data (length: %d)", len(data)
        )
        return None

    temp_raw, humidity_raw = _CLIMATE_BLOCK.unpack_from(data, CLIMATE_BLOCK_OFFSET)
    measurement = Measurement(
        temperature=temp_raw / RESOLUTION,
        humidity=humidity_raw / RESOLUTION,
    )
    logger.debug(
        "Parsed temperature: %.2f°C, humidity: %.2f%%",
        measurement.temperature,
        measurement.humidity,
    )
    return measurement


def encode_climate_block(temperature: float, humidity: float) -> bytes:
    """Pack a temperature/humidity pair into the 4-byte device layout."""
    return _CLIMATE_BLOCK.pack(
        round(temperature * RESOLUTION), round(humidity * RESOLUTION)
    )
