"""Vapor pressure deficit from a temperature/humidity reading."""

from __future__ import annotations

import math

from .sensor_parser import Measurement

# Tetens equation coefficients (kPa, degC)
SVP_BASE_KPA = 0.6108
SVP_SLOPE = 17.27
SVP_OFFSET_C = 237.3


def saturation_vapor_pressure(temperature: float) -> float:
    """Saturation vapor pressure in kPa at the given temperature in degC.

    Returns NaN at -237.3 degC where the Tetens denominator is zero.
    """
    denominator = temperature + SVP_OFFSET_C
    if denominator == 0:
        return math.nan
    return SVP_BASE_KPA * math.exp(SVP_SLOPE * temperature / denominator)


def calculate_vpd(measurement: Measurement) -> float:
    """Vapor pressure deficit in kPa.

    Args:
        measurement: Decoded climate reading.

    Returns:
        svp * (1 - RH/100). Humidity above 100 % yields a negative deficit;
        the value is not clamped.
    """
    svp = saturation_vapor_pressure(measurement.temperature)
    return svp * (1 - measurement.humidity / 100)
