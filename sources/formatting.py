# formatting.py
"""Display labels and unit-aware value formatting for the console."""

import math
from typing import Any, Optional

LABELS = {
    "lat": "Latitude",
    "lon": "Longitude",
    "alt": "Height",
    "altitude": "GPS altitude",
    "elevation": "Elevation angle",
    "distance": "Distance",
    "azimuth": "Azimuth",
    "slopeDistance": "Slope distance",
    "mode": "Mode",
}

_COORD_KEYS = ("lat", "lon")
_LENGTH_KEYS = ("alt", "altitude", "slopeDistance", "distance")
_ANGLE_KEYS = ("azimuth", "elevation")

MODES = {1: "normal", 2: "alert"}


def label_for(key: str) -> str:
    return LABELS.get(key, key)


def _as_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def format_value(key: str, value: Any) -> str:
    """
    >>> format_value("lat", 13.73612)
    '13.736°'
    >>> format_value("distance", None)
    '-- m'
    """
    number = _as_number(value)
    if number is None:
        if key in _COORD_KEYS or key in _ANGLE_KEYS:
            return "--°"
        if key in _LENGTH_KEYS:
            return "-- m"
        if key == "mode":
            return "unknown mode"
        return "--"

    if key in _COORD_KEYS:
        return f"{number:.3f}°"
    if key in _LENGTH_KEYS:
        return f"{number:.2f} m"
    if key in _ANGLE_KEYS:
        return f"{number:.2f}°"
    if key == "mode":
        return MODES.get(int(number), f"mode {number:g}")
    return f"{number:g}"


def format_coordinate(value: Optional[float], places: int = 6) -> str:
    number = _as_number(value)
    return "--" if number is None else f"{number:.{places}f}"
