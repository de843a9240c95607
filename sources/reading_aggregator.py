# reading_aggregator.py
"""
Keeps the one "live reading" the rest of the client looks at.

Every telemetry field coming off the BLE link is applied on its own, right
away, so half a burst is already visible on screen.  GPS and heading are
pulled from the tracker / compass at that same moment.
"""

from typing import Callable, List, Optional

from app_logger import log_debug
from models import CompassReading, GpsFix, LiveReading
from payload_codec import TelemetryField

ReadingListener = Callable[[LiveReading], None]


def merge_reading(
    previous: LiveReading,
    delta: TelemetryField,
    gps: Optional[GpsFix],
    compass: CompassReading,
) -> LiveReading:
    """
    Pure merge of one telemetry field into the previous reading.

    lat/lon/altitude come from the GPS fix when there is one, otherwise from
    whatever the peripheral itself reported, otherwise 0.  The azimuth is
    always the compass heading.
    """
    sensor = dict(previous.sensor)
    sensor[delta.key] = delta.value

    def pick(gps_value: Optional[float], key: str) -> float:
        if gps_value is not None:
            return gps_value
        ble_value = sensor.get(key)
        return ble_value if ble_value is not None else 0.0

    return LiveReading(
        sensor=sensor,
        lat=pick(gps.latitude if gps else None, "lat"),
        lon=pick(gps.longitude if gps else None, "lon"),
        altitude=pick(gps.altitude if gps else None, "altitude"),
        azimuth=int(round(compass.heading)),
    )


class ReadingAggregator:
    """Single writer of the live reading."""

    def __init__(self, compass, location):
        # Anything exposing ``.latest`` works (CompassReconciler / LocationTracker).
        self.compass = compass
        self.location = location
        self.live = LiveReading()
        self._listeners: List[ReadingListener] = []

    def subscribe(self, listener: ReadingListener) -> None:
        self._listeners.append(listener)

    def apply(self, delta: TelemetryField) -> LiveReading:
        self.live = merge_reading(self.live, delta, self.location.latest, self.compass.latest)
        log_debug("live %s=%s (%s) → %s", delta.key, delta.value, delta.source_key, self.live.as_dict())
        self._notify()
        return self.live

    def clear(self) -> None:
        self.live = LiveReading()
        self._notify()

    def _notify(self) -> None:
        for listener in self._listeners:
            listener(self.live)
