# test_reading_aggregator.py
from types import SimpleNamespace

import pytest

from compass import CompassReconciler
from conftest import feed
from models import CompassReading, GpsFix, LiveReading
from payload_codec import FieldKind, TelemetryField
from reading_aggregator import ReadingAggregator, merge_reading


def test_live_reading_after_two_deltas(compass, location):
    agg = ReadingAggregator(compass, location)
    feed(agg, b"elevation:12.5", b"distance:8.3")

    live = agg.live.as_dict()
    assert live["elevation"] == 12.5
    assert live["distance"] == 8.3
    assert live["azimuth"] == 90
    assert (live["lat"], live["lon"]) == (13.736, 100.523)


def test_azimuth_always_follows_the_compass(location):
    compass = CompassReconciler()
    agg = ReadingAggregator(compass, location)

    compass.on_sample(0, 1)                                  # 90°
    feed(agg, b"azimuth:270", b'{"azimuth": 10, "angle": 3}')
    assert agg.live.azimuth == 90
    assert "azimuth" not in agg.live.sensor

    compass.on_sample(-1, -0.01)                             # ~180.6°
    feed(agg, b"dist:1")
    assert agg.live.azimuth == 181


@pytest.mark.parametrize("key", ["altitude", "alt", "angle"])
def test_aliases_are_exposed_as_elevation(compass, location, key):
    agg = ReadingAggregator(compass, location)
    feed(agg, f"{key}:7.5".encode())
    assert agg.live.sensor == {"elevation": 7.5}


def test_every_field_is_published_individually(compass, location):
    agg = ReadingAggregator(compass, location)
    seen = []
    agg.subscribe(lambda reading: seen.append(dict(reading.sensor)))
    feed(agg, b'{"angle": 1, "range": 2}')
    assert seen == [{"elevation": 1.0}, {"elevation": 1.0, "distance": 2.0}]


def test_peripheral_position_is_used_without_gps(compass):
    agg = ReadingAggregator(compass, SimpleNamespace(latest=None))
    feed(agg, b"lat:17.62", b"distance:3")
    assert agg.live.lat == 17.62
    assert agg.live.lon == 0.0
    assert agg.live.altitude == 0.0


def test_gps_wins_over_peripheral_position():
    fix = GpsFix(13.0, 100.0, altitude=None)
    previous = LiveReading(sensor={"altitude_m": 1.0})
    delta = TelemetryField("lat", 50.0, FieldKind.EXTRA, "lat")
    merged = merge_reading(previous, delta, fix, CompassReading(44.6, "NE"))
    assert (merged.lat, merged.lon, merged.altitude, merged.azimuth) == (13.0, 100.0, 0.0, 45)
    assert previous.sensor == {"altitude_m": 1.0}


def test_clear_empties_the_reading(compass, location):
    agg = ReadingAggregator(compass, location)
    feed(agg, b"distance:3")
    agg.clear()
    assert agg.live.is_empty
