# test_location.py
import asyncio

import pytest

from location import (
    FixedLocationProvider,
    LocationTracker,
    WatchOptions,
    displacement_m,
    parse_gga,
)
from models import GpsFix

GGA = "$GPGGA,123519,4807.038,N,01131.000,E,1,08,0.9,545.4,M,46.9,M,,*47"


# ----------------------------------------------------------------------
# NMEA
# ----------------------------------------------------------------------
def test_parse_gga():
    fix = parse_gga(GGA)
    assert fix.latitude == pytest.approx(48.1173)
    assert fix.longitude == pytest.approx(11.516667, abs=1e-6)
    assert fix.altitude == pytest.approx(545.4)
    assert fix.accuracy == pytest.approx(4.5)


def test_parse_gga_southern_western_hemisphere():
    fix = parse_gga("$GNGGA,000000,1344.160,S,10031.380,W,1,08,1.0,10.0,M,0,M,,")
    assert fix.latitude == pytest.approx(-13.736)
    assert fix.longitude == pytest.approx(-100.523)


@pytest.mark.parametrize(
    "sentence",
    [
        GGA[:-2] + "00",                                             # bad checksum
        "$GPGGA,123519,4807.038,N,01131.000,E,0,00,,,M,,M,,",        # no fix
        "$GPRMC,123519,A,4807.038,N,01131.000,E,022.4,084.4,230394,003.1,W",
        "garbage",
    ],
)
def test_parse_gga_rejects(sentence):
    assert parse_gga(sentence) is None


def test_displacement():
    a = GpsFix(13.736, 100.523)
    b = GpsFix(13.73601, 100.523)
    assert displacement_m(a, b) == pytest.approx(1.11, abs=0.01)


# ----------------------------------------------------------------------
# Tracker
# ----------------------------------------------------------------------
def test_watch_options_defaults():
    opts = WatchOptions()
    assert opts.accuracy == "best_for_navigation"
    assert (opts.time_interval_s, opts.distance_interval_m) == (3.0, 1.0)


def test_tracker_publishes_fixes():
    tracker = LocationTracker(FixedLocationProvider(13.736, 100.523, 250.0, 5.0))
    seen = []
    tracker.subscribe(seen.append)

    async def scenario():
        started = await tracker.start()
        await asyncio.sleep(0)
        tracker.stop()
        return started

    assert asyncio.run(scenario()) is True
    assert tracker.permission_granted is True
    assert tracker.latest.latitude == 13.736
    assert seen == [tracker.latest]


class DeniedProvider:
    def __init__(self):
        self.asked = 0
        self.watched = False

    async def request_permission(self):
        self.asked += 1
        return False

    def watch_position(self, options, callback):
        self.watched = True


def test_denied_permission_is_asked_once_and_never_watches():
    provider = DeniedProvider()
    tracker = LocationTracker(provider)

    async def scenario():
        return [await tracker.start(), await tracker.start(), await tracker.ensure_permission()]

    assert asyncio.run(scenario()) == [False, False, False]
    assert provider.asked == 1
    assert provider.watched is False
    assert tracker.latest is None


def test_no_provider_counts_as_denied():
    tracker = LocationTracker(None)
    assert asyncio.run(tracker.ensure_permission()) is False
