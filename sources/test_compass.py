# test_compass.py
import asyncio

import pytest

from compass import CompassReconciler, StaticMagnetometer, direction_for, heading_from_field


@pytest.mark.parametrize(
    "x, y, expected",
    [(1, 0, 0.0), (0, 1, 90.0), (-1, 0, 180.0), (0, -1, 270.0), (1, -1, 315.0)],
)
def test_heading_is_normalised(x, y, expected):
    assert heading_from_field(x, y) == pytest.approx(expected)


def test_heading_just_below_north_wraps_to_zero():
    heading = heading_from_field(1.0, -1e-17)
    assert 0.0 <= heading < 360.0
    assert CompassReconciler().on_sample(1.0, -1e-17).heading == 0.0


@pytest.mark.parametrize(
    "heading, label",
    [
        (0.0, "N"), (22.4, "N"), (22.5, "NE"), (67.4, "NE"), (67.5, "E"),
        (180.0, "S"), (292.5, "NW"), (337.4, "NW"), (337.5, "N"), (359.9, "N"),
    ],
)
def test_direction_sectors(heading, label):
    assert direction_for(heading) == label


def test_defaults_before_first_sample():
    c = CompassReconciler()
    assert (c.latest.heading, c.latest.direction) == (0.0, "N")


def test_every_sample_is_published():
    c = CompassReconciler()
    seen = []
    c.subscribe(seen.append)
    c.on_sample(0, 1)
    c.on_sample(-1, 0)
    assert [r.direction for r in seen] == ["E", "S"]


class FlakySource:
    def __init__(self, samples):
        self.samples = list(samples)

    def read(self):
        item = self.samples.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def test_missing_or_failing_sensor_keeps_last_heading():
    c = CompassReconciler()
    source = FlakySource([(0, 1, 0), None, OSError("i2c bus"), ValueError("bad frame")])
    c.poll(source)
    for _ in range(3):
        assert c.poll(source).heading == pytest.approx(90.0)
    assert c.poll(None).direction == "E"


def test_polling_task_start_and_stop():
    async def scenario():
        c = CompassReconciler(sample_interval=0.001)
        c.start(StaticMagnetometer.pointing_at(225))
        await asyncio.sleep(0.02)
        await c.stop()
        return c.latest

    latest = asyncio.run(scenario())
    assert latest.heading == pytest.approx(225.0)
    assert latest.direction == "SW"
