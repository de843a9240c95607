# compass.py
"""
Compass reconciler: turns raw magnetometer samples into a heading and an
8-point direction label and hands every sample to its subscribers.

The sensor is polled at a fixed interval from an asyncio task.  A source that
is missing or failing simply leaves the last heading in place (0°/'N' until
the first good sample).
"""

import asyncio
import math
from typing import Callable, List, Optional, Protocol, Tuple

from app_logger import logger
from models import CompassReading
from settings import COMPASS_SAMPLE_INTERVAL_S

DIRECTIONS = ("N", "NE", "E", "SE", "S", "SW", "W", "NW")

CompassListener = Callable[[CompassReading], None]


class MagnetometerSource(Protocol):
    def read(self) -> Optional[Tuple[float, float, float]]:
        """Return ``(x, y, z)`` in µT, or ``None`` when no sample is available."""
        ...


class StaticMagnetometer:
    """Bench source: a fixed field vector, e.g. from ``--heading``."""

    def __init__(self, x: float, y: float, z: float = 0.0):
        self.sample = (x, y, z)

    @classmethod
    def pointing_at(cls, heading_deg: float) -> "StaticMagnetometer":
        rad = math.radians(heading_deg)
        return cls(math.cos(rad), math.sin(rad))

    def read(self) -> Optional[Tuple[float, float, float]]:
        return self.sample


def heading_from_field(x: float, y: float) -> float:
    """``atan2`` of the horizontal components, normalised to [0, 360)."""
    heading = math.degrees(math.atan2(y, x)) % 360.0
    # tiny negative angles wrap to exactly 360.0
    return 0.0 if heading >= 360.0 else heading


def direction_for(heading: float) -> str:
    """45° sectors centred on each label: N covers [337.5, 22.5)."""
    index = int(math.floor(((heading % 360.0) + 22.5) / 45.0)) % 8
    return DIRECTIONS[index]


class CompassReconciler:
    def __init__(self, sample_interval: float = COMPASS_SAMPLE_INTERVAL_S):
        self.sample_interval = sample_interval
        self.latest = CompassReading()
        self._listeners: List[CompassListener] = []
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, listener: CompassListener) -> None:
        self._listeners.append(listener)

    def on_sample(self, x: float, y: float, z: float = 0.0) -> CompassReading:
        heading = heading_from_field(x, y)
        self.latest = CompassReading(heading=heading, direction=direction_for(heading))
        for listener in self._listeners:
            listener(self.latest)
        return self.latest

    def poll(self, source: Optional[MagnetometerSource]) -> CompassReading:
        """Read one sample; keep the previous heading if the sensor gives nothing."""
        if source is None:
            return self.latest
        try:
            sample = source.read()
        except (OSError, ValueError) as exc:
            logger.debug("magnetometer read failed: %s", exc)
            return self.latest
        if sample is None:
            return self.latest
        return self.on_sample(*sample)

    # ------------------------------------------------------------------
    # Long-lived subscription
    # ------------------------------------------------------------------
    def start(self, source: Optional[MagnetometerSource]) -> None:
        if source is None:
            logger.warning("no magnetometer available – heading stays at %.0f°", self.latest.heading)
            return
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._run(source))
            logger.info("compass started (%.0f ms interval)", self.sample_interval * 1000)

    async def _run(self, source: MagnetometerSource) -> None:
        while True:
            self.poll(source)
            await asyncio.sleep(self.sample_interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("compass stopped")
