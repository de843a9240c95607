"""
Location tracker and its providers.

The tracker asks for permission once, then keeps a continuous watch open and
republishes every fix.  Consumers read ``tracker.latest`` (``None`` until the
first fix, and forever ``None`` when permission was denied).

Providers
---------
FixedLocationProvider  – a surveyed site coordinate given on the command line
NmeaSerialProvider     – a GNSS receiver on a serial port (GGA sentences)
"""

import asyncio
import math
import os
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

import serial

from app_logger import logger
from models import GpsFix
from settings import (
    GPS_DISTANCE_INTERVAL_M,
    GPS_SERIAL_BAUDRATE,
    GPS_SERIAL_TIMEOUT_S,
    GPS_TIME_INTERVAL_S,
)

FixListener = Callable[[GpsFix], None]

HDOP_TO_METRES = 5.0          # rough horizontal accuracy per unit of HDOP
EARTH_RADIUS_M = 6371000.0


@dataclass(frozen=True)
class WatchOptions:
    accuracy: str = "best_for_navigation"
    time_interval_s: float = GPS_TIME_INTERVAL_S
    distance_interval_m: float = GPS_DISTANCE_INTERVAL_M


class Subscription(Protocol):
    def remove(self) -> None:
        ...


class LocationProvider(Protocol):
    async def request_permission(self) -> bool:
        ...

    def watch_position(self, options: WatchOptions, callback: FixListener) -> Subscription:
        ...


def displacement_m(a: GpsFix, b: GpsFix) -> float:
    """Equirectangular approximation – plenty for a 1 m threshold."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    dlon = math.radians(b.longitude - a.longitude)
    x = dlon * math.cos((lat1 + lat2) / 2.0)
    y = lat2 - lat1
    return math.hypot(x, y) * EARTH_RADIUS_M


# ----------------------------------------------------------------------
# Fixed coordinate
# ----------------------------------------------------------------------
class _NoopSubscription:
    def remove(self) -> None:
        pass


class FixedLocationProvider:
    def __init__(self, latitude: float, longitude: float,
                 altitude: Optional[float] = None, accuracy: Optional[float] = None):
        self.fix = GpsFix(latitude, longitude, altitude, accuracy)

    async def request_permission(self) -> bool:
        return True

    def watch_position(self, options: WatchOptions, callback: FixListener) -> Subscription:
        asyncio.get_running_loop().call_soon(callback, self.fix)
        return _NoopSubscription()


# ----------------------------------------------------------------------
# NMEA over serial
# ----------------------------------------------------------------------
def _nmea_checksum_ok(sentence: str) -> bool:
    if "*" not in sentence:
        return True
    body, _, checksum = sentence.lstrip("$").partition("*")
    calc = 0
    for ch in body:
        calc ^= ord(ch)
    try:
        return calc == int(checksum[:2], 16)
    except ValueError:
        return False


def _nmea_coordinate(value: str, hemisphere: str) -> float:
    # ddmm.mmmm / dddmm.mmmm
    dot = value.index(".")
    degrees = float(value[: dot - 2])
    minutes = float(value[dot - 2:])
    result = degrees + minutes / 60.0
    return -result if hemisphere in ("S", "W") else result


def parse_gga(sentence: str) -> Optional[GpsFix]:
    """
    Parse a ``$xxGGA`` sentence.  Returns ``None`` for other sentence types,
    bad checksums, or sentences without a position fix.
    """
    sentence = sentence.strip()
    if not sentence.startswith("$") or sentence[3:6] != "GGA":
        return None
    if not _nmea_checksum_ok(sentence):
        logger.debug("NMEA checksum mismatch: %s", sentence)
        return None

    parts = sentence.split("*")[0].split(",")
    if len(parts) < 10 or not parts[6] or parts[6] == "0":
        return None
    try:
        lat = _nmea_coordinate(parts[2], parts[3])
        lon = _nmea_coordinate(parts[4], parts[5])
        hdop = float(parts[8]) if parts[8] else None
        alt = float(parts[9]) if parts[9] else None
    except ValueError:
        return None
    accuracy = hdop * HDOP_TO_METRES if hdop is not None else None
    return GpsFix(latitude=lat, longitude=lon, altitude=alt, accuracy=accuracy)


class _SerialWatch:
    """Background reader thread; fixes are handed to the event loop."""

    def __init__(self, port: str, baudrate: int, options: WatchOptions,
                 callback: FixListener, loop: asyncio.AbstractEventLoop):
        self.port = port
        self.baudrate = baudrate
        self.options = options
        self.callback = callback
        self.loop = loop
        self._stop = threading.Event()
        self._last_fix: Optional[GpsFix] = None
        self._last_time = 0.0
        self._thread = threading.Thread(target=self._read_loop, name="nmea-reader", daemon=True)
        self._thread.start()

    def _should_publish(self, fix: GpsFix, now: float) -> bool:
        if self._last_fix is None:
            return True
        if now - self._last_time >= self.options.time_interval_s:
            return True
        return displacement_m(self._last_fix, fix) >= self.options.distance_interval_m

    def _read_loop(self) -> None:
        try:
            with serial.Serial(self.port, self.baudrate, timeout=GPS_SERIAL_TIMEOUT_S) as ser:
                ser.reset_input_buffer()
                logger.info("GNSS receiver opened on %s @ %d baud", self.port, self.baudrate)
                while not self._stop.is_set():
                    line = ser.readline().decode("ascii", errors="ignore")
                    fix = parse_gga(line) if line else None
                    if fix is None:
                        continue
                    now = self.loop.time()
                    if self._should_publish(fix, now):
                        self._last_fix, self._last_time = fix, now
                        self.loop.call_soon_threadsafe(self.callback, fix)
        except serial.SerialException as exc:
            logger.error("GNSS serial error on %s: %s", self.port, exc)

    def remove(self) -> None:
        self._stop.set()
        self._thread.join(timeout=GPS_SERIAL_TIMEOUT_S + 1.0)


class NmeaSerialProvider:
    def __init__(self, port: str, baudrate: int = GPS_SERIAL_BAUDRATE):
        self.port = port
        self.baudrate = baudrate

    async def request_permission(self) -> bool:
        # A device node we cannot open is the desktop equivalent of a denied permission.
        return os.path.exists(self.port) and os.access(self.port, os.R_OK)

    def watch_position(self, options: WatchOptions, callback: FixListener) -> Subscription:
        return _SerialWatch(self.port, self.baudrate, options, callback,
                            asyncio.get_running_loop())


# ----------------------------------------------------------------------
# Tracker
# ----------------------------------------------------------------------
class LocationTracker:
    def __init__(self, provider: Optional[LocationProvider], options: WatchOptions = WatchOptions()):
        self.provider = provider
        self.options = options
        self.latest: Optional[GpsFix] = None
        self.permission_granted: Optional[bool] = None     # None = not asked yet
        self._listeners: List[FixListener] = []
        self._subscription: Optional[Subscription] = None

    def subscribe(self, listener: FixListener) -> None:
        self._listeners.append(listener)

    async def ensure_permission(self) -> bool:
        """Ask once; later calls return the cached answer."""
        if self.permission_granted is None:
            if self.provider is None:
                self.permission_granted = False
            else:
                self.permission_granted = bool(await self.provider.request_permission())
            if not self.permission_granted:
                logger.warning("location permission denied – GPS fields will stay empty")
        return self.permission_granted

    async def start(self) -> bool:
        if not await self.ensure_permission():
            return False
        if self._subscription is None:
            self._subscription = self.provider.watch_position(self.options, self._on_fix)
            logger.info(
                "location watch started (%s, %.0fs / %.0fm)",
                self.options.accuracy,
                self.options.time_interval_s,
                self.options.distance_interval_m,
            )
        return True

    def _on_fix(self, fix: GpsFix) -> None:
        self.latest = fix
        logger.debug("fix %.7f, %.7f alt=%s acc=%s",
                     fix.latitude, fix.longitude, fix.altitude, fix.accuracy)
        for listener in self._listeners:
            listener(fix)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.remove()
            self._subscription = None
            logger.info("location watch stopped")
