# models.py
"""
Dataclasses for everything the survey client keeps in memory or persists.
`to_dict` / `from_dict` produce the camelCase JSON layout stored in the
key-value store, so a record written by one session reads back identically
in the next.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

POINT_NUMBERS = (1, 2)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def slot_name(point_number: int) -> str:
    """1 → ``"point1"``, 2 → ``"point2"``."""
    if point_number not in POINT_NUMBERS:
        raise ValueError(f"point number must be 1 or 2, got {point_number!r}")
    return f"point{point_number}"


# ----------------------------------------------------------------------
# Sensor side
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class GpsFix:
    """One fix from the location provider."""
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass(frozen=True)
class CompassReading:
    heading: float = 0.0      # degrees, [0, 360)
    direction: str = "N"


@dataclass
class LiveReading:
    """
    Merge of BLE telemetry, the latest GPS fix and the latest compass heading.

    ``sensor`` holds what the peripheral sent (canonical keys, azimuth never
    included); ``lat``/``lon``/``altitude``/``azimuth`` are the merged values.
    """
    sensor: Dict[str, float] = field(default_factory=dict)
    lat: float = 0.0
    lon: float = 0.0
    altitude: float = 0.0
    azimuth: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.sensor

    def as_dict(self) -> Dict[str, float]:
        merged: Dict[str, float] = dict(self.sensor)
        merged.update(
            lat=self.lat, lon=self.lon, altitude=self.altitude, azimuth=self.azimuth
        )
        return merged


# ----------------------------------------------------------------------
# Captured data
# ----------------------------------------------------------------------
@dataclass
class ImageRef:
    """A displayable photo: where it lives plus what we know about it."""
    uri: str
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: str = "image/jpeg"
    timestamp: Optional[str] = None
    image_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uri": self.uri,
            "width": self.width,
            "height": self.height,
            "type": self.mime_type,
            "timestamp": self.timestamp,
            "id": self.image_id,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ImageRef"]:
        if not data or not data.get("uri"):
            return None
        return cls(
            uri=data["uri"],
            width=data.get("width"),
            height=data.get("height"),
            mime_type=data.get("type") or "image/jpeg",
            timestamp=data.get("timestamp"),
            image_id=data.get("id"),
        )


# Point attributes in the flat persisted layout; never valid as sensor readings
POINT_META_KEYS = (
    "lat", "lon", "altitude", "accuracy", "azimuth",
    "timestamp", "deviceId", "pointNumber", "hasImage",
)


@dataclass
class Point:
    """Snapshot of the live reading at capture time."""
    point_number: int
    timestamp: str
    device_id: str
    readings: Dict[str, float] = field(default_factory=dict)
    lat: float = 0.0
    lon: float = 0.0
    altitude: float = 0.0
    accuracy: Optional[float] = None
    azimuth: int = 0
    has_image: bool = False

    @property
    def elevation(self) -> Optional[float]:
        return self.readings.get("elevation")

    @property
    def distance(self) -> Optional[float]:
        return self.readings.get("distance")

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = dict(self.readings)
        data.update(
            lat=self.lat,
            lon=self.lon,
            altitude=self.altitude,
            accuracy=self.accuracy,
            azimuth=self.azimuth,
            timestamp=self.timestamp,
            deviceId=self.device_id,
            pointNumber=self.point_number,
            hasImage=self.has_image,
        )
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Point"]:
        if not data:
            return None
        readings = {k: v for k, v in data.items() if k not in POINT_META_KEYS}
        return cls(
            point_number=int(data.get("pointNumber", 1)),
            timestamp=data.get("timestamp") or "",
            device_id=data.get("deviceId") or "unknown",
            readings=readings,
            lat=data.get("lat") or 0.0,
            lon=data.get("lon") or 0.0,
            altitude=data.get("altitude") or 0.0,
            accuracy=data.get("accuracy"),
            azimuth=int(data.get("azimuth") or 0),
            has_image=bool(data.get("hasImage", False)),
        )


@dataclass
class GeoLocation:
    latitude: float = 0.0
    longitude: float = 0.0
    altitude: float = 0.0

    @classmethod
    def from_fix(cls, fix: Optional[GpsFix]) -> "GeoLocation":
        if fix is None:
            return cls()
        return cls(fix.latitude, fix.longitude, fix.altitude or 0.0)


@dataclass
class SurveyArea:
    """One named location measured from two points; the unit of upload."""
    id: str
    name: str
    observer: str
    timestamp: str
    location: GeoLocation = field(default_factory=GeoLocation)
    points: Dict[str, Optional[Point]] = field(
        default_factory=lambda: {"point1": None, "point2": None}
    )
    images: Dict[str, Optional[ImageRef]] = field(
        default_factory=lambda: {"point1": None, "point2": None}
    )
    azimuth: int = 0
    is_submitted: bool = False
    submitted_at: Optional[str] = None
    is_active: bool = False

    def point(self, point_number: int) -> Optional[Point]:
        return self.points.get(slot_name(point_number))

    def image(self, point_number: int) -> Optional[ImageRef]:
        return self.images.get(slot_name(point_number))

    @property
    def is_complete(self) -> bool:
        """Eligible for submission: both points captured."""
        return self.points.get("point1") is not None and self.points.get("point2") is not None

    @property
    def point_count(self) -> int:
        return sum(1 for p in self.points.values() if p is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "observer": self.observer,
            "timestamp": self.timestamp,
            "location": {
                "latitude": self.location.latitude,
                "longitude": self.location.longitude,
                "altitude": self.location.altitude,
            },
            "points": {k: (p.to_dict() if p else None) for k, p in self.points.items()},
            "images": {k: (i.to_dict() if i else None) for k, i in self.images.items()},
            "azimuth": self.azimuth,
            "isSubmitted": self.is_submitted,
            "submittedAt": self.submitted_at,
            "isActive": self.is_active,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SurveyArea":
        loc = data.get("location") or {}
        points = data.get("points") or {}
        images = data.get("images") or {}
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            observer=data.get("observer", ""),
            timestamp=data.get("timestamp", ""),
            location=GeoLocation(
                loc.get("latitude") or 0.0,
                loc.get("longitude") or 0.0,
                loc.get("altitude") or 0.0,
            ),
            points={s: Point.from_dict(points.get(s)) for s in ("point1", "point2")},
            images={s: ImageRef.from_dict(images.get(s)) for s in ("point1", "point2")},
            azimuth=int(data.get("azimuth") or 0),
            is_submitted=bool(data.get("isSubmitted", False)),
            submitted_at=data.get("submittedAt"),
            is_active=bool(data.get("isActive", False)),
        )


# ----------------------------------------------------------------------
# User-facing messages
# ----------------------------------------------------------------------
class Severity(Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """Plain-language message for the console, always with a next step."""
    title: str
    message: str
    severity: Severity = Severity.INFO
