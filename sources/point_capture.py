# point_capture.py
"""
Point capture: freeze the live reading into point 1 or point 2.

One code path for both workflows.  The point always lands in the loose slot
(and its persisted copy); when a survey area is active the same point is
also stored into that area.
"""

import copy
import uuid
from typing import Callable, Optional

from app_logger import logger
from models import POINT_META_KEYS, ImageRef, Notice, Point, Severity, slot_name, utc_now_iso
from reading_aggregator import ReadingAggregator
from survey_areas import SurveyAreaManager
from survey_repository import SurveyRepository


class PointCapture:
    def __init__(
        self,
        aggregator: ReadingAggregator,
        areas: SurveyAreaManager,
        repository: SurveyRepository,
        device_id: Callable[[], Optional[str]] = lambda: None,
    ):
        self.aggregator = aggregator
        self.areas = areas
        self.repository = repository
        self.device_id = device_id

    @property
    def loose(self):
        return self.areas.loose

    @property
    def current_point(self) -> int:
        return self.loose.current_point

    def toggle_point(self) -> int:
        self.loose.current_point = 2 if self.loose.current_point == 1 else 1
        return self.loose.current_point

    # ------------------------------------------------------------------
    def capture_current_point(self, point_number: Optional[int] = None) -> Optional[Point]:
        """
        Snapshot the live reading as ``point_number`` (default: the current point).

        Returns ``None`` without touching any state when nothing has been
        received from the sensor yet.
        """
        n = point_number or self.current_point
        slot_name(n)

        live = self.aggregator.live
        if live.is_empty:
            self.areas.notify(Notice(
                "No sensor data",
                "Nothing has been received from the sensor yet. Connect and wait for a reading.",
                Severity.WARNING,
            ))
            return None

        # GPS and heading as they are right now, not as of the last BLE field
        fix = self.aggregator.location.latest
        heading = self.aggregator.compass.latest.heading
        image = self.loose.images[n]

        point = Point(
            point_number=n,
            timestamp=utc_now_iso(),
            device_id=self.device_id() or "unknown",
            readings={k: v for k, v in copy.deepcopy(live.sensor).items() if k not in POINT_META_KEYS},
            lat=fix.latitude if fix else live.lat,
            lon=fix.longitude if fix else live.lon,
            altitude=fix.altitude if fix and fix.altitude is not None else live.altitude,
            accuracy=fix.accuracy if fix else None,
            azimuth=int(round(heading)),
            has_image=image is not None,
        )

        self.loose.points[n] = point
        self.repository.save_point(point, image, self.loose.image_lists[n])

        active = self.areas.active_area
        if active is not None:
            self.areas.save_point_to_area(active.id, n, point, image)

        logger.info(
            "captured point %d: %s lat=%.6f lon=%.6f az=%d%s",
            n, point.readings, point.lat, point.lon, point.azimuth,
            f" → {active.name}" if active else "",
        )
        self.areas.notify(Notice(
            f"Point {n} saved",
            f"Point {n} captured" + (f' for "{active.name}".' if active else ".")
            + (" Now measure the other point." if not self._both_captured(active) else ""),
            Severity.SUCCESS,
        ))
        return point

    def _both_captured(self, area) -> bool:
        if area is not None:
            return area.is_complete
        return self.loose.is_complete

    # ------------------------------------------------------------------
    def attach_image(self, point_number: int, image: ImageRef) -> ImageRef:
        """Make ``image`` the current photo of a point and add it to its history."""
        slot_name(point_number)
        stamped = ImageRef(
            uri=image.uri,
            width=image.width,
            height=image.height,
            mime_type=image.mime_type or "image/jpeg",
            timestamp=utc_now_iso(),
            image_id=image.image_id or uuid.uuid4().hex,
        )
        self.loose.images[point_number] = stamped
        self.loose.image_lists[point_number].append(stamped)

        self.repository.save_image(point_number, stamped)
        self.repository.save_image_list(point_number, self.loose.image_lists[point_number])

        point = self.loose.points[point_number]
        if point is not None:
            point.has_image = True
        self.areas.attach_image_to_active(point_number, stamped)

        logger.info("image attached to point %d: %s", point_number, stamped.uri)
        return stamped
