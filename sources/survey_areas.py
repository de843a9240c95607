# survey_areas.py
"""
Survey area manager.

Owns the collection of survey areas (at most one of them active) and the two
"loose" point slots used when no area is active.  Every mutation of the
collection is written through to the repository as a whole.
"""

import copy
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from app_logger import logger
from models import (
    POINT_NUMBERS,
    GeoLocation,
    ImageRef,
    Notice,
    Point,
    Severity,
    SurveyArea,
    slot_name,
    utc_now_iso,
)
from settings import DEFAULT_AREA_LABEL, DEFAULT_OBSERVER
from survey_repository import SurveyRepository
from upload import UploadPipeline, UploadResult, UploadStatus

NoticeSink = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    logger.info("%s: %s", notice.title, notice.message)


@dataclass
class LoosePoints:
    """point1/point2 as shown on screen, plus the image picked for each."""
    points: Dict[int, Optional[Point]] = field(default_factory=lambda: {1: None, 2: None})
    images: Dict[int, Optional[ImageRef]] = field(default_factory=lambda: {1: None, 2: None})
    image_lists: Dict[int, List[ImageRef]] = field(default_factory=lambda: {1: [], 2: []})
    current_point: int = 1

    @property
    def is_complete(self) -> bool:
        return all(self.points[n] is not None for n in POINT_NUMBERS)

    @property
    def is_empty(self) -> bool:
        return all(self.points[n] is None for n in POINT_NUMBERS)

    def clear(self, drop_history: bool = False) -> None:
        # image history lists survive unless they have been uploaded
        self.points = {1: None, 2: None}
        self.images = {1: None, 2: None}
        self.current_point = 1
        if drop_history:
            self.image_lists = {1: [], 2: []}


class SurveyAreaManager:
    """
    Parameters
    ----------
    repository : SurveyRepository
        Write-through persistence for the area collection and loose points.
    location, compass :
        Anything exposing ``.latest`` (``LocationTracker`` / ``CompassReconciler``).
    uploader : UploadPipeline, optional
        Used by :meth:`submit_area` and :meth:`submit_loose_points`.
    """

    def __init__(
        self,
        repository: SurveyRepository,
        location,
        compass,
        uploader: Optional[UploadPipeline] = None,
        notify: NoticeSink = log_notice,
    ):
        self.repository = repository
        self.location = location
        self.compass = compass
        self.uploader = uploader
        self.notify = notify
        self.areas: List[SurveyArea] = []
        self.loose = LoosePoints()

    # ------------------------------------------------------------------
    # Lookup / state
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Restore areas and the loose points saved by a previous session."""
        self.areas = self.repository.load_areas()
        for n in POINT_NUMBERS:
            self.loose.points[n] = self.repository.load_point(n)
            self.loose.image_lists[n] = self.repository.load_image_list(n)
            # current images are not restored: a stale photo would be worse than none
        active = self.active_area
        logger.info(
            "loaded %d survey area(s)%s",
            len(self.areas),
            f", active: {active.name}" if active else "",
        )

    def get_area(self, area_id: str) -> Optional[SurveyArea]:
        return next((a for a in self.areas if a.id == area_id), None)

    @property
    def active_area(self) -> Optional[SurveyArea]:
        return next((a for a in self.areas if a.is_active), None)

    @property
    def in_survey_mode(self) -> bool:
        return self.active_area is not None

    def _persist(self) -> None:
        self.repository.save_areas(self.areas)

    def _new_area_id(self) -> str:
        stamp = int(time.time() * 1000)
        taken = {a.id for a in self.areas}
        while f"area_{stamp}" in taken:
            stamp += 1
        return f"area_{stamp}"

    def _heading(self) -> int:
        return int(round(self.compass.latest.heading))

    def _reset_loose(self, drop_history: bool = False) -> None:
        self.loose.clear(drop_history)
        self.repository.clear_loose_points()
        if drop_history:
            self.repository.clear_image_lists()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def create_area(self, name: Optional[str], observer: Optional[str]) -> SurveyArea:
        for area in self.areas:
            area.is_active = False

        area = SurveyArea(
            id=self._new_area_id(),
            name=name or f"{DEFAULT_AREA_LABEL} {len(self.areas) + 1}",
            observer=observer or DEFAULT_OBSERVER,
            timestamp=utc_now_iso(),
            location=GeoLocation.from_fix(self.location.latest),
            is_active=True,
        )
        self.areas.append(area)
        self._persist()
        self._reset_loose()

        where = (
            f"{area.location.latitude:.6f}, {area.location.longitude:.6f}"
            if self.location.latest else "waiting for GPS"
        )
        self.notify(Notice(
            "New survey started",
            f'"{area.name}" created ({where}). Measure point 1 first.',
            Severity.SUCCESS,
        ))
        logger.info("created area %s (%s) observer=%s", area.id, area.name, area.observer)
        return area

    def save_points_as_new_area(self, name: Optional[str], observer: Optional[str]) -> Optional[SurveyArea]:
        """Turn the two loose points into a finished, not yet submitted area."""
        if not self.loose.is_complete:
            self.notify(Notice(
                "Points missing",
                "Capture both point 1 and point 2 before saving them as an area.",
                Severity.WARNING,
            ))
            return None

        images = {n: self.loose.images[n] or self.repository.load_image(n) for n in POINT_NUMBERS}
        points = {}
        for n in POINT_NUMBERS:
            point = copy.deepcopy(self.loose.points[n])
            point.has_image = bool(images[n] and images[n].uri)
            points[slot_name(n)] = point

        fix = self.location.latest
        first = points["point1"]
        location = GeoLocation.from_fix(fix) if fix else GeoLocation(first.lat, first.lon, 0.0)

        area = SurveyArea(
            id=self._new_area_id(),
            name=name or f"{DEFAULT_AREA_LABEL} {len(self.areas) + 1}",
            observer=observer or DEFAULT_OBSERVER,
            timestamp=utc_now_iso(),
            location=location,
            points=points,
            images={slot_name(n): copy.deepcopy(images[n]) for n in POINT_NUMBERS},
            azimuth=self._heading(),
            is_active=False,
        )
        self.areas.append(area)
        self._persist()
        self._reset_loose()

        self.notify(Notice(
            "Saved offline",
            f'"{area.name}" is stored on this device. Submit it from the area list when online.',
            Severity.SUCCESS,
        ))
        logger.info("saved loose points as area %s (%s)", area.id, area.name)
        return area

    # ------------------------------------------------------------------
    # Mutation while surveying
    # ------------------------------------------------------------------
    def save_point_to_area(
        self, area_id: str, point_number: int, point: Point, image: Optional[ImageRef]
    ) -> bool:
        area = self.get_area(area_id)
        if area is None:
            logger.warning("save_point_to_area: no area %s", area_id)
            return False

        slot = slot_name(point_number)
        stored = copy.deepcopy(point)
        stored.has_image = bool(image and image.uri)
        area.points[slot] = stored
        area.images[slot] = copy.deepcopy(image)
        if self.location.latest is not None:
            area.location = GeoLocation.from_fix(self.location.latest)
        area.azimuth = self._heading()
        self._persist()
        logger.info("area %s: %s stored (image=%s)", area.name, slot, stored.has_image)
        return True

    def attach_image_to_active(self, point_number: int, image: ImageRef) -> bool:
        """Back-fill a photo picked after the point was already captured."""
        area = self.active_area
        if area is None:
            return False
        slot = slot_name(point_number)
        area.images[slot] = copy.deepcopy(image)
        if area.points[slot] is not None:
            area.points[slot].has_image = True
        self._persist()
        return True

    def finish_current_survey(self) -> bool:
        area = self.active_area
        if area is None:
            self.notify(Notice("No active survey", "Create a survey area first.", Severity.WARNING))
            return False
        if not area.is_complete:
            self.notify(Notice(
                "Incomplete, cannot finish",
                "Capture both points of this area before finishing the survey.",
                Severity.WARNING,
            ))
            return False

        for n in POINT_NUMBERS:
            slot = slot_name(n)
            # the photo may have reached storage after the point snapshot was taken
            final = area.images[slot] or self.repository.load_image(n) or self.loose.images[n]
            area.images[slot] = copy.deepcopy(final)
            area.points[slot].has_image = bool(final and final.uri)

        area.is_active = False
        self._persist()
        self._reset_loose()

        photos = sum(1 for i in area.images.values() if i is not None)
        self.notify(Notice(
            "Survey finished",
            f'"{area.name}" saved with {photos}/2 photo(s). Submit it when you are online.',
            Severity.SUCCESS,
        ))
        logger.info("finished area %s (%d photos)", area.id, photos)
        return True

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def delete_area(self, area_id: str) -> bool:
        before = len(self.areas)
        self.areas = [a for a in self.areas if a.id != area_id]
        if len(self.areas) == before:
            return False
        self._persist()
        logger.info("deleted area %s", area_id)
        return True

    def clear_all_areas(self) -> int:
        count = len(self.areas)
        self.areas = []
        self.repository.clear_areas()
        logger.info("cleared %d survey area(s)", count)
        self.notify(Notice("Areas cleared", f"Removed {count} survey area(s).", Severity.SUCCESS))
        return count

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------
    async def submit_area(self, area_id: str) -> UploadResult:
        area = self.get_area(area_id)
        if area is None:
            result = UploadResult(UploadStatus.INELIGIBLE, "This survey area no longer exists.")
        elif not area.is_complete:
            result = UploadResult(
                UploadStatus.INELIGIBLE,
                "Both points must be captured before this area can be submitted.",
            )
        elif self.uploader is None:
            raise RuntimeError("no upload pipeline configured")
        else:
            result = await self.uploader.submit_area(area)
            if result.ok:
                area.is_submitted = True
                area.submitted_at = utc_now_iso()
                self._persist()
        self.notify(result.to_notice())
        return result

    async def submit_loose_points(self, clear_after: bool = False) -> UploadResult:
        """Legacy flow: upload point1/point2 without an area around them."""
        if self.loose.is_empty:
            result = UploadResult(UploadStatus.INELIGIBLE, "There is no captured point to submit.")
        elif self.uploader is None:
            raise RuntimeError("no upload pipeline configured")
        else:
            active = self.active_area
            result = await self.uploader.submit_loose(
                point1=self.loose.points[1],
                point2=self.loose.points[2],
                image1=self.loose.images[1],
                image2=self.loose.images[2],
                observer=active.name if active else DEFAULT_AREA_LABEL,
                fix=self.location.latest,
                azimuth=self._heading(),
                image_list1=list(self.loose.image_lists[1]),
                image_list2=list(self.loose.image_lists[2]),
            )
            if result.ok and clear_after:
                self._reset_loose(drop_history=True)
        self.notify(result.to_notice())
        return result
