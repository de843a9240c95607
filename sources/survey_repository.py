# survey_repository.py
"""
Higher-level service the survey components depend on.
It knows *what* to store (areas, loose points, images), not *how* to store it.

Writes are best-effort: a failing write is logged and reported as ``False``,
the caller's in-memory state stays the source of truth for the session.
"""

import json
import sqlite3
from typing import Any, List, Optional, Sequence

from app_logger import logger
from models import ImageRef, Point, SurveyArea, utc_now_iso
from settings import (
    KEY_IMAGE,
    KEY_IMAGE_LIST,
    KEY_POINT_DATA,
    KEY_POINT_META,
    KEY_SURVEY_AREAS,
)
from storage import KeyValueStore

_STORE_ERRORS = (sqlite3.Error, TypeError, ValueError)


class SurveyRepository:
    """
    Public API used by the area manager and point capture to persist data.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _write(self, key: str, value: Any) -> bool:
        try:
            self.store.set_json(key, value)
            return True
        except _STORE_ERRORS as exc:
            logger.error("persisting %s failed: %s", key, exc)
            return False

    def _read(self, key: str, default: Any = None) -> Any:
        try:
            return self.store.get_json(key, default)
        except (sqlite3.Error, json.JSONDecodeError) as exc:
            logger.error("reading %s failed: %s", key, exc)
            return default

    def _delete(self, key: str) -> None:
        try:
            self.store.delete(key)
        except sqlite3.Error as exc:
            logger.error("deleting %s failed: %s", key, exc)

    # ------------------------------------------------------------------
    # Survey areas – whole collection, overwritten on every change
    # ------------------------------------------------------------------
    def load_areas(self) -> List[SurveyArea]:
        raw = self._read(KEY_SURVEY_AREAS, [])
        areas = []
        for item in raw or []:
            try:
                areas.append(SurveyArea.from_dict(item))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping unreadable survey area record: %s", exc)
        return areas

    def save_areas(self, areas: Sequence[SurveyArea]) -> bool:
        return self._write(KEY_SURVEY_AREAS, [a.to_dict() for a in areas])

    def clear_areas(self) -> None:
        self._delete(KEY_SURVEY_AREAS)

    # ------------------------------------------------------------------
    # Loose points (capture outside of an active area)
    # ------------------------------------------------------------------
    def save_point(
        self,
        point: Point,
        image: Optional[ImageRef] = None,
        image_list: Sequence[ImageRef] = (),
    ) -> bool:
        """
        Persist one captured point together with its current image, the image
        history of that point and a small metadata record.
        """
        n = point.point_number
        ok = self._write(KEY_POINT_DATA.format(n=n), point.to_dict())
        if image is not None:
            stored = ImageRef(
                uri=image.uri,
                width=image.width,
                height=image.height,
                mime_type=image.mime_type or "image/jpeg",
                timestamp=utc_now_iso(),
                image_id=image.image_id,
            )
            ok = self._write(KEY_IMAGE.format(n=n), stored.to_dict()) and ok
        if image_list:
            ok = self.save_image_list(n, image_list) and ok
        meta = {
            "pointNumber": n,
            "totalImages": len(image_list),
            "hasMainImage": image is not None,
            "lastUpdated": utc_now_iso(),
            "dataKeys": list(point.to_dict().keys()),
        }
        return self._write(KEY_POINT_META.format(n=n), meta) and ok

    def load_point(self, point_number: int) -> Optional[Point]:
        return Point.from_dict(self._read(KEY_POINT_DATA.format(n=point_number)))

    def load_point_meta(self, point_number: int) -> Optional[dict]:
        return self._read(KEY_POINT_META.format(n=point_number))

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def save_image(self, point_number: int, image: ImageRef) -> bool:
        return self._write(KEY_IMAGE.format(n=point_number), image.to_dict())

    def load_image(self, point_number: int) -> Optional[ImageRef]:
        return ImageRef.from_dict(self._read(KEY_IMAGE.format(n=point_number)))

    def save_image_list(self, point_number: int, images: Sequence[ImageRef]) -> bool:
        return self._write(KEY_IMAGE_LIST.format(n=point_number), [i.to_dict() for i in images])

    def load_image_list(self, point_number: int) -> List[ImageRef]:
        raw = self._read(KEY_IMAGE_LIST.format(n=point_number), [])
        if not isinstance(raw, list):
            return []
        return [img for img in (ImageRef.from_dict(item) for item in raw) if img is not None]

    def clear_loose_points(self) -> None:
        for n in (1, 2):
            self._delete(KEY_POINT_DATA.format(n=n))
            self._delete(KEY_IMAGE.format(n=n))

    def clear_image_lists(self) -> None:
        for n in (1, 2):
            self._delete(KEY_IMAGE_LIST.format(n=n))
