# upload.py
"""
Upload pipeline: probe → compress → multipart POST → translate the outcome.

The caller always gets an :class:`UploadResult` back, never an exception
from the network layer.  Nothing local is modified here; marking an area as
submitted is up to the caller once ``result.ok`` is true.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiohttp

from app_logger import logger
from image_compression import prepare_photo
from models import GpsFix, ImageRef, Notice, Point, Severity, SurveyArea
from settings import (
    API_URL,
    DEFAULT_OBSERVER,
    PROBE_TIMEOUT_S,
    PROBE_URL,
    UPLOAD_TIMEOUT_S,
    USER_ID,
)
from timing_decorator import timed

PHOTO_FIELDS = ("photo1", "photo2")
MEASUREMENT_FIELDS = ("distance1", "elevation1", "distance2", "elevation2")
BODY_SUFFIX_MAX = 200


class UploadStatus(Enum):
    SUCCESS = "success"
    SUCCESS_WITHOUT_PHOTOS = "success_without_photos"
    INELIGIBLE = "ineligible"
    NO_INTERNET = "no_internet"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERVER_ERROR = "server_error"
    HTTP_ERROR = "http_error"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"


_TITLES = {
    UploadStatus.SUCCESS: "Submitted",
    UploadStatus.SUCCESS_WITHOUT_PHOTOS: "Submitted without photos",
    UploadStatus.INELIGIBLE: "Cannot submit yet",
    UploadStatus.NO_INTERNET: "No internet connection",
    UploadStatus.PAYLOAD_TOO_LARGE: "File too large",
    UploadStatus.SERVER_ERROR: "Server problem",
    UploadStatus.HTTP_ERROR: "Server error",
    UploadStatus.NETWORK_ERROR: "Connection problem",
    UploadStatus.TIMEOUT: "Upload timed out",
}


@dataclass(frozen=True)
class UploadResult:
    status: UploadStatus
    message: str
    http_status: Optional[int] = None
    body: Any = None
    photos_sent: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (UploadStatus.SUCCESS, UploadStatus.SUCCESS_WITHOUT_PHOTOS)

    def to_notice(self) -> Notice:
        if self.status is UploadStatus.SUCCESS:
            severity = Severity.SUCCESS
        elif self.status in (UploadStatus.SUCCESS_WITHOUT_PHOTOS, UploadStatus.INELIGIBLE):
            severity = Severity.WARNING
        else:
            severity = Severity.ERROR
        return Notice(_TITLES[self.status], self.message, severity)


def _fmt(value: Optional[float], places: int) -> str:
    return f"{(value if value is not None else 0.0):.{places}f}"


@dataclass
class UploadRequest:
    """Everything that goes into one multipart body, already resolved."""
    observer: str
    camera_lat: float
    camera_lng: float
    azimuth: int
    distance1: Optional[float] = None
    elevation1: Optional[float] = None
    distance2: Optional[float] = None
    elevation2: Optional[float] = None
    photo1: Optional[ImageRef] = None
    photo2: Optional[ImageRef] = None
    extra: Dict[str, str] = field(default_factory=dict)
    # (part name, image) for the photo history of each point, legacy flow only
    extra_photos: List[Tuple[str, ImageRef]] = field(default_factory=list)

    @classmethod
    def from_area(cls, area: SurveyArea) -> "UploadRequest":
        p1, p2 = area.point(1), area.point(2)
        # photos come from ``images`` directly, hasImage is not trusted
        return cls(
            observer=area.name or DEFAULT_OBSERVER,
            camera_lat=area.location.latitude,
            camera_lng=area.location.longitude,
            azimuth=area.azimuth,
            distance1=p1.distance if p1 else None,
            elevation1=p1.elevation if p1 else None,
            distance2=p2.distance if p2 else None,
            elevation2=p2.elevation if p2 else None,
            photo1=area.image(1),
            photo2=area.image(2),
        )

    @classmethod
    def from_loose(
        cls,
        point1: Optional[Point],
        point2: Optional[Point],
        image1: Optional[ImageRef],
        image2: Optional[ImageRef],
        observer: str,
        fix: Optional[GpsFix],
        azimuth: int,
        image_list1: Sequence[ImageRef] = (),
        image_list2: Sequence[ImageRef] = (),
    ) -> "UploadRequest":
        camera_lat = fix.latitude if fix else (point1.lat if point1 else 0.0)
        camera_lng = fix.longitude if fix else (point1.lon if point1 else 0.0)
        lat = point1.lat if point1 and point1.lat else camera_lat
        lng = point1.lon if point1 and point1.lon else camera_lng
        return cls(
            observer=observer,
            camera_lat=camera_lat,
            camera_lng=camera_lng,
            azimuth=azimuth,
            distance1=point1.distance if point1 else None,
            elevation1=point1.elevation if point1 else None,
            distance2=point2.distance if point2 else None,
            elevation2=point2.elevation if point2 else None,
            photo1=image1,
            photo2=image2,
            extra={"latitude": _fmt(lat, 7), "longitude": _fmt(lng, 7)},
            extra_photos=[
                (f"photo{n}_extra_{i}", image)
                for n, history in ((1, image_list1), (2, image_list2))
                for i, image in enumerate(history)
                if image is not None and image.uri
            ],
        )

    def form_fields(self, user_id: str = USER_ID) -> List[Tuple[str, str]]:
        missing = [name for name in MEASUREMENT_FIELDS if getattr(self, name) is None]
        if missing:
            logger.warning("no value for %s, sending 0.0", ", ".join(missing))
        fields = [
            ("user_id", user_id),
            ("observer", self.observer),
            ("camera_lat", _fmt(self.camera_lat, 7)),
            ("camera_lng", _fmt(self.camera_lng, 7)),
            ("azimuth", str(int(round(self.azimuth or 0)))),
            ("distance1", _fmt(self.distance1, 1)),
            ("elevation1", _fmt(self.elevation1, 1)),
            ("distance2", _fmt(self.distance2, 1)),
            ("elevation2", _fmt(self.elevation2, 1)),
        ]
        fields.extend(self.extra.items())
        return fields


def build_form(fields: List[Tuple[str, str]], photos: Dict[str, bytes]) -> aiohttp.FormData:
    """No explicit Content-Type header: aiohttp sets the multipart boundary."""
    form = aiohttp.FormData()
    for name, value in fields:
        form.add_field(name, value)
    for name, data in photos.items():
        if data:
            form.add_field(name, data, filename=f"{name}.jpg", content_type="image/jpeg")
    return form


def _parse_body(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return text


def _body_suffix(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "title", "error", "detail"):
            if body.get(key):
                return f": {str(body[key])[:BODY_SUFFIX_MAX]}"
        return ""
    if isinstance(body, str) and body.strip():
        return f": {body.strip()[:BODY_SUFFIX_MAX]}"
    return ""


class UploadPipeline:
    """
    Parameters
    ----------
    url : str
        Multipart endpoint.
    session_factory : callable
        ``aiohttp.ClientSession`` or a stand-in with the same shape
        (``timeout=`` keyword, async context manager, ``head``/``post``).
    """

    def __init__(
        self,
        url: str = API_URL,
        user_id: str = USER_ID,
        probe_url: str = PROBE_URL,
        probe_timeout: float = PROBE_TIMEOUT_S,
        upload_timeout: float = UPLOAD_TIMEOUT_S,
        session_factory: Callable[..., Any] = aiohttp.ClientSession,
    ):
        self.url = url
        self.user_id = user_id
        self.probe_url = probe_url
        self.probe_timeout = probe_timeout
        self.upload_timeout = upload_timeout
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    async def check_internet(self) -> bool:
        """Any HTTP answer from the probe host counts as online."""
        try:
            async with self.session_factory(
                timeout=aiohttp.ClientTimeout(total=self.probe_timeout)
            ) as session:
                async with session.head(self.probe_url, allow_redirects=True) as resp:
                    logger.debug("connectivity probe %s → %s", self.probe_url, resp.status)
                    return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.info("connectivity probe failed: %r", exc)
            return False

    @timed("upload_post")
    async def _post(self, fields: List[Tuple[str, str]], photos: Dict[str, bytes]) -> Tuple[int, Any]:
        async with self.session_factory(
            timeout=aiohttp.ClientTimeout(total=self.upload_timeout)
        ) as session:
            async with session.post(self.url, data=build_form(fields, photos)) as resp:
                text = await resp.text()
                return resp.status, _parse_body(text)

    # ------------------------------------------------------------------
    async def submit(self, request: UploadRequest) -> UploadResult:
        # 1️⃣ connectivity
        if not await self.check_internet():
            return UploadResult(
                UploadStatus.NO_INTERNET,
                "No internet connection. Your data is kept on this device; "
                "check Wi-Fi or mobile data and submit again.",
            )

        # 2️⃣ photos
        photos: Dict[str, bytes] = {}
        named = list(zip(PHOTO_FIELDS, (request.photo1, request.photo2))) + request.extra_photos
        for name, image in named:
            data = await prepare_photo(image)
            if data is not None:
                photos[name] = data

        # 3️⃣ post
        fields = request.form_fields(self.user_id)
        logger.info(
            "uploading %s to %s (%d photo(s)): %s",
            request.observer, self.url, len(photos), dict(fields),
        )
        try:
            status, body = await self._post(fields, photos)
            if status == 413 and photos:
                logger.warning("server answered 413, retrying once without photos")
                status, body = await self._post(fields, {})
                if 200 <= status < 300:
                    return UploadResult(
                        UploadStatus.SUCCESS_WITHOUT_PHOTOS,
                        "The photos were too large for the server, so the measurements "
                        "were sent without them.",
                        http_status=status,
                        body=body,
                    )
                return self._too_large(status, body)
        except asyncio.TimeoutError:
            logger.error("upload to %s timed out after %.0f s", self.url, self.upload_timeout)
            return UploadResult(
                UploadStatus.TIMEOUT,
                "The upload took too long. Your data is kept on this device; "
                "try again with a stronger connection.",
            )
        except aiohttp.ClientError as exc:
            logger.error("upload to %s failed: %r", self.url, exc)
            return UploadResult(
                UploadStatus.NETWORK_ERROR,
                "Could not reach the server. Your data is kept on this device; "
                "check your connection and try again.",
            )

        # 4️⃣ outcome
        return self._translate(status, body, len(photos), request)

    def _too_large(self, status: int, body: Any) -> UploadResult:
        return UploadResult(
            UploadStatus.PAYLOAD_TOO_LARGE,
            "The upload is too large for the server, even without photos. "
            "Your data is kept on this device; contact the survey administrator.",
            http_status=status,
            body=body,
        )

    def _translate(self, status: int, body: Any, photos_sent: int, request: UploadRequest) -> UploadResult:
        if 200 <= status < 300:
            logger.info("upload accepted (%d): %s", status, body)
            return UploadResult(
                UploadStatus.SUCCESS,
                f'"{request.observer}" sent: point 1 {_fmt(request.distance1, 1)} m / '
                f"{_fmt(request.elevation1, 1)}°, point 2 {_fmt(request.distance2, 1)} m / "
                f"{_fmt(request.elevation2, 1)}°, azimuth {request.azimuth}°, "
                f"{photos_sent} photo(s).",
                http_status=status,
                body=body,
                photos_sent=photos_sent,
            )
        logger.error("upload rejected (%d): %s", status, body)
        if status == 413:
            return self._too_large(status, body)
        if status == 500:
            return UploadResult(
                UploadStatus.SERVER_ERROR,
                "The server had a problem processing the data. "
                "Your data is kept on this device; try again later.",
                http_status=status,
                body=body,
            )
        return UploadResult(
            UploadStatus.HTTP_ERROR,
            f"Server error {status}{_body_suffix(body)}. Your data is kept on this device; try again later.",
            http_status=status,
            body=body,
        )

    # ------------------------------------------------------------------
    async def submit_area(self, area: SurveyArea) -> UploadResult:
        return await self.submit(UploadRequest.from_area(area))

    async def submit_loose(self, **kwargs: Any) -> UploadResult:
        return await self.submit(UploadRequest.from_loose(**kwargs))
