# image_compression.py
"""
Shrink a point photo before upload: longest side capped, JPEG re-encoded at
reduced quality.  Photos are never sent uncompressed, so any failure here
means "no photo" for the caller.
"""

import asyncio
from typing import Optional
from urllib.parse import unquote, urlparse

import cv2

from app_logger import logger
from models import ImageRef
from settings import IMAGE_JPEG_QUALITY, IMAGE_MAX_DIMENSION, MAX_PHOTO_BYTES
from timing_decorator import timed


def uri_to_path(uri: str) -> str:
    """``file:///a/b.jpg`` → ``/a/b.jpg``; plain paths pass through."""
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return unquote(parsed.path)
    return uri


@timed("compress_image")
def compress_image(
    uri: str,
    max_dimension: int = IMAGE_MAX_DIMENSION,
    quality: int = IMAGE_JPEG_QUALITY,
) -> Optional[bytes]:
    """
    Parameters
    ----------
    uri : str
        Local path or ``file://`` URI of the photo.
    max_dimension : int
        Longest side of the result in pixels; smaller images are not enlarged.
    quality : int
        JPEG quality, 0–100.

    Returns
    -------
    bytes | None
        JPEG bytes, or ``None`` when the photo cannot be read or encoded.
    """
    img = cv2.imread(uri_to_path(uri), cv2.IMREAD_COLOR)
    if img is None:
        logger.warning("cannot read image %s", uri)
        return None

    height, width = img.shape[:2]
    scale = max_dimension / float(max(height, width))
    if scale < 1.0:
        size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
        img = cv2.resize(img, size, interpolation=cv2.INTER_AREA)

    ok, buf = cv2.imencode(".jpg", img, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        logger.warning("JPEG encoding failed for %s", uri)
        return None
    data = buf.tobytes()
    logger.debug("compressed %s: %dx%d → %d bytes", uri, width, height, len(data))
    return data


async def prepare_photo(image: Optional[ImageRef]) -> Optional[bytes]:
    """Compress off the event loop; ``None`` means the photo part is omitted."""
    if image is None or not image.uri:
        return None
    try:
        data = await asyncio.to_thread(compress_image, image.uri)
    except cv2.error as exc:
        logger.error("image compression failed for %s: %s", image.uri, exc)
        return None
    if data is not None and len(data) > MAX_PHOTO_BYTES:
        logger.warning(
            "photo %s still %d bytes after compression (limit %d), leaving it out",
            image.uri, len(data), MAX_PHOTO_BYTES,
        )
        return None
    return data
