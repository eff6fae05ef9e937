"""Upload enrichment: EXIF summary and content digest of image bytes."""

from __future__ import annotations

import hashlib
import logging
from io import BytesIO
from typing import Any, Dict, Optional, Union

from PIL import ExifTags, Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

ExifSummary = Dict[str, Union[str, float, int]]

_EXIF_IFD = 0x8769

# summary key -> EXIF tag names to try, in order
_SUMMARY_TAGS = {
    "make": ("Make",),
    "model": ("Model",),
    "lens": ("LensModel", "LensSpecification"),
    "dateTimeOriginal": ("DateTimeOriginal",),
    "exposureTime": ("ExposureTime",),
    "fNumber": ("FNumber",),
    "iso": ("ISOSpeedRatings", "PhotographicSensitivity"),
    "focalLength": ("FocalLength",),
}


def compute_content_hash(content: bytes) -> str:
    """Return the hex SHA-256 digest of ``content``."""
    return hashlib.sha256(content).hexdigest()


def _format_value(value: Any) -> Optional[Union[str, float, int]]:
    if value is None:
        return None
    if isinstance(value, bytes):
        text = value.decode("utf-8", errors="ignore").rstrip("\x00").strip()
        return text or None
    if isinstance(value, str):
        return value.rstrip("\x00").strip() or None
    if isinstance(value, (list, tuple)):
        parts = [_format_value(item) for item in value]
        cleaned = [str(part) for part in parts if part not in (None, "")]
        return ", ".join(cleaned) if cleaned else None
    numerator = getattr(value, "numerator", None)
    denominator = getattr(value, "denominator", None)
    if isinstance(value, int):
        return value
    if isinstance(numerator, int) and isinstance(denominator, int):
        if denominator == 0:
            return None
        return f"{numerator}/{denominator}"
    if isinstance(value, float):
        return value
    return str(value) or None


def extract_exif_summary(content: bytes) -> Optional[ExifSummary]:
    """Return a small camera/exposure summary from image bytes, or ``None``."""
    try:
        with Image.open(BytesIO(content)) as img:
            exif = img.getexif()
            if not exif:
                return None
            tags: Dict[str, Any] = {}
            for tag_id, value in exif.items():
                tags[ExifTags.TAGS.get(tag_id, str(tag_id))] = value
            for tag_id, value in exif.get_ifd(_EXIF_IFD).items():
                tags[ExifTags.TAGS.get(tag_id, str(tag_id))] = value
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logger.debug("Unable to extract EXIF data: %s", exc)
        return None

    summary: ExifSummary = {}
    for key, names in _SUMMARY_TAGS.items():
        for name in names:
            formatted = _format_value(tags.get(name))
            if formatted not in (None, ""):
                summary[key] = formatted
                break
    return summary or None
