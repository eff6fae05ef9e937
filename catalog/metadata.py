"""Normalization of the opaque ``meta`` blob Cloudflare attaches to each image.

Cloudflare hands metadata back either as a JSON string or as an already decoded
object, with whatever keys a past client chose to write. Everything that reads
or writes metadata goes through this module so the open-ended shape never
leaks further than here.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, TypedDict, Union

from jsonschema import Draft7Validator

logger = logging.getLogger(__name__)


class NormalizedMetadata(TypedDict, total=False):
    folder: str
    tags: List[str]
    description: str
    originalUrl: str
    originalUrlNormalized: str
    contentHash: str
    altTag: str
    displayName: str
    variationParentId: str
    linkedAssetId: str
    exif: Dict[str, Union[str, float, int]]
    updatedAt: str


RawMetadata = Union[str, Dict[str, Any], None]

KNOWN_METADATA_FIELDS = (
    "folder",
    "tags",
    "description",
    "originalUrl",
    "originalUrlNormalized",
    "contentHash",
    "altTag",
    "displayName",
    "variationParentId",
    "linkedAssetId",
    "exif",
    "updatedAt",
)

_STRING_FIELDS = (
    "folder",
    "description",
    "originalUrl",
    "contentHash",
    "altTag",
    "displayName",
    "variationParentId",
    "linkedAssetId",
    "updatedAt",
)

METADATA_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "folder": {"type": "string", "minLength": 1},
        "tags": {"type": "array", "items": {"type": "string", "minLength": 1}},
        "description": {"type": "string"},
        "originalUrl": {"type": "string"},
        "originalUrlNormalized": {"type": "string"},
        "contentHash": {"type": "string", "pattern": "^(sha256:)?[A-Fa-f0-9]{64}$"},
        "altTag": {"type": "string"},
        "displayName": {"type": "string"},
        "variationParentId": {"type": "string", "minLength": 1},
        "linkedAssetId": {"type": "string", "minLength": 1},
        "exif": {
            "type": "object",
            "additionalProperties": {"type": ["string", "number"]},
        },
        "updatedAt": {"type": "string"},
    },
    "additionalProperties": False,
}

_validator = Draft7Validator(METADATA_SCHEMA)


def clean_string(value: Any) -> Optional[str]:
    """Trim ``value``; blank strings and the literal ``"undefined"`` become ``None``."""
    if not value or not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or trimmed.lower() == "undefined":
        return None
    return trimmed


def clean_tags(value: Any) -> List[str]:
    """Return distinct, cleaned tags from a list or a comma separated string."""
    if isinstance(value, str):
        candidates: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple)):
        candidates = value
    else:
        return []
    tags: List[str] = []
    for candidate in candidates:
        tag = clean_string(candidate)
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def pick_known_fields(obj: Dict[str, Any]) -> NormalizedMetadata:
    """Copy only the allow-listed metadata keys from ``obj``."""
    picked: Dict[str, Any] = {}
    for key in KNOWN_METADATA_FIELDS:
        value = obj.get(key)
        if value is not None:
            picked[key] = value
    return picked  # type: ignore[return-value]


def parse_metadata(raw: RawMetadata) -> NormalizedMetadata:
    """Parse metadata returned by Cloudflare as JSON text or as an object.

    Never raises: malformed input degrades to an empty mapping so one corrupt
    record cannot keep the rest of the catalog from loading.
    """
    if not raw:
        return {}

    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except (json.JSONDecodeError, ValueError) as exc:
            logger.warning("Failed to parse image metadata as JSON: %s", exc)
            return {}
        if isinstance(parsed, dict):
            return parsed  # type: ignore[return-value]
        logger.warning("Ignoring image metadata that is not a JSON object (%s)", type(parsed).__name__)
        return {}

    if isinstance(raw, dict):
        return pick_known_fields(raw)

    logger.debug("Ignoring image metadata of unsupported type %s", type(raw).__name__)
    return {}


def prepare_metadata_for_write(meta: Dict[str, Any]) -> NormalizedMetadata:
    """Return a bounded, schema-valid metadata payload for writing back to Cloudflare."""
    from .urls import normalize_url

    payload: Dict[str, Any] = dict(pick_known_fields(meta))
    for key in _STRING_FIELDS:
        if key in payload:
            cleaned = clean_string(payload[key])
            if cleaned is None:
                payload.pop(key)
            else:
                payload[key] = cleaned
    if "tags" in payload:
        payload["tags"] = clean_tags(payload["tags"])

    payload.pop("originalUrlNormalized", None)
    normalized = normalize_url(payload.get("originalUrl"))
    if normalized:
        payload["originalUrlNormalized"] = normalized

    invalid = set()
    for error in _validator.iter_errors(payload):
        if error.path:
            invalid.add(error.path[0])
        logger.warning("Dropping metadata field failing schema validation: %s", error.message)
    for key in invalid:
        payload.pop(key, None)
    return payload  # type: ignore[return-value]
