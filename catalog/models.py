"""Data shapes shared by the cache, the gateway and the routes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, TypedDict, Union


class RawImageRecord(TypedDict, total=False):
    """One image as returned by the Cloudflare Images API."""

    id: str
    filename: str
    uploaded: str
    variants: List[str]
    meta: Union[str, Dict[str, Any], None]


@dataclass
class CachedImage:
    """Canonical in-memory representation of one remote image."""

    id: str
    filename: str
    uploaded: str
    variants: List[str] = field(default_factory=list)
    folder: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    alt_tag: Optional[str] = None
    description: Optional[str] = None
    display_name: Optional[str] = None
    original_url: Optional[str] = None
    original_url_normalized: Optional[str] = None
    content_hash: Optional[str] = None
    parent_id: Optional[str] = None
    linked_asset_id: Optional[str] = None
    exif: Optional[Dict[str, Union[str, float, int]]] = None
    updated_at: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self.variants[0] if self.variants else None

    def to_dict(self) -> Dict[str, Any]:
        """Return the camelCase JSON shape, omitting unset optional fields."""
        data: Dict[str, Any] = {
            "id": self.id,
            "filename": self.filename,
            "uploaded": self.uploaded,
            "variants": list(self.variants),
            "tags": list(self.tags),
        }
        optional = {
            "folder": self.folder,
            "altTag": self.alt_tag,
            "description": self.description,
            "displayName": self.display_name,
            "originalUrl": self.original_url,
            "originalUrlNormalized": self.original_url_normalized,
            "contentHash": self.content_hash,
            "parentId": self.parent_id,
            "linkedAssetId": self.linked_asset_id,
            "exif": dict(self.exif) if self.exif else None,
            "updatedAt": self.updated_at,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


@dataclass(frozen=True)
class DuplicateSummary:
    id: str
    filename: str
    uploaded: str
    folder: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "filename": self.filename, "uploaded": self.uploaded}
        if self.folder is not None:
            data["folder"] = self.folder
        if self.url is not None:
            data["url"] = self.url
        return data


@dataclass(frozen=True)
class CacheStats:
    last_refreshed_at: Optional[datetime]
    age_seconds: Optional[float]
    item_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastRefreshedAt": self.last_refreshed_at.isoformat() if self.last_refreshed_at else None,
            "ageSeconds": round(self.age_seconds, 3) if self.age_seconds is not None else None,
            "itemCount": self.item_count,
        }
