"""Duplicate detection against the cached catalog.

Three independent strategies with different trust levels: filename (weak,
cheap pre-flight), normalized source URL (strong when the source is stable)
and content hash (byte-exact, preferred whenever a hash is known).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .cache import ImageCache
from .models import CachedImage, DuplicateSummary
from .urls import normalize_url

_SHA256_RE = re.compile(r"^[a-f0-9]{64}$")


def normalize_filename(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def normalize_content_hash(value: Optional[str]) -> Optional[str]:
    """Lower-case ``value``, drop a ``sha256:`` prefix and require 64 hex chars."""
    if not value or not isinstance(value, str):
        return None
    candidate = value.strip().lower()
    if candidate.startswith("sha256:"):
        candidate = candidate[len("sha256:"):].strip()
    return candidate if _SHA256_RE.match(candidate) else None


def image_url_key(image: CachedImage) -> Optional[str]:
    return image.original_url_normalized or normalize_url(image.original_url)


def to_summary(image: CachedImage) -> DuplicateSummary:
    return DuplicateSummary(
        id=image.id,
        filename=image.filename,
        uploaded=image.uploaded,
        folder=image.folder,
        url=image.url,
    )


@dataclass
class DuplicateGroup:
    url: str
    content_hash: str
    images: List[CachedImage] = field(default_factory=list)


@dataclass
class DuplicateReport:
    groups: List[DuplicateGroup]
    missing_url: int = 0
    missing_hash: int = 0

    @property
    def affected_images(self) -> int:
        return sum(len(group.images) for group in self.groups)


def find_duplicate_groups(images: Sequence[CachedImage], min_group_size: int = 2) -> DuplicateReport:
    """Group images sharing both the normalized source URL and the content hash.

    Images with neither key are ignored; images with only one of them are
    counted in ``missing_url`` / ``missing_hash``.
    """
    by_key: Dict[Tuple[str, str], DuplicateGroup] = {}
    missing_url = 0
    missing_hash = 0
    for image in images:
        url_key = image_url_key(image)
        hash_key = normalize_content_hash(image.content_hash)
        if not url_key and not hash_key:
            continue
        if not url_key:
            missing_url += 1
            continue
        if not hash_key:
            missing_hash += 1
            continue
        group = by_key.setdefault((url_key, hash_key), DuplicateGroup(url=url_key, content_hash=hash_key))
        group.images.append(image)

    groups = [group for group in by_key.values() if len(group.images) >= max(1, min_group_size)]
    return DuplicateReport(groups=groups, missing_url=missing_url, missing_hash=missing_hash)


class DuplicateDetector:
    """Answers "does an equivalent image already exist?" from the cache snapshot."""

    def __init__(self, cache: ImageCache) -> None:
        self._cache = cache

    async def find_by_filename(self, filename: str, refresh: bool = False) -> List[CachedImage]:
        target = normalize_filename(filename)
        if not target:
            return []
        images = await self._cache.get_images(refresh)
        return [image for image in images if normalize_filename(image.filename) == target]

    async def find_by_original_url(self, url: str, refresh: bool = False) -> List[CachedImage]:
        target = normalize_url(url)
        if not target:
            return []
        images = await self._cache.get_images(refresh)
        return [image for image in images if image_url_key(image) == target]

    async def find_by_content_hash(self, content_hash: str, refresh: bool = False) -> List[CachedImage]:
        target = normalize_content_hash(content_hash)
        if not target:
            return []
        images = await self._cache.get_images(refresh)
        return [image for image in images if normalize_content_hash(image.content_hash) == target]

    to_summary = staticmethod(to_summary)


async def find_duplicates_by_filename(cache: ImageCache, filename: str, refresh: bool = False) -> List[CachedImage]:
    return await DuplicateDetector(cache).find_by_filename(filename, refresh)


async def find_duplicates_by_original_url(cache: ImageCache, url: str, refresh: bool = False) -> List[CachedImage]:
    return await DuplicateDetector(cache).find_by_original_url(url, refresh)


async def find_duplicates_by_content_hash(
    cache: ImageCache, content_hash: str, refresh: bool = False
) -> List[CachedImage]:
    return await DuplicateDetector(cache).find_by_content_hash(content_hash, refresh)


to_duplicate_summary = to_summary
