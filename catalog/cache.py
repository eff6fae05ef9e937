"""In-process cache of the full Cloudflare image catalog.

The snapshot is a plain dict that is replaced wholesale on refresh, so readers
see either the previous or the next catalog, never a mix. Refreshes are
single-flight per event loop: while one is running, every other caller on
that loop awaits the same task.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Set

import httpx

from .gateway import CatalogError, CatalogGateway
from .metadata import clean_string, clean_tags, parse_metadata
from .models import CachedImage, CacheStats, RawImageRecord
from .urls import normalize_url

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60.0


def transform_record(record: RawImageRecord) -> CachedImage:
    """Map a raw Cloudflare record onto a :class:`CachedImage`."""
    image_id = clean_string(record.get("id"))
    if not image_id:
        raise ValueError("image record has no id")

    meta = parse_metadata(record.get("meta"))
    filename = (
        clean_string(record.get("filename"))
        or clean_string(meta.get("displayName"))
        or "Unknown"
    )
    variants = record.get("variants")
    if not isinstance(variants, list):
        variants = []

    parent_id = clean_string(meta.get("variationParentId"))
    if parent_id == image_id:
        parent_id = None

    original_url = clean_string(meta.get("originalUrl"))
    exif = meta.get("exif")

    return CachedImage(
        id=image_id,
        filename=filename,
        uploaded=str(record.get("uploaded") or ""),
        variants=[str(v) for v in variants if v],
        folder=clean_string(meta.get("folder")),
        tags=clean_tags(meta.get("tags")),
        alt_tag=clean_string(meta.get("altTag")),
        description=clean_string(meta.get("description")),
        display_name=clean_string(meta.get("displayName")),
        original_url=original_url,
        original_url_normalized=normalize_url(original_url),
        content_hash=clean_string(meta.get("contentHash")),
        parent_id=parent_id,
        linked_asset_id=clean_string(meta.get("linkedAssetId")),
        exif=dict(exif) if isinstance(exif, dict) and exif else None,
        updated_at=clean_string(meta.get("updatedAt")),
    )


class ImageCache:
    """Shared, refresh-on-demand snapshot of every image in the catalog.

    Each event loop gets its own in-flight refresh task; the snapshot itself
    is shared and guarded by a thread lock. Upserts and removals made while a
    refresh is fetching are replayed onto the fetched catalog before it
    replaces the snapshot.
    """

    def __init__(
        self,
        gateway: CatalogGateway,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._gateway = gateway
        self._ttl = max(0.0, float(ttl_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._images: Dict[str, CachedImage] = {}
        self._loaded_at: Optional[float] = None
        self._refresh_tasks: Dict[asyncio.AbstractEventLoop, asyncio.Task] = {}
        self._refreshes_in_flight = 0
        self._pending_upserts: Dict[str, CachedImage] = {}
        self._pending_removals: Set[str] = set()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _is_stale(self) -> bool:
        if self._loaded_at is None:
            return True
        return (self._clock() - self._loaded_at) >= self._ttl

    def _snapshot(self) -> List[CachedImage]:
        with self._lock:
            return list(self._images.values())

    async def get_images(self, force_refresh: bool = False) -> List[CachedImage]:
        """Return the catalog, refreshing first when forced, empty or expired.

        A failed forced refresh (or a failed first load) raises. A failed
        TTL-driven refresh is logged and the stale snapshot is served.
        """
        if force_refresh or self._loaded_at is None:
            await self._refresh()
        elif self._is_stale():
            try:
                await self._refresh()
            except (CatalogError, httpx.HTTPError) as exc:
                logger.warning("Background image cache refresh failed; serving stale snapshot: %s", exc)
        return self._snapshot()

    def get_image(self, image_id: str) -> Optional[CachedImage]:
        with self._lock:
            return self._images.get(image_id)

    async def fetch_image(self, image_id: str) -> CachedImage:
        """Return a cached image, falling back to a single-item fetch on a miss."""
        cached = self.get_image(image_id)
        if cached is not None:
            return cached
        record = await self._gateway.fetch_one(image_id)
        image = transform_record(record)
        self.upsert_image(image)
        return image

    def upsert_image(self, image: CachedImage) -> None:
        with self._lock:
            self._images[image.id] = image
            if self._refreshes_in_flight:
                self._pending_upserts[image.id] = image
                self._pending_removals.discard(image.id)

    def remove_image(self, image_id: str) -> None:
        with self._lock:
            self._images.pop(image_id, None)
            if self._refreshes_in_flight:
                self._pending_removals.add(image_id)
                self._pending_upserts.pop(image_id, None)

    def get_cache_stats(self) -> CacheStats:
        with self._lock:
            count = len(self._images)
            loaded_at = self._loaded_at
        if loaded_at is None:
            return CacheStats(last_refreshed_at=None, age_seconds=None, item_count=count)
        return CacheStats(
            last_refreshed_at=datetime.fromtimestamp(loaded_at, tz=timezone.utc),
            age_seconds=max(0.0, self._clock() - loaded_at),
            item_count=count,
        )

    async def _refresh(self) -> None:
        loop = asyncio.get_running_loop()
        with self._lock:
            task = self._refresh_tasks.get(loop)
            if task is None or task.done():
                task = loop.create_task(self._load_catalog())
                task.add_done_callback(self._refresh_finished)
                self._refresh_tasks[loop] = task
                self._refreshes_in_flight += 1
            else:
                logger.debug("Joining in-flight image cache refresh")
        # Shielded so a cancelled request does not abort the refresh for other waiters.
        await asyncio.shield(task)

    def _refresh_finished(self, task: asyncio.Task) -> None:
        with self._lock:
            loop = task.get_loop()
            if self._refresh_tasks.get(loop) is task:
                del self._refresh_tasks[loop]
            self._refreshes_in_flight -= 1
            if not self._refreshes_in_flight:
                self._pending_upserts.clear()
                self._pending_removals.clear()
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Image cache refresh task failed: %s", task.exception())

    async def _load_catalog(self) -> None:
        started = time.perf_counter()
        records = await self._gateway.list_all()
        images: Dict[str, CachedImage] = {}
        for record in records:
            try:
                image = transform_record(record)
            except ValueError as exc:
                logger.warning("Skipping malformed image record: %s", exc)
                continue
            images[image.id] = image
        with self._lock:
            # Replay mutations made while the list was being fetched.
            images.update(self._pending_upserts)
            for image_id in self._pending_removals:
                images.pop(image_id, None)
            self._images = images
            self._loaded_at = self._clock()
        logger.info(
            "Image cache refreshed with %d images in %.2fs",
            len(images),
            time.perf_counter() - started,
        )
