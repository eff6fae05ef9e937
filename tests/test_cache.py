"""Tests for the catalog cache: record mapping, TTL, single-flight refresh."""

import asyncio
import threading

import pytest

from catalog.cache import ImageCache, transform_record
from catalog.gateway import ImageNotFound, UpstreamError

HASH = "b" * 64


class TestTransformRecord:
    """Raw Cloudflare records map onto CachedImage fields."""

    def test_metadata_fields_are_mapped(self, make_record):
        record = make_record(
            "img-1",
            meta={
                "folder": "campaign",
                "tags": ["hero", "hero", " splash "],
                "altTag": "A cat",
                "originalUrl": "https://Example.com:443/cat.png#top",
                "contentHash": HASH,
                "variationParentId": "img-0",
                "exif": {"make": "Canon"},
                "size": 500,
            },
        )
        image = transform_record(record)
        assert image.id == "img-1"
        assert image.filename == "img-1.png"
        assert image.folder == "campaign"
        assert image.tags == ["hero", "splash"]
        assert image.alt_tag == "A cat"
        assert image.original_url_normalized == "https://example.com/cat.png"
        assert image.content_hash == HASH
        assert image.parent_id == "img-0"
        assert image.exif == {"make": "Canon"}
        assert image.url == "https://imagedelivery.net/hash/img-1/public"

    def test_filename_falls_back_to_display_name(self, make_record):
        image = transform_record(make_record("img-2", filename="", meta={"displayName": "Poster"}))
        assert image.filename == "Poster"
        assert transform_record(make_record("img-3", filename="")).filename == "Unknown"

    def test_filename_outside_allow_list_is_ignored(self, make_record):
        assert transform_record(make_record("img-7", filename="", meta={"filename": "legacy.png"})).filename == "Unknown"
        raw_json = make_record("img-8", filename="", meta='{"filename": "legacy.png"}')
        assert transform_record(raw_json).filename == "Unknown"

    def test_self_parent_is_dropped(self, make_record):
        image = transform_record(make_record("img-4", meta={"variationParentId": "img-4"}))
        assert image.parent_id is None

    def test_bad_metadata_still_yields_image(self, make_record):
        image = transform_record(make_record("img-5", meta="not-valid-json"))
        assert image.folder is None
        assert image.tags == []

    def test_missing_id_is_rejected(self):
        with pytest.raises(ValueError):
            transform_record({"filename": "x.png"})

    def test_to_dict_uses_wire_names(self, make_record):
        payload = transform_record(make_record("img-6", meta={"altTag": "Alt", "variationParentId": "p"})).to_dict()
        assert payload["altTag"] == "Alt"
        assert payload["parentId"] == "p"
        assert "description" not in payload


class TestImageCache:
    """Freshness, coalescing and failure handling of ImageCache."""

    @pytest.mark.asyncio
    async def test_ttl_controls_upstream_calls(self, gateway_factory, make_record, clock):
        gateway = gateway_factory([make_record("a")])
        cache = ImageCache(gateway, ttl_seconds=60, clock=clock)

        await cache.get_images()
        assert gateway.list_calls == 1

        clock.advance(30)
        await cache.get_images()
        assert gateway.list_calls == 1

        clock.advance(31)
        await cache.get_images()
        assert gateway.list_calls == 2

        await cache.get_images(force_refresh=True)
        assert gateway.list_calls == 3

    @pytest.mark.asyncio
    async def test_concurrent_forced_refreshes_share_one_call(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a"), make_record("b")], delay=0.05)
        cache = ImageCache(gateway)

        results = await asyncio.gather(*(cache.get_images(force_refresh=True) for _ in range(10)))

        assert gateway.list_calls == 1
        assert all(len(images) == 2 for images in results)

    @pytest.mark.asyncio
    async def test_failed_forced_refresh_keeps_previous_snapshot(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a")])
        cache = ImageCache(gateway)
        await cache.get_images()

        gateway.list_error = UpstreamError(500, "boom")
        with pytest.raises(UpstreamError) as excinfo:
            await cache.get_images(force_refresh=True)
        assert excinfo.value.status == 500

        gateway.list_error = None
        images = await cache.get_images()
        assert [image.id for image in images] == ["a"]
        assert gateway.list_calls == 2

    @pytest.mark.asyncio
    async def test_first_load_failure_propagates(self, gateway_factory):
        gateway = gateway_factory()
        gateway.list_error = UpstreamError(None, "network down")
        cache = ImageCache(gateway)
        with pytest.raises(UpstreamError):
            await cache.get_images()
        assert cache.get_cache_stats().last_refreshed_at is None

    @pytest.mark.asyncio
    async def test_expired_refresh_failure_serves_stale(self, gateway_factory, make_record, clock):
        gateway = gateway_factory([make_record("a"), make_record("b")])
        cache = ImageCache(gateway, ttl_seconds=60, clock=clock)
        await cache.get_images()

        clock.advance(120)
        gateway.list_error = UpstreamError(503, "unavailable")
        images = await cache.get_images()

        assert {image.id for image in images} == {"a", "b"}
        assert gateway.list_calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_refresh(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a")], delay=0.05)
        cache = ImageCache(gateway)

        caller = asyncio.ensure_future(cache.get_images(force_refresh=True))
        await asyncio.sleep(0.01)
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        await asyncio.sleep(0.1)
        assert cache.get_cache_stats().item_count == 1
        assert gateway.list_calls == 1

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a"), {"filename": "orphan.png"}])
        cache = ImageCache(gateway)
        images = await cache.get_images()
        assert [image.id for image in images] == ["a"]

    @pytest.mark.asyncio
    async def test_upsert_and_remove(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a")])
        cache = ImageCache(gateway)
        await cache.get_images()

        cache.upsert_image(transform_record(make_record("a", meta={"folder": "moved"})))
        cache.upsert_image(transform_record(make_record("c")))
        assert cache.get_image("a").folder == "moved"
        assert cache.get_image("c") is not None

        cache.remove_image("a")
        cache.remove_image("missing")
        assert cache.get_image("a") is None
        assert {image.id for image in await cache.get_images()} == {"c"}
        assert gateway.list_calls == 1

    @pytest.mark.asyncio
    async def test_fetch_image_falls_back_to_gateway(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a")])
        cache = ImageCache(gateway)

        image = await cache.fetch_image("a")
        assert image.id == "a"
        assert gateway.fetch_calls == 1

        await cache.fetch_image("a")
        assert gateway.fetch_calls == 1

        with pytest.raises(ImageNotFound):
            await cache.fetch_image("nope")

    @pytest.mark.asyncio
    async def test_cache_stats(self, gateway_factory, make_record, clock):
        cache = ImageCache(gateway_factory([make_record("a"), make_record("b")]), clock=clock)
        empty = cache.get_cache_stats()
        assert empty.item_count == 0
        assert empty.age_seconds is None

        await cache.get_images()
        clock.advance(12.5)
        stats = cache.get_cache_stats()
        assert stats.item_count == 2
        assert stats.age_seconds == pytest.approx(12.5)
        assert stats.to_dict()["itemCount"] == 2
        assert stats.to_dict()["lastRefreshedAt"].startswith("2023-11-14")

    @pytest.mark.asyncio
    async def test_mutations_during_refresh_survive_the_swap(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a"), make_record("b")], delay=0.05)
        cache = ImageCache(gateway)

        refresh = asyncio.ensure_future(cache.get_images(force_refresh=True))
        await asyncio.sleep(0.01)
        cache.upsert_image(transform_record(make_record("new")))
        cache.remove_image("a")
        await refresh

        assert cache.get_image("new") is not None
        assert cache.get_image("a") is None
        assert {image.id for image in await cache.get_images()} == {"b", "new"}

    @pytest.mark.asyncio
    async def test_mutation_queued_before_refresh_starts_is_kept(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a")], delay=0.02)
        cache = ImageCache(gateway)

        refresh = asyncio.ensure_future(cache.get_images(force_refresh=True))
        await asyncio.sleep(0)
        cache.upsert_image(transform_record(make_record("early")))
        await refresh

        assert cache.get_image("early") is not None

    @pytest.mark.asyncio
    async def test_pending_mutations_do_not_leak_into_later_refreshes(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a")], delay=0.02)
        cache = ImageCache(gateway)

        refresh = asyncio.ensure_future(cache.get_images(force_refresh=True))
        await asyncio.sleep(0.005)
        cache.remove_image("a")
        await refresh
        assert cache.get_image("a") is None

        await cache.get_images(force_refresh=True)
        assert cache.get_image("a") is not None

    def test_refreshes_from_separate_event_loops(self, gateway_factory, make_record):
        gateway = gateway_factory([make_record("a"), make_record("b")], delay=0.05)
        cache = ImageCache(gateway)
        results = []
        errors = []

        def worker():
            try:
                results.append(asyncio.run(cache.get_images(force_refresh=True)))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert [len(images) for images in results] == [2, 2]
        assert gateway.list_calls == 2
