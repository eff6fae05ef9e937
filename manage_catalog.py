#!/usr/bin/env python3
"""
Catalog maintenance CLI

Works directly against Cloudflare Images through the same cache and
duplicate-detection code the web app uses.

Usage:
  python manage_catalog.py duplicates [--min-group-size 2]
  python manage_catalog.py audit [--variant public] [--concurrency 8] [--limit N] [--offset N]
  python manage_catalog.py hash-cache [--output logs/image-migrations/hash-cache.json] [--folder NAME] [--write-back]
"""

from __future__ import annotations

import argparse
import asyncio
import hashlib
import json
import logging
import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from catalog.cache import ImageCache
from catalog.config import Settings, load_settings
from catalog.duplicates import find_duplicate_groups, normalize_content_hash
from catalog.gateway import CatalogError, CloudflareImagesClient, build_delivery_url
from catalog.logging_config import configure_logging
from catalog.metadata import parse_metadata, prepare_metadata_for_write
from catalog.models import CachedImage

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_HASH_CACHE_PATH = BASE_DIR / "logs" / "image-migrations" / "hash-cache.json"

logger = logging.getLogger("manage_catalog")


def _atomic_write_json(path: Path, data: Dict[str, Any]) -> None:
    """Write JSON through a temp file in the same directory, then replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=path.name + ".", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(data, indent=2, ensure_ascii=False))
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


def _delivery_url(image: CachedImage, variant: str, account_hash: Optional[str]) -> Optional[str]:
    if account_hash:
        return build_delivery_url(account_hash, image.id, variant)
    if not image.variants:
        return None
    for url in image.variants:
        if url.rstrip("/").endswith(f"/{variant}"):
            return url
    return image.variants[0]


async def _probe(client: httpx.AsyncClient, url: str) -> httpx.Response:
    response = await client.head(url)
    if response.status_code not in (405, 501):
        return response
    return await client.get(url, headers={"Range": "bytes=0-0"})


async def audit_images(
    images: Sequence[CachedImage],
    variant: str = "public",
    concurrency: int = 8,
    account_hash: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """Check each image's delivery URL and sort failures into broken vs errors."""
    broken: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    semaphore = asyncio.Semaphore(max(1, concurrency))
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(15.0), follow_redirects=True)

    async def check(image: CachedImage) -> None:
        url = _delivery_url(image, variant, account_hash)
        entry: Dict[str, Any] = {"id": image.id, "filename": image.filename}
        if not url:
            broken.append({**entry, "reason": "missing-url"})
            return
        entry["url"] = url
        async with semaphore:
            try:
                response = await _probe(http, url)
            except httpx.HTTPError as exc:
                errors.append({**entry, "reason": str(exc) or exc.__class__.__name__})
                return
        if response.status_code in (404, 410):
            broken.append({**entry, "status": response.status_code, "reason": "not-found"})
        elif response.is_error:
            errors.append({**entry, "status": response.status_code, "reason": "request-failed"})

    try:
        await asyncio.gather(*(check(image) for image in images))
    finally:
        if owns_client:
            await http.aclose()
    return {"broken": broken, "errors": errors}


async def _hash_remote(client: httpx.AsyncClient, url: str) -> str:
    digest = hashlib.sha256()
    async with client.stream("GET", url) as response:
        response.raise_for_status()
        async for chunk in response.aiter_bytes():
            digest.update(chunk)
    return digest.hexdigest()


async def build_hash_cache(
    images: Sequence[CachedImage],
    gateway: Optional[CloudflareImagesClient] = None,
    write_back: bool = False,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Dict[str, Any]]:
    """Return ``hash -> image summary``, downloading images that lack a hash."""
    entries: Dict[str, Dict[str, Any]] = {}
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=httpx.Timeout(60.0), follow_redirects=True)
    try:
        for image in images:
            content_hash = normalize_content_hash(image.content_hash)
            if content_hash is None:
                if not image.url:
                    logger.warning("Skipping %s: no delivery URL", image.id)
                    continue
                try:
                    content_hash = await _hash_remote(http, image.url)
                except httpx.HTTPError as exc:
                    logger.warning("Failed to download %s for hashing: %s", image.id, exc)
                    continue
                if write_back and gateway is not None:
                    await _store_hash(gateway, image.id, content_hash)
            entries[content_hash] = {
                "id": image.id,
                "filename": image.filename,
                "originalUrl": image.original_url,
                "url": image.url,
            }
    finally:
        if owns_client:
            await http.aclose()
    return entries


async def _store_hash(gateway: CloudflareImagesClient, image_id: str, content_hash: str) -> None:
    record = await gateway.fetch_one(image_id)
    metadata = dict(parse_metadata(record.get("meta")))
    metadata["contentHash"] = content_hash
    metadata["updatedAt"] = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    await gateway.update_metadata(image_id, prepare_metadata_for_write(metadata))
    logger.info("Stored content hash for %s", image_id)


async def _load_images(settings: Settings, gateway: CloudflareImagesClient) -> List[CachedImage]:
    cache = ImageCache(gateway, ttl_seconds=settings.cache_ttl_seconds)
    return await cache.get_images(force_refresh=True)


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    gateway = CloudflareImagesClient(
        settings.account_id,
        settings.api_token,
        timeout=settings.http_timeout_seconds,
    )
    try:
        images = await _load_images(settings, gateway)
        print(f"Fetched {len(images)} images from Cloudflare")

        if args.cmd == "duplicates":
            report = find_duplicate_groups(images, min_group_size=args.min_group_size)
            print(
                f"Found {len(report.groups)} duplicate group(s) affecting "
                f"{report.affected_images} image(s) (URL + hash)."
            )
            for group in report.groups:
                print("\n=== Duplicate group ===")
                print(f"URL:  {group.url}")
                print(f"HASH: {group.content_hash}")
                for image in group.images:
                    print(f"- id={image.id} | filename={image.filename or '[none]'} | folder={image.folder or '[none]'}")
                    print(f"  originalUrl={image.original_url or '[none]'}")
            if report.missing_url or report.missing_hash:
                print("\nImages skipped (missing one of the keys):")
                print(f"- Missing normalized URL: {report.missing_url}")
                print(f"- Missing content hash:   {report.missing_hash}")
            return 0

        if args.cmd == "audit":
            end = args.offset + args.limit if args.limit > 0 else None
            targets = images[args.offset:end]
            result = await audit_images(
                targets,
                variant=args.variant,
                concurrency=args.concurrency,
                account_hash=settings.account_hash,
            )
            print(
                json.dumps(
                    {
                        "totalImages": len(images),
                        "checked": len(targets),
                        "broken": result["broken"],
                        "errors": result["errors"],
                        "variant": args.variant,
                        "offset": args.offset,
                        "checkedAt": datetime.now(timezone.utc).isoformat(),
                    },
                    indent=2,
                )
            )
            return 0

        if args.cmd == "hash-cache":
            targets = [image for image in images if not args.folder or image.folder == args.folder]
            entries = await build_hash_cache(targets, gateway=gateway, write_back=args.write_back)
            output = Path(args.output)
            _atomic_write_json(output, entries)
            print(f"Wrote {len(entries)} entries to {output}")
            return 0
    except CatalogError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 1
    finally:
        await gateway.aclose()
    return 0


def main(argv: list[str]) -> int:
    parser = argparse.ArgumentParser(description="Maintenance tasks for the Cloudflare image catalog.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    dup = sub.add_parser("duplicates", help="Show groups sharing both source URL and content hash")
    dup.add_argument("--min-group-size", type=int, default=2)

    audit = sub.add_parser("audit", help="Report images whose delivery URL is broken")
    audit.add_argument("--variant", default="public")
    audit.add_argument("--concurrency", type=int, default=8)
    audit.add_argument("--limit", type=int, default=0)
    audit.add_argument("--offset", type=int, default=0)

    hashes = sub.add_parser("hash-cache", help="Write a content-hash index of the catalog")
    hashes.add_argument("--output", default=str(DEFAULT_HASH_CACHE_PATH))
    hashes.add_argument("--folder", default=None)
    hashes.add_argument("--write-back", action="store_true", help="Store computed hashes in image metadata")

    args = parser.parse_args(argv)
    if args.cmd == "audit":
        args.offset = max(0, args.offset)

    settings = load_settings()
    settings.file_log = False
    configure_logging(settings)
    if not settings.credentials_configured:
        print("[error] Set CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN", file=sys.stderr)
        return 1
    return asyncio.run(_run(args, settings))


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
