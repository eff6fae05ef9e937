"""Shared fakes for catalog tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional

import pytest

from catalog.config import Settings
from catalog.gateway import ImageNotFound


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGateway:
    """In-memory stand-in for CloudflareImagesClient that counts calls."""

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None, delay: float = 0.0) -> None:
        self.records = list(records or [])
        self.delay = delay
        self.list_calls = 0
        self.fetch_calls = 0
        self.list_error: Optional[Exception] = None
        self.deleted: List[str] = []
        self.updated: List[tuple] = []
        self.uploads: List[Dict[str, Any]] = []

    async def list_all(self) -> List[Dict[str, Any]]:
        self.list_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.list_error is not None:
            raise self.list_error
        return [dict(record) for record in self.records]

    async def fetch_one(self, image_id: str) -> Dict[str, Any]:
        self.fetch_calls += 1
        for record in self.records:
            if record["id"] == image_id:
                return dict(record)
        raise ImageNotFound(image_id)

    async def delete_image(self, image_id: str) -> None:
        if not any(record["id"] == image_id for record in self.records):
            raise ImageNotFound(image_id)
        self.records = [record for record in self.records if record["id"] != image_id]
        self.deleted.append(image_id)

    async def update_metadata(self, image_id: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        self.updated.append((image_id, metadata))
        return {"id": image_id, "meta": metadata}

    async def upload_image(
        self, filename: str, content: bytes, content_type: str, metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        image_id = f"upload-{len(self.uploads) + 1}"
        record = {
            "id": image_id,
            "filename": filename,
            "uploaded": "2025-03-01T12:00:00Z",
            "variants": [f"https://imagedelivery.net/hash/{image_id}/public"],
            "meta": metadata,
        }
        self.uploads.append({"filename": filename, "content_type": content_type, "metadata": metadata})
        self.records.append(record)
        return record


def _make_record(image_id: str, filename: Optional[str] = None, meta: Any = None, **extra: Any) -> Dict[str, Any]:
    record = {
        "id": image_id,
        "filename": filename if filename is not None else f"{image_id}.png",
        "uploaded": "2025-01-01T00:00:00Z",
        "variants": [
            f"https://imagedelivery.net/hash/{image_id}/public",
            f"https://imagedelivery.net/hash/{image_id}/thumbnail",
        ],
        "meta": json.dumps(meta) if isinstance(meta, dict) else meta,
    }
    record.update(extra)
    return record


@pytest.fixture
def make_record():
    return _make_record


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway_factory():
    return FakeGateway


@pytest.fixture
def test_settings() -> Settings:
    return Settings(cache_ttl_seconds=60.0, file_log=False, log_level="WARNING")
