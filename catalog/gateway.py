"""Async client for the Cloudflare Images API and its error taxonomy."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from .models import RawImageRecord

logger = logging.getLogger(__name__)

API_BASE_URL = "https://api.cloudflare.com/client/v4"
DELIVERY_BASE_URL = "https://imagedelivery.net"
LIST_PAGE_SIZE = 1000

# Named delivery variants understood by the gallery; anything else is passed
# through as a raw variant or transform string.
IMAGE_VARIANTS = {
    "original": "public",
    "small": "w=300",
    "medium": "w=600",
    "large": "w=900",
    "xlarge": "w=1230",
    "thumbnail": "thumbnail",
}


class CatalogError(Exception):
    """Base class for failures talking to the remote image catalog."""


class CredentialsMissing(CatalogError):
    def __init__(self, message: str = "Cloudflare credentials not configured") -> None:
        super().__init__(message)
        self.message = message


class UpstreamError(CatalogError):
    """Cloudflare rejected or failed a request; ``status`` is None for network failures."""

    def __init__(self, status: Optional[int], message: str) -> None:
        super().__init__(f"{status or 'network'}: {message}")
        self.status = status
        self.message = message


class ImageNotFound(CatalogError):
    def __init__(self, image_id: str) -> None:
        super().__init__(f"Image {image_id} not found")
        self.image_id = image_id


class CatalogGateway(Protocol):
    async def list_all(self) -> List[RawImageRecord]:
        ...

    async def fetch_one(self, image_id: str) -> RawImageRecord:
        ...


def build_delivery_url(account_hash: Optional[str], image_id: str, variant: str = "original") -> str:
    """Return the imagedelivery.net URL for ``image_id`` at ``variant``."""
    if not account_hash:
        raise CredentialsMissing("Cloudflare account hash not configured")
    value = IMAGE_VARIANTS.get(variant, variant)
    return f"{DELIVERY_BASE_URL}/{account_hash}/{image_id}/{value}"


def _error_message(response: httpx.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return fallback
    if isinstance(payload, dict):
        errors = payload.get("errors") or []
        if errors and isinstance(errors[0], dict) and errors[0].get("message"):
            return str(errors[0]["message"])
    return fallback


class CloudflareImagesClient:
    """Thin wrapper over the ``images/v1`` endpoints of one Cloudflare account.

    Credentials are checked on every call rather than at construction so an
    unconfigured process still starts and reports the problem per request.
    """

    def __init__(
        self,
        account_id: Optional[str],
        api_token: Optional[str],
        *,
        timeout: float = 30.0,
        base_url: str = API_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._account_id = account_id
        self._api_token = api_token
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout), transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self._account_id and self._api_token)

    def _require_credentials(self) -> Tuple[str, str]:
        if not self._account_id or not self._api_token:
            raise CredentialsMissing()
        return self._account_id, self._api_token

    async def _request(self, method: str, path: str, *, fallback: str, **kwargs: Any) -> Dict[str, Any]:
        account_id, api_token = self._require_credentials()
        url = f"{self._base_url}/accounts/{account_id}/images/v1{path}"
        headers = {"Authorization": f"Bearer {api_token}"}
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise UpstreamError(None, f"Timed out contacting Cloudflare: {exc}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(None, f"Failed to reach Cloudflare: {exc}") from exc

        if response.is_error:
            message = _error_message(response, fallback)
            logger.error("Cloudflare API error %s on %s %s: %s", response.status_code, method, path or "/", message)
            raise UpstreamError(response.status_code, message)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(response.status_code, "Cloudflare returned a non-JSON response") from exc
        return payload if isinstance(payload, dict) else {}

    async def list_all(self) -> List[RawImageRecord]:
        """Return every image in the account, following pagination to the end."""
        records: List[RawImageRecord] = []
        page = 1
        while True:
            payload = await self._request(
                "GET",
                "",
                params={"page": page, "per_page": LIST_PAGE_SIZE},
                fallback="Failed to fetch images from Cloudflare",
            )
            result = payload.get("result") or {}
            batch = result.get("images") if isinstance(result, dict) else None
            if not isinstance(batch, list):
                batch = []
            records.extend(item for item in batch if isinstance(item, dict))
            if len(batch) < LIST_PAGE_SIZE:
                break
            page += 1
        logger.debug("Listed %d Cloudflare images across %d page(s)", len(records), page)
        return records

    async def fetch_one(self, image_id: str) -> RawImageRecord:
        try:
            payload = await self._request("GET", f"/{image_id}", fallback="Failed to fetch image from Cloudflare")
        except UpstreamError as exc:
            if exc.status == 404:
                raise ImageNotFound(image_id) from exc
            raise
        result = payload.get("result")
        if not isinstance(result, dict):
            raise ImageNotFound(image_id)
        return result  # type: ignore[return-value]

    async def delete_image(self, image_id: str) -> None:
        try:
            await self._request("DELETE", f"/{image_id}", fallback="Failed to delete image from Cloudflare")
        except UpstreamError as exc:
            if exc.status == 404:
                raise ImageNotFound(image_id) from exc
            raise

    async def update_metadata(self, image_id: str, metadata: Dict[str, Any]) -> RawImageRecord:
        try:
            payload = await self._request(
                "PATCH",
                f"/{image_id}",
                json={"metadata": metadata},
                fallback="Failed to update image metadata",
            )
        except UpstreamError as exc:
            if exc.status == 404:
                raise ImageNotFound(image_id) from exc
            raise
        result = payload.get("result")
        return result if isinstance(result, dict) else {}

    async def upload_image(
        self,
        filename: str,
        content: bytes,
        content_type: str,
        metadata: Dict[str, Any],
    ) -> RawImageRecord:
        payload = await self._request(
            "POST",
            "",
            files={"file": (filename, content, content_type)},
            data={"metadata": json.dumps(metadata)},
            fallback="Failed to upload to Cloudflare",
        )
        result = payload.get("result")
        if not isinstance(result, dict) or not result.get("id"):
            raise UpstreamError(None, "Cloudflare upload response did not include an image")
        return result  # type: ignore[return-value]

    async def aclose(self) -> None:
        await self._client.aclose()
