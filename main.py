# main.py
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette import status
from starlette.concurrency import run_in_threadpool

from catalog.cache import ImageCache, transform_record
from catalog.config import Settings, load_settings, settings_summary
from catalog.duplicates import DuplicateDetector, to_summary
from catalog.exif import compute_content_hash, extract_exif_summary
from catalog.gallery import ALL_FOLDERS, filter_images, folder_counts
from catalog.gateway import (
    CatalogError,
    CloudflareImagesClient,
    CredentialsMissing,
    ImageNotFound,
    UpstreamError,
)
from catalog.logging_config import configure_logging
from catalog.metadata import clean_string, clean_tags, parse_metadata, prepare_metadata_for_write
from catalog.models import CachedImage

# --- Configuration ---
BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger(__name__)

router = APIRouter()


class ImageUpdate(BaseModel):
    """Metadata edit; omitted fields keep their stored value, empty values clear it."""

    folder: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None
    description: Optional[str] = None
    altTag: Optional[str] = None
    originalUrl: Optional[str] = None
    parentId: Optional[str] = None


class FolderRename(BaseModel):
    newName: Optional[str] = None


def _sanitize_filename(filename: str) -> str:
    """Return a safe filename without directory traversal."""
    return Path(filename).name


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _summaries(images) -> List[Dict[str, Any]]:
    return [to_summary(image).to_dict() for image in images]


async def _catalog_error_handler(request: Request, exc: CatalogError) -> JSONResponse:
    if isinstance(exc, CredentialsMissing):
        logger.error("Rejected %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse({"error": exc.message}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
    if isinstance(exc, ImageNotFound):
        return JSONResponse({"error": str(exc)}, status_code=status.HTTP_404_NOT_FOUND)
    if isinstance(exc, UpstreamError):
        code = exc.status if exc.status and exc.status >= 400 else status.HTTP_502_BAD_GATEWAY
        return JSONResponse({"error": exc.message}, status_code=code)
    logger.exception("Unhandled catalog error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


@router.get("/api/images", response_class=JSONResponse)
async def list_images(
    request: Request,
    refresh: bool = False,
    folder: str = ALL_FOLDERS,
    tag: str = "",
    search: str = "",
    canonical: bool = False,
    hidden: Optional[str] = None,
) -> JSONResponse:
    cache: ImageCache = request.app.state.image_cache
    images = await cache.get_images(force_refresh=refresh)
    hidden_folders = [name.strip() for name in hidden.split(",") if name.strip()] if hidden else None
    filtered = filter_images(
        images,
        folder=folder,
        tag=tag,
        search=search,
        only_canonical=canonical,
        hidden_folders=hidden_folders,
    )
    return JSONResponse({"images": [image.to_dict() for image in filtered], "total": len(images)})


@router.get("/api/images/duplicates", response_class=JSONResponse)
async def find_duplicates(
    request: Request,
    filename: Optional[str] = None,
    originalUrl: Optional[str] = None,
    contentHash: Optional[str] = None,
    refresh: bool = False,
) -> JSONResponse:
    if not (clean_string(filename) or clean_string(originalUrl) or clean_string(contentHash)):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Provide filename, originalUrl or contentHash",
        )
    if refresh:
        await request.app.state.image_cache.get_images(force_refresh=True)
    detector: DuplicateDetector = request.app.state.duplicate_detector
    result: Dict[str, Any] = {}
    if clean_string(filename):
        result["filename"] = _summaries(await detector.find_by_filename(filename))
    if clean_string(originalUrl):
        result["originalUrl"] = _summaries(await detector.find_by_original_url(originalUrl))
    if clean_string(contentHash):
        result["contentHash"] = _summaries(await detector.find_by_content_hash(contentHash))
    return JSONResponse({"duplicates": result})


@router.get("/api/images/{image_id}", response_class=JSONResponse)
async def get_image(request: Request, image_id: str) -> JSONResponse:
    cache: ImageCache = request.app.state.image_cache
    image = await cache.fetch_image(image_id)
    return JSONResponse({"image": image.to_dict()})


async def _rewrite_metadata(request: Request, image_id: str, changes: Dict[str, Any]) -> CachedImage:
    """Merge ``changes`` over the stored metadata, write it back and upsert the cache."""
    gateway = request.app.state.gateway
    cache: ImageCache = request.app.state.image_cache

    record = await gateway.fetch_one(image_id)
    metadata: Dict[str, Any] = dict(parse_metadata(record.get("meta")))
    metadata.update(changes)
    metadata["updatedAt"] = _now_iso()

    payload = prepare_metadata_for_write(metadata)
    result = await gateway.update_metadata(image_id, payload)

    merged: Dict[str, Any] = dict(record)
    merged.update({key: value for key, value in result.items() if key != "meta" and value})
    merged["meta"] = payload
    image = transform_record(merged)
    cache.upsert_image(image)
    return image


@router.patch("/api/images/{image_id}", response_class=JSONResponse)
async def update_image(request: Request, image_id: str, update: ImageUpdate) -> JSONResponse:
    provided = update.model_fields_set
    changes: Dict[str, Any] = {}

    if "folder" in provided:
        changes["folder"] = clean_string(update.folder)
    if "tags" in provided:
        changes["tags"] = clean_tags(update.tags)
    if "description" in provided:
        changes["description"] = clean_string(update.description)
    if "altTag" in provided:
        changes["altTag"] = clean_string(update.altTag)
    if "originalUrl" in provided:
        changes["originalUrl"] = clean_string(update.originalUrl)
    if "parentId" in provided:
        parent_id = clean_string(update.parentId)
        if parent_id == image_id:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="An image cannot be its own parent")
        changes["variationParentId"] = parent_id

    image = await _rewrite_metadata(request, image_id, changes)
    logger.info("Updated metadata for %s (fields: %s)", image_id, ", ".join(sorted(provided)) or "none")
    return JSONResponse({"image": image.to_dict()})


@router.delete("/api/images/{image_id}", response_class=JSONResponse)
async def delete_image(request: Request, image_id: str) -> JSONResponse:
    gateway = request.app.state.gateway
    cache: ImageCache = request.app.state.image_cache
    try:
        await gateway.delete_image(image_id)
    except ImageNotFound:
        cache.remove_image(image_id)
        raise
    cache.remove_image(image_id)
    logger.info("Deleted image %s", image_id)
    return JSONResponse({"success": True})


@router.post("/api/upload", response_class=JSONResponse)
async def upload_image(
    request: Request,
    file: UploadFile = File(...),
    folder: str = Form(""),
    tags: str = Form(""),
    description: str = Form(""),
    originalUrl: str = Form(""),
    parentId: str = Form(""),
    allowDuplicates: bool = Form(False),
) -> JSONResponse:
    settings: Settings = request.app.state.settings
    cache: ImageCache = request.app.state.image_cache
    detector: DuplicateDetector = request.app.state.duplicate_detector

    content_type = file.content_type or ""
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File must be an image")
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")
    if len(content) > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size must be at most {settings.max_upload_bytes} bytes",
        )

    filename = _sanitize_filename(file.filename or "") or "image"
    content_hash = compute_content_hash(content)
    source_url = clean_string(originalUrl)

    if not allowDuplicates:
        duplicates = {
            "contentHash": _summaries(await detector.find_by_content_hash(content_hash)),
            "filename": _summaries(await detector.find_by_filename(filename)),
            "originalUrl": _summaries(await detector.find_by_original_url(source_url)) if source_url else [],
        }
        if any(duplicates.values()):
            logger.info("Upload of %s held back as a possible duplicate", filename)
            return JSONResponse(
                {"error": "Possible duplicate", "duplicates": duplicates},
                status_code=status.HTTP_409_CONFLICT,
            )

    exif = await run_in_threadpool(extract_exif_summary, content)
    payload = prepare_metadata_for_write(
        {
            "displayName": filename,
            "folder": folder,
            "tags": tags,
            "description": description,
            "originalUrl": source_url,
            "variationParentId": parentId,
            "contentHash": content_hash,
            "exif": exif,
            "updatedAt": _now_iso(),
        }
    )
    record = await request.app.state.gateway.upload_image(filename, content, content_type, payload)
    image = transform_record({**record, "meta": record.get("meta") or payload})
    cache.upsert_image(image)
    logger.info("Uploaded %s as %s", filename, image.id)
    return JSONResponse({"image": image.to_dict(), "url": image.url})


@router.get("/api/folders", response_class=JSONResponse)
async def list_folders(request: Request) -> JSONResponse:
    images = await request.app.state.image_cache.get_images()
    counts = folder_counts(images)
    return JSONResponse(
        {
            "folders": [{"name": name, "count": count} for name, count in counts.items()],
            "unassigned": sum(1 for image in images if not image.folder),
        }
    )


async def _move_folder_images(request: Request, name: str, new_name: Optional[str]) -> int:
    images = await request.app.state.image_cache.get_images(force_refresh=True)
    targets = [image.id for image in images if image.folder == name]
    for image_id in targets:
        await _rewrite_metadata(request, image_id, {"folder": new_name})
    return len(targets)


@router.patch("/api/folders/{name}", response_class=JSONResponse)
async def rename_folder(request: Request, name: str, body: FolderRename) -> JSONResponse:
    folder = clean_string(name)
    new_name = clean_string(body.newName)
    if not folder:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Folder name is required")
    if not new_name:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="New folder name is required")
    moved = await _move_folder_images(request, folder, new_name)
    logger.info("Renamed folder %s to %s (%d images)", folder, new_name, moved)
    return JSONResponse({"success": True, "name": new_name, "updated": moved})


@router.delete("/api/folders/{name}", response_class=JSONResponse)
async def delete_folder(request: Request, name: str) -> JSONResponse:
    folder = clean_string(name)
    if not folder:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Folder name is required")
    cleared = await _move_folder_images(request, folder, None)
    logger.info("Deleted folder %s (%d images unassigned)", folder, cleared)
    return JSONResponse({"success": True, "updated": cleared})


@router.get("/api/cache/stats", response_class=JSONResponse)
async def cache_stats(request: Request) -> JSONResponse:
    cache: ImageCache = request.app.state.image_cache
    stats = cache.get_cache_stats().to_dict()
    stats["ttlSeconds"] = cache.ttl_seconds
    return JSONResponse(stats)


# --- FastAPI App Setup ---
def create_app(settings: Optional[Settings] = None, gateway: Optional[Any] = None) -> FastAPI:
    """Build the app; ``gateway`` replaces the Cloudflare client (tests, scripts)."""
    settings = settings or load_settings()
    app = FastAPI(title="Image Gallery")
    app.state.settings = settings
    app.add_exception_handler(CatalogError, _catalog_error_handler)
    app.include_router(router)

    @app.on_event("startup")
    async def startup_event() -> None:
        configure_logging(settings, base_dir=BASE_DIR)
        logger.debug("Settings: %s", settings_summary(settings))
        if gateway is None:
            if not settings.credentials_configured:
                logger.warning("Cloudflare credentials missing; catalog endpoints will fail until configured")
            app.state.gateway = CloudflareImagesClient(
                settings.account_id,
                settings.api_token,
                timeout=settings.http_timeout_seconds,
            )
        else:
            app.state.gateway = gateway
        app.state.image_cache = ImageCache(app.state.gateway, ttl_seconds=settings.cache_ttl_seconds)
        app.state.duplicate_detector = DuplicateDetector(app.state.image_cache)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        if gateway is None and isinstance(getattr(app.state, "gateway", None), CloudflareImagesClient):
            await app.state.gateway.aclose()

    return app


app = create_app()

# --- Running the App ---
#   uvicorn main:app --reload
#   gunicorn main:app --config gunicorn.conf.py
