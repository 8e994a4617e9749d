"""API routes for settings, asset registration, batch conversion and URL rewriting."""
import logging
import mimetypes
from dataclasses import replace
from functools import partial
from typing import Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from webp_converter import config as app_config
from webp_converter.batch import BatchDriver, convert_stored_asset
from webp_converter.conversion.cleanup import CleanupQueue
from webp_converter.conversion.models import ConversionResult, Derivative, SourceAsset
from webp_converter.conversion.service import ConversionService, apply_removals
from webp_converter.conversion.settings import MAX_QUALITY, MIN_QUALITY, ConversionSettings
from webp_converter.db import (
    OptionStore,
    get_asset,
    list_convertible_asset_ids,
    save_asset,
    update_asset,
)
from webp_converter.rewriter import ReferenceRewriter

logger = logging.getLogger("webp_converter.api")
router = APIRouter(prefix="/api", tags=["webp-converter"])


def require_admin(x_admin_token: Optional[str] = Header(None)) -> None:
    """Reject before any conversion work happens when ADMIN_TOKEN is configured and does not match."""
    if app_config.ADMIN_TOKEN and x_admin_token != app_config.ADMIN_TOKEN:
        raise HTTPException(403, "Insufficient permissions")


def get_service(request: Request) -> ConversionService:
    return request.app.state.service


def get_rewriter(request: Request) -> ReferenceRewriter:
    return request.app.state.rewriter


def get_batch_driver(request: Request) -> BatchDriver:
    return request.app.state.batch


class SettingsUpdate(BaseModel):
    enable_auto_convert: Optional[bool] = None
    default_quality: Optional[int] = Field(None, ge=MIN_QUALITY, le=MAX_QUALITY)
    max_file_size: Optional[int] = Field(None, ge=1, description="KB")
    delete_original: Optional[bool] = None


class DerivativeIn(BaseModel):
    name: str
    file_path: str
    mime_type: Optional[str] = None


class AssetIn(BaseModel):
    file_path: str
    mime_type: Optional[str] = None
    derivatives: list[DerivativeIn] = []


def _guess_mime(path: str) -> str:
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


def _settings_to_dict(s: ConversionSettings) -> dict:
    return {
        "enable_auto_convert": s.auto_convert,
        "default_quality": s.default_quality,
        "max_file_size": s.max_bytes // 1024,
        "delete_original": s.delete_original,
    }


def _result_to_dict(r: ConversionResult) -> dict:
    return {
        "success": r.success,
        "output_path": r.output_path,
        "deleted": r.source_removed,
        "error": r.error,
    }


def _asset_to_dict(a: SourceAsset) -> dict:
    return {
        "asset_id": a.asset_id,
        "file_path": a.file_path,
        "mime_type": a.mime_type,
        "derivatives": [
            {"name": d.name, "file_path": d.file_path, "mime_type": d.mime_type}
            for d in a.derivatives
        ],
    }


def _flush_cleanup(queue: CleanupQueue, asset_id: int) -> None:
    """Runs after the response: remove staged sources, then repoint the asset at its WebP files."""
    removed = queue.flush()
    if not removed:
        return
    asset = get_asset(asset_id)
    if asset is not None:
        update_asset(apply_removals(asset, removed))


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/settings")
def get_settings():
    return _settings_to_dict(ConversionSettings.load(OptionStore()))


@router.put("/settings", dependencies=[Depends(require_admin)])
def update_settings(update: SettingsUpdate):
    store = OptionStore()
    values = update.model_dump(exclude_none=True)
    current = ConversionSettings.load(store)
    updated = replace(
        current,
        auto_convert=values.get("enable_auto_convert", current.auto_convert),
        default_quality=values.get("default_quality", current.default_quality),
        max_bytes=values.get("max_file_size", current.max_bytes // 1024) * 1024,
        delete_original=values.get("delete_original", current.delete_original),
    )
    for key, value in updated.to_options().items():
        if key in values:
            store.set(key, value)
    logger.info("Settings updated: %s", ", ".join(sorted(values)) or "(none)")
    return _settings_to_dict(ConversionSettings.load(store))


@router.post("/assets", dependencies=[Depends(require_admin)])
def register_asset(
    payload: AssetIn,
    background_tasks: BackgroundTasks,
    service: ConversionService = Depends(get_service),
):
    """Upload event: store the asset, auto-convert it, and remove staged sources once the response is sent."""
    derivatives = [
        Derivative(name=d.name, file_path=d.file_path, mime_type=d.mime_type or _guess_mime(d.file_path))
        for d in payload.derivatives
    ]
    asset = save_asset(payload.file_path, payload.mime_type or _guess_mime(payload.file_path), derivatives)
    queue = CleanupQueue()
    conversion = service.handle_upload(asset, queue)
    background_tasks.add_task(_flush_cleanup, queue, asset.asset_id)
    out = {
        "asset_id": asset.asset_id,
        "converted": conversion is not None,
        "queued_for_deletion": len(queue),
    }
    if conversion is not None:
        out["primary"] = _result_to_dict(conversion.primary)
        out["derivatives"] = {name: _result_to_dict(r) for name, r in conversion.derivatives.items()}
    return out


@router.get("/assets/{asset_id}")
def read_asset(asset_id: int):
    asset = get_asset(asset_id)
    if asset is None:
        raise HTTPException(404, "Asset not found")
    return _asset_to_dict(asset)


@router.post("/batch/images", dependencies=[Depends(require_admin)])
def get_images_for_batch():
    """Ordered ids of every JPEG/PNG asset still to convert."""
    image_ids = list_convertible_asset_ids()
    return {"image_ids": image_ids, "total": len(image_ids)}


@router.post("/batch/convert/{asset_id}", dependencies=[Depends(require_admin)])
def batch_convert_image(asset_id: int, service: ConversionService = Depends(get_service)):
    """Convert one asset. Safe to call repeatedly for the same id."""
    if asset_id <= 0:
        raise HTTPException(400, "Invalid asset ID")
    conversion = convert_stored_asset(service, asset_id)
    if conversion is None:
        raise HTTPException(404, "Asset not found")
    if not conversion.primary.success:
        return {"success": False, "asset_id": asset_id, "error": conversion.primary.error or "Conversion failed"}
    return {
        "success": True,
        "message": "Image converted successfully",
        "asset_id": asset_id,
        "deleted": conversion.primary.source_removed,
        "derivatives": {name: _result_to_dict(r) for name, r in conversion.derivatives.items()},
    }


@router.post("/batch/run", dependencies=[Depends(require_admin)])
def run_batch(
    background_tasks: BackgroundTasks,
    service: ConversionService = Depends(get_service),
    driver: BatchDriver = Depends(get_batch_driver),
):
    """Convert the whole backlog in the background, one asset at a time."""
    image_ids = list_convertible_asset_ids()
    if not image_ids:
        return {"started": False, "total": 0, "message": "No images found to convert."}
    claim = driver.start(len(image_ids))
    if claim is None:
        raise HTTPException(409, "A batch conversion is already running")
    background_tasks.add_task(driver.run, image_ids, partial(convert_stored_asset, service), claim=claim)
    return {"started": True, "total": len(image_ids)}


@router.get("/batch/progress")
def batch_progress(driver: BatchDriver = Depends(get_batch_driver)):
    progress = driver.progress
    if not progress.running and driver.last_result is not None:
        progress = driver.last_result
    return {
        "running": progress.running,
        "processed": progress.processed,
        "total": progress.total,
        "percent": progress.percent,
    }


@router.post("/rewrite")
def rewrite_markup(
    text: str = Body(..., embed=True),
    mode: Literal["attributes", "content"] = Body("attributes", embed=True),
    rewriter: ReferenceRewriter = Depends(get_rewriter),
):
    """Point JPEG/PNG references at existing WebP files. mode=content also catches bare URLs in text."""
    if mode == "content":
        return {"text": rewriter.rewrite_content(text)}
    return {"text": rewriter.rewrite(text)}
