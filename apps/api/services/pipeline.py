"""Post-approval pipeline: background removal, trim, resize/convert, publish."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import or_, update
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generated_asset import GeneratedAsset
from services import categories
from services.audit_log import log_audit
from services.errors import OriginalNotFound
from services.image_services import remove_background, resize_image
from services.imaging import trim_transparent
from services.storage import (
    PRIVATE,
    PUBLIC,
    ObjectNotFound,
    get_object_store,
    original_key,
    processed_key,
    published_key,
    transparent_key,
)

logger = logging.getLogger(__name__)

PUBLISH_FORMAT = "webp"
CONTENT_TYPES = {"webp": "image/webp", "png": "image/png"}

_UNSET: Any = object()


def _error_text(exc: Exception) -> str:
    return str(getattr(exc, "message", None) or exc)[:4000]


async def _update_asset(
    asset_id: int,
    *,
    pipeline_status: Optional[str] = None,
    pipeline_error: Any = _UNSET,
    private_key: Optional[str] = None,
    processed_key: Optional[str] = None,
    public_key: Optional[str] = None,
    public_url: Optional[str] = None,
    background_removed: Optional[bool] = None,
    completed: bool = False,
    audit_action: Optional[str] = None,
    audit_details: Optional[dict] = None,
) -> None:
    async with async_session_maker() as db:
        result = await db.execute(select(GeneratedAsset).where(GeneratedAsset.id == asset_id))
        asset = result.scalar_one_or_none()
        if not asset:
            return
        if pipeline_status is not None:
            asset.pipeline_status = pipeline_status
        if pipeline_error is not _UNSET:
            asset.pipeline_error = pipeline_error
        if private_key is not None:
            asset.private_key = private_key
        if processed_key is not None:
            asset.processed_key = processed_key
        if public_key is not None:
            asset.public_key = public_key
        if public_url is not None:
            asset.public_url = public_url
        if background_removed is not None:
            asset.background_removed = background_removed
        if completed:
            asset.pipeline_completed_at = datetime.now(timezone.utc)
        if audit_action:
            log_audit(db, audit_action, asset_id, None, audit_details)
        await db.commit()


async def claim_pipeline_run(asset_id: int, *, force: bool = False) -> bool:
    """Atomically move an approved asset into pipeline_status=processing.

    Fails when another run holds an unexpired lease, or (unless forced) when the
    asset was already processed.
    """
    now = datetime.now(timezone.utc)
    lease_cutoff = now - timedelta(minutes=max(int(settings.PIPELINE_LEASE_MINUTES), 1))
    conditions = [
        GeneratedAsset.id == asset_id,
        GeneratedAsset.status == "approved",
        or_(
            GeneratedAsset.pipeline_status.is_(None),
            GeneratedAsset.pipeline_status != "processing",
            GeneratedAsset.pipeline_started_at.is_(None),
            GeneratedAsset.pipeline_started_at < lease_cutoff,
        ),
    ]
    if not force:
        conditions.append(GeneratedAsset.background_removed.is_(False))
    async with async_session_maker() as db:
        result = await db.execute(
            update(GeneratedAsset)
            .where(*conditions)
            .values(
                pipeline_status="processing",
                pipeline_started_at=now,
                pipeline_completed_at=None,
                pipeline_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return bool(result.rowcount)


async def run_pipeline(asset_id: int, force: bool = False) -> str:
    """Run the pipeline for one asset. Returns completed, failed or skipped."""
    if not await claim_pipeline_run(asset_id, force=force):
        logger.info("Pipeline for asset %s not claimed (running, processed or not approved)", asset_id)
        return "skipped"

    async with async_session_maker() as db:
        result = await db.execute(select(GeneratedAsset).where(GeneratedAsset.id == asset_id))
        asset = result.scalar_one()
        category = asset.category
        asset_key = asset.asset_key
        variant = int(asset.variant)
        source_key = original_key(asset.private_key) if asset.private_key else None
        previous_public_key = asset.public_key

    store = get_object_store()
    try:
        try:
            original = await store.get(PRIVATE, source_key)
        except ObjectNotFound as exc:
            raise OriginalNotFound(source_key) from exc

        cut_out = category in categories.PIPELINE_CATEGORIES and categories.removes_background(category, asset_key)
        if cut_out:
            cleaned = await remove_background(original, crop=True)
            trimmed = trim_transparent(cleaned)
        else:
            trimmed = original

        timestamp = int(time.time() * 1000)
        processed = processed_key(category, asset_key, variant, timestamp)
        transparent = transparent_key(source_key)
        await store.put(PRIVATE, processed, trimmed, "image/png")
        await store.put(PRIVATE, transparent, trimmed, "image/png")
        await _update_asset(asset_id, private_key=transparent, processed_key=processed)

        final_bytes = trimmed
        extension = "png"
        resize_error = None
        size = categories.target_size(category, asset_key)
        if size is not None:
            width, height = size
            try:
                final_bytes = await resize_image(store, trimmed, width, height, PUBLISH_FORMAT)
                extension = PUBLISH_FORMAT
            except Exception as exc:
                resize_error = f"Resize failed, published unresized PNG: {_error_text(exc)}"
                logger.warning("Resize failed for asset %s: %s", asset_id, exc)

        public_key = published_key(category, asset_key, variant, extension)
        await store.put(PUBLIC, public_key, final_bytes, CONTENT_TYPES[extension])
        if previous_public_key and previous_public_key != public_key:
            try:
                await store.delete(PUBLIC, previous_public_key)
            except Exception:
                logger.warning("Could not remove superseded public object %s", previous_public_key)
    except Exception as exc:
        logger.exception("Pipeline failed for asset %s: %s", asset_id, exc)
        await _update_asset(
            asset_id,
            pipeline_status="failed",
            pipeline_error=_error_text(exc),
            audit_action="pipeline_failed",
            audit_details={"error": _error_text(exc)[:1000]},
        )
        return "failed"

    await _update_asset(
        asset_id,
        pipeline_status="completed",
        pipeline_error=resize_error,
        public_key=public_key,
        public_url=store.public_url(public_key),
        background_removed=True,
        completed=True,
        audit_action="pipeline_completed",
        audit_details={
            "public_key": public_key,
            "processed_key": processed,
            "format": extension,
            "resized": resize_error is None and size is not None,
        },
    )
    logger.info("Pipeline completed for asset %s -> %s", asset_id, public_key)
    return "completed"


def process_pipeline_job(asset_id: int, force: bool = False) -> None:
    """RQ worker entrypoint for pipeline runs."""
    asyncio.run(run_pipeline(asset_id, force=force))
