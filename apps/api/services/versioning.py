"""Versioning and approval engine: approve, reject, regenerate, set-active."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.asset_rejection import AssetRejection
from models.generated_asset import GeneratedAsset
from models.generation_queue import GenerationQueueEntry
from models.reference_image import AssetReferenceLink, ReferenceImage
from services import categories
from services.audit_log import log_audit
from services.errors import (
    AssetNotFound,
    AssetValidationError,
    InvalidAssetTransition,
    ReferenceNotApproved,
    ReferenceNotFound,
)
from services.generation import (
    PlannedReference,
    PreparedGeneration,
    ReferenceSpec,
    plan_asset_reference,
    create_version,
    fit_reference_budget,
    get_asset,
    next_variant,
    resolve_user_references,
    run_generation,
)
from services.job_queue import enqueue_generation_job, enqueue_pipeline_job
from services.prompts import with_feedback
from services.storage import PRIVATE, ObjectNotFound, ObjectStore, get_object_store

logger = logging.getLogger(__name__)

APPROVABLE_STATUSES = ("review", "completed")
REJECTABLE_STATUSES = ("completed", "review", "approved", "failed", "rejected")
REGENERATABLE_STATUSES = ("completed", "review", "approved", "rejected", "failed")
AUTO_QUEUE_PRIORITY = 1


@dataclass
class ApprovalResult:
    asset: GeneratedAsset
    pipeline: str  # started, skipped, queue_unavailable
    pipeline_job_id: Optional[str] = None
    auto_queued: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RegenerateOverrides:
    prompt: Optional[str] = None
    settings: Dict[str, Any] = field(default_factory=dict)
    references: Optional[List[ReferenceSpec]] = None
    model: Optional[str] = None


async def _require_asset(db: AsyncSession, asset_id: int) -> GeneratedAsset:
    asset = await get_asset(db, asset_id)
    if asset is None:
        raise AssetNotFound(asset_id)
    return asset


async def _activate(db: AsyncSession, asset: GeneratedAsset) -> None:
    """Deactivate every sibling first, then activate this row, inside the caller's transaction."""
    await db.execute(
        update(GeneratedAsset)
        .where(
            GeneratedAsset.category == asset.category,
            GeneratedAsset.asset_key == asset.asset_key,
            GeneratedAsset.id != asset.id,
            GeneratedAsset.is_active.is_(True),
        )
        .values(is_active=False)
        .execution_options(synchronize_session="fetch")
    )
    await db.flush()
    asset.is_active = True
    await db.flush()


async def _auto_queue_dependents(db: AsyncSession, reference: GeneratedAsset) -> List[GenerationQueueEntry]:
    """Create a pending row + queue entry per dependent sprite that has no row yet."""
    created: List[GenerationQueueEntry] = []
    for requirement in categories.dependent_sprites(reference.category, reference.asset_key):
        existing = await db.execute(
            select(GeneratedAsset.id)
            .where(
                GeneratedAsset.category == requirement.category,
                GeneratedAsset.asset_key == requirement.asset_key,
            )
            .limit(1)
        )
        if existing.scalar_one_or_none() is not None:
            continue
        dependent = GeneratedAsset(
            category=requirement.category,
            asset_key=requirement.asset_key,
            variant=await next_variant(db, requirement.category, requirement.asset_key),
            base_prompt="",
            current_prompt="",
            prompt_version=1,
            status="pending",
            parent_asset_id=reference.id,
            sprite_variant=requirement.asset_key,
            auto_created=True,
        )
        db.add(dependent)
        await db.flush()
        entry = GenerationQueueEntry(asset_id=dependent.id, priority=AUTO_QUEUE_PRIORITY, status="queued")
        db.add(entry)
        await db.flush()
        created.append(entry)
    return created


async def approve(db: AsyncSession, asset_id: int, *, actor: Optional[str] = None) -> ApprovalResult:
    asset = await _require_asset(db, asset_id)
    if asset.status not in APPROVABLE_STATUSES:
        raise InvalidAssetTransition("approve", asset.status)

    await _activate(db, asset)
    asset.status = "approved"
    asset.approved_at = datetime.now(timezone.utc)
    asset.approved_by = actor
    log_audit(db, "approve", asset.id, actor, {"set_active": True, "variant": asset.variant})

    queued_entries = await _auto_queue_dependents(db, asset)
    queued_keys = []
    if queued_entries:
        for entry in queued_entries:
            row = await get_asset(db, entry.asset_id)
            queued_keys.append({"asset_id": entry.asset_id, "category": row.category, "asset_key": row.asset_key})
        log_audit(
            db,
            "auto_queue_dependents",
            asset.id,
            actor,
            {"queued": [item["asset_key"] for item in queued_keys]},
        )
    await db.commit()

    for entry in queued_entries:
        try:
            job = enqueue_generation_job(entry.id)
            entry.queue_job_id = job.id
        except Exception as exc:
            logger.warning("Could not enqueue generation for queue entry %s: %s", entry.id, exc)
            entry.status = "failed"
            entry.error_message = f"queue_unavailable: {exc}"
            entry.completed_at = datetime.now(timezone.utc)
            dependent = await get_asset(db, entry.asset_id)
            if dependent is not None:
                dependent.status = "failed"
                dependent.error_message = "Generation queue unavailable. Regenerate this asset."
    if queued_entries:
        await db.commit()

    pipeline = "skipped"
    pipeline_job_id = None
    if asset.category in categories.PIPELINE_CATEGORIES and not asset.background_removed:
        try:
            job = enqueue_pipeline_job(asset.id)
            pipeline = "started"
            pipeline_job_id = job.id
        except Exception as exc:
            logger.warning("Could not enqueue pipeline for asset %s: %s", asset.id, exc)
            pipeline = "queue_unavailable"
            asset.pipeline_status = "failed"
            asset.pipeline_error = f"queue_unavailable: {exc}"
            await db.commit()

    return ApprovalResult(asset=asset, pipeline=pipeline, pipeline_job_id=pipeline_job_id, auto_queued=queued_keys)


async def set_active(db: AsyncSession, asset_id: int, *, actor: Optional[str] = None) -> GeneratedAsset:
    asset = await _require_asset(db, asset_id)
    if asset.status != "approved":
        raise InvalidAssetTransition("set active", asset.status)
    await _activate(db, asset)
    log_audit(db, "set_active", asset.id, actor, {"variant": asset.variant})
    await db.commit()
    return asset


async def reject(
    db: AsyncSession,
    asset_id: int,
    reason: str,
    *,
    incorporate_feedback: bool = True,
    actor: Optional[str] = None,
) -> GeneratedAsset:
    text = (reason or "").strip()
    if not text:
        raise AssetValidationError("Rejection reason is required")
    asset = await _require_asset(db, asset_id)
    if asset.status not in REJECTABLE_STATUSES:
        raise InvalidAssetTransition("reject", asset.status)

    db.add(
        AssetRejection(
            asset_id=asset.id,
            rejected_by=actor,
            rejection_reason=text,
            prompt_at_rejection=asset.current_prompt,
            prompt_version=asset.prompt_version,
            storage_key_rejected=asset.private_key,
        )
    )
    if incorporate_feedback:
        asset.current_prompt = with_feedback(asset.base_prompt or "", text)
    asset.prompt_version = int(asset.prompt_version or 1) + 1
    asset.rejection_count = int(asset.rejection_count or 0) + 1
    asset.status = "rejected"
    asset.is_active = False
    log_audit(db, "reject", asset.id, actor, {"reason": text, "incorporate_feedback": incorporate_feedback})
    await db.commit()
    return asset


async def _copied_references(db: AsyncSession, store: ObjectStore, source_id: int) -> List[PlannedReference]:
    result = await db.execute(
        select(AssetReferenceLink)
        .where(AssetReferenceLink.asset_id == source_id)
        .order_by(AssetReferenceLink.sort_order.asc(), AssetReferenceLink.id.asc())
    )
    planned: List[PlannedReference] = []
    for link in result.scalars().all():
        if link.link_type == "library":
            image = await db.get(ReferenceImage, link.reference_image_id)
            if image is None or image.is_archived:
                raise ReferenceNotFound(
                    f"Reference image {link.reference_image_id} is no longer available",
                    reference_id=link.reference_image_id,
                )
            try:
                data = await store.get(PRIVATE, image.storage_key)
            except ObjectNotFound as exc:
                raise ReferenceNotFound(
                    f"Reference image {image.id} is missing from storage",
                    reference_id=image.id,
                ) from exc
            planned.append(
                PlannedReference(
                    link_type="library",
                    target_id=image.id,
                    storage_key=image.storage_key,
                    data=data,
                    mime_type=image.mime_type or "image/png",
                    label=f"Reference: {image.name}",
                )
            )
        else:
            referenced = await get_asset(db, link.approved_asset_id)
            if referenced is None:
                raise ReferenceNotFound(
                    f"Reference asset {link.approved_asset_id} not found",
                    reference_id=link.approved_asset_id,
                )
            if referenced.status != "approved":
                raise ReferenceNotApproved(referenced.id, referenced.status)
            planned.append(
                await plan_asset_reference(
                    store, referenced, label=f"Reference: {referenced.category}/{referenced.asset_key}"
                )
            )
    return planned


async def regenerate(
    db: AsyncSession,
    asset_id: int,
    overrides: Optional[RegenerateOverrides] = None,
    *,
    actor: Optional[str] = None,
) -> GeneratedAsset:
    """Spawn the next variant from a source row; the source is never touched on failure."""
    overrides = overrides or RegenerateOverrides()
    store = get_object_store()
    source = await _require_asset(db, asset_id)
    if source.status not in REGENERATABLE_STATUSES:
        raise InvalidAssetTransition("regenerate", source.status)

    source_id = source.id
    source_status = source.status

    if overrides.references is not None:
        references = await resolve_user_references(db, store, overrides.references)
        if source.parent_asset_id and not any(
            ref.link_type == "approved_asset" and ref.target_id == source.parent_asset_id for ref in references
        ):
            parent = await get_asset(db, source.parent_asset_id)
            if parent is not None and parent.status == "approved":
                sheet = await plan_asset_reference(
                    store, parent, label=f"Reference sheet: {parent.category}/{parent.asset_key}"
                )
                sheet.required = True
                references.append(sheet)
    else:
        references = await _copied_references(db, store, source_id)
    references = fit_reference_budget(references, settings.MAX_REFERENCE_IMAGES)

    generation_settings = dict(source.generation_settings or categories.default_generation_settings(source.category))
    generation_settings.update({k: v for k, v in (overrides.settings or {}).items() if v is not None})

    override_prompt = (overrides.prompt or "").strip()
    prepared = PreparedGeneration(
        category=source.category,
        asset_key=source.asset_key,
        base_prompt=override_prompt or source.base_prompt or "",
        current_prompt=override_prompt or source.current_prompt or source.base_prompt or "",
        prompt_version=int(source.prompt_version or 1),
        system_instructions=source.system_instructions,
        generation_settings=generation_settings,
        generation_model=overrides.model or source.generation_model,
        parent_asset_id=source.parent_asset_id,
        sprite_variant=source.sprite_variant,
        references=references,
    )
    if not prepared.current_prompt:
        raise AssetValidationError(f"Asset {source_id} has no prompt to regenerate from")
    if not prepared.generation_model:
        prepared.generation_model = settings.IMAGE_GENERATION_MODEL

    asset, entry = await create_version(
        db,
        prepared,
        actor=actor,
        action="regenerate",
        audit_details={"source_asset_id": source_id, "prompt_version": prepared.prompt_version},
    )
    asset = await run_generation(db, asset, entry, prepared.current_prompt, prepared.reference_inputs(), store=store)

    if asset.status == "completed" and source_status == "review":
        refreshed = await get_asset(db, source_id)
        if refreshed is not None and refreshed.status == "review":
            refreshed.status = "completed"
            await db.commit()
    return asset


async def reset_prompt(db: AsyncSession, asset_id: int, *, actor: Optional[str] = None) -> GeneratedAsset:
    asset = await _require_asset(db, asset_id)
    asset.current_prompt = asset.base_prompt
    asset.prompt_version = int(asset.prompt_version or 1) + 1
    log_audit(db, "reset_prompt", asset.id, actor, {"prompt_version": asset.prompt_version})
    await db.commit()
    return asset


async def archive(db: AsyncSession, asset_id: int, *, actor: Optional[str] = None) -> GeneratedAsset:
    asset = await _require_asset(db, asset_id)
    if asset.status == "generating":
        raise InvalidAssetTransition("archive", asset.status)
    if asset.status == "archived":
        return asset
    previous = asset.status
    asset.status = "archived"
    asset.is_active = False
    log_audit(db, "archive", asset.id, actor, {"previous_status": previous})
    await db.commit()
    return asset


async def list_rejections(db: AsyncSession, asset_id: int) -> List[AssetRejection]:
    await _require_asset(db, asset_id)
    result = await db.execute(
        select(AssetRejection)
        .where(AssetRejection.asset_id == asset_id)
        .order_by(AssetRejection.id.desc())
    )
    return list(result.scalars().all())
