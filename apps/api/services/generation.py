"""Generation orchestrator: validation, dependency gate, reference assembly and the remote call."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.generated_asset import GeneratedAsset
from models.generation_queue import GenerationQueueEntry
from models.reference_image import AssetReferenceLink, ReferenceImage
from services import categories
from services.audit_log import log_audit
from services.errors import (
    AssetValidationError,
    DependencyNotMet,
    ReferenceNotApproved,
    ReferenceNotFound,
)
from services.image_services import ReferenceImageInput, generate_image
from services.prompts import resolve_prompt
from services.storage import PRIVATE, ObjectNotFound, ObjectStore, get_object_store, raw_key

logger = logging.getLogger(__name__)

VARIANT_INSERT_ATTEMPTS = 3
SCENE_AVATAR_PREFIX = "base_"


@dataclass
class ReferenceSpec:
    type: Literal["library", "approved_asset"]
    id: int


@dataclass
class GenerationRequest:
    category: str
    asset_key: str
    prompt: Optional[str] = None
    custom_details: Optional[str] = None
    references: List[ReferenceSpec] = field(default_factory=list)
    settings: Dict[str, Any] = field(default_factory=dict)
    system_instructions: Optional[str] = None
    model: Optional[str] = None
    sprite_variant: Optional[str] = None


@dataclass
class PlannedReference:
    """A reference image resolved and loaded before anything is written."""

    link_type: str
    target_id: int
    storage_key: str
    data: bytes
    mime_type: str = "image/png"
    label: Optional[str] = None
    required: bool = False
    context: bool = False


@dataclass
class PreparedGeneration:
    category: str
    asset_key: str
    base_prompt: str
    current_prompt: str
    prompt_version: int
    system_instructions: Optional[str]
    generation_settings: Dict[str, Any]
    generation_model: str
    parent_asset_id: Optional[int]
    sprite_variant: Optional[str]
    references: List[PlannedReference]

    def reference_inputs(self) -> List[ReferenceImageInput]:
        return [ReferenceImageInput(data=ref.data, mime_type=ref.mime_type, label=ref.label) for ref in self.references]


# Lookups

async def get_asset(db: AsyncSession, asset_id: int) -> Optional[GeneratedAsset]:
    result = await db.execute(select(GeneratedAsset).where(GeneratedAsset.id == asset_id))
    return result.scalar_one_or_none()


async def find_approved(db: AsyncSession, category: str, asset_key: str) -> Optional[GeneratedAsset]:
    """Approved row for a key, preferring the active one, then the newest variant."""
    result = await db.execute(
        select(GeneratedAsset)
        .where(
            GeneratedAsset.category == category,
            GeneratedAsset.asset_key == asset_key,
            GeneratedAsset.status == "approved",
        )
        .order_by(GeneratedAsset.is_active.desc(), GeneratedAsset.variant.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def next_variant(db: AsyncSession, category: str, asset_key: str) -> int:
    current = await db.scalar(
        select(func.max(GeneratedAsset.variant)).where(
            GeneratedAsset.category == category,
            GeneratedAsset.asset_key == asset_key,
        )
    )
    return int(current or 0) + 1


# Validation and dependency gate

def validate_identity(category: str, asset_key: str) -> None:
    if not category or not str(category).strip():
        raise AssetValidationError("category is required")
    if not asset_key or not str(asset_key).strip():
        raise AssetValidationError("asset_key is required")
    if category not in categories.ALL_CATEGORIES:
        raise AssetValidationError(f"Unknown category: {category}", category=category)


async def check_dependencies(db: AsyncSession, category: str, asset_key: str) -> Optional[GeneratedAsset]:
    """Return the approved parent reference sheet, or raise when a required one is missing."""
    if category == "scene":
        result = await db.execute(
            select(GeneratedAsset.id)
            .where(
                GeneratedAsset.category == "avatar",
                GeneratedAsset.asset_key.like(f"{SCENE_AVATAR_PREFIX}%"),
                GeneratedAsset.status == "approved",
            )
            .limit(1)
        )
        if result.scalar_one_or_none() is None:
            raise DependencyNotMet(
                "Scene generation requires at least one approved avatar base.",
                missing=[f"avatar/{SCENE_AVATAR_PREFIX}*"],
            )
        return None

    parent_ref = categories.resolve_parent(category, asset_key)
    if parent_ref is None:
        return None
    parent = await find_approved(db, parent_ref.category, parent_ref.asset_key)
    if parent is None and categories.requires_approved_parent(category):
        raise DependencyNotMet(
            f"Approve the {parent_ref.category} reference sheet '{parent_ref.asset_key}' before generating {category}/{asset_key}.",
            missing=[str(parent_ref)],
        )
    return parent


async def _load(store: ObjectStore, key: Optional[str]) -> bytes:
    return await store.get(PRIVATE, key)


async def resolve_user_references(
    db: AsyncSession,
    store: ObjectStore,
    specs: Sequence[ReferenceSpec],
) -> List[PlannedReference]:
    planned: List[PlannedReference] = []
    for spec in specs:
        if spec.type == "library":
            result = await db.execute(select(ReferenceImage).where(ReferenceImage.id == spec.id))
            image = result.scalar_one_or_none()
            if image is None or image.is_archived:
                raise ReferenceNotFound(f"Reference image {spec.id} not found", reference_id=spec.id)
            try:
                data = await _load(store, image.storage_key)
            except ObjectNotFound as exc:
                raise ReferenceNotFound(f"Reference image {spec.id} is missing from storage", reference_id=spec.id) from exc
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
        elif spec.type == "approved_asset":
            source = await get_asset(db, spec.id)
            if source is None:
                raise ReferenceNotFound(f"Reference asset {spec.id} not found", reference_id=spec.id)
            if source.status != "approved":
                raise ReferenceNotApproved(source.id, source.status)
            planned.append(await plan_asset_reference(store, source, label=f"Reference: {source.category}/{source.asset_key}"))
        else:
            raise AssetValidationError(f"Unknown reference type: {spec.type}")
    return planned


async def plan_asset_reference(store: ObjectStore, asset: GeneratedAsset, label: Optional[str] = None) -> PlannedReference:
    try:
        data = await _load(store, asset.private_key)
    except ObjectNotFound as exc:
        raise ReferenceNotFound(
            f"Image for asset {asset.id} is missing from storage",
            reference_id=asset.id,
        ) from exc
    return PlannedReference(
        link_type="approved_asset",
        target_id=asset.id,
        storage_key=asset.private_key,
        data=data,
        label=label,
    )


async def _active_approved(db: AsyncSession, category: str, keys: Sequence[str]) -> Dict[str, GeneratedAsset]:
    if not keys:
        return {}
    result = await db.execute(
        select(GeneratedAsset).where(
            GeneratedAsset.category == category,
            GeneratedAsset.asset_key.in_(list(keys)),
            GeneratedAsset.status == "approved",
            GeneratedAsset.is_active.is_(True),
        )
    )
    return {row.asset_key: row for row in result.scalars().all()}


async def context_references(
    db: AsyncSession,
    store: ObjectStore,
    category: str,
    asset_key: str,
    exclude_ids: Sequence[int] = (),
) -> List[PlannedReference]:
    """Category-specific auxiliary references; best effort, missing images are skipped."""
    rows: List[GeneratedAsset] = []
    label = None
    if category == "effect":
        found = await _active_approved(db, "building_sprite", categories.EFFECT_CONTEXT_BUILDINGS)
        rows = [found[key] for key in categories.EFFECT_CONTEXT_BUILDINGS if key in found]
        label = "Scale reference: building sprite"
    elif category == "terrain":
        master = categories.master_tile(asset_key)
        siblings = [key for key in categories.family_tiles(asset_key) if key not in (asset_key, master)]
        if master and master != asset_key:
            siblings.insert(0, master)
        found = await _active_approved(db, "terrain", siblings)
        rows = [found[key] for key in siblings if key in found]
        label = "Matching tile from the same set"

    planned: List[PlannedReference] = []
    for row in rows:
        if row.id in exclude_ids:
            continue
        is_master = category == "terrain" and row.asset_key == categories.master_tile(asset_key)
        try:
            ref = await plan_asset_reference(
                store,
                row,
                label=f"Master tile: {row.asset_key}" if is_master else f"{label}: {row.asset_key}",
            )
        except ReferenceNotFound:
            logger.warning("Skipping context reference %s; image missing from storage", row.id)
            continue
        ref.context = True
        ref.required = is_master
        planned.append(ref)
    return planned


def fit_reference_budget(references: List[PlannedReference], limit: int) -> List[PlannedReference]:
    """Drop optional context references from the end until the list fits the model's limit.

    User-chosen references, the parent reference sheet and a terrain master tile are never
    dropped; if they alone exceed the limit the request is refused.
    """
    kept = [ref for ref in references if ref.required or not ref.context]
    if len(kept) > limit:
        raise AssetValidationError(
            f"Too many reference images: {len(kept)} required, at most {limit} can be sent",
            reference_count=len(kept),
            max_references=limit,
        )
    budget = limit - len(kept)
    fitted: List[PlannedReference] = []
    for ref in references:
        if ref.context and not ref.required:
            if budget <= 0:
                logger.info("Leaving out context reference %s to stay within %s images", ref.target_id, limit)
                continue
            budget -= 1
        fitted.append(ref)
    return fitted


async def prepare_generation(db: AsyncSession, request: GenerationRequest, store: ObjectStore) -> PreparedGeneration:
    """Everything that can fail before a row exists. Performs no writes and no remote calls."""
    category = (request.category or "").strip()
    asset_key = (request.asset_key or "").strip()
    validate_identity(category, asset_key)

    parent = await check_dependencies(db, category, asset_key)
    references = await resolve_user_references(db, store, request.references)

    parent_id = None
    if parent is not None:
        parent_id = parent.id
        chosen = [ref for ref in references if ref.link_type == "approved_asset" and ref.target_id == parent.id]
        if chosen:
            chosen[0].required = True
        else:
            sheet = await plan_asset_reference(store, parent, label=f"Reference sheet: {parent.category}/{parent.asset_key}")
            sheet.required = True
            references.append(sheet)

    references.extend(
        await context_references(
            db,
            store,
            category,
            asset_key,
            exclude_ids=[ref.target_id for ref in references if ref.link_type == "approved_asset"],
        )
    )
    references = fit_reference_budget(references, settings.MAX_REFERENCE_IMAGES)

    system_instructions = request.system_instructions
    prompt_version = 1
    if request.prompt and request.prompt.strip():
        prompt_text = request.prompt.strip()
    else:
        resolved = (await resolve_prompt(db, category, asset_key, request.custom_details)).unwrap()
        prompt_text = resolved.prompt
        prompt_version = resolved.version
        system_instructions = system_instructions or resolved.system_instructions

    generation_settings = categories.default_generation_settings(category)
    generation_settings.update({k: v for k, v in (request.settings or {}).items() if v is not None})

    return PreparedGeneration(
        category=category,
        asset_key=asset_key,
        base_prompt=prompt_text,
        current_prompt=prompt_text,
        prompt_version=prompt_version,
        system_instructions=system_instructions,
        generation_settings=generation_settings,
        generation_model=request.model or settings.IMAGE_GENERATION_MODEL,
        parent_asset_id=parent_id,
        sprite_variant=request.sprite_variant,
        references=references,
    )


# Writes

async def create_version(
    db: AsyncSession,
    prepared: PreparedGeneration,
    *,
    actor: Optional[str],
    action: str = "generate",
    audit_details: Optional[Dict[str, Any]] = None,
) -> tuple[GeneratedAsset, GenerationQueueEntry]:
    """Insert the next variant with its links and queue entry, then commit.

    Concurrent inserts for the same key collide on the unique constraint and retry
    with a fresh max(variant)+1, so numbers are never reused.
    """
    last_error: Optional[IntegrityError] = None
    for _ in range(VARIANT_INSERT_ATTEMPTS):
        variant = await next_variant(db, prepared.category, prepared.asset_key)
        asset = GeneratedAsset(
            category=prepared.category,
            asset_key=prepared.asset_key,
            variant=variant,
            base_prompt=prepared.base_prompt,
            current_prompt=prepared.current_prompt,
            prompt_version=prepared.prompt_version,
            rejection_count=0,
            system_instructions=prepared.system_instructions,
            generation_settings=prepared.generation_settings,
            generation_model=prepared.generation_model,
            parent_asset_id=prepared.parent_asset_id,
            sprite_variant=prepared.sprite_variant,
            status="pending",
            is_active=False,
            background_removed=False,
        )
        db.add(asset)
        try:
            await db.flush()
        except IntegrityError as exc:
            last_error = exc
            await db.rollback()
            continue
        break
    else:
        raise AssetValidationError(
            f"Could not allocate a variant for {prepared.category}/{prepared.asset_key}",
            reason=str(last_error),
        )

    for order, ref in enumerate(prepared.references):
        db.add(
            AssetReferenceLink(
                asset_id=asset.id,
                link_type=ref.link_type,
                reference_image_id=ref.target_id if ref.link_type == "library" else None,
                approved_asset_id=ref.target_id if ref.link_type == "approved_asset" else None,
                sort_order=order,
            )
        )
    library_ids = [ref.target_id for ref in prepared.references if ref.link_type == "library"]
    if library_ids:
        result = await db.execute(select(ReferenceImage).where(ReferenceImage.id.in_(library_ids)))
        for image in result.scalars().all():
            image.usage_count = int(image.usage_count or 0) + 1

    entry = GenerationQueueEntry(asset_id=asset.id, priority=5, status="queued", attempts=0)
    db.add(entry)
    details = {"category": asset.category, "asset_key": asset.asset_key, "variant": asset.variant}
    details.update(audit_details or {})
    log_audit(db, action, asset.id, actor, details)
    await db.commit()
    return asset, entry


async def run_generation(
    db: AsyncSession,
    asset: GeneratedAsset,
    entry: Optional[GenerationQueueEntry],
    prompt: str,
    reference_images: List[ReferenceImageInput],
    *,
    store: ObjectStore,
) -> GeneratedAsset:
    """Call the remote generator for one row. Failure is terminal for this row."""
    asset.status = "generating"
    asset.error_message = None
    if entry is not None:
        entry.status = "processing"
        entry.attempts = int(entry.attempts or 0) + 1
        entry.started_at = datetime.now(timezone.utc)
    await db.commit()

    try:
        image = await generate_image(
            prompt,
            reference_images,
            asset.generation_settings or {},
            model=asset.generation_model,
            system_instructions=asset.system_instructions,
        )
        key = raw_key(asset.category, asset.asset_key, asset.variant)
        await store.put(PRIVATE, key, image, "image/png")
    except Exception as exc:
        logger.exception("Generation failed for asset %s: %s", asset.id, exc)
        asset.status = "failed"
        asset.error_message = str(exc)[:4000]
        if entry is not None:
            entry.status = "failed"
            entry.error_message = str(exc)[:4000]
            entry.completed_at = datetime.now(timezone.utc)
        log_audit(db, "generation_failed", asset.id, None, {"error": str(exc)[:1000]})
        await db.commit()
        return asset

    asset.status = "completed"
    asset.private_key = key
    asset.background_removed = False
    if entry is not None:
        entry.status = "completed"
        entry.completed_at = datetime.now(timezone.utc)
    log_audit(db, "generation_completed", asset.id, None, {"private_key": key})
    await db.commit()
    logger.info("Generated %s/%s v%s -> %s", asset.category, asset.asset_key, asset.variant, key)
    return asset


async def generate(
    db: AsyncSession,
    request: GenerationRequest,
    *,
    actor: Optional[str] = None,
) -> GeneratedAsset:
    """Create the next version of (category, asset_key) and generate its image."""
    store = get_object_store()
    prepared = await prepare_generation(db, request, store)
    asset, entry = await create_version(
        db,
        prepared,
        actor=actor,
        audit_details={"references": len(prepared.references), "parent_asset_id": prepared.parent_asset_id},
    )
    return await run_generation(db, asset, entry, prepared.current_prompt, prepared.reference_inputs(), store=store)


# Queued generation (auto-enqueued dependents)

async def _queued_references(db: AsyncSession, store: ObjectStore, asset: GeneratedAsset) -> List[PlannedReference]:
    references: List[PlannedReference] = []
    if asset.parent_asset_id:
        parent = await get_asset(db, asset.parent_asset_id)
        if parent is None or parent.status != "approved":
            raise DependencyNotMet(
                f"Parent reference {asset.parent_asset_id} is no longer approved.",
                missing=[str(asset.parent_asset_id)],
            )
        sheet = await plan_asset_reference(store, parent, label=f"Reference sheet: {parent.category}/{parent.asset_key}")
        sheet.required = True
        references.append(sheet)
    references.extend(
        await context_references(
            db,
            store,
            asset.category,
            asset.asset_key,
            exclude_ids=[ref.target_id for ref in references],
        )
    )
    return fit_reference_budget(references, settings.MAX_REFERENCE_IMAGES)


async def process_generation_job_async(queue_entry_id: int) -> None:
    """Generate a queued row (created pending by approval of its reference sheet)."""
    store = get_object_store()
    async with async_session_maker() as db:
        result = await db.execute(select(GenerationQueueEntry).where(GenerationQueueEntry.id == queue_entry_id))
        entry = result.scalar_one_or_none()
        if entry is None:
            logger.warning("Generation queue entry %s not found", queue_entry_id)
            return
        if entry.status not in ("queued", "failed"):
            logger.info("Generation queue entry %s already %s; skipping", queue_entry_id, entry.status)
            return
        asset = await get_asset(db, entry.asset_id)
        if asset is None:
            logger.warning("Asset %s for queue entry %s not found", entry.asset_id, queue_entry_id)
            return

        try:
            if not (asset.current_prompt or "").strip():
                resolved = (await resolve_prompt(db, asset.category, asset.asset_key)).unwrap()
                asset.base_prompt = resolved.prompt
                asset.current_prompt = resolved.prompt
                asset.prompt_version = resolved.version
                asset.system_instructions = asset.system_instructions or resolved.system_instructions
            if not asset.generation_settings:
                asset.generation_settings = categories.default_generation_settings(asset.category)
            if not asset.generation_model:
                asset.generation_model = settings.IMAGE_GENERATION_MODEL
            references = await _queued_references(db, store, asset)
            if references:
                existing = await db.execute(
                    select(AssetReferenceLink.id).where(AssetReferenceLink.asset_id == asset.id).limit(1)
                )
                if existing.scalar_one_or_none() is None:
                    for order, ref in enumerate(references):
                        db.add(
                            AssetReferenceLink(
                                asset_id=asset.id,
                                link_type="approved_asset",
                                approved_asset_id=ref.target_id,
                                sort_order=order,
                            )
                        )
        except Exception as exc:
            message = getattr(exc, "message", None) or str(exc)
            logger.exception("Queued generation %s could not start: %s", queue_entry_id, message)
            asset.status = "failed"
            asset.error_message = message[:4000]
            entry.status = "failed"
            entry.error_message = message[:4000]
            entry.completed_at = datetime.now(timezone.utc)
            await db.commit()
            return

        await run_generation(
            db,
            asset,
            entry,
            asset.current_prompt,
            [ReferenceImageInput(data=ref.data, mime_type=ref.mime_type, label=ref.label) for ref in references],
            store=store,
        )


def process_generation_job(queue_entry_id: int) -> None:
    """RQ worker entrypoint for queued generations."""
    asyncio.run(process_generation_job_async(queue_entry_id))
