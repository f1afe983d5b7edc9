"""Asset generation, approval and pipeline router."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import get_db
from models.generated_asset import GeneratedAsset
from models.generation_queue import GenerationQueueEntry
from routers.actor import ActorContext, get_actor
from services import categories, sprite_status as sprite_status_service, versioning
from services.audit_log import list_asset_audit, list_recent_audit, log_audit, serialize_audit
from services.errors import AssetNotFound, AssetValidationError
from services.generation import GenerationRequest, ReferenceSpec, generate, get_asset
from services.job_queue import enqueue_pipeline_job
from services.prompts import get_active_template, save_template
from services.references import (
    archive_reference_image,
    list_reference_images,
    list_reference_links,
    serialize_reference_image,
    upload_reference_image,
)

router = APIRouter()


class ReferenceSpecModel(BaseModel):
    type: Literal["library", "approved_asset"]
    id: int


class GenerationSettingsModel(BaseModel):
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    topK: Optional[int] = Field(default=None, ge=1)
    topP: Optional[float] = Field(default=None, ge=0, le=1)
    aspectRatio: Optional[str] = None
    imageSize: Optional[str] = None


class GenerateRequest(BaseModel):
    category: str = Field(min_length=1, max_length=64)
    asset_key: str = Field(min_length=1, max_length=128)
    prompt: Optional[str] = None
    custom_details: Optional[str] = None
    system_instructions: Optional[str] = None
    reference_specs: List[ReferenceSpecModel] = Field(default_factory=list)
    generation_settings: Optional[GenerationSettingsModel] = None
    model: Optional[str] = None


class RejectRequest(BaseModel):
    reason: str = ""
    incorporate_feedback: bool = True


class RegenerateRequest(BaseModel):
    prompt: Optional[str] = None
    generation_settings: Optional[GenerationSettingsModel] = None
    reference_specs: Optional[List[ReferenceSpecModel]] = None
    model: Optional[str] = None


class PromptTemplateRequest(BaseModel):
    base_prompt: str = Field(min_length=1)
    style_guide: Optional[str] = None
    system_instructions: Optional[str] = None
    template_name: Optional[str] = None
    change_notes: Optional[str] = None


class AssetResponse(BaseModel):
    id: int
    category: str
    asset_key: str
    variant: int
    status: str
    is_active: bool
    pipeline_status: Optional[str] = None
    pipeline_error: Optional[str] = None
    background_removed: bool = False
    base_prompt: Optional[str] = None
    current_prompt: Optional[str] = None
    prompt_version: int = 1
    rejection_count: int = 0
    generation_settings: Optional[Dict[str, Any]] = None
    generation_model: Optional[str] = None
    private_key: Optional[str] = None
    processed_key: Optional[str] = None
    public_key: Optional[str] = None
    public_url: Optional[str] = None
    parent_asset_id: Optional[int] = None
    sprite_variant: Optional[str] = None
    auto_created: bool = False
    error_message: Optional[str] = None
    approved_at: Optional[str] = None
    approved_by: Optional[str] = None
    pipeline_started_at: Optional[str] = None
    pipeline_completed_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ApproveResponse(BaseModel):
    asset: AssetResponse
    pipeline: str
    pipeline_job_id: Optional[str] = None
    auto_queued: List[Dict[str, Any]] = Field(default_factory=list)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_asset(asset: GeneratedAsset) -> AssetResponse:
    return AssetResponse(
        id=asset.id,
        category=asset.category,
        asset_key=asset.asset_key,
        variant=int(asset.variant),
        status=asset.status,
        is_active=bool(asset.is_active),
        pipeline_status=asset.pipeline_status,
        pipeline_error=asset.pipeline_error,
        background_removed=bool(asset.background_removed),
        base_prompt=asset.base_prompt,
        current_prompt=asset.current_prompt,
        prompt_version=int(asset.prompt_version or 1),
        rejection_count=int(asset.rejection_count or 0),
        generation_settings=asset.generation_settings,
        generation_model=asset.generation_model,
        private_key=asset.private_key,
        processed_key=asset.processed_key,
        public_key=asset.public_key,
        public_url=asset.public_url,
        parent_asset_id=asset.parent_asset_id,
        sprite_variant=asset.sprite_variant,
        auto_created=bool(asset.auto_created),
        error_message=asset.error_message,
        approved_at=_iso(asset.approved_at),
        approved_by=asset.approved_by,
        pipeline_started_at=_iso(asset.pipeline_started_at),
        pipeline_completed_at=_iso(asset.pipeline_completed_at),
        created_at=_iso(asset.created_at),
        updated_at=_iso(asset.updated_at),
    )


async def _respond(db: AsyncSession, asset: GeneratedAsset) -> AssetResponse:
    await db.refresh(asset)
    return _serialize_asset(asset)


def _settings_dict(model: Optional[GenerationSettingsModel]) -> Dict[str, Any]:
    if model is None:
        return {}
    return model.model_dump(exclude_none=True)


def _failed_generation(asset: GeneratedAsset) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={
            "error": "generation_failed",
            "message": asset.error_message or "Image generation failed",
            "asset_id": asset.id,
            "variant": asset.variant,
        },
    )


@router.post("/generate", response_model=AssetResponse)
async def generate_asset(
    request: GenerateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Generate the next variant of (category, asset_key)."""
    asset = await generate(
        db,
        GenerationRequest(
            category=request.category,
            asset_key=request.asset_key,
            prompt=request.prompt,
            custom_details=request.custom_details,
            references=[ReferenceSpec(type=spec.type, id=spec.id) for spec in request.reference_specs],
            settings=_settings_dict(request.generation_settings),
            system_instructions=request.system_instructions,
            model=request.model,
        ),
        actor=actor.name,
    )
    if asset.status == "failed":
        raise _failed_generation(asset)
    return await _respond(db, asset)


@router.get("/list/{category}", response_model=List[AssetResponse])
async def list_assets(
    category: str,
    include_archived: bool = False,
    db: AsyncSession = Depends(get_db),
):
    """List every version in a category."""
    query = select(GeneratedAsset).where(GeneratedAsset.category == category)
    if not include_archived:
        query = query.where(GeneratedAsset.status != "archived")
    result = await db.execute(query.order_by(GeneratedAsset.asset_key.asc(), GeneratedAsset.variant.asc()))
    return [_serialize_asset(asset) for asset in result.scalars().all()]


@router.get("/queue")
async def get_queue(db: AsyncSession = Depends(get_db)):
    """Open generation queue entries, highest priority first."""
    result = await db.execute(
        select(GenerationQueueEntry, GeneratedAsset)
        .join(GeneratedAsset, GenerationQueueEntry.asset_id == GeneratedAsset.id)
        .where(GenerationQueueEntry.status.in_(("queued", "processing")))
        .order_by(GenerationQueueEntry.priority.asc(), GenerationQueueEntry.id.asc())
    )
    rows = result.all()
    items = [
        {
            "id": entry.id,
            "asset_id": asset.id,
            "category": asset.category,
            "asset_key": asset.asset_key,
            "priority": entry.priority,
            "attempts": int(entry.attempts or 0),
            "status": "pending" if entry.status == "queued" else "generating",
            "created_at": _iso(entry.created_at),
        }
        for entry, asset in rows
    ]
    return {
        "pending": sum(1 for item in items if item["status"] == "pending"),
        "generating": sum(1 for item in items if item["status"] == "generating"),
        "items": items,
    }


@router.get("/audit")
async def get_recent_audit(
    action: Optional[str] = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
):
    """Most recent audit entries, optionally for one action."""
    entries = await list_recent_audit(db, action=action, limit=limit)
    return {"entries": [serialize_audit(entry) for entry in entries]}


@router.get("/sprite-requirements/{ref_category}")
async def get_sprite_requirements(ref_category: str):
    """Sprites expected from each reference sheet of a reference category."""
    return {
        "ref_category": ref_category,
        "sprite_category": categories.REF_TO_SPRITE_CATEGORY.get(ref_category),
        "requirements": sprite_status_service.list_requirements(ref_category),
    }


@router.get("/sprite-status/{ref_id}")
async def get_sprite_status(ref_id: int, db: AsyncSession = Depends(get_db)):
    """Progress of the sprites derived from one reference sheet."""
    return await sprite_status_service.sprite_status(db, ref_id)


@router.put("/prompts/{category}/{asset_key}")
async def put_prompt_template(
    category: str,
    asset_key: str,
    request: PromptTemplateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Save a new active prompt template version."""
    template = await save_template(
        db,
        category,
        asset_key,
        base_prompt=request.base_prompt,
        style_guide=request.style_guide,
        system_instructions=request.system_instructions,
        template_name=request.template_name,
        change_notes=request.change_notes,
        actor=actor.name,
    )
    log_audit(db, "prompt_template_saved", None, actor.name, {"category": category, "asset_key": asset_key, "version": template.version})
    await db.commit()
    return {"template_id": template.id, "version": template.version}


@router.get("/prompts/{category}/{asset_key}")
async def get_prompt_template(category: str, asset_key: str, db: AsyncSession = Depends(get_db)):
    """Active prompt template for a key."""
    template = await get_active_template(db, category, asset_key)
    if template is None:
        raise HTTPException(status_code=404, detail="Prompt template not found")
    return {
        "id": template.id,
        "category": template.category,
        "asset_key": template.asset_key,
        "template_name": template.template_name,
        "base_prompt": template.base_prompt,
        "style_guide": template.style_guide,
        "system_instructions": template.system_instructions,
        "version": template.version,
        "created_by": template.created_by,
        "created_at": _iso(template.created_at),
    }


@router.post("/reference-library/upload")
async def upload_reference(
    file: UploadFile = File(...),
    name: str = Form(""),
    category: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Upload an image into the reference library."""
    data = await file.read()
    image = await upload_reference_image(
        db,
        name=name,
        filename=file.filename or "reference.png",
        content_type=file.content_type or "application/octet-stream",
        data=data,
        category=category,
        description=description,
        actor=actor.name,
    )
    return serialize_reference_image(image)


@router.get("/reference-library")
async def list_references(
    category: Optional[str] = None,
    include_archived: bool = False,
    db: AsyncSession = Depends(get_db),
):
    """List reference library images."""
    images = await list_reference_images(db, category=category, include_archived=include_archived)
    return {"images": [serialize_reference_image(image) for image in images]}


@router.post("/reference-library/{image_id}/archive")
async def archive_reference(
    image_id: int,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Hide a reference image from the library."""
    image = await archive_reference_image(db, image_id, actor=actor.name)
    return serialize_reference_image(image)


@router.get("/{asset_id}", response_model=AssetResponse)
async def get_asset_detail(asset_id: int, db: AsyncSession = Depends(get_db)):
    """Get a single asset version."""
    asset = await get_asset(db, asset_id)
    if asset is None:
        raise AssetNotFound(asset_id)
    return await _respond(db, asset)


@router.put("/{asset_id}/approve", response_model=ApproveResponse)
async def approve_asset(
    asset_id: int,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Approve and activate; the pipeline runs on the worker."""
    result = await versioning.approve(db, asset_id, actor=actor.name)
    return ApproveResponse(
        asset=await _respond(db, result.asset),
        pipeline=result.pipeline,
        pipeline_job_id=result.pipeline_job_id,
        auto_queued=result.auto_queued,
    )


@router.put("/{asset_id}/reject", response_model=AssetResponse)
async def reject_asset(
    asset_id: int,
    request: RejectRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Reject with a reason; the reason is folded into the next prompt by default."""
    asset = await versioning.reject(
        db,
        asset_id,
        request.reason,
        incorporate_feedback=request.incorporate_feedback,
        actor=actor.name,
    )
    return await _respond(db, asset)


@router.post("/{asset_id}/regenerate", response_model=AssetResponse)
async def regenerate_asset(
    asset_id: int,
    request: Optional[RegenerateRequest] = None,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Generate a new variant from an existing one."""
    request = request or RegenerateRequest()
    overrides = versioning.RegenerateOverrides(
        prompt=request.prompt,
        settings=_settings_dict(request.generation_settings),
        references=(
            [ReferenceSpec(type=spec.type, id=spec.id) for spec in request.reference_specs]
            if request.reference_specs is not None
            else None
        ),
        model=request.model,
    )
    asset = await versioning.regenerate(db, asset_id, overrides, actor=actor.name)
    if asset.status == "failed":
        raise _failed_generation(asset)
    return await _respond(db, asset)


@router.put("/{asset_id}/set-active", response_model=AssetResponse)
async def set_active_asset(
    asset_id: int,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Make an approved variant the active one."""
    asset = await versioning.set_active(db, asset_id, actor=actor.name)
    return await _respond(db, asset)


@router.post("/{asset_id}/reset-prompt", response_model=AssetResponse)
async def reset_asset_prompt(
    asset_id: int,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Drop accumulated feedback from the working prompt."""
    asset = await versioning.reset_prompt(db, asset_id, actor=actor.name)
    return await _respond(db, asset)


@router.post("/{asset_id}/archive", response_model=AssetResponse)
async def archive_asset(
    asset_id: int,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Soft-hide an asset version."""
    asset = await versioning.archive(db, asset_id, actor=actor.name)
    return await _respond(db, asset)


@router.post("/{asset_id}/process")
async def process_asset(
    asset_id: int,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Re-run the pipeline for an approved asset, even if it was processed before."""
    asset = await get_asset(db, asset_id)
    if asset is None:
        raise AssetNotFound(asset_id)
    if asset.status != "approved":
        raise AssetValidationError(f"Asset {asset_id} must be approved before processing")
    if categories.is_reference_category(asset.category):
        raise AssetValidationError("Reference sheets are not published; generate sprites from them instead")

    try:
        job = enqueue_pipeline_job(asset.id, force=True)
    except Exception as exc:
        asset.pipeline_status = "failed"
        asset.pipeline_error = f"queue_unavailable: {exc}"
        await db.commit()
        raise HTTPException(
            status_code=503,
            detail="Pipeline queue unavailable. Check Redis/worker availability and retry.",
        ) from exc

    log_audit(db, "process", asset.id, actor.name, {"queue_job_id": job.id})
    await db.commit()
    return {"asset_id": asset.id, "pipeline": "started", "pipeline_job_id": job.id}


@router.get("/{asset_id}/rejections")
async def get_rejections(asset_id: int, db: AsyncSession = Depends(get_db)):
    """Rejection history, newest first."""
    rejections = await versioning.list_rejections(db, asset_id)
    return {
        "rejections": [
            {
                "id": rejection.id,
                "asset_id": rejection.asset_id,
                "rejected_by": rejection.rejected_by,
                "rejection_reason": rejection.rejection_reason,
                "prompt_at_rejection": rejection.prompt_at_rejection,
                "prompt_version": rejection.prompt_version,
                "storage_key_rejected": rejection.storage_key_rejected,
                "created_at": _iso(rejection.created_at),
            }
            for rejection in rejections
        ]
    }


@router.get("/{asset_id}/reference-links")
async def get_reference_links(asset_id: int, db: AsyncSession = Depends(get_db)):
    """References that fed this generation, in priority order."""
    if await get_asset(db, asset_id) is None:
        raise AssetNotFound(asset_id)
    return {"links": await list_reference_links(db, asset_id)}


@router.get("/{asset_id}/audit")
async def get_asset_audit(asset_id: int, db: AsyncSession = Depends(get_db)):
    """Audit trail for one asset."""
    entries = await list_asset_audit(db, asset_id)
    return {"entries": [serialize_audit(entry) for entry in entries]}
