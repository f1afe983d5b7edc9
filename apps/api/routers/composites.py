"""Avatar and scene composite router."""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.composite import SceneTemplate
from routers.actor import ActorContext, get_actor
from services import composites
from services.errors import AssetValidationError

router = APIRouter()


class AvatarSelectionRequest(BaseModel):
    background: Optional[str] = None
    base: Optional[str] = None
    skin: Optional[str] = None
    outfit: Optional[str] = None
    hair: Optional[str] = None
    headwear: Optional[str] = None
    accessory: Optional[str] = None


class AvatarSlotModel(BaseModel):
    x: int
    y: int
    width: int = Field(gt=0)
    height: int = Field(gt=0)


class SceneTemplateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    background_key: str = Field(min_length=1)
    foreground_key: Optional[str] = None
    description: Optional[str] = None
    avatar_slot: AvatarSlotModel
    width: int = Field(default=1920, gt=0)
    height: int = Field(default=1080, gt=0)
    is_active: bool = True


def _serialize_template(template: SceneTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "description": template.description,
        "background_key": template.background_key,
        "foreground_key": template.foreground_key,
        "avatar_slot": template.avatar_slot,
        "width": template.width,
        "height": template.height,
        "is_active": bool(template.is_active),
    }


async def _read_png(file: UploadFile) -> bytes:
    data = await file.read()
    if not data:
        raise AssetValidationError("Composite image is empty")
    return data


@router.put("/avatar/{company_id}/selection")
async def put_avatar_selection(
    company_id: str,
    request: AvatarSelectionRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Replace the layers a company has selected for its avatar."""
    avatar = await composites.save_avatar_selection(
        db,
        company_id,
        request.model_dump(exclude_unset=True),
        actor=actor.name,
    )
    selection = {slot: getattr(avatar, f"{slot}_id") for slot in composites.AVATAR_SLOTS}
    return {
        "company_id": company_id,
        "selection": selection,
        "content_hash": composites.compute_composite_hash(composites.avatar_constituents(avatar)),
    }


@router.get("/avatar/{company_id}")
async def get_avatar(
    company_id: str,
    context: str = composites.DEFAULT_AVATAR_CONTEXT,
    db: AsyncSession = Depends(get_db),
):
    """Cached avatar composite, or the layers to compose when the cache is stale."""
    result = await composites.get_avatar_composite(db, company_id, context)
    return asdict(result)


@router.post("/avatar/{company_id}")
async def post_avatar(
    company_id: str,
    file: UploadFile = File(...),
    context: str = Form(composites.DEFAULT_AVATAR_CONTEXT),
    db: AsyncSession = Depends(get_db),
):
    """Store a client-rendered avatar composite for the current selection."""
    result = await composites.save_avatar_composite(db, company_id, await _read_png(file), context)
    return asdict(result)


@router.get("/scenes/templates")
async def get_scene_templates(include_inactive: bool = False, db: AsyncSession = Depends(get_db)):
    templates = await composites.list_scene_templates(db, include_inactive=include_inactive)
    return {"templates": [_serialize_template(template) for template in templates]}


@router.put("/scenes/templates/{scene_id}")
async def put_scene_template(
    scene_id: str,
    request: SceneTemplateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create or replace a scene template; cached scenes built from it are dropped."""
    template = await composites.save_scene_template(
        db,
        scene_id,
        name=request.name,
        background_key=request.background_key,
        avatar_slot=request.avatar_slot.model_dump(),
        foreground_key=request.foreground_key,
        description=request.description,
        width=request.width,
        height=request.height,
        is_active=request.is_active,
        actor=actor.name,
    )
    return _serialize_template(template)


@router.get("/scenes/{scene_id}/{company_id}")
async def get_scene(scene_id: str, company_id: str, db: AsyncSession = Depends(get_db)):
    result = await composites.get_scene_composite(db, scene_id, company_id)
    return asdict(result)


@router.post("/scenes/{scene_id}/{company_id}")
async def post_scene(
    scene_id: str,
    company_id: str,
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
):
    """Store a client-rendered scene composite."""
    result = await composites.save_scene_composite(db, scene_id, company_id, await _read_png(file))
    return asdict(result)
