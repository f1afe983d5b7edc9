"""Asset configuration router (live-game wiring and publish gate)."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.asset_configuration import AssetConfiguration
from routers.actor import ActorContext, get_actor
from services import configurations

router = APIRouter()


class ConfigurationUpdateRequest(BaseModel):
    active_sprite_id: Optional[int] = None
    cost_override: Optional[int] = None
    scale_override: Optional[float] = None
    config: Optional[Dict[str, Any]] = None


def _serialize(config: AssetConfiguration) -> Dict[str, Any]:
    return configurations.serialize_configuration(config, category=config.category, asset_key=config.asset_key)


@router.get("/{category}")
async def list_configurations(category: str, db: AsyncSession = Depends(get_db)):
    """Configuration state for every key in a category."""
    return {"configurations": await configurations.list_configurations(db, category)}


@router.put("/{category}/{asset_key}")
async def update_configuration(
    category: str,
    asset_key: str,
    request: ConfigurationUpdateRequest,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Create or update a configuration; only supplied fields change."""
    config = await configurations.upsert_configuration(
        db,
        category,
        asset_key,
        request.model_dump(exclude_unset=True),
        actor=actor.name,
    )
    return _serialize(config)


@router.post("/{category}/{asset_key}/publish")
async def publish_configuration(
    category: str,
    asset_key: str,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Make a configuration live in the game."""
    config = await configurations.publish_configuration(db, category, asset_key, actor=actor.name)
    return _serialize(config)


@router.post("/{category}/{asset_key}/unpublish")
async def unpublish_configuration(
    category: str,
    asset_key: str,
    actor: ActorContext = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Take a configuration out of the live game."""
    config = await configurations.unpublish_configuration(db, category, asset_key, actor=actor.name)
    return _serialize(config)
