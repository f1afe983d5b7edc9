"""Live-game asset configuration: which approved sprite is wired in, and whether it is published."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.asset_configuration import AssetConfiguration
from models.generated_asset import GeneratedAsset
from services import categories
from services.audit_log import log_audit
from services.errors import AssetNotFound, AssetValidationError


async def get_configuration(db: AsyncSession, category: str, asset_key: str) -> Optional[AssetConfiguration]:
    result = await db.execute(
        select(AssetConfiguration).where(
            AssetConfiguration.category == category,
            AssetConfiguration.asset_key == asset_key,
        )
    )
    return result.scalar_one_or_none()


async def list_configurations(db: AsyncSession, category: str) -> List[Dict[str, Any]]:
    """One entry per known or configured key, with the count of approved sprites available."""
    result = await db.execute(select(AssetConfiguration).where(AssetConfiguration.category == category))
    configs = {config.asset_key: config for config in result.scalars().all()}

    counts_result = await db.execute(
        select(GeneratedAsset.asset_key, func.count(GeneratedAsset.id))
        .where(GeneratedAsset.category == category, GeneratedAsset.status == "approved")
        .group_by(GeneratedAsset.asset_key)
    )
    counts = {key: int(count) for key, count in counts_result.all()}

    sprite_ids = [config.active_sprite_id for config in configs.values() if config.active_sprite_id]
    sprites: Dict[int, GeneratedAsset] = {}
    if sprite_ids:
        sprite_result = await db.execute(select(GeneratedAsset).where(GeneratedAsset.id.in_(sprite_ids)))
        sprites = {sprite.id: sprite for sprite in sprite_result.scalars().all()}

    keys = list(categories.ASSET_KEYS.get(category, []))
    keys.extend(sorted((set(configs) | set(counts)) - set(keys)))
    rows = []
    for key in keys:
        config = configs.get(key)
        sprite = sprites.get(config.active_sprite_id) if config and config.active_sprite_id else None
        rows.append(serialize_configuration(config, category=category, asset_key=key, sprite=sprite, available_sprites=counts.get(key, 0)))
    return rows


def serialize_configuration(
    config: Optional[AssetConfiguration],
    *,
    category: str,
    asset_key: str,
    sprite: Optional[GeneratedAsset] = None,
    available_sprites: int = 0,
) -> Dict[str, Any]:
    return {
        "id": config.id if config else None,
        "category": category,
        "asset_key": asset_key,
        "active_sprite_id": config.active_sprite_id if config else None,
        "cost_override": config.cost_override if config else None,
        "scale_override": config.scale_override if config else None,
        "config": (config.config_json if config else None) or {},
        "is_published": bool(config.is_published) if config else False,
        "published_at": config.published_at.isoformat() if config and config.published_at else None,
        "published_by": config.published_by if config else None,
        "sprite_url": sprite.public_url if sprite else None,
        "available_sprites": available_sprites,
    }


async def _approved_sprite(db: AsyncSession, sprite_id: int, category: str, asset_key: str) -> GeneratedAsset:
    sprite = await db.get(GeneratedAsset, sprite_id)
    if sprite is None:
        raise AssetNotFound(sprite_id)
    if sprite.category != category or sprite.asset_key != asset_key:
        raise AssetValidationError(
            f"Asset {sprite_id} belongs to {sprite.category}/{sprite.asset_key}, not {category}/{asset_key}"
        )
    if sprite.status != "approved":
        raise AssetValidationError(f"Asset {sprite_id} must be approved before it can be configured")
    return sprite


async def upsert_configuration(
    db: AsyncSession,
    category: str,
    asset_key: str,
    updates: Dict[str, Any],
    *,
    actor: Optional[str] = None,
) -> AssetConfiguration:
    """Apply only the fields present in updates; explicit None clears a field."""
    if "active_sprite_id" in updates and updates["active_sprite_id"] is not None:
        await _approved_sprite(db, int(updates["active_sprite_id"]), category, asset_key)

    config = await get_configuration(db, category, asset_key)
    if config is None:
        config = AssetConfiguration(category=category, asset_key=asset_key, is_published=False)
        db.add(config)
    if "active_sprite_id" in updates:
        config.active_sprite_id = updates["active_sprite_id"]
    if "cost_override" in updates:
        config.cost_override = updates["cost_override"]
    if "scale_override" in updates:
        config.scale_override = updates["scale_override"]
    if "config" in updates:
        config.config_json = updates["config"]
    await db.flush()
    log_audit(db, "update_configuration", config.active_sprite_id, actor, {"category": category, "asset_key": asset_key, **{k: v for k, v in updates.items() if k != "config"}})
    await db.commit()
    return config


async def publish_configuration(db: AsyncSession, category: str, asset_key: str, *, actor: Optional[str] = None) -> AssetConfiguration:
    config = await get_configuration(db, category, asset_key)
    if config is None or not config.active_sprite_id:
        raise AssetValidationError(f"Select an approved sprite for {category}/{asset_key} before publishing")
    sprite = await _approved_sprite(db, config.active_sprite_id, category, asset_key)
    if not sprite.public_url:
        raise AssetValidationError(f"Asset {sprite.id} has no published image yet; run processing first")
    config.is_published = True
    config.published_at = datetime.now(timezone.utc)
    config.published_by = actor
    log_audit(db, "publish_configuration", sprite.id, actor, {"category": category, "asset_key": asset_key})
    await db.commit()
    return config


async def unpublish_configuration(db: AsyncSession, category: str, asset_key: str, *, actor: Optional[str] = None) -> AssetConfiguration:
    config = await get_configuration(db, category, asset_key)
    if config is None:
        raise AssetValidationError(f"No configuration for {category}/{asset_key}")
    config.is_published = False
    log_audit(db, "unpublish_configuration", config.active_sprite_id, actor, {"category": category, "asset_key": asset_key})
    await db.commit()
    return config
