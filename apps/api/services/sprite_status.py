"""Progress of the sprites a reference sheet is expected to produce."""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.generated_asset import GeneratedAsset
from services import categories
from services.errors import AssetNotFound, AssetValidationError

IN_PROGRESS_STATUSES = ("pending", "generating", "completed", "review")


def list_requirements(ref_category: str) -> List[Dict[str, Any]]:
    if ref_category not in categories.REFERENCE_CATEGORIES:
        raise AssetValidationError(f"{ref_category} is not a reference category")
    return [
        {
            "ref_asset_key": requirement.parent.asset_key,
            "sprite_category": requirement.category,
            "sprite_asset_key": requirement.asset_key,
        }
        for requirement in categories.sprite_requirements(ref_category)
    ]


def _sprite_state(rows: List[GeneratedAsset]) -> str:
    statuses = {row.status for row in rows}
    if "approved" in statuses:
        return "completed"
    if statuses & set(IN_PROGRESS_STATUSES):
        return "in_progress"
    return "not_started"


async def sprite_status(db: AsyncSession, ref_id: int) -> Dict[str, Any]:
    ref = await db.get(GeneratedAsset, ref_id)
    if ref is None:
        raise AssetNotFound(ref_id)
    if not categories.is_reference_category(ref.category):
        raise AssetValidationError(f"Asset {ref_id} is not a reference sheet")

    requirements = categories.required_sprites_for(ref.category, ref.asset_key)
    sprites = []
    for requirement in requirements:
        result = await db.execute(
            select(GeneratedAsset)
            .where(
                GeneratedAsset.category == requirement.category,
                GeneratedAsset.asset_key == requirement.asset_key,
                GeneratedAsset.status != "archived",
            )
            .order_by(GeneratedAsset.variant.asc())
        )
        rows = list(result.scalars().all())
        active = next((row for row in rows if row.is_active), None)
        sprites.append(
            {
                "category": requirement.category,
                "asset_key": requirement.asset_key,
                "state": _sprite_state(rows),
                "variants": len(rows),
                "active_asset_id": active.id if active else None,
                "public_url": active.public_url if active else None,
            }
        )

    total = len(sprites)
    completed = sum(1 for sprite in sprites if sprite["state"] == "completed")
    in_progress = sum(1 for sprite in sprites if sprite["state"] == "in_progress")
    return {
        "ref_id": ref.id,
        "ref_category": ref.category,
        "ref_asset_key": ref.asset_key,
        "ref_status": ref.status,
        "total": total,
        "completed": completed,
        "in_progress": in_progress,
        "not_started": total - completed - in_progress,
        "percent_complete": round(completed * 100 / total) if total else 100,
        "sprites": sprites,
    }
