"""Append-only asset audit log."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.asset_audit_log import AssetAuditLog

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def log_audit(
    db: AsyncSession,
    action: str,
    asset_id: Optional[int],
    actor: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AssetAuditLog:
    """Stage an audit row in the caller's transaction; the caller commits."""
    entry = AssetAuditLog(
        action=action,
        asset_id=asset_id,
        actor=actor or SYSTEM_ACTOR,
        details=details or None,
    )
    db.add(entry)
    logger.info("asset audit: %s asset=%s actor=%s", action, asset_id, entry.actor)
    return entry


async def list_asset_audit(db: AsyncSession, asset_id: int) -> List[AssetAuditLog]:
    result = await db.execute(
        select(AssetAuditLog)
        .where(AssetAuditLog.asset_id == asset_id)
        .order_by(AssetAuditLog.id.asc())
    )
    return list(result.scalars().all())


async def list_recent_audit(db: AsyncSession, *, action: Optional[str] = None, limit: int = 100) -> List[AssetAuditLog]:
    query = select(AssetAuditLog)
    if action:
        query = query.where(AssetAuditLog.action == action)
    query = query.order_by(AssetAuditLog.id.desc()).limit(max(1, min(int(limit), 500)))
    result = await db.execute(query)
    return list(result.scalars().all())


def serialize_audit(entry: AssetAuditLog) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action,
        "asset_id": entry.asset_id,
        "actor": entry.actor,
        "details": entry.details or {},
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
