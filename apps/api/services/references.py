"""Reference image library and per-asset reference link reads."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.reference_image import AssetReferenceLink, ReferenceImage
from services.audit_log import log_audit
from services.errors import AssetValidationError, ReferenceNotFound
from services.imaging import image_dimensions
from services.storage import PRIVATE, get_object_store, reference_library_key

ALLOWED_MIME_TYPES = {"image/png", "image/jpeg", "image/webp"}
MAX_REFERENCE_BYTES = 20 * 1024 * 1024


def _safe_filename(name: str) -> str:
    base = os.path.basename(name or "reference.png")
    cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_", "."} else "_" for ch in base)
    return cleaned or "reference.png"


async def upload_reference_image(
    db: AsyncSession,
    *,
    name: str,
    filename: str,
    content_type: str,
    data: bytes,
    category: Optional[str] = None,
    description: Optional[str] = None,
    actor: Optional[str] = None,
) -> ReferenceImage:
    if content_type not in ALLOWED_MIME_TYPES:
        raise AssetValidationError(f"Unsupported reference image type: {content_type}")
    if not data:
        raise AssetValidationError("Reference image is empty")
    if len(data) > MAX_REFERENCE_BYTES:
        raise AssetValidationError("Reference image is larger than 20MB")
    try:
        width, height = image_dimensions(data)
    except Exception as exc:
        raise AssetValidationError("Reference image could not be decoded") from exc

    image = ReferenceImage(
        name=(name or "").strip() or _safe_filename(filename),
        description=description,
        category=category,
        storage_key="",
        mime_type=content_type,
        file_size=len(data),
        width=width,
        height=height,
        uploaded_by=actor,
    )
    db.add(image)
    await db.flush()
    image.storage_key = reference_library_key(image.id, _safe_filename(filename))
    await get_object_store().put(PRIVATE, image.storage_key, data, content_type)
    log_audit(db, "reference_upload", None, actor, {"reference_image_id": image.id, "name": image.name})
    await db.commit()
    return image


async def list_reference_images(
    db: AsyncSession,
    *,
    category: Optional[str] = None,
    include_archived: bool = False,
) -> List[ReferenceImage]:
    query = select(ReferenceImage)
    if category:
        query = query.where(ReferenceImage.category == category)
    if not include_archived:
        query = query.where(ReferenceImage.is_archived.is_(False))
    result = await db.execute(query.order_by(ReferenceImage.id.desc()))
    return list(result.scalars().all())


async def archive_reference_image(db: AsyncSession, image_id: int, *, actor: Optional[str] = None) -> ReferenceImage:
    image = await db.get(ReferenceImage, image_id)
    if image is None:
        raise ReferenceNotFound(f"Reference image {image_id} not found", reference_id=image_id)
    if not image.is_archived:
        image.is_archived = True
        image.archived_at = datetime.now(timezone.utc)
        log_audit(db, "reference_archive", None, actor, {"reference_image_id": image.id})
        await db.commit()
    return image


def serialize_reference_image(image: ReferenceImage) -> Dict[str, Any]:
    return {
        "id": image.id,
        "name": image.name,
        "description": image.description,
        "category": image.category,
        "storage_key": image.storage_key,
        "mime_type": image.mime_type,
        "file_size": image.file_size,
        "width": image.width,
        "height": image.height,
        "usage_count": int(image.usage_count or 0),
        "is_archived": bool(image.is_archived),
        "created_at": image.created_at.isoformat() if image.created_at else None,
    }


async def list_reference_links(db: AsyncSession, asset_id: int) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(AssetReferenceLink)
        .where(AssetReferenceLink.asset_id == asset_id)
        .order_by(AssetReferenceLink.sort_order.asc(), AssetReferenceLink.id.asc())
    )
    return [
        {
            "id": link.id,
            "link_type": link.link_type,
            "reference_image_id": link.reference_image_id,
            "approved_asset_id": link.approved_asset_id,
            "sort_order": link.sort_order,
        }
        for link in result.scalars().all()
    ]
