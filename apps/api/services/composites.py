"""Content-hash keyed cache for avatar and scene composites."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.composite import AvatarItem, CompanyAvatar, CompositeCacheEntry, SceneTemplate
from services.audit_log import log_audit
from services.errors import AssetValidationError, ReferenceNotFound
from services.storage import PUBLIC, avatar_composite_key, get_object_store, scene_composite_key

logger = logging.getLogger(__name__)

AVATAR = "avatar"
SCENE = "scene"
AVATAR_SLOTS = ("background", "base", "skin", "outfit", "hair", "headwear", "accessory")
DEFAULT_AVATAR_CONTEXT = "profile"
HASH_LENGTH = 16


@dataclass
class CompositeResult:
    cached: bool
    content_hash: str
    url: Optional[str] = None
    layers: List[Dict[str, Any]] = field(default_factory=list)


def compute_composite_hash(constituents: Iterable[Any]) -> str:
    """Stable hash over the sorted, de-duplicated, non-empty constituent identifiers."""
    values = sorted({str(value) for value in constituents if value not in (None, "")})
    return hashlib.sha256("|".join(values).encode("utf-8")).hexdigest()[:HASH_LENGTH]


async def _get_entry(db: AsyncSession, kind: str, owner_id: str, context: str) -> Optional[CompositeCacheEntry]:
    result = await db.execute(
        select(CompositeCacheEntry).where(
            CompositeCacheEntry.kind == kind,
            CompositeCacheEntry.owner_id == owner_id,
            CompositeCacheEntry.context == context,
        )
    )
    return result.scalar_one_or_none()


def _storage_key(kind: str, owner_id: str, context: str) -> str:
    if kind == AVATAR:
        return avatar_composite_key(owner_id, context)
    return scene_composite_key(context, owner_id)


async def get_or_build_composite(
    db: AsyncSession,
    kind: str,
    owner_id: str,
    context: str,
    constituents: Iterable[Any],
    image_bytes: Optional[bytes] = None,
    *,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> CompositeResult:
    """Return the cached composite when its hash still matches, else store the supplied bytes.

    Without image bytes a miss returns cached=False and no URL; composition happens client side.
    """
    content_hash = compute_composite_hash(constituents)
    entry = await _get_entry(db, kind, owner_id, context)
    now = datetime.now(timezone.utc)

    if entry is not None and entry.content_hash == content_hash:
        entry.last_accessed_at = now
        await db.commit()
        return CompositeResult(cached=True, content_hash=content_hash, url=entry.public_url)

    if image_bytes is None:
        return CompositeResult(cached=False, content_hash=content_hash)

    store = get_object_store()
    key = _storage_key(kind, owner_id, context)
    await store.put(PUBLIC, key, image_bytes, "image/png")
    url = f"{store.public_url(key)}?v={content_hash}"

    if entry is None:
        entry = CompositeCacheEntry(kind=kind, owner_id=owner_id, context=context)
        db.add(entry)
    entry.content_hash = content_hash
    entry.storage_key = key
    entry.public_url = url
    entry.width = width
    entry.height = height
    entry.last_accessed_at = now
    await db.commit()
    logger.info("Stored %s composite %s/%s hash=%s", kind, owner_id, context, content_hash)
    return CompositeResult(cached=False, content_hash=content_hash, url=url)


async def invalidate_scene_composites(
    db: AsyncSession,
    *,
    company_id: Optional[str] = None,
    scene_id: Optional[str] = None,
) -> int:
    """Drop scene cache rows for a company and/or template. The caller commits."""
    if company_id is None and scene_id is None:
        raise ValueError("company_id or scene_id is required")
    statement = delete(CompositeCacheEntry).where(CompositeCacheEntry.kind == SCENE)
    if company_id is not None:
        statement = statement.where(CompositeCacheEntry.owner_id == company_id)
    if scene_id is not None:
        statement = statement.where(CompositeCacheEntry.context == scene_id)
    result = await db.execute(statement.execution_options(synchronize_session="fetch"))
    return int(result.rowcount or 0)


# Avatars

async def get_selection(db: AsyncSession, company_id: str) -> Optional[CompanyAvatar]:
    return await db.get(CompanyAvatar, company_id)


async def save_avatar_selection(
    db: AsyncSession,
    company_id: str,
    selection: Dict[str, Optional[str]],
    *,
    actor: Optional[str] = None,
) -> CompanyAvatar:
    unknown = sorted(set(selection) - set(AVATAR_SLOTS))
    if unknown:
        raise AssetValidationError(f"Unknown avatar slots: {', '.join(unknown)}")

    item_ids = [item_id for item_id in selection.values() if item_id]
    items: Dict[str, AvatarItem] = {}
    if item_ids:
        result = await db.execute(select(AvatarItem).where(AvatarItem.id.in_(item_ids)))
        items = {item.id: item for item in result.scalars().all()}
    for slot, item_id in selection.items():
        if not item_id:
            continue
        item = items.get(item_id)
        if item is None:
            raise ReferenceNotFound(f"Avatar item {item_id} not found", reference_id=item_id)
        if item.layer != slot:
            raise AssetValidationError(f"Avatar item {item_id} is a {item.layer} layer, not {slot}")

    avatar = await get_selection(db, company_id)
    if avatar is None:
        avatar = CompanyAvatar(company_id=company_id)
        db.add(avatar)
    for slot, item_id in selection.items():
        setattr(avatar, f"{slot}_id", item_id or None)
    log_audit(db, "avatar_selection", None, actor, {"company_id": company_id, "selection": selection})
    await db.commit()
    return avatar


def avatar_constituents(avatar: Optional[CompanyAvatar]) -> List[str]:
    if avatar is None:
        return []
    return [getattr(avatar, f"{slot}_id") for slot in AVATAR_SLOTS if getattr(avatar, f"{slot}_id")]


async def avatar_layers(db: AsyncSession, avatar: Optional[CompanyAvatar]) -> List[Dict[str, Any]]:
    """Selected layers in draw order with their public URLs."""
    ids = avatar_constituents(avatar)
    if not ids:
        return []
    result = await db.execute(select(AvatarItem).where(AvatarItem.id.in_(ids)))
    items = {item.id: item for item in result.scalars().all()}
    store = get_object_store()
    layers = []
    for slot in AVATAR_SLOTS:
        item_id = getattr(avatar, f"{slot}_id")
        item = items.get(item_id) if item_id else None
        if item is not None:
            layers.append({"slot": slot, "item_id": item.id, "url": store.public_url(item.storage_key)})
    return layers


async def current_avatar_hash(db: AsyncSession, company_id: str) -> str:
    return compute_composite_hash(avatar_constituents(await get_selection(db, company_id)))


async def get_avatar_composite(db: AsyncSession, company_id: str, context: str = DEFAULT_AVATAR_CONTEXT) -> CompositeResult:
    avatar = await get_selection(db, company_id)
    result = await get_or_build_composite(db, AVATAR, company_id, context, avatar_constituents(avatar))
    if not result.cached:
        result.layers = await avatar_layers(db, avatar)
    return result


async def save_avatar_composite(
    db: AsyncSession,
    company_id: str,
    image_bytes: bytes,
    context: str = DEFAULT_AVATAR_CONTEXT,
) -> CompositeResult:
    avatar = await get_selection(db, company_id)
    if avatar is None or not avatar_constituents(avatar):
        raise AssetValidationError(f"Company {company_id} has no avatar selection")
    result = await get_or_build_composite(db, AVATAR, company_id, context, avatar_constituents(avatar), image_bytes)
    if not result.cached:
        removed = await invalidate_scene_composites(db, company_id=company_id)
        await db.commit()
        if removed:
            logger.info("Invalidated %s scene composites for company %s", removed, company_id)
    return result


# Scenes

async def get_scene_template(db: AsyncSession, scene_id: str) -> SceneTemplate:
    template = await db.get(SceneTemplate, scene_id)
    if template is None:
        raise ReferenceNotFound(f"Scene template {scene_id} not found", reference_id=scene_id)
    return template


async def list_scene_templates(db: AsyncSession, include_inactive: bool = False) -> List[SceneTemplate]:
    query = select(SceneTemplate)
    if not include_inactive:
        query = query.where(SceneTemplate.is_active.is_(True))
    result = await db.execute(query.order_by(SceneTemplate.id.asc()))
    return list(result.scalars().all())


async def save_scene_template(
    db: AsyncSession,
    scene_id: str,
    *,
    name: str,
    background_key: str,
    avatar_slot: Dict[str, Any],
    foreground_key: Optional[str] = None,
    description: Optional[str] = None,
    width: int = 1920,
    height: int = 1080,
    is_active: bool = True,
    actor: Optional[str] = None,
) -> SceneTemplate:
    missing = [key for key in ("x", "y", "width", "height") if key not in (avatar_slot or {})]
    if missing:
        raise AssetValidationError(f"avatar_slot is missing {', '.join(missing)}")

    template = await db.get(SceneTemplate, scene_id)
    if template is None:
        template = SceneTemplate(id=scene_id)
        db.add(template)
    template.name = name
    template.description = description
    template.background_key = background_key
    template.foreground_key = foreground_key
    template.avatar_slot = dict(avatar_slot)
    template.width = width
    template.height = height
    template.is_active = is_active
    await db.flush()
    removed = await invalidate_scene_composites(db, scene_id=scene_id)
    log_audit(db, "scene_template_saved", None, actor, {"scene_id": scene_id, "invalidated": removed})
    await db.commit()
    return template


def scene_constituents(template: SceneTemplate, avatar_hash: str) -> List[str]:
    values = [f"background:{template.background_key}", f"avatar:{avatar_hash}"]
    if template.foreground_key:
        values.append(f"foreground:{template.foreground_key}")
    return values


async def get_scene_composite(db: AsyncSession, scene_id: str, company_id: str) -> CompositeResult:
    template = await get_scene_template(db, scene_id)
    avatar_hash = await current_avatar_hash(db, company_id)
    return await get_or_build_composite(db, SCENE, company_id, scene_id, scene_constituents(template, avatar_hash))


async def save_scene_composite(db: AsyncSession, scene_id: str, company_id: str, image_bytes: bytes) -> CompositeResult:
    template = await get_scene_template(db, scene_id)
    avatar_hash = await current_avatar_hash(db, company_id)
    return await get_or_build_composite(
        db,
        SCENE,
        company_id,
        scene_id,
        scene_constituents(template, avatar_hash),
        image_bytes,
        width=template.width,
        height=template.height,
    )
