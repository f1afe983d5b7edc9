"""Avatar layers, scene templates and composite cache models."""

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class AvatarItem(Base):
    """A single avatar layer image (base body, outfit, hair, ...)."""

    __tablename__ = "avatar_items"

    id = Column(String, primary_key=True)
    layer = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    storage_key = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class CompanyAvatar(Base):
    """Per-company avatar layer selection."""

    __tablename__ = "company_avatars"

    company_id = Column(String, primary_key=True)
    background_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    base_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    skin_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    outfit_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    hair_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    headwear_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    accessory_id = Column(String, ForeignKey("avatar_items.id"), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SceneTemplate(Base):
    """Layered scene: background, optional foreground, and an avatar slot."""

    __tablename__ = "scene_templates"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    background_key = Column(String, nullable=False)
    foreground_key = Column(String, nullable=True)
    avatar_slot = Column(JSON, nullable=False)  # {"x", "y", "width", "height", "rotation"}
    width = Column(Integer, nullable=False, default=1920)
    height = Column(Integer, nullable=False, default=1080)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class CompositeCacheEntry(Base):
    """Cached composite image keyed by the hash of its constituents."""

    __tablename__ = "composite_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)  # avatar, scene
    owner_id = Column(String, nullable=False, index=True)  # company id
    context = Column(String, nullable=False)  # avatar context or scene template id
    content_hash = Column(String, nullable=False)
    storage_key = Column(String, nullable=False)
    public_url = Column(String, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_accessed_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    __table_args__ = (UniqueConstraint("kind", "owner_id", "context", name="uq_composite_cache_slot"),)
