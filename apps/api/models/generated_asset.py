"""Generated asset version model."""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GeneratedAsset(Base):
    """One row per generated image version of a (category, asset_key)."""

    __tablename__ = "generated_assets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String, nullable=False, index=True)
    asset_key = Column(String, nullable=False, index=True)
    variant = Column(Integer, nullable=False, default=1)

    # Prompt provenance
    base_prompt = Column(Text, nullable=False, default="")
    current_prompt = Column(Text, nullable=False, default="")
    prompt_version = Column(Integer, nullable=False, default=1)
    rejection_count = Column(Integer, nullable=False, default=0)
    system_instructions = Column(Text, nullable=True)
    generation_settings = Column(JSON, nullable=True)
    generation_model = Column(String, nullable=True)

    # Storage pointers
    private_key = Column(String, nullable=True)
    processed_key = Column(String, nullable=True)
    public_key = Column(String, nullable=True)
    public_url = Column(String, nullable=True)

    # Lineage
    parent_asset_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=True, index=True)
    sprite_variant = Column(String, nullable=True)
    auto_created = Column(Boolean, nullable=False, default=False)

    # Lifecycle
    status = Column(String, nullable=False, default="pending", index=True)
    is_active = Column(Boolean, nullable=False, default=False)
    background_removed = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)

    # Post-approval pipeline
    pipeline_status = Column(String, nullable=True, index=True)
    pipeline_started_at = Column(DateTime(timezone=True), nullable=True)
    pipeline_completed_at = Column(DateTime(timezone=True), nullable=True)
    pipeline_error = Column(Text, nullable=True)

    approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    parent = relationship("GeneratedAsset", remote_side=[id])
    rejections = relationship("AssetRejection", back_populates="asset", order_by="AssetRejection.id")
    reference_links = relationship(
        "AssetReferenceLink",
        back_populates="asset",
        foreign_keys="AssetReferenceLink.asset_id",
        order_by="AssetReferenceLink.sort_order",
    )

    __table_args__ = (
        UniqueConstraint("category", "asset_key", "variant", name="uq_generated_assets_version"),
        Index("ix_generated_assets_active", "category", "asset_key", "is_active"),
    )
