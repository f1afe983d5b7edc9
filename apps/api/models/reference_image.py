"""Reference library image and generation reference link models."""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class ReferenceImage(Base):
    """User-uploaded image available as generation context."""

    __tablename__ = "reference_images"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True, index=True)
    storage_key = Column(String, nullable=False)
    mime_type = Column(String, nullable=False, default="image/png")
    file_size = Column(Integer, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    uploaded_by = Column(String, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, nullable=False, default=False, index=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AssetReferenceLink(Base):
    """Which library image or approved asset fed a given generation, in priority order."""

    __tablename__ = "asset_reference_links"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=False, index=True)
    reference_image_id = Column(Integer, ForeignKey("reference_images.id"), nullable=True)
    approved_asset_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=True)
    link_type = Column(String, nullable=False)  # library, approved_asset
    sort_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    asset = relationship("GeneratedAsset", back_populates="reference_links", foreign_keys=[asset_id])
    reference_image = relationship("ReferenceImage")
    approved_asset = relationship("GeneratedAsset", foreign_keys=[approved_asset_id])

    __table_args__ = (
        CheckConstraint(
            "(link_type = 'library' AND reference_image_id IS NOT NULL AND approved_asset_id IS NULL) OR "
            "(link_type = 'approved_asset' AND approved_asset_id IS NOT NULL AND reference_image_id IS NULL)",
            name="ck_asset_reference_links_target",
        ),
    )
