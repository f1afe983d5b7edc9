"""Live-game asset configuration model."""

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AssetConfiguration(Base):
    """Which approved version is wired into the game for a (category, asset_key)."""

    __tablename__ = "asset_configurations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String, nullable=False, index=True)
    asset_key = Column(String, nullable=False)
    active_sprite_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=True)
    cost_override = Column(Integer, nullable=True)
    scale_override = Column(Float, nullable=True)
    config_json = Column(JSON, nullable=True)
    is_published = Column(Boolean, nullable=False, default=False, index=True)
    published_at = Column(DateTime(timezone=True), nullable=True)
    published_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    active_sprite = relationship("GeneratedAsset")

    __table_args__ = (UniqueConstraint("category", "asset_key", name="uq_asset_configurations_key"),)
