"""Asset rejection history model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AssetRejection(Base):
    """Append-only snapshot of an asset at the moment it was rejected."""

    __tablename__ = "asset_rejections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=False, index=True)
    rejected_by = Column(String, nullable=True)
    rejection_reason = Column(Text, nullable=False)
    prompt_at_rejection = Column(Text, nullable=True)
    prompt_version = Column(Integer, nullable=True)
    storage_key_rejected = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    asset = relationship("GeneratedAsset", back_populates="rejections")
