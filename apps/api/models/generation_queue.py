"""Generation queue entry model."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GenerationQueueEntry(Base):
    """Queued image generation for a single asset row."""

    __tablename__ = "asset_generation_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=False, index=True)
    priority = Column(Integer, nullable=False, default=5)  # 1=highest, 10=lowest
    status = Column(String, nullable=False, default="queued", index=True)  # queued, processing, completed, failed
    attempts = Column(Integer, nullable=False, default=0)
    queue_job_id = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    asset = relationship("GeneratedAsset")
