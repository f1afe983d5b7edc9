"""Asset audit log model."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.sql import func

from database import Base


class AssetAuditLog(Base):
    """Write-only record of every asset mutation."""

    __tablename__ = "asset_audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False, index=True)
    asset_id = Column(Integer, ForeignKey("generated_assets.id"), nullable=True, index=True)
    actor = Column(String, nullable=False, default="system")
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
