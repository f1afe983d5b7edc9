"""Prompt template model."""

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class PromptTemplate(Base):
    """Editable prompt text per (category, asset_key). One active version at a time."""

    __tablename__ = "prompt_templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    category = Column(String, nullable=False)
    asset_key = Column(String, nullable=False)
    template_name = Column(String, nullable=True)
    base_prompt = Column(Text, nullable=False)
    style_guide = Column(Text, nullable=True)
    system_instructions = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=True)
    change_notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_prompt_templates_lookup", "category", "asset_key", "is_active"),)
