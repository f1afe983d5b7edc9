"""Prompt template resolution and prompt text assembly."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.prompt_template import PromptTemplate
from services.errors import PromptTemplateMissing

GLOBAL_CATEGORY = "_global"
GLOBAL_STYLE_KEY = "_style_guide"
CUSTOM_DETAILS_PLACEHOLDER = "{CUSTOM_DETAILS}"

FEEDBACK_HEADER = "IMPORTANT FEEDBACK FROM PREVIOUS ATTEMPT:"
FEEDBACK_FOOTER = "Please address the above feedback in this generation."


@dataclass(frozen=True)
class ResolvedPrompt:
    template_id: int
    version: int
    prompt: str
    system_instructions: Optional[str] = None


@dataclass(frozen=True)
class PromptResolution:
    """Either a resolved prompt or the (category, asset_key) that has no template. Never a default."""

    category: str
    asset_key: str
    value: Optional[ResolvedPrompt] = None

    @property
    def ok(self) -> bool:
        return self.value is not None

    def unwrap(self) -> ResolvedPrompt:
        if self.value is None:
            raise PromptTemplateMissing(self.category, self.asset_key)
        return self.value


def render_prompt(base_prompt: str, style_guide: Optional[str] = None, custom_details: Optional[str] = None) -> str:
    details = (custom_details or "").strip()
    text = base_prompt or ""
    if CUSTOM_DETAILS_PLACEHOLDER in text:
        text = text.replace(CUSTOM_DETAILS_PLACEHOLDER, details)
    elif details:
        text = f"{text}\n\n{details}"
    text = text.strip()
    if style_guide:
        text = f"{text}\n\n{style_guide.strip()}"
    return text


def with_feedback(base_prompt: str, reason: str) -> str:
    """Append a rejection reason, verbatim, to the base prompt."""
    return f"{base_prompt}\n\n{FEEDBACK_HEADER}\n{reason}\n\n{FEEDBACK_FOOTER}"


async def get_active_template(db: AsyncSession, category: str, asset_key: str) -> Optional[PromptTemplate]:
    result = await db.execute(
        select(PromptTemplate)
        .where(
            PromptTemplate.category == category,
            PromptTemplate.asset_key == asset_key,
            PromptTemplate.is_active.is_(True),
        )
        .order_by(PromptTemplate.version.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def resolve_prompt(
    db: AsyncSession,
    category: str,
    asset_key: str,
    custom_details: Optional[str] = None,
) -> PromptResolution:
    template = await get_active_template(db, category, asset_key)
    if template is None:
        return PromptResolution(category=category, asset_key=asset_key)

    system_instructions = template.system_instructions
    if not system_instructions:
        global_style = await get_active_template(db, GLOBAL_CATEGORY, GLOBAL_STYLE_KEY)
        if global_style is not None:
            system_instructions = global_style.system_instructions or global_style.base_prompt

    return PromptResolution(
        category=category,
        asset_key=asset_key,
        value=ResolvedPrompt(
            template_id=template.id,
            version=int(template.version or 1),
            prompt=render_prompt(template.base_prompt, template.style_guide, custom_details),
            system_instructions=system_instructions,
        ),
    )


async def save_template(
    db: AsyncSession,
    category: str,
    asset_key: str,
    *,
    base_prompt: str,
    style_guide: Optional[str] = None,
    system_instructions: Optional[str] = None,
    template_name: Optional[str] = None,
    change_notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> PromptTemplate:
    """Store a new active version; earlier versions are kept but deactivated."""
    current_max = await db.scalar(
        select(func.max(PromptTemplate.version)).where(
            PromptTemplate.category == category,
            PromptTemplate.asset_key == asset_key,
        )
    )
    await db.execute(
        update(PromptTemplate)
        .where(PromptTemplate.category == category, PromptTemplate.asset_key == asset_key)
        .values(is_active=False)
    )
    template = PromptTemplate(
        category=category,
        asset_key=asset_key,
        template_name=template_name,
        base_prompt=base_prompt,
        style_guide=style_guide,
        system_instructions=system_instructions,
        version=int(current_max or 0) + 1,
        is_active=True,
        created_by=actor,
        change_notes=change_notes,
    )
    db.add(template)
    await db.flush()
    return template
