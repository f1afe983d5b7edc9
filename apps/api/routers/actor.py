"""Acting-admin dependency for audit attribution."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Header

DEFAULT_ACTOR = "admin"


@dataclass
class ActorContext:
    name: str


async def get_actor(x_actor: Optional[str] = Header(default=None)) -> ActorContext:
    """Resolve the acting admin from the X-Actor header."""
    name = (x_actor or "").strip()[:120]
    return ActorContext(name=name or DEFAULT_ACTOR)
