"""Routers package."""

from . import (
    health,
    assets,
    configurations,
    composites,
)
