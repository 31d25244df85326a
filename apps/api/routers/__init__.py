"""Routers package."""

from . import (
    health,
    workflows,
    research,
    jobs,
    billing,
)
