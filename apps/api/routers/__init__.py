"""Routers package."""

from . import (
    health,
    auth,
    files,
    users,
    audit,
)
