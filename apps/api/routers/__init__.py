"""Routers package."""

from . import (
    health,
    connections,
    posts,
    admin,
)
