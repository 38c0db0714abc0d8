"""Routers package."""

from . import (
    health,
    rentals,
    billing,
    admin,
    jobs,
)
