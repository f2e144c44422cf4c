"""API router modules for the credit accounting service."""

from __future__ import annotations

from credit_api.routers import (
    billing,
    credits,
    health,
    internal,
    notifications,
    subscriptions,
    webhooks,
)

__all__ = [
    "billing",
    "credits",
    "health",
    "internal",
    "notifications",
    "subscriptions",
    "webhooks",
]
