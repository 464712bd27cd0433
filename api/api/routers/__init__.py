"""API router modules for the CreditDesk service."""

from __future__ import annotations

from api.routers import (
    admin,
    credentials,
    credits,
    health,
    internal,
    payments,
    subscriptions,
    webhooks,
)

__all__ = [
    "admin",
    "credentials",
    "credits",
    "health",
    "internal",
    "payments",
    "subscriptions",
    "webhooks",
]
