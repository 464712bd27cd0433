"""Middleware components for the CreditDesk API."""

from __future__ import annotations

from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rbac import Role, get_user_role, require_role

__all__ = [
    "AuthenticationMiddleware",
    "RequestLoggingMiddleware",
    "Role",
    "get_user_role",
    "require_role",
]
