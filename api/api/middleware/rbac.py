"""Role checks for user-facing endpoints.

Two roles exist: ``user`` for account holders and ``admin`` for operators.
The :class:`AuthenticationMiddleware` stores the JWT ``role`` claim on
``request.state.role``; the dependencies here turn it into a :class:`Role`.

Usage in routers::

    @router.post("/credits/grant")
    async def grant(..., _role: Role = Depends(require_role(Role.ADMIN))):
        ...
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


class Role(IntEnum):
    """User roles ordered by privilege level."""

    USER = 0
    ADMIN = 1


_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a JWT ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}") from None


def get_user_role(request: Request) -> Role:
    """Extract and validate the caller's role from ``request.state.role``.

    Raises
    ------
    HTTPException(401)
        If the request is not authenticated.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Rejected unknown role claim: %s", raw_role)
        raise HTTPException(status_code=403, detail="Unrecognised role") from None


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum role level."""

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if role < min_role:
            logger.info("Access denied: role %s, requires %s", role.name, min_role.name)
            raise HTTPException(
                status_code=403,
                detail=f"Requires role {min_role.name.lower()}",
            )
        return role

    return _guard
