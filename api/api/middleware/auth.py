"""Authentication middleware that extracts and validates JWT tokens.

Extracts ``Authorization: Bearer <token>`` from every request, verifies the
HS256 signature and expiry with PyJWT, and populates ``request.state`` with
``sub`` (user id) and ``role``.  Tokens are issued by the separate auth
service; this middleware only verifies them.

Endpoints listed in ``_PUBLIC_PATHS`` or under ``_PUBLIC_PREFIXES`` bypass
authentication.  Internal endpoints carry their own shared-token check.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/api/v1/credits/plans",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
    }
)

# Prefixes that skip user auth.
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
    "/api/v1/webhooks/",
    "/api/v1/internal/",
)

_DEFAULT_ROLE = "user"


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Verifies the token signature and expiry.
    4. Stores ``sub`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any, *, secret: str, algorithm: str = "HS256") -> None:
        super().__init__(app)
        self._secret = secret
        self._algorithm = algorithm
        logger.info("AuthenticationMiddleware initialised (algorithm=%s)", algorithm)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if request.method == "OPTIONS" or _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = jwt.decode(
                parts[1],
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError:
            # Expired tokens get 403 so clients know to refresh rather than re-login.
            return JSONResponse(
                status_code=403,
                content={"detail": "Token has expired"},
            )
        except jwt.InvalidTokenError as exc:
            logger.info("Rejected token on %s: %s", path, exc)
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid token"},
            )

        request.state.sub = str(claims["sub"])
        request.state.role = str(claims.get("role") or _DEFAULT_ROLE)
        return await call_next(request)
