"""Access log for the CreditDesk API.

One record per request on the ``api.access`` logger.  Payment endpoints tag
the request with the order they act on (see :func:`tag_billing`), so a
refused approval or a retried webhook can be found by ``order_id`` without
correlating against the service logs.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger("api.access")

_SENSITIVE_HEADERS: frozenset[str] = frozenset({"authorization", "cookie", "x-api-key"})
_MASK: str = "***"

_CORRELATION_HEADER: str = "X-Correlation-ID"

# request.state attributes copied onto the access record.
_BILLING_FIELDS: tuple[str, ...] = ("order_id", "subscription_id")


def tag_billing(request: Request, *, order_id: str | None = None, subscription_id: str | None = None) -> None:
    """Attach billing identifiers to *request* for the access log."""
    if order_id:
        request.state.order_id = order_id
    if subscription_id:
        request.state.subscription_id = subscription_id


def _safe_headers(request: Request) -> dict[str, str]:
    return {key: _MASK if key.lower() in _SENSITIVE_HEADERS else value for key, value in request.headers.items()}


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log method, path, status and duration for every request.

    The ``correlation_id`` comes from the incoming ``X-Correlation-ID``
    header (or a fresh UUID-4) and is echoed on the response.  Billing
    identifiers tagged by the handler are logged both inside the
    ``request`` payload and as top-level record attributes, which the JSON
    formatter promotes to their own keys.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(_CORRELATION_HEADER) or str(uuid.uuid4())

        start = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            response.headers[_CORRELATION_HEADER] = correlation_id
            return response
        finally:
            status_code = response.status_code if response is not None else 500
            billing = {
                name: getattr(request.state, name)
                for name in _BILLING_FIELDS
                if getattr(request.state, name, None) is not None
            }
            log_payload: dict[str, Any] = {
                "method": request.method,
                "path": request.url.path,
                "query": str(request.url.query) if request.url.query else None,
                "status_code": status_code,
                "duration_ms": round((time.monotonic() - start) * 1000, 2),
                "client": request.client.host if request.client else None,
                "correlation_id": correlation_id,
                "user_id": getattr(request.state, "sub", "anonymous"),
                "headers": _safe_headers(request),
                **billing,
            }
            logger.log(_level_for(status_code), "request completed", extra={"request": log_payload, **billing})
