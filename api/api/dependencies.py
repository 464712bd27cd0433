"""FastAPI dependency injection for database sessions, the gateway client, and settings."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator, Callable
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from ledger_engine.errors import InsufficientCredits
from ledger_engine.ledger import CreditLedger
from ledger_engine.state.database import get_engine, session_factory, transaction
from ledger_engine.vault import CredentialVault
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.middleware.rbac import Role, get_user_role
from api.services.gateway_client import NicepayClient
from api.services.tax_portal_client import TaxPortalClient

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield one ``AsyncSession`` per request.

    The session commits on clean exit and rolls back on exception, so a
    domain error raised anywhere in the handler leaves no partial writes.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    async with transaction(_session_factory) as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Payment gateway client
# ---------------------------------------------------------------------------

_gateway: NicepayClient | None = None


def init_gateway(settings: APISettings) -> NicepayClient:
    """Create and cache the global :class:`NicepayClient`."""
    global _gateway  # noqa: PLW0603
    _gateway = NicepayClient(
        client_id=settings.nicepay_client_id,
        secret_key=settings.nicepay_secret_key.get_secret_value(),
        base_url=settings.nicepay_api_url,
        timeout=settings.nicepay_timeout,
    )
    return _gateway


async def dispose_gateway() -> None:
    """Close the gateway client's HTTP pool."""
    global _gateway  # noqa: PLW0603
    if _gateway is not None:
        await _gateway.close()
        _gateway = None


def get_gateway() -> NicepayClient:
    """Return the cached :class:`NicepayClient` singleton."""
    if _gateway is None:
        raise RuntimeError(
            "Gateway client has not been initialised. Ensure init_gateway() is called during application startup."
        )
    return _gateway


GatewayDep = Annotated[NicepayClient, Depends(get_gateway)]

# ---------------------------------------------------------------------------
# Tax portal client
# ---------------------------------------------------------------------------

_tax_portal: TaxPortalClient | None = None


def init_tax_portal(settings: APISettings) -> TaxPortalClient:
    """Create and cache the global :class:`TaxPortalClient`."""
    global _tax_portal  # noqa: PLW0603
    _tax_portal = TaxPortalClient(
        user_id=settings.tax_portal_user_id,
        api_key=settings.tax_portal_api_key.get_secret_value(),
        base_url=settings.tax_portal_api_url,
        timeout=settings.tax_portal_timeout,
    )
    return _tax_portal


async def dispose_tax_portal() -> None:
    global _tax_portal  # noqa: PLW0603
    if _tax_portal is not None:
        await _tax_portal.close()
        _tax_portal = None


def get_tax_portal() -> TaxPortalClient:
    if _tax_portal is None:
        raise RuntimeError(
            "Tax portal client has not been initialised. Ensure init_tax_portal() is called during application startup."
        )
    return _tax_portal


TaxPortalDep = Annotated[TaxPortalClient, Depends(get_tax_portal)]

# ---------------------------------------------------------------------------
# Credential vault
# ---------------------------------------------------------------------------

_vault: CredentialVault | None = None


def get_vault(settings: SettingsDep) -> CredentialVault:
    """Return the process-wide vault; key derivation runs once."""
    global _vault  # noqa: PLW0603
    if _vault is None:
        _vault = CredentialVault(settings.credential_encryption_key.get_secret_value())
    return _vault


VaultDep = Annotated[CredentialVault, Depends(get_vault)]

# ---------------------------------------------------------------------------
# User identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


def get_user_id(request: Request) -> str:
    """Extract the authenticated user id from request state."""
    user_id = getattr(request.state, "sub", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user_id


UserIdDep = Annotated[str, Depends(get_user_id)]

RoleDep = Annotated[Role, Depends(get_user_role)]

# ---------------------------------------------------------------------------
# Internal callers (cron, workflow automation)
# ---------------------------------------------------------------------------


def require_internal_token(request: Request, settings: SettingsDep) -> None:
    """Check the shared ``Authorization: Bearer`` token in constant time."""
    auth_header = request.headers.get("authorization", "")
    parts = auth_header.split(None, 1)
    token = parts[1] if len(parts) == 2 and parts[0].lower() == "bearer" else ""
    expected = settings.internal_api_token.get_secret_value()
    if not token or not hmac.compare_digest(token.encode(), expected.encode()):
        logger.warning("Rejected internal call to %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid internal token")


# ---------------------------------------------------------------------------
# Credit gating
# ---------------------------------------------------------------------------


def require_credit(amount: int) -> Callable[..., int]:
    """Return a dependency that refuses the request unless *amount* credits are available.

    The check is advisory; the handler must still deduct through the
    ledger, which re-checks atomically.  Returns the current balance.

    Usage::

        @router.post("/usage")
        async def use(..., balance: int = Depends(require_credit(1))):
            ...
    """

    async def _gate(session: SessionDep, user_id: UserIdDep) -> int:
        balance = (await CreditLedger(session).get_balance(user_id))["balance"]
        if balance < amount:
            raise InsufficientCredits(required=amount, current=balance)
        return balance

    return _gate  # type: ignore[return-value]
