"""Shared fixtures for CreditDesk API tests.

Provides an in-memory SQLite session, a mock NicePay client, and a FastAPI
app with dependency overrides.  Token and seed helpers live in
``support.py``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from support import (
    OTHER_USER_ID,
    TEST_INTERNAL_TOKEN,
    TEST_JWT_SECRET,
    USER_ID,
    auth_headers,
    ok,
)

# Set the secrets BEFORE importing application modules so the
# AuthenticationMiddleware built by create_app() verifies test tokens.
os.environ.setdefault("API_JWT_SECRET", TEST_JWT_SECRET)
os.environ.setdefault("API_INTERNAL_API_TOKEN", TEST_INTERNAL_TOKEN)

from api.config import APISettings
from api.dependencies import get_db_session, get_gateway, get_settings, get_tax_portal, get_vault
from api.main import create_app
from api.services.gateway_client import NicepayClient
from api.services.tax_portal_client import TaxPortalClient
from ledger_engine.state.repository import UserRepository
from ledger_engine.state.sqlite_adapter import create_local_tables, get_local_engine
from ledger_engine.state.tables import UserTable
from ledger_engine.vault import CredentialVault
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# ---------------------------------------------------------------------------
# Settings fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings() -> APISettings:
    """Return a settings object suitable for testing."""
    return APISettings(
        database_url="sqlite+aiosqlite:///:memory:",
        platform_env="dev",
        cors_origins=["http://localhost:3000"],
        jwt_secret=TEST_JWT_SECRET,
        internal_api_token=TEST_INTERNAL_TOKEN,
        credential_encryption_key="test-vault-secret",
        nicepay_client_id="test-client-id",
        nicepay_secret_key="test-secret-key",
        payment_return_url="http://localhost:3000/payment/callback",
    )


# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def async_session() -> AsyncGenerator[AsyncSession, None]:
    """Provide an async session backed by an in-memory SQLite database."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)

    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


# ---------------------------------------------------------------------------
# Mock gateway
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_gateway() -> AsyncMock:
    """Return a mock NicepayClient whose calls all succeed by default.

    Tests override individual ``return_value``s to simulate declines.
    """
    gateway = AsyncMock(spec=NicepayClient)
    gateway.prepare_payment.return_value = ok(clientToken="client-token-1")
    gateway.approve_payment.return_value = ok(
        tid="tid-approved",
        payMethod="card",
        card={"cardName": "Shinhan", "cardNum": "5365-****-****-1234"},
        billingKey="bk-issued",
    )
    gateway.cancel_payment.return_value = ok(status="cancelled")
    gateway.get_payment.return_value = ok(status="paid")
    gateway.pay_with_billing_key.return_value = ok(tid="tid-renewal")
    gateway.delete_billing_key.return_value = ok()
    return gateway


@pytest.fixture()
def mock_tax_portal() -> AsyncMock:
    """Return a mock TaxPortalClient that accepts every certificate."""
    portal = AsyncMock(spec=TaxPortalClient)
    portal.verify_certificate.return_value = ok(errYn="N")
    return portal


@pytest.fixture()
def vault(test_settings: APISettings) -> CredentialVault:
    return CredentialVault(test_settings.credential_encryption_key.get_secret_value())


# ---------------------------------------------------------------------------
# FastAPI app and client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    async_session: AsyncSession,
    mock_gateway: AsyncMock,
    mock_tax_portal: AsyncMock,
    vault: CredentialVault,
):
    """Create a FastAPI app wired to the SQLite session and mock gateway."""
    application = create_app()

    async def _override_session():
        yield async_session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_gateway] = lambda: mock_gateway
    application.dependency_overrides[get_tax_portal] = lambda: mock_tax_portal
    application.dependency_overrides[get_vault] = lambda: vault
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app, authenticated as ``user-1``."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers=auth_headers(),
    ) as ac:
        yield ac


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def user(async_session: AsyncSession) -> UserTable:
    row = await UserRepository(async_session).create("alice@example.com", user_id=USER_ID)
    await async_session.commit()
    return row


@pytest_asyncio.fixture()
async def other_user(async_session: AsyncSession) -> UserTable:
    row = await UserRepository(async_session).create("bob@example.com", user_id=OTHER_USER_ID)
    await async_session.commit()
    return row
