"""Test helpers shared by the API test modules: tokens, gateway results, seed data."""

from __future__ import annotations

import time
from typing import Any

import jwt
from api.services.gateway_client import GatewayResult
from ledger_engine.ledger import CreditLedger
from sqlalchemy.ext.asyncio import AsyncSession

TEST_JWT_SECRET = "test-jwt-secret-for-creditdesk-tests"
TEST_INTERNAL_TOKEN = "test-internal-token"

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
ADMIN_ID = "admin-1"

INTERNAL_HEADERS: dict[str, str] = {"Authorization": f"Bearer {TEST_INTERNAL_TOKEN}"}


def make_token(
    sub: str = USER_ID,
    role: str | None = "user",
    *,
    expires_in: int = 3600,
    secret: str = TEST_JWT_SECRET,
) -> str:
    """Mint an HS256 access token the way the auth service does."""
    now = int(time.time())
    payload: dict[str, Any] = {"sub": sub, "iat": now, "exp": now + expires_in}
    if role is not None:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(sub: str = USER_ID, role: str = "user") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(sub, role)}"}


def ok(**data: Any) -> GatewayResult:
    return GatewayResult(success=True, data={"resultCode": "0000", "resultMsg": "success", **data})


def failed(code: str = "F100", error: str = "Card declined") -> GatewayResult:
    return GatewayResult(success=False, data={"resultCode": code, "resultMsg": error}, error=error, code=code)


async def fund(session: AsyncSession, user_id: str, amount: int) -> None:
    """Give *user_id* purchased credits and commit."""
    await CreditLedger(session).charge(user_id, amount, "Test top-up")
    await session.commit()


def settled(order_id: str, amount: int, tid: str = "tid-vbank") -> GatewayResult:
    """The gateway's own record of a completed deposit, as returned by ``get_payment``."""
    return ok(tid=tid, orderId=order_id, amount=amount, status="paid", payMethod="vbank")
