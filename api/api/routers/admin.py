"""Operator endpoints (role ``admin``)."""

from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query
from ledger_engine.ledger import CreditLedger
from ledger_engine.state.repository import UserRepository
from ledger_engine.state.tables import UserTable
from pydantic import BaseModel, Field

from api.dependencies import SessionDep, UserIdDep, VaultDep
from api.middleware.rbac import Role, require_role
from api.services.credential_service import CredentialService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class GrantRequest(BaseModel):
    """Request body for ``POST /admin/credits/grant``."""

    user_id: str = Field(..., description="User receiving the adjustment.")
    amount: int = Field(..., description="Signed credit delta; negative deducts.")
    description: str = Field(default="Admin adjustment", max_length=500)


def _user_to_dict(user: UserTable) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "credit_balance": user.credit_balance,
        "subscription_tier": user.subscription_tier,
        "is_active": user.is_active,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


@router.get("/users")
async def list_users(
    session: SessionDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> dict[str, Any]:
    """List accounts with their cached balance and tier, newest first."""
    rows, total = await UserRepository(session).list_all(page=page, limit=limit)
    return {"users": [_user_to_dict(u) for u in rows], "total_count": total, "page": page, "limit": limit}


@router.get("/credentials")
async def list_credentials(
    session: SessionDep,
    vault: VaultDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user_id: str | None = None,
    client_id: str | None = None,
    cert_type: Literal["business", "personal"] | None = None,
    is_active: bool | None = None,
    expired: bool | None = None,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> dict[str, Any]:
    """List credentials across all users; certificate material is never included."""
    return await CredentialService(session, vault).list_all(
        page=page,
        limit=limit,
        user_id=user_id,
        client_id=client_id,
        cert_type=cert_type,
        is_active=is_active,
        expired=expired,
    )


@router.get("/credentials/stats")
async def credential_stats(
    session: SessionDep,
    vault: VaultDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> dict[str, Any]:
    return await CredentialService(session, vault).stats()


@router.post("/credits/grant")
async def grant_credits(
    body: GrantRequest,
    session: SessionDep,
    admin_id: UserIdDep,
    _role: Role = Depends(require_role(Role.ADMIN)),
) -> dict[str, Any]:
    """Adjust a user's balance by a signed amount."""
    entry = await CreditLedger(session).admin_grant(body.user_id, body.amount, body.description, admin_id)
    logger.info("Admin %s adjusted user=%s by %+d", admin_id, body.user_id, body.amount)
    return {
        "transaction_id": entry.id,
        "user_id": body.user_id,
        "amount": entry.amount,
        "balance": entry.balance_after,
    }
