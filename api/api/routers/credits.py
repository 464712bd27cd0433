"""Credit balance, history, catalogue and metered usage endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from ledger_engine.ledger import CreditLedger, TransactionType
from ledger_engine.state.tables import CreditTransactionTable
from ledger_engine.tiers import CREDIT_PACKS, list_tiers
from pydantic import BaseModel, Field

from api.dependencies import SessionDep, SettingsDep, UserIdDep, require_credit

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class UsageRequest(BaseModel):
    """Request body for ``POST /credits/usage``."""

    amount: int = Field(default=1, gt=0, description="Credits consumed by the action.")
    description: str = Field(..., min_length=1, max_length=500, description="What the credits were spent on.")
    related_id: str | None = Field(default=None, max_length=128, description="Caller-side reference id.")


class BalanceResponse(BaseModel):
    balance: int
    tier: str


def transaction_to_dict(row: CreditTransactionTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "amount": row.amount,
        "balance_after": row.balance_after,
        "type": row.type,
        "description": row.description,
        "related_id": row.related_id,
        "expires_at": row.expires_at.isoformat() if row.expires_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=BalanceResponse)
async def get_balance(session: SessionDep, user_id: UserIdDep) -> BalanceResponse:
    """Return the caller's credit balance and current tier."""
    return BalanceResponse(**await CreditLedger(session).get_balance(user_id))


@router.get("/history")
async def get_history(
    session: SessionDep,
    user_id: UserIdDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    type: TransactionType | None = Query(default=None),
) -> dict[str, Any]:
    """Return the caller's ledger entries, newest first."""
    ledger = CreditLedger(session)
    rows = await ledger.find_by_user_id(user_id, limit=limit, offset=offset, type=type)
    total = await ledger.count_by_user_id(user_id, type=type)
    return {
        "transactions": [transaction_to_dict(r) for r in rows],
        "total_count": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/plans")
async def get_plans(settings: SettingsDep) -> dict[str, Any]:
    """Return the subscription tiers and credit packs on sale."""
    return {
        "tiers": [t.to_dict() for t in list_tiers(include_test=settings.test_tier_enabled)],
        "credit_packs": [p.to_dict() for p in CREDIT_PACKS.values()],
    }


@router.post("/usage")
async def use_credits(
    body: UsageRequest,
    session: SessionDep,
    user_id: UserIdDep,
    _balance: int = Depends(require_credit(1)),
) -> dict[str, Any]:
    """Deduct credits for a metered action.

    Responds 402 with ``required``/``current``/``needed`` when the balance
    does not cover *amount*.
    """
    entry = await CreditLedger(session).deduct(user_id, body.amount, body.description, body.related_id)
    return {"transaction": transaction_to_dict(entry), "balance": entry.balance_after}
