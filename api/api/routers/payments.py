"""Payment checkout, confirmation, cancellation and history endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from api.dependencies import GatewayDep, RoleDep, SessionDep, SettingsDep, UserIdDep
from api.middleware.logging import tag_billing
from api.middleware.rbac import Role
from api.services.payment_service import PaymentService, PaymentStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class PrepareCreditRequest(BaseModel):
    """Request body for ``POST /payments/prepare/credit``.

    Only the pack id is accepted; price and credit count come from the
    server-side catalogue.
    """

    credit_pack_id: str = Field(..., description="Credit pack id, e.g. 'credit-100'.")


class PrepareTierRequest(BaseModel):
    tier: str = Field(..., description="Tier key to subscribe or upgrade to.")


class ApproveRequest(BaseModel):
    """Request body for ``POST /payments/approve``."""

    order_id: str = Field(..., description="Order id returned by the prepare call.")
    tid: str = Field(..., description="Gateway transaction id from the checkout return.")
    amount: int = Field(..., ge=0, description="Amount reported by the checkout return.")


class CancelPaymentRequest(BaseModel):
    order_id: str = Field(..., description="Order id of the paid payment.")
    reason: str = Field(default="Customer request", max_length=500)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/prepare/credit")
async def prepare_credit(
    body: PrepareCreditRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
) -> dict[str, Any]:
    checkout = await PaymentService(session, settings, gateway).prepare_credit_payment(user_id, body.credit_pack_id)
    tag_billing(request, order_id=checkout["order_id"])
    return checkout


@router.post("/prepare/subscription")
async def prepare_subscription(
    body: PrepareTierRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
) -> dict[str, Any]:
    checkout = await PaymentService(session, settings, gateway).prepare_subscription_payment(user_id, body.tier)
    tag_billing(request, order_id=checkout["order_id"])
    return checkout


@router.post("/prepare/tier-upgrade")
async def prepare_tier_upgrade(
    body: PrepareTierRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
) -> dict[str, Any]:
    """Open a checkout for the prorated cost of an upgrade."""
    checkout = await PaymentService(session, settings, gateway).prepare_tier_upgrade_payment(user_id, body.tier)
    tag_billing(request, order_id=checkout["order_id"])
    return checkout


@router.post("/approve")
async def approve(
    body: ApproveRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
) -> dict[str, Any]:
    """Confirm a checkout and apply its effect (credits, subscription or upgrade)."""
    tag_billing(request, order_id=body.order_id)
    service = PaymentService(session, settings, gateway)
    return await service.approve_payment(user_id, body.order_id, body.tid, body.amount)


@router.post("/cancel")
async def cancel(
    body: CancelPaymentRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
    role: RoleDep,
) -> dict[str, Any]:
    tag_billing(request, order_id=body.order_id)
    service = PaymentService(session, settings, gateway)
    payment = await service.cancel_payment(user_id, body.order_id, body.reason, is_admin=role == Role.ADMIN)
    return {"payment": payment}


@router.get("/history")
async def history(
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: PaymentStatus | None = Query(default=None),
) -> dict[str, Any]:
    service = PaymentService(session, settings, gateway)
    return await service.get_payment_history(user_id, page=page, limit=limit, status=status.value if status else None)
