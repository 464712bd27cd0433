"""Subscription self-service endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from ledger_engine.errors import PaymentRequired, SubscriptionNotFound
from ledger_engine.state.tables import SubscriptionTable
from ledger_engine.subscriptions import ChangeKind, SubscriptionEngine
from ledger_engine.tiers import TIERS
from pydantic import BaseModel, Field

from api.dependencies import GatewayDep, SessionDep, SettingsDep, UserIdDep
from api.middleware.logging import tag_billing
from api.services.subscription_service import SubscriptionBillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class CancelRequest(BaseModel):
    """Request body for ``POST /subscriptions/cancel``."""

    reason: str | None = Field(default=None, max_length=500, description="Why the user is leaving.")


class ChangeTierRequest(BaseModel):
    """Request body for ``POST /subscriptions/change-tier``."""

    tier: str = Field(..., description="Target tier key.")


def subscription_to_dict(subscription: SubscriptionTable) -> dict[str, Any]:
    spec = TIERS.get(subscription.tier)
    return {
        "id": subscription.id,
        "tier": subscription.tier,
        "tier_name": spec.name if spec else subscription.tier,
        "pending_tier": subscription.pending_tier,
        "status": subscription.status,
        "billing_cycle_start": subscription.billing_cycle_start.isoformat(),
        "billing_cycle_end": subscription.billing_cycle_end.isoformat(),
        "next_billing_date": subscription.next_billing_date.isoformat() if subscription.next_billing_date else None,
        "monthly_credit_quota": subscription.monthly_credit_quota,
        "price": subscription.price,
        "cancel_reason": subscription.cancel_reason,
        "has_billing_key": bool(subscription.billing_key),
    }


async def _require_subscription(engine: SubscriptionEngine, user_id: str) -> SubscriptionTable:
    subscription = await engine.get_by_user_id(user_id)
    if subscription is None:
        raise SubscriptionNotFound("You do not have a subscription")
    return subscription


@router.get("/my")
async def get_my_subscription(session: SessionDep, user_id: UserIdDep) -> dict[str, Any]:
    """Return the caller's subscription, or the free tier when there is none."""
    subscription = await SubscriptionEngine(session).get_by_user_id(user_id)
    if subscription is None:
        return {"subscription": None, "tier": "free"}
    return {"subscription": subscription_to_dict(subscription), "tier": subscription.tier}


@router.post("/cancel")
async def cancel_subscription(
    body: CancelRequest,
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    user_id: UserIdDep,
) -> dict[str, Any]:
    """Stop auto-renewal; the current tier remains until the cycle ends."""
    service = SubscriptionBillingService(session, settings, gateway)
    subscription = await service.cancel(user_id, body.reason)
    tag_billing(request, subscription_id=subscription.id)
    return {"subscription": subscription_to_dict(subscription)}


@router.post("/reactivate")
async def reactivate_subscription(request: Request, session: SessionDep, user_id: UserIdDep) -> dict[str, Any]:
    subscription = await SubscriptionEngine(session).reactivate(user_id)
    tag_billing(request, subscription_id=subscription.id)
    return {"subscription": subscription_to_dict(subscription)}


@router.get("/change-tier-quote")
async def change_tier_quote(
    session: SessionDep,
    user_id: UserIdDep,
    tier: str = Query(..., description="Target tier key."),
) -> dict[str, Any]:
    """Preview a tier change: classification, proration and charge."""
    engine = SubscriptionEngine(session)
    subscription = await _require_subscription(engine, user_id)
    return engine.quote_change(subscription, tier).to_dict()


@router.post("/change-tier")
async def change_tier(body: ChangeTierRequest, session: SessionDep, user_id: UserIdDep) -> dict[str, Any]:
    """Schedule a downgrade or withdraw a pending one.

    Upgrades are charged first; this endpoint answers 402 for them and the
    client continues with ``POST /payments/prepare/tier-upgrade``.
    """
    engine = SubscriptionEngine(session)
    subscription = await _require_subscription(engine, user_id)
    quote = engine.quote_change(subscription, body.tier)
    if quote.kind == ChangeKind.UPGRADE:
        raise PaymentRequired(
            f"Upgrading to '{quote.new_tier}' costs {quote.additional_charge}; complete the upgrade payment first",
            code="UPGRADE_PAYMENT_REQUIRED",
        )
    applied = await engine.change_tier(user_id, body.tier)
    return {"change": applied.to_dict(), "subscription": subscription_to_dict(subscription)}
