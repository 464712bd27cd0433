"""Endpoints for cron jobs and the workflow-automation consumer.

Authenticated with the shared internal bearer token rather than a user
JWT.  Batch endpoints return ``{total, success, failed, errors[]}``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends
from ledger_engine.ledger import CreditLedger
from pydantic import BaseModel, Field

from api.dependencies import GatewayDep, SessionDep, SettingsDep, VaultDep, require_internal_token
from api.services.credential_service import CredentialService
from api.services.subscription_service import SubscriptionBillingService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_token)],
)


class DecryptRequest(BaseModel):
    client_id: str = Field(..., description="10-digit business registration number.")


@router.post("/subscriptions/renew")
async def renew_subscriptions(session: SessionDep, settings: SettingsDep, gateway: GatewayDep) -> dict[str, Any]:
    """Charge and renew every subscription that is due."""
    summary = await SubscriptionBillingService(session, settings, gateway).renew_due()
    return summary.to_dict()


@router.post("/subscriptions/expire")
async def expire_subscriptions(session: SessionDep, settings: SettingsDep, gateway: GatewayDep) -> dict[str, Any]:
    summary = await SubscriptionBillingService(session, settings, gateway).expire_stale()
    return summary.to_dict()


@router.post("/credits/expire")
async def expire_credits(session: SessionDep) -> dict[str, Any]:
    """Remove the unspent remainder of expired subscription grants."""
    summary = await CreditLedger(session).expire_credits()
    return summary.to_dict()


@router.post("/credentials/decrypt")
async def decrypt_credential(body: DecryptRequest, session: SessionDep, vault: VaultDep) -> dict[str, Any]:
    return {"credential": await CredentialService(session, vault).decrypt_by_client_id(body.client_id)}
