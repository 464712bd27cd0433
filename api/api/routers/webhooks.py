"""Inbound payment-gateway notifications.

Public endpoint: the gateway cannot present a user token.  The response
always uses the gateway's ``{resultCode, resultMsg}`` envelope; any
non-2xx answer makes the gateway retry the notification.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from ledger_engine.errors import LedgerError, NotFound

from api.dependencies import GatewayDep, SessionDep, SettingsDep
from api.middleware.logging import tag_billing
from api.services.payment_service import GATEWAY_SUCCESS, PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/nicepay")
async def nicepay_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    gateway: GatewayDep,
) -> JSONResponse:
    """Settle a deposit-style payment from a gateway notification."""
    try:
        payload: Any = await request.json()
    except ValueError:
        return JSONResponse(status_code=400, content={"resultCode": "4000", "resultMsg": "Malformed JSON body"})
    if not isinstance(payload, dict):
        return JSONResponse(status_code=400, content={"resultCode": "4000", "resultMsg": "Expected a JSON object"})
    tag_billing(request, order_id=str(payload.get("orderId") or ""))

    logger.info(
        "Gateway webhook received: order=%s tid=%s code=%s",
        payload.get("orderId"),
        payload.get("tid"),
        payload.get("resultCode"),
    )
    try:
        await PaymentService(session, settings, gateway).handle_webhook(payload)
    except NotFound as exc:
        await session.rollback()
        return JSONResponse(status_code=404, content={"resultCode": "4004", "resultMsg": exc.message})
    except LedgerError as exc:
        # Failure records were committed by the service; drop anything else.
        await session.rollback()
        logger.warning("Gateway webhook rejected (order=%s): %s", payload.get("orderId"), exc.message)
        return JSONResponse(status_code=exc.status_code, content={"resultCode": "4000", "resultMsg": exc.message})

    return JSONResponse(status_code=200, content={"resultCode": GATEWAY_SUCCESS, "resultMsg": "success"})
