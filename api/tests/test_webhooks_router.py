"""Tests for the inbound NicePay webhook."""

from __future__ import annotations

import logging

import pytest
from ledger_engine.state.repository import PaymentRepository
from support import failed, settled

_URL = "/api/v1/webhooks/nicepay"


async def _pending(client, async_session, path: str, body: dict) -> dict:
    prepared = (await client.post(f"/api/v1/payments/prepare/{path}", json=body)).json()
    await async_session.commit()
    return prepared


class TestNicepayWebhook:
    @pytest.mark.asyncio
    async def test_settles_credit_purchase(self, client, async_session, mock_gateway, user) -> None:
        prepared = await _pending(client, async_session, "credit", {"credit_pack_id": "credit-50"})
        mock_gateway.get_payment.return_value = settled(prepared["order_id"], 15_000)
        client.headers.pop("authorization")

        resp = await client.post(
            _URL,
            json={"orderId": prepared["order_id"], "tid": "tid-vbank", "resultCode": "0000", "amount": 15_000},
        )
        assert resp.status_code == 200
        assert resp.json() == {"resultCode": "0000", "resultMsg": "success"}

        payment = await PaymentRepository(async_session).get_by_order_id(prepared["order_id"])
        await async_session.refresh(payment)
        assert payment.status == "paid"

    @pytest.mark.asyncio
    async def test_redelivery_is_acknowledged(self, client, async_session, mock_gateway, user) -> None:
        prepared = await _pending(client, async_session, "credit", {"credit_pack_id": "credit-50"})
        mock_gateway.get_payment.return_value = settled(prepared["order_id"], 15_000)
        payload = {"orderId": prepared["order_id"], "tid": "tid-vbank", "resultCode": "0000", "amount": 15_000}

        await client.post(_URL, json=payload)
        resp = await client.post(_URL, json=payload)
        assert resp.status_code == 200
        assert (await client.get("/api/v1/credits")).json()["balance"] == 50

    @pytest.mark.asyncio
    async def test_forged_notification_is_refused(self, client, async_session, mock_gateway, user) -> None:
        prepared = await _pending(client, async_session, "credit", {"credit_pack_id": "credit-50"})
        mock_gateway.get_payment.return_value = failed("P404", "No such transaction")

        resp = await client.post(
            _URL,
            json={"orderId": prepared["order_id"], "tid": "tid-forged", "resultCode": "0000", "amount": 15_000},
        )
        assert resp.status_code == 502
        assert resp.json()["resultCode"] == "4000"
        assert (await client.get("/api/v1/credits")).json()["balance"] == 0

        payment = await PaymentRepository(async_session).get_by_order_id(prepared["order_id"])
        await async_session.refresh(payment)
        assert payment.status == "pending"

    @pytest.mark.asyncio
    async def test_refusal_is_logged_with_order(self, client, async_session, mock_gateway, user, caplog) -> None:
        prepared = await _pending(client, async_session, "credit", {"credit_pack_id": "credit-50"})
        mock_gateway.get_payment.return_value = failed("P404", "No such transaction")

        with caplog.at_level(logging.INFO, logger="api.access"):
            await client.post(
                _URL,
                json={"orderId": prepared["order_id"], "tid": "tid-forged", "resultCode": "0000", "amount": 15_000},
            )

        record = [r for r in caplog.records if r.name == "api.access"][-1]
        assert record.levelno == logging.ERROR
        assert record.order_id == prepared["order_id"]  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_malformed_body(self, client) -> None:
        resp = await client.post(_URL, content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["resultCode"] == "4000"

    @pytest.mark.asyncio
    async def test_non_object_body(self, client) -> None:
        resp = await client.post(_URL, json=["orderId"])
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_order(self, client) -> None:
        resp = await client.post(_URL, json={"orderId": "missing", "tid": "t", "resultCode": "0000", "amount": 1})
        assert resp.status_code == 404
        assert resp.json()["resultCode"] == "4004"

    @pytest.mark.asyncio
    async def test_amount_mismatch(self, client, async_session, user) -> None:
        prepared = await _pending(client, async_session, "credit", {"credit_pack_id": "credit-50"})
        resp = await client.post(
            _URL,
            json={"orderId": prepared["order_id"], "tid": "tid-vbank", "resultCode": "0000", "amount": 10},
        )
        assert resp.status_code == 400
        assert resp.json()["resultCode"] == "4000"

    @pytest.mark.asyncio
    async def test_subscription_orders_rejected(self, client, async_session, user) -> None:
        prepared = await _pending(client, async_session, "subscription", {"tier": "basic"})
        resp = await client.post(
            _URL,
            json={"orderId": prepared["order_id"], "tid": "tid-vbank", "resultCode": "0000", "amount": 29_000},
        )
        assert resp.status_code == 400
        assert resp.json()["resultCode"] == "4000"
        assert (await client.get("/api/v1/subscriptions/my")).json()["subscription"] is None
