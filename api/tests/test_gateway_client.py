"""Tests for the NicePay HTTP client, using httpx.MockTransport."""

from __future__ import annotations

import base64
import json

import httpx
import pytest

from api.services.gateway_client import NicepayClient


def _client(handler) -> NicepayClient:
    return NicepayClient(
        client_id="client-id",
        secret_key="secret-key",
        base_url="https://gateway.test/",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


class TestRequests:
    @pytest.mark.asyncio
    async def test_prepare_sends_order_and_basic_auth(self) -> None:
        seen: dict = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"resultCode": "0000", "clientToken": "tok"})

        client = _client(handler)
        result = await client.prepare_payment(
            order_id="CREDIT_1_ABC",
            amount=25_000,
            goods_name="110 credits",
            return_url="https://app.test/return",
            mall_user_id="user-1",
            direct_pay_method="card",
        )
        await client.close()

        assert result.success
        assert result.data["clientToken"] == "tok"
        assert seen["url"] == "https://gateway.test/v1/payments/ready"
        expected = base64.b64encode(b"client-id:secret-key").decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["body"] == {
            "orderId": "CREDIT_1_ABC",
            "amount": 25_000,
            "goodsName": "110 credits",
            "returnUrl": "https://app.test/return",
            "mallUserId": "user-1",
            "payMethod": "card",
        }

    @pytest.mark.asyncio
    async def test_endpoints(self) -> None:
        calls: list[tuple[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            return httpx.Response(200, json={"resultCode": "0000"})

        client = _client(handler)
        await client.approve_payment("tid-1", 100)
        await client.cancel_payment("tid-1", 100, "Customer request")
        await client.get_payment("tid-1")
        await client.pay_with_billing_key("bk-1", "SUB_1", 9_900, "Starter renewal", "user-1")
        await client.delete_billing_key("bk-1")
        await client.close()

        assert calls == [
            ("POST", "/v1/payments/tid-1"),
            ("POST", "/v1/payments/tid-1/cancel"),
            ("GET", "/v1/payments/tid-1"),
            ("POST", "/v1/subscribe/payments"),
            ("DELETE", "/v1/subscribe/bk-1"),
        ]


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_non_success_result_code_on_200(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"resultCode": "3011", "resultMsg": "Limit exceeded"}))
        result = await client.approve_payment("tid-1", 100)
        await client.close()

        assert not result.success
        assert result.code == "3011"
        assert result.error == "Limit exceeded"

    @pytest.mark.asyncio
    async def test_http_error_uses_gateway_message(self) -> None:
        client = _client(lambda r: httpx.Response(400, json={"code": "INVALID_AMOUNT", "message": "Bad amount"}))
        result = await client.approve_payment("tid-1", -1)
        await client.close()

        assert not result.success
        assert result.code == "INVALID_AMOUNT"
        assert result.error == "Bad amount"

    @pytest.mark.asyncio
    async def test_http_error_without_body(self) -> None:
        client = _client(lambda r: httpx.Response(503, text="Service Unavailable"))
        result = await client.get_payment("tid-1")
        await client.close()

        assert not result.success
        assert result.code == "HTTP_503"
        assert result.error is None

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = _client(handler)
        result = await client.get_payment("tid-1")
        await client.close()

        assert not result.success
        assert result.code == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        result = await client.delete_billing_key("bk-1")
        await client.close()

        assert not result.success
        assert result.code == "NETWORK_ERROR"

    @pytest.mark.asyncio
    async def test_success_without_result_code(self) -> None:
        client = _client(lambda r: httpx.Response(200, json={"tid": "tid-1", "status": "paid"}))
        result = await client.get_payment("tid-1")
        await client.close()

        assert result.success
        assert result.data["status"] == "paid"
