"""HTTP client for the NicePay payment gateway."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_SUCCESS_CODE = "0000"


@dataclass(frozen=True)
class GatewayResult:
    """Outcome of one gateway call.

    ``error`` carries the gateway's own message when it supplied one so it
    can be shown to the user verbatim.
    """

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    code: str | None = None


def _error_message(body: dict[str, Any]) -> str | None:
    message = body.get("message") or body.get("resultMsg")
    return str(message) if message else None


class NicepayClient:
    """Thin async wrapper around the NicePay REST API.

    Every public method returns a :class:`GatewayResult` and never raises
    on HTTP, timeout, or transport errors; those are logged and mapped to a
    failed result so callers decide how to react.

    Parameters
    ----------
    client_id, secret_key:
        Server-key credentials sent as HTTP Basic auth.
    base_url:
        Root URL of the gateway API.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional custom transport (used by tests).
    """

    def __init__(
        self,
        client_id: str,
        secret_key: str,
        base_url: str = "https://api.nicepay.co.kr",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            auth=httpx.BasicAuth(client_id, secret_key),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    # -- Checkout ------------------------------------------------------------

    async def prepare_payment(
        self,
        order_id: str,
        amount: int,
        goods_name: str,
        return_url: str,
        mall_user_id: str,
        direct_pay_method: str | None = None,
    ) -> GatewayResult:
        """Register an order and obtain the client token for the checkout widget."""
        payload: dict[str, Any] = {
            "orderId": order_id,
            "amount": amount,
            "goodsName": goods_name,
            "returnUrl": return_url,
            "mallUserId": mall_user_id,
        }
        if direct_pay_method:
            payload["payMethod"] = direct_pay_method
        return await self._request("POST", "/v1/payments/ready", json=payload)

    async def approve_payment(self, tid: str, amount: int) -> GatewayResult:
        """Capture an authorized transaction.

        On success ``data`` holds ``tid``, ``payMethod``, ``card`` and, for
        subscription checkouts, ``billingKey``.
        """
        return await self._request("POST", f"/v1/payments/{tid}", json={"amount": amount})

    async def cancel_payment(self, tid: str, amount: int, reason: str) -> GatewayResult:
        payload = {"amount": amount, "reason": reason, "cancelTaxFreeAmount": 0}
        return await self._request("POST", f"/v1/payments/{tid}/cancel", json=payload)

    async def get_payment(self, tid: str) -> GatewayResult:
        return await self._request("GET", f"/v1/payments/{tid}")

    # -- Recurring billing ---------------------------------------------------

    async def pay_with_billing_key(
        self,
        billing_key: str,
        order_id: str,
        amount: int,
        goods_name: str,
        mall_user_id: str,
    ) -> GatewayResult:
        payload = {
            "billingKey": billing_key,
            "orderId": order_id,
            "amount": amount,
            "goodsName": goods_name,
            "mallUserId": mall_user_id,
        }
        return await self._request("POST", "/v1/subscribe/payments", json=payload)

    async def delete_billing_key(self, billing_key: str) -> GatewayResult:
        return await self._request("DELETE", f"/v1/subscribe/{billing_key}")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal helpers ----------------------------------------------------

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> GatewayResult:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Gateway %s %s timed out: %s", method, path, exc)
            return GatewayResult(success=False, error="The payment provider did not respond in time.", code="TIMEOUT")
        except httpx.RequestError as exc:
            logger.warning("Gateway %s %s failed: %s", method, path, exc)
            return GatewayResult(success=False, error="Could not reach the payment provider.", code="NETWORK_ERROR")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.is_error:
            logger.warning(
                "Gateway returned %d for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            code = body.get("code") or body.get("resultCode") or f"HTTP_{response.status_code}"
            return GatewayResult(success=False, data=body, error=_error_message(body), code=str(code))

        result_code = body.get("resultCode")
        if result_code is not None and str(result_code) != _SUCCESS_CODE:
            logger.warning("Gateway rejected %s %s: %s %s", method, path, result_code, body.get("resultMsg"))
            return GatewayResult(success=False, data=body, error=_error_message(body), code=str(result_code))

        return GatewayResult(success=True, data=body)
