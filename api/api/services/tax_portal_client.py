"""HTTP client for the tax-portal certificate login check."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from api.services.gateway_client import GatewayResult

logger = logging.getLogger(__name__)

CERT_LOGIN_PATH = "/in0076000245"


def _strip_newlines(pem: str) -> str:
    return pem.replace("\r", "").replace("\n", "")


class TaxPortalClient:
    """Async wrapper around the tax-portal scraping API.

    Only the certificate login check is used: it proves that a certificate,
    its private key and password open a session for a business number.
    Like :class:`~api.services.gateway_client.NicepayClient`, every call
    returns a :class:`GatewayResult` and never raises on transport errors.

    Parameters
    ----------
    user_id, api_key:
        Account headers issued by the portal provider.
    base_url:
        Root URL of the portal API.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional custom transport (used by tests).
    """

    def __init__(
        self,
        user_id: str,
        api_key: str,
        base_url: str = "https://api.hyphen.im",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers={
                "Content-Type": "application/json",
                "user-id": user_id,
                "Hkey": api_key,
            },
            transport=transport,
        )

    async def verify_certificate(
        self,
        client_id: str,
        cert_data: str,
        private_key: str,
        cert_password: str,
    ) -> GatewayResult:
        """Attempt a certificate login for business number *client_id*.

        A rejected certificate comes back as a failed result whose ``code``
        is the portal's ``errCd``; transport failures use ``TIMEOUT`` or
        ``NETWORK_ERROR`` and leave ``data`` empty.
        """
        payload = {
            "loginMethod": "CERT",
            "signCert": _strip_newlines(cert_data),
            "signPri": _strip_newlines(private_key),
            "signPw": cert_password,
            "bizNo": client_id,
        }
        try:
            response = await self._client.post(CERT_LOGIN_PATH, json=payload)
        except httpx.TimeoutException as exc:
            logger.warning("Tax portal login check timed out: %s", exc)
            return GatewayResult(success=False, error="The tax portal did not respond in time.", code="TIMEOUT")
        except httpx.RequestError as exc:
            logger.warning("Tax portal login check failed: %s", exc)
            return GatewayResult(success=False, error="Could not reach the tax portal.", code="NETWORK_ERROR")

        if response.is_error:
            logger.warning("Tax portal returned %d: %s", response.status_code, response.text[:500])
            return GatewayResult(
                success=False,
                error="The tax portal could not process the request.",
                code=f"HTTP_{response.status_code}",
            )

        try:
            body: Any = response.json()
        except ValueError:
            body = {}
        common = body.get("common") if isinstance(body, dict) else None
        if not isinstance(common, dict):
            return GatewayResult(success=False, error="Unexpected tax portal response.", code="BAD_RESPONSE")

        if common.get("errYn") == "Y":
            code = str(common.get("errCd") or "CONNECTION_TEST_FAILED")
            message = str(common.get("errMsg") or "The certificate login was rejected.")
            logger.info("Tax portal rejected certificate for client=%s: %s %s", client_id, code, message)
            return GatewayResult(success=False, data={"rejected": True, **common}, error=message, code=code)

        return GatewayResult(success=True, data=common)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
