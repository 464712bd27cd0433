"""Tax-authority credential management.

Certificates are stored only in encrypted form; plaintext leaves this
service solely through :meth:`CredentialService.decrypt_by_client_id`,
which is reachable only with the internal token.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from ledger_engine.errors import AlreadyProcessed, CredentialNotFound, Forbidden, InvalidInput, UpstreamFailure
from ledger_engine.ledger import CreditLedger
from ledger_engine.state.repository import TaxCredentialRepository
from ledger_engine.state.tables import TaxCredentialTable
from ledger_engine.vault import CredentialVault
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.tax_portal_client import TaxPortalClient

logger = logging.getLogger(__name__)

_CLIENT_ID_RE = re.compile(r"^[0-9]{10}$")
CERT_TYPES: frozenset[str] = frozenset({"business", "personal"})
_SECRET_FIELDS = ("cert_data", "private_key", "cert_password")

# Credits charged for one certificate login check at the tax portal.
CONNECTION_TEST_COST = 5

EXPIRING_SOON = timedelta(days=30)


def validate_client_id(client_id: str) -> str:
    """Return *client_id* if it is a 10-digit business registration number."""
    if not _CLIENT_ID_RE.match(client_id or ""):
        raise InvalidInput("Business registration number must be exactly 10 digits", code="INVALID_CLIENT_ID")
    return client_id


def credential_to_dict(credential: TaxCredentialTable) -> dict[str, Any]:
    """Summary view; never includes ciphertext or plaintext."""
    return {
        "id": credential.id,
        "user_id": credential.user_id,
        "client_id": credential.client_id,
        "cert_name": credential.cert_name,
        "cert_type": credential.cert_type,
        "is_active": credential.is_active,
        "expires_at": credential.expires_at.isoformat() if credential.expires_at else None,
        "created_at": credential.created_at.isoformat() if credential.created_at else None,
        "updated_at": credential.updated_at.isoformat() if credential.updated_at else None,
    }


class CredentialService:
    """CRUD for encrypted certificate bundles.

    Parameters
    ----------
    session:
        Active database session.
    vault:
        Cipher holding the derived master key.
    """

    def __init__(self, session: AsyncSession, vault: CredentialVault) -> None:
        self._repo = TaxCredentialRepository(session)
        self._vault = vault
        self._ledger = CreditLedger(session)

    async def create(
        self,
        user_id: str,
        *,
        client_id: str,
        cert_data: str,
        private_key: str,
        cert_password: str,
        cert_name: str | None = None,
        cert_type: str = "business",
        expires_at: datetime | None = None,
    ) -> TaxCredentialTable:
        validate_client_id(client_id)
        if cert_type not in CERT_TYPES:
            raise InvalidInput(f"cert_type must be one of {sorted(CERT_TYPES)}")
        if await self._repo.get_for_user_and_client(user_id, client_id) is not None:
            raise AlreadyProcessed(
                "A credential for this business registration number already exists",
                code="CREDENTIAL_EXISTS",
            )

        bundle = self._vault.encrypt_bundle(
            {"cert_data": cert_data, "private_key": private_key, "cert_password": cert_password}
        )
        credential = await self._repo.add(
            TaxCredentialTable(
                user_id=user_id,
                client_id=client_id,
                encrypted_payload=bundle.ciphertext,
                iv=bundle.iv,
                auth_tag=bundle.tag,
                cert_name=cert_name,
                cert_type=cert_type,
                expires_at=expires_at,
            )
        )
        logger.info("Credential created: id=%s user=%s client=%s", credential.id, user_id, client_id)
        return credential

    async def list_for_user(self, user_id: str) -> list[TaxCredentialTable]:
        return await self._repo.list_active_for_user(user_id)

    async def get(self, credential_id: str, user_id: str, *, is_admin: bool = False) -> TaxCredentialTable:
        """Return an active credential visible to the caller."""
        credential = await self._repo.get_by_id(credential_id)
        if credential is None or not credential.is_active:
            raise CredentialNotFound(f"Credential '{credential_id}' not found")
        self._check_access(credential, user_id, is_admin)
        return credential

    async def update(
        self,
        credential_id: str,
        user_id: str,
        changes: dict[str, Any],
        *,
        is_admin: bool = False,
    ) -> TaxCredentialTable:
        """Apply *changes*; the bundle is re-encrypted if any secret field changed."""
        credential = await self.get(credential_id, user_id, is_admin=is_admin)

        secret_changes = {k: v for k, v in changes.items() if k in _SECRET_FIELDS and v is not None}
        if secret_changes:
            bundle = self._vault.decrypt_bundle(credential.encrypted_payload, credential.iv, credential.auth_tag)
            bundle.update(secret_changes)
            encrypted = self._vault.encrypt_bundle(bundle)
            credential.encrypted_payload = encrypted.ciphertext
            credential.iv = encrypted.iv
            credential.auth_tag = encrypted.tag

        if changes.get("cert_type") is not None:
            if changes["cert_type"] not in CERT_TYPES:
                raise InvalidInput(f"cert_type must be one of {sorted(CERT_TYPES)}")
            credential.cert_type = changes["cert_type"]
        if changes.get("cert_name") is not None:
            credential.cert_name = changes["cert_name"]
        if "expires_at" in changes:
            credential.expires_at = changes["expires_at"]

        await self._repo.flush()
        logger.info("Credential updated: id=%s re_encrypted=%s", credential.id, bool(secret_changes))
        return credential

    async def deactivate(self, credential_id: str, user_id: str, *, is_admin: bool = False) -> TaxCredentialTable:
        credential = await self.get(credential_id, user_id, is_admin=is_admin)
        credential.is_active = False
        await self._repo.flush()
        logger.info("Credential deactivated: id=%s by=%s", credential_id, user_id)
        return credential

    async def delete(self, credential_id: str, user_id: str, *, is_admin: bool = False) -> None:
        credential = await self._repo.get_by_id(credential_id)
        if credential is None:
            raise CredentialNotFound(f"Credential '{credential_id}' not found")
        self._check_access(credential, user_id, is_admin)
        await self._repo.delete(credential_id)
        logger.info("Credential deleted: id=%s by=%s", credential_id, user_id)

    async def check_connection(
        self,
        user_id: str,
        portal: TaxPortalClient,
        *,
        client_id: str,
        cert_data: str,
        private_key: str,
        cert_password: str,
    ) -> dict[str, Any]:
        """Try a certificate login at the tax portal before it is registered.

        Costs :data:`CONNECTION_TEST_COST` credits, also when the portal
        rejects the certificate.  Only a portal outage (``UpstreamFailure``)
        leaves the balance untouched, because the request rolls back.
        """
        validate_client_id(client_id)
        if await self._repo.get_active_by_client_id(client_id) is not None:
            raise AlreadyProcessed(
                "A credential for this business registration number is already registered",
                code="CREDENTIAL_ALREADY_EXISTS",
            )

        entry = await self._ledger.deduct(
            user_id,
            CONNECTION_TEST_COST,
            "Certificate connection test",
            related_id=client_id,
        )
        result = await portal.verify_certificate(client_id, cert_data, private_key, cert_password)
        if not result.success and not result.data.get("rejected"):
            raise UpstreamFailure(result.error, code=result.code)

        logger.info(
            "Credential connection test: user=%s client=%s valid=%s code=%s",
            user_id,
            client_id,
            result.success,
            result.code,
        )
        return {
            "is_valid_connection": result.success,
            "code": result.code,
            "message": result.error,
            "credits_charged": CONNECTION_TEST_COST,
            "balance": entry.balance_after,
        }

    async def list_all(
        self,
        *,
        page: int = 1,
        limit: int = 10,
        user_id: str | None = None,
        client_id: str | None = None,
        cert_type: str | None = None,
        is_active: bool | None = None,
        expired: bool | None = None,
    ) -> dict[str, Any]:
        """Operator listing across all users; summaries only."""
        if cert_type is not None and cert_type not in CERT_TYPES:
            raise InvalidInput(f"cert_type must be one of {sorted(CERT_TYPES)}")
        rows, total = await self._repo.list_all(
            page=page,
            limit=limit,
            user_id=user_id,
            client_id=client_id,
            cert_type=cert_type,
            is_active=is_active,
            expired=expired,
        )
        return {
            "credentials": [credential_to_dict(r) for r in rows],
            "total_count": total,
            "page": page,
            "limit": limit,
        }

    async def stats(self, now: datetime | None = None) -> dict[str, Any]:
        """Counts by state, plus active certificates expiring within :data:`EXPIRING_SOON`."""
        now = now or datetime.now(UTC)
        return await self._repo.stats(now, now + EXPIRING_SOON)

    async def decrypt_by_client_id(self, client_id: str) -> dict[str, Any]:
        """Return the summary plus plaintext for the active credential of *client_id*."""
        validate_client_id(client_id)
        credential = await self._repo.get_active_by_client_id(client_id)
        if credential is None:
            raise CredentialNotFound(f"No active credential for business registration number {client_id}")
        bundle = self._vault.decrypt_bundle(credential.encrypted_payload, credential.iv, credential.auth_tag)
        logger.info("Credential decrypted for internal caller: id=%s client=%s", credential.id, client_id)
        return {
            **credential_to_dict(credential),
            "cert_data": bundle.get("cert_data"),
            "private_key": bundle.get("private_key"),
            "cert_password": bundle.get("cert_password"),
        }

    @staticmethod
    def _check_access(credential: TaxCredentialTable, user_id: str, is_admin: bool) -> None:
        if credential.user_id != user_id and not is_admin:
            logger.warning("Denied credential access: id=%s caller=%s owner=%s", credential.id, user_id, credential.user_id)
            raise Forbidden("You do not have access to this credential")
