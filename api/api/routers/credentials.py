"""Tax credential management endpoints.

Responses carry the credential summary only; certificate material is
never returned to end users.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Literal

from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from api.dependencies import RoleDep, SessionDep, TaxPortalDep, UserIdDep, VaultDep, require_credit
from api.middleware.rbac import Role
from api.services.credential_service import CONNECTION_TEST_COST, CredentialService, credential_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credentials", tags=["credentials"])


class CredentialCreateRequest(BaseModel):
    """Request body for ``POST /credentials``."""

    client_id: str = Field(..., description="10-digit business registration number.")
    cert_data: str = Field(..., min_length=1, description="PEM certificate.")
    private_key: str = Field(..., min_length=1, description="PEM private key.")
    cert_password: str = Field(..., min_length=1, description="Certificate password.")
    cert_name: str | None = Field(default=None, max_length=256)
    cert_type: Literal["business", "personal"] = "business"
    expires_at: datetime | None = None


class CredentialUpdateRequest(BaseModel):
    """Request body for ``PUT /credentials/{id}``; omitted fields are unchanged."""

    cert_data: str | None = Field(default=None, min_length=1)
    private_key: str | None = Field(default=None, min_length=1)
    cert_password: str | None = Field(default=None, min_length=1)
    cert_name: str | None = Field(default=None, max_length=256)
    cert_type: Literal["business", "personal"] | None = None
    expires_at: datetime | None = None


class ConnectionTestRequest(BaseModel):
    """Request body for ``POST /credentials/test-connection``."""

    client_id: str = Field(..., description="10-digit business registration number.")
    cert_data: str = Field(..., min_length=1)
    private_key: str = Field(..., min_length=1)
    cert_password: str = Field(..., min_length=1)


@router.post("", status_code=201)
async def create_credential(
    body: CredentialCreateRequest,
    session: SessionDep,
    vault: VaultDep,
    user_id: UserIdDep,
) -> dict[str, Any]:
    credential = await CredentialService(session, vault).create(user_id, **body.model_dump())
    return {"credential": credential_to_dict(credential)}


@router.post("/test-connection")
async def check_credential_connection(
    body: ConnectionTestRequest,
    session: SessionDep,
    vault: VaultDep,
    portal: TaxPortalDep,
    user_id: UserIdDep,
    _balance: int = Depends(require_credit(CONNECTION_TEST_COST)),
) -> dict[str, Any]:
    """Check a certificate against the tax portal before registering it.

    Metered: a completed check costs credits even when the portal rejects
    the certificate.
    """
    return await CredentialService(session, vault).check_connection(user_id, portal, **body.model_dump())


@router.get("")
async def list_credentials(session: SessionDep, vault: VaultDep, user_id: UserIdDep) -> dict[str, Any]:
    rows = await CredentialService(session, vault).list_for_user(user_id)
    return {"credentials": [credential_to_dict(r) for r in rows]}


@router.get("/{credential_id}")
async def get_credential(
    credential_id: str,
    session: SessionDep,
    vault: VaultDep,
    user_id: UserIdDep,
    role: RoleDep,
) -> dict[str, Any]:
    credential = await CredentialService(session, vault).get(credential_id, user_id, is_admin=role == Role.ADMIN)
    return {"credential": credential_to_dict(credential)}


@router.put("/{credential_id}")
async def update_credential(
    credential_id: str,
    body: CredentialUpdateRequest,
    session: SessionDep,
    vault: VaultDep,
    user_id: UserIdDep,
    role: RoleDep,
) -> dict[str, Any]:
    service = CredentialService(session, vault)
    credential = await service.update(
        credential_id,
        user_id,
        body.model_dump(exclude_unset=True),
        is_admin=role == Role.ADMIN,
    )
    return {"credential": credential_to_dict(credential)}


@router.post("/{credential_id}/deactivate")
async def deactivate_credential(
    credential_id: str,
    session: SessionDep,
    vault: VaultDep,
    user_id: UserIdDep,
    role: RoleDep,
) -> dict[str, Any]:
    service = CredentialService(session, vault)
    credential = await service.deactivate(credential_id, user_id, is_admin=role == Role.ADMIN)
    return {"credential": credential_to_dict(credential)}


@router.delete("/{credential_id}", status_code=204)
async def delete_credential(
    credential_id: str,
    session: SessionDep,
    vault: VaultDep,
    user_id: UserIdDep,
    role: RoleDep,
) -> Response:
    await CredentialService(session, vault).delete(credential_id, user_id, is_admin=role == Role.ADMIN)
    return Response(status_code=204)
