"""Organization and client administration routes (staff only)."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.models.accounts import (
    ClientCreate,
    ClientRead,
    ClientSecret,
    OrganizationCreate,
    OrganizationRead,
)
from authgate.routes.deps import require_staff
from authgate.schemas.auth import Client
from authgate.services import client_service, secret_service
from authgate.services.context_service import UserContext
from authgate.utils.db_async import get_session

router = APIRouter(prefix="/organizations", tags=["clients"])


def _client_read(client: Client) -> ClientRead:
    return ClientRead(
        id=client.id,
        organization_id=client.organization_id,
        name=client.name,
        roles=list(client.roles or []),
        requests_per_second=client.requests_per_second,
        created_at=client.created_at,
    )


@router.post("", status_code=201)
async def create_organization(
    payload: OrganizationCreate,
    _staff: UserContext = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    org = await client_service.create_organization(db, name=payload.name)
    return {"data": OrganizationRead(id=org.id, name=org.name, created_at=org.created_at)}


@router.post("/{organization_id}/clients", status_code=201)
async def create_client(
    organization_id: str,
    payload: ClientCreate,
    _staff: UserContext = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Register a client; the plaintext secret is only in this response."""
    client, secret = await client_service.create_client(
        db,
        organization_id=organization_id,
        name=payload.name,
        roles=payload.roles,
        requests_per_second=payload.requests_per_second,
    )
    return {"data": ClientSecret(client=_client_read(client), secret=secret)}


@router.post("/{organization_id}/clients/{client_id}/refresh-secret")
async def refresh_client_secret(
    organization_id: str,
    client_id: str,
    _staff: UserContext = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    client = await client_service.get_active_client(
        db, client_id=client_id, organization_id=organization_id
    )
    secret = await secret_service.rotate_client_secret(db, client_id=client.id)
    return {"data": ClientSecret(client=_client_read(client), secret=secret)}


@router.delete("/{organization_id}/clients/{client_id}")
async def delete_client(
    organization_id: str,
    client_id: str,
    _staff: UserContext = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await client_service.delete_client(
        db, client_id=client_id, organization_id=organization_id
    )
    return {"data": {"deleted": True}}
