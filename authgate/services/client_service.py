"""Organizations and their API clients."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.errors import NotFound, ValidationFailed
from authgate.schemas.auth import Client, Organization
from authgate.services.role_config import client_role_names
from authgate.services.secret_service import generate_secret, hash_client_secret
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)


async def create_organization(db: AsyncSession, *, name: str) -> Organization:
    name = name.strip()
    if not name:
        raise ValidationFailed("Organization name is required.")
    async with db.begin():
        org = Organization(name=name)
        db.add(org)
    logger.info("Created organization %s", org.id)
    return org


async def create_client(
    db: AsyncSession,
    *,
    organization_id: str,
    name: str,
    roles: list[str] | None = None,
    requests_per_second: int = 10,
) -> tuple[Client, str]:
    """Register a client. Returns (client, plaintext secret); the secret is shown once."""
    role_names = client_role_names(roles or [])
    raw_secret = generate_secret()
    async with db.begin():
        org = await db.get(Organization, organization_id)
        if org is None or org.deleted_at is not None:
            raise NotFound("Organization not found.")
        client = Client(
            organization_id=organization_id,
            name=name,
            secret_hash=hash_client_secret(raw_secret),
            roles=role_names,
            requests_per_second=requests_per_second,
        )
        db.add(client)
    logger.info("Created client %s in organization %s", client.id, organization_id)
    return client, raw_secret


async def get_active_client(
    db: AsyncSession,
    *,
    client_id: str,
    organization_id: str | None = None,
) -> Client:
    criteria = [
        Client.id == client_id,  # type: ignore[arg-type]
        Client.deleted_at.is_(None),  # type: ignore[union-attr]
    ]
    if organization_id is not None:
        criteria.append(Client.organization_id == organization_id)  # type: ignore[arg-type]
    async with db.begin():
        result = await db.execute(
            select(Client).where(*criteria).execution_options(populate_existing=True)
        )
        client = result.scalar_one_or_none()
    if client is None:
        raise NotFound("Client not found.")
    return client


async def delete_client(
    db: AsyncSession,
    *,
    client_id: str,
    organization_id: str | None = None,
) -> None:
    """Soft-delete a client; its secret stops verifying immediately."""
    criteria = [
        Client.id == client_id,  # type: ignore[arg-type]
        Client.deleted_at.is_(None),  # type: ignore[union-attr]
    ]
    if organization_id is not None:
        criteria.append(Client.organization_id == organization_id)  # type: ignore[arg-type]
    async with db.begin():
        result = await db.execute(update(Client).where(*criteria).values(deleted_at=utc_now()))
        deleted = result.rowcount == 1
    if not deleted:
        raise NotFound("Client not found.")
    logger.info("Deleted client %s", client_id)


async def set_client_roles(db: AsyncSession, *, client_id: str, roles: list[str]) -> Client:
    role_names = client_role_names(roles)
    async with db.begin():
        client = await db.get(Client, client_id)
        if client is None or client.deleted_at is not None:
            raise NotFound("Client not found.")
        client.roles = role_names
    return client
