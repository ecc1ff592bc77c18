"""Integration-test helpers for seeding clients and users and driving logins."""

from __future__ import annotations

import re

from httpx import AsyncClient, Response
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.schemas.auth import Email, EmailOutbox
from authgate.services import client_service, user_service
from authgate.utils.clock import utc_now


async def create_api_client(
    db_session: AsyncSession,
    *,
    roles: list[str] | None = None,
) -> tuple[str, str]:
    """Create an organization and client. Returns (client_id, plaintext secret)."""
    org = await client_service.create_organization(db_session, name="Acme")
    client, secret = await client_service.create_client(
        db_session, organization_id=org.id, name="acme-web", roles=roles
    )
    return client.id, secret


async def create_user(
    db_session: AsyncSession,
    *,
    email: str,
    password: str | None = None,
    roles: list[str] | None = None,
    verified: bool = True,
) -> str:
    """Sign up a user (optionally with a verified email) and return its id."""
    user = await user_service.create_user(
        db_session, name=email.split("@")[0], email=email, password=password, roles=roles
    )
    if verified:
        await mark_email_verified(db_session, email=email)
    return user.id


async def mark_email_verified(db_session: AsyncSession, *, email: str) -> None:
    async with db_session.begin():
        await db_session.execute(
            update(Email)
            .where(Email.address == email.casefold())  # type: ignore[arg-type]
            .values(verified_at=utc_now())
        )


async def latest_email_body(db_session: AsyncSession, *, to_email: str) -> str:
    """Body of the newest outbox email for an address."""
    async with db_session.begin():
        result = await db_session.execute(
            select(EmailOutbox.body)
            .where(EmailOutbox.to_email == to_email.casefold())  # type: ignore[arg-type]
            .order_by(EmailOutbox.id.desc())  # type: ignore[union-attr]
        )
        body = result.scalars().first()
    if body is None:
        raise AssertionError(f"No outbox email for {to_email}")
    return body


def extract_code(email_body: str) -> str:
    """Extract the 6-digit code from an outbox email body."""
    match = re.search(r"\b(\d{6})\b", email_body)
    if match is None:
        raise AssertionError("No 6-digit code found in outbox email body")
    return match.group(1)


def client_headers(
    client_id: str,
    secret: str | None = None,
    *,
    token: str | None = None,
    debug_key: str | None = None,
) -> dict[str, str]:
    headers = {"X-Client-Id": client_id}
    if secret is not None:
        headers["X-Client-Secret"] = secret
    if token is not None:
        headers["Authorization"] = f"Bearer {token}"
    if debug_key is not None:
        headers["X-Debug-Key"] = debug_key
    return headers


async def login_with_password(
    app_client: AsyncClient,
    headers: dict[str, str],
    *,
    email: str,
    password: str,
) -> Response:
    """Drive the email then password steps and return the final response."""
    step = await app_client.post("/sessions/login/email", json={"email": email}, headers=headers)
    assert step.status_code == 200, step.text
    state = step.json()["data"]["state"]
    return await app_client.post(
        "/sessions/login/password",
        json={"value": password, "state": state},
        headers=headers,
    )
