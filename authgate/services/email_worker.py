"""Delivers queued verification and login emails through Resend."""

from __future__ import annotations

import logging
from collections.abc import Callable

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.schemas.auth import EmailOutbox
from authgate.utils.clock import utc_now
from authgate.utils.db_async import SessionLocal

logger = logging.getLogger(__name__)

RESEND_URL = "https://api.resend.com/emails"


async def _deliver(client: httpx.AsyncClient, message: EmailOutbox) -> bool:
    try:
        response = await client.post(
            RESEND_URL,
            headers={"Authorization": f"Bearer {settings.resend_api_key}"},
            json={
                "from": settings.email_from_address,
                "to": [message.to_email],
                "subject": message.subject,
                "text": message.body,
            },
            timeout=30.0,
        )
    except httpx.RequestError as exc:
        logger.error("Email %s to %s failed: %s", message.id, message.to_email, exc)
        return False

    if response.status_code != 200:
        logger.error(
            "Email %s to %s rejected: %s %s",
            message.id,
            message.to_email,
            response.status_code,
            response.text,
        )
        return False
    return True


async def send_pending_emails(
    *,
    batch_size: int = 10,
    session_factory: Callable[[], AsyncSession] = SessionLocal,
    http_client: httpx.AsyncClient | None = None,
) -> int:
    """Send up to ``batch_size`` unsent outbox rows, oldest first.

    Opens its own database session, so it is safe to run from BackgroundTasks.
    Rows that fail stay unsent and are retried on the next call.

    Returns:
        Number of emails sent.
    """
    if not settings.resend_api_key:
        logger.warning("Resend API key not configured; leaving outbox untouched")
        return 0

    sent = 0
    async with session_factory() as db:
        async with db.begin():
            result = await db.execute(
                select(EmailOutbox)
                .where(EmailOutbox.sent_at.is_(None))  # type: ignore[union-attr]
                .order_by(EmailOutbox.created_at)  # type: ignore[arg-type]
                .limit(batch_size)
            )
            pending = list(result.scalars().all())

        client = http_client or httpx.AsyncClient()
        try:
            for message in pending:
                if not await _deliver(client, message):
                    continue
                async with db.begin():
                    await db.execute(
                        update(EmailOutbox)
                        .where(EmailOutbox.id == message.id)  # type: ignore[arg-type]
                        .values(sent_at=utc_now(), provider="resend")
                    )
                sent += 1
        finally:
            if http_client is None:
                await client.aclose()

    logger.info("Sent %d of %d pending emails", sent, len(pending))
    return sent
