"""Garbage collection of short-lived auth rows."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from authgate.services.authn_service import purge_expired_attempts
from authgate.services.secret_service import purge_expired_codes
from authgate.services.session_service import purge_expired_tokens
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurgeResult:
    verification_codes: int
    login_attempts: int
    session_tokens: int

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


async def purge_expired(db: AsyncSession, *, now: datetime | None = None) -> PurgeResult:
    """Delete expired verification codes, login attempts and session tokens."""
    now = now or utc_now()
    result = PurgeResult(
        verification_codes=await purge_expired_codes(db, now=now),
        login_attempts=await purge_expired_attempts(db, now=now),
        session_tokens=await purge_expired_tokens(db, now=now),
    )
    logger.info(
        "Purged %d codes, %d login attempts, %d tokens",
        result.verification_codes,
        result.login_attempts,
        result.session_tokens,
    )
    return result
