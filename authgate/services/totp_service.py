"""TOTP second factor: enrollment and verification.

TOTP secrets are encrypted at rest with Fernet and decrypted only for the
duration of a single verification. A login burns the time step its code
belongs to, so an observed code cannot be replayed while it is still valid.
"""

from __future__ import annotations

import base64
import hashlib
import logging
from datetime import UTC, datetime

import pyotp
from pyotp.utils import strings_equal
from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.errors import NotFound, ValidationFailed
from authgate.schemas.auth import Email, User
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)


def _get_encryption_key() -> bytes:
    if settings.totp_encryption_key:
        return settings.totp_encryption_key.encode()
    derived = hashlib.sha256(f"totp:{settings.secret_key}".encode()).digest()
    return base64.urlsafe_b64encode(derived)


def _get_fernet() -> Fernet:
    return Fernet(_get_encryption_key())


def encrypt_totp_secret(secret: str) -> str:
    return _get_fernet().encrypt(secret.encode()).decode()


def matched_totp_step(
    encrypted_secret: str | None,
    code: str,
    *,
    now: datetime | None = None,
) -> int | None:
    """Return the time step ``code`` belongs to, or None when it does not verify.

    Steps within ``totp_valid_window`` of the current one are accepted.
    """
    if not encrypted_secret or not code:
        return None
    try:
        secret = _get_fernet().decrypt(encrypted_secret.encode()).decode()
    except InvalidToken:
        logger.error("Stored TOTP secret could not be decrypted")
        return None
    totp = pyotp.TOTP(secret)
    # Stored datetimes are naive UTC; pyotp reads naive values as local time
    for_time = (now or utc_now()).replace(tzinfo=UTC)
    current = totp.timecode(for_time)
    window = settings.totp_valid_window
    for offset in range(-window, window + 1):
        if strings_equal(code.strip(), totp.at(for_time, counter_offset=offset)):
            return current + offset
    return None


def verify_totp(
    encrypted_secret: str | None,
    code: str,
    *,
    now: datetime | None = None,
) -> bool:
    return matched_totp_step(encrypted_secret, code, now=now) is not None


async def accept_login_totp(
    db: AsyncSession,
    *,
    user: User,
    code: str,
    now: datetime | None = None,
) -> bool:
    """Verify a login code and burn its time step.

    The step only moves forward, and the move is a conditional UPDATE, so of
    two logins presenting the same code at most one succeeds.
    """
    if not user.two_factor_enabled:
        return False
    step = matched_totp_step(user.totp_secret_encrypted, code, now=now)
    if step is None:
        return False
    async with db.begin():
        result = await db.execute(
            update(User)
            .where(
                User.id == user.id,  # type: ignore[arg-type]
                or_(
                    User.totp_last_step.is_(None),  # type: ignore[union-attr]
                    User.totp_last_step < step,  # type: ignore[operator]
                ),
            )
            .values(totp_last_step=step)
            .execution_options(synchronize_session=False)
        )
        accepted = result.rowcount == 1
    if not accepted:
        logger.warning("Rejected a reused TOTP code for user %s", user.id)
    return accepted


async def begin_totp_enrollment(
    db: AsyncSession,
    *,
    user_id: str,
) -> tuple[str, str]:
    """Generate and store a new TOTP secret for a user.

    2FA stays off until `confirm_totp_enrollment` sees a valid code.

    Returns:
        (secret for manual entry, otpauth:// provisioning URI)
    """
    secret = pyotp.random_base32()
    async with db.begin():
        user = await db.get(User, user_id)
        if user is None or user.deleted_at is not None:
            raise NotFound("User not found.")
        if user.two_factor_enabled:
            raise ValidationFailed("Two-factor authentication is already enabled.")

        email_result = await db.execute(
            select(Email.address)
            .where(Email.user_id == user_id)  # type: ignore[arg-type]
            .order_by(Email.created_at)  # type: ignore[arg-type]
        )
        account_name = email_result.scalars().first() or user.name

        user.totp_secret_encrypted = encrypt_totp_secret(secret)
        user.updated_at = utc_now()

    uri = pyotp.TOTP(secret).provisioning_uri(
        name=account_name, issuer_name=settings.totp_issuer
    )
    return secret, uri


async def confirm_totp_enrollment(
    db: AsyncSession,
    *,
    user_id: str,
    code: str,
    now: datetime | None = None,
) -> bool:
    """Enable 2FA if ``code`` matches the pending secret."""
    async with db.begin():
        user = await db.get(User, user_id)
        if user is None or user.deleted_at is not None:
            raise NotFound("User not found.")
        if user.two_factor_enabled:
            return False
        if not verify_totp(user.totp_secret_encrypted, code, now=now):
            return False
        user.two_factor_enabled = True
        user.updated_at = utc_now()

    logger.info("Enabled two-factor authentication for user %s", user_id)
    return True


async def disable_totp(db: AsyncSession, *, user_id: str) -> None:
    async with db.begin():
        await db.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .values(
                two_factor_enabled=False,
                totp_secret_encrypted=None,
                totp_last_step=None,
                updated_at=utc_now(),
            )
        )
