"""User accounts, emails, bans and password management."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.errors import (
    AuthenticationFailed,
    NotFound,
    ValidationFailed,
    VerificationCodeInvalid,
)
from authgate.schemas.auth import Email, User, VerificationKind
from authgate.services.audit import AuditEvent, emit
from authgate.services.role_config import user_role_names
from authgate.services.secret_service import (
    consume_verification_code,
    hash_pbkdf2_sha256,
    issue_verification_code,
    normalize_email,
    verify_pbkdf2_sha256,
)
from authgate.services.session_service import revoke_user_sessions
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def _validate_password(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
        )


async def create_user(
    db: AsyncSession,
    *,
    name: str,
    email: str,
    password: str | None = None,
    roles: list[str] | None = None,
    now: datetime | None = None,
) -> User:
    """Sign up a user with one (unverified) email and an optional password."""
    now = now or utc_now()
    normalized_email = normalize_email(email)
    if "@" not in normalized_email:
        raise ValidationFailed("A valid email address is required.")
    if password is not None:
        _validate_password(password)
    role_names = user_role_names(roles or [])

    async with db.begin():
        existing = await db.execute(
            select(Email.id).where(Email.address == normalized_email)  # type: ignore[arg-type]
        )
        if existing.scalar_one_or_none() is not None:
            raise ValidationFailed("Email address is already registered.")

        user = User(
            name=name,
            password_hash=hash_pbkdf2_sha256(password) if password is not None else None,
            roles=role_names,
            created_at=now,
            updated_at=now,
            password_changed_at=now if password is not None else None,
        )
        db.add(user)
        await db.flush()
        db.add(Email(user_id=user.id, address=normalized_email, created_at=now))

    logger.info("Created user %s", user.id)
    return user


async def get_user(db: AsyncSession, *, user_id: str) -> User:
    async with db.begin():
        result = await db.execute(
            select(User)
            .where(
                User.id == user_id,  # type: ignore[arg-type]
                User.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .execution_options(populate_existing=True)
        )
        user = result.scalar_one_or_none()
    if user is None:
        raise NotFound("User not found.")
    return user


async def list_emails(db: AsyncSession, *, user_id: str) -> list[Email]:
    async with db.begin():
        result = await db.execute(
            select(Email)
            .where(Email.user_id == user_id)  # type: ignore[arg-type]
            .order_by(Email.created_at)  # type: ignore[arg-type]
        )
        return list(result.scalars().all())


async def set_user_password(
    db: AsyncSession,
    *,
    user_id: str,
    new_password: str,
    current_password: str | None = None,
    keep_session_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """Set a user's password and revoke their other sessions.

    Args:
        db: Database session.
        user_id: The user whose password changes.
        new_password: The new password.
        current_password: Required when the user already has a password
            (self-service change); administrative resets pass None.
        keep_session_id: The caller's own session, left alive.
        now: Clock override.

    Returns:
        Number of sessions revoked.
    """
    now = now or utc_now()
    _validate_password(new_password)

    async with db.begin():
        user = await db.get(User, user_id, populate_existing=True)
        if user is None or user.deleted_at is not None:
            raise NotFound("User not found.")

        if current_password is not None:
            if user.password_hash is None or not verify_pbkdf2_sha256(
                current_password, user.password_hash
            ):
                raise AuthenticationFailed("Current password is incorrect.")
            if new_password == current_password:
                raise ValidationFailed("New password must be different from current password.")

        user.password_hash = hash_pbkdf2_sha256(new_password)
        user.password_changed_at = now
        user.updated_at = now
        revoked = await revoke_user_sessions(
            db, user_id=user_id, except_session_id=keep_session_id, now=now
        )

    emit(AuditEvent.PASSWORD_CHANGED, user_id=user_id, sessions_revoked=len(revoked))
    return len(revoked)


async def request_password_reset(db: AsyncSession, *, email: str) -> None:
    """Email a reset code to a verified address.

    This is intentionally a no-op for unknown or unverified emails to avoid
    user enumeration.
    """
    normalized_email = normalize_email(email)
    async with db.begin():
        result = await db.execute(
            select(Email, User)
            .join(User, User.id == Email.user_id)  # type: ignore[arg-type]
            .where(
                Email.address == normalized_email,  # type: ignore[arg-type]
                Email.verified_at.is_not(None),  # type: ignore[union-attr]
                User.deleted_at.is_(None),  # type: ignore[union-attr]
                User.banned_at.is_(None),  # type: ignore[union-attr]
            )
        )
        row = result.one_or_none()
    if row is None:
        return

    await issue_verification_code(
        db,
        email=normalized_email,
        kind=VerificationKind.PASSWORD_RESET,
    )


async def confirm_password_reset(
    db: AsyncSession,
    *,
    email: str,
    code: str,
    new_password: str,
    now: datetime | None = None,
) -> None:
    """Consume a reset code, set the new password and revoke every session.

    Only a password-reset code works, and only while the address is still
    verified and its owner usable.

    Raises:
        VerificationCodeInvalid: code wrong, expired or already used.
    """
    now = now or utc_now()
    _validate_password(new_password)
    consumed = await consume_verification_code(
        db,
        kind=VerificationKind.PASSWORD_RESET,
        candidate=code,
        email=email,
        now=now,
    )

    async with db.begin():
        result = await db.execute(
            select(Email.user_id)
            .join(User, User.id == Email.user_id)  # type: ignore[arg-type]
            .where(
                Email.address == consumed.email,  # type: ignore[arg-type]
                Email.verified_at.is_not(None),  # type: ignore[union-attr]
                User.deleted_at.is_(None),  # type: ignore[union-attr]
                User.banned_at.is_(None),  # type: ignore[union-attr]
            )
        )
        user_id = result.scalar_one_or_none()
    if user_id is None:
        raise VerificationCodeInvalid()

    await set_user_password(db, user_id=user_id, new_password=new_password, now=now)


async def ban_user(db: AsyncSession, *, user_id: str, now: datetime | None = None) -> None:
    """Ban a user and revoke all their sessions."""
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            update(User)
            .where(
                User.id == user_id,  # type: ignore[arg-type]
                User.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(banned_at=now, updated_at=now)
        )
        found = result.rowcount == 1
        revoked = await revoke_user_sessions(db, user_id=user_id, now=now) if found else []
    if not found:
        raise NotFound("User not found.")
    emit(AuditEvent.USER_BANNED, user_id=user_id, sessions_revoked=len(revoked))


async def unban_user(db: AsyncSession, *, user_id: str) -> None:
    async with db.begin():
        result = await db.execute(
            update(User)
            .where(
                User.id == user_id,  # type: ignore[arg-type]
                User.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(banned_at=None, updated_at=utc_now())
        )
        found = result.rowcount == 1
    if not found:
        raise NotFound("User not found.")


async def delete_user(db: AsyncSession, *, user_id: str, now: datetime | None = None) -> None:
    """Soft-delete a user (idempotent) and revoke all sessions."""
    now = now or utc_now()
    async with db.begin():
        user = await db.get(User, user_id)
        if user is None:
            raise NotFound("User not found.")
        if user.deleted_at is None:
            user.deleted_at = now
            user.updated_at = now
        await revoke_user_sessions(db, user_id=user_id, now=now)


async def set_user_roles(db: AsyncSession, *, user_id: str, roles: list[str]) -> User:
    role_names = user_role_names(roles)
    async with db.begin():
        user = await db.get(User, user_id)
        if user is None or user.deleted_at is not None:
            raise NotFound("User not found.")
        user.roles = role_names
        user.updated_at = utc_now()
    return user


async def add_email(db: AsyncSession, *, user_id: str, address: str) -> Email:
    normalized_email = normalize_email(address)
    if "@" not in normalized_email:
        raise ValidationFailed("A valid email address is required.")
    async with db.begin():
        existing = await db.execute(
            select(Email.id).where(Email.address == normalized_email)  # type: ignore[arg-type]
        )
        if existing.scalar_one_or_none() is not None:
            raise ValidationFailed("Email address is already registered.")
        email = Email(user_id=user_id, address=normalized_email)
        db.add(email)
    return email


async def _get_email(db: AsyncSession, *, email_id: str, user_id: str | None) -> Email:
    async with db.begin():
        email = await db.get(Email, email_id, populate_existing=True)
    if email is None or (user_id is not None and email.user_id != user_id):
        raise NotFound("Email not found.")
    return email


async def send_email_verification(
    db: AsyncSession,
    *,
    email_id: str,
    user_id: str | None = None,
) -> None:
    email = await _get_email(db, email_id=email_id, user_id=user_id)
    if email.verified_at is not None:
        return
    await issue_verification_code(
        db, email=email.address, kind=VerificationKind.VERIFICATION
    )


async def verify_email(
    db: AsyncSession,
    *,
    email_id: str,
    code: str,
    user_id: str | None = None,
    now: datetime | None = None,
) -> Email:
    """Consume a verification code and mark the email verified."""
    now = now or utc_now()
    email = await _get_email(db, email_id=email_id, user_id=user_id)
    if email.verified_at is not None:
        return email

    await consume_verification_code(
        db,
        kind=VerificationKind.VERIFICATION,
        candidate=code,
        email=email.address,
        now=now,
    )
    async with db.begin():
        await db.execute(
            update(Email)
            .where(Email.id == email.id)  # type: ignore[arg-type]
            .values(verified_at=now)
        )
    return email
