"""Secret hashing, client secrets and one-time verification codes.

Passwords use salted PBKDF2-SHA256. Client secrets, bearer tokens and
verification codes are high-entropy or short-lived, so they are stored as a
keyed HMAC-SHA256 (cheap enough to check on every request). Every
comparison goes through `hmac.compare_digest`.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.errors import NotFound, VerificationCodeInvalid
from authgate.schemas.auth import (
    Client,
    EmailOutbox,
    User,
    VerificationCode,
    VerificationKind,
)
from authgate.services.audit import AuditEvent, emit
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)

CODE_DIGITS = 6


def normalize_email(email: str) -> str:
    """Normalize an email address for storage and comparisons."""
    return email.strip().casefold()


def _b64decode(raw: str) -> bytes:
    padding = "=" * (-len(raw) % 4)
    return base64.urlsafe_b64decode(raw + padding)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def hash_pbkdf2_sha256(password: str, *, iterations: int | None = None) -> str:
    """Return a PBKDF2-SHA256 password hash string."""
    iterations = iterations or settings.password_hash_iterations
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        iterations,
    )
    return f"pbkdf2_sha256${iterations}${_b64encode(salt)}${_b64encode(digest)}"


def verify_pbkdf2_sha256(password: str, encoded_hash: str) -> bool:
    """Verify a password against a "pbkdf2_sha256$iter$salt$digest" string."""
    try:
        algorithm, iterations_raw, salt_b64, digest_b64 = encoded_hash.split("$", 3)
    except ValueError:
        return False

    if algorithm != "pbkdf2_sha256":
        return False

    try:
        iterations = int(iterations_raw)
    except ValueError:
        return False

    try:
        salt = _b64decode(salt_b64)
        expected = _b64decode(digest_b64)
    except Exception:
        return False

    actual = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt,
        iterations,
    )
    return hmac.compare_digest(actual, expected)


# Spent on unknown ids so a miss costs about as much as a wrong password
_DUMMY_PASSWORD_HASH = hash_pbkdf2_sha256(secrets.token_urlsafe(16))


def hash_token(purpose: str, raw: str) -> str:
    """Keyed hash for tokens, client secrets and codes, namespaced by purpose."""
    key = settings.secret_key.encode("utf-8")
    return hmac.new(key, f"{purpose}:{raw}".encode("utf-8"), hashlib.sha256).hexdigest()


def tokens_match(expected_hash: str, purpose: str, candidate: str) -> bool:
    return hmac.compare_digest(expected_hash, hash_token(purpose, candidate))


def generate_secret() -> str:
    """Generate a raw client secret or bearer token (stored only as a hash)."""
    return secrets.token_urlsafe(32)


def generate_code() -> str:
    """Generate a fresh numeric verification code."""
    return f"{secrets.randbelow(10**CODE_DIGITS):0{CODE_DIGITS}d}"


def hash_client_secret(raw_secret: str) -> str:
    return hash_token("client-secret", raw_secret)


def _hash_code(kind: str, code: str) -> str:
    return hash_token(f"code:{kind}", code)


async def verify_client_secret(
    db: AsyncSession,
    *,
    client_id: str,
    candidate: str,
) -> bool:
    """True if ``candidate`` is the current secret of an active client."""
    async with db.begin():
        result = await db.execute(
            select(Client.secret_hash).where(
                Client.id == client_id,  # type: ignore[arg-type]
                Client.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
        secret_hash = result.scalar_one_or_none()
    if secret_hash is None:
        # Burn the same HMAC work as a real comparison
        tokens_match(hash_client_secret(""), "client-secret", candidate)
        return False
    return tokens_match(secret_hash, "client-secret", candidate)


async def verify_user_password(
    db: AsyncSession,
    *,
    user_id: str,
    candidate: str,
) -> bool:
    """True if ``candidate`` matches the password of a usable user.

    Passwordless, banned and deleted users never verify.
    """
    async with db.begin():
        result = await db.execute(
            select(User.password_hash).where(
                User.id == user_id,  # type: ignore[arg-type]
                User.deleted_at.is_(None),  # type: ignore[union-attr]
                User.banned_at.is_(None),  # type: ignore[union-attr]
            )
        )
        password_hash = result.scalar_one_or_none()
    if password_hash is None:
        verify_pbkdf2_sha256(candidate, _DUMMY_PASSWORD_HASH)
        return False
    return verify_pbkdf2_sha256(candidate, password_hash)


async def rotate_client_secret(
    db: AsyncSession,
    *,
    client_id: str,
) -> str:
    """Replace a client's secret and return the new plaintext (shown once).

    The swap is a single UPDATE, so the old secret stops working at the same
    commit that makes the new one valid.
    """
    raw_secret = generate_secret()
    async with db.begin():
        result = await db.execute(
            update(Client)
            .where(
                Client.id == client_id,  # type: ignore[arg-type]
                Client.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .values(secret_hash=hash_client_secret(raw_secret))
        )
        rotated = result.rowcount == 1
    if not rotated:
        raise NotFound("Client not found.")

    emit(AuditEvent.CLIENT_SECRET_ROTATED, client_id=client_id)
    return raw_secret


def _outstanding(*criteria):
    return select(VerificationCode).where(
        *criteria,
        VerificationCode.consumed_at.is_(None),  # type: ignore[union-attr]
        VerificationCode.invalidated_at.is_(None),  # type: ignore[union-attr]
    )


def _code_email(kind: str, code: str, token: str) -> tuple[str, str]:
    if kind == VerificationKind.PASSWORD_RESET.value:
        return (
            "Reset your password",
            "If you requested a password reset, use this code:\n\n"
            f"{code}\n",
        )
    if kind == VerificationKind.LOGIN.value:
        return (
            "Your sign-in code",
            f"Your sign-in code is {code}\n\n"
            "Or sign in directly with this link:\n\n"
            f"/sessions/login/magic?c={token}&code={code}\n",
        )
    return (
        "Verify your email address",
        f"Your verification code is {code}\n\n"
        f"/emails/verify?c={token}&code={code}\n",
    )


async def issue_verification_code(
    db: AsyncSession,
    *,
    email: str,
    kind: VerificationKind,
    ttl: timedelta | None = None,
    user_supplied_token: str | None = None,
    now: datetime | None = None,
) -> tuple[str, str]:
    """Issue a fresh code for (email, kind) and queue it for delivery.

    Any previous outstanding code for the same email and kind is invalidated
    in the same transaction; codes are never reused or extended.

    Returns:
        (plaintext_code, correlation_token). The correlation token is the
        caller-supplied one when given, otherwise a random one.
    """
    now = now or utc_now()
    ttl = ttl or timedelta(minutes=settings.verification_code_ttl_minutes)
    normalized_email = normalize_email(email)
    code = generate_code()
    token = user_supplied_token or secrets.token_urlsafe(16)
    subject, body = _code_email(kind.value, code, token)

    async with db.begin():
        await db.execute(
            update(VerificationCode)
            .where(
                VerificationCode.email == normalized_email,  # type: ignore[arg-type]
                VerificationCode.kind == kind.value,  # type: ignore[arg-type]
                VerificationCode.consumed_at.is_(None),  # type: ignore[union-attr]
                VerificationCode.invalidated_at.is_(None),  # type: ignore[union-attr]
            )
            .values(invalidated_at=now)
        )
        db.add(
            VerificationCode(
                code_hash=_hash_code(kind.value, code),
                kind=kind.value,
                email=normalized_email,
                user_supplied_token=token,
                created_at=now,
                expires_at=now + ttl,
            )
        )
        db.add(
            EmailOutbox(
                to_email=normalized_email,
                subject=subject,
                body=body,
                created_at=now,
            )
        )

    logger.info("Issued %s code for %s", kind.value, normalized_email)
    return code, token


async def consume_verification_code(
    db: AsyncSession,
    *,
    kind: VerificationKind,
    candidate: str,
    email: str | None = None,
    correlation_token: str | None = None,
    now: datetime | None = None,
) -> VerificationCode:
    """Atomically consume an outstanding code, identified by email or correlation token.

    A wrong candidate counts against the code and invalidates it after
    ``max_code_attempts``. Presenting an already-consumed code invalidates
    every other outstanding code for that email and kind.

    Raises:
        VerificationCodeInvalid: expired, consumed, invalidated or wrong.
    """
    if email is None and correlation_token is None:
        raise ValueError("email or correlation_token is required")

    now = now or utc_now()
    candidate_hash = _hash_code(kind.value, candidate.strip())
    if email is not None:
        scope = VerificationCode.email == normalize_email(email)  # type: ignore[arg-type]
    else:
        scope = VerificationCode.user_supplied_token == correlation_token  # type: ignore[arg-type]

    consumed: VerificationCode | None = None
    replayed_email: str | None = None
    async with db.begin():
        result = await db.execute(
            _outstanding(scope, VerificationCode.kind == kind.value)  # type: ignore[arg-type]
            .order_by(VerificationCode.created_at.desc())  # type: ignore[attr-defined]
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()

        if row is not None and hmac.compare_digest(row.code_hash, candidate_hash):
            if row.expires_at > now:
                claim = await db.execute(
                    update(VerificationCode)
                    .where(
                        VerificationCode.id == row.id,  # type: ignore[arg-type]
                        VerificationCode.consumed_at.is_(None),  # type: ignore[union-attr]
                        VerificationCode.invalidated_at.is_(None),  # type: ignore[union-attr]
                    )
                    .values(consumed_at=now)
                )
                if claim.rowcount == 1:
                    consumed = row
        elif row is not None:
            failures = row.failed_attempts + 1
            values: dict = {"failed_attempts": failures}
            if failures >= settings.max_code_attempts:
                values["invalidated_at"] = now
            await db.execute(
                update(VerificationCode)
                .where(VerificationCode.id == row.id)  # type: ignore[arg-type]
                .values(**values)
            )

        if consumed is None:
            spent = await db.execute(
                select(VerificationCode).where(
                    scope,
                    VerificationCode.kind == kind.value,  # type: ignore[arg-type]
                    VerificationCode.code_hash == candidate_hash,  # type: ignore[arg-type]
                    VerificationCode.consumed_at.is_not(None),  # type: ignore[union-attr]
                )
            )
            replayed = spent.scalars().first()
            if replayed is not None:
                replayed_email = replayed.email
                await db.execute(
                    update(VerificationCode)
                    .where(
                        VerificationCode.email == replayed.email,  # type: ignore[arg-type]
                        VerificationCode.kind == kind.value,  # type: ignore[arg-type]
                        VerificationCode.consumed_at.is_(None),  # type: ignore[union-attr]
                        VerificationCode.invalidated_at.is_(None),  # type: ignore[union-attr]
                    )
                    .values(invalidated_at=now)
                )

    if replayed_email is not None:
        emit(AuditEvent.CODE_REPLAY_DETECTED, email=replayed_email, kind=kind.value)
    if consumed is None:
        raise VerificationCodeInvalid("Code is invalid or expired.")
    return consumed


async def purge_expired_codes(db: AsyncSession, *, now: datetime | None = None) -> int:
    """Delete codes past expiry and codes invalidated before use.

    Consumed codes stay until they expire so a replay is still recognised.
    """
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            delete(VerificationCode).where(
                or_(
                    VerificationCode.expires_at <= now,  # type: ignore[arg-type]
                    VerificationCode.invalidated_at.is_not(None),  # type: ignore[union-attr]
                )
            )
        )
    return int(result.rowcount or 0)
