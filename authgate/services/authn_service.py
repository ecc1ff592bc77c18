"""Multi-step login.

    email ──► password ─┐
          └─► code ─────┼─► (totp, when 2FA is on) ──► session
    magic link ─────────┘

Each step hands back a signed ``state`` (see `login_state`) naming the next
factor. Failed factors are counted per state in `LoginAttempt`; the state
survives ``max_login_attempts - 1`` failures and is dead after the last one.
Identity failures (unknown, banned, deleted) are indistinguishable from each
other; only wrong-factor and expired-step failures are reported distinctly.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.errors import (
    AuthenticationFailed,
    InvalidFactor,
    StepExpiredOrInvalid,
    VerificationCodeInvalid,
)
from authgate.models.authn import AuthnResponse, AuthnSession, StepResponse
from authgate.schemas.auth import Email, LoginAttempt, User, VerificationKind
from authgate.services.audit import AuditEvent, emit
from authgate.services.login_state import LoginState, LoginStep, issue_state, read_state
from authgate.services.secret_service import (
    consume_verification_code,
    issue_verification_code,
    normalize_email,
    verify_pbkdf2_sha256,
)
from authgate.services.session_service import create_session
from authgate.services.totp_service import accept_login_totp
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)

FACTOR_STEPS = (LoginStep.PASSWORD, LoginStep.CODE, LoginStep.TOTP)


def _usable(user: User | None) -> bool:
    return user is not None and user.banned_at is None and user.deleted_at is None


async def _find_by_email(db: AsyncSession, email: str) -> tuple[User, Email] | None:
    async with db.begin():
        result = await db.execute(
            select(User, Email)
            .join(Email, Email.user_id == User.id)  # type: ignore[arg-type]
            .where(Email.address == normalize_email(email))  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()
    if row is None:
        return None
    return row[0], row[1]


async def _load_user(db: AsyncSession, user_id: str) -> User | None:
    async with db.begin():
        result = await db.execute(
            select(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()


async def _open_step(
    db: AsyncSession,
    *,
    user_id: str,
    step: LoginStep,
    factors: tuple[LoginStep, ...] = (),
    now: datetime,
) -> tuple[str, LoginState]:
    token, state = issue_state(user_id=user_id, step=step, factors=factors, now=now)
    async with db.begin():
        db.add(
            LoginAttempt(
                correlation_id=state.correlation_id,
                failures=0,
                expires_at=state.expires_at,
            )
        )
    return token, state


async def _close_step(db: AsyncSession, *, correlation_id: str, now: datetime) -> bool:
    """Atomically mark a step finished. False if it was already closed."""
    async with db.begin():
        result = await db.execute(
            update(LoginAttempt)
            .where(
                LoginAttempt.correlation_id == correlation_id,  # type: ignore[arg-type]
                LoginAttempt.closed_at.is_(None),  # type: ignore[union-attr]
            )
            .values(closed_at=now)
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


async def _step_is_open(db: AsyncSession, correlation_id: str) -> bool:
    async with db.begin():
        result = await db.execute(
            select(LoginAttempt.closed_at).where(
                LoginAttempt.correlation_id == correlation_id  # type: ignore[arg-type]
            )
        )
        row = result.one_or_none()
    return row is not None and row[0] is None


async def _record_failure(
    db: AsyncSession,
    *,
    correlation_id: str,
    now: datetime,
) -> tuple[int, bool]:
    """Count one failed factor. Returns (failures so far, rejected)."""
    async with db.begin():
        await db.execute(
            update(LoginAttempt)
            .where(
                LoginAttempt.correlation_id == correlation_id,  # type: ignore[arg-type]
                LoginAttempt.closed_at.is_(None),  # type: ignore[union-attr]
            )
            .values(failures=LoginAttempt.failures + 1)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(
            select(LoginAttempt.failures, LoginAttempt.closed_at).where(
                LoginAttempt.correlation_id == correlation_id  # type: ignore[arg-type]
            )
        )
        failures, closed_at = result.one()
        rejected = closed_at is not None or failures >= settings.max_login_attempts
        if rejected and closed_at is None:
            await db.execute(
                update(LoginAttempt)
                .where(LoginAttempt.correlation_id == correlation_id)  # type: ignore[arg-type]
                .values(closed_at=now)
                .execution_options(synchronize_session=False)
            )
    return failures, rejected


async def _complete(
    db: AsyncSession,
    *,
    user: User,
    factors: tuple[LoginStep, ...],
    ip: str,
    user_agent: str | None,
    now: datetime,
) -> AuthnResponse:
    """Either ask for TOTP or mint the session."""
    if user.two_factor_enabled and LoginStep.TOTP not in factors:
        token, state = await _open_step(
            db, user_id=user.id, step=LoginStep.TOTP, factors=factors, now=now
        )
        return StepResponse(step=LoginStep.TOTP, code=state.correlation_id, state=token)

    issued = await create_session(db, user_id=user.id, ip=ip, user_agent=user_agent, now=now)
    emit(
        AuditEvent.LOGIN_SUCCEEDED,
        user_id=user.id,
        session_id=issued.session.id,
        factors=",".join(f.value for f in factors),
        ip=ip,
    )
    return AuthnSession(token=issued.access_token, refresh=issued.refresh_token)


async def begin_login(
    db: AsyncSession,
    *,
    email: str,
    ip: str | None = None,
    now: datetime | None = None,
) -> StepResponse:
    """Step 1: identify by email and learn which factor comes next.

    Users with a password get a ``password`` step. Passwordless users get a
    ``code`` step and a login code is emailed to their (verified) address;
    the step's ``code`` field is the correlation token of that email.

    Raises:
        AuthenticationFailed: unknown, banned or deleted user, or a
            passwordless user without a verified email.
    """
    now = now or utc_now()
    found = await _find_by_email(db, email)
    if found is None or not _usable(found[0]):
        emit(AuditEvent.LOGIN_FAILED, email=normalize_email(email), reason="identity", ip=ip)
        raise AuthenticationFailed()

    user, email_row = found
    if user.password_hash is not None:
        token, state = await _open_step(db, user_id=user.id, step=LoginStep.PASSWORD, now=now)
        return StepResponse(step=LoginStep.PASSWORD, code=state.correlation_id, state=token)

    if email_row.verified_at is None:
        emit(AuditEvent.LOGIN_FAILED, user_id=user.id, reason="unverified-email", ip=ip)
        raise AuthenticationFailed()

    token, state = await _open_step(db, user_id=user.id, step=LoginStep.CODE, now=now)
    await issue_verification_code(
        db,
        email=email_row.address,
        kind=VerificationKind.LOGIN,
        user_supplied_token=state.correlation_id,
        now=now,
    )
    return StepResponse(step=LoginStep.CODE, code=state.correlation_id, state=token)


async def _check_factor(
    db: AsyncSession,
    *,
    user: User,
    state: LoginState,
    value: str,
    now: datetime,
) -> bool:
    if state.step is LoginStep.PASSWORD:
        if user.password_hash is None:
            return False
        return verify_pbkdf2_sha256(value, user.password_hash)
    if state.step is LoginStep.CODE:
        try:
            await consume_verification_code(
                db,
                kind=VerificationKind.LOGIN,
                candidate=value,
                correlation_token=state.correlation_id,
                now=now,
            )
        except VerificationCodeInvalid:
            return False
        return True
    return await accept_login_totp(db, user=user, code=value, now=now)


async def submit_factor(
    db: AsyncSession,
    *,
    step: LoginStep,
    value: str,
    state: str,
    ip: str,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> AuthnResponse:
    """Step 2+: present the factor the ``state`` asks for.

    Raises:
        StepExpiredOrInvalid: bad/expired/closed state, wrong step, or the
            final allowed failure.
        InvalidFactor: wrong value; the same ``state`` may be retried.
        AuthenticationFailed: the user became unusable mid-flow.
    """
    now = now or utc_now()
    if step not in FACTOR_STEPS:
        raise StepExpiredOrInvalid("Unknown login step.")

    login = read_state(state, now=now)
    if login.step is not step:
        raise StepExpiredOrInvalid(f"This login expects a {login.step.value} step.")
    if not await _step_is_open(db, login.correlation_id):
        raise StepExpiredOrInvalid("Login step is no longer valid. Start again.")

    user = await _load_user(db, login.user_id)
    if user is None or not _usable(user):
        await _close_step(db, correlation_id=login.correlation_id, now=now)
        emit(AuditEvent.LOGIN_FAILED, user_id=login.user_id, reason="identity", ip=ip)
        raise AuthenticationFailed()

    if not await _check_factor(db, user=user, state=login, value=value, now=now):
        failures, rejected = await _record_failure(
            db, correlation_id=login.correlation_id, now=now
        )
        emit(
            AuditEvent.LOGIN_FAILED,
            user_id=user.id,
            step=step.value,
            failures=failures,
            ip=ip,
        )
        if rejected:
            emit(AuditEvent.LOGIN_REJECTED, user_id=user.id, step=step.value, ip=ip)
            raise StepExpiredOrInvalid("Too many failed attempts. Start again.")
        raise InvalidFactor(attempts_remaining=settings.max_login_attempts - failures)

    if not await _close_step(db, correlation_id=login.correlation_id, now=now):
        # Another request finished (or rejected) this step first
        raise StepExpiredOrInvalid("Login step is no longer valid. Start again.")

    return await _complete(
        db,
        user=user,
        factors=login.factors + (step,),
        ip=ip,
        user_agent=user_agent,
        now=now,
    )


async def login_with_magic_link(
    db: AsyncSession,
    *,
    correlation_token: str,
    code: str,
    ip: str,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> AuthnResponse:
    """Identify by an emailed (correlation token, code) pair instead of typing the code.

    Raises:
        AuthenticationFailed: code invalid/expired/replayed or user unusable.
    """
    now = now or utc_now()
    try:
        consumed = await consume_verification_code(
            db,
            kind=VerificationKind.LOGIN,
            candidate=code,
            correlation_token=correlation_token,
            now=now,
        )
    except VerificationCodeInvalid:
        emit(AuditEvent.LOGIN_FAILED, reason="magic-link", ip=ip)
        raise AuthenticationFailed() from None

    # The typed-code step paired with this link is finished either way
    await _close_step(db, correlation_id=correlation_token, now=now)

    found = await _find_by_email(db, consumed.email)
    if found is None or not _usable(found[0]):
        emit(AuditEvent.LOGIN_FAILED, email=consumed.email, reason="identity", ip=ip)
        raise AuthenticationFailed()

    return await _complete(
        db,
        user=found[0],
        factors=(LoginStep.CODE,),
        ip=ip,
        user_agent=user_agent,
        now=now,
    )


async def purge_expired_attempts(db: AsyncSession, *, now: datetime | None = None) -> int:
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            delete(LoginAttempt).where(
                LoginAttempt.expires_at <= now  # type: ignore[operator,arg-type]
            )
        )
    return int(result.rowcount or 0)
