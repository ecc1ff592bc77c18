"""Sessions and their access/refresh tokens.

A session is one logged-in device. Under it live short-lived access tokens
and a chain of refresh tokens where exactly one link is live at a time:
every refresh consumes the presented token and issues its successor in the
same transaction. Presenting a consumed refresh token again means the chain
was copied, so the whole session is revoked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.errors import (
    NotFound,
    Revoked,
    TokenExpired,
    TokenInvalid,
    TokenReused,
)
from authgate.schemas.auth import AuthSession, SessionToken, TokenKind, User
from authgate.services.audit import AuditEvent, emit
from authgate.services.role_config import oauth_scope_names
from authgate.services.secret_service import generate_secret, hash_token
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)

# Expired tokens are kept this long so late reuse is still recognised
TOKEN_PURGE_GRACE = timedelta(days=1)


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class IssuedSession:
    session: AuthSession
    tokens: IssuedTokens

    @property
    def access_token(self) -> str:
        return self.tokens.access_token

    @property
    def refresh_token(self) -> str:
        return self.tokens.refresh_token


@dataclass(frozen=True)
class TokenIdentity:
    """What a valid access token proves: the `user` part of a request context."""

    session_id: str
    user_id: str
    user_roles: tuple[str, ...]
    oauth_scopes: tuple[str, ...] | None


def _hash_access(raw: str) -> str:
    return hash_token(TokenKind.ACCESS.value, raw)


def _hash_refresh(raw: str) -> str:
    return hash_token(TokenKind.REFRESH.value, raw)


def _mint_pair(
    db: AsyncSession,
    *,
    session: AuthSession,
    oauth_scopes: list[str] | None,
    now: datetime,
) -> IssuedTokens:
    """Add a fresh access+refresh pair to the open transaction."""
    access_raw = generate_secret()
    refresh_raw = generate_secret()
    access_expires = min(
        now + timedelta(minutes=settings.access_token_ttl_minutes), session.expires_at
    )
    refresh_expires = min(
        now + timedelta(days=settings.refresh_token_ttl_days), session.expires_at
    )
    scopes = list(oauth_scopes) if oauth_scopes is not None else None

    db.add(
        SessionToken(
            kind=TokenKind.ACCESS.value,
            token_hash=_hash_access(access_raw),
            session_id=session.id,
            oauth_scopes=scopes,
            created_at=now,
            expires_at=access_expires,
        )
    )
    db.add(
        SessionToken(
            kind=TokenKind.REFRESH.value,
            token_hash=_hash_refresh(refresh_raw),
            session_id=session.id,
            oauth_scopes=scopes,
            created_at=now,
            expires_at=refresh_expires,
        )
    )
    return IssuedTokens(
        access_token=access_raw,
        refresh_token=refresh_raw,
        access_expires_at=access_expires,
        refresh_expires_at=refresh_expires,
    )


async def create_session(
    db: AsyncSession,
    *,
    user_id: str,
    ip: str,
    user_agent: str | None,
    oauth_scopes: list[str] | None = None,
    now: datetime | None = None,
) -> IssuedSession:
    """Create a session and its first token pair.

    ``oauth_scopes`` restricts every token of the session to that scope set;
    ``None`` means a direct (non-OAuth) user session.
    """
    now = now or utc_now()
    if oauth_scopes is not None:
        oauth_scopes = oauth_scope_names(oauth_scopes)
    session = AuthSession(
        user_id=user_id,
        user_agent=user_agent,
        ip=ip,
        created_at=now,
        expires_at=now + timedelta(days=settings.session_ttl_days),
    )
    async with db.begin():
        db.add(session)
        await db.flush()
        tokens = _mint_pair(db, session=session, oauth_scopes=oauth_scopes, now=now)
        await db.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .values(last_login_at=now)
        )

    logger.info("Created session %s for user %s", session.id, user_id)
    return IssuedSession(session=session, tokens=tokens)


async def validate_access_token(
    db: AsyncSession,
    *,
    token: str,
    now: datetime | None = None,
) -> TokenIdentity:
    """Resolve an access token to the identity it proves.

    The parent session is re-checked on every call, so revoking a session
    kills its tokens even before they expire.

    Raises:
        TokenInvalid: unknown token.
        Revoked: token or session invalidated, or user banned/deleted.
        TokenExpired: token or session past expiry.
    """
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            select(SessionToken, AuthSession, User)
            .join(AuthSession, AuthSession.id == SessionToken.session_id)  # type: ignore[arg-type]
            .join(User, User.id == AuthSession.user_id)  # type: ignore[arg-type]
            .where(
                SessionToken.token_hash == _hash_access(token),  # type: ignore[arg-type]
                SessionToken.kind == TokenKind.ACCESS.value,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()

    if row is None:
        raise TokenInvalid()
    access, session, user = row

    if (
        session.invalidated_at is not None
        or access.invalidated_at is not None
        or user.banned_at is not None
        or user.deleted_at is not None
    ):
        raise Revoked()
    if access.expires_at <= now or session.expires_at <= now:
        raise TokenExpired()

    return TokenIdentity(
        session_id=session.id,
        user_id=user.id,
        user_roles=tuple(user.roles or ()),
        oauth_scopes=tuple(access.oauth_scopes) if access.oauth_scopes is not None else None,
    )


async def _revoke_where(db: AsyncSession, *criteria, now: datetime) -> list[str]:
    """Invalidate matching live sessions and all their tokens (inside an open transaction)."""
    result = await db.execute(
        select(AuthSession.id).where(
            *criteria,
            AuthSession.invalidated_at.is_(None),  # type: ignore[union-attr]
        )
    )
    session_ids = list(result.scalars().all())
    if not session_ids:
        return []

    await db.execute(
        update(AuthSession)
        .where(AuthSession.id.in_(session_ids))  # type: ignore[attr-defined]
        .values(invalidated_at=now)
    )
    await db.execute(
        update(SessionToken)
        .where(
            SessionToken.session_id.in_(session_ids),  # type: ignore[attr-defined]
            SessionToken.invalidated_at.is_(None),  # type: ignore[union-attr]
        )
        .values(invalidated_at=now)
    )
    return session_ids


async def revoke_user_sessions(
    db: AsyncSession,
    *,
    user_id: str,
    now: datetime,
    except_session_id: str | None = None,
) -> list[str]:
    """Invalidate a user's sessions inside the caller's open transaction."""
    criteria = [AuthSession.user_id == user_id]  # type: ignore[arg-type]
    if except_session_id is not None:
        criteria.append(AuthSession.id != except_session_id)  # type: ignore[arg-type]
    return await _revoke_where(db, *criteria, now=now)


async def refresh(
    db: AsyncSession,
    *,
    refresh_token: str,
    now: datetime | None = None,
) -> IssuedTokens:
    """Rotate a refresh token into a new access+refresh pair.

    Raises:
        TokenInvalid: unknown token.
        TokenExpired: token past expiry.
        TokenReused: token already consumed; the session has been revoked.
        Revoked: session invalidated.
    """
    now = now or utc_now()
    token_hash = _hash_refresh(refresh_token)
    issued: IssuedTokens | None = None
    failure: type[Exception] = TokenInvalid
    session_id: str | None = None
    user_id: str | None = None
    revoked: list[str] = []

    async with db.begin():
        claim = await db.execute(
            update(SessionToken)
            .where(
                SessionToken.token_hash == token_hash,  # type: ignore[arg-type]
                SessionToken.kind == TokenKind.REFRESH.value,  # type: ignore[arg-type]
                SessionToken.consumed_at.is_(None),  # type: ignore[union-attr]
                SessionToken.invalidated_at.is_(None),  # type: ignore[union-attr]
                SessionToken.expires_at > now,  # type: ignore[operator,arg-type]
            )
            .values(consumed_at=now)
            .execution_options(synchronize_session=False)
        )

        result = await db.execute(
            select(SessionToken, AuthSession)
            .join(AuthSession, AuthSession.id == SessionToken.session_id)  # type: ignore[arg-type]
            .where(
                SessionToken.token_hash == token_hash,  # type: ignore[arg-type]
                SessionToken.kind == TokenKind.REFRESH.value,  # type: ignore[arg-type]
            )
            .execution_options(populate_existing=True)
        )
        row = result.one_or_none()

        if row is not None:
            presented, session = row
            session_id, user_id = session.id, session.user_id

            if claim.rowcount == 1:
                if session.invalidated_at is not None:
                    failure = Revoked
                elif session.expires_at <= now:
                    failure = TokenExpired
                else:
                    issued = _mint_pair(
                        db,
                        session=session,
                        oauth_scopes=presented.oauth_scopes,
                        now=now,
                    )
            elif presented.consumed_at is not None:
                failure = TokenReused
                revoked = await _revoke_where(
                    db,
                    AuthSession.id == session.id,  # type: ignore[arg-type]
                    now=now,
                )
            elif presented.invalidated_at is not None or session.invalidated_at is not None:
                failure = Revoked
            else:
                failure = TokenExpired

    if issued is not None:
        return issued

    if failure is TokenReused:
        emit(
            AuditEvent.TOKEN_REUSE_DETECTED,
            session_id=session_id,
            user_id=user_id,
        )
        if revoked:
            emit(
                AuditEvent.SESSION_REVOKED,
                session_id=session_id,
                user_id=user_id,
                reason="refresh-token-reuse",
            )
    raise failure()


async def invalidate_session(
    db: AsyncSession,
    *,
    session_id: str,
    user_id: str | None = None,
    reason: str = "logout",
    now: datetime | None = None,
) -> None:
    """Invalidate one session (idempotent). ``user_id`` scopes the lookup to an owner.

    Raises:
        NotFound: no such session (or not owned by ``user_id``).
    """
    now = now or utc_now()
    criteria = [AuthSession.id == session_id]  # type: ignore[arg-type]
    if user_id is not None:
        criteria.append(AuthSession.user_id == user_id)  # type: ignore[arg-type]

    async with db.begin():
        exists = await db.execute(select(AuthSession.user_id).where(*criteria))
        owner = exists.scalar_one_or_none()
        revoked = await _revoke_where(db, *criteria, now=now) if owner else []

    if owner is None:
        raise NotFound("Session not found.")
    if revoked:
        emit(AuditEvent.SESSION_REVOKED, session_id=session_id, user_id=owner, reason=reason)


async def invalidate_all_for_user(
    db: AsyncSession,
    *,
    user_id: str,
    except_session_id: str | None = None,
    reason: str = "revoke-all",
    now: datetime | None = None,
) -> int:
    """Invalidate every live session of a user. Returns how many were revoked."""
    now = now or utc_now()
    async with db.begin():
        revoked = await revoke_user_sessions(
            db, user_id=user_id, except_session_id=except_session_id, now=now
        )
    for session_id in revoked:
        emit(AuditEvent.SESSION_REVOKED, session_id=session_id, user_id=user_id, reason=reason)
    return len(revoked)


async def invalidate_by_token(
    db: AsyncSession,
    *,
    token: str,
    now: datetime | None = None,
) -> None:
    """Log out: invalidate the session behind an access or refresh token (idempotent)."""
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            select(SessionToken.session_id).where(
                SessionToken.token_hash.in_(  # type: ignore[attr-defined]
                    [_hash_access(token), _hash_refresh(token)]
                )
            )
        )
        session_id = result.scalars().first()
    if session_id is not None:
        await invalidate_session(db, session_id=session_id, now=now)


async def list_sessions(
    db: AsyncSession,
    *,
    user_id: str,
    now: datetime | None = None,
) -> list[AuthSession]:
    """Live (uninvalidated, unexpired) sessions for a user, newest first."""
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            select(AuthSession)
            .where(
                AuthSession.user_id == user_id,  # type: ignore[arg-type]
                AuthSession.invalidated_at.is_(None),  # type: ignore[union-attr]
                AuthSession.expires_at > now,  # type: ignore[operator,arg-type]
            )
            .order_by(AuthSession.created_at.desc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())


async def purge_expired_tokens(db: AsyncSession, *, now: datetime | None = None) -> int:
    now = now or utc_now()
    async with db.begin():
        result = await db.execute(
            delete(SessionToken).where(
                SessionToken.expires_at <= now - TOKEN_PURGE_GRACE  # type: ignore[operator,arg-type]
            )
        )
    return int(result.rowcount or 0)
