"""Integration tests for session creation, refresh rotation and revocation."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.errors import (
    NotFound,
    Revoked,
    TokenExpired,
    TokenInvalid,
    TokenReused,
    ValidationFailed,
)
from authgate.services import session_service, user_service
from authgate.services.audit import AuditEvent
from authgate.utils.clock import utc_now

IP = "198.51.100.4"


@pytest.mark.asyncio
class TestCreateAndValidate:
    """create_session / validate_access_token."""

    async def test_access_token_resolves_identity(
        self, db_session: AsyncSession, password_user: str
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent="pytest"
        )
        session_id = issued.session.id

        identity = await session_service.validate_access_token(
            db_session, token=issued.access_token
        )
        assert identity.session_id == session_id
        assert identity.user_id == password_user
        assert identity.oauth_scopes is None

    async def test_oauth_scopes_travel_with_the_token(
        self, db_session: AsyncSession, password_user: str
    ):
        issued = await session_service.create_session(
            db_session,
            user_id=password_user,
            ip=IP,
            user_agent=None,
            oauth_scopes=["read:profile"],
        )
        identity = await session_service.validate_access_token(
            db_session, token=issued.access_token
        )
        assert identity.oauth_scopes == ("read:profile",)

        rotated = await session_service.refresh(db_session, refresh_token=issued.refresh_token)
        identity = await session_service.validate_access_token(
            db_session, token=rotated.access_token
        )
        assert identity.oauth_scopes == ("read:profile",)

    async def test_unknown_scope_rejected(self, db_session: AsyncSession, password_user: str):
        with pytest.raises(ValidationFailed):
            await session_service.create_session(
                db_session,
                user_id=password_user,
                ip=IP,
                user_agent=None,
                oauth_scopes=["read:profile", "admin:everything"],
            )
        assert await session_service.list_sessions(db_session, user_id=password_user) == []

    async def test_unknown_token(self, db_session: AsyncSession):
        with pytest.raises(TokenInvalid):
            await session_service.validate_access_token(db_session, token="not-a-token")

    async def test_refresh_token_is_not_an_access_token(
        self, db_session: AsyncSession, password_user: str
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        with pytest.raises(TokenInvalid):
            await session_service.validate_access_token(db_session, token=issued.refresh_token)

    async def test_access_token_expires(self, db_session: AsyncSession, password_user: str):
        now = utc_now()
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None, now=now
        )
        later = now + timedelta(minutes=settings.access_token_ttl_minutes + 1)
        with pytest.raises(TokenExpired):
            await session_service.validate_access_token(
                db_session, token=issued.access_token, now=later
            )

    async def test_banned_user_tokens_stop_working(
        self, db_session: AsyncSession, password_user: str
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        await user_service.ban_user(db_session, user_id=password_user)
        with pytest.raises(Revoked):
            await session_service.validate_access_token(db_session, token=issued.access_token)


@pytest.mark.asyncio
class TestRefreshRotation:
    """Each refresh token works once; a second use revokes the whole session."""

    async def test_rotation_chain(self, db_session: AsyncSession, password_user: str):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        refresh_token = issued.refresh_token
        seen = {issued.access_token}
        for _ in range(3):
            tokens = await session_service.refresh(db_session, refresh_token=refresh_token)
            assert tokens.access_token not in seen
            assert tokens.refresh_token != refresh_token
            seen.add(tokens.access_token)
            refresh_token = tokens.refresh_token

        await session_service.validate_access_token(db_session, token=tokens.access_token)

    async def test_reuse_revokes_session(
        self, db_session: AsyncSession, password_user: str, audit_events
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        rotated = await session_service.refresh(db_session, refresh_token=issued.refresh_token)

        with pytest.raises(TokenReused):
            await session_service.refresh(db_session, refresh_token=issued.refresh_token)

        # Every token of the session is now dead, including the legitimate latest pair
        for token in (issued.access_token, rotated.access_token):
            with pytest.raises(Revoked):
                await session_service.validate_access_token(db_session, token=token)
        with pytest.raises(Revoked):
            await session_service.refresh(db_session, refresh_token=rotated.refresh_token)

        events = [r.event for r in audit_events]
        assert AuditEvent.TOKEN_REUSE_DETECTED in events
        assert AuditEvent.SESSION_REVOKED in events

    async def test_reuse_on_revoked_session_revokes_nothing_new(
        self, db_session: AsyncSession, password_user: str, audit_events
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        await session_service.refresh(db_session, refresh_token=issued.refresh_token)
        with pytest.raises(TokenReused):
            await session_service.refresh(db_session, refresh_token=issued.refresh_token)
        audit_events.clear()

        with pytest.raises(TokenReused):
            await session_service.refresh(db_session, refresh_token=issued.refresh_token)
        events = [r.event for r in audit_events]
        assert events == [AuditEvent.TOKEN_REUSE_DETECTED]

    async def test_concurrent_refresh_has_one_winner(
        self, db_session: AsyncSession, password_user: str, racing_sessions
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        first, second = racing_sessions

        results = await asyncio.gather(
            session_service.refresh(first, refresh_token=issued.refresh_token),
            session_service.refresh(second, refresh_token=issued.refresh_token),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, session_service.IssuedTokens)]
        losers = [r for r in results if isinstance(r, TokenReused)]
        assert len(winners) == 1
        assert len(losers) == 1

    async def test_reuse_leaves_other_sessions_alone(
        self, db_session: AsyncSession, password_user: str
    ):
        first = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        second = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        await session_service.refresh(db_session, refresh_token=first.refresh_token)
        with pytest.raises(TokenReused):
            await session_service.refresh(db_session, refresh_token=first.refresh_token)

        await session_service.validate_access_token(db_session, token=second.access_token)

    async def test_unknown_refresh_token(self, db_session: AsyncSession):
        with pytest.raises(TokenInvalid):
            await session_service.refresh(db_session, refresh_token="nope")

    async def test_expired_refresh_token(self, db_session: AsyncSession, password_user: str):
        now = utc_now()
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None, now=now
        )
        later = now + timedelta(days=settings.session_ttl_days + 1)
        with pytest.raises(TokenExpired):
            await session_service.refresh(
                db_session, refresh_token=issued.refresh_token, now=later
            )

    async def test_access_token_cannot_refresh(
        self, db_session: AsyncSession, password_user: str
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        with pytest.raises(TokenInvalid):
            await session_service.refresh(db_session, refresh_token=issued.access_token)


@pytest.mark.asyncio
class TestInvalidation:
    """Logout, revoke-all and listing."""

    async def test_invalidate_by_token(self, db_session: AsyncSession, password_user: str):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        await session_service.invalidate_by_token(db_session, token=issued.access_token)
        # Idempotent
        await session_service.invalidate_by_token(db_session, token=issued.access_token)

        with pytest.raises(Revoked):
            await session_service.validate_access_token(db_session, token=issued.access_token)
        with pytest.raises(Revoked):
            await session_service.refresh(db_session, refresh_token=issued.refresh_token)

    async def test_invalidate_session_owner_scoped(
        self, db_session: AsyncSession, password_user: str, staff_user: str
    ):
        issued = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        session_id = issued.session.id
        with pytest.raises(NotFound):
            await session_service.invalidate_session(
                db_session, session_id=session_id, user_id=staff_user
            )
        await session_service.invalidate_session(
            db_session, session_id=session_id, user_id=password_user
        )
        with pytest.raises(Revoked):
            await session_service.validate_access_token(db_session, token=issued.access_token)

    async def test_invalidate_all_except_current(
        self, db_session: AsyncSession, password_user: str
    ):
        keep = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        drop = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent=None
        )
        keep_id = keep.session.id

        revoked = await session_service.invalidate_all_for_user(
            db_session, user_id=password_user, except_session_id=keep_id
        )
        assert revoked == 1
        await session_service.validate_access_token(db_session, token=keep.access_token)
        with pytest.raises(Revoked):
            await session_service.validate_access_token(db_session, token=drop.access_token)

    async def test_list_sessions_only_live(self, db_session: AsyncSession, password_user: str):
        live = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent="a"
        )
        dead = await session_service.create_session(
            db_session, user_id=password_user, ip=IP, user_agent="b"
        )
        live_id = live.session.id
        await session_service.invalidate_by_token(db_session, token=dead.access_token)

        sessions = await session_service.list_sessions(db_session, user_id=password_user)
        assert [s.id for s in sessions] == [live_id]
