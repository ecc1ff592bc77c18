"""Login flow and session management routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.models.authn import (
    AuthnSession,
    EmailLogin,
    FactorLogin,
    MagicLinkLogin,
    RefreshRequest,
    SessionRead,
)
from authgate.routes.deps import client_ip, get_current_user, get_req_info, is_staff
from authgate.services import authn_service, session_service
from authgate.services.context_service import ReqInfo, UserContext
from authgate.services.login_state import LoginStep
from authgate.utils.db_async import get_session

router = APIRouter(prefix="/sessions", tags=["sessions"])


async def _factor(
    step: LoginStep,
    payload: FactorLogin,
    request: Request,
    db: AsyncSession,
) -> dict[str, Any]:
    result = await authn_service.submit_factor(
        db,
        step=step,
        value=payload.value,
        state=payload.state,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {"data": result}


@router.post("/login/email")
async def login_email(
    payload: EmailLogin,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Start a login; the response names the factor to present next."""
    step = await authn_service.begin_login(db, email=payload.email, ip=info.origin_ip)
    return {"data": step}


@router.post("/login/password")
async def login_password(
    payload: FactorLogin,
    request: Request,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return await _factor(LoginStep.PASSWORD, payload, request, db)


@router.post("/login/code")
async def login_code(
    payload: FactorLogin,
    request: Request,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return await _factor(LoginStep.CODE, payload, request, db)


@router.post("/login/totp")
async def login_totp(
    payload: FactorLogin,
    request: Request,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    return await _factor(LoginStep.TOTP, payload, request, db)


@router.post("/login/magic")
async def login_magic(
    payload: MagicLinkLogin,
    request: Request,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Log in with the (correlation token, code) pair from an emailed link."""
    result = await authn_service.login_with_magic_link(
        db,
        correlation_token=payload.c,
        code=payload.code,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {"data": result}


@router.post("/refresh")
async def refresh_session(
    payload: RefreshRequest,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    tokens = await session_service.refresh(db, refresh_token=payload.refresh)
    return {"data": AuthnSession(token=tokens.access_token, refresh=tokens.refresh_token)}


@router.post("/invalidate")
async def invalidate_current_session(
    user: UserContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Log out the session behind the presented bearer token."""
    await session_service.invalidate_session(
        db, session_id=user.session_id, user_id=user.user_id
    )
    return {"data": {"invalidated": True}}


@router.get("")
async def list_my_sessions(
    user: UserContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    sessions = await session_service.list_sessions(db, user_id=user.user_id)
    return {
        "data": [
            SessionRead(
                id=s.id,
                user_agent=s.user_agent,
                ip=s.ip,
                created_at=s.created_at,
                expires_at=s.expires_at,
                invalidated_at=s.invalidated_at,
            )
            for s in sessions
        ]
    }


@router.delete("/{session_id}")
async def revoke_session(
    session_id: str,
    info: ReqInfo = Depends(get_req_info),
    user: UserContext = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Revoke one session. Staff may revoke anyone's; others only their own."""
    owner = None if is_staff(info) else user.user_id
    await session_service.invalidate_session(
        db, session_id=session_id, user_id=owner, reason="revoked"
    )
    return {"data": {"invalidated": True}}
