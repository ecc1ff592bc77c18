"""User, email, TOTP and password reset routes."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.errors import Forbidden, ValidationFailed, VerificationCodeInvalid
from authgate.models.accounts import (
    CodeSubmit,
    EmailCreate,
    EmailRead,
    PasswordChange,
    PasswordResetConfirm,
    PasswordResetRequest,
    TotpEnrollment,
    UserCreate,
    UserRead,
)
from authgate.models.authn import AuthnSession
from authgate.routes.deps import (
    client_ip,
    ensure_self_or_staff,
    get_req_info,
    is_staff,
    require_staff,
)
from authgate.schemas.auth import Email, User
from authgate.services import session_service, totp_service, user_service
from authgate.services.context_service import ReqInfo, UserContext, require_user
from authgate.utils.db_async import get_session

router = APIRouter(tags=["users"])


def _user_read(user: User) -> UserRead:
    return UserRead(
        id=user.id,
        name=user.name,
        roles=list(user.roles or []),
        two_factor_enabled=user.two_factor_enabled,
        has_password=user.password_hash is not None,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
        banned_at=user.banned_at,
    )


def _email_read(email: Email) -> EmailRead:
    return EmailRead(
        id=email.id,
        address=email.address,
        verified_at=email.verified_at,
        created_at=email.created_at,
    )


@router.post("/users", status_code=201)
async def sign_up(
    payload: UserCreate,
    request: Request,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Create an account and log it in."""
    user = await user_service.create_user(
        db, name=payload.name, email=payload.email, password=payload.password
    )
    issued = await session_service.create_session(
        db,
        user_id=user.id,
        ip=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return {
        "data": {
            "user": _user_read(user),
            "session": AuthnSession(token=issued.access_token, refresh=issued.refresh_token),
        }
    }


@router.get("/users/{user_id}")
async def read_user(
    user_id: str,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    ensure_self_or_staff(info, user_id)
    user = await user_service.get_user(db, user_id=user_id)
    emails = await user_service.list_emails(db, user_id=user_id)
    return {"data": {**_user_read(user).model_dump(), "emails": [_email_read(e) for e in emails]}}


@router.patch("/users/{user_id}/password")
async def change_password(
    user_id: str,
    payload: PasswordChange,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Set a password; every other session of the user is revoked.

    Users changing their own password must confirm the current one when
    they have one. Staff resetting someone else's do not.
    """
    caller = ensure_self_or_staff(info, user_id)
    acting_on_self = caller.user_id == user_id
    current_password = payload.current_password if acting_on_self else None
    if acting_on_self and current_password is None:
        user = await user_service.get_user(db, user_id=user_id)
        if user.password_hash is not None:
            raise ValidationFailed("Current password is required.")

    revoked = await user_service.set_user_password(
        db,
        user_id=user_id,
        new_password=payload.new_password,
        current_password=current_password,
        keep_session_id=caller.session_id if acting_on_self else None,
    )
    return {"data": {"sessionsRevoked": revoked}}


@router.post("/users/{user_id}/ban")
async def ban(
    user_id: str,
    _staff: UserContext = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await user_service.ban_user(db, user_id=user_id)
    return {"data": {"banned": True}}


@router.post("/users/{user_id}/unban")
async def unban(
    user_id: str,
    _staff: UserContext = Depends(require_staff),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await user_service.unban_user(db, user_id=user_id)
    return {"data": {"banned": False}}


@router.delete("/users/{user_id}")
async def remove_user(
    user_id: str,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    ensure_self_or_staff(info, user_id)
    await user_service.delete_user(db, user_id=user_id)
    return {"data": {"deleted": True}}


@router.post("/users/{user_id}/emails", status_code=201)
async def add_email(
    user_id: str,
    payload: EmailCreate,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    ensure_self_or_staff(info, user_id)
    await user_service.get_user(db, user_id=user_id)
    email = await user_service.add_email(db, user_id=user_id, address=payload.address)
    return {"data": _email_read(email)}


@router.post("/emails/{email_id}/send-verification")
async def send_verification(
    email_id: str,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = require_user(info)
    owner = None if is_staff(info) else user.user_id
    await user_service.send_email_verification(db, email_id=email_id, user_id=owner)
    return {"data": {"sent": True}}


@router.post("/emails/{email_id}/verify")
async def verify(
    email_id: str,
    payload: CodeSubmit,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = require_user(info)
    owner = None if is_staff(info) else user.user_id
    email = await user_service.verify_email(
        db, email_id=email_id, code=payload.code, user_id=owner
    )
    return {"data": _email_read(email)}


@router.post("/users/{user_id}/totp")
async def begin_totp(
    user_id: str,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Start TOTP enrollment for the caller's own account."""
    user = require_user(info)
    if user.user_id != user_id:
        raise Forbidden("TOTP can only be enrolled on your own account.")
    secret, uri = await totp_service.begin_totp_enrollment(db, user_id=user_id)
    return {"data": TotpEnrollment(secret=secret, uri=uri)}


@router.post("/users/{user_id}/totp/confirm")
async def confirm_totp(
    user_id: str,
    payload: CodeSubmit,
    info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    user = require_user(info)
    if user.user_id != user_id:
        raise Forbidden("TOTP can only be enrolled on your own account.")
    if not await totp_service.confirm_totp_enrollment(db, user_id=user_id, code=payload.code):
        raise VerificationCodeInvalid()
    return {"data": {"twoFactorEnabled": True}}


@router.post("/password-reset", status_code=202)
async def password_reset(
    payload: PasswordResetRequest,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Always accepted, so callers cannot learn which emails exist."""
    await user_service.request_password_reset(db, email=payload.email)
    return {"data": {"accepted": True}}


@router.post("/password-reset/confirm")
async def password_reset_confirm(
    payload: PasswordResetConfirm,
    _info: ReqInfo = Depends(get_req_info),
    db: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    await user_service.confirm_password_reset(
        db, email=payload.email, code=payload.code, new_password=payload.new_password
    )
    return {"data": {"reset": True}}
