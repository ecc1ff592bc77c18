"""FastAPI dependencies resolving the authorization context of a request."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.errors import Forbidden
from authgate.services.context_service import (
    ReqInfo,
    UserContext,
    build_req_info,
    require_any_role,
    require_user,
)
from authgate.services.role_config import default_registries
from authgate.services.roles import has_any_role, role_arg
from authgate.utils.db_async import get_session

logger = logging.getLogger(__name__)

STAFF_ROLES = ("sysadmin", "admin")


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_req_info(
    request: Request,
    db: AsyncSession = Depends(get_session),
    x_client_id: str | None = Header(default=None),
    x_client_secret: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
    x_debug_key: str | None = Header(default=None),
) -> ReqInfo:
    """Resolve the caller (client and optional user) or raise 401."""
    info = await build_req_info(
        db,
        client_id=x_client_id,
        client_secret=x_client_secret,
        bearer_token=_bearer(authorization),
        origin_ip=client_ip(request),
        debug_key=x_debug_key,
    )
    request.state.req_info = info
    if info.debug_mode:
        logger.info(
            "Debug request %s %s client=%s user=%s",
            request.method,
            request.url.path,
            info.client_id,
            info.user.user_id if info.user else None,
        )
    return info


async def get_current_user(info: ReqInfo = Depends(get_req_info)) -> UserContext:
    return require_user(info)


def is_staff(info: ReqInfo) -> bool:
    if info.user is None:
        return False
    registries = default_registries()
    return has_any_role(
        info.user.user_roles,
        [role_arg(r, info.encoding, registries.user_roles) for r in STAFF_ROLES],
    )


def require_roles(*names: str) -> Callable[..., Awaitable[UserContext]]:
    """FastAPI dependency: the user must hold at least one of ``names`` (raises 401/403)."""

    async def _dependency(info: ReqInfo = Depends(get_req_info)) -> UserContext:
        return require_any_role(info, *names)

    return _dependency


require_staff = require_roles(*STAFF_ROLES)


def ensure_self_or_staff(info: ReqInfo, user_id: str) -> UserContext:
    """Callers may act on their own account; staff may act on any."""
    user = require_user(info)
    if user.user_id != user_id and not is_staff(info):
        raise Forbidden()
    return user
