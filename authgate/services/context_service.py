"""Per-request authorization context (``ReqInfo``).

`build_req_info` turns the raw credentials of one request into an immutable
snapshot that route handlers authorize against. It only reads: resolving a
client, checking its secret and validating a bearer token never write to
the store.

Roles and scopes inside a `ReqInfo` all share the deployment's encoding.
The wire form used to forward a context to downstream services is::

    {"t": 0|1, "c": client_id, "a": authenticated, "r": client_roles,
     "ip": origin_ip, "d": debug_mode,
     "u": {"sid": session_id, "id": user_id, "r": user_roles, "s": scopes|null}}

where ``t`` is the encoding tag and every role/scope value is a list of
names (``t=0``) or an integer mask (``t=1``).
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from authgate.config import settings
from authgate.errors import AuthenticationFailed, EncodingMismatch, Forbidden
from authgate.schemas.auth import Client
from authgate.services.role_config import RoleRegistries, default_encoding, default_registries
from authgate.services.roles import (
    RoleEncoding,
    RoleSet,
    encode_roles,
    from_wire,
    has_all_roles,
    has_any_role,
    role_arg,
)
from authgate.services.secret_service import hash_client_secret, tokens_match
from authgate.services.session_service import validate_access_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserContext:
    session_id: str
    user_id: str
    user_roles: RoleSet
    oauth_scopes: RoleSet | None = None


@dataclass(frozen=True)
class ReqInfo:
    encoding: RoleEncoding
    client_id: str
    client_authenticated: bool
    client_roles: RoleSet
    origin_ip: str
    debug_mode: bool = False
    user: UserContext | None = None

    def __post_init__(self) -> None:
        sets = [self.client_roles]
        if self.user is not None:
            sets.append(self.user.user_roles)
            if self.user.oauth_scopes is not None:
                sets.append(self.user.oauth_scopes)
        for roles in sets:
            if roles.encoding is not self.encoding:
                raise EncodingMismatch(
                    f"{roles.encoding.value} roles in a {self.encoding.value} context"
                )

    def to_wire(self) -> dict[str, Any]:
        user = None
        if self.user is not None:
            user = {
                "sid": self.user.session_id,
                "id": self.user.user_id,
                "r": self.user.user_roles.to_wire(),
                "s": (
                    self.user.oauth_scopes.to_wire()
                    if self.user.oauth_scopes is not None
                    else None
                ),
            }
        return {
            "t": self.encoding.wire_tag,
            "c": self.client_id,
            "a": self.client_authenticated,
            "r": self.client_roles.to_wire(),
            "ip": self.origin_ip,
            "d": self.debug_mode,
            "u": user,
        }

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> ReqInfo:
        """Rebuild a context; any value not matching the tag raises `EncodingMismatch`."""
        encoding = RoleEncoding.from_wire_tag(payload["t"])
        user = None
        raw_user = payload.get("u")
        if raw_user is not None:
            raw_scopes = raw_user.get("s")
            user = UserContext(
                session_id=str(raw_user["sid"]),
                user_id=str(raw_user["id"]),
                user_roles=from_wire(raw_user["r"], encoding),
                oauth_scopes=from_wire(raw_scopes, encoding) if raw_scopes is not None else None,
            )
        return cls(
            encoding=encoding,
            client_id=str(payload["c"]),
            client_authenticated=bool(payload["a"]),
            client_roles=from_wire(payload["r"], encoding),
            origin_ip=str(payload["ip"]),
            debug_mode=bool(payload.get("d", False)),
            user=user,
        )


def _debug_enabled(debug_key: str | None) -> bool:
    if not debug_key or not settings.debug_key:
        return False
    return hmac.compare_digest(debug_key.encode("utf-8"), settings.debug_key.encode("utf-8"))


async def build_req_info(
    db: AsyncSession,
    *,
    client_id: str | None,
    client_secret: str | None,
    bearer_token: str | None,
    origin_ip: str,
    debug_key: str | None = None,
    now: datetime | None = None,
    encoding: RoleEncoding | None = None,
    registries: RoleRegistries | None = None,
) -> ReqInfo:
    """Project one request's credentials into a `ReqInfo`.

    Raises:
        AuthenticationFailed: missing/unknown/deleted client or wrong secret.
        TokenInvalid, TokenExpired, Revoked: bad bearer token.
    """
    encoding = encoding or default_encoding()
    registries = registries or default_registries()

    if not client_id:
        raise AuthenticationFailed("Client identification is required.")

    async with db.begin():
        result = await db.execute(
            select(Client.secret_hash, Client.roles).where(
                Client.id == client_id,  # type: ignore[arg-type]
                Client.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
        row = result.one_or_none()

    if row is None:
        if client_secret:
            tokens_match(hash_client_secret(""), "client-secret", client_secret)
        logger.info("Rejected request from unknown client %s", client_id)
        raise AuthenticationFailed()

    secret_hash, client_role_names = row
    client_authenticated = False
    if client_secret:
        if not tokens_match(secret_hash, "client-secret", client_secret):
            logger.info("Rejected wrong secret for client %s", client_id)
            raise AuthenticationFailed()
        client_authenticated = True

    user = None
    if bearer_token:
        identity = await validate_access_token(db, token=bearer_token, now=now)
        user = UserContext(
            session_id=identity.session_id,
            user_id=identity.user_id,
            user_roles=encode_roles(identity.user_roles, encoding, registries.user_roles),
            oauth_scopes=(
                encode_roles(identity.oauth_scopes, encoding, registries.oauth_scopes)
                if identity.oauth_scopes is not None
                else None
            ),
        )

    return ReqInfo(
        encoding=encoding,
        client_id=client_id,
        client_authenticated=client_authenticated,
        client_roles=encode_roles(client_role_names or (), encoding, registries.client_roles),
        origin_ip=origin_ip,
        debug_mode=_debug_enabled(debug_key),
        user=user,
    )


def require_user(info: ReqInfo) -> UserContext:
    if info.user is None:
        raise AuthenticationFailed("A user session is required.")
    return info.user


def _user_role_args(info: ReqInfo, names: Iterable[str], registries: RoleRegistries | None):
    registries = registries or default_registries()
    return [role_arg(n, info.encoding, registries.user_roles) for n in names]


def require_roles(
    info: ReqInfo, *names: str, registries: RoleRegistries | None = None
) -> UserContext:
    """The user must hold every named role."""
    user = require_user(info)
    if not has_all_roles(user.user_roles, _user_role_args(info, names, registries)):
        raise Forbidden()
    return user


def require_any_role(
    info: ReqInfo, *names: str, registries: RoleRegistries | None = None
) -> UserContext:
    user = require_user(info)
    if not has_any_role(user.user_roles, _user_role_args(info, names, registries)):
        raise Forbidden()
    return user


def has_scope(info: ReqInfo, scope: str, registries: RoleRegistries | None = None) -> bool:
    """True unless the request is restricted to OAuth scopes that exclude ``scope``."""
    if info.user is None:
        return False
    if info.user.oauth_scopes is None:
        return True
    registries = registries or default_registries()
    arg = role_arg(scope, info.encoding, registries.oauth_scopes)
    return has_all_roles(info.user.oauth_scopes, [arg])


def require_scope(info: ReqInfo, scope: str, registries: RoleRegistries | None = None) -> None:
    require_user(info)
    if not has_scope(info, scope, registries):
        raise Forbidden(f"Token is not granted {scope}.")


def require_client_role(
    info: ReqInfo, *names: str, registries: RoleRegistries | None = None
) -> None:
    registries = registries or default_registries()
    args = [role_arg(n, info.encoding, registries.client_roles) for n in names]
    if not has_any_role(info.client_roles, args):
        raise Forbidden()
