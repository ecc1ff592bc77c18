"""Signed continuation token for an in-progress login.

The ``state`` handed back with every `StepResponse` is an HS256 JWT carrying
the factor still required, the factors already presented, a correlation id
and its own expiry. Any step can be resumed from it without server-side
session affinity; tampering or expiry is detected by signature/``exp``
checks alone.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

import jwt

from authgate.config import settings
from authgate.errors import StepExpiredOrInvalid
from authgate.utils.clock import utc_now

logger = logging.getLogger(__name__)

STATE_ALGORITHM = "HS256"
STATE_AUDIENCE = "authgate:login-state"


class LoginStep(str, Enum):
    EMAIL = "email"
    PASSWORD = "password"
    CODE = "code"
    TOTP = "totp"


@dataclass(frozen=True)
class LoginState:
    user_id: str
    step: LoginStep
    correlation_id: str
    expires_at: datetime
    factors: tuple[LoginStep, ...] = field(default=())


def _signing_key() -> str:
    return f"login-state:{settings.secret_key}"


def new_correlation_id() -> str:
    return secrets.token_urlsafe(12)


def issue_state(
    *,
    user_id: str,
    step: LoginStep,
    factors: tuple[LoginStep, ...] = (),
    correlation_id: str | None = None,
    now: datetime | None = None,
) -> tuple[str, LoginState]:
    """Sign a new state token. Returns (token, decoded state)."""
    now = now or utc_now()
    state = LoginState(
        user_id=user_id,
        step=step,
        correlation_id=correlation_id or new_correlation_id(),
        expires_at=now + timedelta(minutes=settings.login_state_ttl_minutes),
        factors=factors,
    )
    payload = {
        "sub": user_id,
        "step": step.value,
        "cid": state.correlation_id,
        "done": [f.value for f in factors],
        "aud": STATE_AUDIENCE,
        "iat": now.replace(tzinfo=UTC),
        "exp": state.expires_at.replace(tzinfo=UTC),
    }
    token = jwt.encode(payload, _signing_key(), algorithm=STATE_ALGORITHM)
    return token, state


def read_state(token: str, *, now: datetime | None = None) -> LoginState:
    """Verify and decode a state token.

    Raises:
        StepExpiredOrInvalid: bad signature, wrong audience, malformed or expired.
    """
    try:
        payload = jwt.decode(
            token,
            _signing_key(),
            algorithms=[STATE_ALGORITHM],
            audience=STATE_AUDIENCE,
            options={
                "require": ["exp", "sub", "aud"],
                "verify_exp": False,
                "verify_iat": False,
            },
        )
        step = LoginStep(payload["step"])
        factors = tuple(LoginStep(f) for f in payload.get("done", []))
        correlation_id = str(payload["cid"])
        expires_at = datetime.fromtimestamp(int(payload["exp"]), UTC).replace(tzinfo=None)
    except (jwt.InvalidTokenError, KeyError, ValueError, TypeError) as exc:
        logger.info("Rejected login state token: %s", exc)
        raise StepExpiredOrInvalid("Login step is invalid. Start again.") from None

    # Expiry is checked against the injected clock rather than PyJWT's wall clock
    if expires_at <= (now or utc_now()):
        raise StepExpiredOrInvalid("Login step has expired. Start again.")

    return LoginState(
        user_id=str(payload["sub"]),
        step=step,
        correlation_id=correlation_id,
        expires_at=expires_at,
        factors=factors,
    )
