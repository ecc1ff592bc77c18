"""Typed failures raised by the authentication core.

Services raise these; the HTTP boundary (`authgate.main`) renders them.
Credential and identity failures all collapse to one generic
"authentication-failed" response there so callers cannot enumerate
accounts. Only step-progression and authorization failures keep a distinct
code on the wire.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for caller-facing auth failures."""

    code = "auth-error"
    status_code = 400

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class NotFound(AuthError):
    code = "not-found"
    status_code = 404


class Unauthenticated(AuthError):
    """Missing or invalid credential."""

    code = "authentication-failed"
    status_code = 401


class AuthenticationFailed(Unauthenticated):
    """Uniform failure for unknown, banned, deleted or wrong-secret identities."""


class InvalidFactor(Unauthenticated):
    """Wrong password/code/TOTP on a login step that may still be retried."""

    code = "invalid-factor"

    def __init__(self, attempts_remaining: int, detail: str | None = None) -> None:
        super().__init__(detail)
        self.attempts_remaining = attempts_remaining


class TokenInvalid(Unauthenticated):
    pass


class TokenExpired(Unauthenticated):
    pass


class Revoked(Unauthenticated):
    """The session behind a token was explicitly invalidated."""


class TokenReused(Unauthenticated):
    """A consumed refresh token was presented again; the session is now revoked."""


class VerificationCodeInvalid(Unauthenticated):
    """Verification code is expired, consumed, invalidated or wrong."""

    code = "invalid-code"
    status_code = 400


class StepExpiredOrInvalid(AuthError):
    """Stale or tampered login `state`, or attempts exhausted. Restart at step 1."""

    code = "step-expired"
    status_code = 400


class Forbidden(AuthError):
    """Valid identity without the required role or scope."""

    code = "forbidden"
    status_code = 403


class ValidationFailed(AuthError):
    code = "invalid-request"
    status_code = 422


class EncodingMismatch(TypeError):
    """A bitmask and a string-set role value were compared. Programming error."""


class UnknownRole(ValueError):
    """A role name has no configured bit in bitmask mode."""
