"""Identity and session tables.

These SQLModel tables back the client/user authentication core: registered
API clients, human users and their emails, one-time verification codes, and
sessions with their access/refresh tokens. Secrets are only ever stored as
hashes.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Column, DateTime, Index, text
from sqlmodel import Field, SQLModel

from authgate.schemas.base import (
    CreatedAtMixin,
    IdMixin,
    JSONType,
    SoftDeleteMixin,
)
from authgate.utils.clock import utc_now


class VerificationKind(str, Enum):
    LOGIN = "login"
    VERIFICATION = "verification"
    PASSWORD_RESET = "password-reset"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class Organization(IdMixin, CreatedAtMixin, SoftDeleteMixin, table=True):  # type: ignore[call-arg]
    """An arbitrary group that owns clients."""

    __tablename__ = "organizations"

    name: str


class Client(IdMixin, CreatedAtMixin, SoftDeleteMixin, table=True):  # type: ignore[call-arg]
    """A registered API caller (application or service)."""

    __tablename__ = "clients"

    organization_id: str = Field(foreign_key="organizations.id", index=True)
    name: str
    secret_hash: str
    requests_per_second: int = Field(default=10)
    roles: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )


class User(IdMixin, CreatedAtMixin, SoftDeleteMixin, table=True):  # type: ignore[call-arg]
    """Human principal."""

    __tablename__ = "users"

    name: str
    password_hash: str | None = Field(default=None)  # None = passwordless
    roles: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSONType, nullable=False),
    )
    two_factor_enabled: bool = Field(default=False)
    totp_secret_encrypted: str | None = Field(default=None)
    totp_last_step: int | None = Field(default=None)  # newest TOTP counter accepted at login

    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)
    password_changed_at: datetime | None = Field(default=None, sa_type=DateTime)
    last_login_at: datetime | None = Field(default=None, sa_type=DateTime)
    banned_at: datetime | None = Field(default=None, index=True, sa_type=DateTime)


class Email(IdMixin, CreatedAtMixin, table=True):  # type: ignore[call-arg]
    """Email address owned by exactly one user (stored normalized)."""

    __tablename__ = "emails"

    user_id: str = Field(foreign_key="users.id", index=True)
    address: str = Field(unique=True, index=True)
    verified_at: datetime | None = Field(default=None, sa_type=DateTime)


class VerificationCode(IdMixin, CreatedAtMixin, table=True):  # type: ignore[call-arg]
    """Short-lived, single-use code tied to an email (store only a hash)."""

    __tablename__ = "verification_codes"
    __table_args__ = (
        # At most one outstanding code per (email, kind)
        Index(
            "uq_verification_codes_outstanding",
            "email",
            "kind",
            unique=True,
            postgresql_where=text("consumed_at IS NULL AND invalidated_at IS NULL"),
            sqlite_where=text("consumed_at IS NULL AND invalidated_at IS NULL"),
        ),
    )

    code_hash: str = Field(index=True)
    kind: str = Field(index=True)  # VerificationKind value
    email: str = Field(index=True)
    user_supplied_token: str | None = Field(default=None, index=True)
    failed_attempts: int = Field(default=0)
    expires_at: datetime = Field(index=True, sa_type=DateTime)
    consumed_at: datetime | None = Field(default=None, sa_type=DateTime)
    invalidated_at: datetime | None = Field(default=None, sa_type=DateTime)


class LoginAttempt(SQLModel, table=True):  # type: ignore[call-arg]
    """Failure counter for one in-progress login step, keyed by its correlation id."""

    __tablename__ = "login_attempts"

    correlation_id: str = Field(primary_key=True, max_length=64)
    failures: int = Field(default=0)
    expires_at: datetime = Field(index=True, sa_type=DateTime)
    closed_at: datetime | None = Field(default=None, sa_type=DateTime)  # step completed or rejected


class AuthSession(IdMixin, CreatedAtMixin, table=True):  # type: ignore[call-arg]
    """One logged-in device/browser. Outlives the individual tokens under it."""

    __tablename__ = "sessions"

    user_id: str = Field(foreign_key="users.id", index=True)
    user_agent: str | None = Field(default=None)
    ip: str
    expires_at: datetime = Field(index=True, sa_type=DateTime)
    invalidated_at: datetime | None = Field(default=None, index=True, sa_type=DateTime)


class SessionToken(IdMixin, CreatedAtMixin, table=True):  # type: ignore[call-arg]
    """Bearer credential bound to one session (token is hashed)."""

    __tablename__ = "session_tokens"

    kind: str = Field(index=True)  # TokenKind value
    token_hash: str = Field(unique=True, index=True)
    session_id: str = Field(foreign_key="sessions.id", index=True)
    oauth_scopes: list[str] | None = Field(
        default=None,
        sa_column=Column(JSONType, nullable=True),
    )
    expires_at: datetime = Field(index=True, sa_type=DateTime)
    consumed_at: datetime | None = Field(default=None, sa_type=DateTime)
    invalidated_at: datetime | None = Field(default=None, sa_type=DateTime)


class EmailOutbox(SQLModel, table=True):  # type: ignore[call-arg]
    """Outbox-backed email records (verification and login codes)."""

    __tablename__ = "email_outbox"

    id: int | None = Field(default=None, primary_key=True)
    to_email: str = Field(index=True)
    subject: str
    body: str
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)
    sent_at: datetime | None = Field(default=None, sa_type=DateTime)
    provider: str | None = Field(default=None)
