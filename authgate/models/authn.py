"""Request and response models for the login flow and session endpoints."""

from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import Field as PydField
from sqlmodel import SQLModel

from authgate.services.login_state import LoginStep


class StepResponse(SQLModel):
    """Intermediate login step: the caller must present ``step`` next."""

    t: Literal["step"] = "step"
    step: LoginStep
    code: str  # challenge/correlation id, not a secret
    state: str


class AuthnSession(SQLModel):
    """Completed login (or refresh): a token pair."""

    t: Literal["session"] = "session"
    token: str
    refresh: str


AuthnResponse = Union[StepResponse, AuthnSession]


class EmailLogin(SQLModel):
    email: str = PydField(min_length=3, max_length=320)


class FactorLogin(SQLModel):
    value: str = PydField(min_length=1, max_length=1024)
    state: str


class MagicLinkLogin(SQLModel):
    c: str  # correlation token from the emailed link
    code: str


class RefreshRequest(SQLModel):
    refresh: str


class SessionRead(SQLModel):
    id: str
    user_agent: Optional[str] = None
    ip: str
    created_at: datetime
    expires_at: datetime
    invalidated_at: Optional[datetime] = None
