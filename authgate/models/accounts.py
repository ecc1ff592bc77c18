"""Request and response models for user, email and client administration."""

from datetime import datetime
from typing import List, Optional

from pydantic import Field as PydField
from sqlmodel import SQLModel


class UserCreate(SQLModel):
    name: str = PydField(min_length=1, max_length=200)
    email: str = PydField(min_length=3, max_length=320)
    password: Optional[str] = PydField(default=None, max_length=1024)


class UserRead(SQLModel):
    id: str
    name: str
    roles: List[str]
    two_factor_enabled: bool
    has_password: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None
    banned_at: Optional[datetime] = None


class PasswordChange(SQLModel):
    new_password: str = PydField(min_length=1, max_length=1024)
    current_password: Optional[str] = None


class PasswordResetRequest(SQLModel):
    email: str = PydField(min_length=3, max_length=320)


class PasswordResetConfirm(SQLModel):
    email: str = PydField(min_length=3, max_length=320)
    code: str
    new_password: str = PydField(min_length=1, max_length=1024)


class EmailCreate(SQLModel):
    address: str = PydField(min_length=3, max_length=320)


class EmailRead(SQLModel):
    id: str
    address: str
    verified_at: Optional[datetime] = None
    created_at: datetime


class CodeSubmit(SQLModel):
    code: str = PydField(min_length=1, max_length=32)


class TotpEnrollment(SQLModel):
    secret: str
    uri: str


class OrganizationCreate(SQLModel):
    name: str = PydField(min_length=1, max_length=200)


class OrganizationRead(SQLModel):
    id: str
    name: str
    created_at: datetime


class ClientCreate(SQLModel):
    name: str = PydField(min_length=1, max_length=200)
    roles: List[str] = PydField(default_factory=list)
    requests_per_second: int = PydField(default=10, ge=1)


class ClientRead(SQLModel):
    id: str
    organization_id: str
    name: str
    roles: List[str]
    requests_per_second: int
    created_at: datetime


class ClientSecret(SQLModel):
    """Plaintext secret; returned exactly once at creation or rotation."""

    client: ClientRead
    secret: str
