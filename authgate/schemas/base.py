"""Base Classes to Use as MixIns Elsewhere in App"""

from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime

from authgate.utils.clock import new_id, utc_now

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class IdMixin(SQLModel):
    id: str = Field(default_factory=new_id, primary_key=True, max_length=32)


class CreatedAtMixin(SQLModel):
    # Naive UTC, like every datetime column here
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime)


class SoftDeleteMixin(SQLModel):
    deleted_at: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime)
