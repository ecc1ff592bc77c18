"""Time and identifier helpers shared by the auth services."""

from __future__ import annotations

import secrets
from datetime import UTC, datetime


def utc_now() -> datetime:
    """Return the current UTC time as a naive datetime (the storage convention)."""
    return datetime.now(UTC).replace(tzinfo=None)


def new_id() -> str:
    """Generate an opaque, URL-safe primary key."""
    return secrets.token_hex(12)
