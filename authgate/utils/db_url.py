"""Database URL handling shared by the app engine and Alembic.

Kept free of `authgate.config` so migrations can run with nothing but
DATABASE_URL in the environment.
"""

from __future__ import annotations

import ssl
from typing import Any, NamedTuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

ASYNC_DRIVERS = {
    "postgres": "postgresql+asyncpg",
    "postgresql": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

# libpq-only query args that asyncpg rejects
_DROPPED_QUERY_ARGS = {"sslmode", "channel_binding"}


class DatabaseTarget(NamedTuple):
    url: str
    connect_args: dict[str, Any]

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


def _async_driver(url: str) -> str:
    try:
        parsed = make_url(url)
    except ArgumentError:
        return url
    driver = parsed.drivername.lower()
    if "+" in driver or driver not in ASYNC_DRIVERS:
        return parsed.render_as_string(hide_password=False)
    return parsed.set(drivername=ASYNC_DRIVERS[driver]).render_as_string(hide_password=False)


def ssl_for_mode(sslmode: str) -> ssl.SSLContext | bool | None:
    """Translate a libpq ``sslmode`` into asyncpg's ``ssl`` connect argument."""
    mode = sslmode.lower()
    if mode == "disable":
        return False
    if mode in {"allow", "prefer"}:
        return None
    context = ssl.create_default_context()
    if mode == "require":
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    elif mode == "verify-ca":
        context.check_hostname = False
    return context


def prepare_database_url(url: str) -> DatabaseTarget:
    """Pick an async driver and move ``sslmode`` out of the query string."""
    url = _async_driver(url)
    if url.startswith("sqlite"):
        return DatabaseTarget(url, {})

    split = urlsplit(url)
    query = parse_qsl(split.query, keep_blank_values=True)
    sslmode = next((value for key, value in query if key == "sslmode"), None)
    kept = [(key, value) for key, value in query if key not in _DROPPED_QUERY_ARGS]
    cleaned = urlunsplit(split._replace(query=urlencode(kept, doseq=True))).rstrip("?")

    connect_args: dict[str, Any] = {}
    if sslmode:
        ssl_arg = ssl_for_mode(sslmode)
        if ssl_arg is not None:
            connect_args["ssl"] = ssl_arg
    return DatabaseTarget(cleaned, connect_args)


def describe_database_url(url: str) -> str:
    """Sanitized ``driver://user@host:port/db`` for logs. Never includes the password."""
    try:
        parsed = make_url(url)
    except ArgumentError:
        return "<unparseable database URL>"
    if parsed.drivername.startswith("sqlite"):
        return f"{parsed.drivername}:///{parsed.database or ':memory:'}"
    port = f":{parsed.port}" if parsed.port else ""
    return (
        f"{parsed.drivername}://{parsed.username or '?'}@{parsed.host or '?'}"
        f"{port}/{parsed.database or '?'}"
    )
