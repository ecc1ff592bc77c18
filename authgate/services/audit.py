"""Audit event sink.

The core reports security-relevant events here and moves on. Every event is
written to the ``authgate.audit`` logger; extra sinks (a queue publisher, a
test recorder) can be registered and are called synchronously. A failing
sink is logged and never interrupts the auth flow.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from authgate.utils.clock import utc_now

logger = logging.getLogger("authgate.audit")


class AuditEvent(str, Enum):
    LOGIN_SUCCEEDED = "login.succeeded"
    LOGIN_FAILED = "login.failed"
    LOGIN_REJECTED = "login.rejected"
    SESSION_REVOKED = "session.revoked"
    TOKEN_REUSE_DETECTED = "token.reuse_detected"
    CODE_REPLAY_DETECTED = "code.replay_detected"
    CLIENT_SECRET_ROTATED = "client.secret_rotated"
    USER_BANNED = "user.banned"
    PASSWORD_CHANGED = "user.password_changed"


_SEVERITY = {
    AuditEvent.LOGIN_FAILED: logging.WARNING,
    AuditEvent.LOGIN_REJECTED: logging.WARNING,
    AuditEvent.TOKEN_REUSE_DETECTED: logging.ERROR,
    AuditEvent.CODE_REPLAY_DETECTED: logging.ERROR,
}


@dataclass(frozen=True)
class AuditRecord:
    event: AuditEvent
    fields: dict[str, Any]
    at: datetime = field(default_factory=utc_now)

    @property
    def level(self) -> int:
        return _SEVERITY.get(self.event, logging.INFO)


AuditSink = Callable[[AuditRecord], None]

_sinks: list[AuditSink] = []


def register_sink(sink: AuditSink) -> None:
    _sinks.append(sink)


def unregister_sink(sink: AuditSink) -> None:
    if sink in _sinks:
        _sinks.remove(sink)


def emit(event: AuditEvent, **fields: Any) -> AuditRecord:
    """Record an audit event (fire-and-forget from the caller's view)."""
    record = AuditRecord(event=event, fields=fields)
    details = " ".join(f"{k}={v}" for k, v in sorted(fields.items()) if v is not None)
    logger.log(record.level, "%s %s", event.value, details)

    for sink in list(_sinks):
        try:
            sink(record)
        except Exception:
            logger.exception("Audit sink %r failed for %s", sink, event.value)
    return record
