from __future__ import annotations

from typing import Any, Optional, Protocol

from timekeeper.logging import get_logger

logger = get_logger(__name__)


class AuditSink(Protocol):
    def record(self, event: str, *, user_id: Optional[str], **fields: Any) -> None: ...


class LoggingAuditSink:
    """Default sink: security events go to the structured log under ``audit``."""

    def __init__(self) -> None:
        self.logger = get_logger("timekeeper.audit")

    def record(self, event: str, *, user_id: Optional[str], **fields: Any) -> None:
        self.logger.warning(event, audit=True, user_id=user_id, **fields)


def report(sink: Optional[AuditSink], event: str, *, user_id: Optional[str], **fields: Any) -> None:
    """Deliver an audit event without letting a sink failure reach the caller."""
    if sink is None:
        return
    try:
        sink.record(event, user_id=user_id, **fields)
    except Exception as exc:
        logger.warning(
            "audit_sink_failed",
            audit_event=event,
            user_id=user_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
