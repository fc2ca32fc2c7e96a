"""Best-effort audit notifications for job lifecycle events."""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    """Receiver of job lifecycle notifications (start, cancel, retry)."""

    def record(self, *, action: str, job_id: str, details: dict[str, Any]) -> None:
        """Record one lifecycle action."""


class LoggingAuditSink:
    """Default sink that writes audit lines to the application log."""

    def record(self, *, action: str, job_id: str, details: dict[str, Any]) -> None:
        logger.info("audit action=%s job_id=%s details=%s", action, job_id, details)


def notify(sink: AuditSink | None, *, action: str, job_id: str, details: dict[str, Any]) -> bool:
    """Deliver an audit event; a failing sink never affects the job."""

    if sink is None:
        return False
    try:
        sink.record(action=action, job_id=job_id, details=details)
    except Exception:  # noqa: BLE001
        logger.warning("Audit sink failed for action=%s job_id=%s", action, job_id, exc_info=True)
        return False
    return True
