"""Handler registry and enqueue service for the job queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from scoring_queue.queue.audit import AuditSink, notify
from scoring_queue.queue.errors import JobNotFoundError, ValidationError
from scoring_queue.queue.models import JobCreate, JobStatus, JobView
from scoring_queue.queue.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HandlerResult:
    """Outcome reported by a handler for one claimed job."""

    result: dict[str, Any] = field(default_factory=dict)
    continuation: bool = False


class JobHandler(Protocol):
    """Executes jobs of one type."""

    job_type: str

    def validate_payload(self, payload: dict[str, Any]) -> None:
        """Raise ValidationError when the payload does not fit this handler."""

    def run(self, job: JobView) -> HandlerResult:
        """Execute the claimed job."""


class HandlerRegistry:
    """Maps job types to handlers."""

    def __init__(self, handlers: list[JobHandler] | None = None) -> None:
        self._handlers: dict[str, JobHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: JobHandler) -> None:
        if handler.job_type in self._handlers:
            raise ValueError(f"Handler already registered for job type: {handler.job_type}")
        self._handlers[handler.job_type] = handler

    def get(self, job_type: str) -> JobHandler:
        handler = self._handlers.get(job_type)
        if handler is None:
            known = ", ".join(sorted(self._handlers)) or "none"
            raise ValidationError(f"Unknown job type: {job_type} (known: {known})")
        return handler

    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    def validate(self, job_type: str, payload: dict[str, Any]) -> None:
        self.get(job_type).validate_payload(payload)


def require_str(payload: dict[str, Any], key: str) -> str:
    """Read a required non-empty string payload field."""

    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"payload.{key} must be a non-empty string")
    return value.strip()


class JobQueue:
    """Enqueue/cancel/retry use cases with validation and audit notifications."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.audit_sink = audit_sink

    def enqueue(  # noqa: PLR0913
        self,
        job_type: str,
        payload: dict[str, Any],
        *,
        priority: int = 0,
        max_attempts: int = 3,
        scheduled_for: datetime | None = None,
    ) -> JobView:
        """Validate and persist a new pending job."""

        if not isinstance(payload, dict):
            raise ValidationError("payload must be a JSON object")
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")
        self.registry.validate(job_type, payload)

        job = self.repository.enqueue(
            JobCreate(
                job_type=job_type,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts,
                scheduled_for=scheduled_for,
            ),
        )
        logger.info("Enqueued job %s type=%s priority=%s", job.job_id, job_type, priority)
        return job

    def get_status(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id=job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_recent(
        self,
        *,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        return self.repository.list_recent(status=status, job_type=job_type, limit=limit)

    def cancel(self, job_id: str) -> JobView:
        job = self.repository.cancel_job(job_id=job_id)
        logger.info("Cancelled job %s", job_id)
        notify(self.audit_sink, action="cancel", job_id=job_id, details={"job_type": job.job_type})
        return job

    def retry(self, job_id: str) -> JobView:
        job = self.repository.retry_job(job_id=job_id)
        logger.info("Manual retry requested for job %s", job_id)
        notify(self.audit_sink, action="retry", job_id=job_id, details={"job_type": job.job_type})
        return job
