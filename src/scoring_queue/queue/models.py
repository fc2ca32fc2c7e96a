"""Domain models for the persistent job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.PROCESSING})
TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    WORKER_TIMEOUT = "worker_timeout"
    EXHAUSTED_RETRIES = "exhausted_retries"


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a job."""

    job_type: str
    payload: dict[str, Any] = field(default_factory=dict)
    job_id: str | None = None
    priority: int = 0
    max_attempts: int = 3
    scheduled_for: datetime | None = None
    scope_key: str | None = None
    total_units: int = 0
    snapshot_at: datetime | None = None


@dataclass(slots=True)
class JobView:
    """Readable job snapshot for CLI, worker and orchestrator logic."""

    job_id: str
    job_type: str
    scope_key: str | None
    payload: dict[str, Any]
    priority: int
    status: JobStatus
    attempts: int
    max_attempts: int
    scheduled_for: datetime
    started_at: datetime | None
    heartbeat_at: datetime | None
    completed_at: datetime | None
    worker_id: str | None
    failure_class: FailureClass | None
    error_summary: str | None
    result: dict[str, Any]
    total_units: int
    processed_count: int
    error_count: int
    snapshot_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress_percent(self) -> int:
        """Batch progress on a 0-100 scale."""

        if self.total_units <= 0:
            return 100 if self.status == JobStatus.COMPLETED else 0
        return min(100, (self.processed_count * 100) // self.total_units)


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its event stream."""

    job: JobView
    events: list[JobEventView]


@dataclass(slots=True)
class StaleRecovery:
    """One stale processing job reclaimed by the recovery sweep."""

    job_id: str
    job_type: str
    attempts: int
    max_attempts: int
    status_to: JobStatus
