from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from scoring_queue.queue.errors import (
    ConfigurationFailure,
    TransientJobFailure,
    ValidationError,
)
from scoring_queue.queue.handlers import HandlerRegistry, HandlerResult, JobQueue
from scoring_queue.queue.models import FailureClass, JobCreate, JobStatus, JobView
from scoring_queue.queue.repository import JobRepository
from scoring_queue.queue.worker import QueueWorker, compute_retry_delay
from scoring_queue.storage.common import to_db_datetime
from scoring_queue.storage.sqlmodel_models import Job

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker Retry & Cancellation"),
]


class _ScriptedHandler:
    """Raises the queued errors in order, then succeeds."""

    def __init__(self, job_type: str, errors: list[Exception] | None = None) -> None:
        self.job_type = job_type
        self.errors = list(errors or [])
        self.calls = 0

    def validate_payload(self, payload: dict[str, Any]) -> None:
        if "bad" in payload:
            raise ValidationError("payload.bad is not allowed")

    def run(self, job: JobView) -> HandlerResult:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return HandlerResult(result={"calls": self.calls})


class _ContinuingHandler:
    job_type = "chunked"

    def __init__(self, chunks: int) -> None:
        self.remaining = chunks

    def validate_payload(self, payload: dict[str, Any]) -> None:
        return None

    def run(self, job: JobView) -> HandlerResult:
        self.remaining -= 1
        if self.remaining > 0:
            return HandlerResult(result={"remaining": self.remaining}, continuation=True)
        return HandlerResult(result={"remaining": 0})


class _SelfCancellingHandler:
    job_type = "slow"

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def validate_payload(self, payload: dict[str, Any]) -> None:
        return None

    def run(self, job: JobView) -> HandlerResult:
        self.repository.cancel_job(job_id=job.job_id)
        return HandlerResult(result={"finished": True})


class _ExplodingAuditSink:
    def __init__(self) -> None:
        self.calls = 0

    def record(self, *, action: str, job_id: str, details: dict[str, Any]) -> None:
        self.calls += 1
        raise RuntimeError("audit backend down")


def _worker(repository: JobRepository, *handlers: Any, **kwargs: Any) -> QueueWorker:
    return QueueWorker(
        repository=repository,
        registry=HandlerRegistry(list(handlers)),
        worker_id="worker-test",
        poll_interval_seconds=0,
        **kwargs,
    )


def _make_due(repository: JobRepository, job_id: str) -> None:
    past = to_db_datetime(datetime.now(tz=UTC) - timedelta(seconds=1))
    with Session(repository.engine) as session:
        session.exec(
            sa_update(Job).where(col(Job.job_id) == job_id).values(scheduled_for=past),
        )
        session.commit()


def test_compute_retry_delay_doubles_up_to_cap() -> None:
    delays = [
        compute_retry_delay(attempts=attempts, base_seconds=10, max_seconds=300)
        for attempts in range(1, 8)
    ]
    assert delays == [10.0, 20.0, 40.0, 80.0, 160.0, 300.0, 300.0]


def test_transient_failures_back_off_until_retries_are_exhausted(
    repository: JobRepository,
) -> None:
    handler = _ScriptedHandler("flaky", [TransientJobFailure(f"timeout #{n}") for n in range(5)])
    job = repository.enqueue(JobCreate(job_type="flaky", max_attempts=3))
    worker = _worker(repository, handler, retry_base_seconds=10, retry_max_seconds=300)

    scheduled: list[datetime] = []
    for _ in range(2):
        summary = worker.run_once()
        assert summary.retried == 1
        current = repository.get_job(job_id=job.job_id)
        assert current is not None
        assert current.status == JobStatus.PENDING
        assert current.failure_class == FailureClass.TRANSIENT
        scheduled.append(current.scheduled_for)
        assert worker.run_once().idle_polls == 1
        _make_due(repository, job.job_id)

    assert scheduled[1] - scheduled[0] >= timedelta(seconds=10)

    summary = worker.run_once()
    assert summary.failed == 1
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == failed.max_attempts == 3
    assert failed.failure_class == FailureClass.EXHAUSTED_RETRIES
    assert failed.error_summary == "timeout #2"
    assert handler.calls == 3


def test_transient_failure_then_success(repository: JobRepository) -> None:
    handler = _ScriptedHandler("flaky", [TransientJobFailure("429 too many requests")])
    job = repository.enqueue(JobCreate(job_type="flaky", max_attempts=3))
    worker = _worker(repository, handler, retry_base_seconds=10)

    assert worker.run_once().retried == 1
    _make_due(repository, job.job_id)
    assert worker.run_once().completed == 1

    done = repository.get_job(job_id=job.job_id)
    assert done is not None
    assert done.status == JobStatus.COMPLETED
    assert done.attempts == 2
    assert done.failure_class is None
    assert done.result == {"calls": 2}


@pytest.mark.parametrize(
    ("error", "failure_class"),
    [
        (ConfigurationFailure("System guidelines not found."), FailureClass.CONFIGURATION),
        (ValidationError("payload.record_id must be a non-empty string"), FailureClass.VALIDATION),
        (RuntimeError("unexpected None"), FailureClass.NON_RETRYABLE),
    ],
)
def test_fatal_failures_skip_retry_budget(
    repository: JobRepository,
    error: Exception,
    failure_class: FailureClass,
) -> None:
    handler = _ScriptedHandler("fragile", [error])
    job = repository.enqueue(JobCreate(job_type="fragile", max_attempts=5))

    summary = _worker(repository, handler).run_once()

    assert summary.failed == 1
    assert summary.retried == 0
    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1
    assert failed.failure_class == failure_class
    assert failed.error_summary == str(error)


def test_unknown_job_type_fails_as_validation(repository: JobRepository) -> None:
    job = repository.enqueue(JobCreate(job_type="ghost"))

    assert _worker(repository, _ScriptedHandler("flaky")).run_once().failed == 1

    failed = repository.get_job(job_id=job.job_id)
    assert failed is not None
    assert failed.failure_class == FailureClass.VALIDATION
    assert "Unknown job type: ghost" in (failed.error_summary or "")


def test_continuation_requeues_without_spending_attempts(repository: JobRepository) -> None:
    job = repository.enqueue(JobCreate(job_type="chunked", max_attempts=1))

    summary = _worker(repository, _ContinuingHandler(chunks=3)).run_loop(max_idle_polls=1)

    assert summary.processed == 3
    assert summary.continued == 2
    assert summary.completed == 1
    done = repository.get_job(job_id=job.job_id)
    assert done is not None
    assert done.status == JobStatus.COMPLETED
    assert done.attempts == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events].count("continuation_scheduled") == 2


def test_cancel_during_run_discards_outcome(repository: JobRepository) -> None:
    job = repository.enqueue(JobCreate(job_type="slow"))
    sink = _ExplodingAuditSink()

    summary = _worker(repository, _SelfCancellingHandler(repository), audit_sink=sink).run_once()

    assert summary.cancelled == 1
    assert summary.completed == 0
    assert sink.calls == 1
    cancelled = repository.get_job(job_id=job.job_id)
    assert cancelled is not None
    assert cancelled.status == JobStatus.CANCELLED
    assert cancelled.result == {}


def test_run_loop_respects_max_jobs_and_stop(repository: JobRepository) -> None:
    for _ in range(3):
        repository.enqueue(JobCreate(job_type="echo"))
    worker = _worker(repository, _ScriptedHandler("echo"))

    assert worker.run_loop(max_jobs=2).processed == 2

    worker.request_stop()
    assert worker.run_loop().processed == 0
    assert len(repository.list_recent(status=JobStatus.PENDING)) == 1


def test_worker_recovers_stale_jobs_before_claiming(repository: JobRepository) -> None:
    job = repository.enqueue(JobCreate(job_type="echo", max_attempts=2))
    repository.claim_next(worker_id="worker-crashed")
    with Session(repository.engine) as session:
        session.exec(
            sa_update(Job)
            .where(col(Job.job_id) == job.job_id)
            .values(heartbeat_at=to_db_datetime(datetime.now(tz=UTC) - timedelta(hours=1))),
        )
        session.commit()

    summary = _worker(repository, _ScriptedHandler("echo"), stale_after_seconds=60).run_once()

    assert summary.recovered == 1
    assert summary.completed == 1
    done = repository.get_job(job_id=job.job_id)
    assert done is not None
    assert done.attempts == 2
    assert done.worker_id == "worker-test"


def test_job_queue_validates_before_persisting(repository: JobRepository) -> None:
    queue = JobQueue(
        repository=repository,
        registry=HandlerRegistry([_ScriptedHandler("echo")]),
    )

    with pytest.raises(ValidationError, match="Unknown job type"):
        queue.enqueue("ghost", {})
    with pytest.raises(ValidationError, match="payload.bad"):
        queue.enqueue("echo", {"bad": True})
    with pytest.raises(ValidationError, match="max_attempts"):
        queue.enqueue("echo", {}, max_attempts=0)
    assert repository.list_recent() == []

    job = queue.enqueue("echo", {"value": 1}, priority=3)
    assert queue.get_status(job.job_id).priority == 3


def test_failure_events_carry_classifier_diagnostics(repository: JobRepository) -> None:
    handler = _ScriptedHandler(
        "flaky",
        [RuntimeError("upstream said: rate limit reached") for _ in range(2)],
    )
    job = repository.enqueue(JobCreate(job_type="flaky", max_attempts=2))
    worker = _worker(repository, handler)

    assert worker.run_once().retried == 1
    _make_due(repository, job.job_id)
    assert worker.run_once().failed == 1

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    events = {event.event_type: event.details for event in details.events}
    for event_type in ("retry_scheduled", "failed"):
        assert events[event_type]["classifier_version"] == 1
        assert events[event_type]["reason_code"] == "rate_limit_transient"
        assert events[event_type]["matched_rule"] == "rate_limit_transient"
        assert events[event_type]["matched_pattern"] == "rate limit"
    assert events["retry_scheduled"]["failure_class"] == FailureClass.TRANSIENT.value
    assert events["failed"]["failure_class"] == FailureClass.EXHAUSTED_RETRIES.value
