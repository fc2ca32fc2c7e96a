"""Queue worker that claims jobs and dispatches them to registered handlers."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import NamedTuple

from scoring_queue.queue.audit import AuditSink, notify
from scoring_queue.queue.failure_classifier import classify_failure
from scoring_queue.queue.handlers import HandlerRegistry, HandlerResult
from scoring_queue.queue.models import FailureClass, JobStatus, JobView
from scoring_queue.queue.repository import JobRepository
from scoring_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

_MAX_ERROR_SUMMARY_CHARS = 2_000


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    continued: int = 0
    cancelled: int = 0
    idle_polls: int = 0
    recovered: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


def compute_retry_delay(*, attempts: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff: base * 2^(attempts-1), capped."""

    return float(min(max_seconds, base_seconds * (2 ** max(attempts - 1, 0))))


class QueueWorker:
    """Consumes pending jobs and persists their outcome."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: HandlerRegistry,
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        retry_base_seconds: float = 10.0,
        retry_max_seconds: float = 300.0,
        stale_after_seconds: int = 600,
        job_types: list[str] | None = None,
        audit_sink: AuditSink | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.stale_after_seconds = stale_after_seconds
        self.job_types = job_types
        self.audit_sink = audit_sink
        self._stop_requested = False
        self._current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._recover_stale_jobs()
        job = self._claim_job()
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_job_id = job.job_id
        logger.info(
            "Worker %s claimed job %s type=%s attempt=%s/%s",
            self.worker_id,
            job.job_id,
            job.job_type,
            job.attempts,
            job.max_attempts,
        )
        try:
            handler = self.registry.get(job.job_type)
            outcome = handler.run(job)
        except Exception as error:  # noqa: BLE001
            self._handle_error(job=job, error=error, summary=summary)
            return summary
        finally:
            self._current_job_id = None

        self._persist_outcome(job=job, outcome=outcome, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run worker loop until queue is idle, max_jobs is reached or a signal arrives.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def request_stop(self) -> None:
        """Ask the loop to exit after the current job."""

        self._stop_requested = True

    def _claim_job(self) -> JobView | None:
        if self._stop_requested:
            return None
        return self.repository.claim_next(worker_id=self.worker_id, job_types=self.job_types)

    def _recover_stale_jobs(self) -> int:
        if self.stale_after_seconds <= 0:
            return 0
        recovered = self.repository.recover_stale_jobs(
            stale_after=timedelta(seconds=self.stale_after_seconds),
        )
        return len(recovered)

    def _persist_outcome(
        self,
        *,
        job: JobView,
        outcome: HandlerResult,
        summary: WorkerRunSummary,
    ) -> None:
        if outcome.continuation:
            if self.repository.schedule_continuation(job_id=job.job_id, result=outcome.result):
                summary.continued = 1
                logger.info("Job %s needs a continuation; returned to queue", job.job_id)
                return
        elif self.repository.complete_job(job_id=job.job_id, result=outcome.result):
            summary.completed = 1
            logger.info("Job %s completed", job.job_id)
            return
        self._note_lost_transition(job=job, summary=summary)

    def _handle_error(
        self,
        *,
        job: JobView,
        error: Exception,
        summary: WorkerRunSummary,
    ) -> None:
        classification = classify_failure(error)
        error_summary = _error_summary(error)
        logger.warning(
            "Job %s failed on attempt %s/%s: %s (%s)",
            job.job_id,
            job.attempts,
            job.max_attempts,
            error_summary,
            classification.failure_class.value,
        )
        outcome = self._handle_retry_or_fail(
            job=job,
            failure_class=classification.failure_class,
            error_summary=error_summary,
            details=classification.to_event_details(),
        )
        summary.retried = int(outcome.retried)
        summary.failed = int(outcome.failed)
        if not outcome.retried and not outcome.failed:
            self._note_lost_transition(job=job, summary=summary)

    def _handle_retry_or_fail(
        self,
        *,
        job: JobView,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, object] | None = None,
    ) -> RetryOutcome:
        if failure_class == FailureClass.TRANSIENT:
            if job.attempts < job.max_attempts:
                retried = self.repository.schedule_retry(
                    job_id=job.job_id,
                    scheduled_for=self._next_run_at(attempts=job.attempts),
                    failure_class=failure_class,
                    error_summary=error_summary,
                    details=details,
                )
                return RetryOutcome(retried=retried, failed=False)
            failure_class = FailureClass.EXHAUSTED_RETRIES

        failed = self.repository.fail_job(
            job_id=job.job_id,
            failure_class=failure_class,
            error_summary=error_summary,
            details=details,
        )
        return RetryOutcome(retried=False, failed=failed)

    def _next_run_at(self, *, attempts: int) -> datetime:
        delay_seconds = compute_retry_delay(
            attempts=attempts,
            base_seconds=self.retry_base_seconds,
            max_seconds=self.retry_max_seconds,
        )
        return utc_now() + timedelta(seconds=delay_seconds)

    def _note_lost_transition(self, *, job: JobView, summary: WorkerRunSummary) -> None:
        status = self.repository.get_status(job_id=job.job_id)
        if status == JobStatus.CANCELLED:
            summary.cancelled = 1
            logger.info("Job %s was cancelled while running; outcome discarded", job.job_id)
            notify(
                self.audit_sink,
                action="cancel_observed",
                job_id=job.job_id,
                details={"worker_id": self.worker_id},
            )
            return
        logger.warning(
            "Job %s moved to status=%s while running; outcome discarded",
            job.job_id,
            status.value if status is not None else "missing",
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info(
                "Received %s; stopping after job %s",
                name,
                self._current_job_id or "none",
            )
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _error_summary(error: Exception) -> str:
    message = str(error).strip() or error.__class__.__name__
    return message[:_MAX_ERROR_SUMMARY_CHARS]
