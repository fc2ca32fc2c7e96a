"""Batch orchestrator: resumable, cancellable passes over a record scope."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, NoReturn

from scoring_queue.batch.backend.adapter import CapabilityAdapter
from scoring_queue.batch.backend.base import CapabilityKind, ItemOutcome
from scoring_queue.batch.records import BatchKind, RecordRepository, WorkItem
from scoring_queue.queue.audit import AuditSink, notify
from scoring_queue.queue.errors import (
    ConfigurationFailure,
    EmptyResultFailure,
    TransientJobFailure,
    ValidationError,
)
from scoring_queue.queue.handlers import HandlerResult, JobHandler, require_str
from scoring_queue.queue.models import JobCreate, JobStatus, JobView
from scoring_queue.queue.repository import JobRepository
from scoring_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

EMBED_RECORD_JOB_TYPE = "embed_record"
ALIGNMENT_SYSTEM_PROMPT = "You are an expert AI Alignment Lead and Quality Assurance Analyst."
_PAGE_SIZE = 50


class BatchOutcome(str, Enum):
    """How a batch invocation ended, as reported to the caller."""

    FRESH = "fresh"
    CACHED = "cached"
    CAPPED = "capped"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class BatchStart:
    """Result of a start request for one scope."""

    job: JobView
    created: bool
    outcome: BatchOutcome | None = None

    @property
    def message(self) -> str:
        if self.outcome == BatchOutcome.CACHED:
            return "All records in scope already have outcomes; reused prior analysis."
        if not self.created:
            return f"Batch already active for scope {self.job.scope_key}; reusing job."
        return f"Batch queued with {self.job.total_units} records."


def scope_key_for(kind: BatchKind, environment: str) -> str:
    return f"{kind.value}:{environment}"


def build_alignment_prompt(*, item: WorkItem, guidelines: str) -> str:
    """Prompt asking for a guideline alignment evaluation of one record."""

    subject = "prompt" if item.record_type == "task" else "feedback"
    return (
        f"Evaluate the following {subject} against the provided project guidelines.\n\n"
        f"### PROJECT GUIDELINES\n{guidelines}\n\n"
        f"### CONTENT TO EVALUATE\n{item.content}\n\n"
        "Please provide:\n"
        "1. **Guideline Alignment Score (0-100)**: How well does this follow the guidelines?\n"
        "2. **Detailed Analysis**: A breakdown of which guidelines were followed and which "
        "were missed.\n"
        "3. **Suggested Improvements**: How could this be modified to better align with "
        "the guidelines?\n\n"
        "Return the evaluation in a structured format with clear headings."
    )


class BatchOrchestrator:
    """Starts batch jobs per scope and executes them one unit at a time."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        records: RecordRepository,
        adapter: CapabilityAdapter,
        max_units_per_invocation: int = 50,
        max_seconds_per_invocation: float = 240.0,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.records = records
        self.adapter = adapter
        self.max_units_per_invocation = max_units_per_invocation
        self.max_seconds_per_invocation = max_seconds_per_invocation
        self.audit_sink = audit_sink
        self._clock = clock

    def start(
        self,
        kind: BatchKind,
        environment: str,
        *,
        priority: int = 0,
        max_attempts: int = 3,
    ) -> BatchStart:
        """Start a batch for a scope, or return the job already working on it."""

        environment = environment.strip()
        if not environment:
            raise ValidationError("environment must be a non-empty string")
        if max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")
        scope_key = scope_key_for(kind, environment)

        active = self.repository.find_active_job(job_type=kind.job_type, scope_key=scope_key)
        if active is not None:
            self._note_reused(active)
            return BatchStart(job=active, created=False)

        snapshot_at = utc_now()
        total_units = self.records.count_outstanding(
            kind=kind,
            environment=environment,
            snapshot_at=snapshot_at,
        )
        payload = JobCreate(
            job_type=kind.job_type,
            payload={"kind": kind.value, "environment": environment},
            priority=priority,
            max_attempts=max_attempts,
            scope_key=scope_key,
            total_units=total_units,
            snapshot_at=snapshot_at,
        )
        if total_units == 0:
            job = self.repository.record_completed(
                payload,
                result={
                    "outcome": BatchOutcome.CACHED.value,
                    "message": "No outstanding records; scope already fully processed.",
                    "total_units": 0,
                    "processed_count": 0,
                    "error_count": 0,
                },
            )
            logger.info(
                "Scope %s has nothing outstanding; recorded cached job %s",
                scope_key,
                job.job_id,
            )
            return BatchStart(job=job, created=True, outcome=BatchOutcome.CACHED)

        job, created = self.repository.enqueue_scoped(
            payload,
            count_units=self.records.outstanding_counter(
                kind=kind,
                environment=environment,
                snapshot_at=snapshot_at,
            ),
        )
        if not created:
            self._note_reused(job)
            return BatchStart(job=job, created=False)

        self.repository.add_event(
            job_id=job.job_id,
            event_type="batch_started",
            details={"scope_key": scope_key, "total_units": job.total_units},
        )
        notify(
            self.audit_sink,
            action="batch_start",
            job_id=job.job_id,
            details={"scope_key": scope_key, "total_units": job.total_units},
        )
        logger.info(
            "Started batch %s for %s with %s units",
            job.job_id,
            scope_key,
            job.total_units,
        )
        return BatchStart(job=job, created=True)

    def run(self, job: JobView) -> HandlerResult:
        """Process outstanding units of a claimed batch job until done, capped or cancelled."""

        kind = BatchKind(require_str(job.payload, "kind"))
        environment = require_str(job.payload, "environment")
        if job.snapshot_at is None:
            raise ValidationError(f"Batch job {job.job_id} has no snapshot timestamp")

        if self.repository.get_status(job_id=job.job_id) != JobStatus.PROCESSING:
            logger.info("Batch %s no longer processing at invocation start", job.job_id)
            return self._cancelled_result(processed_now=0)

        context = self._build_context(kind)
        deadline = self._clock() + self.max_seconds_per_invocation
        processed_now = 0
        while True:
            items = self.records.list_outstanding(
                kind=kind,
                environment=environment,
                snapshot_at=job.snapshot_at,
                job_id=job.job_id,
                limit=_PAGE_SIZE,
            )
            if not items:
                return self._finished_result(job_id=job.job_id, processed_now=processed_now)

            for item in items:
                # The first unit always runs so every invocation makes progress.
                if processed_now > 0 and (
                    processed_now >= self.max_units_per_invocation
                    or self._clock() >= deadline
                ):
                    return self._capped_result(job=job, kind=kind, processed_now=processed_now)
                if self.repository.get_status(job_id=job.job_id) != JobStatus.PROCESSING:
                    logger.info(
                        "Batch %s cancelled after %s units this invocation",
                        job.job_id,
                        processed_now,
                    )
                    return self._cancelled_result(processed_now=processed_now)
                if not self._process_item(job=job, kind=kind, item=item, context=context):
                    return self._cancelled_result(processed_now=processed_now)
                processed_now += 1

    def handlers(self) -> list[JobHandler]:
        """Job handlers backed by this orchestrator."""

        return [
            BatchJobHandler(orchestrator=self, kind=BatchKind.ALIGNMENT),
            BatchJobHandler(orchestrator=self, kind=BatchKind.EMBEDDING),
            EmbedRecordHandler(
                repository=self.repository,
                records=self.records,
                adapter=self.adapter,
            ),
        ]

    def _process_item(
        self,
        *,
        job: JobView,
        kind: BatchKind,
        item: WorkItem,
        context: dict[str, Any],
    ) -> bool:
        if kind == BatchKind.ALIGNMENT:
            outcome = self.adapter.invoke(
                CapabilityKind.COMPLETION,
                build_alignment_prompt(item=item, guidelines=context["guidelines"]),
                {"system_prompt": ALIGNMENT_SYSTEM_PROMPT},
            )
        else:
            outcome = self.adapter.invoke(CapabilityKind.EMBEDDING, item.content)

        if outcome.ok and outcome.value is not None:
            writer = self.records.stage_outcome(
                kind=kind,
                record_id=item.record_id,
                value=outcome.value,
            )
        else:
            writer = self.records.stage_failure(
                job_id=job.job_id,
                record_id=item.record_id,
                error_kind=outcome.failure_kind or "unknown",
                error_message=outcome.error,
            )
        return self.repository.record_item_outcome(
            job_id=job.job_id,
            failed=not outcome.ok,
            write=writer,
        )

    def _build_context(self, kind: BatchKind) -> dict[str, Any]:
        if kind != BatchKind.ALIGNMENT:
            return {}
        guidelines = self.records.get_guidelines()
        if guidelines is None:
            raise ConfigurationFailure(
                "System guidelines not found. Store them with `scoring-queue settings "
                "set-guidelines` before starting an alignment batch.",
            )
        return {"guidelines": guidelines}

    def _finished_result(self, *, job_id: str, processed_now: int) -> HandlerResult:
        current = self.repository.get_job(job_id=job_id)
        processed = current.processed_count if current is not None else processed_now
        errors = current.error_count if current is not None else 0
        total = current.total_units if current is not None else processed
        return HandlerResult(
            result={
                "outcome": BatchOutcome.FRESH.value,
                "message": f"Processed {processed}/{total} records ({errors} failed).",
                "total_units": total,
                "processed_count": processed,
                "error_count": errors,
                "processed_this_invocation": processed_now,
            },
        )

    def _capped_result(self, *, job: JobView, kind: BatchKind, processed_now: int) -> HandlerResult:
        remaining = self.records.count_outstanding(
            kind=kind,
            environment=str(job.payload["environment"]),
            snapshot_at=job.snapshot_at or utc_now(),
            job_id=job.job_id,
        )
        logger.info(
            "Batch %s hit the per-invocation cap after %s units; %s remaining",
            job.job_id,
            processed_now,
            remaining,
        )
        return HandlerResult(
            result={
                "outcome": BatchOutcome.CAPPED.value,
                "message": (
                    f"Processed {processed_now} records this invocation; "
                    f"continuation required ({remaining} remaining)."
                ),
                "continuation_required": True,
                "remaining": remaining,
                "processed_this_invocation": processed_now,
            },
            continuation=True,
        )

    def _cancelled_result(self, *, processed_now: int) -> HandlerResult:
        return HandlerResult(
            result={
                "outcome": BatchOutcome.CANCELLED.value,
                "processed_this_invocation": processed_now,
            },
        )

    def _note_reused(self, job: JobView) -> None:
        self.repository.add_event(
            job_id=job.job_id,
            event_type="batch_reused",
            details={"scope_key": job.scope_key},
        )
        logger.info("Scope %s already has active job %s", job.scope_key, job.job_id)


class BatchJobHandler:
    """Queue handler that delegates batch jobs to the orchestrator."""

    def __init__(self, *, orchestrator: BatchOrchestrator, kind: BatchKind) -> None:
        self.orchestrator = orchestrator
        self.kind = kind
        self.job_type = kind.job_type

    def validate_payload(self, payload: dict[str, Any]) -> None:
        raise ValidationError(
            f"{self.job_type} jobs own a record scope; "
            "start them with `scoring-queue batch start`.",
        )

    def run(self, job: JobView) -> HandlerResult:
        return self.orchestrator.run(job)


class EmbedRecordHandler:
    """Single-record embedding job; provider failures are job-level.

    A record whose environment has an active embedding batch belongs to that
    batch. The job backs off with a transient failure instead of writing, and a
    later attempt reports the batch's embedding as cached.
    """

    job_type = EMBED_RECORD_JOB_TYPE

    def __init__(
        self,
        *,
        repository: JobRepository,
        records: RecordRepository,
        adapter: CapabilityAdapter,
    ) -> None:
        self.repository = repository
        self.records = records
        self.adapter = adapter

    def validate_payload(self, payload: dict[str, Any]) -> None:
        require_str(payload, "record_id")

    def run(self, job: JobView) -> HandlerResult:
        record_id = require_str(job.payload, "record_id")
        record = self.records.get_record(record_id=record_id)
        if record is None:
            raise ValidationError(f"Record not found: {record_id}")
        if record.embedding is not None:
            return _cached_embedding(record_id)

        scope_key = scope_key_for(BatchKind.EMBEDDING, record.environment)
        self._defer_to_active_batch(record_id=record_id, scope_key=scope_key)

        outcome = self.adapter.invoke(CapabilityKind.EMBEDDING, record.content)
        if not outcome.ok or outcome.value is None:
            _raise_item_failure(outcome)
        written = self.records.write_unowned_outcome(
            kind=BatchKind.EMBEDDING,
            record_id=record_id,
            value=outcome.value,
            owner_job_type=BatchKind.EMBEDDING.job_type,
            scope_key=scope_key,
        )
        if not written:
            current = self.records.get_record(record_id=record_id)
            if current is not None and current.embedding is not None:
                return _cached_embedding(record_id)
            self._defer_to_active_batch(record_id=record_id, scope_key=scope_key)
            raise TransientJobFailure(f"Embedding for record {record_id} was not stored")
        return HandlerResult(
            result={
                "outcome": BatchOutcome.FRESH.value,
                "record_id": record_id,
                "dimensions": len(outcome.value),
            },
        )

    def _defer_to_active_batch(self, *, record_id: str, scope_key: str) -> None:
        owner = self.repository.find_active_job(
            job_type=BatchKind.EMBEDDING.job_type,
            scope_key=scope_key,
        )
        if owner is not None:
            raise TransientJobFailure(
                f"Record {record_id} is owned by active batch {owner.job_id}; try again later",
            )


def _cached_embedding(record_id: str) -> HandlerResult:
    return HandlerResult(result={"outcome": BatchOutcome.CACHED.value, "record_id": record_id})


def _raise_item_failure(outcome: ItemOutcome) -> NoReturn:
    message = outcome.error or "capability call failed"
    if outcome.failure_kind == EmptyResultFailure.kind:
        raise EmptyResultFailure(message)
    raise TransientJobFailure(message)
