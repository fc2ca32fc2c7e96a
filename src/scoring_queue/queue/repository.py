"""Persistent job store and claim protocol backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from scoring_queue.queue.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    ScopeBusyError,
)
from scoring_queue.queue.metrics import QueueStatsSnapshot, build_queue_stats
from scoring_queue.queue.models import (
    ACTIVE_STATUSES,
    FailureClass,
    JobCreate,
    JobDetails,
    JobEventView,
    JobStatus,
    JobView,
    StaleRecovery,
)
from scoring_queue.storage.alembic_runner import upgrade_head
from scoring_queue.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json_object,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scoring_queue.storage.sqlmodel_models import Job, JobEvent

logger = logging.getLogger(__name__)

WORKER_TIMEOUT_MESSAGE = "worker timeout"

SessionWriter = Callable[[Session], None]
SessionCounter = Callable[[Session], int]


class JobRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a pending job.

        Raises ScopeBusyError when the job carries a scope key that already
        has an active job of the same type.
        """

        view, created = self.enqueue_scoped(payload)
        if not created:
            raise ScopeBusyError(scope_key=payload.scope_key or "", job_id=view.job_id)
        return view

    def enqueue_scoped(
        self,
        payload: JobCreate,
        *,
        count_units: SessionCounter | None = None,
    ) -> tuple[JobView, bool]:
        """Create a pending job or return the active job that owns its scope.

        `count_units` runs after the insert, while this transaction holds the
        SQLite write lock, and its result replaces `payload.total_units`.
        """

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = _new_job_row(
                payload,
                job_id=job_id,
                status=JobStatus.PENDING,
                now=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                if payload.scope_key is None:
                    raise
                existing = self.find_active_job(
                    job_type=payload.job_type,
                    scope_key=payload.scope_key,
                )
                if existing is None:
                    raise
                logger.info(
                    "Scope %s already owned by active job %s",
                    payload.scope_key,
                    existing.job_id,
                )
                return existing, False
            if count_units is not None:
                row.total_units = count_units(session)
                session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.PENDING,
                details={
                    "job_type": payload.job_type,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                    "scope_key": payload.scope_key,
                    "total_units": row.total_units,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row), True

    def record_completed(self, payload: JobCreate, *, result: dict[str, Any]) -> JobView:
        """Write a job that is already complete, used for no-op batch starts."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = _new_job_row(payload, job_id=job_id, status=JobStatus.COMPLETED, now=now)
            row.completed_at = to_db_datetime(now)
            row.result_json = dump_json(result)
            session.add(row)
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=None,
                status_to=JobStatus.COMPLETED,
                details=result,
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def claim_next(
        self,
        *,
        worker_id: str,
        job_types: list[str] | None = None,
    ) -> JobView | None:
        """Atomically claim one pending job whose schedule is due."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                statement = select(Job).where(
                    Job.status == JobStatus.PENDING.value,
                    col(Job.scheduled_for) <= to_db_datetime(now),
                )
                if job_types:
                    statement = statement.where(col(Job.job_type).in_(job_types))
                candidate = session.exec(
                    statement.order_by(
                        col(Job.priority).desc(),
                        col(Job.scheduled_for).asc(),
                        col(Job.created_at).asc(),
                    ).limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempts=col(Job.attempts) + 1,
                        started_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        completed_at=None,
                        worker_id=worker_id,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Lost claim race for job %s, trying next", candidate.job_id)
                    continue

                claimed = session.exec(select(Job).where(Job.job_id == candidate.job_id)).one()
                session.refresh(claimed)
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempts": claimed.attempts},
                )
                session.commit()
                return _to_job_view(claimed)

    def touch(self, *, job_id: str) -> bool:
        """Refresh heartbeat for a processing job."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_item_outcome(
        self,
        *,
        job_id: str,
        failed: bool,
        write: SessionWriter | None = None,
    ) -> bool:
        """Advance batch counters and persist the unit outcome in one transaction.

        Returns False without writing anything when the job is no longer
        processing, e.g. it was cancelled while the unit was in flight.
        """

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    processed_count=col(Job.processed_count) + 1,
                    error_count=col(Job.error_count) + (1 if failed else 0),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            if write is not None:
                write(session)
            session.commit()
            return True

    def complete_job(self, *, job_id: str, result: dict[str, Any]) -> bool:
        """Mark a processing job as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    failure_class=None,
                    error_summary=None,
                    result_json=dump_json(result),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details=result,
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Mark a processing job as terminally failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    result_json=dump_json(
                        {"error": error_summary, "failure_class": failure_class.value},
                    ),
                    completed_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.FAILED,
                details={
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def schedule_retry(
        self,
        *,
        job_id: str,
        scheduled_for: datetime,
        failure_class: FailureClass,
        error_summary: str,
        details: dict[str, Any] | None = None,
    ) -> bool:
        """Return a processing job to pending with a backoff delay."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    scheduled_for=to_db_datetime(scheduled_for),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={
                    "scheduled_for": to_utc_aware_datetime(scheduled_for).isoformat(),
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def schedule_continuation(self, *, job_id: str, result: dict[str, Any]) -> bool:
        """Hand a capped batch back to the queue without spending retry budget."""

        now = utc_now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == JobStatus.PROCESSING.value,
                    col(Job.attempts) > 0,
                )
                .values(
                    status=JobStatus.PENDING.value,
                    attempts=col(Job.attempts) - 1,
                    scheduled_for=to_db_datetime(now),
                    started_at=None,
                    heartbeat_at=None,
                    worker_id=None,
                    result_json=dump_json(result),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="continuation_scheduled",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details=result,
            )
            session.commit()
            return True

    def cancel_job(self, *, job_id: str) -> JobView:
        """Cancel a pending or processing job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in ACTIVE_STATUSES:
                raise InvalidTransitionError(f"Job cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job_id,
                    col(Job.status) == previous.value,
                )
                .values(
                    status=JobStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Job state changed concurrently while cancelling; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="cancelled",
                status_from=previous,
                status_to=JobStatus.CANCELLED,
                details={},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def retry_job(self, *, job_id: str) -> JobView:
        """Manual operator retry of a failed job; the attempt budget starts over."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, job_id=job_id)
            if row.status != JobStatus.FAILED.value:
                raise InvalidTransitionError(
                    f"Only failed jobs can be retried manually, got {row.status}.",
                )
            previous_attempts = row.attempts
            job_type, scope_key = row.job_type, row.scope_key or ""
            try:
                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == job_id,
                        col(Job.status) == JobStatus.FAILED.value,
                    )
                    .values(
                        status=JobStatus.PENDING.value,
                        attempts=0,
                        scheduled_for=to_db_datetime(now),
                        started_at=None,
                        heartbeat_at=None,
                        completed_at=None,
                        worker_id=None,
                        failure_class=None,
                        error_summary=None,
                        result_json=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
            except IntegrityError as error:
                session.rollback()
                active = self.find_active_job(job_type=job_type, scope_key=scope_key)
                raise ScopeBusyError(
                    scope_key=scope_key,
                    job_id=active.job_id if active is not None else "unknown",
                ) from error
            if result.rowcount != 1:
                session.rollback()
                raise InvalidTransitionError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=JobStatus.FAILED,
                status_to=JobStatus.PENDING,
                details={"previous_attempts": previous_attempts},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def recover_stale_jobs(self, *, stale_after: timedelta) -> list[StaleRecovery]:
        """Reclaim processing jobs whose worker stopped heartbeating.

        The interrupted run was already counted when it was claimed, so a
        recovered job keeps its attempts; exhausted jobs fail as worker timeouts.
        """

        now = utc_now()
        cutoff = to_db_datetime(now - stale_after)
        recovered: list[StaleRecovery] = []
        with Session(self.engine) as session:
            stale_rows = session.exec(
                select(Job).where(
                    Job.status == JobStatus.PROCESSING.value,
                    col(Job.heartbeat_at) < cutoff,
                ),
            ).all()
            for row in stale_rows:
                previous_worker = row.worker_id
                exhausted = row.attempts >= row.max_attempts
                status_to = JobStatus.FAILED if exhausted else JobStatus.PENDING
                values: dict[str, Any] = {
                    "status": status_to.value,
                    "worker_id": None,
                    "heartbeat_at": None,
                    "updated_at": to_db_datetime(now),
                }
                if exhausted:
                    values.update(
                        failure_class=FailureClass.WORKER_TIMEOUT.value,
                        error_summary=WORKER_TIMEOUT_MESSAGE,
                        result_json=dump_json(
                            {
                                "error": WORKER_TIMEOUT_MESSAGE,
                                "failure_class": FailureClass.WORKER_TIMEOUT.value,
                            },
                        ),
                        completed_at=to_db_datetime(now),
                    )
                else:
                    values.update(scheduled_for=to_db_datetime(now), started_at=None)

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == row.job_id,
                        col(Job.status) == JobStatus.PROCESSING.value,
                        col(Job.heartbeat_at) == row.heartbeat_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="stale_recovered",
                    status_from=JobStatus.PROCESSING,
                    status_to=status_to,
                    details={
                        "worker_id": previous_worker,
                        "attempts": row.attempts,
                        "max_attempts": row.max_attempts,
                    },
                )
                recovered.append(
                    StaleRecovery(
                        job_id=row.job_id,
                        job_type=row.job_type,
                        attempts=row.attempts,
                        max_attempts=row.max_attempts,
                        status_to=status_to,
                    ),
                )
            session.commit()

        for item in recovered:
            logger.warning(
                "Recovered stale job %s (%s) -> %s after %s/%s attempts",
                item.job_id,
                item.job_type,
                item.status_to.value,
                item.attempts,
                item.max_attempts,
            )
        return recovered

    def get_job(self, *, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def get_status(self, *, job_id: str) -> JobStatus | None:
        """Fresh status read used for cooperative cancellation checks."""

        with Session(self.engine) as session:
            status = session.exec(select(Job.status).where(Job.job_id == job_id)).one_or_none()
        return JobStatus(status) if status is not None else None

    def find_active_job(self, *, job_type: str, scope_key: str) -> JobView | None:
        """Return the pending or processing job that owns a scope, if any."""

        with Session(self.engine) as session:
            row = session.exec(
                select(Job)
                .where(
                    Job.job_type == job_type,
                    Job.scope_key == scope_key,
                    col(Job.status).in_([status.value for status in ACTIVE_STATUSES]),
                )
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_recent(
        self,
        *,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with Session(self.engine) as session:
            statement = select(Job)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if job_type is not None:
                statement = statement.where(Job.job_type == job_type)
            rows = session.exec(
                statement.order_by(col(Job.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_active(self) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(
                    col(Job.status).in_([status.value for status in ACTIVE_STATUSES]),
                ),
            ).all()
            return [_to_job_view(row) for row in rows]

    def list_updated_since(self, *, since: datetime) -> list[JobView]:
        """Jobs touched inside a stats window."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(col(Job.updated_at) >= to_db_datetime(since))
                .order_by(col(Job.updated_at).desc()),
            ).all()
            return [_to_job_view(row) for row in rows]

    def queue_stats(self, *, since: datetime, stale_after: timedelta) -> QueueStatsSnapshot:
        """Aggregate queue health for jobs active now or touched since a cutoff."""

        return build_queue_stats(
            active_jobs=self.list_active(),
            window_jobs=self.list_updated_since(since=since),
            now=utc_now(),
            stale_after=stale_after,
        )

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job with its event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if row is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()
            job = _to_job_view(row)

        events = [
            JobEventView(
                event_id=event.id or 0,
                job_id=event.job_id,
                event_type=event.event_type,
                status_from=JobStatus(event.status_from) if event.status_from else None,
                status_to=JobStatus(event.status_to) if event.status_to else None,
                created_at=to_utc_aware_datetime(event.created_at),
                details=load_json_object(event.details_json),
            )
            for event in event_rows
        ]
        return JobDetails(job=job, events=events)

    def add_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, Any],
    ) -> None:
        """Append an informational event that does not change status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def _get_row(self, *, session: Session, job_id: str) -> Job:
        row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
        if row is None:
            raise JobNotFoundError(job_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, Any],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _new_job_row(payload: JobCreate, *, job_id: str, status: JobStatus, now: datetime) -> Job:
    snapshot_at = payload.snapshot_at
    return Job(
        job_id=job_id,
        job_type=payload.job_type,
        scope_key=payload.scope_key,
        payload_json=dump_json(payload.payload) or "{}",
        priority=payload.priority,
        status=status.value,
        attempts=0,
        max_attempts=payload.max_attempts,
        scheduled_for=to_db_datetime(payload.scheduled_for or now),
        total_units=payload.total_units,
        snapshot_at=to_db_datetime(snapshot_at) if snapshot_at is not None else None,
        created_at=to_db_datetime(now),
        updated_at=to_db_datetime(now),
    )


def _to_job_view(row: Job) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        scope_key=row.scope_key,
        payload=load_json_object(row.payload_json),
        priority=row.priority,
        status=JobStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        scheduled_for=to_utc_aware_datetime(row.scheduled_for),
        started_at=optional_utc(row.started_at),
        heartbeat_at=optional_utc(row.heartbeat_at),
        completed_at=optional_utc(row.completed_at),
        worker_id=row.worker_id,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        error_summary=row.error_summary,
        result=load_json_object(row.result_json),
        total_units=row.total_units,
        processed_count=row.processed_count,
        error_count=row.error_count,
        snapshot_at=optional_utc(row.snapshot_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
