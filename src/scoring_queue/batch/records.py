"""Domain data access for scored records, per-job failure markers and settings."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import exists, func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from scoring_queue.queue.models import ACTIVE_STATUSES
from scoring_queue.storage.common import (
    build_sqlite_engine,
    dump_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from scoring_queue.storage.sqlmodel_models import (
    DataRecord,
    Job,
    SystemSetting,
    WorkItemFailure,
)

GUIDELINES_SETTING_KEY = "guidelines"
RECORD_TYPES = ("task", "feedback")

SessionWriter = Callable[[Session], None]
SessionCounter = Callable[[Session], int]


class BatchKind(str, Enum):
    """Batch capability applied to every outstanding record of a scope."""

    ALIGNMENT = "alignment"
    EMBEDDING = "embedding"

    @property
    def job_type(self) -> str:
        return f"{self.value}_batch"


@dataclass(slots=True)
class WorkItem:
    """One record that still needs an outcome."""

    record_id: str
    record_type: str
    content: str


@dataclass(slots=True)
class RecordView:
    """Readable record snapshot for CLI output."""

    record_id: str
    environment: str
    record_type: str
    content: str
    alignment_analysis: str | None
    embedding: list[float] | None
    created_at: datetime


@dataclass(slots=True)
class ScopeSummary:
    """Outcome coverage of one environment."""

    environment: str
    total: int
    aligned: int
    embedded: int


class RecordRepository:
    """Record persistence facade sharing the queue's SQLite database."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def add_records(
        self,
        *,
        environment: str,
        contents: list[str],
        record_type: str = "task",
    ) -> list[str]:
        """Insert records without outcomes and return their ids."""

        if record_type not in RECORD_TYPES:
            raise ValueError(f"record_type must be one of {', '.join(RECORD_TYPES)}")
        now = to_db_datetime(utc_now())
        record_ids: list[str] = []
        with Session(self.engine) as session:
            for content in contents:
                record_id = str(uuid4())
                session.add(
                    DataRecord(
                        record_id=record_id,
                        environment=environment,
                        record_type=record_type,
                        content=content,
                        created_at=now,
                        updated_at=now,
                    ),
                )
                record_ids.append(record_id)
            session.commit()
        return record_ids

    def get_record(self, *, record_id: str) -> RecordView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(DataRecord).where(DataRecord.record_id == record_id),
            ).one_or_none()
            return _to_record_view(row) if row is not None else None

    def list_records(self, *, environment: str, limit: int = 50) -> list[RecordView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DataRecord)
                .where(DataRecord.environment == environment)
                .order_by(col(DataRecord.created_at).desc(), col(DataRecord.record_id).asc())
                .limit(limit),
            ).all()
            return [_to_record_view(row) for row in rows]

    def scope_summary(self, *, environment: str) -> ScopeSummary:
        with Session(self.engine) as session:
            total, aligned, embedded = session.exec(
                select(
                    func.count(),
                    func.count(col(DataRecord.alignment_analysis)),
                    func.count(col(DataRecord.embedding_json)),
                ).where(DataRecord.environment == environment),
            ).one()
        return ScopeSummary(
            environment=environment,
            total=int(total),
            aligned=int(aligned),
            embedded=int(embedded),
        )

    def count_outstanding(
        self,
        *,
        kind: BatchKind,
        environment: str,
        snapshot_at: datetime,
        job_id: str | None = None,
    ) -> int:
        """Count records of a scope still lacking an outcome for this job."""

        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(DataRecord)
                .where(*_outstanding_filters(kind, environment, snapshot_at, job_id)),
            ).one()
        return int(count)

    def list_outstanding(
        self,
        *,
        kind: BatchKind,
        environment: str,
        snapshot_at: datetime,
        job_id: str | None = None,
        limit: int = 100,
    ) -> list[WorkItem]:
        """Outstanding records, newest first, recomputed from the store on every call."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(DataRecord)
                .where(*_outstanding_filters(kind, environment, snapshot_at, job_id))
                .order_by(col(DataRecord.created_at).desc(), col(DataRecord.record_id).asc())
                .limit(limit),
            ).all()
            return [
                WorkItem(record_id=row.record_id, record_type=row.record_type, content=row.content)
                for row in rows
            ]

    def outstanding_counter(
        self,
        *,
        kind: BatchKind,
        environment: str,
        snapshot_at: datetime,
    ) -> SessionCounter:
        """Build a counter of outstanding records that runs inside a caller's session."""

        def _count(session: Session) -> int:
            count = session.exec(
                select(func.count())
                .select_from(DataRecord)
                .where(*_outstanding_filters(kind, environment, snapshot_at, None)),
            ).one()
            return int(count)

        return _count

    def write_unowned_outcome(  # noqa: PLR0913
        self,
        *,
        kind: BatchKind,
        record_id: str,
        value: str | list[float],
        owner_job_type: str,
        scope_key: str,
    ) -> bool:
        """Store an outcome unless the record's scope belongs to an active batch job.

        The ownership check and the write are one UPDATE, so a batch counting its
        units under the write lock never sees a record change behind its back.
        Returns False when the record already had an outcome or the scope is owned.
        """

        owned = exists().where(
            col(Job.job_type) == owner_job_type,
            col(Job.scope_key) == scope_key,
            col(Job.status).in_([status.value for status in ACTIVE_STATUSES]),
        )
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(DataRecord)
                .where(
                    col(DataRecord.record_id) == record_id,
                    _outcome_column(kind).is_(None),
                    ~owned,
                )
                .values(
                    **_outcome_values(kind, value),
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def stage_outcome(
        self,
        *,
        kind: BatchKind,
        record_id: str,
        value: str | list[float],
    ) -> SessionWriter:
        """Build a writer that stores an outcome on the record inside a caller's session."""

        def _write(session: Session) -> None:
            row = session.exec(
                select(DataRecord).where(DataRecord.record_id == record_id),
            ).one()
            for column_name, stored in _outcome_values(kind, value).items():
                setattr(row, column_name, stored)
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)

        return _write

    def stage_failure(
        self,
        *,
        job_id: str,
        record_id: str,
        error_kind: str,
        error_message: str | None,
    ) -> SessionWriter:
        """Build a writer that marks a record as failed for one job."""

        def _write(session: Session) -> None:
            session.add(
                WorkItemFailure(
                    job_id=job_id,
                    record_id=record_id,
                    error_kind=error_kind,
                    error_message=error_message,
                    created_at=to_db_datetime(utc_now()),
                ),
            )

        return _write

    def list_failures(self, *, job_id: str) -> list[dict[str, Any]]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItemFailure)
                .where(WorkItemFailure.job_id == job_id)
                .order_by(col(WorkItemFailure.id).asc()),
            ).all()
            return [
                {
                    "record_id": row.record_id,
                    "error_kind": row.error_kind,
                    "error_message": row.error_message,
                }
                for row in rows
            ]

    def get_setting(self, key: str) -> str | None:
        with Session(self.engine) as session:
            row = session.exec(select(SystemSetting).where(SystemSetting.key == key)).one_or_none()
            return row.value if row is not None else None

    def set_setting(self, key: str, value: str) -> None:
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(SystemSetting).where(SystemSetting.key == key)).one_or_none()
            if row is None:
                session.add(SystemSetting(key=key, value=value, updated_at=now))
            else:
                row.value = value
                row.updated_at = now
                session.add(row)
            session.commit()

    def get_guidelines(self) -> str | None:
        value = self.get_setting(GUIDELINES_SETTING_KEY)
        if value is None or not value.strip():
            return None
        return value

    def set_guidelines(self, text: str) -> None:
        self.set_setting(GUIDELINES_SETTING_KEY, text)


def _outstanding_filters(
    kind: BatchKind,
    environment: str,
    snapshot_at: datetime,
    job_id: str | None,
) -> list[Any]:
    filters: list[Any] = [
        DataRecord.environment == environment,
        _outcome_column(kind).is_(None),
        col(DataRecord.created_at) <= to_db_datetime(snapshot_at),
    ]
    if job_id is not None:
        filters.append(
            ~exists().where(
                WorkItemFailure.job_id == job_id,
                WorkItemFailure.record_id == DataRecord.record_id,
            ),
        )
    return filters


def _outcome_column(kind: BatchKind) -> Any:
    if kind == BatchKind.ALIGNMENT:
        return col(DataRecord.alignment_analysis)
    return col(DataRecord.embedding_json)


def _outcome_values(kind: BatchKind, value: str | list[float]) -> dict[str, str | None]:
    if kind == BatchKind.ALIGNMENT:
        return {"alignment_analysis": str(value)}
    return {"embedding_json": dump_json(list(value))}


def _to_record_view(row: DataRecord) -> RecordView:
    embedding = json.loads(row.embedding_json) if row.embedding_json else None
    return RecordView(
        record_id=row.record_id,
        environment=row.environment,
        record_type=row.record_type,
        content=row.content,
        alignment_analysis=row.alignment_analysis,
        embedding=embedding,
        created_at=to_utc_aware_datetime(row.created_at),
    )
