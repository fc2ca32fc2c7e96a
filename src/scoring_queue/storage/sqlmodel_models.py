"""SQLModel ORM tables for the job queue and scored records."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel

ACTIVE_STATUS_PREDICATE = "status IN ('pending', 'processing')"


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim", "status", "priority", "scheduled_for"),
        Index("idx_jobs_status_created", "status", "created_at"),
        Index(
            "uq_jobs_active_scope",
            "job_type",
            "scope_key",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_PREDICATE),
        ),
    )

    job_id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    scope_key: str | None = Field(default=None, index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    scheduled_for: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    heartbeat_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    worker_id: str | None = Field(default=None, index=True)
    failure_class: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    total_units: int = 0
    processed_count: int = 0
    error_count: int = 0
    snapshot_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DataRecord(SQLModel, table=True):
    __tablename__ = "data_records"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_data_records_env_created", "environment", "created_at"),)

    record_id: str = Field(primary_key=True)
    environment: str = Field(index=True)
    record_type: str = Field(default="task")
    content: str = Field(sa_column=Column(Text, nullable=False))
    alignment_analysis: str | None = Field(default=None, sa_column=Column(Text))
    embedding_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemFailure(SQLModel, table=True):
    __tablename__ = "work_item_failures"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "record_id", name="uq_work_item_failures_job"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    record_id: str = Field(
        sa_column=Column(
            ForeignKey("data_records.record_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    error_kind: str
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SystemSetting(SQLModel, table=True):
    __tablename__ = "system_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
