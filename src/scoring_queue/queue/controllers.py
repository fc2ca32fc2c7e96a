"""Controllers for job queue and worker CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from scoring_queue.config import Settings
from scoring_queue.queue.errors import JobNotFoundError, ValidationError
from scoring_queue.queue.metrics import render_stats_lines
from scoring_queue.queue.models import JobStatus, JobView
from scoring_queue.runtime import open_runtime


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for a generic job enqueue."""

    db_path: Path | None
    job_type: str
    payload_json: str
    priority: int
    max_attempts: int | None
    delay_seconds: int = 0


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    job_type: str | None
    limit: int


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class JobMutateCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    job_types: tuple[str, ...] = ()


@dataclass(slots=True)
class SweepCommand:
    """CLI input for a stale-job recovery sweep."""

    db_path: Path | None
    stale_after_seconds: int | None


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue health stats."""

    db_path: Path | None
    hours: int | None


class QueueCliController:
    """Coordinates queue, worker and inspection CLI operations."""

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _parse_payload(command.payload_json)
        with open_runtime(settings) as runtime:
            job = runtime.queue.enqueue(
                command.job_type,
                payload,
                priority=command.priority,
                max_attempts=command.max_attempts or settings.queue.default_max_attempts,
                scheduled_for=(
                    datetime.now(tz=UTC) + timedelta(seconds=command.delay_seconds)
                    if command.delay_seconds > 0
                    else None
                ),
            )
        return [
            f"Job enqueued: job_id={job.job_id} type={job.job_type} status={job.status.value}",
        ]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            jobs = runtime.queue.list_recent(
                status=_parse_status(command.status),
                job_type=command.job_type,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        lines.extend(f"  {_job_line(job)}" for job in jobs)
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            details = runtime.repository.get_job_details(job_id=command.job_id)
            failures = runtime.records.list_failures(job_id=command.job_id)
        if details is None:
            raise JobNotFoundError(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Type: {job.job_type}",
            f"Scope: {job.scope_key or '-'}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Scheduled for: {job.scheduled_for.isoformat()}",
            f"Progress: {job.processed_count}/{job.total_units} "
            f"({job.progress_percent}%) errors={job.error_count}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Result: {json.dumps(job.result, sort_keys=True) if job.result else '-'}",
            f"Item failures: {len(failures)}",
            f"Events: {len(details.events)}",
        ]
        for failure in failures:
            lines.append(
                f"  failure record_id={failure['record_id']} kind={failure['error_kind']} "
                f"error={failure['error_message'] or '-'}",
            )
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            job = runtime.queue.retry(command.job_id)
        return [f"Job re-queued: {job.job_id} (attempts reset to {job.attempts})"]

    def cancel_job(self, command: JobMutateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            job = runtime.queue.cancel(command.job_id)
        return [
            f"Job cancelled: {job.job_id} "
            f"(processed {job.processed_count}/{job.total_units})",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            worker = runtime.build_worker(job_types=list(command.job_types) or None)
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} retried={summary.retried} "
            f"continued={summary.continued} cancelled={summary.cancelled} "
            f"recovered={summary.recovered} idle_polls={summary.idle_polls}",
        ]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        stale_after = command.stale_after_seconds or settings.queue.stale_after_seconds
        with open_runtime(settings) as runtime:
            recovered = runtime.repository.recover_stale_jobs(
                stale_after=timedelta(seconds=stale_after),
            )
        lines = [f"Recovered stale jobs: {len(recovered)}"]
        for item in recovered:
            lines.append(
                f"  {item.job_id} type={item.job_type} -> {item.status_to.value} "
                f"attempts={item.attempts}/{item.max_attempts}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue health metrics."""

        settings = Settings.from_env(db_path=command.db_path)
        hours = command.hours or settings.queue.stats_window_hours
        cutoff = datetime.now(tz=UTC) - timedelta(hours=max(1, hours))
        with open_runtime(settings) as runtime:
            snapshot = runtime.repository.queue_stats(
                since=cutoff,
                stale_after=timedelta(seconds=settings.queue.stale_after_seconds),
            )
        return render_stats_lines(snapshot=snapshot, hours=hours)


def _job_line(job: JobView) -> str:
    line = (
        f"{job.job_id} type={job.job_type} status={job.status.value} "
        f"priority={job.priority} attempts={job.attempts}/{job.max_attempts} "
        f"scheduled_for={job.scheduled_for.isoformat()}"
    )
    if job.scope_key is not None:
        line += (
            f" scope={job.scope_key} progress={job.processed_count}/{job.total_units}"
            f" errors={job.error_count}"
        )
    return line


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _parse_payload(raw: str) -> dict[str, object]:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValidationError(f"payload is not valid JSON: {error.msg}") from error
    if not isinstance(payload, dict):
        raise ValidationError("payload must be a JSON object")
    return payload
