"""Controllers for batch, record and settings CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from scoring_queue.batch.records import BatchKind
from scoring_queue.config import Settings
from scoring_queue.queue.errors import JobNotFoundError, ValidationError
from scoring_queue.queue.models import JobView
from scoring_queue.runtime import open_runtime

_CONTENT_PREVIEW_CHARS = 60


@dataclass(slots=True)
class BatchStartCommand:
    """CLI input for starting a batch over a scope."""

    db_path: Path | None
    kind: str
    environment: str
    priority: int = 0
    max_attempts: int | None = None
    run_now: bool = False


@dataclass(slots=True)
class BatchStatusCommand:
    """CLI input for batch progress polling."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class RecordsAddCommand:
    """CLI input for seeding records into a scope."""

    db_path: Path | None
    environment: str
    contents: tuple[str, ...]
    record_type: str = "task"


@dataclass(slots=True)
class RecordsListCommand:
    """CLI input for record listing."""

    db_path: Path | None
    environment: str
    limit: int


@dataclass(slots=True)
class GuidelinesCommand:
    """CLI input for storing the alignment guideline document."""

    db_path: Path | None
    text: str | None
    file_path: Path | None


class BatchCliController:
    """Coordinates batch start/status and record seeding CLI operations."""

    def start(self, command: BatchStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        kind = BatchKind(command.kind.strip().lower())
        with open_runtime(settings) as runtime:
            started = runtime.orchestrator.start(
                kind,
                command.environment,
                priority=command.priority,
                max_attempts=command.max_attempts or settings.queue.default_max_attempts,
            )
            lines = [
                f"Batch job: job_id={started.job.job_id} created={str(started.created).lower()} "
                f"status={started.job.status.value}",
                started.message,
            ]
            if command.run_now and started.job.is_active:
                worker = runtime.build_worker(job_types=[kind.job_type])
                summary = worker.run_loop(max_idle_polls=1)
                lines.append(
                    "Worker summary: "
                    f"processed={summary.processed} completed={summary.completed} "
                    f"continued={summary.continued} failed={summary.failed} "
                    f"cancelled={summary.cancelled}",
                )
                job = runtime.repository.get_job(job_id=started.job.job_id)
                if job is not None:
                    lines.extend(_progress_lines(job))
        return lines

    def status(self, command: BatchStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            job = runtime.repository.get_job(job_id=command.job_id)
        if job is None:
            raise JobNotFoundError(command.job_id)
        return [f"Job: {job.job_id} type={job.job_type} scope={job.scope_key or '-'}"] + (
            _progress_lines(job)
        )

    def add_records(self, command: RecordsAddCommand) -> list[str]:
        contents = [content for content in command.contents if content.strip()]
        if not contents:
            raise ValidationError("At least one non-empty --content value is required.")
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            record_ids = runtime.records.add_records(
                environment=command.environment,
                contents=contents,
                record_type=command.record_type,
            )
        return [f"Records added to {command.environment}: {len(record_ids)}"] + [
            f"  {record_id}" for record_id in record_ids
        ]

    def list_records(self, command: RecordsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            summary = runtime.records.scope_summary(environment=command.environment)
            records = runtime.records.list_records(
                environment=command.environment,
                limit=command.limit,
            )
        lines = [
            f"Environment {summary.environment}: total={summary.total} "
            f"aligned={summary.aligned} embedded={summary.embedded}",
        ]
        for record in records:
            preview = record.content.replace("\n", " ")[:_CONTENT_PREVIEW_CHARS]
            lines.append(
                f"  {record.record_id} type={record.record_type} "
                f"aligned={'yes' if record.alignment_analysis else 'no'} "
                f"embedded={'yes' if record.embedding else 'no'} content={preview!r}",
            )
        return lines

    def set_guidelines(self, command: GuidelinesCommand) -> list[str]:
        if command.file_path is not None:
            text = command.file_path.read_text("utf-8")
        else:
            text = command.text or ""
        if not text.strip():
            raise ValidationError("Guidelines text must not be empty.")
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            runtime.records.set_guidelines(text)
        return [f"Guidelines stored ({len(text)} chars)."]

    def show_guidelines(self, db_path: Path | None) -> list[str]:
        settings = Settings.from_env(db_path=db_path)
        with open_runtime(settings) as runtime:
            text = runtime.records.get_guidelines()
        if text is None:
            return ["Guidelines: not configured"]
        return [f"Guidelines ({len(text)} chars):", text]


def _progress_lines(job: JobView) -> list[str]:
    message = job.result.get("message") or job.error_summary or "-"
    return [
        f"Status: {job.status.value}",
        f"Progress: {job.processed_count}/{job.total_units} ({job.progress_percent}%)",
        f"Errors: {job.error_count}",
        f"Outcome: {job.result.get('outcome', '-')}",
        f"Message: {message}",
    ]
