"""CLI entrypoint for scoring-queue."""

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from scoring_queue import __version__
from scoring_queue.batch.controllers import (
    BatchCliController,
    BatchStartCommand,
    BatchStatusCommand,
    GuidelinesCommand,
    RecordsAddCommand,
    RecordsListCommand,
)
from scoring_queue.config import LOG_LEVELS
from scoring_queue.queue.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    JobMutateCommand,
    QueueCliController,
    StatsCommand,
    SweepCommand,
    WorkerCommand,
)
from scoring_queue.queue.errors import (
    ConfigurationFailure,
    InvalidTransitionError,
    JobNotFoundError,
    ScopeBusyError,
    ValidationError,
)
from scoring_queue.runtime import configure_logging

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
BATCH_CONTROLLER = BatchCliController()

_DB_PATH_HELP = "SQLite DB path (defaults to SCORING_QUEUE_DB_PATH)."


@click.group()
@click.version_option(version=__version__, prog_name="scoring-queue")
def scoring_queue() -> None:
    """Persistent job queue and batch scoring CLI."""

    level = os.getenv("SCORING_QUEUE_LOG_LEVEL", "WARNING").strip().upper()
    configure_logging(level if level in LOG_LEVELS else "WARNING")


@scoring_queue.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--type", "job_type", required=True, help="Registered job type, e.g. embed_record.")
@click.option("--payload", "payload_json", default="{}", show_default=True, help="JSON object.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs sooner.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Retry budget (defaults to SCORING_QUEUE_MAX_ATTEMPTS).",
)
@click.option(
    "--delay-seconds",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Earliest start, relative to now.",
)
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    job_type: str,
    payload_json: str,
    priority: int,
    max_attempts: int | None,
    delay_seconds: int,
) -> None:
    """Validate and enqueue one job."""

    with _domain_errors():
        _emit_lines(
            QUEUE_CONTROLLER.enqueue(
                JobEnqueueCommand(
                    db_path=db_path,
                    job_type=job_type,
                    payload_json=payload_json,
                    priority=priority,
                    max_attempts=max_attempts,
                    delay_seconds=delay_seconds,
                ),
            ),
        )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(
        ["pending", "processing", "completed", "failed", "cancelled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option("--type", "job_type", default=None, help="Optional job type filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, job_type: str | None, limit: int) -> None:
    """List recent jobs, newest first."""

    with _domain_errors():
        _emit_lines(
            QUEUE_CONTROLLER.list_jobs(
                JobListCommand(db_path=db_path, status=status, job_type=job_type, limit=limit),
            ),
        )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with its event history."""

    with _domain_errors():
        _emit_lines(QUEUE_CONTROLLER.inspect_job(JobInspectCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_retry(db_path: Path | None, job_id: str) -> None:
    """Re-queue a failed job with a fresh attempt budget."""

    with _domain_errors():
        _emit_lines(QUEUE_CONTROLLER.retry_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a pending or processing job."""

    with _domain_errors():
        _emit_lines(QUEUE_CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=None,
    help="Time window (defaults to SCORING_QUEUE_STATS_WINDOW_HOURS).",
)
def jobs_stats(db_path: Path | None, hours: int | None) -> None:
    """Show queue health statistics."""

    with _domain_errors():
        _emit_lines(QUEUE_CONTROLLER.stats(StatsCommand(db_path=db_path, hours=hours)))


@jobs.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--stale-after-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Liveness window (defaults to SCORING_QUEUE_STALE_AFTER_SECONDS).",
)
def jobs_sweep(db_path: Path | None, stale_after_seconds: int | None) -> None:
    """Reclaim processing jobs whose worker stopped heartbeating."""

    with _domain_errors():
        _emit_lines(
            QUEUE_CONTROLLER.sweep(
                SweepCommand(db_path=db_path, stale_after_seconds=stale_after_seconds),
            ),
        )


@scoring_queue.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before the loop exits.",
)
@click.option(
    "--type",
    "job_types",
    multiple=True,
    help="Only claim these job types. Can be repeated.",
)
def worker_run(  # noqa: PLR0913
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    job_types: tuple[str, ...],
) -> None:
    """Run the queue worker."""

    with _domain_errors():
        _emit_lines(
            QUEUE_CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    once=once,
                    max_jobs=max_jobs,
                    max_idle_polls=max_idle_polls,
                    job_types=job_types,
                ),
            ),
        )


@scoring_queue.group()
def batch() -> None:
    """Batch scoring commands."""


@batch.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--kind",
    type=click.Choice(["alignment", "embedding"], case_sensitive=False),
    required=True,
    help="Capability applied to every outstanding record.",
)
@click.option("--environment", required=True, help="Record scope.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs sooner.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Retry budget (defaults to SCORING_QUEUE_MAX_ATTEMPTS).",
)
@click.option(
    "--run/--no-run",
    "run_now",
    default=False,
    show_default=True,
    help="Drain the batch with an in-process worker right away.",
)
def batch_start(  # noqa: PLR0913
    db_path: Path | None,
    kind: str,
    environment: str,
    priority: int,
    max_attempts: int | None,
    run_now: bool,
) -> None:
    """Start a batch for a scope, or return the job already active for it."""

    with _domain_errors():
        _emit_lines(
            BATCH_CONTROLLER.start(
                BatchStartCommand(
                    db_path=db_path,
                    kind=kind,
                    environment=environment,
                    priority=priority,
                    max_attempts=max_attempts,
                    run_now=run_now,
                ),
            ),
        )


@batch.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Batch job id.")
def batch_status(db_path: Path | None, job_id: str) -> None:
    """Show batch progress and outcome."""

    with _domain_errors():
        _emit_lines(BATCH_CONTROLLER.status(BatchStatusCommand(db_path=db_path, job_id=job_id)))


@batch.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--job-id", required=True, help="Batch job id.")
def batch_cancel(db_path: Path | None, job_id: str) -> None:
    """Cancel a batch; the orchestrator stops at the next unit boundary."""

    with _domain_errors():
        _emit_lines(QUEUE_CONTROLLER.cancel_job(JobMutateCommand(db_path=db_path, job_id=job_id)))


@scoring_queue.group()
def records() -> None:
    """Record commands."""


@records.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--environment", required=True, help="Record scope.")
@click.option("--content", "contents", multiple=True, required=True, help="Record text.")
@click.option(
    "--type",
    "record_type",
    type=click.Choice(["task", "feedback"], case_sensitive=False),
    default="task",
    show_default=True,
    help="Record type.",
)
def records_add(
    db_path: Path | None,
    environment: str,
    contents: tuple[str, ...],
    record_type: str,
) -> None:
    """Add records without outcomes to a scope."""

    with _domain_errors():
        _emit_lines(
            BATCH_CONTROLLER.add_records(
                RecordsAddCommand(
                    db_path=db_path,
                    environment=environment,
                    contents=contents,
                    record_type=record_type.lower(),
                ),
            ),
        )


@records.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--environment", required=True, help="Record scope.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max records to print.",
)
def records_list(db_path: Path | None, environment: str, limit: int) -> None:
    """Show outcome coverage and records of a scope."""

    with _domain_errors():
        _emit_lines(
            BATCH_CONTROLLER.list_records(
                RecordsListCommand(db_path=db_path, environment=environment, limit=limit),
            ),
        )


@scoring_queue.group()
def settings() -> None:
    """System settings commands."""


@settings.command("set-guidelines")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--text", default=None, help="Guideline document text.")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Read guideline text from a UTF-8 file.",
)
def settings_set_guidelines(db_path: Path | None, text: str | None, file_path: Path | None) -> None:
    """Store the guideline document used by alignment batches."""

    with _domain_errors():
        _emit_lines(
            BATCH_CONTROLLER.set_guidelines(
                GuidelinesCommand(db_path=db_path, text=text, file_path=file_path),
            ),
        )


@settings.command("show-guidelines")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def settings_show_guidelines(db_path: Path | None) -> None:
    """Print the stored guideline document."""

    with _domain_errors():
        _emit_lines(BATCH_CONTROLLER.show_guidelines(db_path))


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (
        ValidationError,
        JobNotFoundError,
        InvalidTransitionError,
        ScopeBusyError,
        ConfigurationFailure,
        ValueError,
    ) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    scoring_queue()
