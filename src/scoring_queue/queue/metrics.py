"""Queue health metrics for the stats command."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from scoring_queue.queue.models import JobStatus, JobView

RECENT_JOBS_LIMIT = 20


@dataclass(slots=True)
class TypeDuration:
    """Average processing time for one job type."""

    job_type: str
    sample_size: int
    average_seconds: float


@dataclass(slots=True)
class QueueStatsSnapshot:
    """Aggregated queue metrics used by the stats command."""

    active_status_counts: dict[str, int]
    active_type_status_counts: dict[str, dict[str, int]]
    stale_processing_count: int
    window_job_count: int
    window_status_counts: dict[str, int]
    failure_class_counts: dict[str, int]
    duration_by_type: list[TypeDuration]
    recent_jobs: list[JobView]
    recent_failures: list[JobView]


def build_queue_stats(
    *,
    active_jobs: list[JobView],
    window_jobs: list[JobView],
    now: datetime,
    stale_after: timedelta,
) -> QueueStatsSnapshot:
    """Build one metrics snapshot from job views."""

    active_status_counts = Counter[str]()
    active_type_status_counts = Counter[tuple[str, str]]()
    stale_processing_count = 0
    stale_cutoff = now - stale_after
    for job in active_jobs:
        active_status_counts[job.status.value] += 1
        active_type_status_counts[(job.job_type, job.status.value)] += 1
        if (
            job.status == JobStatus.PROCESSING
            and job.heartbeat_at is not None
            and job.heartbeat_at < stale_cutoff
        ):
            stale_processing_count += 1

    window_status_counts = Counter[str]()
    failure_class_counts = Counter[str]()
    durations: dict[str, list[float]] = defaultdict(list)
    for job in window_jobs:
        window_status_counts[job.status.value] += 1
        if job.failure_class is not None and job.status == JobStatus.FAILED:
            failure_class_counts[job.failure_class.value] += 1
        if (
            job.status == JobStatus.COMPLETED
            and job.started_at is not None
            and job.completed_at is not None
        ):
            durations[job.job_type].append(
                max(
                    0.0,
                    (
                        job.completed_at.astimezone(UTC) - job.started_at.astimezone(UTC)
                    ).total_seconds(),
                ),
            )

    recent_jobs = sorted(window_jobs, key=lambda job: job.created_at, reverse=True)
    recent_failures = [job for job in recent_jobs if job.status == JobStatus.FAILED]

    return QueueStatsSnapshot(
        active_status_counts=dict(sorted(active_status_counts.items())),
        active_type_status_counts=_sorted_nested_counter(active_type_status_counts),
        stale_processing_count=stale_processing_count,
        window_job_count=len(window_jobs),
        window_status_counts=dict(sorted(window_status_counts.items())),
        failure_class_counts=dict(sorted(failure_class_counts.items())),
        duration_by_type=[
            TypeDuration(
                job_type=job_type,
                sample_size=len(values),
                average_seconds=sum(values) / len(values),
            )
            for job_type, values in sorted(durations.items())
        ],
        recent_jobs=recent_jobs[:RECENT_JOBS_LIMIT],
        recent_failures=recent_failures[:RECENT_JOBS_LIMIT],
    )


def render_stats_lines(*, snapshot: QueueStatsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Job queue health (window={hours}h)",
        (
            "Queue status: "
            + (_fmt_key_value(snapshot.active_status_counts) or "pending=0 processing=0")
        ),
        "Queue type/status: " + (_fmt_type_status(snapshot.active_type_status_counts) or "none"),
        f"Stale processing: {snapshot.stale_processing_count}",
        f"Window jobs: {snapshot.window_job_count}",
        "Status distribution: " + (_fmt_key_value(snapshot.window_status_counts) or "none"),
        "Failure-class distribution: " + (_fmt_key_value(snapshot.failure_class_counts) or "none"),
    ]

    if snapshot.duration_by_type:
        lines.append("Average processing time (started_at -> completed_at):")
        for duration in snapshot.duration_by_type:
            lines.append(
                f"  job_type={duration.job_type} n={duration.sample_size} "
                f"avg={duration.average_seconds:.2f}s",
            )
    else:
        lines.append("Average processing time: none")

    if snapshot.recent_failures:
        lines.append("Recent failures:")
        for job in snapshot.recent_failures:
            failure_class = job.failure_class.value if job.failure_class else "unknown"
            lines.append(
                f"  {job.job_id} type={job.job_type} class={failure_class} "
                f"attempts={job.attempts}/{job.max_attempts} error={job.error_summary or '-'}",
            )
    else:
        lines.append("Recent failures: none")
    return lines


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _fmt_type_status(values: dict[str, dict[str, int]]) -> str:
    if not values:
        return ""
    flattened: list[str] = []
    for job_type in sorted(values):
        for status in sorted(values[job_type]):
            flattened.append(f"{job_type}/{status}={values[job_type][status]}")
    return " ".join(flattened)


def _sorted_nested_counter(counter: Counter[tuple[str, str]]) -> dict[str, dict[str, int]]:
    nested: dict[str, dict[str, int]] = defaultdict(dict)
    for (job_type, status), count in counter.items():
        nested[job_type][status] = count
    return {
        job_type: dict(sorted(statuses.items())) for job_type, statuses in sorted(nested.items())
    }
