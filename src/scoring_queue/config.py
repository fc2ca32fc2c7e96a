"""Runtime configuration for the job queue, batch engine and capability backend."""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

CAPABILITY_BACKENDS = ("echo", "http")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class QueueSettings:
    """Worker loop and retry policy settings."""

    worker_id: str = ""
    poll_interval_seconds: float = 2.0
    retry_base_seconds: float = 10.0
    retry_max_seconds: float = 300.0
    stale_after_seconds: int = 600
    default_max_attempts: int = 3
    stats_window_hours: int = 24


@dataclass(slots=True)
class BatchSettings:
    """Per-invocation bounds of the batch orchestrator."""

    max_units_per_invocation: int = 50
    max_seconds_per_invocation: float = 240.0


@dataclass(slots=True)
class CapabilitySettings:
    """External completion/embedding provider settings."""

    backend: str = "echo"
    base_url: str = "https://api.openai.com/v1"
    api_key: str | None = None
    completion_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    request_timeout_seconds: float = 60.0
    max_retries: int = 2


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".scoring_queue.db")
    log_level: str = "WARNING"
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    batch: BatchSettings = field(default_factory=BatchSettings)
    capability: CapabilitySettings = field(default_factory=CapabilitySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("SCORING_QUEUE_DB_PATH", ".scoring_queue.db")),
            log_level=os.getenv("SCORING_QUEUE_LOG_LEVEL", "WARNING").strip().upper(),
            sqlite_busy_timeout_ms=_env_int("SCORING_QUEUE_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            queue=QueueSettings(
                worker_id=os.getenv("SCORING_QUEUE_WORKER_ID", "").strip() or default_worker_id(),
                poll_interval_seconds=_env_float("SCORING_QUEUE_POLL_INTERVAL_SECONDS", 2.0),
                retry_base_seconds=_env_float("SCORING_QUEUE_RETRY_BASE_SECONDS", 10.0),
                retry_max_seconds=_env_float("SCORING_QUEUE_RETRY_MAX_SECONDS", 300.0),
                stale_after_seconds=_env_int("SCORING_QUEUE_STALE_AFTER_SECONDS", 600),
                default_max_attempts=_env_int("SCORING_QUEUE_MAX_ATTEMPTS", 3),
                stats_window_hours=_env_int("SCORING_QUEUE_STATS_WINDOW_HOURS", 24),
            ),
            batch=BatchSettings(
                max_units_per_invocation=_env_int("SCORING_QUEUE_BATCH_MAX_UNITS", 50),
                max_seconds_per_invocation=_env_float("SCORING_QUEUE_BATCH_MAX_SECONDS", 240.0),
            ),
            capability=CapabilitySettings(
                backend=os.getenv("SCORING_QUEUE_CAPABILITY_BACKEND", "echo").strip().lower(),
                base_url=os.getenv(
                    "SCORING_QUEUE_CAPABILITY_BASE_URL",
                    "https://api.openai.com/v1",
                ).strip(),
                api_key=os.getenv("SCORING_QUEUE_CAPABILITY_API_KEY", "").strip() or None,
                completion_model=os.getenv(
                    "SCORING_QUEUE_COMPLETION_MODEL",
                    "gpt-4o-mini",
                ).strip(),
                embedding_model=os.getenv(
                    "SCORING_QUEUE_EMBEDDING_MODEL",
                    "text-embedding-3-small",
                ).strip(),
                request_timeout_seconds=_env_float(
                    "SCORING_QUEUE_CAPABILITY_TIMEOUT_SECONDS",
                    60.0,
                ),
                max_retries=_env_int("SCORING_QUEUE_CAPABILITY_MAX_RETRIES", 2),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"SCORING_QUEUE_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}, "
                f"got {self.log_level!r}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("SCORING_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("SCORING_QUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.retry_base_seconds <= 0:
            raise ValueError("SCORING_QUEUE_RETRY_BASE_SECONDS must be > 0.")
        if self.queue.retry_max_seconds < self.queue.retry_base_seconds:
            raise ValueError(
                "SCORING_QUEUE_RETRY_MAX_SECONDS must be >= SCORING_QUEUE_RETRY_BASE_SECONDS.",
            )
        if self.queue.stale_after_seconds <= 0:
            raise ValueError("SCORING_QUEUE_STALE_AFTER_SECONDS must be > 0.")
        if self.queue.default_max_attempts < 1:
            raise ValueError("SCORING_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.stats_window_hours <= 0:
            raise ValueError("SCORING_QUEUE_STATS_WINDOW_HOURS must be > 0.")
        if self.batch.max_units_per_invocation < 1:
            raise ValueError("SCORING_QUEUE_BATCH_MAX_UNITS must be >= 1.")
        if self.batch.max_seconds_per_invocation <= 0:
            raise ValueError("SCORING_QUEUE_BATCH_MAX_SECONDS must be > 0.")
        if self.batch.max_seconds_per_invocation >= self.queue.stale_after_seconds:
            raise ValueError(
                "SCORING_QUEUE_BATCH_MAX_SECONDS must be lower than "
                "SCORING_QUEUE_STALE_AFTER_SECONDS, otherwise running batches look stale.",
            )
        self._validate_capability()

    def _validate_capability(self) -> None:
        if self.capability.backend not in CAPABILITY_BACKENDS:
            raise ValueError(
                "SCORING_QUEUE_CAPABILITY_BACKEND must be one of "
                f"{', '.join(CAPABILITY_BACKENDS)}, got {self.capability.backend!r}.",
            )
        if self.capability.backend != "http":
            return
        parsed = urlparse(self.capability.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                "Invalid SCORING_QUEUE_CAPABILITY_BASE_URL: "
                f"{self.capability.base_url!r}. Expected an absolute http(s) URL.",
            )
        if self.capability.request_timeout_seconds <= 0:
            raise ValueError("SCORING_QUEUE_CAPABILITY_TIMEOUT_SECONDS must be > 0.")
        if self.capability.max_retries < 0:
            raise ValueError("SCORING_QUEUE_CAPABILITY_MAX_RETRIES must be >= 0.")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
