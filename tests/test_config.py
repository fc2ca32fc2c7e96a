from __future__ import annotations

from pathlib import Path

import allure
import pytest

from scoring_queue.config import (
    BatchSettings,
    CapabilitySettings,
    QueueSettings,
    Settings,
)
from scoring_queue.queue.repository import JobRepository
from scoring_queue.runtime import open_runtime

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".scoring_queue.db")
    assert settings.log_level == "WARNING"
    assert settings.queue.default_max_attempts == 3
    assert settings.queue.retry_base_seconds == 10.0
    assert settings.queue.worker_id
    assert settings.batch.max_units_per_invocation == 50
    assert settings.capability.backend == "echo"
    assert settings.capability.api_key is None
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SCORING_QUEUE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SCORING_QUEUE_LOG_LEVEL", "debug")
    monkeypatch.setenv("SCORING_QUEUE_WORKER_ID", "worker-7")
    monkeypatch.setenv("SCORING_QUEUE_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("SCORING_QUEUE_RETRY_BASE_SECONDS", "2.5")
    monkeypatch.setenv("SCORING_QUEUE_BATCH_MAX_UNITS", "7")
    monkeypatch.setenv("SCORING_QUEUE_CAPABILITY_BACKEND", "HTTP")
    monkeypatch.setenv("SCORING_QUEUE_CAPABILITY_API_KEY", " sk-env ")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.log_level == "DEBUG"
    assert settings.queue.worker_id == "worker-7"
    assert settings.queue.default_max_attempts == 5
    assert settings.queue.retry_base_seconds == 2.5
    assert settings.batch.max_units_per_invocation == 7
    assert settings.capability.backend == "http"
    assert settings.capability.api_key == "sk-env"
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("SCORING_QUEUE_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_from_env_names_invalid_number(monkeypatch) -> None:
    monkeypatch.setenv("SCORING_QUEUE_STALE_AFTER_SECONDS", "ten minutes")

    with pytest.raises(ValueError, match="SCORING_QUEUE_STALE_AFTER_SECONDS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(log_level="LOUD"), "SCORING_QUEUE_LOG_LEVEL"),
        (
            Settings(queue=QueueSettings(retry_base_seconds=30, retry_max_seconds=10)),
            "SCORING_QUEUE_RETRY_MAX_SECONDS",
        ),
        (Settings(queue=QueueSettings(default_max_attempts=0)), "SCORING_QUEUE_MAX_ATTEMPTS"),
        (
            Settings(batch=BatchSettings(max_units_per_invocation=0)),
            "SCORING_QUEUE_BATCH_MAX_UNITS",
        ),
        (
            Settings(
                queue=QueueSettings(stale_after_seconds=60),
                batch=BatchSettings(max_seconds_per_invocation=120),
            ),
            "SCORING_QUEUE_BATCH_MAX_SECONDS",
        ),
        (
            Settings(capability=CapabilitySettings(backend="grpc")),
            "SCORING_QUEUE_CAPABILITY_BACKEND",
        ),
        (
            Settings(capability=CapabilitySettings(backend="http", base_url="llm.local/v1")),
            "SCORING_QUEUE_CAPABILITY_BASE_URL",
        ),
    ],
)
def test_validate_rejects_inconsistent_settings(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_echo_backend_ignores_http_only_settings() -> None:
    Settings(capability=CapabilitySettings(backend="echo", base_url="not a url")).validate()


def test_open_runtime_disposes_engine_when_migration_fails(monkeypatch, tmp_path: Path) -> None:
    closed: list[Path] = []

    def _broken_upgrade(self: JobRepository) -> None:
        raise RuntimeError("migration failed")

    def _track_close(self: JobRepository) -> None:
        closed.append(self.db_path)
        self.engine.dispose()

    monkeypatch.setattr(JobRepository, "init_schema", _broken_upgrade)
    monkeypatch.setattr(JobRepository, "close", _track_close)

    with pytest.raises(RuntimeError, match="migration failed"):
        with open_runtime(Settings(db_path=tmp_path / "broken.db")):
            pass

    assert closed == [tmp_path / "broken.db"]
