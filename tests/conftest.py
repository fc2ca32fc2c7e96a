"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from scoring_queue.batch.records import RecordRepository
from scoring_queue.queue.repository import JobRepository


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop SCORING_QUEUE_* variables leaking from the developer shell."""
    for name in list(os.environ):
        if name.startswith("SCORING_QUEUE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "scoring-queue.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def records(db_path: Path, repository: JobRepository) -> Iterator[RecordRepository]:
    repo = RecordRepository(db_path)
    yield repo
    repo.close()
