from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from scoring_queue.main import scoring_queue

pytestmark = [
    allure.epic("Batch Scoring"),
    allure.feature("CLI Ops"),
]


def _job_id(output: str) -> str:
    match = re.search(r"job_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_cli_embedding_batch_end_to_end(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    runner = CliRunner()

    added = runner.invoke(
        scoring_queue,
        [
            "records",
            "add",
            "--db-path",
            db_path,
            "--environment",
            "prod",
            "--content",
            "first task",
            "--content",
            "second task",
        ],
    )
    assert added.exit_code == 0, added.output
    assert "Records added to prod: 2" in added.output

    started = runner.invoke(
        scoring_queue,
        ["batch", "start", "--db-path", db_path, "--kind", "embedding", "--environment", "prod"],
    )
    assert started.exit_code == 0, started.output
    assert "created=true" in started.output
    assert "Batch queued with 2 records." in started.output
    job_id = _job_id(started.output)

    reused = runner.invoke(
        scoring_queue,
        ["batch", "start", "--db-path", db_path, "--kind", "embedding", "--environment", "prod"],
    )
    assert reused.exit_code == 0, reused.output
    assert _job_id(reused.output) == job_id
    assert "created=false" in reused.output

    worker = runner.invoke(scoring_queue, ["worker", "run", "--db-path", db_path, "--loop"])
    assert worker.exit_code == 0, worker.output
    assert "processed=1 completed=1" in worker.output

    status = runner.invoke(
        scoring_queue,
        ["batch", "status", "--db-path", db_path, "--job-id", job_id],
    )
    assert status.exit_code == 0, status.output
    assert "Status: completed" in status.output
    assert "Progress: 2/2 (100%)" in status.output
    assert "Outcome: fresh" in status.output

    cached = runner.invoke(
        scoring_queue,
        ["batch", "start", "--db-path", db_path, "--kind", "embedding", "--environment", "prod"],
    )
    assert cached.exit_code == 0, cached.output
    assert "reused prior analysis" in cached.output

    listed = runner.invoke(
        scoring_queue,
        ["records", "list", "--db-path", db_path, "--environment", "prod"],
    )
    assert listed.exit_code == 0, listed.output
    assert "total=2 aligned=0 embedded=2" in listed.output

    inspected = runner.invoke(
        scoring_queue,
        ["jobs", "inspect", "--db-path", db_path, "--job-id", job_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Scope: embedding:prod" in inspected.output
    assert "batch_started" in inspected.output
    assert "Item failures: 0" in inspected.output


def test_cli_alignment_batch_runs_inline_with_guidelines(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli-alignment.db")
    guidelines = tmp_path / "guidelines.md"
    guidelines.write_text("Always state assumptions.", "utf-8")
    runner = CliRunner()

    missing = runner.invoke(scoring_queue, ["settings", "show-guidelines", "--db-path", db_path])
    assert "Guidelines: not configured" in missing.output

    stored = runner.invoke(
        scoring_queue,
        ["settings", "set-guidelines", "--db-path", db_path, "--file", str(guidelines)],
    )
    assert stored.exit_code == 0, stored.output
    shown = runner.invoke(scoring_queue, ["settings", "show-guidelines", "--db-path", db_path])
    assert "Always state assumptions." in shown.output

    runner.invoke(
        scoring_queue,
        [
            "records",
            "add",
            "--db-path",
            db_path,
            "--environment",
            "dev",
            "--type",
            "feedback",
            "--content",
            "Looks good to me",
        ],
    )
    started = runner.invoke(
        scoring_queue,
        [
            "batch",
            "start",
            "--db-path",
            db_path,
            "--kind",
            "alignment",
            "--environment",
            "dev",
            "--run",
        ],
    )
    assert started.exit_code == 0, started.output
    assert "Status: completed" in started.output
    assert "Progress: 1/1 (100%)" in started.output


def test_cli_job_admin_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli-admin.db")
    runner = CliRunner()

    rejected = runner.invoke(
        scoring_queue,
        ["jobs", "enqueue", "--db-path", db_path, "--type", "embed_record", "--payload", "{}"],
    )
    assert rejected.exit_code != 0
    assert "payload.record_id" in rejected.output

    not_json = runner.invoke(
        scoring_queue,
        ["jobs", "enqueue", "--db-path", db_path, "--type", "embed_record", "--payload", "[1"],
    )
    assert not_json.exit_code != 0
    assert "not valid JSON" in not_json.output

    enqueued = runner.invoke(
        scoring_queue,
        [
            "jobs",
            "enqueue",
            "--db-path",
            db_path,
            "--type",
            "embed_record",
            "--payload",
            '{"record_id": "missing"}',
            "--delay-seconds",
            "3600",
        ],
    )
    assert enqueued.exit_code == 0, enqueued.output
    job_id = _job_id(enqueued.output)

    idle = runner.invoke(scoring_queue, ["worker", "run", "--db-path", db_path, "--once"])
    assert "idle_polls=1" in idle.output

    listed = runner.invoke(
        scoring_queue,
        ["jobs", "list", "--db-path", db_path, "--status", "pending"],
    )
    assert "Jobs: 1" in listed.output
    assert job_id in listed.output

    cancelled = runner.invoke(
        scoring_queue,
        ["jobs", "cancel", "--db-path", db_path, "--job-id", job_id],
    )
    assert cancelled.exit_code == 0, cancelled.output
    assert f"Job cancelled: {job_id}" in cancelled.output

    retry = runner.invoke(
        scoring_queue,
        ["jobs", "retry", "--db-path", db_path, "--job-id", job_id],
    )
    assert retry.exit_code != 0
    assert "Only failed jobs can be retried" in retry.output

    unknown = runner.invoke(
        scoring_queue,
        ["jobs", "inspect", "--db-path", db_path, "--job-id", "nope"],
    )
    assert unknown.exit_code != 0
    assert "Job not found: nope" in unknown.output

    stats = runner.invoke(scoring_queue, ["jobs", "stats", "--db-path", db_path])
    assert stats.exit_code == 0, stats.output
    assert "Job queue health (window=24h)" in stats.output
    assert "cancelled=1" in stats.output

    sweep = runner.invoke(scoring_queue, ["jobs", "sweep", "--db-path", db_path])
    assert sweep.exit_code == 0, sweep.output
    assert "Recovered stale jobs: 0" in sweep.output


def test_cli_reports_invalid_configuration(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("SCORING_QUEUE_CAPABILITY_BACKEND", "grpc")
    runner = CliRunner()

    result = runner.invoke(
        scoring_queue,
        ["jobs", "list", "--db-path", str(tmp_path / "bad.db")],
    )

    assert result.exit_code != 0
    assert "SCORING_QUEUE_CAPABILITY_BACKEND" in result.output
