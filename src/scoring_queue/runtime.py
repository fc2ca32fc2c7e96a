"""Wiring of repositories, backend, orchestrator and handler registry."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass

from scoring_queue.batch.backend import (
    CapabilityAdapter,
    CapabilityBackend,
    EchoCapabilityBackend,
    HttpCapabilityBackend,
)
from scoring_queue.batch.orchestrator import BatchOrchestrator
from scoring_queue.batch.records import RecordRepository
from scoring_queue.config import Settings
from scoring_queue.queue.audit import AuditSink, LoggingAuditSink
from scoring_queue.queue.handlers import HandlerRegistry, JobQueue
from scoring_queue.queue.repository import JobRepository
from scoring_queue.queue.worker import QueueWorker

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    """Everything a CLI command needs, bound to one database."""

    settings: Settings
    repository: JobRepository
    records: RecordRepository
    backend: CapabilityBackend
    orchestrator: BatchOrchestrator
    registry: HandlerRegistry
    queue: JobQueue
    audit_sink: AuditSink

    def build_worker(self, *, job_types: list[str] | None = None) -> QueueWorker:
        queue_settings = self.settings.queue
        return QueueWorker(
            repository=self.repository,
            registry=self.registry,
            worker_id=queue_settings.worker_id,
            poll_interval_seconds=queue_settings.poll_interval_seconds,
            retry_base_seconds=queue_settings.retry_base_seconds,
            retry_max_seconds=queue_settings.retry_max_seconds,
            stale_after_seconds=queue_settings.stale_after_seconds,
            job_types=job_types,
            audit_sink=self.audit_sink,
        )


def configure_logging(level: str) -> None:
    """Configure root logging once for CLI runs."""

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    logging.getLogger("scoring_queue").setLevel(level)


def build_backend(settings: Settings) -> CapabilityBackend:
    capability = settings.capability
    if capability.backend == "http":
        return HttpCapabilityBackend(
            base_url=capability.base_url,
            api_key=capability.api_key,
            completion_model=capability.completion_model,
            embedding_model=capability.embedding_model,
            timeout_seconds=capability.request_timeout_seconds,
            max_retries=capability.max_retries,
        )
    return EchoCapabilityBackend()


@contextmanager
def open_runtime(
    settings: Settings,
    *,
    backend: CapabilityBackend | None = None,
) -> Iterator[Runtime]:
    """Open repositories on a migrated database and wire handlers.

    Everything opened so far is closed again when a later step fails,
    including a failed migration.
    """

    settings.validate()
    with ExitStack() as resources:
        repository = JobRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        resources.callback(repository.close)
        repository.init_schema()
        records = RecordRepository(
            settings.db_path,
            busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        )
        resources.callback(records.close)
        backend = backend or build_backend(settings)
        resources.callback(backend.close)
        audit_sink = LoggingAuditSink()
        orchestrator = BatchOrchestrator(
            repository=repository,
            records=records,
            adapter=CapabilityAdapter(backend),
            max_units_per_invocation=settings.batch.max_units_per_invocation,
            max_seconds_per_invocation=settings.batch.max_seconds_per_invocation,
            audit_sink=audit_sink,
        )
        registry = HandlerRegistry(orchestrator.handlers())
        yield Runtime(
            settings=settings,
            repository=repository,
            records=records,
            backend=backend,
            orchestrator=orchestrator,
            registry=registry,
            queue=JobQueue(repository=repository, registry=registry, audit_sink=audit_sink),
            audit_sink=audit_sink,
        )
