"""Error taxonomy shared by the queue, worker and batch orchestrator."""

from __future__ import annotations


class ValidationError(ValueError):
    """Enqueue request rejected before a job row is created."""


class JobNotFoundError(RuntimeError):
    """Requested job id does not exist."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidTransitionError(RuntimeError):
    """Administrative action is not allowed from the job's current status."""


class ScopeBusyError(RuntimeError):
    """Another active job already owns the batch scope."""

    def __init__(self, *, scope_key: str, job_id: str) -> None:
        super().__init__(
            f"Another job is already active for this scope (scope={scope_key}, job_id={job_id}).",
        )
        self.scope_key = scope_key
        self.job_id = job_id


class TransientJobFailure(RuntimeError):
    """Job-level failure that is worth retrying with backoff."""


class ConfigurationFailure(RuntimeError):
    """Missing prerequisite resource; retrying cannot fix it."""


class ItemFailure(RuntimeError):
    """Base for failures scoped to one work item."""

    kind = "item_failure"


class TransientItemFailure(ItemFailure):
    """Network or provider error while processing one work item."""

    kind = "transient"


class EmptyResultFailure(ItemFailure):
    """Provider answered but returned no usable output."""

    kind = "empty_result"
