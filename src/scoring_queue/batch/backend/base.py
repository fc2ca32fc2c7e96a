"""Capability backend interface for batch work items."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

Vector = list[float]


class CapabilityKind(str, Enum):
    """External capability a work item needs."""

    COMPLETION = "completion"
    EMBEDDING = "embedding"


@dataclass(slots=True)
class ItemOutcome:
    """Classified outcome of one capability call.

    ``value`` holds the completion text or the embedding vector on success;
    on failure ``failure_kind`` is ``transient`` or ``empty_result``.
    """

    ok: bool
    value: str | Vector | None = None
    failure_kind: str | None = None
    error: str | None = None


class CapabilityBackend(Protocol):
    """Protocol implemented by completion/embedding providers.

    Implementations raise TransientItemFailure, EmptyResultFailure or
    ConfigurationFailure from ``scoring_queue.queue.errors``.
    """

    name: str

    def complete(self, prompt: str, system_prompt: str) -> str:
        """Return completion text for a prompt."""

    def embed(self, text: str) -> Vector:
        """Return an embedding vector for text."""

    def close(self) -> None:
        """Release network resources."""
