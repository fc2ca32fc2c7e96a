"""Capability backends used by the batch orchestrator."""

from scoring_queue.batch.backend.adapter import CapabilityAdapter
from scoring_queue.batch.backend.base import (
    CapabilityBackend,
    CapabilityKind,
    ItemOutcome,
    Vector,
)
from scoring_queue.batch.backend.echo_backend import EchoCapabilityBackend
from scoring_queue.batch.backend.http_backend import HttpCapabilityBackend

__all__ = [
    "CapabilityAdapter",
    "CapabilityBackend",
    "CapabilityKind",
    "EchoCapabilityBackend",
    "HttpCapabilityBackend",
    "ItemOutcome",
    "Vector",
]
