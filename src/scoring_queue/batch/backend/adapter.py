"""Per-item isolation around a capability backend."""

from __future__ import annotations

import logging
from typing import Any

from scoring_queue.batch.backend.base import CapabilityBackend, CapabilityKind, ItemOutcome
from scoring_queue.queue.errors import (
    ConfigurationFailure,
    EmptyResultFailure,
    ItemFailure,
    TransientItemFailure,
)

logger = logging.getLogger(__name__)

_MAX_ERROR_CHARS = 500


class CapabilityAdapter:
    """Turns one backend call into an ItemOutcome.

    Item-scoped failures never escape: only ConfigurationFailure propagates,
    because no other work item could succeed under the same configuration.
    """

    def __init__(self, backend: CapabilityBackend) -> None:
        self.backend = backend

    def invoke(
        self,
        kind: CapabilityKind,
        content: str,
        context: dict[str, Any] | None = None,
    ) -> ItemOutcome:
        context = context or {}
        try:
            if kind == CapabilityKind.COMPLETION:
                value: str | list[float] = self.backend.complete(
                    content,
                    str(context.get("system_prompt", "")),
                )
                if not isinstance(value, str) or not value.strip():
                    raise EmptyResultFailure("Provider returned an empty completion.")
            else:
                value = self.backend.embed(content)
                if not value:
                    raise EmptyResultFailure("Provider returned an empty embedding.")
        except ConfigurationFailure:
            raise
        except ItemFailure as error:
            logger.warning(
                "Item failed on %s backend (%s): %s",
                self.backend.name,
                error.kind,
                error,
            )
            return ItemOutcome(ok=False, failure_kind=error.kind, error=_trim(str(error)))
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Unexpected %s from %s backend treated as transient item failure",
                error.__class__.__name__,
                self.backend.name,
                exc_info=True,
            )
            return ItemOutcome(
                ok=False,
                failure_kind=TransientItemFailure.kind,
                error=_trim(f"{error.__class__.__name__}: {error}"),
            )
        return ItemOutcome(ok=True, value=value)


def _trim(message: str) -> str:
    return message[:_MAX_ERROR_CHARS]
