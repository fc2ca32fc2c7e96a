"""Deterministic failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx

from scoring_queue.queue.errors import (
    ConfigurationFailure,
    TransientItemFailure,
    TransientJobFailure,
    ValidationError,
)
from scoring_queue.queue.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_CONFIGURATION_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "missing api key",
    "authentication",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "bad gateway",
    "connection reset",
    "connection refused",
    "network error",
    "database is locked",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class == FailureClass.TRANSIENT

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Classify a handler exception into fatal or retryable."""

    if isinstance(error, ValidationError):
        return FailureClassification(
            failure_class=FailureClass.VALIDATION,
            reason_code="payload_invalid",
            matched_rule="validation_error",
            matched_pattern=None,
        )
    if isinstance(error, ConfigurationFailure):
        return FailureClassification(
            failure_class=FailureClass.CONFIGURATION,
            reason_code="configuration_missing",
            matched_rule="configuration_failure",
            matched_pattern=None,
        )
    if isinstance(error, (TransientJobFailure, TransientItemFailure)):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="declared_transient",
            matched_rule="transient_failure",
            matched_pattern=None,
        )
    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, TimeoutError)):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="network_transient",
            matched_rule="network_error_type",
            matched_pattern=None,
        )
    return classify_message(str(error))


def classify_message(message: str) -> FailureClassification:
    """Classify free-form provider or runtime text by known patterns."""

    haystack = message.lower()

    pattern = _first_match(haystack, _CONFIGURATION_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.CONFIGURATION,
            reason_code="access_or_auth",
            matched_rule="configuration_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="generic_transient",
            matched_rule="generic_transient",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        reason_code="non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
