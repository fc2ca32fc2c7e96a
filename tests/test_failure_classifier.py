from __future__ import annotations

import allure
import httpx
import pytest

from scoring_queue.queue.errors import (
    ConfigurationFailure,
    EmptyResultFailure,
    TransientItemFailure,
    TransientJobFailure,
    ValidationError,
)
from scoring_queue.queue.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
    classify_message,
)
from scoring_queue.queue.models import FailureClass

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Worker Retry & Cancellation"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("error", "failure_class"),
    [
        (ValidationError("payload.record_id must be a non-empty string"), FailureClass.VALIDATION),
        (ConfigurationFailure("System guidelines not found."), FailureClass.CONFIGURATION),
        (TransientJobFailure("provider hiccup"), FailureClass.TRANSIENT),
        (TransientItemFailure("HTTP 502"), FailureClass.TRANSIENT),
        (httpx.ReadTimeout("read timed out"), FailureClass.TRANSIENT),
        (TimeoutError(), FailureClass.TRANSIENT),
        (EmptyResultFailure("Provider returned an empty embedding."), FailureClass.NON_RETRYABLE),
    ],
)
def test_classifier_maps_declared_error_types(
    error: BaseException,
    failure_class: FailureClass,
) -> None:
    assert classify_failure(error).failure_class == failure_class


def test_validation_wins_over_transient_looking_message() -> None:
    classified = classify_failure(ValidationError("timeout must be an integer"))
    assert classified.failure_class == FailureClass.VALIDATION
    assert classified.retryable is False


def test_classifier_prefers_configuration_over_rate_limit() -> None:
    classified = classify_message("HTTP 429: invalid api key, please retry")
    assert classified.failure_class == FailureClass.CONFIGURATION
    assert classified.matched_rule == "configuration_pattern"
    assert classified.matched_pattern == "invalid api key"


def test_classifier_maps_rate_limit_to_transient() -> None:
    classified = classify_failure(RuntimeError("Too Many Requests, try again later"))
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.retryable is True


def test_classifier_treats_locked_database_as_transient() -> None:
    classified = classify_message("sqlite3.OperationalError: database is locked")
    assert classified.failure_class == FailureClass.TRANSIENT
    assert classified.matched_pattern == "database is locked"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_failure(ZeroDivisionError("division by zero"))
    assert classified.failure_class == FailureClass.NON_RETRYABLE
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "reason_code": "non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
