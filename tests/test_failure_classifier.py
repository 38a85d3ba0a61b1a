from __future__ import annotations

import allure
import pytest

from taskhub.core.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    FailureClass,
    classify_job_failure,
    error_status,
    is_rate_limited,
    is_retryable,
)
from taskhub.errors import JobTimeoutError

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Failure Classification"),
]


class _HttpError(Exception):
    def __init__(self, message: str, *, status: int | None = None, status_code=None) -> None:
        super().__init__(message)
        if status is not None:
            self.status = status
        if status_code is not None:
            self.status_code = status_code


@pytest.mark.parametrize(
    ("error", "expected_class", "expected_rule"),
    [
        (JobTimeoutError(5), FailureClass.TIMEOUT, "job_timeout"),
        (_HttpError("slow down", status=429), FailureClass.RATE_LIMITED, "rate_limit_status"),
        (_HttpError("busy", status_code=503), FailureClass.RATE_LIMITED, "rate_limit_status"),
        (RuntimeError("Rate limit exceeded"), FailureClass.RATE_LIMITED, "rate_limit_text"),
        (RuntimeError("upstream said 429"), FailureClass.RATE_LIMITED, "rate_limit_text"),
        (ConnectionResetError(), FailureClass.NETWORK_TRANSIENT, "network_exception_type"),
        (RuntimeError("ECONNRESET"), FailureClass.NETWORK_TRANSIENT, "network_text"),
        (RuntimeError("fetch failed"), FailureClass.NETWORK_TRANSIENT, "network_text"),
        (_HttpError("oops", status=500), FailureClass.SERVER_TRANSIENT, "server_status"),
        (RuntimeError("HTTP 502 Bad Gateway"), FailureClass.SERVER_TRANSIENT, "server_text"),
        (ValueError("invalid input"), FailureClass.NON_RETRYABLE, "fallback_non_retryable"),
    ],
)
def test_classify_job_failure(
    error: BaseException,
    expected_class: FailureClass,
    expected_rule: str,
) -> None:
    classification = classify_job_failure(error)

    assert classification.failure_class is expected_class
    assert classification.matched_rule == expected_rule


def test_rate_limited_errors_are_retryable() -> None:
    error = _HttpError("Too Many Requests", status=429)

    assert is_rate_limited(error)
    assert is_retryable(error)


def test_plain_errors_are_neither_rate_limited_nor_retryable() -> None:
    error = KeyError("missing")

    assert not is_rate_limited(error)
    assert not is_retryable(error)


def test_error_status_ignores_non_integer_attributes() -> None:
    assert error_status(_HttpError("x", status_code="429")) is None
    assert error_status(_HttpError("x", status=True)) is None
    assert error_status(_HttpError("x", status_code=404)) == 404


def test_classification_reports_matched_pattern() -> None:
    classification = classify_job_failure(RuntimeError("connection refused by peer"))

    assert classification.matched_pattern == "connection refused"
    assert classification.retryable
    assert not classification.rate_limited


def test_event_details_carry_classifier_version() -> None:
    details = classify_job_failure(RuntimeError("rate limit exceeded")).to_event_details()

    assert details == {
        "classifier_version": FAILURE_CLASSIFIER_VERSION,
        "failure_class": "rate_limited",
        "matched_rule": "rate_limit_text",
        "matched_pattern": "rate limit",
    }
