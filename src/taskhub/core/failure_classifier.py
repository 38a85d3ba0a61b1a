"""Deterministic job failure classification for the dispatcher retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from taskhub.errors import JobTimeoutError

FAILURE_CLASSIFIER_VERSION = 1

RATE_LIMIT_STATUS_CODES: frozenset[int] = frozenset({429, 503})

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "429",
    "503",
    "rate limit",
)
_NETWORK_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network",
    "fetch",
    "timeout",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
)
_SERVER_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "500",
    "502",
    "504",
)


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    NETWORK_TRANSIENT = "network_transient"
    SERVER_TRANSIENT = "server_transient"
    NON_RETRYABLE = "non_retryable"


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def rate_limited(self) -> bool:
        return self.failure_class is FailureClass.RATE_LIMITED

    @property
    def retryable(self) -> bool:
        return self.failure_class is not FailureClass.NON_RETRYABLE

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for logs."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_job_failure(error: BaseException) -> FailureClassification:
    """Classify a handler error into a deterministic retry class.

    Matching is by status attribute first, then by lower-cased error text.
    """

    if isinstance(error, JobTimeoutError):
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="job_timeout",
            matched_pattern=None,
        )

    status = error_status(error)
    if status in RATE_LIMIT_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            matched_rule="rate_limit_status",
            matched_pattern=str(status),
        )

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            matched_rule="rate_limit_text",
            matched_pattern=pattern,
        )

    if isinstance(error, (ConnectionError, TimeoutError)):
        return FailureClassification(
            failure_class=FailureClass.NETWORK_TRANSIENT,
            matched_rule="network_exception_type",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _NETWORK_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.NETWORK_TRANSIENT,
            matched_rule="network_text",
            matched_pattern=pattern,
        )

    if status is not None and 500 <= status <= 599:
        return FailureClassification(
            failure_class=FailureClass.SERVER_TRANSIENT,
            matched_rule="server_status",
            matched_pattern=str(status),
        )

    pattern = _first_match(haystack, _SERVER_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.SERVER_TRANSIENT,
            matched_rule="server_text",
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def is_rate_limited(error: BaseException) -> bool:
    return classify_job_failure(error).rate_limited


def is_retryable(error: BaseException) -> bool:
    return classify_job_failure(error).retryable


def error_status(error: BaseException) -> int | None:
    """Numeric HTTP-like status carried by the error, if any."""

    for attribute in ("status", "status_code"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
