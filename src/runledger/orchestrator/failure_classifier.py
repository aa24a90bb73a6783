"""Deterministic task process failure classification for retry and rotation policy."""

from __future__ import annotations

from dataclasses import dataclass

from runledger.orchestrator.models import FailureClass

FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "usage_limit_reached",
    "usage limit",
    "rate limit",
    "rate_limit",
    "ratelimit",
    "http 429",
    "status 429",
    "too many requests",
    "quota",
    "resource_exhausted",
    "overloaded_error",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "invalid api key",
    "invalid x-api-key",
    "invalid_api_key",
    "authentication_error",
    "authentication failed",
    "credit balance is too low",
    "permission denied",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "try again later",
    "timed out",
)

ROTATING_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {FailureClass.RATE_LIMITED, FailureClass.ACCESS_OR_AUTH},
)
RETRYABLE_FAILURE_CLASSES: frozenset[FailureClass] = frozenset(
    {FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT},
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def rotates_credential(self) -> bool:
        return self.failure_class in ROTATING_FAILURE_CLASSES

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_task_failure(  # noqa: PLR0913
    *,
    exit_code: int,
    timed_out: bool,
    stdout: str,
    stderr: str,
    rate_limit_exit_code: int,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    """Classify a non-zero task process exit."""

    if timed_out:
        return FailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )
    if exit_code == rate_limit_exit_code:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            matched_rule="rate_limit_exit_code",
            matched_pattern=None,
        )

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            matched_rule="rate_limit",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return FailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return FailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
