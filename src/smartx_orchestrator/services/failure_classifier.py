"""Deterministic completion failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

COMPLETION_FAILURE_CLASSIFIER_VERSION = 1

TRANSIENT_STATUS_CODES: tuple[int, ...] = (408, 409, 425, 429, 500, 502, 503, 504)


class CompletionFailureKind(str, Enum):
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "insufficient_quota",
    "quota",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "incorrect api key",
    "authentication",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model_not_found",
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "does not exist",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate_limit",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "overloaded",
    "timed out",
    "timeout",
    "connection reset",
    "network error",
    "bad gateway",
)


@dataclass(slots=True)
class CompletionFailureClassification:
    """Normalized failure classification result."""

    kind: CompletionFailureKind
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.kind == CompletionFailureKind.TRANSIENT

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": COMPLETION_FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_completion_failure(
    *,
    status_code: int | None,
    message: str,
) -> CompletionFailureClassification:
    """Classify a failed completion call; billing and auth outrank transient status codes."""

    haystack = message.lower()

    pattern = _first_match(haystack, _BILLING_OR_QUOTA_PATTERNS)
    if pattern is not None:
        return CompletionFailureClassification(
            kind=CompletionFailureKind.BILLING_OR_QUOTA,
            reason_code="completion_billing_or_quota",
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None or status_code in {401, 403}:
        return CompletionFailureClassification(
            kind=CompletionFailureKind.ACCESS_OR_AUTH,
            reason_code="completion_access_or_auth",
            matched_rule="access_or_auth" if pattern is not None else "auth_status_code",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _MODEL_NOT_AVAILABLE_PATTERNS)
    if pattern is not None:
        return CompletionFailureClassification(
            kind=CompletionFailureKind.MODEL_NOT_AVAILABLE,
            reason_code="completion_model_not_available",
            matched_rule="model_not_available",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None or status_code == 429:
        return CompletionFailureClassification(
            kind=CompletionFailureKind.TRANSIENT,
            reason_code="completion_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or status_code in TRANSIENT_STATUS_CODES:
        return CompletionFailureClassification(
            kind=CompletionFailureKind.TRANSIENT,
            reason_code="completion_transient",
            matched_rule=(
                "transient_status_code"
                if status_code in TRANSIENT_STATUS_CODES and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return CompletionFailureClassification(
        kind=CompletionFailureKind.NON_RETRYABLE,
        reason_code="completion_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
