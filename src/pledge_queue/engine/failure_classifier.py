"""Deterministic submission failure classification for item retry policy."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from sqlalchemy.exc import SQLAlchemyError

from pledge_queue.engine.models import RETRYABLE_FAILURE_CLASSES, FailureClass
from pledge_queue.sky.auth import CredentialUnavailableError
from pledge_queue.sky.client import SkyApiError, SkyResponseError
from pledge_queue.sky.models import PledgeValidationError

SUBMISSION_FAILURE_CLASSIFIER_VERSION = 1

_VALIDATION_STATUS_CODES = frozenset({400, 404, 409, 422})
_ACCESS_STATUS_CODES = frozenset({401, 403})
_RATE_LIMIT_STATUS_CODES = frozenset({429})
_TRANSIENT_STATUS_CODES = frozenset({408, 425, 500, 502, 503, 504})

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "quota",
    "please retry",
    "try again later",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid_token",
    "token expired",
    "subscription key",
    "access denied",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "timed out",
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
    status_code: int | None = None
    resubmit_safe: bool = True

    @property
    def retryable(self) -> bool:
        return self.resubmit_safe and self.failure_class in RETRYABLE_FAILURE_CLASSES

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for item events."""

        return {
            "classifier_version": SUBMISSION_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


def classify_submission_failure(error: BaseException) -> FailureClassification:  # noqa: PLR0911
    """Classify an exception raised while submitting one item."""

    if isinstance(error, PledgeValidationError):
        return FailureClassification(
            failure_class=FailureClass.VALIDATION,
            reason_code="payload_invalid",
            matched_rule="payload_validation",
            matched_pattern=None,
        )
    if isinstance(error, SkyResponseError):
        # The gift may exist remotely; resubmitting would risk a duplicate.
        return FailureClassification(
            failure_class=FailureClass.UNEXPECTED,
            reason_code="sky_unreadable_response",
            matched_rule="unreadable_success_response",
            matched_pattern=None,
            resubmit_safe=False,
        )
    if isinstance(error, SkyApiError):
        return _classify_http_status(error)
    if isinstance(error, CredentialUnavailableError):
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code="credential_unavailable",
            matched_rule="credential_unavailable",
            matched_pattern=None,
        )
    if isinstance(error, httpx.TransportError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="sky_transport_error",
            matched_rule="transport_error",
            matched_pattern=type(error).__name__,
        )
    if isinstance(error, SQLAlchemyError):
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="storage_error",
            matched_rule="storage_error",
            matched_pattern=type(error).__name__,
        )
    return _classify_message(str(error))


def _classify_http_status(error: SkyApiError) -> FailureClassification:
    status = error.status_code
    if status in _RATE_LIMIT_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="sky_rate_limited",
            matched_rule="rate_limit_status",
            matched_pattern=str(status),
            status_code=status,
        )
    if status in _ACCESS_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code="sky_access_or_auth",
            matched_rule="access_status",
            matched_pattern=str(status),
            status_code=status,
        )
    if status in _VALIDATION_STATUS_CODES:
        return FailureClassification(
            failure_class=FailureClass.VALIDATION,
            reason_code="sky_rejected_request",
            matched_rule="validation_status",
            matched_pattern=str(status),
            status_code=status,
        )
    if status in _TRANSIENT_STATUS_CODES or status >= 500:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT,
            reason_code="sky_transient",
            matched_rule="transient_status",
            matched_pattern=str(status),
            status_code=status,
        )
    classified = _classify_message(error.body)
    classified.status_code = status
    return classified


def _classify_message(message: str) -> FailureClassification:
    haystack = _normalize_text(message)

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            reason_code="rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return FailureClassification(
            failure_class=FailureClass.ACCESS_OR_AUTH,
            reason_code="access_or_auth",
            matched_rule="access_or_auth",
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
        failure_class=FailureClass.UNEXPECTED,
        reason_code="unexpected",
        matched_rule="fallback_unexpected",
        matched_pattern=None,
    )


def _normalize_text(message: str) -> str:
    return message.lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
