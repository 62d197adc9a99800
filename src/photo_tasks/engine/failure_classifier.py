"""Deterministic provider failure classification for retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from photo_tasks.engine.errors import ProviderError, ProviderErrorKind
from photo_tasks.engine.models import RETRYABLE_FAILURE_CLASSES, FailureClass

FAILURE_CLASSIFIER_VERSION = 1

RETRYABLE_HTTP_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

_KIND_TO_CLASS: dict[ProviderErrorKind, FailureClass] = {
    ProviderErrorKind.TIMEOUT: FailureClass.TRANSIENT_NETWORK,
    ProviderErrorKind.CONNECTION: FailureClass.TRANSIENT_NETWORK,
    ProviderErrorKind.DNS: FailureClass.TRANSIENT_NETWORK,
    ProviderErrorKind.UNAVAILABLE: FailureClass.TRANSIENT_PROVIDER,
    ProviderErrorKind.RATE_LIMITED: FailureClass.RATE_LIMITED,
    ProviderErrorKind.QUOTA_EXCEEDED: FailureClass.RATE_LIMITED,
    ProviderErrorKind.STALLED: FailureClass.STALLED,
    ProviderErrorKind.CONTENT_SAFETY: FailureClass.CONTENT_REJECTED,
    ProviderErrorKind.COPYRIGHT: FailureClass.CONTENT_REJECTED,
    ProviderErrorKind.MALFORMED_INPUT: FailureClass.INPUT_INVALID,
    ProviderErrorKind.AGREEMENT_MISSING: FailureClass.AGREEMENT_MISSING,
    ProviderErrorKind.UNKNOWN: FailureClass.PROVIDER_REJECTED,
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    reason_code: str

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
        }


def classify_failure(error: BaseException) -> FailureClassification:
    """Map a failure raised by a provider call to a retry class.

    Only `ProviderError` carries a kind; anything else raised from a provider
    call is a programming or data error and is never retried.
    """

    if not isinstance(error, ProviderError):
        return FailureClassification(
            failure_class=FailureClass.INTERNAL,
            retryable=False,
            reason_code=f"internal_{type(error).__name__.lower()}",
        )

    if error.kind == ProviderErrorKind.HTTP_STATUS:
        return _classify_http_status(error.status_code)

    failure_class = _KIND_TO_CLASS[error.kind]
    return FailureClassification(
        failure_class=failure_class,
        retryable=failure_class in RETRYABLE_FAILURE_CLASSES,
        reason_code=error.kind.value,
    )


def _classify_http_status(status_code: int | None) -> FailureClassification:
    if status_code == 429:  # noqa: PLR2004
        return FailureClassification(
            failure_class=FailureClass.RATE_LIMITED,
            retryable=True,
            reason_code="http_429",
        )
    if status_code in RETRYABLE_HTTP_STATUSES:
        return FailureClassification(
            failure_class=FailureClass.TRANSIENT_PROVIDER,
            retryable=True,
            reason_code=f"http_{status_code}",
        )
    return FailureClassification(
        failure_class=FailureClass.PROVIDER_REJECTED,
        retryable=False,
        reason_code=f"http_{status_code}" if status_code is not None else "http_unknown",
    )
