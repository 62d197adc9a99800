from __future__ import annotations

import allure
import pytest

from photo_tasks.engine.errors import ProviderError, ProviderErrorKind
from photo_tasks.engine.failure_classifier import (
    FAILURE_CLASSIFIER_VERSION,
    classify_failure,
)
from photo_tasks.engine.models import FailureClass

pytestmark = [
    allure.epic("Retry Engine"),
    allure.feature("Failure Classification"),
]


def test_classifier_version_is_stable() -> None:
    assert FAILURE_CLASSIFIER_VERSION == 1


@pytest.mark.parametrize(
    ("kind", "expected_class"),
    [
        (ProviderErrorKind.TIMEOUT, FailureClass.TRANSIENT_NETWORK),
        (ProviderErrorKind.CONNECTION, FailureClass.TRANSIENT_NETWORK),
        (ProviderErrorKind.DNS, FailureClass.TRANSIENT_NETWORK),
        (ProviderErrorKind.UNAVAILABLE, FailureClass.TRANSIENT_PROVIDER),
        (ProviderErrorKind.RATE_LIMITED, FailureClass.RATE_LIMITED),
        (ProviderErrorKind.QUOTA_EXCEEDED, FailureClass.RATE_LIMITED),
        (ProviderErrorKind.STALLED, FailureClass.STALLED),
    ],
)
def test_transient_kinds_are_retryable(
    kind: ProviderErrorKind,
    expected_class: FailureClass,
) -> None:
    classified = classify_failure(ProviderError("boom", kind=kind))

    assert classified.failure_class == expected_class
    assert classified.retryable is True
    assert classified.reason_code == kind.value


@pytest.mark.parametrize(
    ("kind", "expected_class"),
    [
        (ProviderErrorKind.CONTENT_SAFETY, FailureClass.CONTENT_REJECTED),
        (ProviderErrorKind.COPYRIGHT, FailureClass.CONTENT_REJECTED),
        (ProviderErrorKind.MALFORMED_INPUT, FailureClass.INPUT_INVALID),
        (ProviderErrorKind.AGREEMENT_MISSING, FailureClass.AGREEMENT_MISSING),
        (ProviderErrorKind.UNKNOWN, FailureClass.PROVIDER_REJECTED),
    ],
)
def test_terminal_kinds_are_not_retryable(
    kind: ProviderErrorKind,
    expected_class: FailureClass,
) -> None:
    classified = classify_failure(ProviderError("rejected", kind=kind))

    assert classified.failure_class == expected_class
    assert classified.retryable is False


@pytest.mark.parametrize("status_code", [500, 502, 503, 504])
def test_server_error_statuses_are_transient_provider_failures(status_code: int) -> None:
    classified = classify_failure(
        ProviderError("server", kind=ProviderErrorKind.HTTP_STATUS, status_code=status_code),
    )

    assert classified.failure_class == FailureClass.TRANSIENT_PROVIDER
    assert classified.retryable is True
    assert classified.reason_code == f"http_{status_code}"


def test_http_429_is_rate_limited() -> None:
    classified = classify_failure(
        ProviderError("slow down", kind=ProviderErrorKind.HTTP_STATUS, status_code=429),
    )

    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.retryable is True
    assert classified.reason_code == "http_429"


@pytest.mark.parametrize("status_code", [400, 401, 403, 404, None])
def test_other_statuses_are_terminal(status_code: int | None) -> None:
    classified = classify_failure(
        ProviderError("nope", kind=ProviderErrorKind.HTTP_STATUS, status_code=status_code),
    )

    assert classified.failure_class == FailureClass.PROVIDER_REJECTED
    assert classified.retryable is False


def test_non_provider_errors_are_internal_and_terminal() -> None:
    classified = classify_failure(KeyError("image_url"))

    assert classified.failure_class == FailureClass.INTERNAL
    assert classified.retryable is False
    assert classified.reason_code == "internal_keyerror"


def test_message_text_does_not_affect_classification() -> None:
    classified = classify_failure(
        ProviderError("503 timeout, try again later", kind=ProviderErrorKind.CONTENT_SAFETY),
    )

    assert classified.retryable is False
    assert classified.failure_class == FailureClass.CONTENT_REJECTED


def test_event_details_include_classifier_version() -> None:
    details = classify_failure(
        ProviderError("x", kind=ProviderErrorKind.TIMEOUT),
    ).to_event_details()

    assert details == {
        "classifier_version": FAILURE_CLASSIFIER_VERSION,
        "failure_class": "transient_network",
        "retryable": True,
        "reason_code": "timeout",
    }
