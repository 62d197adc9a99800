"""Exceptions raised across the task engine."""

from __future__ import annotations

from enum import Enum


class ProviderErrorKind(str, Enum):
    """Closed set of provider failure kinds set at the adapter boundary."""

    TIMEOUT = "timeout"
    CONNECTION = "connection"
    DNS = "dns"
    HTTP_STATUS = "http_status"
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    QUOTA_EXCEEDED = "quota_exceeded"
    CONTENT_SAFETY = "content_safety"
    COPYRIGHT = "copyright"
    MALFORMED_INPUT = "malformed_input"
    AGREEMENT_MISSING = "agreement_missing"
    STALLED = "stalled"
    UNKNOWN = "unknown"


class ProviderError(RuntimeError):
    """Generation provider failure with a machine-checkable kind."""

    def __init__(
        self,
        message: str,
        *,
        kind: ProviderErrorKind,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    def __repr__(self) -> str:
        return (
            f"ProviderError({str(self)!r}, kind={self.kind.value}, status_code={self.status_code})"
        )


class RetryBudgetExhausted(RuntimeError):
    """Raised when transient failures outlast the retry budget or the retry cap."""

    def __init__(self, last_error: BaseException, *, attempts: int, reason: str) -> None:
        super().__init__(f"{reason} after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts
        self.reason = reason


class TaskNotFoundError(LookupError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class TaskStateError(RuntimeError):
    """Task is not in a state that allows the requested transition."""


class BillingError(RuntimeError):
    """Base billing failure."""


class UserNotFoundError(BillingError):
    def __init__(self, user_id: str) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class InsufficientBalanceError(BillingError):
    def __init__(self, user_id: str, *, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient balance for {user_id}: required={required} available={available}",
        )
        self.user_id = user_id
        self.required = required
        self.available = available


class AlreadyBilledError(BillingError):
    """A ledger entry for this task and direction already exists."""


class InvalidPayloadError(ValueError):
    """Task payload does not match the shape its kind requires."""
