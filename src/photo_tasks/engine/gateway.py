"""Bounded-duration retry loop around one provider call."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from photo_tasks.config import RetryBudgetSettings
from photo_tasks.engine.errors import RetryBudgetExhausted
from photo_tasks.engine.failure_classifier import FailureClassification, classify_failure

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryCallback = Callable[[int, BaseException, FailureClassification], bool]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff shape and total budget for one tier (foreground or background)."""

    name: str
    budget_seconds: float
    call_timeout_seconds: float
    initial_delay_seconds: float
    max_delay_seconds: float
    backoff_multiplier: float = 2.0

    @classmethod
    def from_settings(cls, name: str, settings: RetryBudgetSettings) -> RetryPolicy:
        return cls(
            name=name,
            budget_seconds=settings.budget_seconds,
            call_timeout_seconds=settings.call_timeout_seconds,
            initial_delay_seconds=settings.initial_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            backoff_multiplier=settings.backoff_multiplier,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before the attempt that follows failed attempt number `attempt`."""

        return min(
            self.initial_delay_seconds * self.backoff_multiplier ** max(attempt - 1, 0),
            self.max_delay_seconds,
        )


class RequestGateway:
    """Runs a call until it succeeds, fails terminally, or the budget runs out.

    Terminal failures propagate unchanged on first occurrence. Transient
    failures are retried with exponential backoff while the next delay still
    fits in the remaining budget; otherwise `RetryBudgetExhausted` is raised
    with the last transient error attached. A single slow call is allowed to
    overrun the budget, only new attempts are stopped.
    """

    def __init__(
        self,
        *,
        classify: Callable[[BaseException], FailureClassification] = classify_failure,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._classify = classify
        self._monotonic = monotonic
        self._sleep = sleep

    def attempt(
        self,
        call: Callable[[], T],
        *,
        policy: RetryPolicy,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Invoke `call` under `policy`.

        `on_retry(attempt, error, classification)` runs before each re-attempt
        and may veto it by returning `False`, for example when the task has
        reached its retry cap.
        """

        started = self._monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                return call()
            except Exception as error:
                classification = self._classify(error)
                if not classification.retryable:
                    logger.info(
                        "%s attempt %s failed terminally: %s (%s)",
                        policy.name,
                        attempt,
                        error,
                        classification.reason_code,
                    )
                    raise

                remaining = policy.budget_seconds - (self._monotonic() - started)
                delay = policy.delay_for(attempt)
                if delay >= remaining:
                    logger.info(
                        "%s retry budget exhausted after %s attempt(s): %s",
                        policy.name,
                        attempt,
                        error,
                    )
                    raise RetryBudgetExhausted(
                        error,
                        attempts=attempt,
                        reason="retry budget exhausted",
                    ) from error
                if on_retry is not None and not on_retry(attempt, error, classification):
                    raise RetryBudgetExhausted(
                        error,
                        attempts=attempt,
                        reason="retry limit reached",
                    ) from error

                logger.warning(
                    "%s attempt %s failed (%s), retrying in %.1fs",
                    policy.name,
                    attempt,
                    classification.reason_code,
                    delay,
                )
                self._sleep(delay)
