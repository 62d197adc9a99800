"""Drives one claimed task through the gateway and records its outcome."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from photo_tasks.engine.errors import (
    AlreadyBilledError,
    BillingError,
    ProviderError,
    RetryBudgetExhausted,
)
from photo_tasks.engine.failure_classifier import FailureClassification, classify_failure
from photo_tasks.engine.gateway import RequestGateway, RetryPolicy
from photo_tasks.engine.ledger import BillingLedger
from photo_tasks.engine.models import FailureClass, TaskFailure, TaskStatus, TaskView
from photo_tasks.engine.provider import GenerationProvider, ProviderRequest
from photo_tasks.engine.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskOutcome:
    """Where a drive left the task."""

    task_id: str
    status: TaskStatus
    result: dict[str, Any] | None = None
    error: str | None = None
    failure_class: FailureClass | None = None
    billed: bool = False
    billing_failed: bool = False

    @property
    def finished(self) -> bool:
        return self.status in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class TaskRunner:
    """Shared execution path for foreground, background and manual drives.

    The caller claims the task first; the runner then invokes the provider
    through the gateway and is the only place that decides the next status.
    Billing is decided from the task's own `billed` and `billing_suppressed`
    fields after the task is completed.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        ledger: BillingLedger,
        provider: GenerationProvider,
        gateway: RequestGateway,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.provider = provider
        self.gateway = gateway

    def drive(
        self,
        task: TaskView,
        *,
        policy: RetryPolicy,
        park_on_exhaustion: bool,
    ) -> TaskOutcome:
        """Run a `processing` task to completion, failure or parking.

        A drive that may park the task keeps one retry back so the background
        tier can still pick it up.
        """

        request = ProviderRequest(
            task_id=task.task_id,
            kind=task.kind,
            payload=task.payload,
            timeout_seconds=policy.call_timeout_seconds,
        )
        reserve = 1 if park_on_exhaustion else 0

        def _on_retry(
            _attempt: int,
            error: BaseException,
            classification: FailureClassification,
        ) -> bool:
            return self.repository.record_retry(
                task_id=task.task_id,
                failure=_failure_from(classification, error),
                reserve=reserve,
            )

        try:
            output = self.gateway.attempt(
                lambda: self.provider.invoke(request),
                policy=policy,
                on_retry=_on_retry,
            )
        except RetryBudgetExhausted as exhausted:
            return self._handle_exhausted(
                task=task,
                exhausted=exhausted,
                park_on_exhaustion=park_on_exhaustion,
            )
        except ProviderError as error:
            return self._fail(task_id=task.task_id, error=error)
        except Exception as error:
            logger.exception("Provider call for task %s raised unexpectedly", task.task_id)
            return self._fail(task_id=task.task_id, error=error)

        result = output.to_result()
        if not self.repository.complete_task(task_id=task.task_id, result=result):
            logger.warning(
                "Task %s changed state while its provider call was running, "
                "discarding the result",
                task.task_id,
            )
            return self._current_outcome(task.task_id)
        return self._bill(task.task_id, result=result)

    def _handle_exhausted(
        self,
        *,
        task: TaskView,
        exhausted: RetryBudgetExhausted,
        park_on_exhaustion: bool,
    ) -> TaskOutcome:
        classification = classify_failure(exhausted.last_error)
        failure = _failure_from(classification, exhausted.last_error)
        current = self.repository.get_task(task.task_id)
        if park_on_exhaustion and current is not None and current.retries_left:
            if self.repository.park_for_background(task_id=task.task_id, failure=failure):
                logger.info(
                    "Task %s parked for background retry: %s",
                    task.task_id,
                    exhausted.reason,
                )
                return TaskOutcome(
                    task_id=task.task_id,
                    status=TaskStatus.PENDING_BACKGROUND_RETRY,
                    error=failure.error_summary,
                    failure_class=failure.failure_class,
                )
            return self._current_outcome(task.task_id)
        if not self.repository.fail_task(task_id=task.task_id, failure=failure):
            return self._current_outcome(task.task_id)
        return TaskOutcome(
            task_id=task.task_id,
            status=TaskStatus.FAILED,
            error=failure.error_summary,
            failure_class=failure.failure_class,
        )

    def _fail(self, *, task_id: str, error: BaseException) -> TaskOutcome:
        failure = _failure_from(classify_failure(error), error)
        if not self.repository.fail_task(task_id=task_id, failure=failure):
            return self._current_outcome(task_id)
        return TaskOutcome(
            task_id=task_id,
            status=TaskStatus.FAILED,
            error=failure.error_summary,
            failure_class=failure.failure_class,
        )

    def _bill(self, task_id: str, *, result: dict[str, Any]) -> TaskOutcome:
        task = self.repository.get_task(task_id)
        outcome = TaskOutcome(task_id=task_id, status=TaskStatus.COMPLETED, result=result)
        if task is None or task.billing_suppressed:
            return outcome
        if task.billed:
            outcome.billed = True
            return outcome
        try:
            self.ledger.debit(task_id)
        except AlreadyBilledError:
            logger.info("Task %s was already billed", task_id)
            outcome.billed = True
        except (BillingError, SQLAlchemyError) as error:
            logger.error(  # noqa: TRY400
                "billing_failed task=%s user=%s cost=%s: %s",
                task_id,
                task.user_id,
                task.cost,
                error,
            )
            self.repository.mark_billing_failed(task_id=task_id, error_summary=str(error))
            outcome.billing_failed = True
        else:
            outcome.billed = True
        return outcome

    def _current_outcome(self, task_id: str) -> TaskOutcome:
        task = self.repository.get_task(task_id)
        if task is None:
            return TaskOutcome(task_id=task_id, status=TaskStatus.FAILED, error="task vanished")
        return TaskOutcome(
            task_id=task_id,
            status=task.status,
            result=task.result,
            error=task.error_summary,
            failure_class=task.failure_class,
            billed=task.billed,
            billing_failed=task.billing_failed,
        )


def _failure_from(
    classification: FailureClassification,
    error: BaseException,
) -> TaskFailure:
    return TaskFailure(
        failure_class=classification.failure_class,
        retryable=classification.retryable,
        error_summary=str(error) or type(error).__name__,
        details=classification.to_event_details(),
    )
