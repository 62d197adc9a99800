"""Stuck task detection and operator-driven recovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from photo_tasks.engine.errors import (
    ProviderError,
    ProviderErrorKind,
    TaskNotFoundError,
    TaskStateError,
)
from photo_tasks.engine.failure_classifier import classify_failure
from photo_tasks.engine.gateway import RetryPolicy
from photo_tasks.engine.models import (
    TaskCreate,
    TaskFailure,
    TaskOrigin,
    TaskStatus,
    TaskView,
)
from photo_tasks.engine.repository import TaskRepository
from photo_tasks.engine.runner import TaskOutcome, TaskRunner

logger = logging.getLogger(__name__)

STALLED_ERROR = "stalled: no progress while processing"


@dataclass(slots=True)
class CleanupResult:
    """Per-task result of a stuck task cleanup."""

    task_id: str
    force_failed: bool
    stuck_for_seconds: float


@dataclass(slots=True)
class ManualRetryResult:
    """Outcome of an operator re-drive."""

    original_task_id: str
    new_task_id: str
    outcome: TaskOutcome


class StuckTaskReaper:
    """Reclaims tasks left in `processing` by a crashed or lost worker.

    Force-failing never touches the ledger. A manual retry re-runs the work as
    a new, billing-suppressed task linked to the original, so an attempt that
    may already have been charged is never charged again.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        runner: TaskRunner,
        policy: RetryPolicy,
        stuck_threshold_seconds: int,
        worker_id: str,
        max_retries: int,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.policy = policy
        self.stuck_after = timedelta(seconds=stuck_threshold_seconds)
        self.worker_id = worker_id
        self.max_retries = max_retries

    def list_stuck(self, *, threshold_seconds: int | None = None) -> list[TaskView]:
        return self.repository.list_stuck(stuck_after=self._threshold(threshold_seconds))

    def cleanup(self, *, threshold_seconds: int | None = None) -> list[CleanupResult]:
        """Force-fail every stuck task."""

        stuck_after = self._threshold(threshold_seconds)
        now = self.repository.now()
        results: list[CleanupResult] = []
        for task in self.repository.list_stuck(stuck_after=stuck_after):
            force_failed = self.repository.force_fail_stuck(
                task_id=task.task_id,
                stuck_after=stuck_after,
                failure=_stalled_failure(),
            )
            if force_failed:
                logger.warning("Force-failed stuck task %s", task.task_id)
            results.append(
                CleanupResult(
                    task_id=task.task_id,
                    force_failed=force_failed,
                    stuck_for_seconds=(now - task.updated_at).total_seconds(),
                ),
            )
        return results

    def force_fail(self, task_id: str) -> TaskView:
        """Force-fail one stuck task."""

        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if task.status != TaskStatus.PROCESSING:
            raise TaskStateError(f"Task {task_id} is {task.status.value}, not processing")
        if not self.repository.force_fail_stuck(
            task_id=task_id,
            stuck_after=self.stuck_after,
            failure=_stalled_failure(),
        ):
            raise TaskStateError(
                f"Task {task_id} is not stuck (updated within the last "
                f"{int(self.stuck_after.total_seconds())}s) or changed state",
            )
        logger.warning("Force-failed stuck task %s", task_id)
        refreshed = self.repository.get_task(task_id)
        if refreshed is None:
            raise TaskNotFoundError(task_id)
        return refreshed

    def manual_retry(self, task_id: str) -> ManualRetryResult:
        """Re-drive a stuck or failed task as a new billing-suppressed record."""

        original = self.repository.get_task(task_id)
        if original is None:
            raise TaskNotFoundError(task_id)
        if original.status == TaskStatus.PROCESSING:
            original = self.force_fail(task_id)
        if original.status != TaskStatus.FAILED:
            raise TaskStateError(
                f"Only stuck or failed tasks can be retried manually, got {original.status.value}",
            )

        replacement = self.repository.create_replacement(
            original_task_id=original.task_id,
            payload=TaskCreate(
                user_id=original.user_id,
                kind=original.kind,
                payload=original.payload,
                cost=original.cost,
                max_retries=self.max_retries,
                origin=TaskOrigin.MANUAL,
                billing_suppressed=True,
                parent_task_id=original.task_id,
            ),
        )
        if replacement is None:
            raise TaskStateError(
                f"Task {original.task_id} changed state before it could be superseded",
            )
        claimed = self.repository.claim_task(
            task_id=replacement.task_id,
            worker_id=self.worker_id,
            expected_status=TaskStatus.PENDING,
            count_as_retry=False,
        )
        if claimed is None:
            raise TaskStateError(f"Task {replacement.task_id} was claimed before manual retry")

        logger.info("Manual retry of %s as %s", original.task_id, replacement.task_id)
        outcome = self.runner.drive(claimed, policy=self.policy, park_on_exhaustion=True)
        return ManualRetryResult(
            original_task_id=original.task_id,
            new_task_id=replacement.task_id,
            outcome=outcome,
        )

    def _threshold(self, threshold_seconds: int | None) -> timedelta:
        if threshold_seconds is None:
            return self.stuck_after
        if threshold_seconds <= 0:
            raise ValueError(f"Stuck threshold must be positive, got {threshold_seconds}")
        return timedelta(seconds=threshold_seconds)


def _stalled_failure() -> TaskFailure:
    classification = classify_failure(
        ProviderError(STALLED_ERROR, kind=ProviderErrorKind.STALLED),
    )
    return TaskFailure(
        failure_class=classification.failure_class,
        retryable=classification.retryable,
        error_summary=STALLED_ERROR,
        details=classification.to_event_details(),
    )
