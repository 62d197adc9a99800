"""Use-case services for the foreground submission path."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from photo_tasks.engine.errors import (
    InsufficientBalanceError,
    InvalidPayloadError,
    TaskStateError,
)
from photo_tasks.engine.gateway import RetryPolicy
from photo_tasks.engine.ledger import BillingLedger
from photo_tasks.engine.models import TaskCreate, TaskKind, TaskStatus
from photo_tasks.engine.pricing import PriceCatalog
from photo_tasks.engine.repository import TaskRepository
from photo_tasks.engine.runner import TaskOutcome, TaskRunner

logger = logging.getLogger(__name__)

STILL_WORKING_MESSAGE = "Still working on it, you'll be notified when it's ready."

_REQUIRED_FIELDS: dict[TaskKind, tuple[str, ...]] = {
    TaskKind.RESTORE: ("image_url",),
    TaskKind.STYLIZE: ("image_url", "style_id"),
    TaskKind.ERA_STYLE: ("image_url", "era_id"),
    TaskKind.POET_STYLE: ("image_url", "poet_id"),
    TaskKind.GENERATE: ("prompt",),
}


@dataclass(slots=True)
class SubmitTask:
    """High-level command to submit one generation task."""

    user_id: str
    kind: TaskKind
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SubmitOutcome:
    """Immediate answer returned to the submitting caller."""

    task_id: str
    status: TaskStatus
    message: str
    retry_count: int
    result: dict[str, Any] | None = None
    billing_failed: bool = False

    @property
    def accepted_for_background(self) -> bool:
        return self.status == TaskStatus.PENDING_BACKGROUND_RETRY


def validate_payload(kind: TaskKind, payload: dict[str, Any]) -> None:
    """Reject payloads that are missing fields their kind requires."""

    missing = [
        name
        for name in _REQUIRED_FIELDS[kind]
        if not isinstance(payload.get(name), str) or not payload[name].strip()
    ]
    if missing:
        raise InvalidPayloadError(
            f"{kind.value} payload is missing required field(s): {', '.join(missing)}",
        )


class TaskService:
    """Creates a task and gives it one bounded foreground attempt."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        ledger: BillingLedger,
        pricing: PriceCatalog,
        runner: TaskRunner,
        policy: RetryPolicy,
        worker_id: str,
        max_retries: int,
    ) -> None:
        self.repository = repository
        self.ledger = ledger
        self.pricing = pricing
        self.runner = runner
        self.policy = policy
        self.worker_id = worker_id
        self.max_retries = max_retries

    def submit(self, command: SubmitTask) -> SubmitOutcome:
        """Create, claim and drive a task within the foreground budget."""

        validate_payload(command.kind, command.payload)
        cost = self.pricing.cost_of(command.kind)
        if not self.ledger.can_afford(command.user_id, cost):
            raise InsufficientBalanceError(
                command.user_id,
                required=cost,
                available=self.ledger.balance(command.user_id),
            )

        task = self.repository.create_task(
            TaskCreate(
                user_id=command.user_id,
                kind=command.kind,
                payload=command.payload,
                cost=cost,
                max_retries=self.max_retries,
            ),
        )
        claimed = self.repository.claim_task(
            task_id=task.task_id,
            worker_id=self.worker_id,
            expected_status=TaskStatus.PENDING,
            count_as_retry=False,
        )
        if claimed is None:
            raise TaskStateError(f"Task {task.task_id} was claimed before the foreground attempt")

        outcome = self.runner.drive(claimed, policy=self.policy, park_on_exhaustion=True)
        logger.info(
            "Submitted task %s kind=%s status=%s",
            task.task_id,
            command.kind.value,
            outcome.status.value,
        )
        return self._to_submit_outcome(outcome)

    def _to_submit_outcome(self, outcome: TaskOutcome) -> SubmitOutcome:
        task = self.repository.get_task(outcome.task_id)
        retry_count = task.retry_count if task is not None else 0
        if outcome.status == TaskStatus.COMPLETED:
            message = "Done."
        elif outcome.status == TaskStatus.PENDING_BACKGROUND_RETRY:
            message = STILL_WORKING_MESSAGE
        else:
            message = outcome.error or "Task failed."
        return SubmitOutcome(
            task_id=outcome.task_id,
            status=outcome.status,
            message=message,
            retry_count=retry_count,
            result=outcome.result,
            billing_failed=outcome.billing_failed,
        )
