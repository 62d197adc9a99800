"""Domain models for generation tasks, billing and recovery."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING_BACKGROUND_RETRY = "pending_background_retry"


class TaskKind(str, Enum):
    """Provider operation selected by a task."""

    RESTORE = "restore"
    STYLIZE = "stylize"
    ERA_STYLE = "era_style"
    POET_STYLE = "poet_style"
    GENERATE = "generate"


class TaskOrigin(str, Enum):
    """Who created the task record."""

    FOREGROUND = "foreground"
    MANUAL = "manual"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT_NETWORK = "transient_network"
    TRANSIENT_PROVIDER = "transient_provider"
    RATE_LIMITED = "rate_limited"
    STALLED = "stalled"
    CONTENT_REJECTED = "content_rejected"
    INPUT_INVALID = "input_invalid"
    AGREEMENT_MISSING = "agreement_missing"
    PROVIDER_REJECTED = "provider_rejected"
    INTERNAL = "internal"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT_NETWORK,
        FailureClass.TRANSIENT_PROVIDER,
        FailureClass.RATE_LIMITED,
        FailureClass.STALLED,
    },
)


class LedgerDirection(str, Enum):
    """Balance movement direction."""

    DEBIT = "debit"
    CREDIT = "credit"
    TOP_UP = "top_up"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a generation task."""

    user_id: str
    kind: TaskKind
    payload: dict[str, Any]
    cost: int
    max_retries: int = 5
    origin: TaskOrigin = TaskOrigin.FOREGROUND
    billing_suppressed: bool = False
    parent_task_id: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for services, scheduler and CLI."""

    task_id: str
    user_id: str
    kind: TaskKind
    payload: dict[str, Any]
    status: TaskStatus
    origin: TaskOrigin
    cost: int
    retry_count: int
    max_retries: int
    billed: bool
    billing_suppressed: bool
    billing_failed: bool
    failure_class: FailureClass | None
    last_error_retryable: bool | None
    error_summary: str | None
    result: dict[str, Any] | None
    parent_task_id: str | None
    superseded_by: str | None
    worker_id: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def retries_left(self) -> bool:
        return self.retry_count < self.max_retries


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LedgerEntryView:
    """One immutable balance movement."""

    entry_id: int
    user_id: str
    task_id: str | None
    direction: LedgerDirection
    amount: int
    balance_after: int
    reason: str | None
    created_at: datetime


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream and ledger entries."""

    task: TaskView
    events: list[TaskEventView]
    ledger: list[LedgerEntryView] = field(default_factory=list)


@dataclass(slots=True)
class UserView:
    user_id: str
    display_name: str
    chat_id: str | None
    balance: int


@dataclass(slots=True)
class TaskFailure:
    """Failure recorded on a task when it leaves `processing`."""

    failure_class: FailureClass
    retryable: bool
    error_summary: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskCounts:
    """Task counters for the admin stats view."""

    by_status: dict[str, int]
    by_kind: dict[str, int]
    stuck: int
    billing_failed: int
