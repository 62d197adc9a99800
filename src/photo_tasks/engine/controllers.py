"""Controllers for engine CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from photo_tasks.config import Settings
from photo_tasks.engine.models import TaskKind, TaskStatus, TaskView
from photo_tasks.engine.repository import TaskRepository
from photo_tasks.engine.runtime import EngineRuntime
from photo_tasks.engine.scheduler import SchedulerStats
from photo_tasks.engine.services import SubmitTask


@dataclass(slots=True)
class UserAddCommand:
    """CLI input for user creation."""

    db_path: Path | None
    user_id: str
    display_name: str | None
    chat_id: str | None


@dataclass(slots=True)
class UserTopUpCommand:
    """CLI input for balance top-up."""

    db_path: Path | None
    user_id: str
    amount: int
    reason: str


@dataclass(slots=True)
class UserShowCommand:
    db_path: Path | None
    user_id: str


@dataclass(slots=True)
class PriceListCommand:
    db_path: Path | None


@dataclass(slots=True)
class PriceSetCommand:
    db_path: Path | None
    kind: str
    price: int


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for a foreground task submission."""

    db_path: Path | None
    user_id: str
    kind: str
    params: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    user_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskRefundCommand:
    db_path: Path | None
    task_id: str
    amount: int | None
    reason: str


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for background scheduler execution."""

    db_path: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class SchedulerStatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class AdminStuckCommand:
    """CLI input for stuck task listing and cleanup."""

    db_path: Path | None
    threshold_seconds: int | None


@dataclass(slots=True)
class AdminTaskCommand:
    """CLI input for single-task recovery operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class AdminStatsCommand:
    db_path: Path | None


class EngineCliController:
    """Coordinates user, task, scheduler and admin CLI operations."""

    def add_user(self, command: UserAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            user = repository.upsert_user(
                user_id=command.user_id,
                display_name=command.display_name,
                chat_id=command.chat_id,
            )
        return [
            f"User: {user.user_id} name={user.display_name} "
            f"chat_id={user.chat_id or '-'} balance={user.balance}",
        ]

    def top_up(self, command: UserTopUpCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            balance = runtime.ledger.top_up(
                command.user_id,
                command.amount,
                reason=command.reason,
            )
        return [f"Balance of {command.user_id}: {balance}"]

    def show_user(self, command: UserShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            user = repository.get_user(command.user_id)
            tasks = repository.list_tasks(user_id=command.user_id, limit=10)
        if user is None:
            return [f"User not found: {command.user_id}"]
        lines = [
            f"User: {user.user_id}",
            f"Name: {user.display_name}",
            f"Chat id: {user.chat_id or '-'}",
            f"Balance: {user.balance}",
            f"Recent tasks: {len(tasks)}",
        ]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def list_prices(self, command: PriceListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            prices = runtime.pricing.all_prices()
        return [f"{kind}: {price}" for kind, price in prices.items()]

    def set_price(self, command: PriceSetCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        kind = _parse_kind(command.kind)
        with _repository(settings) as repository:
            repository.set_price(kind=kind, price=command.price)
        return [f"Price set: {kind.value}={command.price}"]

    def submit(self, command: TaskSubmitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            outcome = runtime.service.submit(
                SubmitTask(
                    user_id=command.user_id,
                    kind=_parse_kind(command.kind),
                    payload=_parse_params(command.params),
                ),
            )
        lines = [
            f"Task submitted: task_id={outcome.task_id} status={outcome.status.value} "
            f"retry_count={outcome.retry_count}",
            outcome.message,
        ]
        if outcome.result is not None:
            lines.append(f"Result: {outcome.result.get('result_ref', '-')}")
        if outcome.billing_failed:
            lines.append("Billing failed: the task completed but could not be charged.")
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                status=status_filter,
                user_id=command.user_id,
                limit=command.limit,
            )
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"User: {task.user_id}",
            f"Kind: {task.kind.value}",
            f"Status: {task.status.value}",
            f"Origin: {task.origin.value}",
            f"Cost: {task.cost}",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Billed: {task.billed} suppressed={task.billing_suppressed} "
            f"failed={task.billing_failed}",
            f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
            f"Error: {task.error_summary or '-'}",
            f"Result: {task.result.get('result_ref', '-') if task.result else '-'}",
            f"Parent: {task.parent_task_id or '-'}",
            f"Superseded by: {task.superseded_by or '-'}",
            f"Ledger entries: {len(details.ledger)}",
        ]
        for entry in details.ledger:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.direction.value} "
                f"amount={entry.amount} balance_after={entry.balance_after}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def refund(self, command: TaskRefundCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            balance = runtime.ledger.credit(
                command.task_id,
                amount=command.amount,
                reason=command.reason,
            )
        return [f"Refunded task {command.task_id}, new balance: {balance}"]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            if command.once:
                summary = runtime.scheduler.tick(wait_for_tasks=True)
                stats = runtime.scheduler.stats()
                return [
                    "Tick summary: "
                    f"selected={summary.selected} launched={summary.launched} "
                    f"claim_conflicts={summary.claim_conflicts} "
                    f"skipped={summary.skipped_reason or '-'}",
                    _stats_line(stats),
                ]
            try:
                ticks = runtime.scheduler.run_loop(max_ticks=command.max_ticks)
            except KeyboardInterrupt:
                runtime.scheduler.stop()
                ticks = runtime.scheduler.stats().ticks
            stats = runtime.scheduler.stats()
        return [f"Scheduler stopped after {ticks} tick(s)", _stats_line(stats)]

    def scheduler_stats(self, command: SchedulerStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            stats = runtime.scheduler.stats()
        return [_stats_line(stats)]

    def list_stuck(self, command: AdminStuckCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            stuck = runtime.reaper.list_stuck(threshold_seconds=command.threshold_seconds)
            now = runtime.repository.now()
        lines = [f"Stuck tasks: {len(stuck)}"]
        for task in stuck:
            minutes = int((now - task.updated_at).total_seconds() // 60)
            lines.append(f"  {_task_line(task)} stuck_for={minutes}m")
        return lines

    def cleanup(self, command: AdminStuckCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            results = runtime.reaper.cleanup(threshold_seconds=command.threshold_seconds)
        failed = sum(1 for result in results if result.force_failed)
        lines = [f"Cleanup: stuck={len(results)} force_failed={failed}"]
        for result in results:
            lines.append(
                f"  {result.task_id} force_failed={result.force_failed} "
                f"stuck_for={int(result.stuck_for_seconds)}s",
            )
        return lines

    def force_fail(self, command: AdminTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            task = runtime.reaper.force_fail(command.task_id)
        return [f"Task force-failed: {task.task_id} error={task.error_summary}"]

    def manual_retry(self, command: AdminTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _runtime(settings) as runtime:
            result = runtime.reaper.manual_retry(command.task_id)
        outcome = result.outcome
        return [
            f"Manual retry: original={result.original_task_id} new={result.new_task_id}",
            f"Status: {outcome.status.value} (billing suppressed)",
            f"Error: {outcome.error or '-'}",
        ]

    def stats(self, command: AdminStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.count_tasks(
                stuck_after=timedelta(seconds=settings.reaper.stuck_threshold_seconds),
            )
        lines = ["Tasks by status:"]
        lines.extend(
            f"  {status.value}: {counts.by_status.get(status.value, 0)}" for status in TaskStatus
        )
        lines.append("Tasks by kind:")
        lines.extend(f"  {kind.value}: {counts.by_kind.get(kind.value, 0)}" for kind in TaskKind)
        lines.append(f"Stuck: {counts.stuck}")
        lines.append(f"Billing failed: {counts.billing_failed}")
        return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_kind(value: str) -> TaskKind:
    return TaskKind(value.strip().lower())


def _parse_params(params: tuple[str, ...]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for param in params:
        if "=" not in param:
            raise ValueError(f"Invalid parameter {param!r}. Expected format '<name>=<value>'.")
        name, value = param.split("=", 1)
        payload[name.strip()] = value.strip()
    return payload


def _task_line(task: TaskView) -> str:
    return (
        f"{task.task_id} kind={task.kind.value} status={task.status.value} "
        f"retries={task.retry_count}/{task.max_retries} cost={task.cost} "
        f"billed={task.billed} updated_at={task.updated_at.isoformat()}"
    )


def _stats_line(stats: SchedulerStats) -> str:
    return (
        "Scheduler: "
        f"in_flight={stats.in_flight} max_concurrent={stats.max_concurrent} "
        f"tick_interval={stats.tick_interval_seconds:g}s ticks={stats.ticks} "
        f"launched={stats.launched} completed={stats.completed} failed={stats.failed}"
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _runtime(settings: Settings) -> Iterator[EngineRuntime]:
    with _repository(settings) as repository:
        runtime = EngineRuntime.build(settings=settings, repository=repository)
        runtime.pricing.seed_defaults()
        try:
            yield runtime
        finally:
            runtime.close()
