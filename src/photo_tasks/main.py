"""CLI entrypoint for photo-tasks."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from photo_tasks import __version__
from photo_tasks.engine.controllers import (
    AdminStatsCommand,
    AdminStuckCommand,
    AdminTaskCommand,
    EngineCliController,
    PriceListCommand,
    PriceSetCommand,
    SchedulerRunCommand,
    SchedulerStatsCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskRefundCommand,
    TaskSubmitCommand,
    UserAddCommand,
    UserShowCommand,
    UserTopUpCommand,
)
from photo_tasks.engine.errors import (
    BillingError,
    TaskNotFoundError,
    TaskStateError,
)
from photo_tasks.engine.models import TaskKind, TaskStatus

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
KIND_CHOICES = [kind.value for kind in TaskKind]
STATUS_CHOICES = [status.value for status in TaskStatus]


@click.group()
@click.version_option(version=__version__, prog_name="photo-tasks")
@click.option(
    "--log-level",
    envvar="PHOTO_TASKS_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Root logger level.",
)
def photo_tasks(log_level: str) -> None:
    """Photo generation task engine CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@photo_tasks.group()
def users() -> None:
    """User and balance commands."""


@users.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", required=True, help="User id.")
@click.option("--name", "display_name", default=None, help="Display name.")
@click.option("--chat-id", default=None, help="Messaging chat id for notifications.")
def users_add(
    db_path: Path | None,
    user_id: str,
    display_name: str | None,
    chat_id: str | None,
) -> None:
    """Create a user or update its name and chat id."""

    _run(
        lambda: ENGINE_CONTROLLER.add_user(
            UserAddCommand(
                db_path=db_path,
                user_id=user_id,
                display_name=display_name,
                chat_id=chat_id,
            ),
        ),
    )


@users.command("top-up")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", required=True, help="User id.")
@click.option("--amount", type=click.IntRange(min=1), required=True, help="Credits to add.")
@click.option("--reason", default="top-up", show_default=True, help="Ledger reason.")
def users_top_up(db_path: Path | None, user_id: str, amount: int, reason: str) -> None:
    """Add credits to a user balance."""

    _run(
        lambda: ENGINE_CONTROLLER.top_up(
            UserTopUpCommand(
                db_path=db_path,
                user_id=user_id,
                amount=amount,
                reason=reason,
            ),
        ),
    )


@users.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("user_id")
def users_show(db_path: Path | None, user_id: str) -> None:
    """Show a user balance and recent tasks."""

    _run(lambda: ENGINE_CONTROLLER.show_user(UserShowCommand(db_path=db_path, user_id=user_id)))


@photo_tasks.group()
def prices() -> None:
    """Service price commands."""


@prices.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def prices_list(db_path: Path | None) -> None:
    """List the price of every task kind."""

    _run(lambda: ENGINE_CONTROLLER.list_prices(PriceListCommand(db_path=db_path)))


@prices.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("kind", type=click.Choice(KIND_CHOICES, case_sensitive=False))
@click.argument("price", type=click.IntRange(min=0))
def prices_set(db_path: Path | None, kind: str, price: int) -> None:
    """Set the price charged for a task kind. Applies to tasks created afterwards."""

    _run(
        lambda: ENGINE_CONTROLLER.set_price(
            PriceSetCommand(db_path=db_path, kind=kind, price=price),
        ),
    )


@photo_tasks.group()
def tasks() -> None:
    """Task submission and inspection commands."""


@tasks.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--user-id", required=True, help="Owner of the task.")
@click.option(
    "--kind",
    type=click.Choice(KIND_CHOICES, case_sensitive=False),
    required=True,
    help="Task kind.",
)
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Payload field as `name=value`. Can be repeated.",
)
def tasks_submit(
    db_path: Path | None,
    user_id: str,
    kind: str,
    params: tuple[str, ...],
) -> None:
    """Submit a task and drive it with the foreground retry budget.

    If the foreground budget runs out the task is parked for the background
    scheduler and the command reports that work continues in the background.
    """

    _run(
        lambda: ENGINE_CONTROLLER.submit(
            TaskSubmitCommand(
                db_path=db_path,
                user_id=user_id,
                kind=kind,
                params=params,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--user-id", default=None, help="Optional owner filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    user_id: str | None,
    limit: int,
) -> None:
    """List tasks, newest first."""

    _run(
        lambda: ENGINE_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status,
                user_id=user_id,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task details with its event history and ledger entries."""

    _run(
        lambda: ENGINE_CONTROLLER.inspect_task(
            TaskInspectCommand(db_path=db_path, task_id=task_id),
        ),
    )


@tasks.command("refund")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
@click.option(
    "--amount",
    type=click.IntRange(min=1),
    default=None,
    help="Credits to return. Defaults to the full debited amount.",
)
@click.option("--reason", default="refund", show_default=True, help="Ledger reason.")
def tasks_refund(db_path: Path | None, task_id: str, amount: int | None, reason: str) -> None:
    """Credit back the charge of a billed task."""

    _run(
        lambda: ENGINE_CONTROLLER.refund(
            TaskRefundCommand(
                db_path=db_path,
                task_id=task_id,
                amount=amount,
                reason=reason,
            ),
        ),
    )


@photo_tasks.group()
def scheduler() -> None:
    """Background retry scheduler commands."""


@scheduler.command("tick")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def scheduler_tick(db_path: Path | None) -> None:
    """Run one scheduler tick and wait for the launched tasks."""

    _run(
        lambda: ENGINE_CONTROLLER.run_scheduler(
            SchedulerRunCommand(db_path=db_path, once=True, max_ticks=None),
        ),
    )


@scheduler.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many ticks. Runs until interrupted when omitted.",
)
def scheduler_run(db_path: Path | None, max_ticks: int | None) -> None:
    """Tick every `PHOTO_TASKS_TICK_INTERVAL_SECONDS` until stopped."""

    _run(
        lambda: ENGINE_CONTROLLER.run_scheduler(
            SchedulerRunCommand(db_path=db_path, once=False, max_ticks=max_ticks),
        ),
    )


@scheduler.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def scheduler_stats(db_path: Path | None) -> None:
    """Show scheduler concurrency settings."""

    _run(lambda: ENGINE_CONTROLLER.scheduler_stats(SchedulerStatsCommand(db_path=db_path)))


@photo_tasks.group()
def admin() -> None:
    """Stuck task recovery and monitoring commands."""


@admin.command("stuck")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--threshold-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override PHOTO_TASKS_STUCK_THRESHOLD_SECONDS.",
)
def admin_stuck(db_path: Path | None, threshold_seconds: int | None) -> None:
    """List tasks stuck in processing."""

    _run(
        lambda: ENGINE_CONTROLLER.list_stuck(
            AdminStuckCommand(db_path=db_path, threshold_seconds=threshold_seconds),
        ),
    )


@admin.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--threshold-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Override PHOTO_TASKS_STUCK_THRESHOLD_SECONDS.",
)
def admin_cleanup(db_path: Path | None, threshold_seconds: int | None) -> None:
    """Force-fail every stuck task. Never refunds."""

    _run(
        lambda: ENGINE_CONTROLLER.cleanup(
            AdminStuckCommand(db_path=db_path, threshold_seconds=threshold_seconds),
        ),
    )


@admin.command("force-fail")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def admin_force_fail(db_path: Path | None, task_id: str) -> None:
    """Force-fail one stuck task."""

    _run(lambda: ENGINE_CONTROLLER.force_fail(AdminTaskCommand(db_path=db_path, task_id=task_id)))


@admin.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id")
def admin_retry(db_path: Path | None, task_id: str) -> None:
    """Re-run a stuck or failed task as a new task without charging again."""

    _run(
        lambda: ENGINE_CONTROLLER.manual_retry(
            AdminTaskCommand(db_path=db_path, task_id=task_id),
        ),
    )


@admin.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def admin_stats(db_path: Path | None) -> None:
    """Show task counts by status and kind."""

    _run(lambda: ENGINE_CONTROLLER.stats(AdminStatsCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (BillingError, TaskNotFoundError, TaskStateError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    photo_tasks()
