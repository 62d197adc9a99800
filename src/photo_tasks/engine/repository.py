"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from photo_tasks.engine.models import (
    FailureClass,
    LedgerDirection,
    LedgerEntryView,
    TaskCounts,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskFailure,
    TaskKind,
    TaskOrigin,
    TaskStatus,
    TaskView,
    UserView,
)
from photo_tasks.storage.alembic_runner import upgrade_head
from photo_tasks.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from photo_tasks.storage.sqlmodel_models import (
    AppUser,
    GenerationTask,
    LedgerEntry,
    ServicePrice,
    TaskEvent,
)


class TaskRepository:
    """Task persistence facade.

    Every status transition is a single conditional UPDATE keyed by task id and
    the expected current status, so concurrent callers racing on one task see
    exactly one winner and a `False`/`None` result for everyone else.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.clock = clock
        self.engine: Engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def now(self) -> datetime:
        return self.clock()

    # Users and prices

    def upsert_user(
        self,
        *,
        user_id: str,
        display_name: str | None = None,
        chat_id: str | None = None,
    ) -> UserView:
        """Create a user or update its display name / chat id."""

        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
            if row is None:
                row = AppUser(
                    user_id=user_id,
                    display_name=display_name or user_id,
                    chat_id=chat_id,
                    balance=0,
                    created_at=now,
                    updated_at=now,
                )
            else:
                if display_name is not None:
                    row.display_name = display_name
                if chat_id is not None:
                    row.chat_id = chat_id
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_user_view(row)

    def get_user(self, user_id: str) -> UserView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AppUser).where(AppUser.user_id == user_id)).one_or_none()
        return _to_user_view(row) if row is not None else None

    def get_price(self, kind: TaskKind) -> int | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ServicePrice).where(ServicePrice.kind == kind.value),
            ).one_or_none()
        return row.price if row is not None else None

    def list_prices(self) -> dict[str, int]:
        with Session(self.engine) as session:
            rows = session.exec(select(ServicePrice).order_by(col(ServicePrice.kind))).all()
        return {row.kind: row.price for row in rows}

    def set_price(self, *, kind: TaskKind, price: int) -> None:
        """Insert or replace the price of one task kind."""

        if price < 0:
            raise ValueError(f"Price must be >= 0, got {price}")
        now = self.now()
        with Session(self.engine) as session:
            row = session.exec(
                select(ServicePrice).where(ServicePrice.kind == kind.value),
            ).one_or_none()
            if row is None:
                row = ServicePrice(kind=kind.value, price=price, updated_at=now)
            else:
                row.price = price
                row.updated_at = to_db_datetime(now)
            session.add(row)
            session.commit()

    # Task lifecycle

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Create a task in `pending`."""

        with Session(self.engine) as session:
            row = self._insert_task(session, payload)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def create_replacement(
        self,
        *,
        original_task_id: str,
        payload: TaskCreate,
    ) -> TaskView | None:
        """Create a manual-retry task and mark a `failed` original as superseded by it.

        Both writes share one transaction. Returns `None`, creating nothing,
        when the original is no longer `failed`.
        """

        with Session(self.engine) as session:
            row = self._insert_task(session, payload)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == original_task_id,
                    col(GenerationTask.status) == TaskStatus.FAILED.value,
                )
                .values(superseded_by=row.task_id, updated_at=to_db_datetime(self.now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self.add_event(
                session=session,
                task_id=original_task_id,
                user_id=self._owner_of(session, original_task_id),
                event_type="superseded",
                status_from=TaskStatus.FAILED,
                status_to=TaskStatus.FAILED,
                details={"superseded_by": row.task_id},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def _insert_task(self, session: Session, payload: TaskCreate) -> GenerationTask:
        now = self.now()
        task_id = payload.task_id or str(uuid4())
        row = GenerationTask(
            task_id=task_id,
            user_id=payload.user_id,
            kind=payload.kind.value,
            payload_json=json.dumps(payload.payload, ensure_ascii=False, sort_keys=True),
            status=TaskStatus.PENDING.value,
            origin=payload.origin.value,
            cost=payload.cost,
            retry_count=0,
            max_retries=payload.max_retries,
            billing_suppressed=payload.billing_suppressed,
            parent_task_id=payload.parent_task_id,
            created_at=now,
            updated_at=now,
        )
        session.add(row)
        self.add_event(
            session=session,
            task_id=task_id,
            user_id=payload.user_id,
            event_type="created",
            status_from=None,
            status_to=TaskStatus.PENDING,
            details={
                "kind": payload.kind.value,
                "cost": payload.cost,
                "origin": payload.origin.value,
                "billing_suppressed": payload.billing_suppressed,
                "parent_task_id": payload.parent_task_id,
            },
        )
        return row

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(GenerationTask, task_id)
        return _to_task_view(row) if row is not None else None

    def claim_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        expected_status: TaskStatus,
        count_as_retry: bool,
    ) -> TaskView | None:
        """Atomically move a task from `expected_status` to `processing`.

        Returns `None` when another caller changed the task first or, for a
        retry claim, when the retry cap has been reached.
        """

        if expected_status not in {
            TaskStatus.PENDING,
            TaskStatus.PENDING_BACKGROUND_RETRY,
            TaskStatus.FAILED,
        }:
            raise ValueError(f"Unsupported claim source status: {expected_status}")

        now = self.now()
        values: dict[str, Any] = {
            "status": TaskStatus.PROCESSING.value,
            "worker_id": worker_id,
            "started_at": to_db_datetime(now),
            "finished_at": None,
            "updated_at": to_db_datetime(now),
        }
        statement = sa_update(GenerationTask).where(
            col(GenerationTask.task_id) == task_id,
            col(GenerationTask.status) == expected_status.value,
        )
        if count_as_retry:
            statement = statement.where(
                col(GenerationTask.retry_count) < col(GenerationTask.max_retries),
            )
            values["retry_count"] = col(GenerationTask.retry_count) + 1
        if expected_status == TaskStatus.FAILED:
            statement = statement.where(
                col(GenerationTask.superseded_by).is_(None),
                col(GenerationTask.last_error_retryable).is_(True),
            )

        with Session(self.engine) as session:
            result = session.exec(statement.values(**values))
            if result.rowcount != 1:
                session.rollback()
                return None
            claimed = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one()
            self.add_event(
                session=session,
                task_id=task_id,
                user_id=claimed.user_id,
                event_type="claimed",
                status_from=expected_status,
                status_to=TaskStatus.PROCESSING,
                details={
                    "worker_id": worker_id,
                    "retry_count": claimed.retry_count,
                    "count_as_retry": count_as_retry,
                },
            )
            session.commit()
            return _to_task_view(claimed)

    def record_retry(
        self,
        *,
        task_id: str,
        failure: TaskFailure,
        reserve: int = 0,
    ) -> bool:
        """Consume one retry for a `processing` task before it is re-attempted.

        Also refreshes `updated_at`, which keeps a long retry loop from looking
        stuck. Returns `False` once the retry cap, lowered by `reserve` retries
        kept back for a later tier, is reached.
        """

        now = self.now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTask.retry_count) + reserve < col(GenerationTask.max_retries),
                )
                .values(
                    retry_count=col(GenerationTask.retry_count) + 1,
                    failure_class=failure.failure_class.value,
                    last_error_retryable=failure.retryable,
                    error_summary=failure.error_summary,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one()
            self.add_event(
                session=session,
                task_id=task_id,
                user_id=row.user_id,
                event_type="retry_attempt",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.PROCESSING,
                details={
                    **failure.details,
                    "retry_count": row.retry_count,
                    "failure_class": failure.failure_class.value,
                },
            )
            session.commit()
            return True

    def complete_task(self, *, task_id: str, result: dict[str, Any]) -> bool:
        """Mark a processing task as completed with its result."""

        now = self.now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    error_summary=None,
                    failure_class=None,
                    last_error_retryable=None,
                    finished_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self.add_event(
                session=session,
                task_id=task_id,
                user_id=self._owner_of(session, task_id),
                event_type="completed",
                status_from=TaskStatus.PROCESSING,
                status_to=TaskStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def fail_task(
        self,
        *,
        task_id: str,
        failure: TaskFailure,
        event_type: str = "failed",
    ) -> bool:
        """Mark a processing task as failed."""

        return self._leave_processing(
            task_id=task_id,
            status_to=TaskStatus.FAILED,
            failure=failure,
            event_type=event_type,
        )

    def park_for_background(self, *, task_id: str, failure: TaskFailure) -> bool:
        """Hand a processing task over to the background tier."""

        return self._leave_processing(
            task_id=task_id,
            status_to=TaskStatus.PENDING_BACKGROUND_RETRY,
            failure=failure,
            event_type="parked",
        )

    def force_fail_stuck(
        self,
        *,
        task_id: str,
        stuck_after: timedelta,
        failure: TaskFailure,
    ) -> bool:
        """Fail a task only while it is still `processing` and stale."""

        return self._leave_processing(
            task_id=task_id,
            status_to=TaskStatus.FAILED,
            failure=failure,
            event_type="stalled",
            stale_before=self.now() - stuck_after,
        )

    def mark_billing_failed(self, *, task_id: str, error_summary: str) -> bool:
        """Flag a completed task whose debit could not be recorded."""

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.COMPLETED.value,
                    col(GenerationTask.billed).is_(False),
                )
                .values(billing_failed=True, updated_at=to_db_datetime(self.now())),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self.add_event(
                session=session,
                task_id=task_id,
                user_id=self._owner_of(session, task_id),
                event_type="billing_failed",
                status_from=TaskStatus.COMPLETED,
                status_to=TaskStatus.COMPLETED,
                details={"error_summary": error_summary},
            )
            session.commit()
            return True

    # Queries

    def list_background_candidates(
        self,
        *,
        limit: int,
        failed_cooldown: timedelta,
        max_task_age: timedelta,
    ) -> list[TaskView]:
        """Tasks the background tier may claim, oldest first."""

        if limit <= 0:
            return []
        now = self.now()
        cooled_down_before = to_db_datetime(now - failed_cooldown)
        created_after = to_db_datetime(now - max_task_age)
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask)
                .where(
                    col(GenerationTask.retry_count) < col(GenerationTask.max_retries),
                    or_(
                        col(GenerationTask.status) == TaskStatus.PENDING_BACKGROUND_RETRY.value,
                        and_(
                            col(GenerationTask.status) == TaskStatus.FAILED.value,
                            col(GenerationTask.updated_at) <= cooled_down_before,
                            col(GenerationTask.created_at) >= created_after,
                            col(GenerationTask.last_error_retryable).is_(True),
                            col(GenerationTask.superseded_by).is_(None),
                        ),
                    ),
                )
                .order_by(col(GenerationTask.created_at).asc())
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_stuck(self, *, stuck_after: timedelta) -> list[TaskView]:
        """Processing tasks untouched for longer than `stuck_after`, oldest first."""

        stale_before = to_db_datetime(self.now() - stuck_after)
        with Session(self.engine) as session:
            rows = session.exec(
                select(GenerationTask)
                .where(
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTask.updated_at) < stale_before,
                )
                .order_by(col(GenerationTask.updated_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and owner."""

        with Session(self.engine) as session:
            statement = select(GenerationTask)
            if status is not None:
                statement = statement.where(GenerationTask.status == status.value)
            if user_id is not None:
                statement = statement.where(GenerationTask.user_id == user_id)
            rows = session.exec(
                statement.order_by(col(GenerationTask.created_at).desc()).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def count_tasks(self, *, stuck_after: timedelta) -> TaskCounts:
        """Task counters by status and kind plus the stuck count."""

        stale_before = to_db_datetime(self.now() - stuck_after)
        with Session(self.engine) as session:
            by_status = session.exec(
                select(GenerationTask.status, func.count()).group_by(GenerationTask.status),
            ).all()
            by_kind = session.exec(
                select(GenerationTask.kind, func.count()).group_by(GenerationTask.kind),
            ).all()
            stuck = session.exec(
                select(func.count()).where(
                    col(GenerationTask.status) == TaskStatus.PROCESSING.value,
                    col(GenerationTask.updated_at) < stale_before,
                ),
            ).one()
            billing_failed = session.exec(
                select(func.count()).where(col(GenerationTask.billing_failed).is_(True)),
            ).one()
        return TaskCounts(
            by_status={status: count for status, count in by_status},
            by_kind={kind: count for kind, count in by_kind},
            stuck=int(stuck),
            billing_failed=int(billing_failed),
        )

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream and ledger entries."""

        with Session(self.engine) as session:
            task = session.get(GenerationTask, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            ledger_rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.task_id == task_id)
                .order_by(col(LedgerEntry.entry_id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(
            task=_to_task_view(task),
            events=events,
            ledger=[to_ledger_entry_view(row) for row in ledger_rows],
        )

    def add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        user_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                user_id=user_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=self.now(),
            ),
        )

    def _leave_processing(
        self,
        *,
        task_id: str,
        status_to: TaskStatus,
        failure: TaskFailure,
        event_type: str,
        stale_before: datetime | None = None,
    ) -> bool:
        now = self.now()
        statement = sa_update(GenerationTask).where(
            col(GenerationTask.task_id) == task_id,
            col(GenerationTask.status) == TaskStatus.PROCESSING.value,
        )
        if stale_before is not None:
            statement = statement.where(
                col(GenerationTask.updated_at) < to_db_datetime(stale_before),
            )
        with Session(self.engine) as session:
            result = session.exec(
                statement.values(
                    status=status_to.value,
                    failure_class=failure.failure_class.value,
                    last_error_retryable=failure.retryable,
                    error_summary=failure.error_summary,
                    finished_at=to_db_datetime(now) if status_to == TaskStatus.FAILED else None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self.add_event(
                session=session,
                task_id=task_id,
                user_id=self._owner_of(session, task_id),
                event_type=event_type,
                status_from=TaskStatus.PROCESSING,
                status_to=status_to,
                details={
                    **failure.details,
                    "failure_class": failure.failure_class.value,
                    "retryable": failure.retryable,
                    "error_summary": failure.error_summary,
                },
            )
            session.commit()
            return True

    def _owner_of(self, session: Session, task_id: str) -> str:
        user_id = session.exec(
            select(GenerationTask.user_id).where(GenerationTask.task_id == task_id),
        ).one()
        return str(user_id)


def _to_user_view(row: AppUser) -> UserView:
    return UserView(
        user_id=row.user_id,
        display_name=row.display_name,
        chat_id=row.chat_id,
        balance=row.balance,
    )


def to_ledger_entry_view(row: LedgerEntry) -> LedgerEntryView:
    return LedgerEntryView(
        entry_id=row.entry_id or 0,
        user_id=row.user_id,
        task_id=row.task_id,
        direction=LedgerDirection(row.direction),
        amount=row.amount,
        balance_after=row.balance_after,
        reason=row.reason,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: GenerationTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        user_id=row.user_id,
        kind=TaskKind(row.kind),
        payload=json.loads(row.payload_json),
        status=TaskStatus(row.status),
        origin=TaskOrigin(row.origin),
        cost=row.cost,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        billed=row.billed,
        billing_suppressed=row.billing_suppressed,
        billing_failed=row.billing_failed,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        last_error_retryable=row.last_error_retryable,
        error_summary=row.error_summary,
        result=json.loads(row.result_json) if row.result_json is not None else None,
        parent_task_id=row.parent_task_id,
        superseded_by=row.superseded_by,
        worker_id=row.worker_id,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
