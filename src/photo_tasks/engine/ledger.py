"""Exactly-once balance movements keyed by task id."""

from __future__ import annotations

import logging

from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from photo_tasks.engine.errors import (
    AlreadyBilledError,
    BillingError,
    InsufficientBalanceError,
    TaskNotFoundError,
    UserNotFoundError,
)
from photo_tasks.engine.models import LedgerDirection, LedgerEntryView, TaskStatus
from photo_tasks.engine.repository import TaskRepository, to_ledger_entry_view
from photo_tasks.storage.common import to_db_datetime
from photo_tasks.storage.sqlmodel_models import AppUser, GenerationTask, LedgerEntry

logger = logging.getLogger(__name__)


class BillingLedger:
    """Balance service over the `users` balance column and `ledger_entries`.

    The unique `(task_id, direction)` constraint is the idempotency guard: a
    second debit for the same task fails on insert and moves no money.
    """

    def __init__(self, repository: TaskRepository) -> None:
        self.repository = repository

    def balance(self, user_id: str) -> int:
        user = self.repository.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user.balance

    def can_afford(self, user_id: str, amount: int) -> bool:
        return self.balance(user_id) >= amount

    def debit(self, task_id: str) -> int:
        """Charge the task owner the task's frozen cost and return the new balance."""

        with Session(self.repository.engine) as session:
            task = session.get(GenerationTask, task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.billing_suppressed:
                raise BillingError(f"Billing is suppressed for task {task_id}")
            if task.billed:
                raise AlreadyBilledError(f"Task already billed: {task_id}")

            user_id = task.user_id
            cost = task.cost
            task_update = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.billed).is_(False),
                    col(GenerationTask.billing_suppressed).is_(False),
                )
                .values(billed=True, billing_failed=False),
            )
            if task_update.rowcount != 1:
                session.rollback()
                raise AlreadyBilledError(f"Task already billed: {task_id}")

            new_balance = self._move_balance(
                session=session,
                user_id=user_id,
                delta=-cost,
                require_funds=True,
            )
            session.add(
                LedgerEntry(
                    user_id=user_id,
                    task_id=task_id,
                    direction=LedgerDirection.DEBIT.value,
                    amount=cost,
                    balance_after=new_balance,
                    reason=f"task {task.kind}",
                    created_at=self.repository.now(),
                ),
            )
            self.repository.add_event(
                session=session,
                task_id=task_id,
                user_id=user_id,
                event_type="billed",
                status_from=TaskStatus(task.status),
                status_to=TaskStatus(task.status),
                details={"amount": cost, "balance_after": new_balance},
            )
            self._commit(session, task_id=task_id, direction=LedgerDirection.DEBIT)

        logger.info("Debited %s from %s for task %s", cost, user_id, task_id)
        return new_balance

    def credit(self, task_id: str, *, amount: int | None = None, reason: str = "refund") -> int:
        """Refund a debited task, at most once and never above the debited amount."""

        with Session(self.repository.engine) as session:
            debit_row = session.exec(
                select(LedgerEntry).where(
                    LedgerEntry.task_id == task_id,
                    LedgerEntry.direction == LedgerDirection.DEBIT.value,
                ),
            ).one_or_none()
            if debit_row is None:
                raise BillingError(f"Task {task_id} has no debit to refund")
            user_id = debit_row.user_id
            refund = debit_row.amount if amount is None else amount
            if refund <= 0 or refund > debit_row.amount:
                raise BillingError(
                    f"Refund amount must be in 1..{debit_row.amount}, got {refund}",
                )

            new_balance = self._move_balance(
                session=session,
                user_id=user_id,
                delta=refund,
                require_funds=False,
            )
            session.add(
                LedgerEntry(
                    user_id=user_id,
                    task_id=task_id,
                    direction=LedgerDirection.CREDIT.value,
                    amount=refund,
                    balance_after=new_balance,
                    reason=reason,
                    created_at=self.repository.now(),
                ),
            )
            task = session.get(GenerationTask, task_id)
            if task is not None:
                self.repository.add_event(
                    session=session,
                    task_id=task_id,
                    user_id=user_id,
                    event_type="refunded",
                    status_from=TaskStatus(task.status),
                    status_to=TaskStatus(task.status),
                    details={"amount": refund, "reason": reason},
                )
            self._commit(session, task_id=task_id, direction=LedgerDirection.CREDIT)

        logger.info("Refunded %s to %s for task %s", refund, user_id, task_id)
        return new_balance

    def top_up(self, user_id: str, amount: int, *, reason: str = "top-up") -> int:
        """Add funds that are not tied to a task."""

        if amount <= 0:
            raise BillingError(f"Top-up amount must be positive, got {amount}")
        with Session(self.repository.engine) as session:
            new_balance = self._move_balance(
                session=session,
                user_id=user_id,
                delta=amount,
                require_funds=False,
            )
            session.add(
                LedgerEntry(
                    user_id=user_id,
                    task_id=None,
                    direction=LedgerDirection.TOP_UP.value,
                    amount=amount,
                    balance_after=new_balance,
                    reason=reason,
                    created_at=self.repository.now(),
                ),
            )
            session.commit()
        return new_balance

    def entries_for_task(self, task_id: str) -> list[LedgerEntryView]:
        with Session(self.repository.engine) as session:
            rows = session.exec(
                select(LedgerEntry)
                .where(LedgerEntry.task_id == task_id)
                .order_by(col(LedgerEntry.entry_id).asc()),
            ).all()
        return [to_ledger_entry_view(row) for row in rows]

    def _move_balance(
        self,
        *,
        session: Session,
        user_id: str,
        delta: int,
        require_funds: bool,
    ) -> int:
        statement = sa_update(AppUser).where(col(AppUser.user_id) == user_id)
        if require_funds:
            statement = statement.where(col(AppUser.balance) >= -delta)
        result = session.exec(
            statement.values(
                balance=col(AppUser.balance) + delta,
                updated_at=to_db_datetime(self.repository.now()),
            ),
        )
        if result.rowcount != 1:
            user = session.get(AppUser, user_id)
            session.rollback()
            if user is None:
                raise UserNotFoundError(user_id)
            raise InsufficientBalanceError(user_id, required=-delta, available=user.balance)
        balance = session.exec(select(AppUser.balance).where(AppUser.user_id == user_id)).one()
        return int(balance)

    def _commit(self, session: Session, *, task_id: str, direction: LedgerDirection) -> None:
        try:
            session.commit()
        except IntegrityError as error:
            session.rollback()
            raise AlreadyBilledError(
                f"Ledger already has a {direction.value} entry for task {task_id}",
            ) from error
