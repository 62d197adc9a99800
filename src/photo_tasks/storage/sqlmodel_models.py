"""SQLModel ORM tables for generation tasks, balances and the billing ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class AppUser(SQLModel, table=True):
    __tablename__ = "users"  # type: ignore[bad-override]

    user_id: str = Field(primary_key=True, index=True)
    display_name: str = Field(index=True)
    chat_id: str | None = None
    balance: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ServicePrice(SQLModel, table=True):
    __tablename__ = "service_prices"  # type: ignore[bad-override]

    kind: str = Field(primary_key=True)
    price: int
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GenerationTask(SQLModel, table=True):
    __tablename__ = "generation_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_generation_tasks_status_created", "status", "created_at"),
        Index("idx_generation_tasks_status_updated", "status", "updated_at"),
    )

    task_id: str = Field(primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    kind: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    origin: str = Field(default="foreground")
    cost: int
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=5)
    billed: bool = Field(default=False)
    billing_suppressed: bool = Field(default=False)
    billing_failed: bool = Field(default=False)
    failure_class: str | None = Field(default=None, index=True)
    last_error_retryable: bool | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    superseded_by: str | None = None
    worker_id: str | None = None
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class LedgerEntry(SQLModel, table=True):
    __tablename__ = "ledger_entries"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "direction", name="uq_ledger_entries_task_direction"),
    )

    entry_id: int | None = Field(default=None, primary_key=True)
    user_id: str = Field(
        sa_column=Column(
            ForeignKey("users.user_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("generation_tasks.task_id", ondelete="RESTRICT"),
            nullable=True,
            index=True,
        ),
    )
    direction: str
    amount: int
    balance_after: int
    reason: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
