from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import wait
from datetime import timedelta
from typing import TYPE_CHECKING

import allure
import pytest

from photo_tasks.engine.errors import ProviderError, ProviderErrorKind
from photo_tasks.engine.gateway import RetryPolicy
from photo_tasks.engine.models import (
    FailureClass,
    LedgerDirection,
    TaskFailure,
    TaskKind,
    TaskStatus,
    TaskView,
)
from photo_tasks.engine.scheduler import BackgroundScheduler, WorkerSlots
from photo_tasks.engine.services import SubmitTask

if TYPE_CHECKING:
    from conftest import EngineHarness

pytestmark = [
    allure.epic("Retry Engine"),
    allure.feature("Background Scheduler"),
]


def _timeout() -> ProviderError:
    return ProviderError("read timeout", kind=ProviderErrorKind.TIMEOUT)


def _parked_task(harness: EngineHarness, kind: TaskKind = TaskKind.RESTORE) -> TaskView:
    task = harness.start_task(kind)
    assert harness.repository.park_for_background(
        task_id=task.task_id,
        failure=TaskFailure(
            failure_class=FailureClass.TRANSIENT_NETWORK,
            retryable=True,
            error_summary="read timeout",
        ),
    )
    return harness.task(task.task_id)


def test_parked_foreground_task_completes_in_background_with_one_debit(
    harness: EngineHarness,
    payloads: dict[TaskKind, dict[str, str]],
) -> None:
    harness.add_user(balance=100)
    harness.provider.call_seconds = 60.0
    harness.provider.script(*[_timeout() for _ in range(3)])
    submitted = harness.runtime.service.submit(
        SubmitTask(
            user_id="alice",
            kind=TaskKind.ERA_STYLE,
            payload=payloads[TaskKind.ERA_STYLE],
        ),
    )
    assert submitted.status == TaskStatus.PENDING_BACKGROUND_RETRY

    harness.provider.call_seconds = 0.0
    summary = harness.runtime.scheduler.tick(wait_for_tasks=True)

    assert summary.selected == 1
    assert summary.launched == 1
    assert summary.claim_conflicts == 0
    task = harness.task(submitted.task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.retry_count == 3
    assert task.billed is True
    entries = harness.runtime.ledger.entries_for_task(submitted.task_id)
    assert [(entry.direction, entry.amount) for entry in entries] == [(LedgerDirection.DEBIT, 40)]
    assert harness.balance() == 60

    assert len(harness.notifier.sent) == 1
    sent = harness.notifier.sent[0]
    assert sent.user_id == "alice"
    assert sent.kind == TaskKind.ERA_STYLE
    assert sent.success is True
    assert sent.result_ref == f"test://era_style/{submitted.task_id}"

    follow_up = harness.runtime.scheduler.tick(wait_for_tasks=True)
    assert follow_up.selected == 0
    assert len(harness.runtime.ledger.entries_for_task(submitted.task_id)) == 1


def test_background_exhaustion_fails_task_and_notifies(make_harness) -> None:  # noqa: ANN001
    harness = make_harness(max_retries=2)
    harness.add_user(balance=100)
    task = _parked_task(harness)
    harness.provider.script(*[_timeout() for _ in range(5)])

    summary = harness.runtime.scheduler.tick(wait_for_tasks=True)

    assert summary.launched == 1
    assert harness.provider.calls == 2
    failed = harness.task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.retry_count == 2
    assert failed.last_error_retryable is True
    assert failed.failure_class == FailureClass.TRANSIENT_NETWORK
    assert failed.billed is False
    assert harness.balance() == 100
    assert [(sent.success, sent.error) for sent in harness.notifier.sent] == [
        (False, "read timeout"),
    ]

    harness.clock.advance(timedelta(hours=1).total_seconds())
    assert harness.runtime.scheduler.tick(wait_for_tasks=True).selected == 0


def test_failed_retryable_task_is_retried_after_cooldown(harness: EngineHarness) -> None:
    harness.add_user(balance=100)
    task = harness.failed_task(TaskKind.GENERATE)

    assert harness.runtime.scheduler.tick(wait_for_tasks=True).selected == 0
    harness.clock.advance(harness.settings.scheduler.failed_cooldown_seconds)
    summary = harness.runtime.scheduler.tick(wait_for_tasks=True)

    assert summary.launched == 1
    retried = harness.task(task.task_id)
    assert retried.status == TaskStatus.COMPLETED
    assert retried.retry_count == 1
    assert harness.balance() == 75


def test_tick_respects_concurrency_ceiling(make_harness) -> None:  # noqa: ANN001
    harness = make_harness(max_concurrent_tasks=2)
    harness.add_user(balance=500)
    tasks = [_parked_task(harness) for _ in range(3)]
    harness.provider.gate = threading.Event()
    scheduler = harness.runtime.scheduler

    first = scheduler.tick()
    assert first.selected == 2
    assert first.launched == 2
    assert harness.provider.started.acquire(timeout=5)
    assert harness.provider.started.acquire(timeout=5)
    assert scheduler.stats().in_flight == 2

    blocked = scheduler.tick()
    assert blocked.skipped_reason == "at_capacity"
    assert blocked.launched == 0

    harness.provider.gate.set()
    wait(first.futures, timeout=10)
    assert scheduler.stats().in_flight == 0

    last = scheduler.tick(wait_for_tasks=True)
    assert last.launched == 1
    assert {harness.status(task.task_id) for task in tasks} == {TaskStatus.COMPLETED}
    stats = scheduler.stats()
    assert stats.launched == 3
    assert stats.completed == 3
    assert stats.max_concurrent == 2


def test_overlapping_tick_is_skipped(
    harness: EngineHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    harness.add_user(balance=100)
    _parked_task(harness)
    scheduler = harness.runtime.scheduler
    entered = threading.Event()
    release = threading.Event()
    original = harness.repository.list_background_candidates

    def _slow_candidates(**kwargs):  # noqa: ANN003, ANN202
        entered.set()
        release.wait(timeout=5)
        return original(**kwargs)

    monkeypatch.setattr(harness.repository, "list_background_candidates", _slow_candidates)
    results = []
    worker = threading.Thread(target=lambda: results.append(scheduler.tick(wait_for_tasks=True)))
    worker.start()
    assert entered.wait(timeout=5)

    overlapping = scheduler.tick()
    release.set()
    worker.join(timeout=10)

    assert overlapping.skipped_reason == "tick_in_progress"
    assert overlapping.selected == 0
    assert results[0].launched == 1


def test_stale_candidate_claimed_elsewhere_is_skipped(
    harness: EngineHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    harness.add_user(balance=100)
    task = _parked_task(harness)
    other_repository = harness.open_repository()
    other = BackgroundScheduler(
        repository=other_repository,
        runner=harness.runtime.runner,
        notifier=harness.notifier,
        policy=RetryPolicy.from_settings("background", harness.settings.background),
        settings=harness.settings.scheduler,
    )
    stale = other_repository.list_background_candidates(
        limit=5,
        failed_cooldown=timedelta(minutes=10),
        max_task_age=timedelta(hours=24),
    )
    assert [candidate.task_id for candidate in stale] == [task.task_id]

    try:
        assert harness.runtime.scheduler.tick(wait_for_tasks=True).launched == 1
        monkeypatch.setattr(
            other_repository,
            "list_background_candidates",
            lambda **_: stale,
        )
        summary = other.tick(wait_for_tasks=True)
    finally:
        other.shutdown()

    assert summary.selected == 1
    assert summary.launched == 0
    assert summary.claim_conflicts == 1
    assert harness.provider.calls == 1
    assert len(harness.runtime.ledger.entries_for_task(task.task_id)) == 1


def test_notifier_failure_does_not_affect_task(
    harness: EngineHarness,
    caplog: pytest.LogCaptureFixture,
) -> None:
    harness.add_user(balance=100)
    task = _parked_task(harness)
    harness.notifier.fail_with = RuntimeError("telegram is down")

    with caplog.at_level(logging.WARNING, logger="photo_tasks.engine.scheduler"):
        summary = harness.runtime.scheduler.tick(wait_for_tasks=True)

    outcome = summary.futures[0].result()
    assert outcome is not None
    assert outcome.status == TaskStatus.COMPLETED
    assert harness.status(task.task_id) == TaskStatus.COMPLETED
    assert any("telegram is down" in record.getMessage() for record in caplog.records)
    assert harness.runtime.scheduler.stats().in_flight == 0


def test_background_debit_without_funds_flags_billing_failure(
    harness: EngineHarness,
    caplog: pytest.LogCaptureFixture,
) -> None:
    harness.add_user(balance=30)
    parked = _parked_task(harness)
    spender = harness.start_task()
    harness.repository.complete_task(task_id=spender.task_id, result={"result_ref": "r"})
    harness.runtime.ledger.debit(spender.task_id)
    assert harness.balance() == 0

    with caplog.at_level(logging.ERROR, logger="photo_tasks.engine.runner"):
        harness.runtime.scheduler.tick(wait_for_tasks=True)

    task = harness.task(parked.task_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.billed is False
    assert task.billing_failed is True
    assert harness.balance() == 0
    assert any(record.getMessage().startswith("billing_failed") for record in caplog.records)
    assert harness.notifier.sent[0].success is True
    assert harness.repository.count_tasks(stuck_after=timedelta(minutes=10)).billing_failed == 1


def test_worker_crash_releases_slot(
    harness: EngineHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    harness.add_user(balance=100)
    _parked_task(harness)

    def _crash(*_args, **_kwargs):  # noqa: ANN002, ANN003, ANN202
        raise RuntimeError("worker bug")

    monkeypatch.setattr(harness.runtime.runner, "drive", _crash)
    summary = harness.runtime.scheduler.tick(wait_for_tasks=True)

    assert summary.launched == 1
    assert summary.futures[0].result() is None
    assert harness.runtime.scheduler.stats().in_flight == 0
    assert harness.notifier.sent == []


def test_run_loop_stops_after_max_ticks(make_harness) -> None:  # noqa: ANN001
    harness = make_harness(tick_interval_seconds=0.01)
    harness.add_user(balance=100)
    task = _parked_task(harness)

    ticks = harness.runtime.scheduler.run_loop(max_ticks=3)
    harness.runtime.scheduler.shutdown(wait_for_tasks=True)

    assert ticks == 3
    assert harness.status(task.task_id) == TaskStatus.COMPLETED
    stats = harness.runtime.scheduler.stats()
    assert stats.ticks == 3
    assert stats.running is False


def test_run_loop_exits_when_stopped(make_harness) -> None:  # noqa: ANN001
    harness = make_harness(tick_interval_seconds=0.01)
    scheduler = harness.runtime.scheduler
    ticks: list[int] = []
    worker = threading.Thread(target=lambda: ticks.append(scheduler.run_loop()))
    worker.start()
    deadline = time.monotonic() + 5
    while scheduler.stats().ticks == 0 and time.monotonic() < deadline:
        time.sleep(0.01)

    scheduler.stop()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert ticks and ticks[0] >= 1


def test_worker_slots_bound_in_flight_count() -> None:
    slots = WorkerSlots(2)

    assert slots.try_acquire() is True
    assert slots.try_acquire() is True
    assert slots.try_acquire() is False
    assert slots.available == 0
    slots.release()
    assert slots.in_flight == 1
    slots.release()
    with pytest.raises(RuntimeError, match="released more times"):
        slots.release()
    with pytest.raises(ValueError, match="must be positive"):
        WorkerSlots(0)
