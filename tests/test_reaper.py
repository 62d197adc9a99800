from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import allure
import pytest

from photo_tasks.engine.errors import (
    ProviderError,
    ProviderErrorKind,
    TaskNotFoundError,
    TaskStateError,
)
from photo_tasks.engine.models import FailureClass, TaskKind, TaskOrigin, TaskStatus
from photo_tasks.engine.reaper import STALLED_ERROR

if TYPE_CHECKING:
    from conftest import EngineHarness

pytestmark = [
    allure.epic("Retry Engine"),
    allure.feature("Stuck Task Recovery"),
]

FIFTEEN_MINUTES = timedelta(minutes=15).total_seconds()


def _ledger_size(harness: EngineHarness, task_id: str) -> int:
    return len(harness.runtime.ledger.entries_for_task(task_id))


def test_stuck_task_is_force_failed_without_ledger_changes(harness: EngineHarness) -> None:
    harness.add_user(balance=100)
    task = harness.start_task()
    harness.clock.advance(FIFTEEN_MINUTES)

    stuck = harness.runtime.reaper.list_stuck()
    results = harness.runtime.reaper.cleanup()

    assert [item.task_id for item in stuck] == [task.task_id]
    assert len(results) == 1
    assert results[0].force_failed is True
    assert results[0].stuck_for_seconds == pytest.approx(FIFTEEN_MINUTES)
    failed = harness.task(task.task_id)
    assert failed.status == TaskStatus.FAILED
    assert failed.failure_class == FailureClass.STALLED
    assert failed.error_summary == STALLED_ERROR
    assert failed.last_error_retryable is True
    assert _ledger_size(harness, task.task_id) == 0
    assert harness.balance() == 100


def test_cleanup_ignores_recently_updated_tasks(harness: EngineHarness) -> None:
    harness.add_user()
    harness.start_task()
    harness.clock.advance(timedelta(minutes=5).total_seconds())

    assert harness.runtime.reaper.list_stuck() == []
    assert harness.runtime.reaper.cleanup() == []


def test_threshold_override_and_validation(harness: EngineHarness) -> None:
    harness.add_user()
    task = harness.start_task()
    harness.clock.advance(120)

    assert harness.runtime.reaper.list_stuck() == []
    assert [item.task_id for item in harness.runtime.reaper.list_stuck(threshold_seconds=60)] == [
        task.task_id,
    ]
    with pytest.raises(ValueError, match="must be positive"):
        harness.runtime.reaper.cleanup(threshold_seconds=0)


def test_force_fail_refuses_non_processing_and_fresh_tasks(harness: EngineHarness) -> None:
    harness.add_user()
    pending = harness.create_task()
    fresh = harness.start_task()

    with pytest.raises(TaskNotFoundError):
        harness.runtime.reaper.force_fail("missing")
    with pytest.raises(TaskStateError, match="not processing"):
        harness.runtime.reaper.force_fail(pending.task_id)
    with pytest.raises(TaskStateError, match="not stuck"):
        harness.runtime.reaper.force_fail(fresh.task_id)
    assert harness.status(fresh.task_id) == TaskStatus.PROCESSING


def test_force_fail_single_stuck_task(harness: EngineHarness) -> None:
    harness.add_user()
    task = harness.start_task()
    harness.clock.advance(FIFTEEN_MINUTES)

    failed = harness.runtime.reaper.force_fail(task.task_id)

    assert failed.status == TaskStatus.FAILED
    assert failed.error_summary == STALLED_ERROR


def test_manual_retry_refuses_completed_task(harness: EngineHarness) -> None:
    harness.add_user(balance=100)
    original = harness.start_task(TaskKind.STYLIZE)
    harness.repository.complete_task(task_id=original.task_id, result={"result_ref": "old"})
    harness.runtime.ledger.debit(original.task_id)
    assert harness.balance() == 60

    with pytest.raises(TaskStateError, match="completed"):
        harness.runtime.reaper.manual_retry(original.task_id)
    assert harness.balance() == 60


def test_manual_retry_of_stuck_task_creates_suppressed_replacement(
    harness: EngineHarness,
) -> None:
    harness.add_user(balance=100)
    original = harness.start_task(TaskKind.STYLIZE)
    harness.clock.advance(FIFTEEN_MINUTES)

    result = harness.runtime.reaper.manual_retry(original.task_id)

    assert result.original_task_id == original.task_id
    assert result.new_task_id != original.task_id
    assert result.outcome.status == TaskStatus.COMPLETED
    replacement = harness.task(result.new_task_id)
    assert replacement.origin == TaskOrigin.MANUAL
    assert replacement.parent_task_id == original.task_id
    assert replacement.billing_suppressed is True
    assert replacement.billed is False
    assert replacement.payload == original.payload
    assert replacement.cost == original.cost

    stale = harness.task(original.task_id)
    assert stale.status == TaskStatus.FAILED
    assert stale.superseded_by == result.new_task_id
    assert harness.balance() == 100
    assert _ledger_size(harness, result.new_task_id) == 0
    assert _ledger_size(harness, original.task_id) == 0


def test_manual_retry_twice_links_records_and_never_debits(harness: EngineHarness) -> None:
    harness.add_user(balance=100)
    original = harness.failed_task(failure_class=FailureClass.CONTENT_REJECTED, retryable=False)
    harness.provider.script(
        ProviderError("still unsafe", kind=ProviderErrorKind.CONTENT_SAFETY),
    )

    first = harness.runtime.reaper.manual_retry(original.task_id)
    second = harness.runtime.reaper.manual_retry(original.task_id)

    assert first.outcome.status == TaskStatus.FAILED
    assert second.outcome.status == TaskStatus.COMPLETED
    assert first.new_task_id != second.new_task_id
    assert harness.task(original.task_id).superseded_by == second.new_task_id
    for new_task_id in (first.new_task_id, second.new_task_id):
        assert harness.task(new_task_id).parent_task_id == original.task_id
        assert _ledger_size(harness, new_task_id) == 0
    assert harness.balance() == 100


def test_manual_retry_parks_replacement_on_transient_exhaustion(harness: EngineHarness) -> None:
    harness.add_user(balance=100)
    original = harness.failed_task()
    harness.provider.call_seconds = 60.0
    harness.provider.script(
        *[ProviderError("timeout", kind=ProviderErrorKind.TIMEOUT) for _ in range(3)],
    )

    result = harness.runtime.reaper.manual_retry(original.task_id)

    assert result.outcome.status == TaskStatus.PENDING_BACKGROUND_RETRY
    harness.provider.call_seconds = 0.0
    harness.runtime.scheduler.tick(wait_for_tasks=True)
    replacement = harness.task(result.new_task_id)
    assert replacement.status == TaskStatus.COMPLETED
    assert replacement.billed is False
    assert harness.balance() == 100


def test_superseded_task_is_not_picked_by_scheduler(harness: EngineHarness) -> None:
    harness.add_user(balance=100)
    original = harness.failed_task()
    result = harness.runtime.reaper.manual_retry(original.task_id)
    assert result.outcome.status == TaskStatus.COMPLETED

    harness.clock.advance(timedelta(hours=1).total_seconds())
    summary = harness.runtime.scheduler.tick(wait_for_tasks=True)

    assert summary.selected == 0
    assert harness.status(original.task_id) == TaskStatus.FAILED


def test_manual_retry_of_unknown_task(harness: EngineHarness) -> None:
    with pytest.raises(TaskNotFoundError):
        harness.runtime.reaper.manual_retry("missing")


def test_manual_retry_aborts_when_original_is_claimed_concurrently(
    harness: EngineHarness,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    harness.add_user(balance=100)
    original = harness.failed_task()
    repository = harness.runtime.reaper.repository
    create_replacement = repository.create_replacement

    def claim_then_replace(**kwargs: object) -> object:
        assert repository.claim_task(
            task_id=original.task_id,
            worker_id="scheduler-worker",
            expected_status=TaskStatus.FAILED,
            count_as_retry=True,
        )
        return create_replacement(**kwargs)

    monkeypatch.setattr(repository, "create_replacement", claim_then_replace)

    with pytest.raises(TaskStateError, match="changed state"):
        harness.runtime.reaper.manual_retry(original.task_id)

    assert harness.provider.calls == 0
    assert [task.task_id for task in harness.repository.list_tasks()] == [original.task_id]
    assert harness.task(original.task_id).superseded_by is None
