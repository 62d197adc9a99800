"""Periodic background re-drive of parked and cooled-down failed tasks."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import timedelta

from photo_tasks.config import SchedulerSettings
from photo_tasks.engine.gateway import RetryPolicy
from photo_tasks.engine.models import TaskStatus, TaskView
from photo_tasks.engine.notifier import Notifier
from photo_tasks.engine.repository import TaskRepository
from photo_tasks.engine.runner import TaskOutcome, TaskRunner

logger = logging.getLogger(__name__)


class WorkerSlots:
    """In-flight counter bounded by a ceiling, owned by one scheduler."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"Worker slot limit must be positive, got {limit}")
        self.limit = limit
        self._lock = threading.Lock()
        self._in_flight = 0

    def try_acquire(self) -> bool:
        with self._lock:
            if self._in_flight >= self.limit:
                return False
            self._in_flight += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._in_flight == 0:
                raise RuntimeError("Worker slot released more times than acquired")
            self._in_flight -= 1

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    @property
    def available(self) -> int:
        with self._lock:
            return self.limit - self._in_flight


@dataclass(slots=True)
class TickSummary:
    """Counters for one scheduler tick."""

    selected: int = 0
    launched: int = 0
    claim_conflicts: int = 0
    skipped_reason: str | None = None
    futures: list[Future[TaskOutcome | None]] = field(default_factory=list, repr=False)


@dataclass(slots=True)
class SchedulerStats:
    """Monitoring snapshot."""

    in_flight: int
    max_concurrent: int
    tick_interval_seconds: float
    running: bool
    ticks: int
    launched: int
    completed: int
    failed: int


class BackgroundScheduler:
    """Polls for retry-eligible tasks and drives them on a bounded pool.

    A tick selects at most `max_concurrent - in_flight` tasks, claims each
    with a compare-and-swap and hands it to the pool. A tick never waits for
    work started by earlier ticks, and a tick that overlaps a running one is
    skipped.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        runner: TaskRunner,
        notifier: Notifier,
        policy: RetryPolicy,
        settings: SchedulerSettings,
    ) -> None:
        self.repository = repository
        self.runner = runner
        self.notifier = notifier
        self.policy = policy
        self.settings = settings
        self._slots = WorkerSlots(settings.max_concurrent_tasks)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_concurrent_tasks,
            thread_name_prefix="photo-tasks-bg",
        )
        self._tick_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._running = False
        self._ticks = 0
        self._launched = 0
        self._completed = 0
        self._failed = 0

    def tick(self, *, wait_for_tasks: bool = False) -> TickSummary:
        """Select and launch eligible tasks once."""

        summary = TickSummary()
        if not self._tick_lock.acquire(blocking=False):
            summary.skipped_reason = "tick_in_progress"
            return summary
        try:
            with self._stats_lock:
                self._ticks += 1
            available = self._slots.available
            if available <= 0:
                summary.skipped_reason = "at_capacity"
                return summary

            candidates = self.repository.list_background_candidates(
                limit=available,
                failed_cooldown=timedelta(seconds=self.settings.failed_cooldown_seconds),
                max_task_age=timedelta(seconds=self.settings.max_task_age_seconds),
            )
            summary.selected = len(candidates)
            for candidate in candidates:
                if not self._slots.try_acquire():
                    break
                claimed = self.repository.claim_task(
                    task_id=candidate.task_id,
                    worker_id=self.settings.worker_id,
                    expected_status=candidate.status,
                    count_as_retry=True,
                )
                if claimed is None:
                    self._slots.release()
                    summary.claim_conflicts += 1
                    logger.info("Task %s was claimed elsewhere, skipping", candidate.task_id)
                    continue
                summary.futures.append(
                    self._executor.submit(self._run_claimed, claimed, candidate.status),
                )
                summary.launched += 1
            with self._stats_lock:
                self._launched += summary.launched
        finally:
            self._tick_lock.release()

        if wait_for_tasks and summary.futures:
            wait(summary.futures)
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> int:
        """Tick every `tick_interval_seconds` until stopped. Returns ticks run."""

        ticks = 0
        self._running = True
        self._stop.clear()
        logger.info(
            "Background scheduler started: interval=%ss max_concurrent=%s",
            self.settings.tick_interval_seconds,
            self.settings.max_concurrent_tasks,
        )
        try:
            while not self._stop.is_set():
                try:
                    self.tick()
                except Exception:
                    logger.exception("Background scheduler tick failed")
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break
                self._stop.wait(self.settings.tick_interval_seconds)
        finally:
            self._running = False
            logger.info("Background scheduler stopped after %s tick(s)", ticks)
        return ticks

    def stop(self) -> None:
        self._stop.set()

    def shutdown(self, *, wait_for_tasks: bool = True) -> None:
        """Stop ticking and release the worker pool."""

        self.stop()
        self._executor.shutdown(wait=wait_for_tasks)

    def stats(self) -> SchedulerStats:
        with self._stats_lock:
            return SchedulerStats(
                in_flight=self._slots.in_flight,
                max_concurrent=self._slots.limit,
                tick_interval_seconds=self.settings.tick_interval_seconds,
                running=self._running,
                ticks=self._ticks,
                launched=self._launched,
                completed=self._completed,
                failed=self._failed,
            )

    def _run_claimed(self, task: TaskView, picked_from: TaskStatus) -> TaskOutcome | None:
        try:
            logger.info(
                "Background retry of task %s (from %s, retry %s/%s)",
                task.task_id,
                picked_from.value,
                task.retry_count,
                task.max_retries,
            )
            outcome = self.runner.drive(task, policy=self.policy, park_on_exhaustion=False)
            with self._stats_lock:
                if outcome.status == TaskStatus.COMPLETED:
                    self._completed += 1
                elif outcome.status == TaskStatus.FAILED:
                    self._failed += 1
            if outcome.finished:
                self._notify(task, outcome)
            return outcome
        except Exception:
            logger.exception("Background worker crashed on task %s", task.task_id)
            return None
        finally:
            self._slots.release()

    def _notify(self, task: TaskView, outcome: TaskOutcome) -> None:
        try:
            user = self.repository.get_user(task.user_id)
            if user is None:
                logger.warning("Owner %s of task %s not found", task.user_id, task.task_id)
                return
            result_ref = outcome.result.get("result_ref") if outcome.result else None
            self.notifier.notify_outcome(
                user=user,
                kind=task.kind,
                success=outcome.status == TaskStatus.COMPLETED,
                result_ref=str(result_ref) if result_ref is not None else None,
                error=outcome.error,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning("Notification for task %s failed: %s", task.task_id, error)
