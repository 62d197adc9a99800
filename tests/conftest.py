"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from photo_tasks.config import SchedulerSettings, Settings
from photo_tasks.engine.gateway import RequestGateway
from photo_tasks.engine.models import (
    FailureClass,
    TaskCreate,
    TaskFailure,
    TaskKind,
    TaskStatus,
    TaskView,
    UserView,
)
from photo_tasks.engine.provider import ProviderOutput, ProviderRequest
from photo_tasks.engine.repository import TaskRepository
from photo_tasks.engine.runtime import EngineRuntime

START = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
PAYLOADS: dict[TaskKind, dict[str, str]] = {
    TaskKind.RESTORE: {"image_url": "https://img.example.com/old.jpg"},
    TaskKind.STYLIZE: {"image_url": "https://img.example.com/cat.jpg", "style_id": "ink"},
    TaskKind.ERA_STYLE: {"image_url": "https://img.example.com/me.jpg", "era_id": "1920s"},
    TaskKind.POET_STYLE: {"image_url": "https://img.example.com/me.jpg", "poet_id": "pushkin"},
    TaskKind.GENERATE: {"prompt": "a lighthouse at dawn"},
}


class ManualClock:
    """Wall clock, monotonic clock and sleep that only move when told to."""

    def __init__(self, start: datetime = START) -> None:
        self._start = start
        self._offset = 0.0
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._start + timedelta(seconds=self._offset)

    def monotonic(self) -> float:
        with self._lock:
            return self._offset

    def sleep(self, seconds: float) -> None:
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._offset += seconds


class ScriptedProvider:
    """Replays queued outcomes; an exception in the script is raised, anything else returned.

    Each call advances the clock by `call_seconds`. When `gate` is set, calls
    block until it is released.
    """

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self.call_seconds = 0.0
        self.gate: threading.Event | None = None
        self.started = threading.Semaphore(0)
        self.requests: list[ProviderRequest] = []
        self._script: deque[BaseException | ProviderOutput] = deque()
        self._lock = threading.Lock()

    def script(self, *steps: BaseException | ProviderOutput) -> None:
        with self._lock:
            self._script.extend(steps)

    def invoke(self, request: ProviderRequest) -> ProviderOutput:
        with self._lock:
            self.requests.append(request)
            step = self._script.popleft() if self._script else None
        self.started.release()
        if self.gate is not None:
            self.gate.wait(timeout=5)
        if self.call_seconds:
            self.clock.advance(self.call_seconds)
        if isinstance(step, BaseException):
            raise step
        if step is not None:
            return step
        return ProviderOutput(result_ref=f"test://{request.kind.value}/{request.task_id}")

    @property
    def calls(self) -> int:
        with self._lock:
            return len(self.requests)


@dataclass(slots=True)
class SentNotification:
    user_id: str
    kind: TaskKind
    success: bool
    result_ref: str | None
    error: str | None


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[SentNotification] = []
        self.fail_with: Exception | None = None

    def notify_outcome(
        self,
        *,
        user: UserView,
        kind: TaskKind,
        success: bool,
        result_ref: str | None = None,
        error: str | None = None,
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(
            SentNotification(
                user_id=user.user_id,
                kind=kind,
                success=success,
                result_ref=result_ref,
                error=error,
            ),
        )


@dataclass(slots=True)
class EngineHarness:
    """Runtime wired to fakes plus helpers to seed users and tasks."""

    settings: Settings
    clock: ManualClock
    provider: ScriptedProvider
    notifier: RecordingNotifier
    runtime: EngineRuntime
    extra_repositories: list[TaskRepository] = field(default_factory=list)

    @property
    def repository(self) -> TaskRepository:
        return self.runtime.repository

    def add_user(
        self,
        user_id: str = "alice",
        *,
        balance: int = 100,
        chat_id: str | None = "chat-alice",
    ) -> UserView:
        self.repository.upsert_user(user_id=user_id, display_name=user_id.title(), chat_id=chat_id)
        if balance:
            self.runtime.ledger.top_up(user_id, balance)
        user = self.repository.get_user(user_id)
        assert user is not None
        return user

    def balance(self, user_id: str = "alice") -> int:
        return self.runtime.ledger.balance(user_id)

    def task(self, task_id: str) -> TaskView:
        task = self.repository.get_task(task_id)
        assert task is not None
        return task

    def open_repository(self) -> TaskRepository:
        """Second connection to the same database, as another process would have."""

        repository = TaskRepository(self.settings.db_path, clock=self.clock.now)
        self.extra_repositories.append(repository)
        return repository

    def status(self, task_id: str) -> TaskStatus:
        return self.task(task_id).status

    def create_task(
        self,
        kind: TaskKind = TaskKind.RESTORE,
        *,
        user_id: str = "alice",
        max_retries: int | None = None,
    ) -> TaskView:
        return self.repository.create_task(
            TaskCreate(
                user_id=user_id,
                kind=kind,
                payload=dict(PAYLOADS[kind]),
                cost=self.runtime.pricing.cost_of(kind),
                max_retries=(
                    self.settings.scheduler.max_retries if max_retries is None else max_retries
                ),
            ),
        )

    def start_task(self, kind: TaskKind = TaskKind.RESTORE, **kwargs: object) -> TaskView:
        """Create a task and claim it, leaving it in `processing`."""

        task = self.create_task(kind, **kwargs)  # type: ignore[arg-type]
        claimed = self.repository.claim_task(
            task_id=task.task_id,
            worker_id="foreground-worker",
            expected_status=TaskStatus.PENDING,
            count_as_retry=False,
        )
        assert claimed is not None
        return claimed

    def failed_task(
        self,
        kind: TaskKind = TaskKind.RESTORE,
        *,
        failure_class: FailureClass = FailureClass.TRANSIENT_NETWORK,
        retryable: bool = True,
        **kwargs: object,
    ) -> TaskView:
        task = self.start_task(kind, **kwargs)
        assert self.repository.fail_task(
            task_id=task.task_id,
            failure=TaskFailure(
                failure_class=failure_class,
                retryable=retryable,
                error_summary=f"{failure_class.value} failure",
            ),
        )
        return self.task(task.task_id)


def build_settings(db_path: Path, **scheduler_overrides: object) -> Settings:
    scheduler = SchedulerSettings(worker_id="test-worker")
    for name, value in scheduler_overrides.items():
        setattr(scheduler, name, value)
    return Settings(db_path=db_path, scheduler=scheduler)


def build_harness(settings: Settings) -> EngineHarness:
    clock = ManualClock()
    repository = TaskRepository(settings.db_path, clock=clock.now)
    repository.init_schema()
    provider = ScriptedProvider(clock)
    notifier = RecordingNotifier()
    runtime = EngineRuntime.build(
        settings=settings,
        repository=repository,
        provider=provider,
        notifier=notifier,
        gateway=RequestGateway(monotonic=clock.monotonic, sleep=clock.sleep),
    )
    runtime.pricing.seed_defaults()
    return EngineHarness(
        settings=settings,
        clock=clock,
        provider=provider,
        notifier=notifier,
        runtime=runtime,
    )


@pytest.fixture()
def make_harness(tmp_path: Path) -> Iterator[Callable[..., EngineHarness]]:
    """Factory for harnesses with scheduler overrides, closed after the test."""

    created: list[EngineHarness] = []

    def _make(**scheduler_overrides: object) -> EngineHarness:
        db_path = tmp_path / f"engine-{len(created)}.db"
        engine = build_harness(build_settings(db_path, **scheduler_overrides))
        created.append(engine)
        return engine

    yield _make
    for engine in created:
        engine.runtime.close()
        engine.repository.close()
        for repository in engine.extra_repositories:
            repository.close()


@pytest.fixture()
def harness(make_harness: Callable[..., EngineHarness]) -> EngineHarness:
    return make_harness()


@pytest.fixture()
def payloads() -> dict[TaskKind, dict[str, str]]:
    return {kind: dict(payload) for kind, payload in PAYLOADS.items()}
