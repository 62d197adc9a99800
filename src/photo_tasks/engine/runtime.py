"""Wiring of engine components from settings."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from photo_tasks.config import Settings
from photo_tasks.engine.gateway import RequestGateway, RetryPolicy
from photo_tasks.engine.ledger import BillingLedger
from photo_tasks.engine.notifier import Notifier, build_notifier
from photo_tasks.engine.pricing import PriceCatalog
from photo_tasks.engine.provider import GenerationProvider, build_provider
from photo_tasks.engine.reaper import StuckTaskReaper
from photo_tasks.engine.repository import TaskRepository
from photo_tasks.engine.runner import TaskRunner
from photo_tasks.engine.scheduler import BackgroundScheduler
from photo_tasks.engine.services import TaskService


@dataclass(slots=True)
class EngineRuntime:
    """All engine services sharing one repository."""

    repository: TaskRepository
    ledger: BillingLedger
    pricing: PriceCatalog
    runner: TaskRunner
    service: TaskService
    scheduler: BackgroundScheduler
    reaper: StuckTaskReaper

    @classmethod
    def build(  # noqa: PLR0913
        cls,
        *,
        settings: Settings,
        repository: TaskRepository,
        provider: GenerationProvider | None = None,
        notifier: Notifier | None = None,
        gateway: RequestGateway | None = None,
    ) -> EngineRuntime:
        ledger = BillingLedger(repository)
        pricing = PriceCatalog(repository=repository, defaults=settings.default_prices)
        runner = TaskRunner(
            repository=repository,
            ledger=ledger,
            provider=provider or build_provider(settings.provider),
            gateway=gateway or RequestGateway(),
        )
        foreground = RetryPolicy.from_settings("foreground", settings.foreground)
        background = RetryPolicy.from_settings("background", settings.background)
        return cls(
            repository=repository,
            ledger=ledger,
            pricing=pricing,
            runner=runner,
            service=TaskService(
                repository=repository,
                ledger=ledger,
                pricing=pricing,
                runner=runner,
                policy=foreground,
                worker_id=settings.scheduler.worker_id,
                max_retries=settings.scheduler.max_retries,
            ),
            scheduler=BackgroundScheduler(
                repository=repository,
                runner=runner,
                notifier=notifier or build_notifier(settings.notifier),
                policy=background,
                settings=settings.scheduler,
            ),
            reaper=StuckTaskReaper(
                repository=repository,
                runner=runner,
                policy=foreground,
                stuck_threshold_seconds=settings.reaper.stuck_threshold_seconds,
                worker_id=settings.scheduler.worker_id,
                max_retries=settings.scheduler.max_retries,
            ),
        )

    def close(self) -> None:
        self.scheduler.shutdown(wait_for_tasks=True)
        for component in (self.runner.provider, self.scheduler.notifier):
            close: Callable[[], None] | None = getattr(component, "close", None)
            if close is not None:
                close()
