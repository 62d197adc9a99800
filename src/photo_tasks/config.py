"""Runtime configuration for the photo task retry engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

ENV_PREFIX = "PHOTO_TASKS_"
DEFAULT_PRICES = "restore:30,stylize:40,era_style:40,poet_style:50,generate:25"
SUPPORTED_PROVIDERS = ("echo", "http")
SUPPORTED_NOTIFIERS = ("log", "telegram")


@dataclass(slots=True)
class RetryBudgetSettings:
    """Backoff shape and total time budget for one retry tier."""

    budget_seconds: float
    call_timeout_seconds: float
    initial_delay_seconds: float
    max_delay_seconds: float
    backoff_multiplier: float = 2.0


def _default_foreground() -> RetryBudgetSettings:
    return RetryBudgetSettings(
        budget_seconds=180.0,
        call_timeout_seconds=180.0,
        initial_delay_seconds=1.0,
        max_delay_seconds=30.0,
    )


def _default_background() -> RetryBudgetSettings:
    return RetryBudgetSettings(
        budget_seconds=900.0,
        call_timeout_seconds=180.0,
        initial_delay_seconds=5.0,
        max_delay_seconds=120.0,
    )


@dataclass(slots=True)
class SchedulerSettings:
    """Background re-drive settings."""

    tick_interval_seconds: float = 30.0
    max_concurrent_tasks: int = 3
    max_task_age_seconds: int = 86_400
    failed_cooldown_seconds: int = 600
    max_retries: int = 5
    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")


@dataclass(slots=True)
class ReaperSettings:
    """Stuck task detection settings."""

    stuck_threshold_seconds: int = 600


@dataclass(slots=True)
class ProviderSettings:
    """Generation provider adapter settings."""

    backend: str = "echo"
    base_url: str = ""
    api_key: str = ""


@dataclass(slots=True)
class NotifierSettings:
    """Outbound owner notification settings."""

    backend: str = "log"
    telegram_bot_token: str = ""
    telegram_api_url: str = "https://api.telegram.org"
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".photo_tasks.db")
    sqlite_busy_timeout_ms: int = 5_000
    foreground: RetryBudgetSettings = field(default_factory=_default_foreground)
    background: RetryBudgetSettings = field(default_factory=_default_background)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    reaper: ReaperSettings = field(default_factory=ReaperSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    notifier: NotifierSettings = field(default_factory=NotifierSettings)
    default_prices: dict[str, int] = field(
        default_factory=lambda: parse_price_mapping(DEFAULT_PRICES),
    )

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(_env("DB_PATH", ".photo_tasks.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            foreground=_retry_budget_from_env("FOREGROUND", _default_foreground()),
            background=_retry_budget_from_env("BACKGROUND", _default_background()),
            scheduler=SchedulerSettings(
                tick_interval_seconds=float(_env("TICK_INTERVAL_SECONDS", "30")),
                max_concurrent_tasks=int(_env("MAX_CONCURRENT_TASKS", "3")),
                max_task_age_seconds=int(_env("MAX_TASK_AGE_SECONDS", "86400")),
                failed_cooldown_seconds=int(_env("FAILED_COOLDOWN_SECONDS", "600")),
                max_retries=int(_env("MAX_RETRIES", "5")),
                worker_id=_env("WORKER_ID", f"worker-{os.getpid()}"),
            ),
            reaper=ReaperSettings(
                stuck_threshold_seconds=int(_env("STUCK_THRESHOLD_SECONDS", "600")),
            ),
            provider=ProviderSettings(
                backend=_env("PROVIDER", "echo").strip().lower(),
                base_url=_env("PROVIDER_URL", "").strip(),
                api_key=_env("PROVIDER_API_KEY", ""),
            ),
            notifier=NotifierSettings(
                backend=_env("NOTIFIER", "log").strip().lower(),
                telegram_bot_token=_env("TELEGRAM_BOT_TOKEN", ""),
                telegram_api_url=_env("TELEGRAM_API_URL", "https://api.telegram.org").strip(),
                timeout_seconds=float(_env("NOTIFIER_TIMEOUT_SECONDS", "10")),
            ),
            default_prices=parse_price_mapping(_env("PRICES", DEFAULT_PRICES)),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error for out-of-range or inconsistent values."""

        for tier_name, tier in (("FOREGROUND", self.foreground), ("BACKGROUND", self.background)):
            if tier.budget_seconds <= 0:
                raise ValueError(f"PHOTO_TASKS_{tier_name}_BUDGET_SECONDS must be > 0.")
            if tier.call_timeout_seconds <= 0:
                raise ValueError(f"PHOTO_TASKS_{tier_name}_CALL_TIMEOUT_SECONDS must be > 0.")
            if tier.initial_delay_seconds < 0:
                raise ValueError(f"PHOTO_TASKS_{tier_name}_INITIAL_DELAY_SECONDS must be >= 0.")
            if tier.max_delay_seconds < tier.initial_delay_seconds:
                raise ValueError(
                    f"PHOTO_TASKS_{tier_name}_MAX_DELAY_SECONDS must be >= "
                    f"PHOTO_TASKS_{tier_name}_INITIAL_DELAY_SECONDS.",
                )
            if tier.backoff_multiplier < 1:
                raise ValueError(f"PHOTO_TASKS_{tier_name}_BACKOFF_MULTIPLIER must be >= 1.")
        if self.scheduler.tick_interval_seconds <= 0:
            raise ValueError("PHOTO_TASKS_TICK_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.max_concurrent_tasks <= 0:
            raise ValueError("PHOTO_TASKS_MAX_CONCURRENT_TASKS must be a positive integer.")
        if self.scheduler.max_task_age_seconds <= 0:
            raise ValueError("PHOTO_TASKS_MAX_TASK_AGE_SECONDS must be > 0.")
        if self.scheduler.failed_cooldown_seconds < 0:
            raise ValueError("PHOTO_TASKS_FAILED_COOLDOWN_SECONDS must be >= 0.")
        if self.scheduler.max_retries < 0:
            raise ValueError("PHOTO_TASKS_MAX_RETRIES must be >= 0.")
        if self.reaper.stuck_threshold_seconds <= 0:
            raise ValueError("PHOTO_TASKS_STUCK_THRESHOLD_SECONDS must be > 0.")
        if self.provider.backend not in SUPPORTED_PROVIDERS:
            raise ValueError(
                f"Unsupported PHOTO_TASKS_PROVIDER: {self.provider.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        if self.provider.backend == "http":
            _validate_http_url(self.provider.base_url, name="PHOTO_TASKS_PROVIDER_URL")
        if self.notifier.backend not in SUPPORTED_NOTIFIERS:
            raise ValueError(
                f"Unsupported PHOTO_TASKS_NOTIFIER: {self.notifier.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_NOTIFIERS)}.",
            )
        if self.notifier.backend == "telegram" and not self.notifier.telegram_bot_token:
            raise ValueError(
                "PHOTO_TASKS_TELEGRAM_BOT_TOKEN is required when PHOTO_TASKS_NOTIFIER=telegram.",
            )


def parse_price_mapping(raw: str) -> dict[str, int]:
    """Parse `kind:price,...` mapping used for default service prices."""

    prices: dict[str, int] = {}
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                f"Invalid PHOTO_TASKS_PRICES entry: {token!r}. Expected format '<kind>:<price>'.",
            )
        kind, price_raw = token.split(":", 1)
        kind = kind.strip().lower()
        try:
            price = int(price_raw.strip())
        except ValueError as error:
            raise ValueError(
                f"Invalid PHOTO_TASKS_PRICES value for {kind!r}: {price_raw.strip()!r}",
            ) from error
        if price < 0:
            raise ValueError(f"Invalid PHOTO_TASKS_PRICES value for {kind!r}: must be >= 0")
        prices[kind] = price
    return prices


def _retry_budget_from_env(tier: str, defaults: RetryBudgetSettings) -> RetryBudgetSettings:
    return RetryBudgetSettings(
        budget_seconds=float(_env(f"{tier}_BUDGET_SECONDS", str(defaults.budget_seconds))),
        call_timeout_seconds=float(
            _env(f"{tier}_CALL_TIMEOUT_SECONDS", str(defaults.call_timeout_seconds)),
        ),
        initial_delay_seconds=float(
            _env(f"{tier}_INITIAL_DELAY_SECONDS", str(defaults.initial_delay_seconds)),
        ),
        max_delay_seconds=float(
            _env(f"{tier}_MAX_DELAY_SECONDS", str(defaults.max_delay_seconds)),
        ),
        backoff_multiplier=float(
            _env(f"{tier}_BACKOFF_MULTIPLIER", str(defaults.backoff_multiplier)),
        ),
    )


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. "
            "Expected an absolute URL with http:// or https:// scheme.",
        )


def _env(name: str, default: str) -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default)
