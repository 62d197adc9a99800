"""Outbound owner notifications about background task outcomes."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from photo_tasks.config import NotifierSettings
from photo_tasks.engine.models import TaskKind, UserView

logger = logging.getLogger(__name__)

_KIND_LABELS = {
    TaskKind.RESTORE: "Photo restoration",
    TaskKind.STYLIZE: "Stylized photo",
    TaskKind.ERA_STYLE: "Era portrait",
    TaskKind.POET_STYLE: "Poet portrait",
    TaskKind.GENERATE: "Generated image",
}


class Notifier(Protocol):
    """Fire-and-forget delivery of a task outcome to its owner."""

    def notify_outcome(
        self,
        *,
        user: UserView,
        kind: TaskKind,
        success: bool,
        result_ref: str | None = None,
        error: str | None = None,
    ) -> None:
        """Deliver one outcome message."""


class LogNotifier:
    """Writes outcome messages to the application log."""

    def notify_outcome(
        self,
        *,
        user: UserView,
        kind: TaskKind,
        success: bool,
        result_ref: str | None = None,
        error: str | None = None,
    ) -> None:
        logger.info(
            "Notify %s: %s",
            user.user_id,
            render_message(kind, success, result_ref, error),
        )


class TelegramNotifier:
    """Sends outcome messages to the owner's Telegram chat via the Bot API."""

    def __init__(
        self,
        *,
        bot_token: str,
        api_url: str = "https://api.telegram.org",
        timeout_seconds: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._bot_token = bot_token
        self._client = httpx.Client(
            base_url=api_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    def notify_outcome(
        self,
        *,
        user: UserView,
        kind: TaskKind,
        success: bool,
        result_ref: str | None = None,
        error: str | None = None,
    ) -> None:
        if not user.chat_id:
            logger.info("User %s has no chat id, skipping notification", user.user_id)
            return
        response = self._client.post(
            f"/bot{self._bot_token}/sendMessage",
            json={
                "chat_id": user.chat_id,
                "text": render_message(kind, success, result_ref, error),
            },
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


def render_message(
    kind: TaskKind,
    success: bool,
    result_ref: str | None,
    error: str | None,
) -> str:
    label = _KIND_LABELS[kind]
    if success:
        return f"{label} is ready: {result_ref or '-'}"
    return f"{label} could not be completed: {error or 'unknown error'}"


def build_notifier(settings: NotifierSettings) -> Notifier:
    if settings.backend == "telegram":
        return TelegramNotifier(
            bot_token=settings.telegram_bot_token,
            api_url=settings.telegram_api_url,
            timeout_seconds=settings.timeout_seconds,
        )
    if settings.backend == "log":
        return LogNotifier()
    raise ValueError(f"Unsupported notifier backend: {settings.backend!r}")
