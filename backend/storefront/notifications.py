"""Fire-and-forget notices about terminal attempts and unapplied payments."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

import httpx

from .logging_config import get_logger
from .metrics import notifications_total

logger = get_logger(__name__)


@dataclass(frozen=True)
class TerminalNotice:
    kind: str  # "attempt_succeeded" | "attempt_failed" | "unapplied_payment"
    attempt_id: str | None
    product_ref: str | None
    rail: str
    status: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    buyer_email: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


class Notifier(Protocol):
    async def notify(self, notice: TerminalNotice) -> None: ...


class LogNotifier:
    async def notify(self, notice: TerminalNotice) -> None:
        logger.info("notification", **notice.to_payload())


class WebhookNotifier:
    """POST each notice as JSON to the notification service."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(self, notice: TerminalNotice) -> None:
        if self._client is not None:
            response = await self._client.post(self.url, json=notice.to_payload(), timeout=self.timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=notice.to_payload())
            response.raise_for_status()


class NotificationDispatcher:
    """Runs notifier calls as background tasks; a failure never reaches the caller."""

    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, notice: TerminalNotice) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(notice))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, notice: TerminalNotice) -> None:
        try:
            await self.notifier.notify(notice)
        except Exception as exc:  # noqa: BLE001 - delivery is best effort
            notifications_total.labels(result="error").inc()
            logger.warning(
                "notification_failed",
                kind=notice.kind,
                attempt_id=notice.attempt_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        notifications_total.labels(result="sent").inc()

    async def drain(self) -> None:
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)


def build_notifier(url: str | None, timeout: float) -> Notifier:
    if url:
        return WebhookNotifier(url, timeout=timeout)
    return LogNotifier()
