from __future__ import annotations

import asyncio
import contextlib

import sentry_sdk

from .logging_config import get_logger
from .orchestrator import CheckoutOrchestrator

logger = get_logger(__name__)


class ExpirySweeper:
    """Background task running the housekeeping sweep on a fixed interval."""

    def __init__(self, orchestrator: CheckoutOrchestrator, interval_seconds: float) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0 or self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="expiry-sweeper")
        logger.info("expiry_sweeper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("expiry_sweeper_stopped")

    async def run_once(self):
        try:
            return await self.orchestrator.run_sweep()
        except Exception as exc:
            # one bad run must not kill the loop; the next tick retries
            logger.exception("expiry_sweep_failed", error_type=type(exc).__name__)
            sentry_sdk.capture_exception(exc)
            return None

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.run_once()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
