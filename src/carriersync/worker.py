"""Long-running worker: starts sync cycles on an interval and drains the queues."""

from __future__ import annotations

import asyncio
import contextlib
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from carriersync.sync.handler import InvocationHandler

log = structlog.get_logger(__name__)


class SyncWorker:
    """Schedules fresh cycles and polls the continuation queues, with pause/resume and manual trigger."""

    def __init__(
        self,
        handler: InvocationHandler,
        trigger_interval_minutes: int = 60,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self._handler = handler
        self._interval = trigger_interval_minutes * 60  # seconds
        self._poll_interval = poll_interval_seconds
        self._paused = False
        self._stop_event = asyncio.Event()
        self._trigger_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._last_trigger_at: datetime | None = None
        self._next_trigger_at: datetime | None = None
        self._handled = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        log.info("worker_started", interval_minutes=self._interval // 60, poll_seconds=self._poll_interval)

    async def stop(self) -> None:
        """Stop the loop, waiting for the in-progress invocation to complete."""
        if not self.is_running:
            return
        self._stop_event.set()
        self._trigger_event.set()
        if self._task:
            await self._task
            self._task = None
        log.info("worker_stopped")

    async def wait(self) -> None:
        if self._task:
            await self._task

    def trigger_now(self) -> None:
        """Start a fresh cycle at the next loop iteration."""
        self._next_trigger_at = datetime.now(UTC)
        self._trigger_event.set()

    def pause(self) -> None:
        self._paused = True
        log.info("worker_paused")

    def resume(self) -> None:
        self._paused = False
        log.info("worker_resumed")

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "paused": self._paused,
            "interval_minutes": self._interval // 60,
            "handled": self._handled,
            "last_trigger_at": self._last_trigger_at.isoformat() if self._last_trigger_at else None,
            "next_trigger_at": self._next_trigger_at.isoformat() if self._next_trigger_at else None,
        }

    async def _loop(self) -> None:
        self._next_trigger_at = datetime.now(UTC)
        while not self._stop_event.is_set():
            if not self._paused:
                now = datetime.now(UTC)
                if self._next_trigger_at is not None and now >= self._next_trigger_at:
                    try:
                        await self._handler.trigger()
                        self._last_trigger_at = now
                    except Exception as exc:
                        log.error("scheduled_trigger_failed", error=str(exc))
                    self._next_trigger_at = now.replace(microsecond=0) + timedelta(seconds=self._interval)

                try:
                    self._handled += await self._handler.run_once()
                except Exception as exc:
                    log.error("queue_poll_failed", error=str(exc))

            if self._stop_event.is_set():
                break

            self._trigger_event.clear()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._wait_for_trigger_or_stop(), timeout=self._poll_interval)

    async def _wait_for_trigger_or_stop(self) -> None:
        """Wait until either trigger or stop event is set."""
        trigger_task = asyncio.create_task(self._trigger_event.wait())
        stop_task = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait(
                {trigger_task, stop_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for t in (trigger_task, stop_task):
                if not t.done():
                    t.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await t
