"""Turns queue deliveries and scheduled triggers into bounded invocations."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from carriersync.sync.details import DetailStats, DeviceDetailSync
from carriersync.sync.orchestrator import InvocationResult, SyncOrchestrator
from carriersync.sync.retry import Deadline
from carriersync.sync.state import SyncState

if TYPE_CHECKING:
    from carriersync.config import AppConfig
    from carriersync.storage.database import Database
    from carriersync.storage.queue import ContinuationQueue, QueueMessage, QueueSet
    from carriersync.sync.orchestrator import ClientFactory

log = structlog.get_logger(__name__)


class InvocationHandler:
    """Runs each delivery under its own :class:`Deadline` and acknowledges it on success."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        queues: QueueSet,
        *,
        client_factory: ClientFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._queues = queues
        self._clock = clock
        self.orchestrator = SyncOrchestrator(config, db, queues, client_factory=client_factory)
        self.details = DeviceDetailSync(config, db, queues, client_factory=client_factory)

    def new_deadline(self) -> Deadline:
        return Deadline(self._config.worker.invocation_timeout_seconds, clock=self._clock)

    async def trigger(self) -> int:
        """Publish the start-of-cycle token."""
        state = SyncState()
        message_id = await self._queues.sync.publish_state(state)
        log.info("sync_triggered", message_id=message_id)
        return message_id

    async def handle_sync(self, message: QueueMessage | None = None) -> InvocationResult | None:
        """Run one sync hop; *message* of None means a scheduled start."""
        state = SyncState.from_attributes(message.attributes if message else None)
        try:
            result = await self.orchestrator.run(state, self.new_deadline())
        except Exception:
            log.exception(
                "invocation_failed",
                message_id=message.id if message else None,
                provider_id=state.current_service_provider_id,
                phase=str(state.phase),
            )
            if message is not None:
                await self._drop_if_exhausted(self._queues.sync, message)
            return None
        if message is not None:
            await self._queues.sync.delete(message.id)
        return result

    async def handle_detail(self, message: QueueMessage) -> DetailStats | None:
        try:
            stats = await self.details.run(message.attributes, self.new_deadline())
        except Exception:
            log.exception("detail_invocation_failed", message_id=message.id)
            await self._drop_if_exhausted(self._queues.detail, message)
            return None
        await self._queues.detail.delete(message.id)
        return stats

    async def _drop_if_exhausted(self, queue: ContinuationQueue, message: QueueMessage) -> None:
        """Delete a failing message once it has been delivered too many times."""
        limit = self._config.worker.max_receive_count
        if message.receive_count < limit:
            return
        await queue.delete(message.id)
        log.error(
            "message_dropped",
            queue=queue.name,
            message_id=message.id,
            receive_count=message.receive_count,
            attributes=message.attributes,
        )

    async def run_once(self, *, max_messages: int = 10, start_if_idle: bool = False) -> int:
        """Process every due message on the sync and detail queues; returns how many were handled."""
        visibility = self._config.worker.visibility_timeout_seconds
        sync_messages = await self._queues.sync.receive(max_messages=max_messages, visibility_timeout=visibility)
        detail_messages = await self._queues.detail.receive(max_messages=max_messages, visibility_timeout=visibility)

        if not sync_messages and not detail_messages and start_if_idle:
            await self.handle_sync(None)
            return 1

        for message in sync_messages:
            await self.handle_sync(message)
        for message in detail_messages:
            await self.handle_detail(message)
        return len(sync_messages) + len(detail_messages)
