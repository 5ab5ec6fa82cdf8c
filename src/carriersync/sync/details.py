"""Downstream device-detail sync, started once a provider cycle hands off.

The start message queues every staged device in groups of ``batch_size`` and
fans out one message per group.  Each group message fetches detail for the
group's pending rows, stages details and offering codes, tombstones what it
handled and republishes itself until the group is empty.
"""

from __future__ import annotations

from contextlib import AsyncExitStack
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from carriersync.sync.carrier import CarrierAuthError, CarrierClient
from carriersync.sync.reconcile import ReconciliationEngine, StagingError
from carriersync.sync.retry import Deadline, RetryPolicy
from carriersync.sync.state import parse_bool_attribute, parse_int_attribute

if TYPE_CHECKING:
    from carriersync.config import AppConfig
    from carriersync.storage.database import Database
    from carriersync.storage.models import DeviceDetail, WorkQueueRow
    from carriersync.storage.queue import QueueSet
    from carriersync.sync.orchestrator import ClientFactory

log = structlog.get_logger(__name__)

DETAIL_BODY = "Continuing processing of carrier device details"


@dataclass
class DetailStats:
    checked: int = 0
    staged: int = 0
    skipped: int = 0


def detail_message(group_number: int, *, initialize: bool = False, retry_number: int = 0) -> dict[str, str]:
    return {
        "InitializeProcessing": "true" if initialize else "false",
        "GroupNumber": str(group_number),
        "RetryNumber": str(retry_number),
    }


class DeviceDetailSync:
    """Consumes the device-detail queue."""

    def __init__(
        self,
        config: AppConfig,
        db: Database,
        queues: QueueSet,
        *,
        client_factory: ClientFactory | None = None,
        store_retry: RetryPolicy | None = None,
    ) -> None:
        self._config = config
        self._sync = config.sync
        self._db = db
        self._queues = queues
        self._client_factory = client_factory
        self._store_retry = store_retry or RetryPolicy(
            self._sync.store_retries,
            self._sync.store_retry_delay_seconds,
        )
        self._engine = ReconciliationEngine(db, self._store_retry)

    async def run(self, attributes: dict[str, str], deadline: Deadline) -> DetailStats:
        if parse_bool_attribute(attributes, "InitializeProcessing", False):
            await self._start()
            return DetailStats()
        group = parse_int_attribute(attributes, "GroupNumber", 0, minimum=-1)
        retry_number = parse_int_attribute(attributes, "RetryNumber", 0, minimum=0)
        return await self._process_group(group, retry_number, deadline)

    async def _start(self) -> None:
        max_group = await self._store_retry.run(
            self._db.prepare_detail_queue, self._sync.batch_size, operation="prepare_detail_queue"
        )
        await self._store_retry.run(self._db.truncate_feature_staging, operation="truncate_feature_staging")
        for group in range(max_group + 1):
            await self._queues.detail.publish(
                detail_message(group),
                DETAIL_BODY,
                delay_seconds=self._sync.continuation_delay_seconds,
            )
        log.info("detail_sync_started", groups=max_group + 1)

    async def _process_group(self, group: int, retry_number: int, deadline: Deadline) -> DetailStats:
        stats = DetailStats()
        rows = await self._db.list_pending_details(group, limit=self._sync.batch_size)
        if not rows:
            log.info("detail_group_drained", group_number=group)
            return stats

        details: list[tuple[int, DeviceDetail]] = []
        handled: list[WorkQueueRow] = []
        async with AsyncExitStack() as stack:
            clients: dict[int, CarrierClient | None] = {}
            for row in rows:
                if not deadline.has_time(self._sync.remaining_time_cutoff_seconds):
                    log.info("time_budget_exhausted", phase="device_details", group_number=group)
                    break
                if row.service_provider_id not in clients:
                    clients[row.service_provider_id] = await self._open_client(stack, row.service_provider_id)
                client = clients[row.service_provider_id]
                handled.append(row)
                stats.checked += 1
                if client is None:
                    stats.skipped += 1
                    continue
                result = await client.get_device_detail(row.key)
                if result.ok and result.value is not None:
                    details.append((row.service_provider_id, result.value))
                else:
                    stats.skipped += 1
                    log.warning("device_detail_skipped", subscriber_number=row.key, error=result.error)

        try:
            stats.staged = await self._engine.stage_device_details(details)
            await self._engine.retire_details(handled)
        except StagingError:
            retry_number += 1
            if retry_number > self._sync.max_sync_retries:
                log.warning("detail_group_abandoned", group_number=group, retry_number=retry_number)
                return stats

        await self._queues.detail.publish(
            detail_message(group, retry_number=retry_number),
            DETAIL_BODY,
            delay_seconds=self._sync.continuation_delay_seconds,
        )
        log.info(
            "detail_group_processed",
            group_number=group,
            checked=stats.checked,
            staged=stats.staged,
            skipped=stats.skipped,
        )
        return stats

    async def _open_client(self, stack: AsyncExitStack, provider_id: int) -> CarrierClient | None:
        credentials = await self._db.get_credentials(provider_id)
        try:
            if credentials is None:
                msg = f"No carrier credentials for service provider {provider_id}"
                raise CarrierAuthError(msg)
            if self._client_factory:
                client = self._client_factory(credentials, self._config.carrier)
            else:
                client = CarrierClient(credentials, self._config.carrier)
        except CarrierAuthError as exc:
            log.warning("provider_credentials_missing", provider_id=provider_id, error=str(exc))
            return None
        return await stack.enter_async_context(client)
