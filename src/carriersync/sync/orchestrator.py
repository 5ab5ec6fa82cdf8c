"""Per-invocation driver of the checkpointed device inventory sync.

One call to :meth:`SyncOrchestrator.run` executes the phase encoded in the
incoming :class:`SyncState` until the work is done or the invocation's
:class:`Deadline` gets close, persists what it has, and publishes the next
token(s) to the continuation queue.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from carriersync.sync.carrier import CarrierAuthError, CarrierClient
from carriersync.sync.reconcile import (
    AccountFilter,
    ReconciliationEngine,
    StagingError,
    correct_missing_device,
)
from carriersync.sync.retry import Deadline, RetryPolicy
from carriersync.sync.state import Phase, SyncState
from carriersync.sync.transitions import (
    Continuation,
    Decision,
    after_ban_drain,
    after_device_pages,
    after_empty_device_fetch,
    after_missing_group,
    fan_out_groups,
)

if TYPE_CHECKING:
    from carriersync.config import AppConfig, CarrierConfig
    from carriersync.storage.database import Database
    from carriersync.storage.models import CarrierCredentials, DeviceRecord, SyncRun
    from carriersync.storage.queue import QueueSet

log = structlog.get_logger(__name__)

ClientFactory = Callable[["CarrierCredentials", "CarrierConfig"], CarrierClient]


@dataclass
class SyncStats:
    bans_checked: int = 0
    ban_failures: int = 0
    pages_fetched: int = 0
    devices_staged: int = 0
    devices_filtered: int = 0
    missing_checked: int = 0
    missing_corrected: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


@dataclass(frozen=True)
class InvocationResult:
    phase: Phase
    next_phase: Phase
    published: int
    stats: SyncStats


class SyncOrchestrator:
    """Runs one hop of the provider sync state machine."""

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

    def _create_client(self, credentials: CarrierCredentials) -> CarrierClient:
        if self._client_factory:
            return self._client_factory(credentials, self._config.carrier)
        return CarrierClient(credentials, self._config.carrier)

    def _has_time(self, deadline: Deadline) -> bool:
        return deadline.has_time(self._sync.remaining_time_cutoff_seconds)

    async def run(self, state: SyncState, deadline: Deadline) -> InvocationResult:
        """Execute the phase encoded in *state*, then checkpoint and publish."""
        stats = SyncStats()
        phase = state.phase
        log.info(
            "invocation_start",
            phase=str(phase),
            provider_id=state.current_service_provider_id,
            page=state.current_page,
            group_number=state.group_number,
            retry_number=state.retry_number,
        )

        if phase is Phase.SELECT_PROVIDER:
            selected = await self._select_provider()
            if selected is None:
                return InvocationResult(phase, Phase.DONE, 0, stats)
            state = selected
            phase = state.phase

        provider_id = state.current_service_provider_id
        run = await self._db.get_active_sync_run(provider_id)
        if run is None:
            # The token's cycle already finished or was replaced by a newer one.
            log.warning(
                "stale_token_ignored",
                provider_id=provider_id,
                phase=str(phase),
                page=state.current_page,
                group_number=state.group_number,
            )
            return InvocationResult(phase, Phase.DONE, 0, stats)

        credentials = await self._db.get_credentials(provider_id)
        try:
            if credentials is None:
                msg = f"No carrier credentials for service provider {provider_id}"
                raise CarrierAuthError(msg)
            client = self._create_client(credentials)
        except CarrierAuthError as exc:
            log.error("provider_credentials_missing", provider_id=provider_id, error=str(exc))
            await self._db.finish_sync_run(run.id, status="failed", error_message=str(exc))
            return InvocationResult(phase, Phase.DONE, 0, stats)

        async with client:
            if phase is Phase.RECONCILE_MISSING_DEVICES:
                state, decision = await self._reconcile_missing_devices(client, state, deadline, stats)
            elif phase is Phase.FETCH_DEVICE_PAGES:
                state, decision = await self._fetch_device_pages(client, state, deadline, stats)
            else:
                state, decision = await self._fetch_ban_statuses(client, state, deadline, stats)

        await self._db.merge_sync_stats(run.id, stats.to_dict())

        continuations = await self._apply(state, decision, run)
        next_phase = continuations[0].state.phase if continuations else Phase.DONE
        log.info(
            "invocation_completed",
            phase=str(phase),
            next_phase=str(next_phase),
            provider_id=provider_id,
            published=len(continuations),
            stats=stats.to_json(),
        )
        return InvocationResult(phase, next_phase, len(continuations), stats)

    # ── SELECT PROVIDER ────────────────────────────────────────────────────

    async def _select_provider(self) -> SyncState | None:
        integration = self._sync.integration
        if not await self._retire_stale_runs(integration):
            return None

        cursor = await self._db.get_provider_cursor(integration)
        provider_id = await self._db.next_provider_id(integration, after=cursor)
        if provider_id is None:
            log.info("no_provider_to_sync", integration=integration)
            return None

        await self._store_retry.run(self._db.truncate_staging, operation="truncate_staging")
        run = await self._db.start_sync_run(provider_id)
        log.info("provider_selected", provider_id=provider_id, cursor=cursor, run_id=run.id)
        return SyncState(current_service_provider_id=provider_id)

    async def _retire_stale_runs(self, integration: str) -> bool:
        """Abandon cycles that stopped making progress.  False while a cycle is still live."""
        cutoff = datetime.now(UTC) - timedelta(minutes=self._sync.stale_run_minutes)
        running = await self._db.list_running_sync_runs(integration)
        live = [r for r in running if r.last_activity > cutoff]
        if live:
            log.info(
                "sync_cycle_in_progress",
                provider_id=live[-1].service_provider_id,
                run_id=live[-1].id,
                last_activity=live[-1].last_activity.isoformat(),
            )
            return False
        for run in running:
            await self._db.finish_sync_run(
                run.id, status="abandoned", error_message="no progress, superseded by a new cycle"
            )
            log.warning("sync_run_abandoned", provider_id=run.service_provider_id, run_id=run.id)
        return True

    # ── BAN STATUSES ───────────────────────────────────────────────────────

    async def _fetch_ban_statuses(
        self,
        client: CarrierClient,
        state: SyncState,
        deadline: Deadline,
        stats: SyncStats,
    ) -> tuple[SyncState, Decision]:
        provider_id = state.current_service_provider_id
        if state.retry_number == 0:
            queued = await self._store_retry.run(
                self._db.prepare_ban_queue, provider_id, operation="prepare_ban_queue"
            )
            log.info("ban_queue_prepared", provider_id=provider_id, bans=queued)

        statuses: dict[str, str] = {}
        processed: list[str] = []
        exhausted = False
        for row in await self._db.list_pending_bans(provider_id):
            if not self._has_time(deadline):
                exhausted = True
                state = state.with_retry()
                log.info("time_budget_exhausted", phase="ban_statuses", retry_number=state.retry_number)
                break
            result = await client.get_account_status(row.key)
            processed.append(row.key)
            stats.bans_checked += 1
            if result.ok and result.value is not None:
                statuses[row.key] = result.value
            else:
                stats.ban_failures += 1
                log.warning("ban_status_unavailable", provider_id=provider_id, ban=row.key, error=result.error)

        try:
            await self._engine.stage_ban_statuses(provider_id, statuses)
            await self._engine.retire_bans(provider_id, processed)
        except StagingError:
            stats.errors += 1
            if not exhausted:
                state = state.with_retry()

        remaining = await self._db.count_pending_bans(provider_id)
        log.info("ban_statuses_staged", provider_id=provider_id, staged=len(statuses), remaining=remaining)
        decision = after_ban_drain(
            state,
            remaining=remaining,
            max_retries=self._sync.max_sync_retries,
            delay=self._sync.continuation_delay_seconds,
        )
        return state, decision

    # ── DEVICE PAGES ───────────────────────────────────────────────────────

    async def _fetch_device_pages(
        self,
        client: CarrierClient,
        state: SyncState,
        deadline: Deadline,
        stats: SyncStats,
    ) -> tuple[SyncState, Decision]:
        provider_id = state.current_service_provider_id
        ban_statuses = await self._db.get_ban_statuses(provider_id)
        account_filter = AccountFilter.from_settings(await self._db.get_provider_settings(provider_id))

        first_sync = False
        if not ban_statuses:
            if await self._db.count_devices(provider_id) == 0:
                first_sync = True
                log.info("first_sync_detected", provider_id=provider_id)
            else:
                log.warning("ban_statuses_missing", provider_id=provider_id)

        start_page = state.current_page
        records: list[DeviceRecord] = []
        exhausted = False
        cycles = 0
        while cycles < self._sync.max_cycles_per_invocation and not state.is_last_cycle:
            if not self._has_time(deadline):
                exhausted = True
                state = state.with_retry()
                log.info("time_budget_exhausted", phase="device_pages", retry_number=state.retry_number)
                break

            result = await client.list_devices(state.current_page, self._sync.batch_size)
            if not result.ok or result.value is None:
                stats.errors += 1
                log.warning("device_page_failed", provider_id=provider_id, page=state.current_page, error=result.error)
                state = state.model_copy(update={"is_last_cycle": True})
                break

            page = result.value
            records.extend(page.records)
            stats.pages_fetched += 1
            log.info(
                "device_page_fetched",
                provider_id=provider_id,
                page=page.page,
                page_total=page.page_total,
                records=len(page.records),
            )
            if not self._has_time(deadline):
                # The clock ran out while the page was in flight; fetch it again next hop.
                exhausted = True
                state = state.with_retry().model_copy(update={"has_more_data": True, "is_last_cycle": False})
                log.info("time_budget_exhausted", phase="device_pages", retry_number=state.retry_number)
                break
            state = state.model_copy(
                update={
                    "current_page": state.current_page + 1,
                    "has_more_data": page.has_more,
                    "is_last_cycle": not page.has_more,
                }
            )
            cycles += 1

        if not records:
            if state.is_last_cycle:
                await self._advance_cursor(provider_id)
            decision = after_empty_device_fetch(
                state,
                time_exhausted=exhausted,
                max_retries=self._sync.max_sync_retries,
                delay=self._sync.continuation_delay_seconds,
            )
            return state, decision

        if first_sync:
            ban_statuses = await self._statuses_for(client, records, deadline, stats)

        try:
            staged = await self._engine.stage_devices(provider_id, records, ban_statuses, account_filter)
        except StagingError:
            stats.errors += 1
            state = state.model_copy(update={"current_page": start_page, "has_more_data": True, "is_last_cycle": False})
            if not exhausted:
                state = state.with_retry()
        else:
            stats.devices_staged += staged.staged
            stats.devices_filtered += staged.filtered_out
            if state.is_last_cycle:
                state = state.model_copy(update={"has_more_data": False})
                await self._advance_cursor(provider_id)

        decision = after_device_pages(
            state,
            max_retries=self._sync.max_sync_retries,
            delay=self._sync.continuation_delay_seconds,
        )
        return state, decision

    async def _statuses_for(
        self,
        client: CarrierClient,
        records: list[DeviceRecord],
        deadline: Deadline,
        stats: SyncStats,
    ) -> dict[str, str]:
        """Look up BAN statuses for the accounts seen in *records* (first sync only)."""
        statuses: dict[str, str] = {}
        bans = sorted({r.billing_account_number for r in records if r.billing_account_number})
        for ban in bans:
            if not self._has_time(deadline):
                log.info("ban_lookup_cut_short", looked_up=len(statuses), total=len(bans))
                break
            result = await client.get_account_status(ban)
            stats.bans_checked += 1
            if result.ok and result.value is not None:
                statuses[ban] = result.value
            else:
                stats.ban_failures += 1
        return statuses

    async def _advance_cursor(self, provider_id: int) -> None:
        await self._db.set_provider_cursor(self._sync.integration, provider_id)
        log.info("provider_cursor_advanced", provider_id=provider_id)

    # ── MISSING DEVICES ────────────────────────────────────────────────────

    async def _reconcile_missing_devices(
        self,
        client: CarrierClient,
        state: SyncState,
        deadline: Deadline,
        stats: SyncStats,
    ) -> tuple[SyncState, Decision]:
        provider_id = state.current_service_provider_id
        group = state.group_number
        ban_statuses = await self._db.get_ban_statuses(provider_id)

        corrections: list[DeviceRecord] = []
        checked: list[str] = []
        exhausted = False
        for device in await self._db.list_missing_devices(provider_id, group):
            if not self._has_time(deadline):
                exhausted = True
                state = state.with_retry()
                log.info("time_budget_exhausted", phase="missing_devices", retry_number=state.retry_number)
                break
            result = await client.get_device_detail(device.subscriber_number)
            checked.append(device.subscriber_number)
            stats.missing_checked += 1
            if not result.ok or result.value is None:
                log.warning(
                    "device_detail_unavailable",
                    provider_id=provider_id,
                    subscriber_number=device.subscriber_number,
                    error=result.error,
                )
                continue
            corrected = correct_missing_device(
                device,
                result.value.subscriber_status,
                cancelled_status=self._sync.cancelled_status,
            )
            if corrected is not None:
                corrections.append(corrected)

        try:
            if corrections:
                staged = await self._engine.stage_devices(provider_id, corrections, ban_statuses)
                stats.missing_corrected += staged.staged
            await self._engine.retire_missing_devices(provider_id, group, checked)
        except StagingError:
            stats.errors += 1
            if not exhausted:
                state = state.with_retry()

        remaining = await self._db.count_missing_devices(provider_id, group)
        log.info(
            "missing_devices_checked",
            provider_id=provider_id,
            group_number=group,
            checked=len(checked),
            corrected=len(corrections),
            remaining=remaining,
        )
        decision = after_missing_group(
            state,
            remaining=remaining,
            max_retries=self._sync.max_sync_retries,
            delay=self._sync.continuation_delay_seconds,
        )
        return state, decision

    # ── CHECKPOINT ─────────────────────────────────────────────────────────

    async def _apply(self, state: SyncState, decision: Decision, run: SyncRun) -> tuple[Continuation, ...]:
        if decision.abandoned:
            log.warning(
                "sub_phase_abandoned",
                provider_id=state.current_service_provider_id,
                phase=str(state.phase),
                retry_number=state.retry_number,
            )

        continuations = decision.continuations
        if decision.build_missing_queue:
            continuations = await self._fan_out_missing_devices(state, run)

        for continuation in continuations:
            await self._queues.sync.publish_state(continuation.state, delay_seconds=continuation.delay_seconds)

        if decision.start_usage_sync or decision.start_detail_sync:
            await self._hand_off(state, run, usage=decision.start_usage_sync, detail=decision.start_detail_sync)
        return continuations

    async def _fan_out_missing_devices(self, state: SyncState, run: SyncRun) -> tuple[Continuation, ...]:
        provider_id = state.current_service_provider_id
        if not await self._db.claim_reconciliation(run.id):
            log.info("missing_device_queue_already_built", provider_id=provider_id, run_id=run.id)
            return ()
        try:
            max_group = await self._store_retry.run(
                self._db.build_missing_device_queue,
                provider_id,
                self._sync.batch_size,
                operation="build_missing_device_queue",
            )
        except Exception:
            await self._db.release_reconciliation(run.id)
            raise
        log.info("missing_device_queue_built", provider_id=provider_id, groups=max_group + 1)
        return fan_out_groups(
            state,
            max_group,
            delay=self._sync.continuation_delay_seconds,
            last_delay=self._sync.last_group_delay_seconds,
        )

    async def _hand_off(self, state: SyncState, run: SyncRun, *, usage: bool, detail: bool) -> None:
        """Close the cycle and start the downstream syncs, once per cycle."""
        provider_id = state.current_service_provider_id
        if await self._db.finish_sync_run(run.id, status="completed") is None:
            log.info("hand_off_already_done", provider_id=provider_id, run_id=run.id)
            return
        if usage:
            await self._queues.usage.publish(
                {"InitializeProcessing": "true", "CurrentServiceProviderId": str(provider_id)},
                state.body,
                delay_seconds=self._sync.usage_delay_seconds,
            )
        if detail:
            await self._queues.detail.publish(
                {"InitializeProcessing": "true", "GroupNumber": "0"},
                state.body,
                delay_seconds=self._sync.detail_delay_seconds,
            )
        log.info("sync_cycle_completed", provider_id=provider_id, run_id=run.id, usage=usage, detail=detail)
