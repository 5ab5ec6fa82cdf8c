"""End-to-end tests for the checkpointed sync state machine."""

from __future__ import annotations

import json
import sqlite3

import httpx
import pytest

from carriersync.config import AppConfig, SyncConfig
from carriersync.storage import Database, QueueSet
from carriersync.sync.carrier import CarrierClient
from carriersync.sync.orchestrator import InvocationResult, SyncOrchestrator
from carriersync.sync.retry import Deadline, RetryPolicy
from carriersync.sync.state import Phase, SyncState

P = 1

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_config(**sync_kw) -> AppConfig:
    values = {
        "batch_size": 2,
        "max_cycles_per_invocation": 10,
        "remaining_time_cutoff_seconds": 30.0,
        "max_sync_retries": 3,
        "continuation_delay_seconds": 0,
        "last_group_delay_seconds": 0,
        "usage_delay_seconds": 0,
        "detail_delay_seconds": 0,
    }
    values.update(sync_kw)
    return AppConfig(sync=SyncConfig(**values))


async def _seed(db: Database, provider_id: int = P, *, bans=(), devices=(), client_id: str = "cid") -> None:
    await db.add_service_provider(
        provider_id=provider_id,
        name=f"Carrier {provider_id}",
        integration="telegence",
        client_id=client_id,
        client_secret="secret",
        sandbox_url="https://sandbox.carrier.test",
    )
    for ban in bans:
        await db.add_billing_account(provider_id, ban, "F1")
    for record in devices:
        await db.upsert_device(
            provider_id,
            record.subscriber_number,
            foundation_account_number=record.foundation_account_number,
            billing_account_number=record.billing_account_number,
            status=record.subscriber_number_status,
        )


def _orchestrator(db: Database, carrier, config: AppConfig | None = None) -> tuple[SyncOrchestrator, QueueSet]:
    queues = QueueSet(db)
    orch = SyncOrchestrator(
        config or _make_config(),
        db,
        queues,
        client_factory=carrier.factory,
        store_retry=RetryPolicy(0, 0),
    )
    return orch, queues


async def _step(orch: SyncOrchestrator, queues: QueueSet, clock, *, budget: float = 900) -> InvocationResult:
    """Deliver the oldest sync-queue message."""
    message = (await queues.sync.peek())[0]
    await queues.sync.delete(message.id)
    return await orch.run(SyncState.from_attributes(message.attributes), Deadline(budget, clock=clock))


async def _drain(orch: SyncOrchestrator, queues: QueueSet, clock, *, budget: float = 900, max_hops: int = 20):
    """Deliver sync-queue messages one at a time, oldest first, until the queue is empty."""
    results: list[InvocationResult] = []
    for _ in range(max_hops):
        if not await queues.sync.peek():
            return results
        results.append(await _step(orch, queues, clock, budget=budget))
    pytest.fail(f"sync did not settle within {max_hops} hops")


async def _only_message(queue):
    messages = await queue.peek()
    assert len(messages) == 1
    return messages[0]


# ---------------------------------------------------------------------------
# Full cycles
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_full_cycle_across_hops(db, clock, fake_carrier, make_device):
    devices = [make_device(str(1000 + n), ban=f"B{(n % 3) + 1}") for n in range(1, 7)]
    await _seed(db, bans=("B1", "B2", "B3"), devices=devices)
    carrier = fake_carrier(
        pages=[devices[0:2], devices[2:4], devices[4:6]],
        ban_statuses={"B1": "O", "B2": "O", "B3": "S"},
        clock=clock,
    )
    orch, queues = _orchestrator(db, carrier, _make_config(max_cycles_per_invocation=2))

    await queues.sync.publish_state(SyncState())
    results = await _drain(orch, queues, clock)

    assert [r.phase for r in results] == [
        Phase.PRIME_BAN_LIST,
        Phase.FETCH_DEVICE_PAGES,
        Phase.FETCH_DEVICE_PAGES,
        Phase.RECONCILE_MISSING_DEVICES,
    ]
    assert results[-1].next_phase is Phase.DONE
    assert carrier.calls_to("list_devices") == [1, 2, 3]
    assert sorted(carrier.calls_to("get_account_status")) == ["B1", "B2", "B3"]

    staged = await db.list_staged_devices(P)
    assert sorted(s.subscriber_number for s in staged) == [d.subscriber_number for d in devices]
    assert {s.subscriber_number: s.ban_status for s in staged}["1002"] == "S"

    usage = await _only_message(queues.usage)
    assert usage.attributes == {"InitializeProcessing": "true", "CurrentServiceProviderId": "1"}
    detail = await _only_message(queues.detail)
    assert detail.attributes == {"InitializeProcessing": "true", "GroupNumber": "0"}

    run = await db.get_latest_sync_run(P)
    assert run.status == "completed"
    assert run.reconcile_started_at is not None
    stats = json.loads(run.stats_json)
    assert stats["pages_fetched"] == 3
    assert stats["devices_staged"] == 6
    assert stats["bans_checked"] == 3
    assert await db.get_provider_cursor("telegence") == P


@pytest.mark.asyncio
async def test_page_timeouts_retried_without_duplicates(db, clock, make_device):
    devices = [make_device(str(2000 + n)) for n in range(10)]
    await _seed(db, bans=("B1",), devices=devices)
    attempts: dict[int, int] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/sp/billing/v1/accounts/"):
            return httpx.Response(200, json={"status": "O"})
        page = int(request.headers["current-page"])
        attempts[page] = attempts.get(page, 0) + 1
        if page == 3 and attempts[page] <= 2:
            raise httpx.ReadTimeout("timed out", request=request)
        items = [
            {"subscriberNumber": d.subscriber_number, "foundationAccountNumber": "F1", "billingAccountNumber": "B1"}
            for d in devices[(page - 1) * 2 : page * 2]
        ]
        return httpx.Response(200, json=items, headers={"page-total": "5"})

    async def no_sleep(_: float) -> None:
        return None

    def factory(credentials, config):
        return CarrierClient(
            credentials,
            config,
            retry=RetryPolicy(3, 0, sleep=no_sleep),
            _transport=httpx.MockTransport(handler),
        )

    queues = QueueSet(db)
    orch = SyncOrchestrator(_make_config(), db, queues, client_factory=factory, store_retry=RetryPolicy(0, 0))

    await queues.sync.publish_state(SyncState())
    await _drain(orch, queues, clock)

    assert attempts == {1: 1, 2: 1, 3: 3, 4: 1, 5: 1}
    staged = [s.subscriber_number for s in await db.list_staged_devices(P)]
    assert sorted(staged) == [d.subscriber_number for d in devices]
    assert await queues.usage.depth() == 1


@pytest.mark.asyncio
async def test_missing_devices_corrected(db, clock, fake_carrier, make_device):
    listed = [make_device("1001"), make_device("1002")]
    known_only = [make_device("2001"), make_device("2002"), make_device("2003")]
    await _seed(db, bans=("B1",), devices=listed + known_only)
    carrier = fake_carrier(
        pages=[listed],
        ban_statuses={"B1": "O"},
        details={"2001": "S", "2002": "A", "2003": "C"},
        clock=clock,
    )
    orch, queues = _orchestrator(db, carrier)

    await queues.sync.publish_state(SyncState())
    results = await _drain(orch, queues, clock)

    assert [r.phase for r in results] == [
        Phase.PRIME_BAN_LIST,
        Phase.FETCH_DEVICE_PAGES,
        Phase.RECONCILE_MISSING_DEVICES,
        Phase.RECONCILE_MISSING_DEVICES,
    ]
    assert results[1].published == 2
    assert sorted(carrier.calls_to("get_device_detail")) == ["2001", "2002", "2003"]

    staged = {s.subscriber_number: s for s in await db.list_staged_devices(P)}
    assert set(staged) == {"1001", "1002", "2001"}
    assert staged["2001"].subscriber_number_status == "S"
    assert staged["2001"].ban_status == "O"

    assert await queues.usage.depth() == 1
    assert await queues.detail.depth() == 1
    assert (await db.get_latest_sync_run(P)).status == "completed"


@pytest.mark.asyncio
async def test_empty_device_listing_hands_off_usage_only(db, clock, fake_carrier):
    await _seed(db, bans=("B1",))
    carrier = fake_carrier(pages=[], ban_statuses={"B1": "O"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)

    await queues.sync.publish_state(SyncState())
    results = await _drain(orch, queues, clock)

    assert results[-1].phase is Phase.FETCH_DEVICE_PAGES
    assert await queues.usage.depth() == 1
    assert await queues.detail.depth() == 0
    assert await db.get_provider_cursor("telegence") == P
    assert (await db.get_latest_sync_run(P)).status == "completed"


@pytest.mark.asyncio
async def test_first_sync_looks_up_ban_statuses_from_listing(db, clock, fake_carrier, make_device):
    await _seed(db)
    devices = [make_device("1", ban="B2"), make_device("2", ban="B1")]
    carrier = fake_carrier(pages=[devices], ban_statuses={"B1": "O", "B2": "S"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)

    await queues.sync.publish_state(SyncState())
    await _drain(orch, queues, clock)

    assert carrier.calls_to("get_account_status") == ["B1", "B2"]
    staged = {s.subscriber_number: s.ban_status for s in await db.list_staged_devices(P)}
    assert staged == {"1": "S", "2": "O"}


@pytest.mark.asyncio
async def test_round_robin_over_providers(db, clock, fake_carrier, make_device):
    await _seed(db, 1)
    await _seed(db, 2)
    carrier = fake_carrier(pages=[[make_device("1")]], ban_statuses={"B1": "O"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)

    for _ in range(3):
        await queues.sync.publish_state(SyncState())
        await _drain(orch, queues, clock)

    runs = await db.list_sync_runs()
    assert [r.service_provider_id for r in reversed(runs)] == [1, 2, 1]
    assert all(r.status == "completed" for r in runs)


# ---------------------------------------------------------------------------
# Time budget
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ban_drain_checkpoints_when_time_runs_out(db, clock, fake_carrier):
    bans = [f"B{n:02d}" for n in range(1, 11)]
    await _seed(db, bans=bans)
    carrier = fake_carrier(ban_statuses={b: "O" for b in bans}, clock=clock, cost=10)
    orch, queues = _orchestrator(db, carrier)

    result = await orch.run(SyncState(), Deadline(100, clock=clock))

    assert result.stats.bans_checked == 7
    assert await db.count_pending_bans(P) == 3
    message = await _only_message(queues.sync)
    assert message.attributes["RetryNumber"] == "1"
    assert message.attributes["InitializeProcessing"] == "true"
    assert result.next_phase is Phase.FETCH_BAN_STATUSES

    await queues.sync.delete(message.id)
    await orch.run(SyncState.from_attributes(message.attributes), Deadline(100, clock=clock))

    assert carrier.calls_to("get_account_status") == bans
    assert await db.count_pending_bans(P) == 0
    assert len(await db.get_ban_statuses(P)) == 10
    following = await _only_message(queues.sync)
    assert SyncState.from_attributes(following.attributes).phase is Phase.FETCH_DEVICE_PAGES


@pytest.mark.asyncio
async def test_retry_ceiling_moves_on_with_partial_bans(db, clock, fake_carrier):
    bans = [f"B{n:02d}" for n in range(1, 11)]
    await _seed(db, bans=bans)
    carrier = fake_carrier(ban_statuses={b: "O" for b in bans}, clock=clock, cost=40)
    orch, queues = _orchestrator(db, carrier, _make_config(max_sync_retries=1))

    await orch.run(SyncState(), Deadline(100, clock=clock))
    message = await _only_message(queues.sync)
    assert message.attributes["RetryNumber"] == "1"
    assert await db.count_pending_bans(P) == 8

    await queues.sync.delete(message.id)
    await orch.run(SyncState.from_attributes(message.attributes), Deadline(100, clock=clock))

    message = await _only_message(queues.sync)
    state = SyncState.from_attributes(message.attributes)
    assert state.phase is Phase.FETCH_DEVICE_PAGES
    assert state.retry_number == 0
    assert await db.count_pending_bans(P) == 6


@pytest.mark.asyncio
async def test_page_in_flight_at_deadline_is_fetched_again(db, clock, fake_carrier, make_device):
    await _seed(db, bans=("B1",))
    await db.bulk_upsert_ban_statuses(P, {"B1": "O"})
    await db.start_sync_run(P)
    pages = [[make_device("1"), make_device("2")], [make_device("3")]]
    carrier = fake_carrier(pages=pages, clock=clock, cost=80)
    orch, queues = _orchestrator(db, carrier)

    state = SyncState(current_service_provider_id=P, initialize_processing=False)
    await orch.run(state, Deadline(100, clock=clock))

    message = await _only_message(queues.sync)
    assert message.attributes["CurrentPage"] == "1"
    assert message.attributes["RetryNumber"] == "1"
    assert message.attributes["HasMoreData"] == "true"
    assert len(await db.list_staged_devices(P)) == 2
    assert await db.get_provider_cursor("telegence") == 0

    carrier.cost = 0
    await queues.sync.delete(message.id)
    await orch.run(SyncState.from_attributes(message.attributes), Deadline(100, clock=clock))

    assert carrier.calls_to("list_devices") == [1, 1, 2]
    assert sorted(s.subscriber_number for s in await db.list_staged_devices(P)) == ["1", "2", "3"]
    assert await db.get_provider_cursor("telegence") == P


# ---------------------------------------------------------------------------
# Replays
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_replayed_tokens_do_not_duplicate_work(db, clock, fake_carrier, make_device):
    devices = [make_device("1"), make_device("2"), make_device("3")]
    await _seed(db, bans=("B1",), devices=devices)
    carrier = fake_carrier(pages=[devices[:2], devices[2:]], ban_statuses={"B1": "O"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)

    await queues.sync.publish_state(SyncState())
    await _drain(orch, queues, clock)
    assert await queues.usage.depth() == 1

    # the last page token delivered a second time
    last_page = SyncState(current_service_provider_id=P, initialize_processing=False, current_page=2)
    result = await orch.run(last_page, Deadline(900, clock=clock))
    assert result.published == 0
    assert await queues.sync.depth() == 0

    # the final reconciliation token delivered a second time
    last_group = SyncState(
        current_service_provider_id=P,
        initialize_processing=False,
        is_process_device_not_exists_staging=True,
        is_last_process_device_not_exists_staging=True,
    )
    await orch.run(last_group, Deadline(900, clock=clock))

    assert len(await db.list_staged_devices(P)) == 3
    assert await queues.usage.depth() == 1
    assert await queues.detail.depth() == 1


@pytest.mark.asyncio
async def test_duplicate_start_token_mid_cycle_is_ignored(db, clock, fake_carrier, make_device):
    devices = [make_device(str(1000 + n)) for n in range(6)]
    await _seed(db, bans=("B1",), devices=devices)
    carrier = fake_carrier(
        pages=[devices[0:2], devices[2:4], devices[4:6]],
        ban_statuses={"B1": "O"},
        details={d.subscriber_number: "A" for d in devices},
        clock=clock,
    )
    orch, queues = _orchestrator(db, carrier, _make_config(max_cycles_per_invocation=2))

    await queues.sync.publish_state(SyncState())
    await _step(orch, queues, clock)
    await _step(orch, queues, clock)
    assert len(await db.list_staged_devices(P)) == 4

    duplicate = await orch.run(SyncState(), Deadline(900, clock=clock))

    assert duplicate.published == 0
    assert duplicate.next_phase is Phase.DONE
    assert len(await db.list_staged_devices(P)) == 4
    (run,) = await db.list_sync_runs()
    assert run.status == "running"

    await _drain(orch, queues, clock)

    assert carrier.calls_to("get_device_detail") == []
    assert len(await db.list_staged_devices(P)) == 6
    (run,) = await db.list_sync_runs()
    assert run.status == "completed"


@pytest.mark.asyncio
async def test_token_of_finished_cycle_is_ignored(db, clock, fake_carrier, make_device):
    for provider_id in (1, 2, 3):
        await _seed(db, provider_id, bans=("B1",))
    carrier = fake_carrier(pages=[[make_device("1")]], ban_statuses={"B1": "O"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)

    for _ in range(2):
        await queues.sync.publish_state(SyncState())
        await _drain(orch, queues, clock)
    assert await db.get_provider_cursor("telegence") == 2

    # provider 1's last page token, delivered again after provider 2's cycle
    late = SyncState(current_service_provider_id=1, initialize_processing=False, current_page=1)
    result = await orch.run(late, Deadline(900, clock=clock))

    assert result.published == 0
    assert await db.get_provider_cursor("telegence") == 2
    assert await db.list_staged_devices(1) == []
    assert await queues.sync.depth() == 0

    await queues.sync.publish_state(SyncState())
    await _drain(orch, queues, clock)

    runs = await db.list_sync_runs()
    assert [r.service_provider_id for r in reversed(runs)] == [1, 2, 3]


# ---------------------------------------------------------------------------
# Provider edge cases
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_no_provider_to_sync(db, clock, fake_carrier):
    carrier = fake_carrier(clock=clock)
    orch, queues = _orchestrator(db, carrier)

    result = await orch.run(SyncState(), Deadline(900, clock=clock))

    assert result.next_phase is Phase.DONE
    assert result.published == 0
    assert await queues.sync.depth() == 0
    assert await db.list_sync_runs() == []


@pytest.mark.asyncio
async def test_missing_credentials_fails_run(db, clock, fake_carrier):
    await _seed(db, 5, client_id="")
    run = await db.start_sync_run(5)
    carrier = fake_carrier(clock=clock)
    orch, queues = _orchestrator(db, carrier)

    result = await orch.run(
        SyncState(current_service_provider_id=5, initialize_processing=False), Deadline(900, clock=clock)
    )

    assert result.next_phase is Phase.DONE
    assert carrier.calls == []
    assert await queues.sync.depth() == 0
    failed = await db.get_latest_sync_run(5)
    assert failed.id == run.id
    assert failed.status == "failed"
    assert "credentials" in failed.error_message


@pytest.mark.asyncio
async def test_new_cycle_abandons_stale_run(db, clock, fake_carrier):
    await _seed(db)
    stale = await db.start_sync_run(P)
    carrier = fake_carrier(clock=clock)
    orch, _ = _orchestrator(db, carrier, _make_config(stale_run_minutes=0))

    await orch.run(SyncState(), Deadline(900, clock=clock))

    runs = {r.id: r for r in await db.list_sync_runs()}
    assert runs[stale.id].status == "abandoned"
    assert len(runs) == 2


@pytest.mark.asyncio
async def test_foundation_account_filter(db, clock, fake_carrier, make_device):
    await _seed(db, bans=("B1",))
    await db.bulk_upsert_ban_statuses(P, {"B1": "O"})
    await db.set_provider_setting(P, "IncludedFANs", "F1")
    await db.start_sync_run(P)
    pages = [[make_device("1", fan="F1"), make_device("2", fan="F2")]]
    carrier = fake_carrier(pages=pages, clock=clock)
    orch, _ = _orchestrator(db, carrier)

    result = await orch.run(
        SyncState(current_service_provider_id=P, initialize_processing=False), Deadline(900, clock=clock)
    )

    assert result.stats.devices_staged == 1
    assert result.stats.devices_filtered == 1
    assert [s.subscriber_number for s in await db.list_staged_devices(P)] == ["1"]


@pytest.mark.asyncio
async def test_failed_page_ends_paging(db, clock, fake_carrier, make_device):
    await _seed(db, bans=("B1",))
    await db.bulk_upsert_ban_statuses(P, {"B1": "O"})
    await db.start_sync_run(P)
    pages = [[make_device("1")], [make_device("2")], [make_device("3")]]
    carrier = fake_carrier(pages=pages, clock=clock, fail_pages={2})
    orch, _ = _orchestrator(db, carrier)

    result = await orch.run(
        SyncState(current_service_provider_id=P, initialize_processing=False), Deadline(900, clock=clock)
    )

    assert carrier.calls_to("list_devices") == [1, 2]
    assert result.stats.errors == 1
    assert result.next_phase is Phase.RECONCILE_MISSING_DEVICES


# ---------------------------------------------------------------------------
# Staging failures
# ---------------------------------------------------------------------------


async def _broken_write(*args, **kwargs):
    raise sqlite3.OperationalError("disk I/O error")


@pytest.mark.asyncio
async def test_ban_staging_failure_keeps_work_queued(db, clock, fake_carrier, monkeypatch):
    await _seed(db, bans=("B1", "B2", "B3"))
    carrier = fake_carrier(ban_statuses={"B1": "O", "B2": "O", "B3": "O"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)
    monkeypatch.setattr(db, "bulk_upsert_ban_statuses", _broken_write)

    result = await orch.run(SyncState(), Deadline(900, clock=clock))

    assert result.stats.errors == 1
    assert await db.count_pending_bans(P) == 3
    message = await _only_message(queues.sync)
    state = SyncState.from_attributes(message.attributes)
    assert state.phase is Phase.FETCH_BAN_STATUSES
    assert state.retry_number == 1


@pytest.mark.asyncio
async def test_device_staging_failure_rolls_back_page(db, clock, fake_carrier, make_device, monkeypatch):
    await _seed(db, bans=("B1",))
    await db.bulk_upsert_ban_statuses(P, {"B1": "O"})
    await db.start_sync_run(P)
    pages = [[make_device("1")], [make_device("2")]]
    carrier = fake_carrier(pages=pages, clock=clock)
    orch, queues = _orchestrator(db, carrier)
    monkeypatch.setattr(db, "bulk_upsert_device_staging", _broken_write)

    await orch.run(
        SyncState(current_service_provider_id=P, initialize_processing=False), Deadline(900, clock=clock)
    )

    message = await _only_message(queues.sync)
    assert message.attributes["CurrentPage"] == "1"
    assert message.attributes["RetryNumber"] == "1"
    assert await db.get_provider_cursor("telegence") == 0


# ---------------------------------------------------------------------------
# Missing-device groups
# ---------------------------------------------------------------------------


async def _queue_missing(db: Database, make_device, subs: list[str], *, batch_size: int) -> int:
    """Seed known devices that are absent from staging and queue them for reconciliation."""
    await _seed(db, bans=("B1",), devices=[make_device(s) for s in subs])
    await db.bulk_upsert_ban_statuses(P, {"B1": "O"})
    run = await db.start_sync_run(P)
    await db.claim_reconciliation(run.id)
    return await db.build_missing_device_queue(P, batch_size)


def _group_token(group: int, *, last: bool, retry: int = 0) -> SyncState:
    return SyncState(
        current_service_provider_id=P,
        initialize_processing=False,
        is_process_device_not_exists_staging=True,
        is_last_process_device_not_exists_staging=last,
        group_number=group,
        retry_number=retry,
    )


@pytest.mark.asyncio
async def test_missing_group_checkpoints_when_time_runs_out(db, clock, fake_carrier, make_device):
    assert await _queue_missing(db, make_device, ["1", "2", "3"], batch_size=3) == 0
    carrier = fake_carrier(details={"1": "A", "2": "S", "3": "A"}, clock=clock, cost=40)
    orch, queues = _orchestrator(db, carrier, _make_config(batch_size=3))

    result = await orch.run(_group_token(0, last=True), Deadline(100, clock=clock))

    assert result.stats.missing_checked == 2
    assert await db.count_missing_devices(P, 0) == 1
    message = await _only_message(queues.sync)
    assert message.attributes["GroupNumber"] == "0"
    assert message.attributes["IsLastProcessDeviceNotExistsStaging"] == "1"
    assert message.attributes["RetryNumber"] == "1"
    assert await queues.usage.depth() == 0
    assert (await db.get_latest_sync_run(P)).status == "running"

    carrier.cost = 0
    await queues.sync.delete(message.id)
    await orch.run(SyncState.from_attributes(message.attributes), Deadline(100, clock=clock))

    assert sorted(carrier.calls_to("get_device_detail")) == ["1", "2", "3"]
    assert [s.subscriber_number for s in await db.list_staged_devices(P)] == ["2"]
    assert await queues.sync.depth() == 0
    assert await queues.usage.depth() == 1
    assert await queues.detail.depth() == 1
    assert (await db.get_latest_sync_run(P)).status == "completed"


@pytest.mark.asyncio
async def test_missing_groups_past_retry_ceiling(db, clock, fake_carrier, make_device):
    assert await _queue_missing(db, make_device, ["1", "2", "3", "4"], batch_size=2) == 1
    carrier = fake_carrier(details={s: "A" for s in ("1", "2", "3", "4")}, clock=clock, cost=80)
    orch, queues = _orchestrator(db, carrier, _make_config(max_sync_retries=1))

    await orch.run(_group_token(0, last=False, retry=1), Deadline(100, clock=clock))

    assert await db.count_missing_devices(P, 0) == 1
    assert await queues.sync.depth() == 0
    assert await queues.usage.depth() == 0
    assert (await db.get_latest_sync_run(P)).status == "running"

    await orch.run(_group_token(1, last=True, retry=1), Deadline(100, clock=clock))

    assert await db.count_missing_devices(P, 1) == 1
    assert await queues.sync.depth() == 0
    assert await queues.usage.depth() == 1
    assert await queues.detail.depth() == 1
    assert (await db.get_latest_sync_run(P)).status == "completed"

    await orch.run(_group_token(1, last=True, retry=1), Deadline(100, clock=clock))
    assert await queues.usage.depth() == 1
    assert await queues.detail.depth() == 1


@pytest.mark.asyncio
async def test_missing_device_staging_failure_keeps_group_queued(
    db, clock, fake_carrier, make_device, monkeypatch
):
    await _queue_missing(db, make_device, ["1", "2"], batch_size=2)
    carrier = fake_carrier(details={"1": "S", "2": "S"}, clock=clock)
    orch, queues = _orchestrator(db, carrier)
    monkeypatch.setattr(db, "bulk_upsert_device_staging", _broken_write)

    result = await orch.run(_group_token(0, last=True), Deadline(900, clock=clock))

    assert result.stats.errors == 1
    assert await db.count_missing_devices(P, 0) == 2
    assert await db.list_staged_devices(P) == []
    message = await _only_message(queues.sync)
    state = SyncState.from_attributes(message.attributes)
    assert state.phase is Phase.RECONCILE_MISSING_DEVICES
    assert state.group_number == 0
    assert state.is_last_process_device_not_exists_staging
    assert state.retry_number == 1
    assert await queues.usage.depth() == 0

    monkeypatch.undo()
    await queues.sync.delete(message.id)
    await orch.run(state, Deadline(900, clock=clock))

    assert sorted(s.subscriber_number for s in await db.list_staged_devices(P)) == ["1", "2"]
    assert await db.count_missing_devices(P, 0) == 0
    assert await queues.usage.depth() == 1
