"""Persisting fetched batches into staging and retiring work-queue rows."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import structlog

from carriersync.storage.models import DeviceDetail, DeviceRecord, MissingDevice, StagedDevice, WorkQueueRow
from carriersync.sync.retry import RetryPolicy

if TYPE_CHECKING:
    from carriersync.storage.database import Database

log = structlog.get_logger(__name__)

INCLUDED_FANS_KEY = "IncludedFANs"
EXCLUDED_FANS_KEY = "ExcludedFANs"

_LIST_SEPARATORS = re.compile(r"[,;]")


class StagingError(Exception):
    """A bulk staging write failed after retries; the batch was not persisted."""


def split_account_list(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in _LIST_SEPARATORS.split(raw) if part.strip())


@dataclass(frozen=True)
class AccountFilter:
    """Provider-level include / exclude lists of foundation account numbers."""

    included: frozenset[str] = frozenset()
    excluded: frozenset[str] = frozenset()

    @classmethod
    def from_settings(cls, settings: dict[str, str]) -> AccountFilter:
        return cls(
            included=split_account_list(settings.get(INCLUDED_FANS_KEY)),
            excluded=split_account_list(settings.get(EXCLUDED_FANS_KEY)),
        )

    def allows(self, foundation_account_number: str | None) -> bool:
        if self.included and foundation_account_number not in self.included:
            return False
        return foundation_account_number not in self.excluded

    def apply(self, records: Iterable[DeviceRecord]) -> list[DeviceRecord]:
        return [r for r in records if self.allows(r.foundation_account_number)]


def correct_missing_device(
    device: MissingDevice,
    carrier_status: str | None,
    *,
    cancelled_status: str = "C",
) -> DeviceRecord | None:
    """Return a corrected record when the carrier reports a different, non-cancelled status."""
    if not carrier_status:
        return None
    if carrier_status == device.subscriber_number_status or carrier_status == cancelled_status:
        return None
    return device.to_record().model_copy(update={"subscriber_number_status": carrier_status})


@dataclass(frozen=True)
class StageResult:
    staged: int = 0
    filtered_out: int = 0


class ReconciliationEngine:
    """Writes fetched batches to staging in bulk and tombstones consumed work."""

    def __init__(self, db: Database, retry: RetryPolicy) -> None:
        self._db = db
        self._retry = retry

    async def _write(self, operation: str, fn: Callable[..., Awaitable[int]], *args: Any) -> int:
        try:
            return await self._retry.run(fn, *args, operation=operation)
        except Exception as exc:
            log.error("staging_write_failed", operation=operation, error=str(exc))
            msg = f"{operation} failed: {exc}"
            raise StagingError(msg) from exc

    @staticmethod
    def build_rows(
        provider_id: int,
        records: Iterable[DeviceRecord],
        ban_statuses: dict[str, str],
    ) -> list[StagedDevice]:
        created = datetime.now(timezone.utc)
        rows: dict[str, StagedDevice] = {}
        for record in records:
            # Last occurrence wins so one batch never carries a key twice.
            rows[record.subscriber_number] = StagedDevice(
                **record.model_dump(),
                service_provider_id=provider_id,
                ban_status=ban_statuses.get(record.billing_account_number or ""),
                created_date=created,
            )
        return list(rows.values())

    async def stage_devices(
        self,
        provider_id: int,
        records: list[DeviceRecord],
        ban_statuses: dict[str, str],
        account_filter: AccountFilter | None = None,
    ) -> StageResult:
        kept = account_filter.apply(records) if account_filter else list(records)
        rows = self.build_rows(provider_id, kept, ban_statuses)
        staged = await self._write("stage_devices", self._db.bulk_upsert_device_staging, rows)
        return StageResult(staged=staged, filtered_out=len(records) - len(kept))

    async def stage_ban_statuses(self, provider_id: int, statuses: dict[str, str]) -> int:
        return await self._write("stage_ban_statuses", self._db.bulk_upsert_ban_statuses, provider_id, statuses)

    async def retire_bans(self, provider_id: int, bans: list[str]) -> int:
        return await self._write("retire_bans", self._db.mark_bans_processed, provider_id, bans)

    async def retire_missing_devices(self, provider_id: int, group_number: int, subscriber_numbers: list[str]) -> int:
        return await self._write(
            "retire_missing_devices",
            self._db.mark_missing_devices_processed,
            provider_id,
            group_number,
            subscriber_numbers,
        )

    async def stage_device_details(self, details: list[tuple[int, DeviceDetail]]) -> int:
        """Stage detail rows, then their offering codes."""
        staged = await self._write("stage_device_details", self._db.bulk_upsert_device_details, details)
        features = [(provider_id, d.subscriber_number, code) for provider_id, d in details for code in d.offering_codes]
        await self._write("stage_device_features", self._db.bulk_insert_device_features, features)
        return staged

    async def retire_details(self, rows: list[WorkQueueRow]) -> int:
        return await self._write("retire_details", self._db.mark_details_processed, rows)
