"""Async SQLite database for the carriersync storage layer.

Holds the provider catalogue, the locally known devices, the staging tables
that are truncated and refilled once per provider cycle, the three work-queue
tables (consumed by tombstoning, never deleted mid-cycle) and the durable
continuation queue.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from carriersync.storage.models import (
    CarrierCredentials,
    DeviceDetail,
    MissingDevice,
    ServiceProvider,
    StagedDevice,
    SyncRun,
    WorkQueueRow,
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS service_provider (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    integration TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    production_url TEXT NOT NULL DEFAULT '',
    sandbox_url TEXT NOT NULL DEFAULT '',
    client_id TEXT NOT NULL DEFAULT '',
    client_secret TEXT NOT NULL DEFAULT '',
    write_is_enabled INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS service_provider_setting (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL REFERENCES service_provider(id),
    setting_key TEXT NOT NULL,
    setting_value TEXT NOT NULL DEFAULT '',
    is_active INTEGER NOT NULL DEFAULT 1,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    UNIQUE(service_provider_id, setting_key)
);

CREATE TABLE IF NOT EXISTS provider_cursor (
    integration TEXT PRIMARY KEY,
    last_provider_id INTEGER NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS billing_account (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL REFERENCES service_provider(id),
    foundation_account_number TEXT,
    billing_account_number TEXT NOT NULL,
    UNIQUE(service_provider_id, billing_account_number)
);

CREATE TABLE IF NOT EXISTS device (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL REFERENCES service_provider(id),
    subscriber_number TEXT NOT NULL,
    foundation_account_number TEXT,
    billing_account_number TEXT,
    subscriber_number_status TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    UNIQUE(service_provider_id, subscriber_number)
);

CREATE TABLE IF NOT EXISTS device_staging (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    foundation_account_number TEXT,
    billing_account_number TEXT,
    subscriber_number TEXT NOT NULL,
    subscriber_number_status TEXT,
    refresh_timestamp TEXT,
    ban_status TEXT,
    created_date TEXT NOT NULL,
    UNIQUE(service_provider_id, subscriber_number)
);

CREATE TABLE IF NOT EXISTS ban_status_staging (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    billing_account_number TEXT NOT NULL,
    status TEXT NOT NULL,
    created_date TEXT NOT NULL,
    UNIQUE(service_provider_id, billing_account_number)
);

CREATE TABLE IF NOT EXISTS ban_to_process (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    group_number INTEGER NOT NULL DEFAULT 0,
    billing_account_number TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    UNIQUE(service_provider_id, billing_account_number)
);

CREATE TABLE IF NOT EXISTS device_not_exists_to_process (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    group_number INTEGER NOT NULL,
    subscriber_number TEXT NOT NULL,
    foundation_account_number TEXT,
    billing_account_number TEXT,
    subscriber_number_status TEXT,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    UNIQUE(service_provider_id, subscriber_number)
);

CREATE TABLE IF NOT EXISTS device_detail_to_process (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    group_number INTEGER NOT NULL,
    subscriber_number TEXT NOT NULL,
    is_deleted INTEGER NOT NULL DEFAULT 0,
    UNIQUE(service_provider_id, subscriber_number)
);

CREATE TABLE IF NOT EXISTS device_detail_staging (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    subscriber_number TEXT NOT NULL,
    subscriber_status TEXT,
    activation_date TEXT,
    single_user_code TEXT,
    single_user_code_description TEXT,
    service_zip_code TEXT,
    next_bill_cycle_date TEXT,
    iccid TEXT,
    imei TEXT,
    device_make TEXT,
    device_model TEXT,
    imei_type TEXT,
    data_group_id TEXT,
    contact_name TEXT,
    device_technology_type TEXT,
    ip_address TEXT,
    status_effective_date TEXT,
    created_date TEXT NOT NULL,
    UNIQUE(service_provider_id, subscriber_number)
);

CREATE TABLE IF NOT EXISTS device_feature_staging (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    subscriber_number TEXT NOT NULL,
    offering_code TEXT NOT NULL,
    UNIQUE(service_provider_id, subscriber_number, offering_code)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    service_provider_id INTEGER NOT NULL,
    started_at TEXT NOT NULL,
    updated_at TEXT,
    finished_at TEXT,
    reconcile_started_at TEXT,
    status TEXT NOT NULL CHECK(status IN (
        'running', 'completed', 'abandoned', 'failed'
    )),
    stats_json TEXT,
    error_message TEXT
);

CREATE TABLE IF NOT EXISTS queue_message (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    queue TEXT NOT NULL,
    attributes_json TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    visible_at REAL NOT NULL,
    receive_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS ix_queue_message_visible
    ON queue_message(queue, visible_at);
"""

_STAGING_TABLES = (
    "device_staging",
    "ban_status_staging",
    "ban_to_process",
    "device_not_exists_to_process",
)

_COUNTED_TABLES = (
    "device",
    "device_staging",
    "ban_status_staging",
    "ban_to_process",
    "device_not_exists_to_process",
    "device_detail_to_process",
    "device_detail_staging",
    "device_feature_staging",
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: object) -> str | None:
    if value is None:
        return None
    return value.isoformat()  # type: ignore[attr-defined]


class Database:
    """Async SQLite database wrapper for carriersync."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def _bulk(self, sql: str, params: list[tuple]) -> int:
        """Run one statement for many rows in a single transaction."""
        if not params:
            return 0
        try:
            await self.conn.executemany(sql, params)
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise
        return len(params)

    # -- service_provider -----------------------------------------------------

    async def add_service_provider(
        self,
        *,
        provider_id: int,
        name: str,
        integration: str,
        client_id: str = "",
        client_secret: str = "",
        production_url: str = "",
        sandbox_url: str = "",
        is_active: bool = True,
        write_is_enabled: bool = False,
    ) -> ServiceProvider:
        cur = await self.conn.execute(
            """
            INSERT INTO service_provider (
                id, name, integration, is_active, production_url, sandbox_url,
                client_id, client_secret, write_is_enabled
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                name = excluded.name,
                integration = excluded.integration,
                is_active = excluded.is_active,
                production_url = excluded.production_url,
                sandbox_url = excluded.sandbox_url,
                client_id = excluded.client_id,
                client_secret = excluded.client_secret,
                write_is_enabled = excluded.write_is_enabled
            RETURNING *
            """,
            (
                provider_id,
                name,
                integration,
                int(is_active),
                production_url,
                sandbox_url,
                client_id,
                client_secret,
                int(write_is_enabled),
            ),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_service_provider(row)

    async def list_service_providers(self, integration: str | None = None) -> list[ServiceProvider]:
        if integration:
            cur = await self.conn.execute(
                "SELECT * FROM service_provider WHERE integration = ? ORDER BY id", (integration,)
            )
        else:
            cur = await self.conn.execute("SELECT * FROM service_provider ORDER BY id")
        rows = await cur.fetchall()
        return [self._row_to_service_provider(r) for r in rows]

    async def get_credentials(self, provider_id: int) -> CarrierCredentials | None:
        cur = await self.conn.execute(
            "SELECT * FROM service_provider WHERE id = ? AND client_id <> ''", (provider_id,)
        )
        row = await cur.fetchone()
        if row is None:
            return None
        return CarrierCredentials(
            service_provider_id=row["id"],
            client_id=row["client_id"],
            client_secret=row["client_secret"],
            production_url=row["production_url"],
            sandbox_url=row["sandbox_url"],
        )

    async def next_provider_id(self, integration: str, *, after: int = 0) -> int | None:
        """Return the next eligible provider after *after*, wrapping to the lowest id."""
        eligible = (
            "SELECT id FROM service_provider"
            " WHERE integration = ? AND is_active = 1 AND client_id <> ''"
        )
        cur = await self.conn.execute(f"{eligible} AND id > ? ORDER BY id LIMIT 1", (integration, after))
        row = await cur.fetchone()
        if row is None:
            cur = await self.conn.execute(f"{eligible} ORDER BY id LIMIT 1", (integration,))
            row = await cur.fetchone()
        return row["id"] if row else None

    # -- service_provider_setting ---------------------------------------------

    async def set_provider_setting(self, provider_id: int, key: str, value: str) -> None:
        await self.conn.execute(
            """
            INSERT INTO service_provider_setting (service_provider_id, setting_key, setting_value)
            VALUES (?, ?, ?)
            ON CONFLICT (service_provider_id, setting_key) DO UPDATE SET
                setting_value = excluded.setting_value,
                is_active = 1,
                is_deleted = 0
            """,
            (provider_id, key, value),
        )
        await self.conn.commit()

    async def get_provider_settings(self, provider_id: int) -> dict[str, str]:
        cur = await self.conn.execute(
            """
            SELECT setting_key, setting_value FROM service_provider_setting
            WHERE service_provider_id = ? AND is_active = 1 AND is_deleted = 0
            """,
            (provider_id,),
        )
        rows = await cur.fetchall()
        return {r["setting_key"]: r["setting_value"] for r in rows}

    # -- provider_cursor ------------------------------------------------------

    async def get_provider_cursor(self, integration: str) -> int:
        cur = await self.conn.execute(
            "SELECT last_provider_id FROM provider_cursor WHERE integration = ?", (integration,)
        )
        row = await cur.fetchone()
        return row["last_provider_id"] if row else 0

    async def set_provider_cursor(self, integration: str, provider_id: int) -> None:
        await self.conn.execute(
            """
            INSERT INTO provider_cursor (integration, last_provider_id, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (integration) DO UPDATE SET
                last_provider_id = excluded.last_provider_id,
                updated_at = excluded.updated_at
            """,
            (integration, provider_id, _now_iso()),
        )
        await self.conn.commit()

    # -- billing_account / device ---------------------------------------------

    async def add_billing_account(
        self, provider_id: int, billing_account_number: str, foundation_account_number: str | None = None
    ) -> None:
        await self.conn.execute(
            """
            INSERT INTO billing_account (service_provider_id, foundation_account_number, billing_account_number)
            VALUES (?, ?, ?)
            ON CONFLICT (service_provider_id, billing_account_number) DO UPDATE SET
                foundation_account_number = excluded.foundation_account_number
            """,
            (provider_id, foundation_account_number, billing_account_number),
        )
        await self.conn.commit()

    async def upsert_device(
        self,
        provider_id: int,
        subscriber_number: str,
        *,
        foundation_account_number: str | None = None,
        billing_account_number: str | None = None,
        status: str | None = None,
        is_deleted: bool = False,
    ) -> None:
        await self.conn.execute(
            """
            INSERT INTO device (
                service_provider_id, subscriber_number, foundation_account_number,
                billing_account_number, subscriber_number_status, is_deleted
            )
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (service_provider_id, subscriber_number) DO UPDATE SET
                foundation_account_number = excluded.foundation_account_number,
                billing_account_number = excluded.billing_account_number,
                subscriber_number_status = excluded.subscriber_number_status,
                is_deleted = excluded.is_deleted
            """,
            (
                provider_id,
                subscriber_number,
                foundation_account_number,
                billing_account_number,
                status,
                int(is_deleted),
            ),
        )
        await self.conn.commit()

    async def count_devices(self, provider_id: int) -> int:
        cur = await self.conn.execute(
            "SELECT COUNT(*) AS n FROM device WHERE service_provider_id = ? AND is_deleted = 0",
            (provider_id,),
        )
        row = await cur.fetchone()
        return row["n"]

    # -- staging --------------------------------------------------------------

    async def truncate_staging(self) -> None:
        """Empty every per-cycle staging and work-queue table."""
        for table in _STAGING_TABLES:
            await self.conn.execute(f"DELETE FROM {table}")  # noqa: S608
        await self.conn.commit()

    async def bulk_upsert_device_staging(self, rows: list[StagedDevice]) -> int:
        now = _now_iso()
        return await self._bulk(
            """
            INSERT INTO device_staging (
                service_provider_id, foundation_account_number, billing_account_number,
                subscriber_number, subscriber_number_status, refresh_timestamp,
                ban_status, created_date
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (service_provider_id, subscriber_number) DO UPDATE SET
                foundation_account_number = excluded.foundation_account_number,
                billing_account_number = excluded.billing_account_number,
                subscriber_number_status = excluded.subscriber_number_status,
                refresh_timestamp = excluded.refresh_timestamp,
                ban_status = excluded.ban_status
            """,
            [
                (
                    r.service_provider_id,
                    r.foundation_account_number,
                    r.billing_account_number,
                    r.subscriber_number,
                    r.subscriber_number_status,
                    _iso(r.refresh_timestamp),
                    r.ban_status,
                    _iso(r.created_date) or now,
                )
                for r in rows
            ],
        )

    async def list_staged_devices(self, provider_id: int | None = None) -> list[StagedDevice]:
        if provider_id is None:
            cur = await self.conn.execute("SELECT * FROM device_staging ORDER BY id")
        else:
            cur = await self.conn.execute(
                "SELECT * FROM device_staging WHERE service_provider_id = ? ORDER BY id", (provider_id,)
            )
        rows = await cur.fetchall()
        return [self._row_to_staged_device(r) for r in rows]

    async def bulk_upsert_ban_statuses(self, provider_id: int, statuses: dict[str, str]) -> int:
        now = _now_iso()
        return await self._bulk(
            """
            INSERT INTO ban_status_staging (service_provider_id, billing_account_number, status, created_date)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (service_provider_id, billing_account_number) DO UPDATE SET
                status = excluded.status
            """,
            [(provider_id, ban, status, now) for ban, status in statuses.items()],
        )

    async def get_ban_statuses(self, provider_id: int) -> dict[str, str]:
        cur = await self.conn.execute(
            "SELECT billing_account_number, status FROM ban_status_staging WHERE service_provider_id = ?",
            (provider_id,),
        )
        rows = await cur.fetchall()
        return {r["billing_account_number"]: r["status"] for r in rows}

    # -- ban_to_process -------------------------------------------------------

    async def prepare_ban_queue(self, provider_id: int) -> int:
        """Rebuild the BAN work queue from the provider's known billing accounts."""
        await self.conn.execute("DELETE FROM ban_to_process WHERE service_provider_id = ?", (provider_id,))
        cur = await self.conn.execute(
            """
            INSERT INTO ban_to_process (service_provider_id, billing_account_number)
            SELECT DISTINCT service_provider_id, billing_account_number
            FROM billing_account
            WHERE service_provider_id = ? AND billing_account_number <> ''
            """,
            (provider_id,),
        )
        await self.conn.commit()
        return cur.rowcount

    async def list_pending_bans(self, provider_id: int, *, limit: int | None = None) -> list[WorkQueueRow]:
        cur = await self.conn.execute(
            """
            SELECT * FROM ban_to_process
            WHERE service_provider_id = ? AND is_deleted = 0
            ORDER BY id LIMIT ?
            """,
            (provider_id, -1 if limit is None else limit),
        )
        rows = await cur.fetchall()
        return [self._row_to_work_queue_row(r, "billing_account_number") for r in rows]

    async def count_pending_bans(self, provider_id: int) -> int:
        cur = await self.conn.execute(
            "SELECT COUNT(*) AS n FROM ban_to_process WHERE service_provider_id = ? AND is_deleted = 0",
            (provider_id,),
        )
        row = await cur.fetchone()
        return row["n"]

    async def mark_bans_processed(self, provider_id: int, bans: list[str]) -> int:
        return await self._bulk(
            "UPDATE ban_to_process SET is_deleted = 1 WHERE service_provider_id = ? AND billing_account_number = ?",
            [(provider_id, ban) for ban in bans],
        )

    # -- device_not_exists_to_process -----------------------------------------

    async def build_missing_device_queue(self, provider_id: int, batch_size: int) -> int:
        """Queue known devices absent from staging, grouped by *batch_size*.

        Returns the highest group number (0 when nothing was queued).
        """
        await self.conn.execute(
            "DELETE FROM device_not_exists_to_process WHERE service_provider_id = ?", (provider_id,)
        )
        await self.conn.execute(
            """
            INSERT INTO device_not_exists_to_process (
                service_provider_id, group_number, subscriber_number,
                foundation_account_number, billing_account_number, subscriber_number_status
            )
            SELECT
                d.service_provider_id,
                (ROW_NUMBER() OVER (ORDER BY d.subscriber_number) - 1) / ?,
                d.subscriber_number,
                d.foundation_account_number,
                d.billing_account_number,
                d.subscriber_number_status
            FROM device d
            WHERE d.service_provider_id = ?
              AND d.is_deleted = 0
              AND NOT EXISTS (
                  SELECT 1 FROM device_staging s
                  WHERE s.service_provider_id = d.service_provider_id
                    AND s.subscriber_number = d.subscriber_number
              )
            """,
            (batch_size, provider_id),
        )
        await self.conn.commit()
        cur = await self.conn.execute(
            "SELECT MAX(group_number) AS g FROM device_not_exists_to_process WHERE service_provider_id = ?",
            (provider_id,),
        )
        row = await cur.fetchone()
        return row["g"] or 0

    async def list_missing_devices(self, provider_id: int, group_number: int) -> list[MissingDevice]:
        cur = await self.conn.execute(
            """
            SELECT * FROM device_not_exists_to_process
            WHERE service_provider_id = ? AND group_number = ? AND is_deleted = 0
            ORDER BY id
            """,
            (provider_id, group_number),
        )
        rows = await cur.fetchall()
        return [self._row_to_missing_device(r) for r in rows]

    async def count_missing_devices(self, provider_id: int, group_number: int) -> int:
        cur = await self.conn.execute(
            """
            SELECT COUNT(*) AS n FROM device_not_exists_to_process
            WHERE service_provider_id = ? AND group_number = ? AND is_deleted = 0
            """,
            (provider_id, group_number),
        )
        row = await cur.fetchone()
        return row["n"]

    async def mark_missing_devices_processed(
        self, provider_id: int, group_number: int, subscriber_numbers: list[str]
    ) -> int:
        return await self._bulk(
            """
            UPDATE device_not_exists_to_process SET is_deleted = 1
            WHERE service_provider_id = ? AND group_number = ? AND subscriber_number = ?
            """,
            [(provider_id, group_number, s) for s in subscriber_numbers],
        )

    # -- device detail --------------------------------------------------------

    async def prepare_detail_queue(self, batch_size: int) -> int:
        """Queue every staged device for a detail fetch.  Returns the highest group."""
        await self.conn.execute("DELETE FROM device_detail_to_process")
        await self.conn.execute(
            """
            INSERT INTO device_detail_to_process (service_provider_id, group_number, subscriber_number)
            SELECT
                service_provider_id,
                (ROW_NUMBER() OVER (ORDER BY service_provider_id, subscriber_number) - 1) / ?,
                subscriber_number
            FROM device_staging
            """,
            (batch_size,),
        )
        await self.conn.commit()
        cur = await self.conn.execute(
            "SELECT MAX(group_number) AS g FROM device_detail_to_process WHERE is_deleted = 0"
        )
        row = await cur.fetchone()
        return row["g"] or 0

    async def list_pending_details(self, group_number: int, *, limit: int) -> list[WorkQueueRow]:
        """Pending detail rows for *group_number* (any group when negative)."""
        if group_number < 0:
            cur = await self.conn.execute(
                "SELECT * FROM device_detail_to_process WHERE is_deleted = 0 ORDER BY id LIMIT ?",
                (limit,),
            )
        else:
            cur = await self.conn.execute(
                """
                SELECT * FROM device_detail_to_process
                WHERE group_number = ? AND is_deleted = 0
                ORDER BY id LIMIT ?
                """,
                (group_number, limit),
            )
        rows = await cur.fetchall()
        return [self._row_to_work_queue_row(r, "subscriber_number") for r in rows]

    async def mark_details_processed(self, rows: list[WorkQueueRow]) -> int:
        return await self._bulk(
            """
            UPDATE device_detail_to_process SET is_deleted = 1
            WHERE service_provider_id = ? AND subscriber_number = ?
            """,
            [(r.service_provider_id, r.key) for r in rows],
        )

    async def truncate_feature_staging(self) -> None:
        await self.conn.execute("DELETE FROM device_feature_staging")
        await self.conn.commit()

    async def bulk_upsert_device_details(self, provider_details: list[tuple[int, DeviceDetail]]) -> int:
        now = _now_iso()
        return await self._bulk(
            """
            INSERT INTO device_detail_staging (
                service_provider_id, subscriber_number, subscriber_status, activation_date,
                single_user_code, single_user_code_description, service_zip_code,
                next_bill_cycle_date, iccid, imei, device_make, device_model, imei_type,
                data_group_id, contact_name, device_technology_type, ip_address,
                status_effective_date, created_date
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (service_provider_id, subscriber_number) DO UPDATE SET
                subscriber_status = excluded.subscriber_status,
                activation_date = excluded.activation_date,
                single_user_code = excluded.single_user_code,
                single_user_code_description = excluded.single_user_code_description,
                service_zip_code = excluded.service_zip_code,
                next_bill_cycle_date = excluded.next_bill_cycle_date,
                iccid = excluded.iccid,
                imei = excluded.imei,
                device_make = excluded.device_make,
                device_model = excluded.device_model,
                imei_type = excluded.imei_type,
                data_group_id = excluded.data_group_id,
                contact_name = excluded.contact_name,
                device_technology_type = excluded.device_technology_type,
                ip_address = excluded.ip_address,
                status_effective_date = excluded.status_effective_date
            """,
            [
                (
                    provider_id,
                    d.subscriber_number,
                    d.subscriber_status,
                    _iso(d.activation_date),
                    d.single_user_code,
                    d.single_user_code_description,
                    d.service_zip_code,
                    _iso(d.next_bill_cycle_date),
                    d.iccid,
                    d.imei,
                    d.device_make,
                    d.device_model,
                    d.imei_type,
                    d.data_group_id,
                    d.contact_name,
                    d.device_technology_type,
                    d.ip_address,
                    _iso(d.status_effective_date),
                    now,
                )
                for provider_id, d in provider_details
            ],
        )

    async def bulk_insert_device_features(self, features: list[tuple[int, str, str]]) -> int:
        return await self._bulk(
            """
            INSERT INTO device_feature_staging (service_provider_id, subscriber_number, offering_code)
            VALUES (?, ?, ?)
            ON CONFLICT (service_provider_id, subscriber_number, offering_code) DO NOTHING
            """,
            features,
        )

    async def list_device_details(self) -> list[DeviceDetail]:
        cur = await self.conn.execute("SELECT * FROM device_detail_staging ORDER BY id")
        rows = await cur.fetchall()
        return [self._row_to_device_detail(r) for r in rows]

    async def list_device_features(self, subscriber_number: str) -> list[str]:
        cur = await self.conn.execute(
            "SELECT offering_code FROM device_feature_staging WHERE subscriber_number = ? ORDER BY id",
            (subscriber_number,),
        )
        rows = await cur.fetchall()
        return [r["offering_code"] for r in rows]

    async def table_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table in _COUNTED_TABLES:
            cur = await self.conn.execute(f"SELECT COUNT(*) AS n FROM {table}")  # noqa: S608
            row = await cur.fetchone()
            counts[table] = row["n"]
        return counts

    # -- sync_runs ------------------------------------------------------------

    async def start_sync_run(self, provider_id: int) -> SyncRun:
        now = _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO sync_runs (service_provider_id, started_at, updated_at, status)
            VALUES (?, ?, ?, 'running')
            RETURNING *
            """,
            (provider_id, now, now),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row)

    async def get_active_sync_run(self, provider_id: int) -> SyncRun | None:
        cur = await self.conn.execute(
            """
            SELECT * FROM sync_runs
            WHERE service_provider_id = ? AND status = 'running'
            ORDER BY id DESC LIMIT 1
            """,
            (provider_id,),
        )
        row = await cur.fetchone()
        return self._row_to_sync_run(row) if row else None

    async def get_latest_sync_run(self, provider_id: int) -> SyncRun | None:
        cur = await self.conn.execute(
            "SELECT * FROM sync_runs WHERE service_provider_id = ? ORDER BY id DESC LIMIT 1",
            (provider_id,),
        )
        row = await cur.fetchone()
        return self._row_to_sync_run(row) if row else None

    async def list_running_sync_runs(self, integration: str) -> list[SyncRun]:
        """Running cycles of every provider of *integration*, oldest first."""
        cur = await self.conn.execute(
            """
            SELECT r.* FROM sync_runs r
            JOIN service_provider p ON p.id = r.service_provider_id
            WHERE p.integration = ? AND r.status = 'running'
            ORDER BY r.id
            """,
            (integration,),
        )
        rows = await cur.fetchall()
        return [self._row_to_sync_run(r) for r in rows]

    async def claim_reconciliation(self, run_id: int) -> bool:
        """Mark the run's missing-device fan-out as started; False if already claimed."""
        cur = await self.conn.execute(
            "UPDATE sync_runs SET reconcile_started_at = ? WHERE id = ? AND reconcile_started_at IS NULL",
            (_now_iso(), run_id),
        )
        await self.conn.commit()
        return cur.rowcount == 1

    async def release_reconciliation(self, run_id: int) -> None:
        await self.conn.execute("UPDATE sync_runs SET reconcile_started_at = NULL WHERE id = ?", (run_id,))
        await self.conn.commit()

    async def merge_sync_stats(self, run_id: int, stats: dict[str, int]) -> None:
        """Add *stats* counters onto the run's accumulated stats."""
        cur = await self.conn.execute("SELECT stats_json FROM sync_runs WHERE id = ?", (run_id,))
        row = await cur.fetchone()
        if row is None:
            return
        merged: dict[str, int] = json.loads(row["stats_json"]) if row["stats_json"] else {}
        for key, value in stats.items():
            merged[key] = merged.get(key, 0) + value
        await self.conn.execute(
            "UPDATE sync_runs SET stats_json = ?, updated_at = ? WHERE id = ?",
            (json.dumps(merged), _now_iso(), run_id),
        )
        await self.conn.commit()

    async def finish_sync_run(
        self,
        run_id: int,
        *,
        status: str,
        error_message: str | None = None,
    ) -> SyncRun | None:
        """Close a running sync run.  Returns None when it was already finished."""
        cur = await self.conn.execute(
            """
            UPDATE sync_runs SET finished_at = ?, status = ?, error_message = ?
            WHERE id = ? AND status = 'running'
            RETURNING *
            """,
            (_now_iso(), status, error_message, run_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_sync_run(row) if row else None

    async def list_sync_runs(self, *, limit: int = 20) -> list[SyncRun]:
        cur = await self.conn.execute(
            "SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (limit,)
        )
        rows = await cur.fetchall()
        return [self._row_to_sync_run(r) for r in rows]

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_service_provider(row: aiosqlite.Row) -> ServiceProvider:
        return ServiceProvider(
            id=row["id"],
            name=row["name"],
            integration=row["integration"],
            is_active=bool(row["is_active"]),
            production_url=row["production_url"],
            sandbox_url=row["sandbox_url"],
            write_is_enabled=bool(row["write_is_enabled"]),
        )

    @staticmethod
    def _row_to_staged_device(row: aiosqlite.Row) -> StagedDevice:
        return StagedDevice(
            id=row["id"],
            service_provider_id=row["service_provider_id"],
            foundation_account_number=row["foundation_account_number"],
            billing_account_number=row["billing_account_number"],
            subscriber_number=row["subscriber_number"],
            subscriber_number_status=row["subscriber_number_status"],
            refresh_timestamp=row["refresh_timestamp"],
            ban_status=row["ban_status"],
            created_date=row["created_date"],
        )

    @staticmethod
    def _row_to_missing_device(row: aiosqlite.Row) -> MissingDevice:
        return MissingDevice(
            id=row["id"],
            service_provider_id=row["service_provider_id"],
            group_number=row["group_number"],
            subscriber_number=row["subscriber_number"],
            foundation_account_number=row["foundation_account_number"],
            billing_account_number=row["billing_account_number"],
            subscriber_number_status=row["subscriber_number_status"],
            is_deleted=bool(row["is_deleted"]),
        )

    @staticmethod
    def _row_to_work_queue_row(row: aiosqlite.Row, key_column: str) -> WorkQueueRow:
        return WorkQueueRow(
            id=row["id"],
            service_provider_id=row["service_provider_id"],
            group_number=row["group_number"],
            key=row[key_column],
            is_deleted=bool(row["is_deleted"]),
        )

    @staticmethod
    def _row_to_device_detail(row: aiosqlite.Row) -> DeviceDetail:
        return DeviceDetail(
            subscriber_number=row["subscriber_number"],
            subscriber_status=row["subscriber_status"],
            activation_date=row["activation_date"],
            single_user_code=row["single_user_code"],
            single_user_code_description=row["single_user_code_description"],
            service_zip_code=row["service_zip_code"],
            next_bill_cycle_date=row["next_bill_cycle_date"],
            iccid=row["iccid"],
            imei=row["imei"],
            device_make=row["device_make"],
            device_model=row["device_model"],
            imei_type=row["imei_type"],
            data_group_id=row["data_group_id"],
            contact_name=row["contact_name"],
            device_technology_type=row["device_technology_type"],
            ip_address=row["ip_address"],
            status_effective_date=row["status_effective_date"],
        )

    @staticmethod
    def _row_to_sync_run(row: aiosqlite.Row) -> SyncRun:
        return SyncRun(
            id=row["id"],
            service_provider_id=row["service_provider_id"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
            finished_at=row["finished_at"],
            reconcile_started_at=row["reconcile_started_at"],
            status=row["status"],
            stats_json=row["stats_json"],
            error_message=row["error_message"],
        )
