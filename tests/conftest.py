"""Shared fixtures for carriersync tests."""

from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from carriersync.config import CarrierConfig
from carriersync.storage.database import Database
from carriersync.storage.models import CarrierCredentials, DeviceDetail, DeviceRecord
from carriersync.sync.carrier import CarrierResult, DevicePage


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all runtime files to a temporary directory.

    Patches ``carriersync.config.get_base_dir`` (and the re-imported reference
    in ``carriersync.cli``) so that nothing touches the real ``~/.carriersync/``.
    """
    fake_base = tmp_path / ".carriersync"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setattr("carriersync.config.get_base_dir", lambda: fake_base)
    monkeypatch.setattr("carriersync.cli.get_base_dir", lambda: fake_base)

    return fake_base


@pytest_asyncio.fixture()
async def db(tmp_path: Path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


class FakeCarrier:
    """In-memory stand-in for :class:`CarrierClient`.

    *pages* is the device list split into pages; every call advances *clock*
    by *cost* seconds so tests can run an invocation into its time budget.
    """

    def __init__(
        self,
        pages: list[list[DeviceRecord]] | None = None,
        ban_statuses: dict[str, str] | None = None,
        details: dict[str, str] | None = None,
        *,
        clock: ManualClock | None = None,
        cost: float = 0.0,
        fail_pages: set[int] | None = None,
    ) -> None:
        self.pages = pages or []
        self.ban_statuses = ban_statuses or {}
        self.details = details or {}
        self.clock = clock
        self.cost = cost
        self.fail_pages = fail_pages or set()
        self.calls: list[tuple[str, object]] = []

    async def __aenter__(self) -> FakeCarrier:
        return self

    async def __aexit__(self, *exc: object) -> None:
        return None

    def _tick(self, name: str, arg: object) -> None:
        self.calls.append((name, arg))
        if self.clock is not None:
            self.clock.advance(self.cost)

    def calls_to(self, name: str) -> list[object]:
        return [arg for call, arg in self.calls if call == name]

    async def list_devices(self, page: int, page_size: int) -> CarrierResult[DevicePage]:
        self._tick("list_devices", page)
        if page in self.fail_pages:
            return CarrierResult.failure("HTTP 500", 500)
        records = self.pages[page - 1] if 0 < page <= len(self.pages) else []
        return CarrierResult.success(DevicePage(page=page, page_total=len(self.pages), records=list(records)))

    async def get_account_status(self, ban: str) -> CarrierResult[str]:
        self._tick("get_account_status", ban)
        if ban not in self.ban_statuses:
            return CarrierResult.failure("HTTP 404", 404)
        return CarrierResult.success(self.ban_statuses[ban])

    async def get_device_detail(self, subscriber_number: str) -> CarrierResult[DeviceDetail]:
        self._tick("get_device_detail", subscriber_number)
        if subscriber_number not in self.details:
            return CarrierResult.failure("HTTP 404", 404)
        return CarrierResult.success(
            DeviceDetail(
                subscriber_number=subscriber_number,
                subscriber_status=self.details[subscriber_number],
                offering_codes=[f"PLAN-{subscriber_number}"],
            )
        )

    def factory(self, credentials: CarrierCredentials, config: CarrierConfig) -> FakeCarrier:
        self.calls.append(("factory", credentials.service_provider_id))
        return self


@pytest.fixture()
def fake_carrier() -> type[FakeCarrier]:
    return FakeCarrier


def device(sub: str, *, fan: str = "F1", ban: str = "B1", status: str = "A") -> DeviceRecord:
    return DeviceRecord(
        subscriber_number=sub,
        foundation_account_number=fan,
        billing_account_number=ban,
        subscriber_number_status=status,
    )


@pytest.fixture()
def make_device():
    return device
