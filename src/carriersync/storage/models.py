"""Pydantic models for the carriersync storage layer."""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, SecretStr

SyncRunStatus = Literal["running", "completed", "abandoned", "failed"]


class ServiceProvider(BaseModel):
    """A carrier account configured for inventory sync."""

    id: int
    name: str
    integration: str
    is_active: bool = True
    production_url: str = ""
    sandbox_url: str = ""
    write_is_enabled: bool = False


class CarrierCredentials(BaseModel):
    """Authentication material used for every carrier request of one provider."""

    service_provider_id: int
    client_id: str
    client_secret: SecretStr
    production_url: str = ""
    sandbox_url: str = ""

    def base_url(self, *, is_production: bool) -> str:
        return self.production_url if is_production else self.sandbox_url


class DeviceRecord(BaseModel):
    """One subscriber line as reported by the carrier."""

    subscriber_number: str
    foundation_account_number: str | None = None
    billing_account_number: str | None = None
    subscriber_number_status: str | None = None
    refresh_timestamp: datetime | None = None


class StagedDevice(DeviceRecord):
    """A device row in ``device_staging``."""

    id: int | None = None
    service_provider_id: int
    ban_status: str | None = None
    created_date: datetime | None = None


class MissingDevice(BaseModel):
    """A locally known device the carrier did not list, queued for a detail check."""

    id: int | None = None
    service_provider_id: int
    group_number: int = Field(default=0, ge=0)
    subscriber_number: str
    foundation_account_number: str | None = None
    billing_account_number: str | None = None
    subscriber_number_status: str | None = None
    is_deleted: bool = False

    def to_record(self) -> DeviceRecord:
        return DeviceRecord(
            subscriber_number=self.subscriber_number,
            foundation_account_number=self.foundation_account_number,
            billing_account_number=self.billing_account_number,
            subscriber_number_status=self.subscriber_number_status,
        )


class WorkQueueRow(BaseModel):
    """A pending unit of work in one of the work-queue tables."""

    id: int | None = None
    service_provider_id: int
    group_number: int = Field(default=0, ge=0)
    key: str
    is_deleted: bool = False


class DeviceDetail(BaseModel):
    """Per-line detail returned by the carrier's device-detail endpoint."""

    subscriber_number: str
    subscriber_status: str | None = None
    activation_date: date | None = None
    single_user_code: str | None = None
    single_user_code_description: str | None = None
    service_zip_code: str | None = None
    next_bill_cycle_date: date | None = None
    iccid: str | None = None
    imei: str | None = None
    device_make: str | None = None
    device_model: str | None = None
    imei_type: str | None = None
    data_group_id: str | None = None
    contact_name: str | None = None
    device_technology_type: str | None = None
    ip_address: str | None = None
    status_effective_date: date | None = None
    offering_codes: list[str] = Field(default_factory=list)


class SyncRun(BaseModel):
    """Record of one provider sync cycle."""

    id: int | None = None
    service_provider_id: int
    started_at: datetime
    updated_at: datetime | None = None
    finished_at: datetime | None = None
    reconcile_started_at: datetime | None = None
    status: SyncRunStatus
    stats_json: str | None = None
    error_message: str | None = None

    @property
    def last_activity(self) -> datetime:
        return self.updated_at or self.started_at
