"""Async carrier API client using httpx.

Endpoints (paths come from :class:`~carriersync.config.CarrierConfig`):
- GET devices (paged through ``current-page`` / ``page-size`` headers)
- GET billing account status (``{ban}`` in the path)
- GET device detail (``{subscriber_number}`` in the path)

Every call goes through a :class:`RetryPolicy`.  Ordinary HTTP failures come
back as a failed :class:`CarrierResult` rather than an exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Generic, TypeVar
from urllib.parse import quote

import httpx
import structlog

from carriersync.config import CarrierConfig
from carriersync.storage.models import CarrierCredentials, DeviceDetail, DeviceRecord
from carriersync.sync.retry import RetryableStatusError, RetryPolicy

log = structlog.get_logger(__name__)

T = TypeVar("T")

_OFFERING_CODE_PREFIX = "offeringCode"
_OFFERING_CODE_MAX_LEN = 50

_CHARACTERISTIC_FIELDS = {
    "subscriberStatus": "subscriber_status",
    "subscriberActivationDate": "activation_date",
    "singleUserCode": "single_user_code",
    "singleUserCodeDescription": "single_user_code_description",
    "serviceZipCode": "service_zip_code",
    "nextBillCycleDate": "next_bill_cycle_date",
    "sim": "iccid",
    "BLIMEI": "imei",
    "BLDeviceBrand": "device_make",
    "BLDeviceModel": "device_model",
    "BLIMEIType": "imei_type",
    "dataGroupIDCode1": "data_group_id",
    "contactName": "contact_name",
    "BLDeviceTechnologyType": "device_technology_type",
    "ipAddress": "ip_address",
    "statusEffectiveDate": "status_effective_date",
}
_DATE_FIELDS = {"activation_date", "next_bill_cycle_date", "status_effective_date"}


class CarrierAuthError(Exception):
    """Raised when a provider has no usable credentials."""


@dataclass(frozen=True)
class CarrierResult(Generic[T]):
    """Outcome of one carrier call."""

    ok: bool
    value: T | None = None
    error: str = ""
    status_code: int | None = None

    @classmethod
    def success(cls, value: T, status_code: int | None = None) -> CarrierResult[T]:
        return cls(ok=True, value=value, status_code=status_code)

    @classmethod
    def failure(cls, error: str, status_code: int | None = None) -> CarrierResult[T]:
        return cls(ok=False, error=error, status_code=status_code)


@dataclass(frozen=True)
class DevicePage:
    page: int
    page_total: int
    records: list[DeviceRecord] = field(default_factory=list)

    @property
    def has_more(self) -> bool:
        return self.page < self.page_total


def build_headers(
    credentials: CarrierCredentials,
    *,
    page: int | None = None,
    page_size: int | None = None,
) -> dict[str, str]:
    """Request headers for *credentials*, with paging headers when *page* is given."""
    headers = {
        "Accept": "application/json",
        "app-id": credentials.client_id,
        "app-secret": credentials.client_secret.get_secret_value(),
    }
    if page is not None:
        headers["current-page"] = str(page)
        headers["page-size"] = str(page_size if page_size is not None else 0)
    return headers


def _parse_timestamp(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        log.debug("carrier_bad_timestamp", value=raw)
        return None


def _parse_date(raw: str) -> date | None:
    value = raw.strip().rstrip("Z")
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_device_record(item: dict[str, Any], refresh_timestamp: datetime | None = None) -> DeviceRecord | None:
    subscriber_number = _text(item.get("subscriberNumber"))
    if subscriber_number is None:
        return None
    return DeviceRecord(
        subscriber_number=subscriber_number,
        foundation_account_number=_text(item.get("foundationAccountNumber")),
        billing_account_number=_text(item.get("billingAccountNumber")),
        subscriber_number_status=_text(item.get("subscriberNumberStatus")),
        refresh_timestamp=refresh_timestamp,
    )


def parse_device_detail(payload: Any) -> DeviceDetail | None:
    """Build a :class:`DeviceDetail` from a detail response; None when it has no subscriber number."""
    if not isinstance(payload, dict):
        return None
    subscriber_number = _text(payload.get("subscriberNumber"))
    if subscriber_number is None:
        return None

    values: dict[str, Any] = {}
    offering_codes: list[str] = []
    for characteristic in payload.get("serviceCharacteristic") or []:
        if not isinstance(characteristic, dict):
            continue
        name = characteristic.get("name") or ""
        value = _text(characteristic.get("value"))
        if value is None:
            continue
        if name.startswith(_OFFERING_CODE_PREFIX):
            offering_codes.append(value[:_OFFERING_CODE_MAX_LEN])
            continue
        attr = _CHARACTERISTIC_FIELDS.get(name)
        if attr is None:
            continue
        values[attr] = _parse_date(value) if attr in _DATE_FIELDS else value

    return DeviceDetail(subscriber_number=subscriber_number, offering_codes=offering_codes, **values)


class CarrierClient:
    """Async carrier API client for a single service provider."""

    def __init__(
        self,
        credentials: CarrierCredentials,
        config: CarrierConfig,
        *,
        retry: RetryPolicy | None = None,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        base_url = credentials.base_url(is_production=config.is_production)
        if not credentials.client_id or not base_url:
            msg = f"Service provider {credentials.service_provider_id} has no usable carrier credentials"
            raise CarrierAuthError(msg)
        self._credentials = credentials
        self._config = config
        self._base_url = base_url
        self._retry = retry or RetryPolicy(
            config.max_retries,
            config.retry_delay_seconds,
            backoff=config.retry_backoff,
        )
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> CarrierClient:
        kw: dict = {"base_url": self._base_url, "timeout": self._config.request_timeout_seconds}
        if self._transport is not None:
            kw["transport"] = self._transport
        elif self._config.proxy_url:
            kw["proxy"] = self._config.proxy_url
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- request helper --

    async def _send(self, path: str, headers: dict[str, str]) -> httpx.Response:
        assert self._client is not None  # noqa: S101
        resp = await self._client.get(path, headers=headers)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise RetryableStatusError(resp.status_code, resp.text)
        return resp

    async def _get(self, path: str, headers: dict[str, str], *, operation: str) -> CarrierResult[httpx.Response]:
        try:
            resp = await self._retry.run(self._send, path, headers, operation=operation)
        except RetryableStatusError as exc:
            log.warning("carrier_request_failed", operation=operation, status=exc.status_code)
            return CarrierResult.failure(str(exc), exc.status_code)
        except (httpx.HTTPError, TimeoutError, ConnectionError) as exc:
            log.warning("carrier_request_failed", operation=operation, error=str(exc))
            return CarrierResult.failure(str(exc))

        if resp.status_code >= 400:
            log.warning(
                "carrier_request_rejected",
                operation=operation,
                status=resp.status_code,
                body=resp.text[:200],
            )
            return CarrierResult.failure(f"HTTP {resp.status_code}", resp.status_code)
        return CarrierResult.success(resp, resp.status_code)

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError:
            return None

    # -- public API --

    async def list_devices(self, page: int, page_size: int) -> CarrierResult[DevicePage]:
        """Fetch one page of the provider's device list."""
        headers = build_headers(self._credentials, page=page, page_size=page_size)
        result = await self._get(self._config.devices_path, headers, operation="list_devices")
        if not result.ok or result.value is None:
            return CarrierResult.failure(result.error, result.status_code)
        resp = result.value

        payload = self._json(resp)
        if isinstance(payload, dict):
            payload = payload.get("devices")
        if not isinstance(payload, list):
            log.warning("carrier_bad_device_page", page=page)
            return CarrierResult.failure("malformed device page", resp.status_code)

        try:
            page_total = int(resp.headers.get("page-total", page))
        except ValueError:
            page_total = page
        refresh_timestamp = _parse_timestamp(resp.headers.get("refresh-timestamp"))

        records = [
            record
            for item in payload
            if isinstance(item, dict) and (record := parse_device_record(item, refresh_timestamp)) is not None
        ]
        return CarrierResult.success(DevicePage(page=page, page_total=page_total, records=records), resp.status_code)

    async def get_account_status(self, ban: str) -> CarrierResult[str]:
        """Fetch the status of one billing account."""
        path = self._config.account_status_path.replace("{ban}", quote(ban, safe=""))
        result = await self._get(path, build_headers(self._credentials), operation="get_account_status")
        if not result.ok or result.value is None:
            return CarrierResult.failure(result.error, result.status_code)

        payload = self._json(result.value)
        status = _text(payload.get("status")) if isinstance(payload, dict) else None
        if status is None:
            return CarrierResult.failure("missing account status", result.status_code)
        return CarrierResult.success(status, result.status_code)

    async def get_device_detail(self, subscriber_number: str) -> CarrierResult[DeviceDetail]:
        """Fetch the detail record of one subscriber line."""
        path = self._config.device_detail_path.replace("{subscriber_number}", quote(subscriber_number, safe=""))
        result = await self._get(path, build_headers(self._credentials), operation="get_device_detail")
        if not result.ok or result.value is None:
            return CarrierResult.failure(result.error, result.status_code)

        detail = parse_device_detail(self._json(result.value))
        if detail is None:
            return CarrierResult.failure("invalid device detail", result.status_code)
        return CarrierResult.success(detail, result.status_code)
