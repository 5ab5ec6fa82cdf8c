"""The continuation token handed from one invocation to the next.

A :class:`SyncState` is everything the next invocation knows about the
cycle in progress.  It travels as string-typed queue attributes, so
decoding is lenient: missing or malformed attributes fall back to the
defaults of a fresh cycle and never raise.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

log = structlog.get_logger(__name__)

TOKEN_VERSION = 1
CONTINUATION_BODY = "Continuing processing of carrier devices"

_TRUE = {"true", "1", "yes", "y"}
_FALSE = {"false", "0", "no", "n"}


class Phase(StrEnum):
    SELECT_PROVIDER = "select_provider"
    PRIME_BAN_LIST = "prime_ban_list"
    FETCH_BAN_STATUSES = "fetch_ban_statuses"
    FETCH_DEVICE_PAGES = "fetch_device_pages"
    RECONCILE_MISSING_DEVICES = "reconcile_missing_devices"
    DONE = "done"


class SyncState(BaseModel):
    """Immutable continuation token; rebuild it with ``model_copy(update=...)``."""

    model_config = ConfigDict(frozen=True)

    current_service_provider_id: int = Field(default=0, ge=0)
    current_page: int = Field(default=1, ge=1)
    has_more_data: bool = True
    initialize_processing: bool = True
    is_process_device_not_exists_staging: bool = False
    is_last_process_device_not_exists_staging: bool = False
    group_number: int = Field(default=0, ge=0)
    retry_number: int = Field(default=0, ge=0)
    # Not serialized: only meaningful inside the invocation that fetched pages.
    is_last_cycle: bool = False

    @property
    def phase(self) -> Phase:
        if self.current_service_provider_id == 0:
            return Phase.SELECT_PROVIDER
        if self.is_process_device_not_exists_staging:
            return Phase.RECONCILE_MISSING_DEVICES
        if self.initialize_processing:
            return Phase.PRIME_BAN_LIST if self.retry_number == 0 else Phase.FETCH_BAN_STATUSES
        return Phase.FETCH_DEVICE_PAGES

    @property
    def body(self) -> str:
        return CONTINUATION_BODY

    def with_retry(self) -> SyncState:
        return self.model_copy(update={"retry_number": self.retry_number + 1})

    # -- wire format ---------------------------------------------------------

    def to_attributes(self) -> dict[str, str]:
        return {
            "Version": str(TOKEN_VERSION),
            "CurrentServiceProviderId": str(self.current_service_provider_id),
            "CurrentPage": str(self.current_page),
            "HasMoreData": _encode_bool(self.has_more_data),
            "InitializeProcessing": _encode_bool(self.initialize_processing),
            "IsProcessDeviceNotExistsStaging": _encode_flag(self.is_process_device_not_exists_staging),
            "IsLastProcessDeviceNotExistsStaging": _encode_flag(self.is_last_process_device_not_exists_staging),
            "GroupNumber": str(self.group_number),
            "RetryNumber": str(self.retry_number),
        }

    @classmethod
    def from_attributes(cls, attributes: dict[str, Any] | None) -> SyncState:
        """Decode queue attributes; an empty mapping yields a fresh cycle."""
        attrs = attributes or {}
        version = parse_int_attribute(attrs, "Version", TOKEN_VERSION, minimum=0)
        if version > TOKEN_VERSION:
            log.warning("sync_state_newer_version", version=version, supported=TOKEN_VERSION)
        return cls(
            current_service_provider_id=parse_int_attribute(attrs, "CurrentServiceProviderId", 0, minimum=0),
            current_page=parse_int_attribute(attrs, "CurrentPage", 1, minimum=1),
            has_more_data=parse_bool_attribute(attrs, "HasMoreData", True),
            initialize_processing=parse_bool_attribute(attrs, "InitializeProcessing", True),
            is_process_device_not_exists_staging=parse_bool_attribute(attrs, "IsProcessDeviceNotExistsStaging", False),
            is_last_process_device_not_exists_staging=parse_bool_attribute(
                attrs, "IsLastProcessDeviceNotExistsStaging", False
            ),
            group_number=parse_int_attribute(attrs, "GroupNumber", 0, minimum=0),
            retry_number=parse_int_attribute(attrs, "RetryNumber", 0, minimum=0),
        )


def _encode_bool(value: bool) -> str:
    return "true" if value else "false"


def _encode_flag(value: bool) -> str:
    return "1" if value else "0"


def _raw(attrs: dict[str, Any], key: str) -> str | None:
    value = attrs.get(key)
    if isinstance(value, dict):
        # Queue transports that wrap attributes as {"StringValue": ...}.
        value = value.get("StringValue")
    if value is None:
        return None
    return str(value).strip()


def parse_int_attribute(attrs: dict[str, Any], key: str, default: int, *, minimum: int) -> int:
    raw = _raw(attrs, key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("sync_state_bad_attribute", attribute=key, value=raw, default=default)
        return default
    return max(value, minimum)


def parse_bool_attribute(attrs: dict[str, Any], key: str, default: bool) -> bool:
    raw = _raw(attrs, key)
    if raw is None or raw == "":
        return default
    lowered = raw.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    log.warning("sync_state_bad_attribute", attribute=key, value=raw, default=default)
    return default
