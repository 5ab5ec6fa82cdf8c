"""Configuration management for the carriersync worker."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

_BASE_DIR_NAME = ".carriersync"
_BASE_DIR_ENV = "CARRIERSYNC_HOME"
_CONFIG_FILE = "config.toml"
_DATABASE_FILE = "carriersync.db"
_LOG_DIR = "logs"


def get_base_dir() -> Path:
    """Return the base directory for runtime files (~/.carriersync/ or $CARRIERSYNC_HOME)."""
    override = os.environ.get(_BASE_DIR_ENV)
    if override:
        return Path(override)
    return Path.home() / _BASE_DIR_NAME


# ---------------------------------------------------------------------------
# Config models
# ---------------------------------------------------------------------------


class WorkerConfig(BaseModel):
    """Settings that control the worker process and its invocations."""

    model_config = ConfigDict(frozen=True)

    log_level: str = Field(default="info", description="Logging level")
    trigger_interval_minutes: int = Field(default=60, ge=1, description="Minutes between fresh sync cycles")
    poll_interval_seconds: float = Field(default=5.0, gt=0, description="Seconds between queue polls")
    invocation_timeout_seconds: float = Field(default=900.0, gt=0, description="Wall-clock budget per invocation")
    visibility_timeout_seconds: float = Field(
        default=960.0,
        gt=0,
        description="Seconds a received message stays hidden before redelivery",
    )
    max_receive_count: int = Field(
        default=5,
        ge=1,
        description="Deliveries of a failing message before it is dropped",
    )
    database_path: str = Field(default="", description="SQLite database path (empty = base dir)")


class SyncConfig(BaseModel):
    """Settings that control the checkpointed sync state machine."""

    model_config = ConfigDict(frozen=True)

    integration: str = Field(default="telegence", description="Integration whose providers are synced")
    max_cycles_per_invocation: int = Field(default=10, ge=1, description="Device pages fetched per invocation")
    batch_size: int = Field(default=250, ge=1, description="Page size and work-queue group size")
    remaining_time_cutoff_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Stop starting new work once less than this much time remains",
    )
    max_sync_retries: int = Field(default=3, ge=0, description="Time-budget exhaustions tolerated per sub-phase")
    continuation_delay_seconds: int = Field(default=5, ge=0)
    last_group_delay_seconds: int = Field(default=60, ge=0)
    usage_delay_seconds: int = Field(default=5, ge=0)
    detail_delay_seconds: int = Field(default=60, ge=0)
    cancelled_status: str = Field(default="C", description="Carrier status that is never staged as a correction")
    store_retries: int = Field(default=3, ge=0, description="Retries for transient database failures")
    store_retry_delay_seconds: float = Field(default=1.0, ge=0)
    stale_run_minutes: int = Field(
        default=120,
        ge=0,
        description="Minutes without progress before a running cycle may be replaced by a new one",
    )


class CarrierConfig(BaseModel):
    """Carrier HTTP API endpoints and client behaviour."""

    model_config = ConfigDict(frozen=True)

    is_production: bool = Field(default=False, description="Use production instead of sandbox base URLs")
    proxy_url: str = Field(default="", description="Optional HTTP proxy for all carrier calls")
    devices_path: str = Field(default="/sp/mobility/v1/devices")
    account_status_path: str = Field(default="/sp/billing/v1/accounts/{ban}")
    device_detail_path: str = Field(default="/sp/mobility/v1/lines/{subscriber_number}")
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_delay_seconds: float = Field(default=1.0, ge=0)
    retry_backoff: Literal["fixed", "exponential"] = Field(default="exponential")


class AppConfig(BaseModel):
    """Top-level application configuration."""

    model_config = ConfigDict(frozen=True)

    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    carrier: CarrierConfig = Field(default_factory=CarrierConfig)

    # -- derived paths (not stored in TOML) --------------------------------

    @property
    def base_dir(self) -> Path:
        return get_base_dir()

    @property
    def log_dir(self) -> Path:
        return self.base_dir / _LOG_DIR

    @property
    def database_path(self) -> Path:
        if self.worker.database_path:
            return Path(self.worker.database_path).expanduser()
        return self.base_dir / _DATABASE_FILE


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def ensure_dirs() -> None:
    """Create the base directory and log directory if they don't already exist."""
    base = get_base_dir()
    base.mkdir(mode=0o700, parents=True, exist_ok=True)
    (base / _LOG_DIR).mkdir(mode=0o700, parents=True, exist_ok=True)


def config_exists() -> bool:
    """Return True if a config file is present on disk."""
    return (get_base_dir() / _CONFIG_FILE).is_file()


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from TOML, falling back to defaults if the file is missing."""
    if path is None:
        path = get_base_dir() / _CONFIG_FILE
    if not path.is_file():
        return AppConfig()

    with open(path, "rb") as f:
        raw = tomllib.load(f)

    return AppConfig.model_validate(raw)


def _format_toml_value(value: object) -> str:
    """Format a single Python value as a TOML literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int | float):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    msg = f"Unsupported TOML value type: {type(value)}"
    raise TypeError(msg)


def _dump_toml(config: AppConfig) -> str:
    """Serialize an AppConfig to a minimal TOML string.

    Only handles the flat two-level structure we actually use (tables with
    scalar values).
    """
    lines: list[str] = []
    sections = [
        ("worker", config.worker),
        ("sync", config.sync),
        ("carrier", config.carrier),
    ]
    for section_name, section_model in sections:
        lines.append(f"[{section_name}]")
        for key, value in section_model.model_dump(mode="python").items():
            lines.append(f"{key} = {_format_toml_value(value)}")
        lines.append("")
    return "\n".join(lines)


def save_config(config: AppConfig) -> None:
    """Save configuration to TOML and restrict file permissions to owner-only."""
    ensure_dirs()
    path = get_base_dir() / _CONFIG_FILE
    path.write_text(_dump_toml(config), encoding="utf-8")
    os.chmod(path, 0o600)
