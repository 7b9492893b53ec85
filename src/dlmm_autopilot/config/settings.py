"""Configuration management for the DLMM automation engine."""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, cast

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "AUTOPILOT_MODE"


class AppMode(str, Enum):
    """Supported runtime modes."""

    DRY_RUN = "dry_run"
    LIVE = "live"


def _resolve_config_path() -> Path:
    env_value = os.getenv(CONFIG_FILE_ENV_VAR)
    if env_value:
        candidate = Path(env_value)
        if not candidate.is_absolute():
            candidate = Path.cwd() / candidate
        return candidate
    return Path.cwd() / DEFAULT_CONFIG_FILE


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    result: Dict[str, Any] = {**base}
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(cast(Dict[str, Any], result[key]), value)
        else:
            result[key] = value
    return result


def _select_profile(data: Dict[str, Any]) -> Dict[str, Any]:
    if not data:
        return {}
    base_section = cast(Dict[str, Any], data.get("default", {}))
    requested_mode = os.getenv(MODE_ENV_VAR)
    if not requested_mode:
        mode_section = base_section.get("mode")
        if isinstance(mode_section, dict):
            requested_mode = cast(str, mode_section.get("active", AppMode.DRY_RUN.value))
        elif isinstance(mode_section, str):
            requested_mode = mode_section
    requested_mode = (requested_mode or AppMode.DRY_RUN.value).lower()

    if requested_mode in data and requested_mode != "default":
        return _deep_merge(base_section, cast(Dict[str, Any], data[requested_mode]))
    if base_section:
        return base_section
    return data


def _load_toml_config() -> Tuple[Dict[str, Any], Optional[Path]]:
    path = _resolve_config_path()
    if not path.exists():
        return {}, None
    with path.open("rb") as handle:
        payload = tomllib.load(handle)
    merged = _select_profile(payload)
    if not isinstance(merged, dict):
        return {}, path
    merged = dict(merged)
    mode_section = merged.get("mode")
    if isinstance(mode_section, dict):
        mode_section = dict(mode_section)
        mode_section.setdefault("config_file", str(path))
        merged["mode"] = mode_section
    else:
        merged["mode"] = {"config_file": str(path)}
    return merged, path


class ModeConfig(BaseModel):
    """Runtime mode and operational toggles."""

    active: AppMode = Field(default=AppMode.DRY_RUN)
    owner: Optional[str] = None
    config_file: Optional[Path] = None


class MonitorConfig(BaseModel):
    """Polling cadence of the automation monitors."""

    rebalance_interval_seconds: float = Field(default=30.0, gt=0.0)
    order_interval_seconds: float = Field(default=30.0, gt=0.0)
    recheck_delay_seconds: float = Field(default=1.0, ge=0.0)
    pool_cache_ttl_seconds: int = Field(default=10, ge=0)


class RebalanceDefaults(BaseModel):
    """Defaults applied when a position is first enrolled in auto-rebalance."""

    price_deviation_threshold: float = Field(default=10.0, ge=1.0, le=50.0)
    new_range_width: float = Field(default=20.0, ge=5.0, le=100.0)
    min_time_between_rebalances: float = Field(default=60.0, ge=1.0, le=1_440.0)
    compound_fees: bool = True
    history_limit: int = Field(default=50, ge=1)


class OrderConfig(BaseModel):
    """Trigger tolerances for pending orders."""

    limit_trigger_tolerance: float = Field(default=0.005, gt=0.0, lt=1.0)
    limit_range_percent: float = Field(default=0.01, gt=0.0, lt=1.0)
    min_limit_distance: float = Field(default=0.001, ge=0.0)
    dca_default_interval_hours: float = Field(default=24.0, gt=0.0)
    dca_default_executions: int = Field(default=7, ge=1)


class SimulationConfig(BaseModel):
    """Synthetic price path and metric parameters for the backtester."""

    volatility: float = Field(default=0.02, ge=0.0, le=1.0)
    daily_drift: float = Field(default=0.0002)
    trading_days_per_year: int = Field(default=252, ge=1)
    default_range_width: float = Field(default=0.1, gt=0.0)
    wide_range_width: float = Field(default=0.2, gt=0.0)
    narrow_range_width: float = Field(default=0.05, gt=0.0)
    default_rebalance_threshold: float = Field(default=0.05, gt=0.0)
    default_fee_percentage: float = Field(default=0.0003, ge=0.0)
    seed: Optional[int] = None


class ValidationConfig(BaseModel):
    """Bounds used by pre-trade validation."""

    min_token_amount: float = Field(default=0.001, ge=0.0)
    max_token_amount: float = Field(default=1_000_000.0, gt=0.0)
    max_slippage_percent: float = Field(default=1.0, ge=0.0)
    min_profit_multiplier: float = Field(default=2.0, ge=0.0)


class AlertConfig(BaseModel):
    """Thresholds for position alerts."""

    high_fees_threshold: float = Field(default=10.0, ge=0.0)
    low_apy_threshold: float = Field(default=5.0)
    out_of_range_alerts: bool = True


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./autopilot_state.sqlite3"))
    in_memory: bool = False


class MonitoringConfig(BaseModel):
    """Logging and metrics configuration."""

    log_level: str = Field(default="INFO")
    structured_logs: bool = True


class NotificationConfig(BaseModel):
    """Delivery channels for user-facing notifications."""

    email: Optional[str] = None
    email_endpoint: Optional[AnyHttpUrl] = None
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    discord_webhook_url: Optional[AnyHttpUrl] = None
    throttle_seconds: int = Field(default=300, ge=0)
    request_timeout: float = Field(default=5.0, ge=0.5, le=60.0)
    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0, le=10.0)

    @field_validator("email", "telegram_bot_token", "telegram_chat_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class DashboardConfig(BaseModel):
    """Control API runtime configuration."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    rebalance: RebalanceDefaults = Field(default_factory=RebalanceDefaults)
    orders: OrderConfig = Field(default_factory=OrderConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    dashboard: DashboardConfig = Field(default_factory=DashboardConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        def file_settings(_: Optional[BaseSettings] = None) -> Dict[str, Any]:
            payload, _ = _load_toml_config()
            return payload

        # Runtime environment variables win over the static config file.
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            file_settings,
            file_secret_settings,
        )


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Create a cached application configuration object."""

    return AppConfig()


__all__ = [
    "AlertConfig",
    "AppConfig",
    "AppMode",
    "DashboardConfig",
    "ModeConfig",
    "MonitorConfig",
    "MonitoringConfig",
    "NotificationConfig",
    "OrderConfig",
    "RebalanceDefaults",
    "SimulationConfig",
    "StorageConfig",
    "ValidationConfig",
    "get_app_config",
]
