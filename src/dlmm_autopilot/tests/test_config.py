from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from dlmm_autopilot.config import settings


def test_app_config_loads_profiles_and_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "app.toml"
    config_path.write_text(
        """
[default.mode]
active = "dry_run"

[default.monitor]
rebalance_interval_seconds = 45.0
order_interval_seconds = 45.0

[default.rebalance]
price_deviation_threshold = 12.0

[live.mode]
active = "live"
owner = "Owner1111"

[live.monitor]
rebalance_interval_seconds = 15.0
"""
    )
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    monkeypatch.setenv("AUTOPILOT_MODE", "live")
    monkeypatch.setenv("MONITOR__ORDER_INTERVAL_SECONDS", "12")
    monkeypatch.delenv("MONITOR__REBALANCE_INTERVAL_SECONDS", raising=False)
    monkeypatch.delenv("REBALANCE__PRICE_DEVIATION_THRESHOLD", raising=False)
    settings.get_app_config.cache_clear()
    try:
        config = settings.get_app_config()
        assert config.mode.active is settings.AppMode.LIVE
        assert config.mode.owner == "Owner1111"
        assert config.mode.config_file == config_path
        assert config.monitor.rebalance_interval_seconds == 15.0
        assert config.monitor.order_interval_seconds == 12.0
        assert config.rebalance.price_deviation_threshold == 12.0
        assert config.rebalance.new_range_width == 20.0
    finally:
        settings.get_app_config.cache_clear()


def test_default_profile_used_without_mode(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "app.toml"
    config_path.write_text(
        """
[default.alerts]
high_fees_threshold = 25.0

[live.alerts]
high_fees_threshold = 50.0
"""
    )
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    monkeypatch.delenv("AUTOPILOT_MODE", raising=False)
    monkeypatch.delenv("ALERTS__HIGH_FEES_THRESHOLD", raising=False)
    settings.get_app_config.cache_clear()
    try:
        config = settings.get_app_config()
        assert config.mode.active is settings.AppMode.DRY_RUN
        assert config.alerts.high_fees_threshold == 25.0
        assert config.alerts.low_apy_threshold == 5.0
    finally:
        settings.get_app_config.cache_clear()


def test_missing_config_file_falls_back_to_defaults(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "absent.toml"))
    monkeypatch.delenv("AUTOPILOT_MODE", raising=False)
    settings.get_app_config.cache_clear()
    try:
        config = settings.get_app_config()
        assert config.monitor.rebalance_interval_seconds == 30.0
        assert config.monitor.recheck_delay_seconds == 1.0
        assert config.orders.limit_trigger_tolerance == 0.005
        assert config.rebalance.history_limit == 50
        assert config.mode.config_file is None
    finally:
        settings.get_app_config.cache_clear()


def test_rebalance_defaults_are_bounded() -> None:
    with pytest.raises(ValidationError):
        settings.RebalanceDefaults(price_deviation_threshold=60.0)
    with pytest.raises(ValidationError):
        settings.RebalanceDefaults(new_range_width=2.0)
    with pytest.raises(ValidationError):
        settings.RebalanceDefaults(min_time_between_rebalances=2_000.0)


def test_notification_config_blank_values_become_none() -> None:
    config = settings.NotificationConfig(telegram_bot_token="  ", telegram_chat_id="", email="")
    assert config.telegram_bot_token is None
    assert config.telegram_chat_id is None
    assert config.email is None
