import json
import logging

from dlmm_autopilot.config.settings import AppConfig, MonitoringConfig, NotificationConfig
from dlmm_autopilot.monitoring import bootstrap_observability
from dlmm_autopilot.monitoring.logger import (
    StructuredFormatter,
    configure_logging,
    correlation_scope,
    current_correlation_id,
)
from dlmm_autopilot.monitoring.metrics import METRICS
from dlmm_autopilot.monitoring.notifications import NotificationService, RecordingNotifier


def test_prometheus_export_sanitizes_metric_names() -> None:
    METRICS.reset()
    METRICS.increment("rebalance.success")
    METRICS.increment("venue.simulated.create_position", 2)
    METRICS.gauge("automation.positions", 3)
    METRICS.observe("automation.tick_ms", 0.5)
    output = METRICS.export_prometheus()
    lines = [line for line in output.splitlines() if line]
    assert any(line.startswith("# TYPE rebalance_success counter") for line in lines)
    assert "rebalance.success" not in output
    assert any("venue_simulated_create_position 2.0" in line for line in lines)
    assert any("automation_positions" in line for line in lines)
    assert any('automation_tick_ms{quantile="p50"}' in line for line in lines)
    METRICS.reset()


def test_metrics_snapshot_includes_price_mapping() -> None:
    METRICS.reset()
    METRICS.set_mapping("pools.price", {"pool-1": 101.5})
    with METRICS.timer("automation.tick_ms"):
        pass
    snapshot = METRICS.snapshot()
    assert snapshot["mappings"] == {"pools.price": {"pool-1": 101.5}}
    assert snapshot["histograms"]["automation.tick_ms"]["count"] == 1.0
    METRICS.reset()


def test_structured_formatter_carries_correlation_and_extras() -> None:
    record = logging.LogRecord("dlmm", logging.INFO, __file__, 1, "Rebalanced %s", ("pos-1",), None)
    record.correlation_id = "tick-abc"
    record.position_id = "pos-1"
    payload = json.loads(StructuredFormatter().format(record))
    assert payload["message"] == "Rebalanced pos-1"
    assert payload["correlation_id"] == "tick-abc"
    assert payload["extra"] == {"position_id": "pos-1"}


def test_correlation_scope_resets() -> None:
    assert current_correlation_id() == "-"
    with correlation_scope("tick-1"):
        assert current_correlation_id() == "tick-1"
    assert current_correlation_id() == "-"


def test_bootstrap_picks_notifier_from_channels() -> None:
    quiet = bootstrap_observability(AppConfig(notifications=NotificationConfig(throttle_seconds=60)))
    assert isinstance(quiet, RecordingNotifier)

    loud = bootstrap_observability(
        AppConfig(notifications=NotificationConfig(telegram_bot_token="t", telegram_chat_id="1"))
    )
    assert isinstance(loud, NotificationService)
    assert loud.has_channels


def test_configure_logging_applies_level() -> None:
    configure_logging(MonitoringConfig(log_level="WARNING", structured_logs=False), force=True)
    assert logging.getLogger().level == logging.WARNING
    configure_logging(MonitoringConfig(), force=True)
