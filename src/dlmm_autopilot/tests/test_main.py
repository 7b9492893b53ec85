import asyncio

import pytest

from dlmm_autopilot.config.settings import AppConfig, AppMode, ModeConfig, StorageConfig
from dlmm_autopilot.main import build_coordinator, run_backtest, run_loop
from dlmm_autopilot.monitoring.metrics import METRICS


def _config() -> AppConfig:
    return AppConfig(storage=StorageConfig(in_memory=True))


def test_dry_run_loop_executes_requested_ticks() -> None:
    METRICS.reset()
    coordinator = asyncio.run(run_loop(_config(), 0.0, max_ticks=2, seed=11))

    assert coordinator.ticks == 2
    assert METRICS.get("automation.ticks") == 2
    assert METRICS.get("positions.opened") >= 1
    assert len(coordinator.store.get_rebalance_configs()) == 1


def test_live_mode_requires_pool_service() -> None:
    config = AppConfig(mode=ModeConfig(active=AppMode.LIVE), storage=StorageConfig(in_memory=True))

    with pytest.raises(RuntimeError, match="Live mode requires a PoolService"):
        build_coordinator(config)


def test_run_backtest_single_and_compare() -> None:
    single = run_backtest(_config(), None, "static_range", 5, 10_000.0, 3)
    assert len(single) == 1
    assert single[0]["strategy"] == "static_range"
    assert len(single[0]["daily_returns"]) == 5

    compared = run_backtest(_config(), None, None, 5, 10_000.0, 3)
    assert [item["strategy"] for item in compared] == [
        "static_range",
        "dynamic_rebalance",
        "wide_range",
        "narrow_range",
    ]
