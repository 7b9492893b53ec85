"""Entrypoint for the DLMM automation engine."""

from __future__ import annotations

import argparse
import asyncio
import json
import random
from datetime import timedelta
from typing import List, Optional

from .config.settings import AppConfig, AppMode, get_app_config
from .datalake.schemas import BacktestConfig, BacktestStrategy
from .datalake.storage import AutomationStore, build_key_value_store
from .execution.pool_service import PoolService
from .execution.simulated import SimulatedPoolService
from .monitoring import bootstrap_observability
from .monitoring.logger import configure_logging, get_logger
from .monitoring.metrics import METRICS
from .monitoring.notifications import BaseNotifier
from .strategy.backtester import Backtester
from .strategy.manager import AutomationCoordinator
from .strategy.scheduler import Scheduler
from .utils.constants import utc_now

logger = get_logger(__name__)


def build_store(config: AppConfig) -> AutomationStore:
    return AutomationStore(
        build_key_value_store(config.storage),
        history_limit=config.rebalance.history_limit,
    )


def build_coordinator(
    config: AppConfig,
    *,
    service: Optional[PoolService] = None,
    scheduler: Optional[Scheduler] = None,
    notifier: Optional[BaseNotifier] = None,
) -> AutomationCoordinator:
    """Wire the store, notifier and monitors around ``service``.

    Only the simulated venue ships with the engine; live mode needs a
    ``PoolService`` backed by a real DLMM program client.
    """

    if service is None:
        if config.mode.active is AppMode.LIVE:
            raise RuntimeError("Live mode requires a PoolService implementation for the target venue")
        service = SimulatedPoolService()
    return AutomationCoordinator(
        service,
        build_store(config),
        scheduler=scheduler,
        notifier=notifier or bootstrap_observability(config),
        config=config,
    )


def _walk_prices(service: SimulatedPoolService, rng: random.Random, volatility: float) -> None:
    for pool in service.pools:
        step = (rng.random() - 0.5) * 2 * volatility
        service.set_price(pool.address, pool.current_price * (1 + step))


async def _seed_demo_position(coordinator: AutomationCoordinator, service: SimulatedPoolService) -> None:
    pool = service.pools[0]
    price = pool.current_price
    result = await coordinator.positions.open_position(pool.address, price * 0.95, price * 1.05, 1.0, price)
    if result.position_id:
        coordinator.rebalance_monitor.configure(result.position_id, enabled=True)
        logger.info("Opened demo position %s on %s", result.position_id, pool.name)


async def run_loop(
    config: AppConfig,
    interval_seconds: float,
    max_ticks: Optional[int] = None,
    seed: Optional[int] = None,
) -> AutomationCoordinator:
    """Dry-run loop: move simulated prices, then run one full monitor pass."""

    service = SimulatedPoolService()
    coordinator = build_coordinator(config, service=service)
    rng = random.Random(seed)
    await _seed_demo_position(coordinator, service)
    passes = 0
    while max_ticks is None or passes < max_ticks:
        passes += 1
        _walk_prices(service, rng, config.simulation.volatility)
        coordinator.pools.invalidate()
        try:
            await coordinator.tick()
        except Exception as exc:  # noqa: BLE001
            logger.exception("Tick %d failed: %s", passes, exc)
            METRICS.increment("automation.tick_errors")
        if max_ticks is not None and passes >= max_ticks:
            break
        await asyncio.sleep(max(interval_seconds, 0.0))
    logger.info(
        "Dry run finished after %d ticks: %d rebalances, %d orders executed",
        passes,
        int(METRICS.get("rebalance.success")),
        len([order for order in coordinator.store.get_orders() if order.executed_at is not None]),
    )
    return coordinator


def run_backtest(
    config: AppConfig,
    pool_address: Optional[str],
    strategy: Optional[str],
    days: int,
    capital: float,
    seed: Optional[int],
) -> List[dict]:
    pools = SimulatedPoolService().pools
    address = pool_address or pools[0].address
    backtester = Backtester(pools, rng=random.Random(seed), config=config.simulation)
    end = utc_now()
    start = end - timedelta(days=days)
    if strategy is None:
        results = backtester.compare_strategies(address, capital, start, end)
    else:
        results = [
            backtester.run_backtest(
                BacktestConfig(
                    strategy=BacktestStrategy(strategy),
                    pool_address=address,
                    initial_capital=capital,
                    start_date=start,
                    end_date=end,
                )
            )
        ]
    return [result.to_dict() for result in results]


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Run the DLMM position automation engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the monitors against the simulated venue")
    run_parser.add_argument(
        "--interval",
        type=float,
        default=None,
        help="Seconds between monitor passes (default: monitor.rebalance_interval_seconds)",
    )
    run_parser.add_argument(
        "--max-ticks",
        type=int,
        default=None,
        help="Optional limit to the number of monitor passes to execute.",
    )
    run_parser.add_argument("--seed", type=int, default=None, help="Seed for the simulated price walk")

    backtest_parser = subparsers.add_parser("backtest", help="Backtest one strategy or compare all of them")
    backtest_parser.add_argument("--pool", default=None, help="Pool address (default: first demo pool)")
    backtest_parser.add_argument(
        "--strategy",
        choices=[strategy.value for strategy in BacktestStrategy],
        default=None,
        help="Strategy to run; omit to compare every strategy",
    )
    backtest_parser.add_argument("--days", type=int, default=30)
    backtest_parser.add_argument("--capital", type=float, default=10_000.0)
    backtest_parser.add_argument("--seed", type=int, default=None)

    args = parser.parse_args(argv)
    config = get_app_config()

    if args.command == "run":
        interval = args.interval if args.interval is not None else config.monitor.rebalance_interval_seconds
        asyncio.run(run_loop(config, interval, args.max_ticks, args.seed))
    else:
        configure_logging(config.monitoring, force=True)
        results = run_backtest(config, args.pool, args.strategy, args.days, args.capital, args.seed)
        print(json.dumps(results, indent=2))


if __name__ == "__main__":
    main()
