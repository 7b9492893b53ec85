"""Shared control API state and data access helpers."""

from __future__ import annotations

import random
from typing import Any, Dict, List, Optional

from ..analytics.pnl import portfolio_analytics
from ..config.settings import AppConfig
from ..datalake.schemas import BacktestConfig, Order, RebalanceEvent
from ..datalake.storage import AutomationStore
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS, MetricsRegistry
from ..strategy.backtester import Backtester
from ..strategy.manager import AutomationCoordinator
from ..utils.constants import utc_now
from .models import (
    BacktestRequest,
    CollectFeesRequest,
    CompareRequest,
    DcaOrderRequest,
    ExitOrderRequest,
    LimitOrderRequest,
    ManualRebalanceRequest,
    OpenPositionRequest,
    PriceAlertRequest,
    RebalanceConfigRequest,
    RemoveLiquidityRequest,
)
from .utils import to_serializable


class DashboardState:
    """Lightweight wrapper around the coordinator, its store and the metrics registry."""

    def __init__(
        self,
        *,
        config: AppConfig,
        coordinator: AutomationCoordinator,
        metrics: MetricsRegistry = METRICS,
        autostart: bool = False,
    ) -> None:
        self.config = config
        self.coordinator = coordinator
        self.metrics = metrics
        self.autostart = autostart
        self._logger = get_logger(__name__)

    @property
    def store(self) -> AutomationStore:
        return self.coordinator.store

    def metrics_snapshot(self) -> Dict[str, object]:
        return {
            "metrics": self.metrics.snapshot(),
            "mode": self.config.mode.active.value,
            "running": self.coordinator.running,
            "ticks": self.coordinator.ticks,
        }

    # Rebalance ----------------------------------------------------------
    def rebalance_configs(self) -> List[Dict[str, Any]]:
        return [to_serializable(config) for config in self.store.get_rebalance_configs().values()]

    def configure_rebalance(self, position_id: str, request: RebalanceConfigRequest) -> Dict[str, Any]:
        config = self.coordinator.rebalance_monitor.configure(
            position_id,
            enabled=request.enabled,
            price_deviation_threshold=request.price_deviation_threshold,
            new_range_width=request.new_range_width,
            min_time_between_rebalances=request.min_time_between_rebalances,
            compound_fees=request.compound_fees,
        )
        self._poke()
        return to_serializable(config)

    def remove_rebalance_config(self, position_id: str) -> bool:
        return self.store.remove_rebalance_config(position_id)

    def rebalance_history(self, position_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return [to_serializable(event) for event in self.store.get_rebalance_history(position_id)[:limit]]

    # Orders -------------------------------------------------------------
    def orders(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            to_serializable(order)
            for order in self.store.get_orders()
            if status is None or order.status.value == status
        ]

    async def _pool(self, pool_address: str):
        pool = await self.coordinator.pools.get_pool(pool_address)
        if pool is None:
            raise LookupError(f"Pool not found: {pool_address}")
        return pool

    def _poke(self) -> None:
        if self.coordinator.running:
            self.coordinator.request_check()

    def _created(self, order: Order) -> Dict[str, Any]:
        self._poke()
        return to_serializable(order)

    async def create_limit_order(self, request: LimitOrderRequest) -> Dict[str, Any]:
        pool = await self._pool(request.pool_address)
        order = self.coordinator.order_monitor.create_limit_order(
            pool,
            request.target_price,
            request.token_x_amount,
            request.token_y_amount,
            expires_in_hours=request.expires_in_hours,
        )
        return self._created(order)

    async def create_stop_loss(self, request: ExitOrderRequest) -> Dict[str, Any]:
        pools, positions = await self.coordinator.read_state()
        order = self.coordinator.order_monitor.create_stop_loss(
            request.position_id, request.target_price, positions=positions, pools=pools
        )
        return self._created(order)

    async def create_take_profit(self, request: ExitOrderRequest) -> Dict[str, Any]:
        pools, positions = await self.coordinator.read_state()
        order = self.coordinator.order_monitor.create_take_profit(
            request.position_id, request.target_price, positions=positions, pools=pools
        )
        return self._created(order)

    async def create_dca_order(self, request: DcaOrderRequest) -> Dict[str, Any]:
        pool = await self._pool(request.pool_address)
        order = self.coordinator.order_monitor.create_dca_order(
            pool,
            request.token_x_amount,
            request.token_y_amount,
            interval_hours=request.interval_hours,
            executions=request.executions,
        )
        return self._created(order)

    def cancel_order(self, order_id: str) -> Dict[str, Any]:
        return to_serializable(self.coordinator.order_monitor.cancel_order(order_id))

    # Positions and alerts -----------------------------------------------
    def _changed(self, result: Any) -> Dict[str, Any]:
        self.coordinator.pools.invalidate()
        self._poke()
        return to_serializable(result)

    async def open_position(self, request: OpenPositionRequest) -> Dict[str, Any]:
        result = await self.coordinator.positions.open_position(
            request.pool_address,
            request.lower_price,
            request.upper_price,
            request.token_x_amount,
            request.token_y_amount,
            expected_price=request.expected_price,
        )
        return self._changed(result)

    async def remove_liquidity(self, position_id: str, request: RemoveLiquidityRequest) -> Dict[str, Any]:
        result = await self.coordinator.positions.remove_liquidity(position_id, request.percent)
        return self._changed(result)

    async def collect_fees(self, position_id: str, request: CollectFeesRequest) -> Dict[str, Any]:
        result = await self.coordinator.positions.collect_fees(position_id, force=request.force)
        return self._changed(result)

    async def rebalance_position(self, position_id: str, request: ManualRebalanceRequest) -> Dict[str, Any]:
        """Rebalance now, outside the monitor's threshold and cooldown checks.

        The position's rebalance config and pending exit orders move to the
        reopened position, the same as after an automatic rebalance.
        """

        store = self.store
        if store.is_rebalancing(position_id) or store.has_order_in_flight(position_id):
            raise ValueError("Position is busy with another rebalance or order")
        config = store.get_rebalance_config(position_id)
        defaults = self.config.rebalance
        width = request.range_width or (config.new_range_width if config else defaults.new_range_width)
        compound = request.compound_fees
        if compound is None:
            compound = config.compound_fees if config else defaults.compound_fees
        store.set_rebalancing(position_id, True)
        try:
            result = await self.coordinator.positions.rebalance(position_id, width, compound)
        finally:
            store.set_rebalancing(position_id, False)
        if result.success:
            now = utc_now()
            store.add_rebalance_event(
                RebalanceEvent(
                    id=f"rebalance_{position_id}_{int(now.timestamp() * 1000)}",
                    position_id=position_id,
                    timestamp=now,
                    old_range=result.old_range,
                    new_range=result.new_range,
                    transaction_id=result.transaction_id,
                    success=True,
                )
            )
            if result.new_position_id and result.new_position_id != position_id:
                store.move_rebalance_config(position_id, result.new_position_id)
                store.relink_orders(position_id, result.new_position_id)
            self._logger.info("Manually rebalanced position %s", position_id)
        return self._changed(result)

    async def portfolio(self) -> Dict[str, Any]:
        pools, positions = await self.coordinator.read_state()
        summary = portfolio_analytics(
            positions,
            {pool.address: pool for pool in pools},
            self.store.list_entry_snapshots(),
            now=utc_now(),
        )
        return {
            "summary": to_serializable(summary),
            "positions": [to_serializable(position) for position in positions],
        }

    async def position_alerts(self) -> List[Dict[str, Any]]:
        pools, positions = await self.coordinator.read_state()
        return [to_serializable(alert) for alert in self.coordinator.alerts.evaluate(positions, pools)]

    def price_alerts(self) -> List[Dict[str, Any]]:
        return [to_serializable(alert) for alert in self.coordinator.alerts.list_price_alerts()]

    async def add_price_alert(self, request: PriceAlertRequest) -> Dict[str, Any]:
        pool = await self._pool(request.pool_address)
        alert = self.coordinator.alerts.add_price_alert(pool.address, request.target_price, pool.current_price)
        return to_serializable(alert)

    def remove_price_alert(self, alert_id: str) -> bool:
        return self.coordinator.alerts.remove_price_alert(alert_id)

    # Backtests ----------------------------------------------------------
    async def _backtester(self, seed: Optional[int]) -> Backtester:
        pools = await self.coordinator.pools.list_pools()
        rng = random.Random(seed) if seed is not None else None
        return Backtester(pools, rng=rng, config=self.config.simulation)

    async def backtest(self, request: BacktestRequest) -> Dict[str, Any]:
        backtester = await self._backtester(request.seed)
        result = backtester.run_backtest(
            BacktestConfig(
                strategy=request.strategy,
                pool_address=request.pool_address,
                initial_capital=request.initial_capital,
                start_date=request.start_date,
                end_date=request.end_date,
                range_width=request.range_width,
                rebalance_threshold=request.rebalance_threshold,
                fee_percentage=request.fee_percentage,
            )
        )
        return to_serializable(result)

    async def compare_strategies(self, request: CompareRequest) -> List[Dict[str, Any]]:
        backtester = await self._backtester(request.seed)
        results = backtester.compare_strategies(
            request.pool_address,
            request.initial_capital,
            request.start_date,
            request.end_date,
        )
        return [to_serializable(result) for result in results]


__all__ = ["DashboardState"]
