"""Limit, stop-loss, take-profit and DCA order monitoring."""

from __future__ import annotations

import random
import string
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from ..config.settings import OrderConfig, get_app_config
from ..datalake.schemas import Order, OrderKind, OrderStatus, Pool, Position, TransactionResult
from ..datalake.storage import AutomationStore
from ..monitoring.logger import correlation_scope, get_logger, new_correlation_id
from ..monitoring.metrics import METRICS
from ..monitoring.notifications import BaseNotifier
from ..utils.constants import utc_now
from ..utils.validation import ensure_valid, validate_order_params, validate_token_amounts
from .rebalance_monitor import PoolsArg, index_pools

CreatePositionAction = Callable[[str, float, float, float, float], Awaitable[TransactionResult]]
RemoveLiquidityAction = Callable[[str, float], Awaitable[TransactionResult]]

_ID_ALPHABET = string.ascii_lowercase + string.digits

ORDER_LABELS = {
    OrderKind.LIMIT: "Limit",
    OrderKind.STOP_LOSS: "Stop-Loss",
    OrderKind.TAKE_PROFIT: "Take-Profit",
    OrderKind.DCA: "DCA",
}


class OrderMonitor:
    """Creates orders and executes the pending ones whose condition is met.

    Orders move ``pending -> executed | cancelled | failed`` and never leave
    a terminal status. Every state change is written back to the store
    immediately so overlapping passes see it.
    """

    def __init__(
        self,
        store: AutomationStore,
        create_position: CreatePositionAction,
        remove_liquidity: RemoveLiquidityAction,
        *,
        notifier: Optional[BaseNotifier] = None,
        config: Optional[OrderConfig] = None,
        clock: Callable[[], datetime] = utc_now,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._create_position = create_position
        self._remove_liquidity = remove_liquidity
        self._notifier = notifier
        self._config = config or get_app_config().orders
        self._clock = clock
        self._rng = rng or random.Random()
        self._logger = get_logger(__name__)

    # Creation -----------------------------------------------------------
    def _new_id(self, kind: OrderKind, now: datetime) -> str:
        suffix = "".join(self._rng.choices(_ID_ALPHABET, k=9))
        return f"{kind.value}_{int(now.timestamp() * 1000)}_{suffix}"

    def _save_new(self, order: Order) -> Order:
        self._store.upsert_order(order)
        METRICS.increment(f"orders.created.{order.kind.value}")
        self._logger.info("Created %s order %s", order.kind.value, order.id, extra={"pool": order.pool_address})
        return order

    def create_limit_order(
        self,
        pool: Pool,
        target_price: float,
        token_x_amount: float,
        token_y_amount: float,
        expires_in_hours: Optional[float] = None,
    ) -> Order:
        ensure_valid(
            validate_order_params(
                OrderKind.LIMIT,
                target_price,
                pool.current_price,
                min_limit_distance=self._config.min_limit_distance,
            )
        )
        ensure_valid(validate_token_amounts(token_x_amount, token_y_amount))
        now = self._clock()
        return self._save_new(
            Order(
                id=self._new_id(OrderKind.LIMIT, now),
                kind=OrderKind.LIMIT,
                pool_address=pool.address,
                target_price=target_price,
                created_at=now,
                token_x_amount=token_x_amount,
                token_y_amount=token_y_amount,
                expires_at=now + timedelta(hours=expires_in_hours) if expires_in_hours else None,
            )
        )

    def _create_exit_order(
        self,
        kind: OrderKind,
        position_id: str,
        target_price: float,
        positions: Iterable[Position],
        pools: PoolsArg,
    ) -> Order:
        position = next((item for item in positions if item.id == position_id), None)
        if position is None:
            raise LookupError("Position not found")
        pool = index_pools(pools).get(position.pool_address)
        if pool is None:
            raise LookupError(f"Pool not found: {position.pool_address}")
        ensure_valid(validate_order_params(kind, target_price, pool.current_price))
        now = self._clock()
        return self._save_new(
            Order(
                id=self._new_id(kind, now),
                kind=kind,
                pool_address=position.pool_address,
                position_id=position_id,
                target_price=target_price,
                created_at=now,
            )
        )

    def create_stop_loss(
        self,
        position_id: str,
        stop_price: float,
        *,
        positions: Iterable[Position],
        pools: PoolsArg,
    ) -> Order:
        return self._create_exit_order(OrderKind.STOP_LOSS, position_id, stop_price, positions, pools)

    def create_take_profit(
        self,
        position_id: str,
        take_profit_price: float,
        *,
        positions: Iterable[Position],
        pools: PoolsArg,
    ) -> Order:
        return self._create_exit_order(OrderKind.TAKE_PROFIT, position_id, take_profit_price, positions, pools)

    def create_dca_order(
        self,
        pool: Pool,
        token_x_amount: float,
        token_y_amount: float,
        interval_hours: Optional[float] = None,
        executions: Optional[int] = None,
    ) -> Order:
        """Split the amounts into equal tranches opened one interval apart."""

        interval_hours = interval_hours if interval_hours is not None else self._config.dca_default_interval_hours
        executions = executions if executions is not None else self._config.dca_default_executions
        if interval_hours <= 0:
            raise ValueError("DCA interval must be greater than 0")
        if executions < 1:
            raise ValueError("DCA order needs at least one execution")
        ensure_valid(validate_token_amounts(token_x_amount, token_y_amount))
        now = self._clock()
        return self._save_new(
            Order(
                id=self._new_id(OrderKind.DCA, now),
                kind=OrderKind.DCA,
                pool_address=pool.address,
                target_price=0.0,
                created_at=now,
                token_x_amount=token_x_amount,
                token_y_amount=token_y_amount,
                interval_seconds=interval_hours * 3600,
                executions_total=executions,
            )
        )

    def cancel_order(self, order_id: str) -> Order:
        order = self._store.get_order(order_id)
        if order is None:
            raise LookupError(f"Order not found: {order_id}")
        if order.is_terminal:
            return order
        if self._store.is_order_in_flight(order_id):
            raise ValueError("Order is currently executing and cannot be cancelled")
        order.status = OrderStatus.CANCELLED
        self._store.upsert_order(order)
        METRICS.increment("orders.cancelled")
        return order

    def pending_orders(self) -> List[Order]:
        return [order for order in self._store.get_orders() if order.status is OrderStatus.PENDING]

    # Monitoring ---------------------------------------------------------
    async def monitor_orders(
        self,
        pools: PoolsArg,
        positions: Optional[Iterable[Position]] = None,
    ) -> List[Order]:
        """Run one evaluation pass and return the orders that changed."""

        pool_index = index_pools(pools)
        position_index: Optional[Dict[str, Position]] = (
            {position.id: position for position in positions} if positions is not None else None
        )
        changed: List[Order] = []
        with correlation_scope(new_correlation_id("orders")):
            for snapshot in self._store.get_orders():
                if snapshot.status is not OrderStatus.PENDING:
                    continue
                updated = await self._evaluate(snapshot.id, pool_index, position_index)
                if updated is not None:
                    changed.append(updated)
        return changed

    async def _evaluate(
        self,
        order_id: str,
        pools: Dict[str, Pool],
        positions: Optional[Dict[str, Position]],
    ) -> Optional[Order]:
        order = self._store.get_order(order_id)
        if order is None or order.status is not OrderStatus.PENDING:
            return None
        if self._store.is_order_in_flight(order.id):
            return None
        if order.position_id and self._store.is_rebalancing(order.position_id):
            return None
        now = self._clock()
        if order.is_expired(now):
            order.status = OrderStatus.CANCELLED
            self._store.upsert_order(order)
            METRICS.increment("orders.expired")
            self._logger.info("Order %s expired", order.id)
            return order
        pool = pools.get(order.pool_address)
        if pool is None:
            return None
        price = pool.current_price
        if not self._is_triggered(order, price, now):
            return None
        return await self._execute(order, price, now, positions)

    def _is_triggered(self, order: Order, price: float, now: datetime) -> bool:
        if order.kind is OrderKind.LIMIT:
            if order.target_price <= 0:
                return False
            return abs(price - order.target_price) / order.target_price < self._config.limit_trigger_tolerance
        if order.kind is OrderKind.STOP_LOSS:
            return price <= order.target_price
        if order.kind is OrderKind.TAKE_PROFIT:
            return price >= order.target_price
        if order.kind is OrderKind.DCA:
            if not order.interval_seconds or not order.executions_total:
                return False
            if order.executions_done >= order.executions_total:
                return False
            anchor = order.last_execution_at or order.created_at
            return now >= anchor + timedelta(seconds=order.interval_seconds)
        return False

    async def _execute(
        self,
        order: Order,
        price: float,
        now: datetime,
        positions: Optional[Dict[str, Position]],
    ) -> Order:
        self._store.set_order_in_flight(order.id, True)
        try:
            try:
                result = await self._dispatch(order, price, positions)
                if not result.success:
                    raise RuntimeError(result.error or "Transaction was not confirmed")
            except Exception as exc:  # noqa: BLE001 - one bad order must not stop the pass
                self._logger.exception("Error executing order %s", order.id)
                order.status = OrderStatus.FAILED
                order.error = str(exc)
                self._store.upsert_order(order)
                METRICS.increment("orders.failed")
                if self._notifier is not None:
                    await self._notifier.notify_error(str(exc), context=f"order {order.id}")
                return order

            order.transaction_id = result.transaction_id
            if order.kind is OrderKind.DCA:
                order.executions_done += 1
                order.last_execution_at = now
                if order.executions_done >= (order.executions_total or 0):
                    order.status = OrderStatus.EXECUTED
                    order.executed_at = now
            else:
                order.status = OrderStatus.EXECUTED
                order.executed_at = now
            self._store.upsert_order(order)
            METRICS.increment(f"orders.executed.{order.kind.value}")
            self._logger.info("Executed %s order %s at %.6f", order.kind.value, order.id, price)
            if self._notifier is not None:
                await self._notifier.notify_order_executed(order.id, ORDER_LABELS[order.kind], price)
            return order
        finally:
            self._store.set_order_in_flight(order.id, False)

    async def _dispatch(
        self,
        order: Order,
        price: float,
        positions: Optional[Dict[str, Position]],
    ) -> TransactionResult:
        band = self._config.limit_range_percent
        if order.kind is OrderKind.LIMIT:
            return await self._create_position(
                order.pool_address,
                order.target_price * (1 - band),
                order.target_price * (1 + band),
                order.token_x_amount or 0.0,
                order.token_y_amount or 0.0,
            )
        if order.kind in (OrderKind.STOP_LOSS, OrderKind.TAKE_PROFIT):
            if not order.position_id:
                raise ValueError(f"Position ID required for {order.kind.value}")
            if positions is not None and order.position_id not in positions:
                raise LookupError("Position not found")
            return await self._remove_liquidity(order.position_id, 100.0)
        if order.kind is OrderKind.DCA:
            tranches = order.executions_total or 1
            return await self._create_position(
                order.pool_address,
                price * (1 - band),
                price * (1 + band),
                (order.token_x_amount or 0.0) / tranches,
                (order.token_y_amount or 0.0) / tranches,
            )
        raise ValueError(f"Unsupported order kind: {order.kind}")


__all__ = ["OrderMonitor", "ORDER_LABELS"]
