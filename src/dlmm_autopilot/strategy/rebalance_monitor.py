"""Auto-rebalance monitor for out-of-range DLMM positions."""

from __future__ import annotations

from datetime import datetime
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from ..config.settings import RebalanceDefaults, get_app_config
from ..datalake.schemas import (
    EMPTY_RANGE,
    AutoRebalanceConfig,
    Pool,
    Position,
    RebalanceEvent,
    RebalanceResult,
)
from ..datalake.storage import AutomationStore
from ..monitoring.logger import correlation_scope, get_logger, new_correlation_id
from ..monitoring.metrics import METRICS
from ..monitoring.notifications import BaseNotifier
from ..utils.constants import utc_now
from ..utils.validation import ensure_valid, validate_rebalance_config

RebalanceAction = Callable[[str, float, bool], Awaitable[RebalanceResult]]
PoolsArg = Union[Mapping[str, Pool], Iterable[Pool]]


def index_pools(pools: PoolsArg) -> Dict[str, Pool]:
    if isinstance(pools, Mapping):
        return dict(pools)
    return {pool.address: pool for pool in pools}


def price_deviation(position: Position, current_price: float) -> float:
    """Distance of ``current_price`` from the range center, in percent."""

    center = position.range.center
    if center <= 0:
        return 0.0
    return abs(current_price - center) / center * 100


class AutoRebalanceMonitor:
    """Decides, per position and per tick, whether to rebalance.

    A position is rebalanced only when it has an enabled config, is not
    already being rebalanced or exiting through an order, is past its
    cooldown, and its pool price is outside the range by at least the
    configured deviation from the range center. Failures are recorded in
    history and never refresh the cooldown. After a rebalance the config and
    pending orders follow the reopened position.
    """

    def __init__(
        self,
        store: AutomationStore,
        rebalance_action: RebalanceAction,
        *,
        notifier: Optional[BaseNotifier] = None,
        defaults: Optional[RebalanceDefaults] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._rebalance = rebalance_action
        self._notifier = notifier
        self._defaults = defaults or get_app_config().rebalance
        self._clock = clock
        self._logger = get_logger(__name__)

    def configure(
        self,
        position_id: str,
        *,
        enabled: bool = True,
        price_deviation_threshold: Optional[float] = None,
        new_range_width: Optional[float] = None,
        min_time_between_rebalances: Optional[float] = None,
        compound_fees: Optional[bool] = None,
    ) -> AutoRebalanceConfig:
        """Create or update the config for ``position_id``.

        Unset values keep the stored value, or the configured defaults for a
        new config. Raises ``ValueError`` when the result is out of bounds.
        """

        existing = self._store.get_rebalance_config(position_id)
        base = existing or AutoRebalanceConfig(
            position_id=position_id,
            price_deviation_threshold=self._defaults.price_deviation_threshold,
            new_range_width=self._defaults.new_range_width,
            min_time_between_rebalances=self._defaults.min_time_between_rebalances,
            compound_fees=self._defaults.compound_fees,
        )
        config = AutoRebalanceConfig(
            position_id=position_id,
            enabled=enabled,
            price_deviation_threshold=(
                price_deviation_threshold
                if price_deviation_threshold is not None
                else base.price_deviation_threshold
            ),
            new_range_width=new_range_width if new_range_width is not None else base.new_range_width,
            min_time_between_rebalances=(
                min_time_between_rebalances
                if min_time_between_rebalances is not None
                else base.min_time_between_rebalances
            ),
            compound_fees=compound_fees if compound_fees is not None else base.compound_fees,
            last_rebalance_time=base.last_rebalance_time,
        )
        ensure_valid(
            validate_rebalance_config(
                config.price_deviation_threshold,
                config.new_range_width,
                config.min_time_between_rebalances,
            )
        )
        self._store.set_rebalance_config(config)
        return config

    def disable(self, position_id: str) -> bool:
        config = self._store.get_rebalance_config(position_id)
        if config is None:
            return False
        config.enabled = False
        self._store.set_rebalance_config(config)
        return True

    def _in_cooldown(self, config: AutoRebalanceConfig, now: datetime) -> bool:
        if config.last_rebalance_time is None:
            return False
        elapsed_minutes = (now - config.last_rebalance_time).total_seconds() / 60
        return elapsed_minutes < config.min_time_between_rebalances

    async def check_and_rebalance(self, positions: Iterable[Position], pools: PoolsArg) -> List[RebalanceEvent]:
        """Evaluate ``positions`` in order and return the events recorded this pass."""

        pool_index = index_pools(pools)
        events: List[RebalanceEvent] = []
        with correlation_scope(new_correlation_id("rebalance")):
            for position in positions:
                event = await self._evaluate(position, pool_index)
                if event is not None:
                    events.append(event)
        return events

    async def _evaluate(self, position: Position, pools: Mapping[str, Pool]) -> Optional[RebalanceEvent]:
        config = self._store.get_rebalance_config(position.id)
        if config is None or not config.enabled:
            await self._warn_if_out_of_range(position, pools)
            return None
        if self._store.is_rebalancing(position.id) or self._store.has_order_in_flight(position.id):
            return None
        now = self._clock()
        if self._in_cooldown(config, now):
            return None
        pool = pools.get(position.pool_address)
        if pool is None:
            return None
        price = pool.current_price
        if position.is_in_range(price):
            return None
        deviation = price_deviation(position, price)
        if deviation < config.price_deviation_threshold:
            await self._warn_if_out_of_range(position, pools)
            return None
        return await self._execute(position, config, deviation, now)

    async def _execute(
        self,
        position: Position,
        config: AutoRebalanceConfig,
        deviation: float,
        now: datetime,
    ) -> RebalanceEvent:
        event_id = f"rebalance_{position.id}_{int(now.timestamp() * 1000)}"
        METRICS.increment("rebalance.triggered")
        self._logger.info(
            "Auto-rebalancing position %s - price deviation: %.2f%%",
            position.id,
            deviation,
            extra={"position_id": position.id, "deviation": deviation},
        )
        self._store.set_rebalancing(position.id, True)
        try:
            try:
                result = await self._rebalance(position.id, config.new_range_width, config.compound_fees)
                if not result.success:
                    raise RuntimeError(result.error or "Rebalance was not confirmed")
            except Exception as exc:  # noqa: BLE001 - recorded as a failed event
                self._logger.exception("Failed to rebalance position %s", position.id)
                event = RebalanceEvent(
                    id=event_id,
                    position_id=position.id,
                    timestamp=now,
                    old_range=position.range,
                    new_range=EMPTY_RANGE,
                    transaction_id="",
                    success=False,
                )
                self._store.add_rebalance_event(event)
                METRICS.increment("rebalance.failed")
                if self._notifier is not None:
                    await self._notifier.notify_error(str(exc), context=f"rebalance {position.id}")
                return event

            event = RebalanceEvent(
                id=event_id,
                position_id=position.id,
                timestamp=now,
                old_range=result.old_range,
                new_range=result.new_range,
                transaction_id=result.transaction_id,
                success=True,
            )
            self._store.add_rebalance_event(event)
            if result.new_position_id and result.new_position_id != position.id:
                self._store.move_rebalance_config(position.id, result.new_position_id)
                self._store.relink_orders(position.id, result.new_position_id)
            METRICS.increment("rebalance.success")
            self._logger.info("Successfully rebalanced position %s", position.id)
            if self._notifier is not None:
                await self._notifier.notify_rebalance_executed(position.id, result.old_range, result.new_range)
            return event
        finally:
            self._store.set_rebalancing(position.id, False)

    async def _warn_if_out_of_range(self, position: Position, pools: Mapping[str, Pool]) -> None:
        if self._notifier is None:
            return
        pool = pools.get(position.pool_address)
        if pool is None or position.is_in_range(pool.current_price):
            return
        await self._notifier.notify_position_out_of_range(position.id, pool.current_price)


__all__ = ["AutoRebalanceMonitor", "RebalanceAction", "index_pools", "price_deviation"]
