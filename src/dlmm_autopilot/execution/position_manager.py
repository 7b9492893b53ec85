"""Validated liquidity operations on top of the pool service."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from ..config.settings import ValidationConfig, get_app_config
from ..datalake.schemas import (
    FeeCollectionResult,
    Pool,
    Position,
    PositionEntrySnapshot,
    RebalanceResult,
    TransactionResult,
)
from ..datalake.storage import AutomationStore
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import NATIVE_SYMBOL, utc_now
from ..utils.validation import (
    GasOperation,
    ensure_valid,
    estimate_gas_cost,
    is_transaction_economical,
    validate_price_range,
    validate_slippage,
    validate_token_amounts,
)
from .pool_service import CachedPoolReader, PoolService


class PositionManager:
    """Runs every mutating call through validation and keeps entry snapshots current.

    Validation failures raise ``ValueError`` before the pool service is
    touched. Unknown pools or positions raise ``LookupError``.
    """

    def __init__(
        self,
        service: PoolService,
        store: AutomationStore,
        *,
        pools: Optional[CachedPoolReader] = None,
        config: Optional[ValidationConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._service = service
        self._store = store
        self._pools = pools or CachedPoolReader(service)
        self._config = config or get_app_config().validation
        self._clock = clock
        self._logger = get_logger(__name__)

    async def _pool(self, address: str) -> Pool:
        pool = await self._pools.get_pool(address)
        if pool is None:
            raise LookupError(f"Pool not found: {address}")
        return pool

    async def _position(self, position_id: str) -> Position:
        for position in await self._service.list_positions():
            if position.id == position_id:
                return position
        raise LookupError("Position not found")

    def _record_entry(self, position_id: str, price: float, token_x: float, token_y: float) -> None:
        self._store.set_entry_snapshot(
            PositionEntrySnapshot(
                position_id=position_id,
                entry_price=price,
                token_x_amount=token_x,
                token_y_amount=token_y,
                timestamp=self._clock(),
                initial_value_usd=token_x * price + token_y,
            )
        )

    async def open_position(
        self,
        pool_address: str,
        lower_price: float,
        upper_price: float,
        token_x_amount: float,
        token_y_amount: float,
        *,
        expected_price: Optional[float] = None,
    ) -> TransactionResult:
        """Open a position; ``expected_price`` bounds slippage against the pool price."""

        pool = await self._pool(pool_address)
        if expected_price is not None:
            ensure_valid(
                validate_slippage(expected_price, pool.current_price, self._config.max_slippage_percent)
            )
        ensure_valid(validate_price_range(lower_price, upper_price, pool.current_price))
        ensure_valid(
            validate_token_amounts(
                token_x_amount,
                token_y_amount,
                self._config.min_token_amount,
                self._config.max_token_amount,
            )
        )
        result = await self._service.create_position(
            pool_address, lower_price, upper_price, token_x_amount, token_y_amount
        )
        if result.success and result.position_id:
            self._record_entry(result.position_id, pool.current_price, token_x_amount, token_y_amount)
            METRICS.increment("positions.opened")
        return result

    async def remove_liquidity(self, position_id: str, percent: float = 100.0) -> TransactionResult:
        if percent <= 0 or percent > 100:
            raise ValueError("Removal percent must be between 0 and 100")
        result = await self._service.remove_liquidity(position_id, percent)
        if result.success and percent >= 100:
            self._store.delete_entry_snapshot(position_id)
            self._store.remove_rebalance_config(position_id)
            METRICS.increment("positions.closed")
        return result

    async def collect_fees(self, position_id: str, *, force: bool = False) -> FeeCollectionResult:
        """Claim accrued fees unless the claim would cost more than it earns."""

        position = await self._position(position_id)
        if not force:
            pool = await self._pool(position.pool_address)
            native_price = pool.current_price if pool.token_x.symbol == NATIVE_SYMBOL else 1.0
            gas_cost = estimate_gas_cost(GasOperation.COLLECT_FEES) * native_price
            ensure_valid(
                is_transaction_economical(
                    position.fees_earned, gas_cost, self._config.min_profit_multiplier
                )
            )
        result = await self._service.collect_fees(position_id)
        if result.success:
            METRICS.increment("positions.fees_collected", result.fees_collected)
        return result

    async def rebalance(
        self,
        position_id: str,
        new_range_width_percent: float,
        compound_fees: bool = True,
    ) -> RebalanceResult:
        """Close-and-reopen ``position_id`` around the current price.

        With ``compound_fees`` the accrued fees go into the reopened position;
        otherwise they are claimed first and only the principal is moved.
        """

        position = await self._position(position_id)
        pool = await self._pool(position.pool_address)
        compounded = position.fees_earned
        if not compound_fees and position.fees_earned > 0:
            claimed = await self._service.collect_fees(position_id)
            if not claimed.success:
                raise RuntimeError(claimed.error or "Fee collection before rebalance failed")
            METRICS.increment("positions.fees_collected", claimed.fees_collected)
            compounded = 0.0
        result = await self._service.rebalance_position(position_id, new_range_width_percent)
        if not result.success:
            return result
        self._store.delete_entry_snapshot(position_id)
        if result.new_position_id:
            price = pool.current_price
            value = position.value(price) + compounded
            self._record_entry(result.new_position_id, price, value / 2 / price, value / 2)
        self._pools.invalidate()
        return result


__all__ = ["PositionManager"]
