"""In-memory DLMM venue used for dry runs and tests."""

from __future__ import annotations

import asyncio
import itertools
import json
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from ..datalake.schemas import (
    FeeCollectionResult,
    Pool,
    Position,
    PriceRange,
    RebalanceResult,
    TokenInfo,
    TransactionResult,
)
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import SOL_MINT, utc_now

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
SAROS_MINT = "SarosNETPRPkBhFRh34RPhyE2m6CnHcdVdKhpCXJ3K7Y"


def demo_pools() -> List[Pool]:
    """Two reference pools used by the dry-run loop."""

    sol = TokenInfo(symbol="SOL", mint=SOL_MINT, decimals=9)
    return [
        Pool(
            address="11111111111111111111111111111112",
            token_x=sol,
            token_y=TokenInfo(symbol="USDC", mint=USDC_MINT, decimals=6),
            current_price=245.50,
            tvl=12_500_000,
            volume_24h=2_100_000,
            fees_24h=8_400,
            bin_step=25,
        ),
        Pool(
            address="11111111111111111111111111111113",
            token_x=sol,
            token_y=TokenInfo(symbol="SAROS", mint=SAROS_MINT, decimals=6),
            current_price=0.125,
            tvl=850_000,
            volume_24h=156_000,
            fees_24h=624,
            bin_step=10,
        ),
    ]


class SimulatedChainClient:
    """Chain client that signs and confirms instantly."""

    def __init__(self, address: str = "SimWallet1111111111111111111111111111111111", *, connected: bool = True) -> None:
        self._address = address
        self._connected = connected
        self.sent: List[str] = []

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def address(self) -> Optional[str]:
        return self._address if self._connected else None

    async def connect(self) -> None:
        self._connected = True

    async def disconnect(self) -> None:
        self._connected = False

    async def sign_transaction(self, payload: bytes) -> bytes:
        return payload + b"|signed:" + self._address.encode()

    async def send_transaction(self, signed: bytes) -> str:
        signature = f"sim_tx_{uuid.uuid4().hex[:16]}"
        self.sent.append(signature)
        return signature

    async def confirm(self, signature: str) -> bool:
        return signature in self.sent


class SimulatedPoolService:
    """Pool service that keeps pools and positions in memory.

    Rebalancing closes the position and reopens it around the current price
    under a new id, mirroring how the on-chain program behaves. Fees still
    accrued on the old position are added to the reopened liquidity.
    """

    def __init__(
        self,
        pools: Optional[Iterable[Pool]] = None,
        *,
        chain: Optional[SimulatedChainClient] = None,
        latency_seconds: float = 0.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._pools: Dict[str, Pool] = {pool.address: pool for pool in (pools if pools is not None else demo_pools())}
        self._positions: Dict[str, Position] = {}
        self._chain = chain or SimulatedChainClient()
        self._latency = latency_seconds
        self._clock = clock
        self._ids = itertools.count(1)
        self._failures: Dict[str, Exception] = {}
        self._logger = get_logger(__name__)
        self.calls: List[str] = []

    @property
    def chain(self) -> SimulatedChainClient:
        return self._chain

    @property
    def pools(self) -> List[Pool]:
        return [replace(pool) for pool in self._pools.values()]

    # Test and dry-run controls ------------------------------------------
    def set_price(self, pool_address: str, price: float) -> None:
        pool = self._require_pool(pool_address)
        self._pools[pool_address] = replace(pool, current_price=price)

    def accrue_fees(self, position_id: str, amount: float) -> None:
        position = self._require_position(position_id)
        position.fees_earned += amount
        position.last_updated = self._clock()

    def add_position(self, position: Position) -> None:
        self._require_pool(position.pool_address)
        self._positions[position.id] = position

    def fail_next(self, operation: str, error: Exception) -> None:
        self._failures[operation] = error

    # Reads --------------------------------------------------------------
    async def list_pools(self) -> List[Pool]:
        return [replace(pool) for pool in self._pools.values()]

    async def list_positions(self, owner: Optional[str] = None) -> List[Position]:
        return [replace(position) for position in self._positions.values()]

    # Mutations ----------------------------------------------------------
    async def create_position(
        self,
        pool_address: str,
        lower_price: float,
        upper_price: float,
        token_x_amount: float,
        token_y_amount: float,
    ) -> TransactionResult:
        self._begin("create_position")
        pool = self._require_pool(pool_address)
        signature = await self._submit(
            "create_position",
            {"pool": pool_address, "lower": lower_price, "upper": upper_price},
        )
        position = self._open(pool, PriceRange(lower_price, upper_price), token_x_amount, token_y_amount)
        return TransactionResult(success=True, transaction_id=signature, position_id=position.id)

    async def remove_liquidity(self, position_id: str, percent: float) -> TransactionResult:
        self._begin("remove_liquidity")
        position = self._require_position(position_id)
        signature = await self._submit("remove_liquidity", {"position": position_id, "percent": percent})
        if percent >= 100:
            del self._positions[position_id]
        else:
            keep = 1 - percent / 100
            position.token_x_amount *= keep
            position.token_y_amount *= keep
            position.liquidity *= keep
            position.last_updated = self._clock()
        return TransactionResult(success=True, transaction_id=signature, position_id=position_id)

    async def collect_fees(self, position_id: str) -> FeeCollectionResult:
        self._begin("collect_fees")
        position = self._require_position(position_id)
        signature = await self._submit("collect_fees", {"position": position_id})
        collected = position.fees_earned
        position.fees_earned = 0.0
        position.last_updated = self._clock()
        return FeeCollectionResult(success=True, transaction_id=signature, fees_collected=collected)

    async def rebalance_position(self, position_id: str, new_range_width_percent: float) -> RebalanceResult:
        self._begin("rebalance_position")
        position = self._require_position(position_id)
        pool = self._require_pool(position.pool_address)
        price = pool.current_price
        old_range = position.range
        new_range = PriceRange.centered(price, new_range_width_percent)
        signature = await self._submit(
            "rebalance_position", {"position": position_id, "width": new_range_width_percent}
        )
        value = position.value(price) + position.fees_earned
        del self._positions[position_id]
        reopened = self._open(pool, new_range, value / 2 / price, value / 2)
        return RebalanceResult(
            success=True,
            transaction_id=signature,
            old_range=old_range,
            new_range=new_range,
            new_position_id=reopened.id,
        )

    # Internals ----------------------------------------------------------
    def _begin(self, operation: str) -> None:
        self.calls.append(operation)
        METRICS.increment(f"venue.simulated.{operation}")
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    async def _submit(self, operation: str, payload: Dict[str, object]) -> str:
        if not self._chain.connected:
            raise RuntimeError("Wallet not connected")
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        message = json.dumps({"op": operation, **payload}, sort_keys=True).encode()
        signed = await self._chain.sign_transaction(message)
        signature = await self._chain.send_transaction(signed)
        if not await self._chain.confirm(signature):
            raise RuntimeError(f"Transaction {signature} was not confirmed")
        self._logger.debug("Simulated %s confirmed", operation, extra={"signature": signature})
        return signature

    def _open(self, pool: Pool, price_range: PriceRange, token_x: float, token_y: float) -> Position:
        now = self._clock()
        position_id = f"pos_{next(self._ids)}"
        lower_bin = upper_bin = None
        if pool.bin_step:
            lower_bin = pool.price_to_bin_id(price_range.lower)
            upper_bin = pool.price_to_bin_id(price_range.upper)
        position = Position(
            id=position_id,
            pool_address=pool.address,
            lower_price=price_range.lower,
            upper_price=price_range.upper,
            token_x_amount=token_x,
            token_y_amount=token_y,
            liquidity=token_x * pool.current_price + token_y,
            position_mint=f"mint_{uuid.uuid4().hex[:12]}",
            lower_bin_id=lower_bin,
            upper_bin_id=upper_bin,
            created_at=now,
            last_updated=now,
        )
        self._positions[position_id] = position
        return position

    def _require_pool(self, address: str) -> Pool:
        pool = self._pools.get(address)
        if pool is None:
            raise LookupError(f"Pool not found: {address}")
        return pool

    def _require_position(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise LookupError("Position not found")
        return position


__all__ = ["SimulatedChainClient", "SimulatedPoolService", "demo_pools"]
