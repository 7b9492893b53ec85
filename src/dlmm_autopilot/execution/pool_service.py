"""Interfaces for the external pool-service and chain-client collaborators."""

from __future__ import annotations

from typing import Dict, List, Optional, Protocol

from cachetools import TTLCache

from ..config.settings import MonitorConfig, get_app_config
from ..datalake.schemas import (
    FeeCollectionResult,
    Pool,
    Position,
    RebalanceResult,
    TransactionResult,
)
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS


class PoolService(Protocol):
    """Pool reads and liquidity-mutating transactions on a DLMM venue."""

    async def list_pools(self) -> List[Pool]:
        ...

    async def list_positions(self, owner: Optional[str] = None) -> List[Position]:
        ...

    async def create_position(
        self,
        pool_address: str,
        lower_price: float,
        upper_price: float,
        token_x_amount: float,
        token_y_amount: float,
    ) -> TransactionResult:
        ...

    async def remove_liquidity(self, position_id: str, percent: float) -> TransactionResult:
        ...

    async def collect_fees(self, position_id: str) -> FeeCollectionResult:
        ...

    async def rebalance_position(self, position_id: str, new_range_width_percent: float) -> RebalanceResult:
        ...


class ChainClient(Protocol):
    """Wallet connection, signing and confirmation."""

    @property
    def connected(self) -> bool:
        ...

    @property
    def address(self) -> Optional[str]:
        ...

    async def connect(self) -> None:
        ...

    async def sign_transaction(self, payload: bytes) -> bytes:
        ...

    async def send_transaction(self, signed: bytes) -> str:
        ...

    async def confirm(self, signature: str) -> bool:
        ...


class CachedPoolReader:
    """Short-lived cache over ``PoolService.list_pools``.

    Both monitors read pools on every tick; the cache keeps one snapshot per
    TTL window so overlapping ticks share a single fetch.
    """

    def __init__(self, service: PoolService, config: Optional[MonitorConfig] = None) -> None:
        self._service = service
        self._config = config or get_app_config().monitor
        ttl = max(self._config.pool_cache_ttl_seconds, 0)
        self._cache: Optional[TTLCache] = TTLCache(maxsize=1, ttl=ttl) if ttl > 0 else None
        self._logger = get_logger(__name__)

    @property
    def service(self) -> PoolService:
        return self._service

    async def list_pools(self) -> List[Pool]:
        if self._cache is not None and "pools" in self._cache:
            METRICS.increment("pools.cache_hit")
            return list(self._cache["pools"])
        pools = await self._service.list_pools()
        METRICS.increment("pools.fetched")
        if self._cache is not None:
            self._cache["pools"] = list(pools)
        return list(pools)

    async def pools_by_address(self) -> Dict[str, Pool]:
        return {pool.address: pool for pool in await self.list_pools()}

    async def get_pool(self, address: str) -> Optional[Pool]:
        return (await self.pools_by_address()).get(address)

    def invalidate(self) -> None:
        if self._cache is not None:
            self._cache.clear()


__all__ = ["CachedPoolReader", "ChainClient", "PoolService"]
