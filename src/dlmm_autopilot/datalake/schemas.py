"""Data models shared by the monitors, the backtester and the store."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.constants import BIN_STEP_DENOMINATOR


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


@dataclass(slots=True)
class TokenInfo:
    """One side of a pool."""

    symbol: str
    mint: str
    decimals: int = 9

    def to_dict(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "mint": self.mint, "decimals": self.decimals}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TokenInfo":
        return cls(
            symbol=str(payload["symbol"]),
            mint=str(payload["mint"]),
            decimals=int(payload.get("decimals", 9)),
        )


@dataclass(slots=True)
class Pool:
    """Snapshot of a DLMM pool as returned by the pool service.

    ``current_price`` is quoted in token Y per token X. When ``bin_step`` is
    known the pool can translate between prices and bin ids using
    ``price = (1 + bin_step / 10000) ** bin_id``.
    """

    address: str
    token_x: TokenInfo
    token_y: TokenInfo
    current_price: float
    tvl: float = 0.0
    volume_24h: float = 0.0
    fees_24h: float = 0.0
    apr: float = 0.0
    bin_step: Optional[int] = None
    active_bin: Optional[int] = None

    @property
    def name(self) -> str:
        return f"{self.token_x.symbol}/{self.token_y.symbol}"

    def _bin_base(self) -> float:
        if not self.bin_step:
            raise ValueError(f"Pool {self.address} has no bin step")
        return 1.0 + self.bin_step / BIN_STEP_DENOMINATOR

    def bin_id_to_price(self, bin_id: int) -> float:
        return self._bin_base() ** bin_id

    def price_to_bin_id(self, price: float) -> int:
        if price <= 0:
            raise ValueError("Price must be positive to map onto a bin")
        return math.floor(math.log(price) / math.log(self._bin_base()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "token_x": self.token_x.to_dict(),
            "token_y": self.token_y.to_dict(),
            "current_price": self.current_price,
            "tvl": self.tvl,
            "volume_24h": self.volume_24h,
            "fees_24h": self.fees_24h,
            "apr": self.apr,
            "bin_step": self.bin_step,
            "active_bin": self.active_bin,
        }


@dataclass(slots=True, frozen=True)
class PriceRange:
    """Closed price interval ``[lower, upper]``."""

    lower: float
    upper: float

    @property
    def center(self) -> float:
        return (self.lower + self.upper) / 2

    @property
    def width_percent(self) -> float:
        center = self.center
        if center <= 0:
            return 0.0
        return (self.upper - self.lower) / center * 100

    def contains(self, price: float) -> bool:
        return self.lower <= price <= self.upper

    @classmethod
    def centered(cls, price: float, width_percent: float) -> "PriceRange":
        half = width_percent / 100 / 2
        return cls(lower=price * (1 - half), upper=price * (1 + half))

    def to_dict(self) -> Dict[str, float]:
        return {"lower": self.lower, "upper": self.upper}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PriceRange":
        return cls(lower=float(payload.get("lower", 0.0)), upper=float(payload.get("upper", 0.0)))


EMPTY_RANGE = PriceRange(0.0, 0.0)


@dataclass(slots=True)
class Position:
    """Liquidity position owned by the connected wallet."""

    id: str
    pool_address: str
    lower_price: float
    upper_price: float
    token_x_amount: float = 0.0
    token_y_amount: float = 0.0
    liquidity: float = 0.0
    fees_earned: float = 0.0
    pnl: float = 0.0
    apy: float = 0.0
    position_mint: Optional[str] = None
    lower_bin_id: Optional[int] = None
    upper_bin_id: Optional[int] = None
    created_at: Optional[datetime] = None
    last_updated: Optional[datetime] = None

    @property
    def range(self) -> PriceRange:
        return PriceRange(self.lower_price, self.upper_price)

    def is_in_range(self, price: float) -> bool:
        return not (price < self.lower_price or price > self.upper_price)

    def value(self, price: float) -> float:
        return self.token_x_amount * price + self.token_y_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pool_address": self.pool_address,
            "lower_price": self.lower_price,
            "upper_price": self.upper_price,
            "token_x_amount": self.token_x_amount,
            "token_y_amount": self.token_y_amount,
            "liquidity": self.liquidity,
            "fees_earned": self.fees_earned,
            "pnl": self.pnl,
            "apy": self.apy,
            "position_mint": self.position_mint,
            "lower_bin_id": self.lower_bin_id,
            "upper_bin_id": self.upper_bin_id,
            "created_at": _to_iso(self.created_at),
            "last_updated": _to_iso(self.last_updated),
        }


@dataclass(slots=True)
class PositionEntrySnapshot:
    """Entry state recorded when a position is opened, used for P&L."""

    position_id: str
    entry_price: float
    token_x_amount: float
    token_y_amount: float
    timestamp: datetime
    initial_value_usd: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "entry_price": self.entry_price,
            "token_x_amount": self.token_x_amount,
            "token_y_amount": self.token_y_amount,
            "timestamp": _to_iso(self.timestamp),
            "initial_value_usd": self.initial_value_usd,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PositionEntrySnapshot":
        timestamp = _from_iso(payload["timestamp"])
        if timestamp is None:
            raise ValueError("Entry snapshot is missing a timestamp")
        return cls(
            position_id=str(payload["position_id"]),
            entry_price=float(payload["entry_price"]),
            token_x_amount=float(payload.get("token_x_amount", 0.0)),
            token_y_amount=float(payload.get("token_y_amount", 0.0)),
            timestamp=timestamp,
            initial_value_usd=float(payload.get("initial_value_usd", 0.0)),
        )


@dataclass(slots=True)
class AutoRebalanceConfig:
    """Per-position auto-rebalance settings.

    ``price_deviation_threshold`` and ``new_range_width`` are percentages,
    ``min_time_between_rebalances`` is in minutes. With ``compound_fees`` the
    accrued fees are reinvested into the reopened position; without it they
    are claimed before the rebalance.
    """

    position_id: str
    enabled: bool = True
    price_deviation_threshold: float = 10.0
    new_range_width: float = 20.0
    min_time_between_rebalances: float = 60.0
    compound_fees: bool = True
    last_rebalance_time: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "enabled": self.enabled,
            "price_deviation_threshold": self.price_deviation_threshold,
            "new_range_width": self.new_range_width,
            "min_time_between_rebalances": self.min_time_between_rebalances,
            "compound_fees": self.compound_fees,
            "last_rebalance_time": _to_iso(self.last_rebalance_time),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "AutoRebalanceConfig":
        return cls(
            position_id=str(payload["position_id"]),
            enabled=bool(payload.get("enabled", True)),
            price_deviation_threshold=float(payload.get("price_deviation_threshold", 10.0)),
            new_range_width=float(payload.get("new_range_width", 20.0)),
            min_time_between_rebalances=float(payload.get("min_time_between_rebalances", 60.0)),
            compound_fees=bool(payload.get("compound_fees", True)),
            last_rebalance_time=_from_iso(payload.get("last_rebalance_time")),
        )


@dataclass(slots=True, frozen=True)
class RebalanceEvent:
    """Audit record for one rebalance attempt."""

    id: str
    position_id: str
    timestamp: datetime
    old_range: PriceRange
    new_range: PriceRange
    transaction_id: str
    success: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "position_id": self.position_id,
            "timestamp": _to_iso(self.timestamp),
            "old_range": self.old_range.to_dict(),
            "new_range": self.new_range.to_dict(),
            "transaction_id": self.transaction_id,
            "success": self.success,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "RebalanceEvent":
        timestamp = _from_iso(payload["timestamp"])
        if timestamp is None:
            raise ValueError("Rebalance event is missing a timestamp")
        return cls(
            id=str(payload["id"]),
            position_id=str(payload["position_id"]),
            timestamp=timestamp,
            old_range=PriceRange.from_dict(payload.get("old_range") or {}),
            new_range=PriceRange.from_dict(payload.get("new_range") or {}),
            transaction_id=str(payload.get("transaction_id") or ""),
            success=bool(payload.get("success", False)),
        )


class OrderKind(str, Enum):
    LIMIT = "limit"
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    DCA = "dca"


class OrderStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.EXECUTED, OrderStatus.CANCELLED, OrderStatus.FAILED}
)


@dataclass(slots=True)
class Order:
    """Pending or completed automated order.

    DCA orders carry a tranche schedule: ``interval_seconds`` between
    tranches, ``executions_total`` tranches overall and ``executions_done``
    completed so far.
    """

    id: str
    kind: OrderKind
    pool_address: str
    target_price: float
    created_at: datetime
    position_id: Optional[str] = None
    token_x_amount: Optional[float] = None
    token_y_amount: Optional[float] = None
    status: OrderStatus = OrderStatus.PENDING
    executed_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    interval_seconds: Optional[float] = None
    executions_total: Optional[int] = None
    executions_done: int = 0
    last_execution_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "pool_address": self.pool_address,
            "target_price": self.target_price,
            "created_at": _to_iso(self.created_at),
            "position_id": self.position_id,
            "token_x_amount": self.token_x_amount,
            "token_y_amount": self.token_y_amount,
            "status": self.status.value,
            "executed_at": _to_iso(self.executed_at),
            "expires_at": _to_iso(self.expires_at),
            "transaction_id": self.transaction_id,
            "error": self.error,
            "interval_seconds": self.interval_seconds,
            "executions_total": self.executions_total,
            "executions_done": self.executions_done,
            "last_execution_at": _to_iso(self.last_execution_at),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Order":
        created_at = _from_iso(payload["created_at"])
        if created_at is None:
            raise ValueError("Order is missing a creation timestamp")
        executions_total = payload.get("executions_total")
        return cls(
            id=str(payload["id"]),
            kind=OrderKind(payload["kind"]),
            pool_address=str(payload["pool_address"]),
            target_price=float(payload.get("target_price", 0.0)),
            created_at=created_at,
            position_id=payload.get("position_id"),
            token_x_amount=_optional_float(payload.get("token_x_amount")),
            token_y_amount=_optional_float(payload.get("token_y_amount")),
            status=OrderStatus(payload.get("status", OrderStatus.PENDING.value)),
            executed_at=_from_iso(payload.get("executed_at")),
            expires_at=_from_iso(payload.get("expires_at")),
            transaction_id=payload.get("transaction_id"),
            error=payload.get("error"),
            interval_seconds=_optional_float(payload.get("interval_seconds")),
            executions_total=int(executions_total) if executions_total is not None else None,
            executions_done=int(payload.get("executions_done", 0)),
            last_execution_at=_from_iso(payload.get("last_execution_at")),
        )


class BacktestStrategy(str, Enum):
    STATIC_RANGE = "static_range"
    DYNAMIC_REBALANCE = "dynamic_rebalance"
    WIDE_RANGE = "wide_range"
    NARROW_RANGE = "narrow_range"


@dataclass(slots=True)
class BacktestConfig:
    """Inputs for a single backtest run.

    ``range_width``, ``rebalance_threshold`` and ``fee_percentage`` are
    fractions (0.1 == 10%). Unset values fall back to simulation defaults.
    """

    strategy: BacktestStrategy
    pool_address: str
    initial_capital: float
    start_date: datetime
    end_date: datetime
    range_width: Optional[float] = None
    rebalance_threshold: Optional[float] = None
    fee_percentage: Optional[float] = None


@dataclass(slots=True)
class DailyReturn:
    date: datetime
    value: float
    return_: float

    def to_dict(self) -> Dict[str, Any]:
        return {"date": _to_iso(self.date), "value": self.value, "return": self.return_}


@dataclass(slots=True)
class BacktestResult:
    """Aggregate statistics for one simulated strategy run.

    Returns and drawdown are percentages; ``avg_position_duration`` is in days.
    """

    strategy: BacktestStrategy
    period_start: datetime
    period_end: datetime
    initial_capital: float
    final_value: float
    total_return: float
    annualized_return: float
    max_drawdown: float
    sharpe_ratio: float
    total_trades: int
    win_rate: float
    avg_position_duration: float
    daily_returns: List[DailyReturn] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "period_start": _to_iso(self.period_start),
            "period_end": _to_iso(self.period_end),
            "initial_capital": self.initial_capital,
            "final_value": self.final_value,
            "total_return": self.total_return,
            "annualized_return": self.annualized_return,
            "max_drawdown": self.max_drawdown,
            "sharpe_ratio": self.sharpe_ratio,
            "total_trades": self.total_trades,
            "win_rate": self.win_rate,
            "avg_position_duration": self.avg_position_duration,
            "daily_returns": [entry.to_dict() for entry in self.daily_returns],
        }


@dataclass(slots=True)
class TransactionResult:
    """Outcome of a liquidity-mutating call on the pool service."""

    success: bool
    transaction_id: Optional[str] = None
    position_id: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class FeeCollectionResult:
    success: bool
    transaction_id: Optional[str] = None
    fees_collected: float = 0.0
    error: Optional[str] = None


@dataclass(slots=True)
class RebalanceResult:
    """Outcome of a rebalance; ``new_position_id`` names the reopened position."""

    success: bool
    transaction_id: str
    old_range: PriceRange
    new_range: PriceRange
    new_position_id: Optional[str] = None
    error: Optional[str] = None


__all__ = [
    "AutoRebalanceConfig",
    "BacktestConfig",
    "BacktestResult",
    "BacktestStrategy",
    "DailyReturn",
    "EMPTY_RANGE",
    "FeeCollectionResult",
    "Order",
    "OrderKind",
    "OrderStatus",
    "Pool",
    "Position",
    "PositionEntrySnapshot",
    "PriceRange",
    "RebalanceEvent",
    "RebalanceResult",
    "TERMINAL_ORDER_STATUSES",
    "TokenInfo",
    "TransactionResult",
]
