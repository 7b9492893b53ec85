"""Position and portfolio P&L accounting."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional

from ..datalake.schemas import Pool, Position, PositionEntrySnapshot
from ..utils.constants import SECONDS_PER_DAY

MIN_HOLDING_DAYS = 1 / 24


def impermanent_loss(price_ratio: float) -> float:
    """Constant-product impermanent loss for ``current / entry`` price ratio.

    Returns a non-positive fraction: ``-0.057`` means the LP position is
    worth 5.7% less than simply holding the entry amounts.
    """

    if price_ratio <= 0:
        raise ValueError("Price ratio must be positive")
    return 2 * math.sqrt(price_ratio) / (1 + price_ratio) - 1


def impermanent_loss_value(
    entry_price: float,
    current_price: float,
    token_x_amount: float,
    token_y_amount: float,
) -> float:
    """Impermanent loss in quote units for entry amounts held at ``current_price``."""

    if entry_price <= 0:
        raise ValueError("Entry price must be positive")
    hold_value = token_x_amount * current_price + token_y_amount
    return hold_value * impermanent_loss(current_price / entry_price)


def calculate_apy(fees_earned: float, capital: float, days: float = 1.0) -> float:
    """Annualised fee yield in percent."""

    if capital <= 0 or days <= 0:
        return 0.0
    return fees_earned / capital / days * 365 * 100


@dataclass(slots=True)
class PositionPerformance:
    """Mark-to-market view of a single position."""

    position_id: str
    current_value: float
    hold_value: float
    fees_earned: float
    pnl: float
    pnl_percent: float
    apy: float
    impermanent_loss: float
    days_held: float


def position_pnl(
    position: Position,
    snapshot: PositionEntrySnapshot,
    current_price: float,
    now: datetime,
) -> PositionPerformance:
    current_value = position.value(current_price)
    hold_value = snapshot.token_x_amount * current_price + snapshot.token_y_amount
    pnl = current_value + position.fees_earned - snapshot.initial_value_usd
    days_held = max((now - snapshot.timestamp).total_seconds() / SECONDS_PER_DAY, MIN_HOLDING_DAYS)
    initial = snapshot.initial_value_usd
    pnl_percent = pnl / initial * 100 if initial > 0 else 0.0
    apy = pnl_percent / days_held * 365 if initial > 0 else 0.0
    il = 0.0
    if snapshot.entry_price > 0 and current_price > 0:
        il = impermanent_loss_value(
            snapshot.entry_price, current_price, snapshot.token_x_amount, snapshot.token_y_amount
        )
    return PositionPerformance(
        position_id=position.id,
        current_value=current_value,
        hold_value=hold_value,
        fees_earned=position.fees_earned,
        pnl=pnl,
        pnl_percent=pnl_percent,
        apy=apy,
        impermanent_loss=il,
        days_held=days_held,
    )


@dataclass(slots=True)
class PortfolioSummary:
    position_count: int
    total_value: float
    total_fees: float
    total_pnl: float
    average_apy: float
    in_range: int
    out_of_range: int


def portfolio_analytics(
    positions: Iterable[Position],
    pools: Mapping[str, Pool],
    snapshots: Optional[Mapping[str, PositionEntrySnapshot]] = None,
    *,
    now: Optional[datetime] = None,
) -> PortfolioSummary:
    """Aggregate value, fees and P&L across ``positions``.

    Positions whose pool is unknown are skipped. When an entry snapshot and
    ``now`` are supplied, P&L and APY are recomputed from it; otherwise the
    values reported by the pool service are used.
    """

    count = 0
    total_value = total_fees = total_pnl = apy_sum = 0.0
    in_range = out_of_range = 0
    for position in positions:
        pool = pools.get(position.pool_address)
        if pool is None:
            continue
        price = pool.current_price
        count += 1
        total_value += position.value(price)
        total_fees += position.fees_earned
        snapshot = (snapshots or {}).get(position.id)
        if snapshot is not None and now is not None:
            performance = position_pnl(position, snapshot, price, now)
            total_pnl += performance.pnl
            apy_sum += performance.apy
        else:
            total_pnl += position.pnl
            apy_sum += position.apy
        if position.is_in_range(price):
            in_range += 1
        else:
            out_of_range += 1
    return PortfolioSummary(
        position_count=count,
        total_value=total_value,
        total_fees=total_fees,
        total_pnl=total_pnl,
        average_apy=apy_sum / count if count else 0.0,
        in_range=in_range,
        out_of_range=out_of_range,
    )


__all__ = [
    "PortfolioSummary",
    "PositionPerformance",
    "calculate_apy",
    "impermanent_loss",
    "impermanent_loss_value",
    "portfolio_analytics",
    "position_pnl",
]
