"""Day-by-day simulation of liquidity strategies over a price path."""

from __future__ import annotations

import math
import random
from datetime import datetime, timedelta
from statistics import fmean, pstdev
from typing import Dict, List, Optional, Sequence

from ..analytics.pnl import impermanent_loss_value
from ..config.settings import SimulationConfig, get_app_config
from ..datalake.schemas import (
    BacktestConfig,
    BacktestResult,
    BacktestStrategy,
    DailyReturn,
    Pool,
)
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import SECONDS_PER_DAY
from .rebalance_monitor import PoolsArg, index_pools

MIN_STD = 1e-12


def sharpe_ratio(returns: Sequence[float], periods_per_year: int = 252) -> float:
    """Annualised Sharpe ratio of period returns; 0 when they do not vary."""

    if not returns:
        return 0.0
    deviation = pstdev(returns)
    if deviation <= MIN_STD:
        return 0.0
    return fmean(returns) / deviation * math.sqrt(periods_per_year)


def simulation_days(start: datetime, end: datetime) -> int:
    return math.ceil((end - start).total_seconds() / SECONDS_PER_DAY)


class Backtester:
    """Evaluates the four LP strategy variants against a synthetic or supplied price series.

    The named pool's current price seeds the path and is the entry price of
    the simulated position. The random source is injectable so runs can be
    made reproducible.
    """

    def __init__(
        self,
        pools: PoolsArg,
        *,
        rng: Optional[random.Random] = None,
        config: Optional[SimulationConfig] = None,
    ) -> None:
        self._pools: Dict[str, Pool] = index_pools(pools)
        self._config = config or get_app_config().simulation
        self._rng = rng or random.Random(self._config.seed)
        self._logger = get_logger(__name__)

    def update_pools(self, pools: PoolsArg) -> None:
        self._pools = index_pools(pools)

    def generate_price_path(
        self,
        start_price: float,
        days: int,
        volatility: Optional[float] = None,
        drift: Optional[float] = None,
    ) -> List[float]:
        vol = self._config.volatility if volatility is None else volatility
        daily_drift = self._config.daily_drift if drift is None else drift
        prices = [start_price]
        for _ in range(1, days):
            random_return = (self._rng.random() - 0.5) * 2 * vol
            prices.append(prices[-1] * (1 + random_return + daily_drift))
        return prices

    def _range_width(self, config: BacktestConfig) -> float:
        if config.range_width is not None:
            return config.range_width
        return self._config.default_range_width

    def run_backtest(self, config: BacktestConfig, prices: Optional[Sequence[float]] = None) -> BacktestResult:
        """Simulate ``config`` and derive its performance statistics.

        ``prices`` replaces the synthetic path with a supplied daily series;
        its first element is then the entry price. Raises ``LookupError`` for
        an unknown pool and ``ValueError`` for an empty period.
        """

        days = simulation_days(config.start_date, config.end_date)
        if days <= 0:
            raise ValueError("Backtest end date must be after the start date")
        if config.initial_capital <= 0:
            raise ValueError("Initial capital must be greater than 0")

        if prices is None:
            pool = self._pools.get(config.pool_address)
            if pool is None:
                raise LookupError("Pool not found")
            entry_price = pool.current_price
            path = self.generate_price_path(entry_price, days)
        else:
            if len(prices) < days:
                raise ValueError(f"Price series covers {len(prices)} days, {days} required")
            path = list(prices[:days])
            entry_price = path[0]
        if entry_price <= 0:
            raise ValueError("Entry price must be greater than 0")

        with METRICS.timer("backtest.duration_ms"):
            result = self._simulate(config, path, entry_price, days)
        METRICS.increment(f"backtest.runs.{config.strategy.value}")
        self._logger.info(
            "Backtest %s on %s: total return %.2f%%",
            config.strategy.value,
            config.pool_address,
            result.total_return,
        )
        return result

    def _simulate(
        self,
        config: BacktestConfig,
        path: Sequence[float],
        entry_price: float,
        days: int,
    ) -> BacktestResult:
        capital = config.initial_capital
        fee_rate = (
            config.fee_percentage
            if config.fee_percentage is not None
            else self._config.default_fee_percentage
        )
        threshold = (
            config.rebalance_threshold
            if config.rebalance_threshold is not None
            else self._config.default_rebalance_threshold
        )
        range_width = self._range_width(config)
        narrow_width = self._config.narrow_range_width

        entry_x = capital / 2 / entry_price
        entry_y = capital / 2
        token_x, token_y = entry_x, entry_y
        total_trades = 0
        winning_trades = 0
        peak = capital
        max_drawdown = 0.0
        value = capital
        daily: List[DailyReturn] = []

        for day in range(days):
            price = path[day]
            prev_price = path[day - 1] if day > 0 else entry_price

            value = token_x * price + token_y
            fees = value * fee_rate
            value += fees

            if config.strategy is BacktestStrategy.DYNAMIC_REBALANCE:
                if abs(price - prev_price) / prev_price > threshold:
                    before = value
                    token_x = value / 2 / price
                    token_y = value / 2
                    total_trades += 1
                    if value > before:
                        winning_trades += 1
            elif config.strategy is BacktestStrategy.STATIC_RANGE:
                if price < entry_price * (1 - range_width) or price > entry_price * (1 + range_width):
                    value -= fees
            elif config.strategy is BacktestStrategy.WIDE_RANGE:
                value = value - fees + fees * 0.5
            elif config.strategy is BacktestStrategy.NARROW_RANGE:
                if entry_price * (1 - narrow_width) <= price <= entry_price * (1 + narrow_width):
                    value += fees
                else:
                    value -= fees * 2

            value += impermanent_loss_value(entry_price, price, entry_x, entry_y)

            peak = max(peak, value)
            if peak > 0:
                max_drawdown = max(max_drawdown, (peak - value) / peak)

            day_return = 0.0
            if daily and daily[-1].value != 0:
                day_return = (value - daily[-1].value) / daily[-1].value
            daily.append(
                DailyReturn(
                    date=config.start_date + timedelta(days=day),
                    value=value,
                    return_=day_return,
                )
            )

        total_return = (value - capital) / capital * 100
        return BacktestResult(
            strategy=config.strategy,
            period_start=config.start_date,
            period_end=config.end_date,
            initial_capital=capital,
            final_value=value,
            total_return=total_return,
            annualized_return=total_return / days * 365,
            max_drawdown=max_drawdown * 100,
            sharpe_ratio=sharpe_ratio(
                [entry.return_ for entry in daily], self._config.trading_days_per_year
            ),
            total_trades=total_trades,
            win_rate=winning_trades / total_trades * 100 if total_trades else 0.0,
            avg_position_duration=days / max(total_trades, 1),
            daily_returns=daily,
        )

    def compare_strategies(
        self,
        pool_address: str,
        initial_capital: float,
        start_date: datetime,
        end_date: datetime,
    ) -> List[BacktestResult]:
        """Run every strategy with its default parameters, in a fixed order."""

        results: List[BacktestResult] = []
        for strategy in BacktestStrategy:
            if strategy is BacktestStrategy.WIDE_RANGE:
                width = self._config.wide_range_width
            elif strategy is BacktestStrategy.NARROW_RANGE:
                width = self._config.narrow_range_width
            else:
                width = self._config.default_range_width
            results.append(
                self.run_backtest(
                    BacktestConfig(
                        strategy=strategy,
                        pool_address=pool_address,
                        initial_capital=initial_capital,
                        start_date=start_date,
                        end_date=end_date,
                        range_width=width,
                        rebalance_threshold=self._config.default_rebalance_threshold,
                        fee_percentage=self._config.default_fee_percentage,
                    )
                )
            )
        return results


__all__ = ["Backtester", "sharpe_ratio", "simulation_days"]
