"""Request bodies accepted by the control API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..datalake.schemas import BacktestStrategy


class OpenPositionRequest(BaseModel):
    """New position; ``expected_price`` enables the slippage check."""

    pool_address: str
    lower_price: float
    upper_price: float
    token_x_amount: float = 0.0
    token_y_amount: float = 0.0
    expected_price: Optional[float] = Field(default=None, gt=0.0)


class RemoveLiquidityRequest(BaseModel):
    percent: float = 100.0


class CollectFeesRequest(BaseModel):
    force: bool = False


class ManualRebalanceRequest(BaseModel):
    """Unset values fall back to the position's rebalance config, then the defaults."""

    range_width: Optional[float] = Field(default=None, gt=0.0, le=100.0)
    compound_fees: Optional[bool] = None


class RebalanceConfigRequest(BaseModel):
    enabled: bool = True
    price_deviation_threshold: Optional[float] = None
    new_range_width: Optional[float] = None
    min_time_between_rebalances: Optional[float] = None
    compound_fees: Optional[bool] = None


class LimitOrderRequest(BaseModel):
    pool_address: str
    target_price: float
    token_x_amount: float = 0.0
    token_y_amount: float = 0.0
    expires_in_hours: Optional[float] = Field(default=None, gt=0.0)


class ExitOrderRequest(BaseModel):
    """Stop-loss or take-profit on an existing position."""

    position_id: str
    target_price: float


class DcaOrderRequest(BaseModel):
    pool_address: str
    token_x_amount: float = 0.0
    token_y_amount: float = 0.0
    interval_hours: Optional[float] = None
    executions: Optional[int] = None


class PriceAlertRequest(BaseModel):
    pool_address: str
    target_price: float


class _PeriodRequest(BaseModel):
    pool_address: str
    initial_capital: float = Field(gt=0.0)
    start_date: datetime
    end_date: datetime
    seed: Optional[int] = None

    @model_validator(mode="after")
    def _check_period(self) -> "_PeriodRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class BacktestRequest(_PeriodRequest):
    strategy: BacktestStrategy
    range_width: Optional[float] = Field(default=None, gt=0.0)
    rebalance_threshold: Optional[float] = Field(default=None, gt=0.0)
    fee_percentage: Optional[float] = Field(default=None, ge=0.0)


class CompareRequest(_PeriodRequest):
    pass


__all__ = [
    "BacktestRequest",
    "CollectFeesRequest",
    "CompareRequest",
    "DcaOrderRequest",
    "ExitOrderRequest",
    "LimitOrderRequest",
    "ManualRebalanceRequest",
    "OpenPositionRequest",
    "PriceAlertRequest",
    "RebalanceConfigRequest",
    "RemoveLiquidityRequest",
]
