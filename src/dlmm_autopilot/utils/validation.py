"""Pre-trade validation helpers.

Every check returns a :class:`ValidationResult` instead of raising so callers
can surface the message as they see fit. Code paths that must block a
mutating action call :func:`ensure_valid`, which converts a failed result
into a ``ValueError`` carrying the human-readable reason.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from ..datalake.schemas import OrderKind
from .constants import BASE_TRANSACTION_FEE_SOL, NATIVE_FEE_RESERVE_SOL, NATIVE_SYMBOL

MIN_RANGE_PERCENT = 1.0
MAX_RANGE_PERCENT = 100.0
MIN_LIMIT_DISTANCE = 0.001


@dataclass(slots=True, frozen=True)
class ValidationResult:
    valid: bool
    error: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


OK = ValidationResult(True)


def _fail(message: str) -> ValidationResult:
    return ValidationResult(False, message)


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


class GasOperation(str, Enum):
    CREATE_POSITION = "create_position"
    REMOVE_LIQUIDITY = "remove_liquidity"
    REBALANCE = "rebalance"
    COLLECT_FEES = "collect_fees"


# Multiples of the base signature fee; a rebalance is a remove plus a create.
GAS_MULTIPLIERS: Dict[GasOperation, float] = {
    GasOperation.CREATE_POSITION: 2.0,
    GasOperation.REMOVE_LIQUIDITY: 1.5,
    GasOperation.REBALANCE: 3.5,
    GasOperation.COLLECT_FEES: 1.0,
}


def validate_price_range(lower_price: float, upper_price: float, current_price: float) -> ValidationResult:
    if lower_price <= 0:
        return _fail("Lower price must be greater than 0")
    if upper_price <= 0:
        return _fail("Upper price must be greater than 0")
    if lower_price >= upper_price:
        return _fail("Lower price must be less than upper price")
    if upper_price <= current_price:
        return _fail("Upper price must be greater than current price for a valid range")
    if lower_price >= current_price:
        return _fail("Lower price must be less than current price for a valid range")

    range_percent = (upper_price - lower_price) / lower_price * 100
    if range_percent < MIN_RANGE_PERCENT:
        return _fail("Price range is too narrow. Minimum range is 1%")
    if range_percent > MAX_RANGE_PERCENT:
        return _fail("Price range is too wide. Maximum recommended range is 100%")
    return OK


def validate_token_amounts(
    token_x_amount: float,
    token_y_amount: float,
    min_amount: float = 0.001,
    max_amount: float = 1_000_000,
) -> ValidationResult:
    if token_x_amount < 0 or token_y_amount < 0:
        return _fail("Token amounts cannot be negative")
    if token_x_amount < min_amount and token_y_amount < min_amount:
        return _fail(f"At least one token amount must be greater than {_format_number(min_amount)}")
    if token_x_amount > max_amount or token_y_amount > max_amount:
        return _fail(f"Token amounts cannot exceed {_format_number(max_amount)}")
    return OK


def calculate_slippage(expected_price: float, actual_price: float) -> float:
    """Absolute deviation of ``actual_price`` from ``expected_price`` in percent."""

    if expected_price == 0:
        return float("inf")
    return abs((actual_price - expected_price) / expected_price) * 100


def validate_slippage(
    expected_price: float, actual_price: float, max_slippage_percent: float
) -> ValidationResult:
    if expected_price <= 0:
        return _fail("Expected price must be greater than 0")
    slippage = calculate_slippage(expected_price, actual_price)
    if slippage > max_slippage_percent:
        return _fail(
            f"Slippage ({slippage:.2f}%) exceeds maximum tolerance "
            f"({_format_number(max_slippage_percent)}%)"
        )
    return OK


def validate_balance(
    required_amount: float,
    available_balance: float,
    symbol: str,
    *,
    native_reserve: float = NATIVE_FEE_RESERVE_SOL,
) -> ValidationResult:
    if required_amount > available_balance:
        return _fail(
            f"Insufficient {symbol} balance. Required: {required_amount:.4f}, "
            f"Available: {available_balance:.4f}"
        )
    if symbol == NATIVE_SYMBOL and available_balance - required_amount < native_reserve:
        return _fail(
            "Insufficient balance for transaction fees. "
            f"Please keep at least {_format_number(native_reserve)} {NATIVE_SYMBOL} for fees"
        )
    return OK


def validate_rebalance_config(
    price_deviation_threshold: float,
    range_width: float,
    cooldown_minutes: float,
) -> ValidationResult:
    if price_deviation_threshold < 1 or price_deviation_threshold > 50:
        return _fail("Price deviation threshold must be between 1% and 50%")
    if range_width < 5 or range_width > 100:
        return _fail("Range width must be between 5% and 100%")
    if cooldown_minutes < 1 or cooldown_minutes > 1_440:
        return _fail("Cooldown period must be between 1 minute and 24 hours")
    return OK


def validate_order_params(
    kind: Union[OrderKind, str],
    target_price: float,
    current_price: float,
    *,
    min_limit_distance: float = MIN_LIMIT_DISTANCE,
) -> ValidationResult:
    kind = OrderKind(kind)
    if target_price <= 0:
        return _fail("Target price must be greater than 0")
    if kind is OrderKind.LIMIT:
        if current_price <= 0:
            return _fail("Current price must be greater than 0")
        if abs(target_price - current_price) / current_price < min_limit_distance:
            return _fail(
                f"Limit order price must be at least {min_limit_distance * 100:g}% "
                "different from current price"
            )
    elif kind is OrderKind.STOP_LOSS:
        if target_price >= current_price:
            return _fail("Stop-loss price must be below current price")
    elif kind is OrderKind.TAKE_PROFIT:
        if target_price <= current_price:
            return _fail("Take-profit price must be above current price")
    return OK


def estimate_gas_cost(operation: Union[GasOperation, str]) -> float:
    """Estimated network fee in SOL for ``operation``."""

    try:
        multiplier = GAS_MULTIPLIERS[GasOperation(operation)]
    except ValueError:
        multiplier = 1.0
    return BASE_TRANSACTION_FEE_SOL * multiplier


def is_transaction_economical(
    expected_profit: float,
    gas_cost: float,
    min_profit_multiplier: float = 2.0,
) -> ValidationResult:
    min_profit = gas_cost * min_profit_multiplier
    if expected_profit < min_profit:
        return _fail(
            f"Transaction not economical. Expected profit ({expected_profit:.6f}) should be at "
            f"least {_format_number(min_profit_multiplier)}x gas cost ({min_profit:.6f})"
        )
    return OK


def ensure_valid(result: ValidationResult) -> None:
    if not result.valid:
        raise ValueError(result.error or "Validation failed")


__all__ = [
    "GAS_MULTIPLIERS",
    "GasOperation",
    "ValidationResult",
    "calculate_slippage",
    "ensure_valid",
    "estimate_gas_cost",
    "is_transaction_economical",
    "validate_balance",
    "validate_order_params",
    "validate_price_range",
    "validate_rebalance_config",
    "validate_slippage",
    "validate_token_amounts",
]
