import pytest

from dlmm_autopilot.datalake.schemas import OrderKind
from dlmm_autopilot.utils.validation import (
    GasOperation,
    calculate_slippage,
    ensure_valid,
    estimate_gas_cost,
    is_transaction_economical,
    validate_balance,
    validate_order_params,
    validate_price_range,
    validate_rebalance_config,
    validate_slippage,
    validate_token_amounts,
)


@pytest.mark.parametrize(
    ("lower", "upper", "current", "message"),
    [
        (0.0, 110.0, 100.0, "Lower price must be greater than 0"),
        (90.0, -1.0, 100.0, "Upper price must be greater than 0"),
        (110.0, 90.0, 100.0, "Lower price must be less than upper price"),
        (80.0, 95.0, 100.0, "Upper price must be greater than current price for a valid range"),
        (101.0, 110.0, 100.0, "Lower price must be less than current price for a valid range"),
        (99.9, 100.5, 100.0, "Price range is too narrow. Minimum range is 1%"),
        (40.0, 110.0, 100.0, "Price range is too wide. Maximum recommended range is 100%"),
    ],
)
def test_validate_price_range_rejects(lower: float, upper: float, current: float, message: str) -> None:
    result = validate_price_range(lower, upper, current)
    assert not result.valid
    assert result.error == message


def test_validate_price_range_accepts_range_around_price() -> None:
    result = validate_price_range(90.0, 110.0, 100.0)
    assert result.valid
    assert result.error is None
    assert bool(result)


def test_validate_token_amounts() -> None:
    assert validate_token_amounts(1.0, 0.0).valid
    assert validate_token_amounts(-1.0, 5.0).error == "Token amounts cannot be negative"
    assert (
        validate_token_amounts(0.0, 0.0).error
        == "At least one token amount must be greater than 0.001"
    )
    assert validate_token_amounts(2_000_000.0, 1.0).error == "Token amounts cannot exceed 1000000"


def test_slippage_helpers() -> None:
    assert calculate_slippage(100.0, 101.0) == pytest.approx(1.0)
    assert calculate_slippage(100.0, 99.0) == pytest.approx(1.0)
    assert calculate_slippage(0.0, 1.0) == float("inf")
    assert validate_slippage(100.0, 100.5, 1.0).valid
    result = validate_slippage(100.0, 102.0, 1.0)
    assert not result.valid
    assert result.error == "Slippage (2.00%) exceeds maximum tolerance (1%)"


def test_validate_balance_keeps_native_fee_reserve() -> None:
    assert validate_balance(1.0, 2.0, "SOL").valid
    reserve = validate_balance(1.0, 1.005, "SOL")
    assert not reserve.valid
    assert "0.01 SOL" in (reserve.error or "")
    assert validate_balance(1.0, 1.005, "USDC").valid
    short = validate_balance(5.0, 4.0, "USDC")
    assert short.error == "Insufficient USDC balance. Required: 5.0000, Available: 4.0000"


def test_validate_rebalance_config_bounds() -> None:
    assert validate_rebalance_config(10.0, 20.0, 60.0).valid
    assert validate_rebalance_config(1.0, 5.0, 1.0).valid
    assert validate_rebalance_config(50.0, 100.0, 1_440.0).valid
    assert (
        validate_rebalance_config(0.5, 20.0, 60.0).error
        == "Price deviation threshold must be between 1% and 50%"
    )
    assert validate_rebalance_config(10.0, 150.0, 60.0).error == "Range width must be between 5% and 100%"
    assert (
        validate_rebalance_config(10.0, 20.0, 2_000.0).error
        == "Cooldown period must be between 1 minute and 24 hours"
    )


def test_validate_order_params() -> None:
    assert validate_order_params(OrderKind.LIMIT, 95.0, 100.0).valid
    assert (
        validate_order_params(OrderKind.LIMIT, 100.05, 100.0).error
        == "Limit order price must be at least 0.1% different from current price"
    )
    assert (
        validate_order_params("stop_loss", 105.0, 100.0).error
        == "Stop-loss price must be below current price"
    )
    assert validate_order_params("stop_loss", 90.0, 100.0).valid
    assert (
        validate_order_params(OrderKind.TAKE_PROFIT, 95.0, 100.0).error
        == "Take-profit price must be above current price"
    )
    assert validate_order_params(OrderKind.DCA, 0.0, 100.0).error == "Target price must be greater than 0"


def test_gas_estimates_and_economics() -> None:
    assert estimate_gas_cost(GasOperation.CREATE_POSITION) == pytest.approx(0.00001)
    assert estimate_gas_cost("rebalance") == pytest.approx(0.0000175)
    assert estimate_gas_cost("collect_fees") == pytest.approx(0.000005)
    assert estimate_gas_cost("unknown") == pytest.approx(0.000005)

    gas = estimate_gas_cost(GasOperation.COLLECT_FEES)
    assert is_transaction_economical(0.00002, gas).valid
    result = is_transaction_economical(0.000001, gas)
    assert not result.valid
    assert (result.error or "").startswith("Transaction not economical")


def test_ensure_valid_raises_value_error_with_reason() -> None:
    ensure_valid(validate_price_range(90.0, 110.0, 100.0))
    with pytest.raises(ValueError, match="Lower price must be less than upper price"):
        ensure_valid(validate_price_range(110.0, 90.0, 100.0))
