"""Shared constants for DLMM position automation."""

from datetime import datetime, timezone

# Utility function to get timezone-aware UTC datetime
def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)

NATIVE_SYMBOL = "SOL"
SOL_MINT = "So11111111111111111111111111111111111111112"

# Base network fee per signature, in SOL.
BASE_TRANSACTION_FEE_SOL = 0.000005

# Keep this much SOL in the wallet after any operation for future fees.
NATIVE_FEE_RESERVE_SOL = 0.01

# Bin step is expressed in basis points.
BIN_STEP_DENOMINATOR = 10_000

REBALANCE_HISTORY_LIMIT = 50

SECONDS_PER_DAY = 86_400

# Persisted state keys.
REBALANCE_CONFIGS_KEY = "autoRebalanceConfigs"
REBALANCE_HISTORY_KEY = "rebalanceHistory"
ORDERS_KEY = "dlmm_orders"
POSITION_ENTRY_PREFIX = "position_entry_"
PRICE_ALERTS_KEY = "price_alerts"

__all__ = [
    "utc_now",
    "NATIVE_SYMBOL",
    "SOL_MINT",
    "BASE_TRANSACTION_FEE_SOL",
    "NATIVE_FEE_RESERVE_SOL",
    "BIN_STEP_DENOMINATOR",
    "REBALANCE_HISTORY_LIMIT",
    "SECONDS_PER_DAY",
    "REBALANCE_CONFIGS_KEY",
    "REBALANCE_HISTORY_KEY",
    "ORDERS_KEY",
    "POSITION_ENTRY_PREFIX",
    "PRICE_ALERTS_KEY",
]
