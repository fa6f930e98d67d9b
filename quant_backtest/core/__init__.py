"""
Core layer for the backtesting engine.

Contains type definitions, the exception taxonomy, and reproducibility
helpers used across all modules.
"""

from .data_types import (
    BacktestTrade,
    ExitReason,
    MarketBar,
    OrderSide,
    OrderType,
    PortfolioSnapshot,
    PositionMark,
    TradeStatus,
    TradingSignal,
    compute_integrity_hash,
    ensure_utc,
)
from .exceptions import (
    BacktestCancelledError,
    BacktestError,
    BacktestInProgressError,
    ConfigurationError,
    DataError,
    DataUnavailableError,
    DataValidationError,
    ExecutionRejection,
    InvalidStateTransition,
    LedgerOrderError,
    RiskLimitExceeded,
)
from .reproducibility import child_seed, create_rng, derive_run_id, derive_run_seed

__all__ = [
    # Data types
    "BacktestTrade",
    "ExitReason",
    "MarketBar",
    "OrderSide",
    "OrderType",
    "PortfolioSnapshot",
    "PositionMark",
    "TradeStatus",
    "TradingSignal",
    "compute_integrity_hash",
    "ensure_utc",
    # Exceptions
    "BacktestCancelledError",
    "BacktestError",
    "BacktestInProgressError",
    "ConfigurationError",
    "DataError",
    "DataUnavailableError",
    "DataValidationError",
    "ExecutionRejection",
    "InvalidStateTransition",
    "LedgerOrderError",
    "RiskLimitExceeded",
    # Reproducibility
    "child_seed",
    "create_rng",
    "derive_run_id",
    "derive_run_seed",
]
