"""
Configuration layer: application settings and per-run backtest configuration.
"""

from .backtest_config import (
    BacktestConfig,
    DataValidationConfig,
    ExecutionConfig,
    FeeSchedule,
    RiskManagementConfig,
    load_backtest_config,
)
from .settings import Settings, get_settings

__all__ = [
    "BacktestConfig",
    "DataValidationConfig",
    "ExecutionConfig",
    "FeeSchedule",
    "RiskManagementConfig",
    "load_backtest_config",
    "Settings",
    "get_settings",
]
