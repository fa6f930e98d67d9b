"""
Risk management: pre-trade evaluation and correlation providers.
"""

from .correlation import (
    CorrelationMethod,
    CorrelationProvider,
    PriceHistoryCorrelationProvider,
    SymbolCorrelationProvider,
)
from .risk_manager import CheckResult, RiskAction, RiskCheckResult, RiskDecision, RiskManager

__all__ = [
    "CorrelationMethod",
    "CorrelationProvider",
    "PriceHistoryCorrelationProvider",
    "SymbolCorrelationProvider",
    "CheckResult",
    "RiskAction",
    "RiskCheckResult",
    "RiskDecision",
    "RiskManager",
]
