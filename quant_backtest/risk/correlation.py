"""
Correlation providers for the risk manager.

The risk manager only depends on the ``CorrelationProvider`` capability:
- SymbolCorrelationProvider: trivial default based on symbol identity
- PriceHistoryCorrelationProvider: correlation of log returns estimated
  from supplied price history

Providers are queried during a run and must not change while it executes;
histories supplied to ``PriceHistoryCorrelationProvider`` should end before
the backtest range to avoid lookahead.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from quant_backtest.core.data_types import MarketBar

logger = logging.getLogger(__name__)


class CorrelationMethod(str, Enum):
    """Correlation calculation methods."""

    PEARSON = "pearson"
    SPEARMAN = "spearman"


class CorrelationProvider(ABC):
    """Capability: pairwise correlation between two symbols in [-1, 1]."""

    @abstractmethod
    def correlation(self, symbol_a: str, symbol_b: str) -> float:
        pass


class SymbolCorrelationProvider(CorrelationProvider):
    """Identity based correlation.

    Identical symbols are perfectly correlated; every other pair gets the
    explicit override when one exists, else ``default_correlation``.
    """

    def __init__(
        self,
        default_correlation: float = 0.0,
        overrides: Mapping[tuple[str, str], float] | None = None,
    ) -> None:
        if not -1.0 <= default_correlation <= 1.0:
            raise ValueError("default_correlation must be within [-1, 1]")
        self.default_correlation = default_correlation
        self._overrides: dict[frozenset[str], float] = {}
        for (a, b), value in (overrides or {}).items():
            self._overrides[frozenset((a.upper(), b.upper()))] = float(np.clip(value, -1.0, 1.0))

    def correlation(self, symbol_a: str, symbol_b: str) -> float:
        a, b = symbol_a.upper(), symbol_b.upper()
        if a == b:
            return 1.0
        return self._overrides.get(frozenset((a, b)), self.default_correlation)


class PriceHistoryCorrelationProvider(CorrelationProvider):
    """Estimates correlation from the log returns of supplied closes."""

    def __init__(
        self,
        method: CorrelationMethod = CorrelationMethod.PEARSON,
        min_observations: int = 20,
        fallback: CorrelationProvider | None = None,
    ) -> None:
        """Initialize the provider.

        Args:
            method: Correlation method.
            min_observations: Overlapping returns required for an estimate.
            fallback: Provider used when there is too little overlap.
        """
        self.method = method
        self.min_observations = min_observations
        self.fallback = fallback or SymbolCorrelationProvider()
        self._closes: dict[str, pd.Series] = {}
        self._cache: dict[frozenset[str], float] = {}

    def add_history(self, symbol: str, closes: Mapping[datetime, float]) -> None:
        """Register a close price history for ``symbol``."""
        series = pd.Series(dict(closes), dtype=float).sort_index()
        self._closes[symbol.upper()] = series[series > 0]
        self._cache.clear()

    def add_bars(self, bars: Iterable[MarketBar]) -> None:
        """Register histories from bars, grouped by symbol."""
        grouped: dict[str, dict[datetime, float]] = {}
        for bar in bars:
            grouped.setdefault(bar.symbol, {})[bar.timestamp] = bar.close
        for symbol, closes in grouped.items():
            self.add_history(symbol, closes)

    def correlation(self, symbol_a: str, symbol_b: str) -> float:
        a, b = symbol_a.upper(), symbol_b.upper()
        if a == b:
            return 1.0
        key = frozenset((a, b))
        if key in self._cache:
            return self._cache[key]

        value = self._estimate(a, b)
        if value is None:
            value = self.fallback.correlation(a, b)
        self._cache[key] = value
        return value

    def _estimate(self, a: str, b: str) -> float | None:
        if a not in self._closes or b not in self._closes:
            return None
        frame = pd.concat(
            {a: np.log(self._closes[a]), b: np.log(self._closes[b])},
            axis=1,
            join="inner",
        )
        returns = frame.diff().dropna()
        if len(returns) < self.min_observations:
            logger.debug(f"Insufficient overlap for {a}/{b}: {len(returns)} returns")
            return None
        value = returns[a].corr(returns[b], method=self.method.value)
        if value is None or not np.isfinite(value):
            return None
        return float(np.clip(value, -1.0, 1.0))
