"""
Strategy interface and reference strategies.

Signal generation is external to the engine; a strategy only has to turn
the window of bars seen so far into trading signals:
- Strategy: abstract interface consumed by the engine
- ScheduledSignalStrategy: replays pre-computed signals at their timestamps
- MovingAverageCrossoverStrategy: simple fast/slow SMA crossover

Strategies receive bars up to and including the current one and must not
look further ahead.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Iterable, Sequence

import numpy as np

from quant_backtest.core.data_types import MarketBar, OrderSide, TradingSignal
from quant_backtest.core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Strategy(ABC):
    """Abstract base class for trading strategies."""

    name: str = "strategy"

    @abstractmethod
    def generate_signals(self, window: Sequence[MarketBar]) -> list[TradingSignal]:
        """Generate trading signals for the latest bar of ``window``.

        Args:
            window: Bars up to and including the current bar, oldest first.

        Returns:
            List of trading signals.
        """
        pass

    def reset(self) -> None:
        """Called before every run. Override to clear per-run state."""
        pass


class ScheduledSignalStrategy(Strategy):
    """Replays a fixed list of signals.

    A signal is emitted on the first bar whose timestamp is at or after the
    signal's timestamp, so signals between bars surface on the next bar.
    """

    def __init__(self, signals: Iterable[TradingSignal], name: str = "scheduled") -> None:
        self.name = name
        self._signals = sorted(signals, key=lambda s: (s.timestamp, s.id))
        self._cursor = 0

    @property
    def signals(self) -> tuple[TradingSignal, ...]:
        return tuple(self._signals)

    def reset(self) -> None:
        self._cursor = 0

    def generate_signals(self, window: Sequence[MarketBar]) -> list[TradingSignal]:
        if not window:
            return []
        now = window[-1].timestamp
        emitted = []
        while self._cursor < len(self._signals) and self._signals[self._cursor].timestamp <= now:
            emitted.append(self._signals[self._cursor])
            self._cursor += 1
        return emitted


class MovingAverageCrossoverStrategy(Strategy):
    """Fast/slow simple moving average crossover.

    Emits BUY when the fast average crosses above the slow one and SELL on
    the opposite cross. Strength grows with the relative spread of the two
    averages.
    """

    def __init__(
        self,
        fast_period: int = 10,
        slow_period: int = 30,
        risk_reward: float = 2.0,
        confidence: float = 75.0,
        base_strength: float = 60.0,
        name: str = "ma_crossover",
    ) -> None:
        """Initialize the strategy.

        Args:
            fast_period: Bars in the fast average.
            slow_period: Bars in the slow average.
            risk_reward: Reward multiple attached to every signal.
            confidence: Confidence attached to every signal (0-100).
            base_strength: Strength of a cross with no spread (0-100).
            name: Registration name.

        Raises:
            ConfigurationError: If the periods are not ``0 < fast < slow``.
        """
        if fast_period <= 0:
            raise ConfigurationError(
                "fast_period must be positive",
                field_name="fast_period",
                invalid_value=fast_period,
            )
        if fast_period >= slow_period:
            raise ConfigurationError(
                f"fast_period ({fast_period}) must be less than slow_period ({slow_period})",
                field_name="fast_period",
                invalid_value=fast_period,
            )
        self.fast_period = fast_period
        self.slow_period = slow_period
        self.risk_reward = risk_reward
        self.confidence = confidence
        self.base_strength = base_strength
        self.name = name

    def generate_signals(self, window: Sequence[MarketBar]) -> list[TradingSignal]:
        if len(window) <= self.slow_period:
            return []

        closes = np.array([bar.close for bar in window[-(self.slow_period + 1):]], dtype=float)
        fast_now = closes[-self.fast_period:].mean()
        slow_now = closes[-self.slow_period:].mean()
        fast_prev = closes[-self.fast_period - 1:-1].mean()
        slow_prev = closes[:-1].mean()

        if fast_prev <= slow_prev and fast_now > slow_now:
            side = OrderSide.BUY
        elif fast_prev >= slow_prev and fast_now < slow_now:
            side = OrderSide.SELL
        else:
            return []

        spread = abs(fast_now - slow_now) / slow_now if slow_now > 0 else 0.0
        strength = float(min(100.0, self.base_strength + spread * 1000))
        bar = window[-1]
        return [
            TradingSignal(
                symbol=bar.symbol,
                side=side,
                strength=strength,
                confidence=self.confidence,
                risk_reward=self.risk_reward,
                timestamp=bar.timestamp,
                reasoning=f"SMA{self.fast_period} crossed {'above' if side is OrderSide.BUY else 'below'} SMA{self.slow_period}",
                metadata={"fast_sma": float(fast_now), "slow_sma": float(slow_now)},
            )
        ]


STRATEGY_FACTORIES: dict[str, type[Strategy]] = {
    "ma_crossover": MovingAverageCrossoverStrategy,
}


def create_strategy(name: str, **params: Any) -> Strategy:
    """Instantiate a reference strategy by its registration name.

    Raises:
        ConfigurationError: If no strategy is known under ``name``.
    """
    factory = STRATEGY_FACTORIES.get(name)
    if factory is None:
        raise ConfigurationError(
            f"Unknown strategy: {name}. Available: {sorted(STRATEGY_FACTORIES)}",
            field_name="strategy",
            invalid_value=name,
        )
    return factory(**params)
