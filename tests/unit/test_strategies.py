"""
Unit tests for backtest/strategies.py
"""

from datetime import timedelta

import pytest

from quant_backtest.backtest.strategies import (
    MovingAverageCrossoverStrategy,
    ScheduledSignalStrategy,
    create_strategy,
)
from quant_backtest.core.data_types import OrderSide, TradingSignal
from quant_backtest.core.exceptions import ConfigurationError


def signal_at(timestamp, side=OrderSide.BUY):
    return TradingSignal(
        symbol="BTC_USDT",
        side=side,
        strength=80,
        confidence=80,
        risk_reward=2.0,
        timestamp=timestamp,
    )


class TestScheduledSignalStrategy:
    """Tests for ScheduledSignalStrategy."""

    def test_emits_on_first_bar_at_or_after(self, series_factory):
        """Test signals surface on the first bar at or after their timestamp."""
        bars = series_factory([100.0] * 5)
        between = signal_at(bars[1].timestamp + timedelta(minutes=30))
        exact = signal_at(bars[3].timestamp, OrderSide.SELL)
        strategy = ScheduledSignalStrategy([exact, between])

        emitted = [strategy.generate_signals(bars[: i + 1]) for i in range(len(bars))]
        assert emitted == [[], [], [between], [exact], []]

    def test_reset_rewinds(self, series_factory):
        """Test reset replays the schedule from the start."""
        bars = series_factory([100.0] * 3)
        strategy = ScheduledSignalStrategy([signal_at(bars[0].timestamp)], name="replay")
        assert len(strategy.generate_signals(bars)) == 1
        assert strategy.generate_signals(bars) == []
        strategy.reset()
        assert len(strategy.generate_signals(bars)) == 1
        assert strategy.name == "replay"

    def test_empty_window(self):
        """Test an empty window emits nothing."""
        assert ScheduledSignalStrategy([]).generate_signals([]) == []


class TestMovingAverageCrossoverStrategy:
    """Tests for MovingAverageCrossoverStrategy."""

    @pytest.mark.parametrize("fast,slow", [(0, 5), (5, 5), (10, 5)])
    def test_invalid_periods(self, fast, slow):
        """Test periods must satisfy 0 < fast < slow."""
        with pytest.raises(ConfigurationError):
            MovingAverageCrossoverStrategy(fast_period=fast, slow_period=slow)

    def test_buy_on_upward_cross(self, series_factory):
        """Test BUY when the fast average crosses above the slow one."""
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)
        bars = series_factory([10.0, 10.0, 10.0, 10.0, 9.0, 12.0])
        signals = strategy.generate_signals(bars)

        assert len(signals) == 1
        signal = signals[0]
        assert signal.side is OrderSide.BUY
        assert signal.timestamp == bars[-1].timestamp
        assert signal.risk_reward == 2.0
        assert 60.0 < signal.strength <= 100.0
        assert signal.metadata["fast_sma"] == pytest.approx(10.5)

    def test_sell_on_downward_cross(self, series_factory):
        """Test SELL when the fast average crosses below the slow one."""
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)
        signals = strategy.generate_signals(series_factory([10.0, 10.0, 10.0, 10.0, 11.0, 8.0]))
        assert [s.side for s in signals] == [OrderSide.SELL]

    def test_no_signal_without_cross(self, series_factory):
        """Test flat prices and short windows emit nothing."""
        strategy = MovingAverageCrossoverStrategy(fast_period=2, slow_period=5)
        assert strategy.generate_signals(series_factory([10.0] * 10)) == []
        assert strategy.generate_signals(series_factory([10.0] * 5)) == []


class TestCreateStrategy:
    """Tests for create_strategy."""

    def test_known(self):
        """Test reference strategies are created with parameters."""
        strategy = create_strategy("ma_crossover", fast_period=3, slow_period=8)
        assert isinstance(strategy, MovingAverageCrossoverStrategy)
        assert strategy.slow_period == 8

    def test_unknown(self):
        """Test unknown names raise ConfigurationError."""
        with pytest.raises(ConfigurationError) as exc_info:
            create_strategy("nope")
        assert exc_info.value.field_name == "strategy"
