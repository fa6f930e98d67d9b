"""
Unit tests for backtest/simulator.py
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from quant_backtest.backtest.simulator import ExecutionSimulator, FillType, Liquidity
from quant_backtest.config.backtest_config import ExecutionConfig, FeeSchedule
from quant_backtest.core.data_types import (
    BacktestTrade,
    ExitReason,
    OrderSide,
    OrderType,
    TradingSignal,
)
from quant_backtest.core.exceptions import ExecutionRejection


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_simulator(reject_probability=0.0, slippage=0.001, market_impact=0.001, seed=1):
    return ExecutionSimulator(
        slippage=slippage,
        fees=FeeSchedule(maker=0.001, taker=0.002),
        execution=ExecutionConfig(reject_probability=reject_probability, market_impact=market_impact),
        rng=np.random.default_rng(seed),
    )


def make_signal(side=OrderSide.BUY, order_type=OrderType.MARKET):
    return TradingSignal(
        symbol="BTC_USDT",
        side=side,
        strength=80,
        confidence=80,
        risk_reward=2.0,
        timestamp=T0,
        order_type=order_type,
    )


def make_trade(side=OrderSide.BUY):
    direction = side.direction
    return BacktestTrade(
        id="T000001",
        symbol="BTC_USDT",
        side=side,
        strategy="s",
        signal_id="sig",
        entry_time=T0,
        entry_price=100.0,
        quantity=2.0,
        stop_loss=100.0 - direction * 2.0,
        take_profit=100.0 + direction * 4.0,
    )


# ============================================================================
# Pricing
# ============================================================================


class TestPricing:
    """Tests for slippage, impact and fees."""

    def test_price_adjustments(self):
        """Test slippage is proportional and impact scales with size."""
        sim = make_simulator()
        slippage, impact = sim.price_adjustments(100.0, 500.0)
        assert slippage == pytest.approx(0.1)
        assert impact == pytest.approx(100.0 * 0.001 * 0.5)

    def test_impact_saturates(self):
        """Test impact stops growing at the impact size scale."""
        sim = make_simulator()
        _, at_scale = sim.price_adjustments(100.0, 1000.0)
        _, beyond = sim.price_adjustments(100.0, 50000.0)
        assert at_scale == pytest.approx(beyond)

    @pytest.mark.parametrize("side,sign", [(OrderSide.BUY, 1), (OrderSide.SELL, -1)])
    def test_market_price_adverse(self, side, sign):
        """Test market fills are always worse than the reference."""
        sim = make_simulator()
        fill, slippage, impact = sim.market_price(side, 100.0, 10.0)
        assert fill == pytest.approx(100.0 + sign * (slippage + impact))
        assert sign * (fill - 100.0) > 0

    def test_commission(self):
        """Test commission uses the liquidity's fee rate."""
        sim = make_simulator()
        assert sim.commission(100.0, 2.0, Liquidity.MAKER) == pytest.approx(0.2)
        assert sim.commission(100.0, 2.0, Liquidity.TAKER) == pytest.approx(0.4)


# ============================================================================
# Entries
# ============================================================================


class TestSimulateEntry:
    """Tests for entry fills."""

    def test_market_entry(self, bar_factory):
        """Test market entries take the slipped price and the taker fee."""
        sim = make_simulator()
        bar = bar_factory(T0, 100.0)
        fill = sim.simulate_entry(make_signal(), bar, 2.0)

        assert fill.fill_type is FillType.FULL
        assert fill.liquidity is Liquidity.TAKER
        assert fill.fill_price > bar.close
        assert fill.fill_price == pytest.approx(100.0 + fill.price_adjustment)
        assert fill.commission == pytest.approx(fill.fill_price * 2.0 * 0.002)
        assert fill.reference_price == 100.0
        assert fill.total_cost == pytest.approx(fill.price_adjustment * 2.0 + fill.commission)

    def test_short_entry_below_close(self, bar_factory):
        """Test short market entries fill below the close."""
        fill = make_simulator().simulate_entry(make_signal(OrderSide.SELL), bar_factory(T0, 100.0), 2.0)
        assert fill.fill_price < 100.0

    def test_limit_entry_is_maker(self, bar_factory):
        """Test limit entries rest at the close with the maker fee."""
        fill = make_simulator().simulate_entry(
            make_signal(order_type=OrderType.LIMIT), bar_factory(T0, 100.0), 2.0
        )
        assert fill.liquidity is Liquidity.MAKER
        assert fill.fill_price == 100.0
        assert fill.slippage == 0.0
        assert fill.commission == pytest.approx(0.2)

    def test_rejection(self, bar_factory):
        """Test entries are rejected when the draw is below the probability."""
        sim = make_simulator(reject_probability=0.1)
        sim.rng = np.random.default_rng(0)
        draws = np.random.default_rng(0).random(50)
        fills = [sim.simulate_entry(make_signal(), bar_factory(T0, 100.0), 1.0) for _ in range(50)]

        for draw, fill in zip(draws, fills):
            assert fill.is_rejected == (draw < 0.1)
        rejected = [f for f in fills if f.is_rejected]
        assert sim.entries_rejected == len(rejected)
        assert sim.rejection_rate == pytest.approx(len(rejected) / 50)

    @patch("quant_backtest.backtest.simulator.log_execution")
    def test_fills_and_rejections_logged(self, mock_log_execution, bar_factory):
        """Test entry fills and rejections go to the execution log."""
        signal = make_signal()
        rejecting = make_simulator(reject_probability=0.1)
        rejecting.rng = MagicMock()
        rejecting.rng.random.return_value = 0.0
        rejecting.simulate_entry(signal, bar_factory(T0, 100.0), 1.0)
        make_simulator().simulate_entry(signal, bar_factory(T0, 100.0), 1.0)

        assert mock_log_execution.call_count == 2
        rejected, filled = mock_log_execution.call_args_list
        assert "rejected" in rejected.args[0]
        assert rejected.kwargs["signal_id"] == signal.id
        assert filled.args[0].startswith("Entry BUY")
        assert filled.kwargs["symbol"] == "BTC_USDT"

    def test_rejection_rate_bounded(self, bar_factory):
        """Test the long-run rejection rate stays near the configured probability."""
        sim = make_simulator(reject_probability=0.1, seed=123)
        bar = bar_factory(T0, 100.0)
        for _ in range(2000):
            sim.simulate_entry(make_signal(), bar, 1.0)
        assert sim.rejection_rate == pytest.approx(0.1, abs=0.025)

    def test_rejected_fill_to_rejection(self, bar_factory):
        """Test rejected fills describe an ExecutionRejection."""
        sim = make_simulator(reject_probability=0.1)
        sim.rng = np.random.default_rng(0)
        fill = None
        while fill is None or not fill.is_rejected:
            fill = sim.simulate_entry(make_signal(), bar_factory(T0, 100.0), 1.0)
        rejection = fill.to_rejection("sig-1")
        assert isinstance(rejection, ExecutionRejection)
        assert rejection.signal_id == "sig-1"
        assert fill.quantity == 0.0
        assert fill.commission == 0.0

    def test_deterministic_per_seed(self, bar_factory):
        """Test the same seed gives the same fills."""
        bar = bar_factory(T0, 100.0)
        sim_a, sim_b = make_simulator(0.1, seed=9), make_simulator(0.1, seed=9)
        a = [sim_a.simulate_entry(make_signal(), bar, 1.0).to_dict() for _ in range(30)]
        b = [sim_b.simulate_entry(make_signal(), bar, 1.0).to_dict() for _ in range(30)]
        assert a == b

    def test_one_draw_per_entry(self, bar_factory):
        """Test exactly one value is drawn per entry, filled or not."""
        sim = make_simulator(reject_probability=0.0, seed=5)
        reference = np.random.default_rng(5)
        sim.simulate_entry(make_signal(), bar_factory(T0, 100.0), 1.0)
        reference.random()
        assert sim.rng.random() == reference.random()


# ============================================================================
# Exits
# ============================================================================


class TestSimulateExit:
    """Tests for exit fills."""

    def test_stop_loss_fills_at_stop(self, bar_factory):
        """Test stops fill at the stop level as taker."""
        trade = make_trade()
        fill = make_simulator().simulate_exit(trade, bar_factory(T0, 97.0), ExitReason.STOP_LOSS)
        assert fill.fill_price == trade.stop_loss
        assert fill.side is OrderSide.SELL
        assert fill.liquidity is Liquidity.TAKER
        assert fill.commission == pytest.approx(98.0 * 2.0 * 0.002)

    def test_take_profit_fills_at_target(self, bar_factory):
        """Test targets fill at the target level as maker."""
        trade = make_trade()
        fill = make_simulator().simulate_exit(trade, bar_factory(T0, 105.0), ExitReason.TAKE_PROFIT)
        assert fill.fill_price == trade.take_profit
        assert fill.liquidity is Liquidity.MAKER

    @patch("quant_backtest.backtest.simulator.log_execution")
    def test_exit_logged(self, mock_log_execution, bar_factory):
        """Test exit fills go to the execution log with the trade id."""
        make_simulator().simulate_exit(make_trade(), bar_factory(T0, 97.0), ExitReason.STOP_LOSS)

        mock_log_execution.assert_called_once()
        assert "STOP_LOSS" in mock_log_execution.call_args.args[0]
        assert mock_log_execution.call_args.kwargs["trade_id"] == "T000001"

    @pytest.mark.parametrize("side", [OrderSide.BUY, OrderSide.SELL])
    def test_market_exit_adverse(self, bar_factory, side):
        """Test strategy and end-of-period exits pay slippage on the closing side."""
        trade = make_trade(side)
        fill = make_simulator().simulate_exit(trade, bar_factory(T0, 101.0), ExitReason.END_OF_PERIOD)
        assert fill.side is side.opposite
        assert side.direction * (101.0 - fill.fill_price) > 0

    def test_exit_never_draws(self, bar_factory):
        """Test exits do not consume randomness."""
        sim = make_simulator(seed=3)
        sim.simulate_exit(make_trade(), bar_factory(T0, 101.0), ExitReason.STRATEGY_EXIT)
        assert sim.rng.random() == np.random.default_rng(3).random()
