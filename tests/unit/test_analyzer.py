"""
Unit tests for backtest/analyzer.py
"""

import json
import math
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from quant_backtest.backtest.analyzer import (
    PerformanceAnalyzer,
    calculate_trade_metrics,
    compound_annualized,
    downside_deviation,
    historical_var,
    infer_periods_per_year,
    max_consecutive,
    period_returns,
    sample_volatility,
)
from quant_backtest.backtest.ledger import fold_snapshot
from quant_backtest.core.data_types import (
    BacktestTrade,
    ExitReason,
    OrderSide,
    TradeStatus,
)


T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


def make_snapshots(equities, step=HOUR, initial_balance=10000.0):
    snapshots = []
    previous = None
    for i, equity in enumerate(equities):
        previous = fold_snapshot(previous, T0 + i * step, equity, initial_balance=initial_balance)
        snapshots.append(previous)
    return snapshots


def closed_trade(pnl, index=0, strategy="s", hours=2, reason=ExitReason.TAKE_PROFIT):
    trade = BacktestTrade(
        id=f"T{index + 1:06d}",
        symbol="BTC_USDT",
        side=OrderSide.BUY,
        strategy=strategy,
        signal_id=f"sig-{index}",
        entry_time=T0 + index * HOUR,
        entry_price=100.0,
        quantity=1.0,
        stop_loss=95.0,
        take_profit=110.0,
    )
    return trade.close(T0 + (index + hours) * HOUR, 100.0 + pnl, 0.0, reason)


# ============================================================================
# Helpers
# ============================================================================


class TestHelpers:
    """Tests for the pure helper functions."""

    def test_period_returns(self):
        """Test returns are measured from the initial balance."""
        returns = period_returns(100.0, [110.0, 99.0])
        assert returns == pytest.approx([0.1, -0.1])
        assert len(period_returns(100.0, [])) == 0

    def test_infer_periods_per_year(self):
        """Test hourly and daily spacing."""
        hourly = [T0 + i * HOUR for i in range(5)]
        daily = [T0 + timedelta(days=i) for i in range(5)]
        assert infer_periods_per_year(hourly) == pytest.approx(365.25 * 24)
        assert infer_periods_per_year(daily) == pytest.approx(365.25)
        assert infer_periods_per_year([T0]) == 365.0

    def test_compound_annualized(self):
        """Test compounding and degenerate cases."""
        assert compound_annualized(1.21, 2.0) == pytest.approx(10.0)
        assert compound_annualized(1.5, 0.0) == 0.0
        assert compound_annualized(0.0, 1.0) == -100.0
        assert math.isfinite(compound_annualized(2.0, 1e-9))

    def test_volatility_and_downside(self):
        """Test downside deviation never exceeds volatility."""
        returns = np.random.default_rng(4).normal(0.001, 0.02, 500)
        vol = sample_volatility(returns)
        assert vol == pytest.approx(np.std(returns, ddof=1))
        assert 0 < downside_deviation(returns) <= vol
        assert sample_volatility(np.array([0.1])) == 0.0

    def test_downside_zero_for_constant(self):
        """Test constant returns have no downside."""
        assert downside_deviation(np.full(10, 0.01)) == 0.0

    def test_historical_var(self):
        """Test VaR and CVaR are non-positive percentages."""
        returns = np.linspace(-0.1, 0.09, 20)
        var, cvar = historical_var(returns)
        assert var == pytest.approx(-9.0)
        assert cvar == pytest.approx(-9.5)
        assert historical_var(np.array([0.01, 0.02])) == (0.0, 0.0)
        assert historical_var(np.array([])) == (0.0, 0.0)

    def test_max_consecutive(self):
        """Test streak counting."""
        values = [1, 2, -1, 3, 4, 5, -2, -3]
        assert max_consecutive(values, lambda x: x > 0) == 3
        assert max_consecutive(values, lambda x: x < 0) == 2
        assert max_consecutive([], lambda x: x > 0) == 0


# ============================================================================
# Trade metrics
# ============================================================================


class TestTradeMetrics:
    """Tests for calculate_trade_metrics."""

    def test_mixed_trades(self):
        """Test statistics over wins and losses."""
        trades = [closed_trade(p, i) for i, p in enumerate([10.0, -5.0, 6.0, 4.0, -3.0])]
        metrics = calculate_trade_metrics(trades)

        assert metrics.total_trades == 5
        assert metrics.winning_trades == 3
        assert metrics.losing_trades == 2
        assert metrics.win_rate == pytest.approx(60.0)
        assert metrics.gross_profit == pytest.approx(20.0)
        assert metrics.gross_loss == pytest.approx(8.0)
        assert metrics.profit_factor == pytest.approx(2.5)
        assert metrics.payoff_ratio == pytest.approx((20 / 3) / 4)
        assert metrics.average_loss == pytest.approx(4.0)
        assert metrics.largest_loss == pytest.approx(5.0)
        assert metrics.net_profit == pytest.approx(12.0)
        assert metrics.max_consecutive_wins == 2
        assert metrics.average_holding_minutes == pytest.approx(120.0)
        assert metrics.exit_reasons == {"TAKE_PROFIT": 5}

    def test_no_losses_infinite_profit_factor(self):
        """Test profit factor is infinite without losses and null in JSON."""
        metrics = calculate_trade_metrics([closed_trade(5.0)])
        assert math.isinf(metrics.profit_factor)
        data = metrics.to_dict()
        assert data["profit_factor"] is None
        json.dumps(data)

    def test_ignores_non_closed(self):
        """Test rejected trades are ignored."""
        closed = closed_trade(5.0)
        rejected = BacktestTrade(
            id="T000009",
            symbol="BTC_USDT",
            side=OrderSide.BUY,
            strategy="s",
            signal_id="x",
            entry_time=T0,
            entry_price=100.0,
            quantity=0.0,
            stop_loss=98.0,
            take_profit=104.0,
            status=TradeStatus.REJECTED,
        )
        metrics = calculate_trade_metrics([closed, rejected])
        assert metrics.total_trades == 1

    def test_empty(self):
        """Test no trades give zero metrics."""
        metrics = calculate_trade_metrics([])
        assert metrics.total_trades == 0
        assert metrics.profit_factor == 0.0


# ============================================================================
# Analyzer
# ============================================================================


class TestPerformanceAnalyzer:
    """Tests for PerformanceAnalyzer."""

    def test_empty_inputs(self):
        """Test empty inputs give zero-valued metrics."""
        report = PerformanceAnalyzer().analyze([], [], 10000.0)
        assert report.returns.total_return == 0.0
        assert report.returns.sharpe_ratio == 0.0
        assert report.risk.max_drawdown == 0.0
        assert report.trades.total_trades == 0
        assert report.statistics.returns_pvalue == 1.0
        assert report.equity_curve == []
        assert report.monthly_returns == []

    def test_returns_and_drawdown(self):
        """Test total return and drawdown figures."""
        snapshots = make_snapshots([10000.0, 11000.0, 10500.0, 9500.0, 10800.0])
        report = PerformanceAnalyzer(risk_free_rate=0.0).analyze([], snapshots, 10000.0)

        assert report.returns.final_equity == 10800.0
        assert report.returns.total_return == pytest.approx(800.0)
        assert report.returns.total_return_percentage == pytest.approx(8.0)
        assert report.risk.max_drawdown == pytest.approx(1500.0)
        assert report.risk.max_drawdown_percentage == pytest.approx(1500 / 11000 * 100)
        assert report.risk.max_drawdown_duration_bars == 3
        assert report.returns.recovery_factor == pytest.approx(800 / 1500)
        assert report.returns.periods_per_year == pytest.approx(365.25 * 24)

    def test_sharpe_sign(self):
        """Test a rising noisy path has a positive Sharpe ratio."""
        rng = np.random.default_rng(1)
        equities = 10000 * np.cumprod(1 + rng.normal(0.001, 0.002, 200))
        report = PerformanceAnalyzer(risk_free_rate=0.0).analyze([], make_snapshots(list(equities)), 10000.0)
        assert report.returns.sharpe_ratio > 0
        assert report.returns.sortino_ratio > 0
        assert report.statistics.returns_pvalue < 0.05

    def test_fixed_periods_per_year(self):
        """Test an explicit periods-per-year overrides inference."""
        report = PerformanceAnalyzer(periods_per_year=252).analyze(
            [], make_snapshots([10000.0, 10100.0]), 10000.0
        )
        assert report.returns.periods_per_year == 252

    def test_deterministic(self):
        """Test the same inputs give the same report."""
        snapshots = make_snapshots([10000.0, 10100.0, 9900.0, 10200.0])
        trades = [closed_trade(2.0), closed_trade(-1.0, 1)]
        analyzer = PerformanceAnalyzer()
        assert analyzer.analyze(trades, snapshots, 10000.0).to_dict() == analyzer.analyze(
            trades, snapshots, 10000.0
        ).to_dict()

    def test_to_dict_json(self):
        """Test the report serializes to JSON."""
        report = PerformanceAnalyzer().analyze(
            [closed_trade(5.0)], make_snapshots([10000.0, 10005.0]), 10000.0
        )
        data = report.to_dict()
        json.dumps(data)
        assert set(data) == {
            "trades",
            "performance",
            "risk",
            "equity_curve",
            "drawdown_curve",
            "monthly_returns",
            "strategy_performance",
        }
        assert data["performance"]["benchmark"] is None
        assert "Performance Summary" in report.summary()

    def test_drawdown_curve(self):
        """Test underwater duration resets at new peaks."""
        curve = PerformanceAnalyzer.drawdown_curve(make_snapshots([10000.0, 9900.0, 9800.0, 10100.0]))
        assert [row["underwater_bars"] for row in curve] == [0, 1, 2, 0]

    def test_monthly_returns(self):
        """Test calendar months are measured against the previous month end."""
        equities = [10000.0 + 10 * i for i in range(60)]
        snapshots = make_snapshots(equities, step=timedelta(days=1))
        rows = PerformanceAnalyzer.monthly_returns(snapshots, 10000.0)

        assert [row["month"] for row in rows] == ["2024-01", "2024-02"]
        assert rows[0]["equity"] == pytest.approx(10300.0)
        assert rows[0]["return_percentage"] == pytest.approx(3.0)
        assert rows[1]["return_percentage"] == pytest.approx((10590 / 10300 - 1) * 100)

    def test_strategy_breakdown(self):
        """Test per-strategy statistics sorted by name."""
        trades = [
            closed_trade(5.0, 0, strategy="trend"),
            closed_trade(-2.0, 1, strategy="trend"),
            closed_trade(3.0, 2, strategy="mean_reversion"),
        ]
        breakdown = PerformanceAnalyzer.strategy_breakdown(trades)
        assert list(breakdown) == ["mean_reversion", "trend"]
        assert breakdown["trend"]["total_trades"] == 2
        assert breakdown["trend"]["net_profit"] == pytest.approx(3.0)
        assert breakdown["mean_reversion"]["profit_factor"] is None

    def test_benchmark(self):
        """Test benchmark comparison against itself."""
        rng = np.random.default_rng(3)
        equities = list(10000 * np.cumprod(1 + rng.normal(0, 0.01, 50)))
        snapshots = make_snapshots(equities)
        returns = period_returns(10000.0, equities)

        report = PerformanceAnalyzer().analyze([], snapshots, 10000.0, benchmark_returns=returns)
        assert report.benchmark.beta == pytest.approx(1.0)
        assert report.benchmark.correlation == pytest.approx(1.0)
        assert report.benchmark.tracking_error == pytest.approx(0.0, abs=1e-9)

    def test_benchmark_too_short(self):
        """Test benchmark comparison needs two periods."""
        report = PerformanceAnalyzer().analyze([], make_snapshots([10000.0]), 10000.0, benchmark_returns=[0.01])
        assert report.benchmark is None
