"""
Performance analytics for backtest results.

Computes, from closed trades and the ledger's snapshot series:
- Return metrics (total, annualized, CAGR, Sharpe, Sortino, Calmar)
- Risk metrics (volatility, downside deviation, VaR/CVaR, drawdown)
- Trade statistics (win rate, profit factor, payoff, streaks, fees)
- Equity and drawdown curves, monthly returns, per-strategy breakdown
- Optional benchmark comparison and significance of the mean return

All calculations are pure: the same inputs give the same report, and
empty or degenerate inputs give zero-valued metrics instead of raising.
Percentages are expressed on a 0-100 scale.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from quant_backtest.core.data_types import BacktestTrade, PortfolioSnapshot, TradeStatus

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 365.25 * 24 * 3600
DEFAULT_PERIODS_PER_YEAR = 365.0
VAR_CONFIDENCE = 0.95
# Caps the exponent of compounded annualization for very short runs
MAX_LOG_GROWTH = 700.0


def _json_float(value: float) -> float | None:
    """Non-finite values have no JSON representation."""
    return float(value) if math.isfinite(value) else None


@dataclass
class ReturnMetrics:
    """Return-based performance metrics."""

    initial_balance: float
    final_equity: float
    total_return: float
    total_return_percentage: float
    annualized_return: float
    cagr: float
    mean_period_return: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    recovery_factor: float
    periods_per_year: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "initial_balance": self.initial_balance,
            "final_equity": self.final_equity,
            "total_return": self.total_return,
            "total_return_percentage": self.total_return_percentage,
            "annualized_return": self.annualized_return,
            "cagr": self.cagr,
            "mean_period_return": self.mean_period_return,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "calmar_ratio": self.calmar_ratio,
            "recovery_factor": self.recovery_factor,
            "periods_per_year": self.periods_per_year,
        }


@dataclass
class RiskMetrics:
    """Volatility, tail and drawdown metrics."""

    volatility: float
    annualized_volatility: float
    downside_deviation: float
    var_95: float
    cvar_95: float
    max_drawdown: float
    max_drawdown_percentage: float
    max_drawdown_duration_bars: int
    current_drawdown_percentage: float

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "volatility": self.volatility,
            "annualized_volatility": self.annualized_volatility,
            "downside_deviation": self.downside_deviation,
            "var_95": self.var_95,
            "cvar_95": self.cvar_95,
            "max_drawdown": self.max_drawdown,
            "max_drawdown_percentage": self.max_drawdown_percentage,
            "max_drawdown_duration_bars": self.max_drawdown_duration_bars,
            "current_drawdown_percentage": self.current_drawdown_percentage,
        }


@dataclass
class TradeMetrics:
    """Statistics over closed trades."""

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    net_profit: float = 0.0
    profit_factor: float = 0.0
    payoff_ratio: float = 0.0
    expected_value: float = 0.0
    max_consecutive_wins: int = 0
    max_consecutive_losses: int = 0
    average_holding_minutes: float = 0.0
    total_fees: float = 0.0
    exit_reasons: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "average_win": self.average_win,
            "average_loss": self.average_loss,
            "largest_win": self.largest_win,
            "largest_loss": self.largest_loss,
            "gross_profit": self.gross_profit,
            "gross_loss": self.gross_loss,
            "net_profit": self.net_profit,
            "profit_factor": _json_float(self.profit_factor),
            "payoff_ratio": _json_float(self.payoff_ratio),
            "expected_value": self.expected_value,
            "max_consecutive_wins": self.max_consecutive_wins,
            "max_consecutive_losses": self.max_consecutive_losses,
            "average_holding_minutes": self.average_holding_minutes,
            "total_fees": self.total_fees,
            "exit_reasons": dict(self.exit_reasons),
        }


@dataclass
class BenchmarkMetrics:
    """Benchmark comparison metrics."""

    alpha: float
    beta: float
    correlation: float
    tracking_error: float
    information_ratio: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "alpha": self.alpha,
            "beta": self.beta,
            "correlation": self.correlation,
            "tracking_error": self.tracking_error,
            "information_ratio": self.information_ratio,
        }


@dataclass
class StatisticalTests:
    """Significance of the mean period return."""

    observations: int
    returns_tstat: float
    returns_pvalue: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "observations": self.observations,
            "returns_tstat": self.returns_tstat,
            "returns_pvalue": self.returns_pvalue,
        }


@dataclass
class PerformanceReport:
    """Complete performance report of one run."""

    returns: ReturnMetrics
    risk: RiskMetrics
    trades: TradeMetrics
    statistics: StatisticalTests
    equity_curve: list[dict[str, Any]]
    drawdown_curve: list[dict[str, Any]]
    monthly_returns: list[dict[str, Any]]
    strategy_performance: dict[str, dict[str, Any]]
    benchmark: BenchmarkMetrics | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        performance = self.returns.to_dict()
        performance["statistics"] = self.statistics.to_dict()
        performance["benchmark"] = self.benchmark.to_dict() if self.benchmark else None
        return {
            "trades": self.trades.to_dict(),
            "performance": performance,
            "risk": self.risk.to_dict(),
            "equity_curve": self.equity_curve,
            "drawdown_curve": self.drawdown_curve,
            "monthly_returns": self.monthly_returns,
            "strategy_performance": self.strategy_performance,
        }

    def summary(self) -> str:
        """Get a summary string of key metrics."""
        profit_factor = self.trades.profit_factor
        pf_text = "inf" if math.isinf(profit_factor) else f"{profit_factor:.2f}"
        return f"""
Performance Summary
{'=' * 60}
Total Return:      {self.returns.total_return_percentage:>10.2f}%
Annual Return:     {self.returns.annualized_return:>10.2f}%
Sharpe Ratio:      {self.returns.sharpe_ratio:>10.2f}
Sortino Ratio:     {self.returns.sortino_ratio:>10.2f}
Max Drawdown:      {self.risk.max_drawdown_percentage:>10.2f}%
Volatility:        {self.risk.annualized_volatility:>10.2f}%
Win Rate:          {self.trades.win_rate:>10.2f}%
Profit Factor:     {pf_text:>10}
Total Trades:      {self.trades.total_trades:>10d}
{'=' * 60}
"""


# =============================================================================
# Pure helpers
# =============================================================================


def period_returns(initial_balance: float, equities: Sequence[float]) -> np.ndarray:
    """Simple returns of the equity path starting from ``initial_balance``."""
    if not equities:
        return np.array([], dtype=float)
    path = np.concatenate([[initial_balance], np.asarray(equities, dtype=float)])
    previous = path[:-1]
    changes = np.diff(path)
    return np.divide(changes, previous, out=np.zeros_like(changes), where=previous > 0)


def infer_periods_per_year(timestamps: Sequence[datetime], default: float = DEFAULT_PERIODS_PER_YEAR) -> float:
    """Periods per year implied by the median spacing of ``timestamps``."""
    if len(timestamps) < 2:
        return default
    spacings = np.diff([ts.timestamp() for ts in timestamps])
    spacings = spacings[spacings > 0]
    if len(spacings) == 0:
        return default
    return float(SECONDS_PER_YEAR / np.median(spacings))


def compound_annualized(growth: float, years: float) -> float:
    """Annualized percentage return of a total ``growth`` factor."""
    if years <= 0:
        return 0.0
    if growth <= 0:
        return -100.0
    log_growth = min(math.log(growth) / years, MAX_LOG_GROWTH)
    return (math.exp(log_growth) - 1) * 100


def sample_volatility(returns: np.ndarray) -> float:
    """Sample standard deviation (n - 1 denominator)."""
    if len(returns) < 2:
        return 0.0
    return float(np.std(returns, ddof=1))


def downside_deviation(returns: np.ndarray) -> float:
    """Below-mean semideviation with the same denominator as the volatility.

    Only negative deviations from the mean contribute, so the result never
    exceeds :func:`sample_volatility`.
    """
    if len(returns) < 2:
        return 0.0
    shortfall = np.minimum(returns - returns.mean(), 0.0)
    return float(np.sqrt(np.sum(shortfall**2) / (len(returns) - 1)))


def historical_var(returns: np.ndarray, confidence: float = VAR_CONFIDENCE) -> tuple[float, float]:
    """Historical VaR and CVaR as non-positive percentages.

    Returns:
        Tuple of (var, cvar); 0 when the tail is non-negative.
    """
    if len(returns) == 0:
        return 0.0, 0.0
    ordered = np.sort(returns)
    index = int(math.floor((1 - confidence) * len(ordered)))
    index = min(index, len(ordered) - 1)
    var = min(float(ordered[index]), 0.0)
    cvar = min(float(ordered[: index + 1].mean()), 0.0)
    return var * 100, cvar * 100


def max_consecutive(values: Sequence[float], condition: Callable[[float], bool]) -> int:
    """Calculate maximum consecutive occurrences matching condition."""
    max_count = 0
    current_count = 0
    for v in values:
        if condition(v):
            current_count += 1
            max_count = max(max_count, current_count)
        else:
            current_count = 0
    return max_count


def calculate_trade_metrics(trades: Sequence[BacktestTrade]) -> TradeMetrics:
    """Trade statistics over CLOSED trades; other statuses are ignored."""
    closed = [t for t in trades if t.status is TradeStatus.CLOSED]
    if not closed:
        return TradeMetrics()

    closed.sort(key=lambda t: (t.exit_time, t.id))
    pnls = [t.pnl for t in closed]
    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]

    gross_profit = float(sum(wins))
    gross_loss = float(abs(sum(losses)))
    average_win = float(np.mean(wins)) if wins else 0.0
    average_loss = float(abs(np.mean(losses))) if losses else 0.0

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = math.inf if gross_profit > 0 else 0.0

    if average_loss > 0:
        payoff_ratio = average_win / average_loss
    else:
        payoff_ratio = math.inf if average_win > 0 else 0.0

    total = len(closed)
    exit_reasons: dict[str, int] = {}
    for trade in closed:
        if trade.exit_reason is not None:
            exit_reasons[trade.exit_reason.value] = exit_reasons.get(trade.exit_reason.value, 0) + 1

    return TradeMetrics(
        total_trades=total,
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / total * 100,
        average_win=average_win,
        average_loss=average_loss,
        largest_win=float(max(wins)) if wins else 0.0,
        largest_loss=float(abs(min(losses))) if losses else 0.0,
        gross_profit=gross_profit,
        gross_loss=gross_loss,
        net_profit=float(sum(pnls)),
        profit_factor=profit_factor,
        payoff_ratio=payoff_ratio,
        expected_value=float(np.mean(pnls)),
        max_consecutive_wins=max_consecutive(pnls, lambda x: x > 0),
        max_consecutive_losses=max_consecutive(pnls, lambda x: x < 0),
        average_holding_minutes=float(np.mean([t.holding_minutes for t in closed])),
        total_fees=float(sum(t.fees for t in closed)),
        exit_reasons=exit_reasons,
    )


class PerformanceAnalyzer:
    """Builds performance reports from trades and ledger snapshots."""

    def __init__(
        self,
        risk_free_rate: float = 0.05,
        periods_per_year: float | None = None,
    ) -> None:
        """Initialize performance analyzer.

        Args:
            risk_free_rate: Annual risk-free rate for Sharpe and Sortino.
            periods_per_year: Return periods per year; inferred from the
                snapshot spacing when None.
        """
        self.risk_free_rate = risk_free_rate
        self.periods_per_year = periods_per_year

    def analyze(
        self,
        trades: Sequence[BacktestTrade],
        snapshots: Sequence[PortfolioSnapshot],
        initial_balance: float,
        benchmark_returns: Sequence[float] | None = None,
    ) -> PerformanceReport:
        """Generate the complete performance report.

        Args:
            trades: All trade records of the run (non-CLOSED are ignored).
            snapshots: Ledger snapshot series in time order.
            initial_balance: Starting balance of the run.
            benchmark_returns: Optional benchmark returns aligned with the
                snapshot periods.

        Returns:
            PerformanceReport.
        """
        timestamps = [s.timestamp for s in snapshots]
        equities = [s.equity for s in snapshots]
        returns = period_returns(initial_balance, equities)
        periods = self.periods_per_year or infer_periods_per_year(timestamps)

        risk = self._calculate_risk_metrics(returns, snapshots, periods)
        return_metrics = self._calculate_return_metrics(
            returns, snapshots, initial_balance, periods, risk
        )
        benchmark = None
        if benchmark_returns is not None:
            benchmark = self._calculate_benchmark_metrics(returns, np.asarray(benchmark_returns, dtype=float), periods)

        return PerformanceReport(
            returns=return_metrics,
            risk=risk,
            trades=calculate_trade_metrics(trades),
            statistics=self._calculate_statistical_tests(returns),
            equity_curve=self.equity_curve(snapshots),
            drawdown_curve=self.drawdown_curve(snapshots),
            monthly_returns=self.monthly_returns(snapshots, initial_balance),
            strategy_performance=self.strategy_breakdown(trades),
            benchmark=benchmark,
        )

    # =========================================================================
    # Metric groups
    # =========================================================================

    def _calculate_return_metrics(
        self,
        returns: np.ndarray,
        snapshots: Sequence[PortfolioSnapshot],
        initial_balance: float,
        periods: float,
        risk: RiskMetrics,
    ) -> ReturnMetrics:
        final_equity = snapshots[-1].equity if snapshots else initial_balance
        total_return = final_equity - initial_balance
        total_return_pct = total_return / initial_balance * 100 if initial_balance > 0 else 0.0
        growth = final_equity / initial_balance if initial_balance > 0 else 0.0

        years = 0.0
        if len(snapshots) >= 2:
            years = (snapshots[-1].timestamp - snapshots[0].timestamp).total_seconds() / SECONDS_PER_YEAR
        annualized = compound_annualized(growth, years)
        cagr = compound_annualized(growth, len(returns) / periods) if len(returns) else 0.0

        mean_return = float(returns.mean()) if len(returns) else 0.0
        period_rf = self.risk_free_rate / periods
        excess = mean_return - period_rf
        volatility = sample_volatility(returns)
        downside = downside_deviation(returns)
        sharpe = excess / volatility * math.sqrt(periods) if volatility > 0 else 0.0
        sortino = excess / downside * math.sqrt(periods) if downside > 0 else 0.0

        max_dd_pct = risk.max_drawdown_percentage
        calmar = annualized / max_dd_pct if max_dd_pct > 0 else 0.0
        recovery = total_return / risk.max_drawdown if risk.max_drawdown > 0 else 0.0

        return ReturnMetrics(
            initial_balance=initial_balance,
            final_equity=final_equity,
            total_return=total_return,
            total_return_percentage=total_return_pct,
            annualized_return=annualized,
            cagr=cagr,
            mean_period_return=mean_return * 100,
            sharpe_ratio=float(sharpe),
            sortino_ratio=float(sortino),
            calmar_ratio=float(calmar),
            recovery_factor=float(recovery),
            periods_per_year=periods,
        )

    def _calculate_risk_metrics(
        self,
        returns: np.ndarray,
        snapshots: Sequence[PortfolioSnapshot],
        periods: float,
    ) -> RiskMetrics:
        volatility = sample_volatility(returns)
        var_95, cvar_95 = historical_var(returns)
        latest = snapshots[-1] if snapshots else None

        longest = current = 0
        for snapshot in snapshots:
            current = current + 1 if snapshot.drawdown > 0 else 0
            longest = max(longest, current)

        return RiskMetrics(
            volatility=volatility * 100,
            annualized_volatility=volatility * math.sqrt(periods) * 100,
            downside_deviation=downside_deviation(returns) * 100,
            var_95=var_95,
            cvar_95=cvar_95,
            max_drawdown=latest.max_drawdown if latest else 0.0,
            max_drawdown_percentage=latest.max_drawdown_percentage if latest else 0.0,
            max_drawdown_duration_bars=longest,
            current_drawdown_percentage=latest.drawdown_percentage if latest else 0.0,
        )

    def _calculate_benchmark_metrics(
        self,
        returns: np.ndarray,
        benchmark_returns: np.ndarray,
        periods: float,
    ) -> BenchmarkMetrics | None:
        # Align lengths
        n = min(len(returns), len(benchmark_returns))
        if n < 2:
            return None
        returns = returns[:n]
        benchmark_returns = benchmark_returns[:n]

        covariance = np.cov(returns, benchmark_returns, ddof=1)
        beta = covariance[0, 1] / covariance[1, 1] if covariance[1, 1] > 0 else 0.0
        alpha = (returns.mean() - beta * benchmark_returns.mean()) * periods * 100

        if returns.std() > 0 and benchmark_returns.std() > 0:
            correlation = float(np.corrcoef(returns, benchmark_returns)[0, 1])
        else:
            correlation = 0.0

        active = returns - benchmark_returns
        active_std = sample_volatility(active)
        tracking_error = active_std * math.sqrt(periods) * 100
        information_ratio = active.mean() / active_std * math.sqrt(periods) if active_std > 0 else 0.0

        return BenchmarkMetrics(
            alpha=float(alpha),
            beta=float(beta),
            correlation=correlation,
            tracking_error=float(tracking_error),
            information_ratio=float(information_ratio),
        )

    def _calculate_statistical_tests(self, returns: np.ndarray) -> StatisticalTests:
        """T-test of the mean period return against zero."""
        if len(returns) < 2 or sample_volatility(returns) == 0:
            return StatisticalTests(observations=len(returns), returns_tstat=0.0, returns_pvalue=1.0)
        t_stat, p_value = stats.ttest_1samp(returns, 0.0)
        return StatisticalTests(
            observations=len(returns),
            returns_tstat=float(t_stat),
            returns_pvalue=float(p_value),
        )

    # =========================================================================
    # Series and breakdowns
    # =========================================================================

    @staticmethod
    def equity_curve(snapshots: Sequence[PortfolioSnapshot]) -> list[dict[str, Any]]:
        return [
            {
                "timestamp": s.timestamp.isoformat(),
                "equity": s.equity,
                "balance": s.balance,
                "unrealized_pnl": s.unrealized_pnl,
            }
            for s in snapshots
        ]

    @staticmethod
    def drawdown_curve(snapshots: Sequence[PortfolioSnapshot]) -> list[dict[str, Any]]:
        """Drawdown per snapshot with the running underwater duration in bars."""
        curve = []
        underwater = 0
        for s in snapshots:
            underwater = underwater + 1 if s.drawdown > 0 else 0
            curve.append(
                {
                    "timestamp": s.timestamp.isoformat(),
                    "peak_equity": s.peak_equity,
                    "drawdown": s.drawdown,
                    "drawdown_percentage": s.drawdown_percentage,
                    "underwater_bars": underwater,
                }
            )
        return curve

    @staticmethod
    def monthly_returns(
        snapshots: Sequence[PortfolioSnapshot],
        initial_balance: float,
    ) -> list[dict[str, Any]]:
        """Calendar month returns of the equity path.

        The first month is measured against the initial balance.
        """
        if not snapshots:
            return []
        equity = pd.Series(
            [s.equity for s in snapshots],
            index=pd.DatetimeIndex([s.timestamp for s in snapshots]),
        )
        month_end = equity.resample("ME").last().dropna()
        previous = month_end.shift(1)
        previous.iloc[0] = initial_balance

        rows = []
        for timestamp, value in month_end.items():
            base = previous[timestamp]
            change = (value / base - 1) * 100 if base > 0 else 0.0
            rows.append(
                {
                    "month": timestamp.strftime("%Y-%m"),
                    "equity": float(value),
                    "return_percentage": float(change),
                }
            )
        return rows

    @staticmethod
    def strategy_breakdown(trades: Sequence[BacktestTrade]) -> dict[str, dict[str, Any]]:
        """Trade statistics per strategy name, sorted by name."""
        names = sorted({t.strategy for t in trades})
        breakdown = {}
        for name in names:
            subset = [t for t in trades if t.strategy == name]
            metrics = calculate_trade_metrics(subset)
            breakdown[name] = {
                "signals_executed": sum(1 for t in subset if t.status is not TradeStatus.REJECTED),
                "rejected": sum(1 for t in subset if t.status is TradeStatus.REJECTED),
                "total_trades": metrics.total_trades,
                "win_rate": metrics.win_rate,
                "net_profit": metrics.net_profit,
                "profit_factor": _json_float(metrics.profit_factor),
                "total_fees": metrics.total_fees,
            }
        return breakdown
