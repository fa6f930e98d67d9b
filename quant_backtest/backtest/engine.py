"""
Backtesting engine.

Orchestrates one backtest run through an explicit state machine:

    CONFIGURED -> FETCHING_DATA -> VALIDATING -> SIMULATING -> FINALIZED
                  (any non-terminal state) -> FAILED

Per bar, in order:
1. Cooperative cancellation check
2. Every strategy receives the window of bars up to the current one
3. Each signal is filtered, closes opposite positions, or goes through
   risk evaluation and execution simulation
4. Stop-loss and take-profit exits are checked against the bar close
5. On the final bar every open trade closes at END_OF_PERIOD
6. The ledger appends the bar's snapshot

Fatal errors never escape ``run_backtest``: they yield a FAILED result
carrying the error. Identical config, data and seed produce identical
results.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from quant_backtest.backtest.analyzer import PerformanceAnalyzer, PerformanceReport, TradeMetrics
from quant_backtest.backtest.ledger import PortfolioLedger
from quant_backtest.backtest.simulator import ExecutionSimulator
from quant_backtest.backtest.strategies import Strategy
from quant_backtest.config.backtest_config import BacktestConfig
from quant_backtest.config.settings import EngineSettings, get_settings
from quant_backtest.core.data_types import (
    BacktestTrade,
    ExitReason,
    MarketBar,
    OrderSide,
    PortfolioSnapshot,
    TradeStatus,
    TradingSignal,
)
from quant_backtest.core.exceptions import (
    BacktestCancelledError,
    BacktestError,
    BacktestInProgressError,
    ConfigurationError,
    DataValidationError,
    InvalidStateTransition,
    RiskLimitExceeded,
)
from quant_backtest.core.reproducibility import create_rng, derive_run_id, derive_run_seed
from quant_backtest.data.fetcher import FetchResult, HistoricalDataFetcher
from quant_backtest.data.sources import HistoricalDataSource
from quant_backtest.monitoring.logger import ContextLogger, get_run_logger, log_risk, trace_bar
from quant_backtest.risk.correlation import CorrelationProvider
from quant_backtest.risk.risk_manager import RiskManager

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


# =============================================================================
# Run State Machine
# =============================================================================


class RunState(str, Enum):
    """Lifecycle states of a backtest run."""

    CONFIGURED = "CONFIGURED"
    FETCHING_DATA = "FETCHING_DATA"
    VALIDATING = "VALIDATING"
    SIMULATING = "SIMULATING"
    FINALIZED = "FINALIZED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.FINALIZED, RunState.FAILED)


RUN_STATE_TRANSITIONS: dict[RunState, frozenset[RunState]] = {
    RunState.CONFIGURED: frozenset({RunState.FETCHING_DATA, RunState.FAILED}),
    RunState.FETCHING_DATA: frozenset({RunState.VALIDATING, RunState.FAILED}),
    RunState.VALIDATING: frozenset({RunState.SIMULATING, RunState.FAILED}),
    RunState.SIMULATING: frozenset({RunState.FINALIZED, RunState.FAILED}),
    RunState.FINALIZED: frozenset(),
    RunState.FAILED: frozenset(),
}


class RunStateMachine:
    """Tracks the state of one run and enforces the transition table."""

    def __init__(self) -> None:
        self._state = RunState.CONFIGURED
        self._history: list[RunState] = [RunState.CONFIGURED]

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def history(self) -> tuple[RunState, ...]:
        return tuple(self._history)

    def can_transition(self, target: RunState) -> bool:
        return target in RUN_STATE_TRANSITIONS[self._state]

    def transition(self, target: RunState) -> None:
        """Move to ``target``.

        Raises:
            InvalidStateTransition: If the table does not allow the move.
        """
        if not self.can_transition(target):
            raise InvalidStateTransition(self._state.value, target.value)
        self._state = target
        self._history.append(target)


# =============================================================================
# Run Records
# =============================================================================


@dataclass(frozen=True)
class BacktestProgress:
    """Progress report handed to the progress callback."""

    run_id: str
    state: RunState
    bars_processed: int
    total_bars: int
    trades_opened: int
    equity: float
    timestamp: datetime | None = None

    @property
    def percent_complete(self) -> float:
        if self.total_bars == 0:
            return 0.0
        return self.bars_processed / self.total_bars * 100


@dataclass(frozen=True)
class SignalRejection:
    """Why a signal did not become a trade."""

    signal_id: str
    strategy: str
    timestamp: datetime
    stage: str
    reason: str
    limit_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "strategy": self.strategy,
            "timestamp": self.timestamp.isoformat(),
            "stage": self.stage,
            "reason": self.reason,
            "limit_name": self.limit_name,
        }


@dataclass
class RunCounts:
    """Signal and trade counters of a run."""

    signals_received: int = 0
    signals_filtered: int = 0
    risk_rejections: int = 0
    risk_adjustments: int = 0
    execution_rejections: int = 0
    trades_opened: int = 0
    trades_closed: int = 0

    @property
    def execution_attempts(self) -> int:
        return self.trades_opened + self.execution_rejections

    @property
    def execution_rejection_rate(self) -> float:
        if self.execution_attempts == 0:
            return 0.0
        return self.execution_rejections / self.execution_attempts

    def to_dict(self) -> dict[str, Any]:
        return {
            "signals_received": self.signals_received,
            "signals_filtered": self.signals_filtered,
            "risk_rejections": self.risk_rejections,
            "risk_adjustments": self.risk_adjustments,
            "execution_rejections": self.execution_rejections,
            "trades_opened": self.trades_opened,
            "trades_closed": self.trades_closed,
        }


@dataclass
class BacktestResult:
    """Outcome of one run.

    FINALIZED results carry the full trade record, snapshot series and
    performance report. FAILED results carry the error and empty
    statistics; they are never partial successes.
    """

    run_id: str
    state: RunState
    config: BacktestConfig | None
    seed: int | None = None
    trades: tuple[BacktestTrade, ...] = ()
    snapshots: tuple[PortfolioSnapshot, ...] = ()
    report: PerformanceReport | None = None
    rejections: tuple[SignalRejection, ...] = ()
    counts: RunCounts = field(default_factory=RunCounts)
    fetch: FetchResult | None = None
    error: BacktestError | None = None
    state_history: tuple[RunState, ...] = ()
    timing: dict[str, Any] = field(default_factory=dict)

    @property
    def is_success(self) -> bool:
        return self.state is RunState.FINALIZED

    @property
    def closed_trades(self) -> list[BacktestTrade]:
        return [t for t in self.trades if t.status is TradeStatus.CLOSED]

    @property
    def rejected_trades(self) -> list[BacktestTrade]:
        return [t for t in self.trades if t.status is TradeStatus.REJECTED]

    @property
    def final_equity(self) -> float | None:
        return self.snapshots[-1].equity if self.snapshots else None

    @property
    def max_drawdown(self) -> float:
        return self.snapshots[-1].max_drawdown if self.snapshots else 0.0

    def raise_for_state(self) -> "BacktestResult":
        """Raise the run's error if it FAILED, else return self."""
        if self.state is RunState.FAILED:
            raise self.error or BacktestError(f"Backtest {self.run_id} failed")
        return self

    def to_dict(self, include_timing: bool = True) -> dict[str, Any]:
        """Convert to a JSON compatible dictionary.

        Args:
            include_timing: Include wall clock timing, the only
                non-deterministic section.
        """
        report = self.report.to_dict() if self.report else {}
        data_quality = None
        if self.fetch is not None:
            statistics = self.fetch.statistics.to_dict()
            statistics.pop("elapsed_ms", None)
            data_quality = {"validation": self.fetch.validation.to_dict(), "fetch": statistics}

        data = {
            "schema_version": SCHEMA_VERSION,
            "run_id": self.run_id,
            "state": self.state.value,
            "config": self.config.to_dict() if self.config else None,
            "period": {
                "start": self.config.start_date.isoformat() if self.config else None,
                "end": self.config.end_date.isoformat() if self.config else None,
            },
            "seed": self.seed,
            "trades": report.get("trades", TradeMetrics().to_dict()),
            "performance": report.get("performance", {}),
            "risk": report.get("risk", {}),
            "portfolio": [s.to_dict() for s in self.snapshots],
            "execution_details": [t.to_dict() for t in self.trades],
            "rejections": [r.to_dict() for r in self.rejections],
            "counts": self.counts.to_dict(),
            "equity_curve": report.get("equity_curve", []),
            "drawdown_curve": report.get("drawdown_curve", []),
            "monthly_returns": report.get("monthly_returns", []),
            "strategy_performance": report.get("strategy_performance", {}),
            "data_quality": data_quality,
            "state_history": [s.value for s in self.state_history],
            "error": self.error.to_dict() if self.error else None,
        }
        if include_timing:
            data["timing"] = dict(self.timing)
        return data

    def fingerprint(self) -> str:
        """Stable sha256 digest of everything except timing."""
        payload = json.dumps(self.to_dict(include_timing=False), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# =============================================================================
# Simulation
# =============================================================================


class _BacktestRun:
    """Mutable state of one simulation, owned by a single run."""

    def __init__(
        self,
        run_id: str,
        config: BacktestConfig,
        strategies: Sequence[Strategy],
        seed: int,
        correlation_provider: CorrelationProvider | None,
        run_logger: ContextLogger,
    ) -> None:
        self.run_id = run_id
        self.config = config
        self.strategies = strategies
        self.log = run_logger
        self.ledger = PortfolioLedger(config.initial_balance)
        self.simulator = ExecutionSimulator.from_config(config, create_rng(seed))
        self.risk_manager = RiskManager(config.risk_management, config.initial_balance, correlation_provider)
        self.counts = RunCounts()
        self.rejections: list[SignalRejection] = []
        self._records: dict[str, BacktestTrade] = {}
        self._open: dict[str, BacktestTrade] = {}
        self._sequence = 0
        self._breaker_engaged = False

    @property
    def trades(self) -> tuple[BacktestTrade, ...]:
        return tuple(self._records.values())

    def _next_trade_id(self) -> str:
        self._sequence += 1
        return f"T{self._sequence:06d}"

    def process_bar(self, index: int, bars: Sequence[MarketBar]) -> PortfolioSnapshot:
        bar = bars[index]
        window = bars[: index + 1]
        carried = list(self._open)
        opened: list[BacktestTrade] = []
        closed: list[BacktestTrade] = []

        self._update_breaker()

        for strategy in self.strategies:
            try:
                signals = strategy.generate_signals(window)
            except BacktestError:
                raise
            except Exception as e:
                raise BacktestError(
                    f"Strategy {strategy.name} failed on bar {index}: {e}",
                    error_code="STRATEGY_ERROR",
                    details={"strategy": strategy.name, "bar_index": index},
                ) from e
            for signal in signals:
                self.counts.signals_received += 1
                self._handle_signal(strategy.name, signal, bar, carried, opened, closed)

        for trade_id in carried:
            trade = self._open.get(trade_id)
            if trade is None:
                continue
            reason = self._exit_reason(trade, bar)
            if reason is not None:
                closed.append(self._close(trade, bar, reason))

        if index == len(bars) - 1:
            for trade in list(self._open.values()):
                closed.append(self._close(trade, bar, ExitReason.END_OF_PERIOD))

        return self.ledger.advance(bar.timestamp, {bar.symbol: bar.close}, opened, closed)

    def _update_breaker(self) -> None:
        engaged = self.risk_manager.is_breaker_engaged(self.ledger.latest)
        if engaged != self._breaker_engaged:
            latest = self.ledger.latest
            drawdown = latest.drawdown_percentage if latest else 0.0
            if engaged:
                log_risk(
                    f"Drawdown breaker engaged at {drawdown:.2f}%; new entries blocked",
                    run_id=self.run_id,
                    drawdown_percentage=drawdown,
                )
            else:
                log_risk(
                    f"Drawdown recovered to {drawdown:.2f}%; entries allowed",
                    level="INFO",
                    run_id=self.run_id,
                )
            self._breaker_engaged = engaged

    def _reject(
        self,
        strategy: str,
        signal: TradingSignal,
        stage: str,
        reason: str,
        limit_name: str | None = None,
    ) -> None:
        self.rejections.append(
            SignalRejection(
                signal_id=signal.id,
                strategy=strategy,
                timestamp=signal.timestamp,
                stage=stage,
                reason=reason,
                limit_name=limit_name,
            )
        )

    def _handle_signal(
        self,
        strategy: str,
        signal: TradingSignal,
        bar: MarketBar,
        carried: Sequence[str],
        opened: list[BacktestTrade],
        closed: list[BacktestTrade],
    ) -> None:
        if signal.symbol != self.config.symbol:
            self.counts.signals_filtered += 1
            self._reject(strategy, signal, "filter", f"Signal symbol {signal.symbol} is not {self.config.symbol}")
            return
        if self.risk_manager.is_filtered(signal):
            self.counts.signals_filtered += 1
            self._reject(strategy, signal, "filter", "Signal strength or confidence below minimum")
            return

        # Opposite positions opened at earlier bars close first (FIFO)
        opposite = [
            self._open[trade_id]
            for trade_id in carried
            if trade_id in self._open and self._open[trade_id].side is signal.side.opposite
        ]
        if opposite:
            for trade in opposite:
                closed.append(self._close(trade, bar, ExitReason.STRATEGY_EXIT))
            return

        if signal.side is OrderSide.SELL and not self.config.execution.allow_short:
            error = RiskLimitExceeded("Short entries are disabled", limit_name="allow_short")
            self.counts.risk_rejections += 1
            self._reject(strategy, signal, "risk", error.message, error.limit_name)
            return

        decision = self.risk_manager.evaluate(signal, bar.close, self.ledger.latest, list(self._open.values()))
        if not decision.accepted:
            error = decision.to_error()
            self.counts.risk_rejections += 1
            self._reject(strategy, signal, "risk", error.message, error.limit_name)
            return
        if decision.adjusted:
            self.counts.risk_adjustments += 1

        fill = self.simulator.simulate_entry(signal, bar, decision.quantity)
        if fill.is_rejected:
            rejection = fill.to_rejection(signal.id)
            stop_loss, take_profit = decision.exit_levels(bar.close, signal.side)
            trade = BacktestTrade(
                id=self._next_trade_id(),
                symbol=signal.symbol,
                side=signal.side,
                strategy=strategy,
                signal_id=signal.id,
                entry_time=bar.timestamp,
                entry_price=bar.close,
                quantity=decision.quantity,
                stop_loss=stop_loss,
                take_profit=take_profit,
                status=TradeStatus.REJECTED,
                rejection_reason=rejection.message,
            )
            self._records[trade.id] = trade
            self.counts.execution_rejections += 1
            self._reject(strategy, signal, "execution", rejection.message)
            return

        stop_loss, take_profit = decision.exit_levels(fill.fill_price, signal.side)
        trade = BacktestTrade(
            id=self._next_trade_id(),
            symbol=signal.symbol,
            side=signal.side,
            strategy=strategy,
            signal_id=signal.id,
            entry_time=bar.timestamp,
            entry_price=fill.fill_price,
            quantity=fill.quantity,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_fees=fill.commission,
            slippage=fill.price_adjustment,
        )
        self._records[trade.id] = trade
        self._open[trade.id] = trade
        opened.append(trade)
        self.counts.trades_opened += 1
        self.log.debug(
            f"Opened {trade.id} {trade.side.value} {trade.quantity:.6f} @ {trade.entry_price:.4f}",
            extra={"extra_data": {"trade_id": trade.id, "strategy": strategy}},
        )

    @staticmethod
    def _exit_reason(trade: BacktestTrade, bar: MarketBar) -> ExitReason | None:
        price = bar.close
        if trade.side is OrderSide.BUY:
            if price <= trade.stop_loss:
                return ExitReason.STOP_LOSS
            if price >= trade.take_profit:
                return ExitReason.TAKE_PROFIT
        else:
            if price >= trade.stop_loss:
                return ExitReason.STOP_LOSS
            if price <= trade.take_profit:
                return ExitReason.TAKE_PROFIT
        return None

    def _close(self, trade: BacktestTrade, bar: MarketBar, reason: ExitReason) -> BacktestTrade:
        fill = self.simulator.simulate_exit(trade, bar, reason)
        closed = trade.close(bar.timestamp, fill.fill_price, fill.commission, reason)
        del self._open[trade.id]
        self._records[trade.id] = closed
        self.counts.trades_closed += 1
        self.log.debug(
            f"Closed {closed.id} ({reason.value}) @ {closed.exit_price:.4f}, pnl {closed.pnl:.2f}",
            extra={"extra_data": {"trade_id": closed.id, "exit_reason": reason.value}},
        )
        return closed


# =============================================================================
# Engine
# =============================================================================


class BacktestingEngine:
    """Runs backtests of registered strategies against historical data."""

    def __init__(
        self,
        data_source: HistoricalDataSource | None = None,
        fetcher: HistoricalDataFetcher | None = None,
        correlation_provider: CorrelationProvider | None = None,
        settings: EngineSettings | None = None,
        progress_callback: Callable[[BacktestProgress], None] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            data_source: Historical data source; wrapped in a fetcher.
            fetcher: Pre-built fetcher, takes precedence over ``data_source``.
            correlation_provider: Correlation capability for the risk manager.
            settings: Engine settings; application settings when omitted.
            progress_callback: Called every ``progress_every_bars`` bars.

        Raises:
            ConfigurationError: If neither a data source nor a fetcher is given.
        """
        if fetcher is None:
            if data_source is None:
                raise ConfigurationError("A data source or fetcher is required", field_name="data_source")
            fetcher = HistoricalDataFetcher(data_source)
        self.fetcher = fetcher
        self.correlation_provider = correlation_provider
        self.settings = settings or get_settings().engine
        self.progress_callback = progress_callback
        self.analyzer = PerformanceAnalyzer(
            risk_free_rate=self.settings.risk_free_rate,
            periods_per_year=self.settings.periods_per_year,
        )

        self._strategies: dict[str, Strategy] = {}
        self._machine = RunStateMachine()
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()
        self._running = False

    @property
    def state(self) -> RunState:
        """State of the current or most recent run."""
        return self._machine.state

    @property
    def strategies(self) -> dict[str, Strategy]:
        return dict(self._strategies)

    @property
    def is_running(self) -> bool:
        return self._running

    def register_strategy(self, strategy: Strategy) -> None:
        """Register a strategy under its ``name``.

        Raises:
            ConfigurationError: If the strategy has no name.
        """
        name = getattr(strategy, "name", "")
        if not name:
            raise ConfigurationError("Strategy name is required", field_name="strategy")
        if name in self._strategies:
            logger.warning(f"Replacing registered strategy: {name}")
        self._strategies[name] = strategy
        logger.info(f"Registered strategy: {name}")

    def force_cancel(self) -> bool:
        """Request cancellation of the running backtest.

        The run stops at the next bar boundary with a FAILED result.

        Returns:
            True if a run was active.
        """
        if not self._running:
            return False
        self._cancel_event.set()
        logger.warning("Backtest cancellation requested")
        return True

    def run_backtest_sync(self, config: BacktestConfig | Mapping[str, Any]) -> BacktestResult:
        """Run a backtest from synchronous code."""
        return asyncio.run(self.run_backtest(config))

    async def run_backtest(self, config: BacktestConfig | Mapping[str, Any]) -> BacktestResult:
        """Run one backtest.

        Args:
            config: Validated config or plain mapping.

        Returns:
            FINALIZED or FAILED result.

        Raises:
            BacktestInProgressError: If this engine is already running a backtest.
        """
        with self._lock:
            if self._running:
                raise BacktestInProgressError("A backtest is already running on this engine")
            self._running = True
            self._cancel_event.clear()
            self._machine = RunStateMachine()

        started_at = datetime.now(timezone.utc)
        started = time.perf_counter()
        timing: dict[str, Any] = {"started_at": started_at.isoformat()}
        try:
            result = await self._run(config, self._machine, timing)
        finally:
            self._running = False
        timing["elapsed_ms"] = (time.perf_counter() - started) * 1000
        result.timing = timing
        return result

    async def _run(
        self,
        raw_config: BacktestConfig | Mapping[str, Any],
        machine: RunStateMachine,
        timing: dict[str, Any],
    ) -> BacktestResult:
        try:
            config = raw_config if isinstance(raw_config, BacktestConfig) else BacktestConfig.from_mapping(raw_config)
        except ConfigurationError as e:
            logger.error(f"Backtest configuration rejected: {e}")
            machine.transition(RunState.FAILED)
            return BacktestResult(
                run_id="invalid-config",
                state=RunState.FAILED,
                config=None,
                error=e,
                state_history=machine.history,
            )

        seed = derive_run_seed(config.symbol, config.start_date, config.end_date, config.seed)
        run_id = derive_run_id(seed, config.model_dump_json())
        run_logger = get_run_logger(__name__, run_id, config.symbol)
        run: _BacktestRun | None = None
        fetch_result: FetchResult | None = None

        try:
            strategies = self._resolve_strategies(config)
            run_logger.info(
                f"Starting backtest {run_id}: {config.symbol} {config.start_date.date()} -> "
                f"{config.end_date.date()} with {', '.join(config.strategies)}"
            )

            machine.transition(RunState.FETCHING_DATA)
            fetch_started = time.perf_counter()
            fetch_result = await self.fetcher.fetch_for_backtest(
                config.symbol, config.start_date, config.end_date, config.data_validation
            )
            timing["fetch_ms"] = (time.perf_counter() - fetch_started) * 1000

            machine.transition(RunState.VALIDATING)
            self._check_validation(fetch_result)

            machine.transition(RunState.SIMULATING)
            for strategy in strategies:
                strategy.reset()
            run = _BacktestRun(run_id, config, strategies, seed, self.correlation_provider, run_logger)
            simulation_started = time.perf_counter()
            await self._simulate(run, fetch_result.bars, machine)
            timing["simulation_ms"] = (time.perf_counter() - simulation_started) * 1000

            report = self.analyzer.analyze(run.trades, run.ledger.snapshots, config.initial_balance)
            machine.transition(RunState.FINALIZED)
        except Exception as e:
            error = e if isinstance(e, BacktestError) else BacktestError(
                f"Unexpected error during backtest: {e}",
                error_code="INTERNAL_ERROR",
                details={"exception": type(e).__name__},
            )
            if isinstance(e, BacktestError):
                run_logger.error(f"Backtest {run_id} failed in {machine.state.value}: {e}")
            else:
                run_logger.exception(f"Backtest {run_id} failed in {machine.state.value}")
            if not machine.state.is_terminal:
                machine.transition(RunState.FAILED)
            return BacktestResult(
                run_id=run_id,
                state=RunState.FAILED,
                config=config,
                seed=seed,
                report=self.analyzer.analyze([], [], config.initial_balance),
                counts=run.counts if run else RunCounts(),
                fetch=fetch_result,
                error=error,
                state_history=machine.history,
            )

        run_logger.info(
            f"Backtest {run_id} finalized: {report.trades.total_trades} trades, "
            f"return {report.returns.total_return_percentage:.2f}%, "
            f"max drawdown {report.risk.max_drawdown_percentage:.2f}%"
        )
        return BacktestResult(
            run_id=run_id,
            state=RunState.FINALIZED,
            config=config,
            seed=seed,
            trades=run.trades,
            snapshots=run.ledger.snapshots,
            report=report,
            rejections=tuple(run.rejections),
            counts=run.counts,
            fetch=fetch_result,
            state_history=machine.history,
        )

    def _resolve_strategies(self, config: BacktestConfig) -> list[Strategy]:
        strategies = []
        for name in config.strategies:
            strategy = self._strategies.get(name)
            if strategy is None:
                raise ConfigurationError(
                    f"Strategy not found: {name}",
                    field_name="strategies",
                    invalid_value=name,
                )
            strategies.append(strategy)
        return strategies

    @staticmethod
    def _check_validation(fetch_result: FetchResult) -> None:
        validation = fetch_result.validation
        if not validation.is_valid or not fetch_result.bars:
            summary = validation.errors[0] if validation.errors else "no valid bars"
            raise DataValidationError(
                f"Historical data failed integrity validation: {summary}",
                errors=validation.errors,
                integrity_score=validation.integrity_score,
                validation=validation,
            )
        for warning in validation.warnings[:10]:
            logger.warning(f"Data warning: {warning}")

    async def _simulate(
        self,
        run: _BacktestRun,
        bars: Sequence[MarketBar],
        machine: RunStateMachine,
    ) -> None:
        total = len(bars)
        yield_every = self.settings.yield_every_bars
        progress_every = self.settings.progress_every_bars

        for index in range(total):
            if self._cancel_event.is_set():
                raise BacktestCancelledError(
                    f"Backtest {run.run_id} cancelled after {index} of {total} bars",
                    bars_processed=index,
                )
            bar = bars[index]
            trace_bar(run.log, index, {"timestamp": bar.timestamp.isoformat(), "close": bar.close})
            snapshot = run.process_bar(index, bars)

            processed = index + 1
            if self.progress_callback and (processed % progress_every == 0 or processed == total):
                self.progress_callback(
                    BacktestProgress(
                        run_id=run.run_id,
                        state=machine.state,
                        bars_processed=processed,
                        total_bars=total,
                        trades_opened=run.counts.trades_opened,
                        equity=snapshot.equity,
                        timestamp=snapshot.timestamp,
                    )
                )
            if processed % yield_every == 0:
                await asyncio.sleep(0)
