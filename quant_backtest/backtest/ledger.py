"""
Portfolio ledger.

Append-only, strictly time ordered sequence of portfolio snapshots, one
per simulated bar. Each step applies the fills and closures of that bar,
marks open positions to the bar close, and folds peak equity and drawdown
from the previous snapshot.

Accounting:
- ``balance = initial_balance + realized_pnl - entry fees of open trades``
- ``equity = balance + unrealized_pnl``
- ``drawdown = max(0, peak_equity - equity)``; ``max_drawdown`` never decreases
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterator, Mapping, Sequence

from quant_backtest.core.data_types import (
    BacktestTrade,
    PortfolioSnapshot,
    PositionMark,
    TradeStatus,
    ensure_utc,
)
from quant_backtest.core.exceptions import LedgerOrderError

logger = logging.getLogger(__name__)


def fold_snapshot(
    previous: PortfolioSnapshot | None,
    timestamp: datetime,
    balance: float,
    positions: Sequence[PositionMark] = (),
    realized_pnl: float = 0.0,
    initial_balance: float | None = None,
) -> PortfolioSnapshot:
    """Build the next snapshot from the previous one.

    Args:
        previous: Latest snapshot, None for the first step.
        timestamp: Time of the new step.
        balance: Cash balance after this step's fills.
        positions: Open positions marked at this step.
        realized_pnl: Cumulative realized P&L.
        initial_balance: Starting peak for the first step. Defaults to the
            first step's equity.

    Returns:
        New snapshot with peak equity and drawdown folded in.
    """
    unrealized = sum(p.unrealized_pnl for p in positions)
    equity = balance + unrealized

    if previous is None:
        peak = max(equity, initial_balance) if initial_balance is not None else equity
        prior_max_dd, prior_max_dd_pct = 0.0, 0.0
    else:
        peak = max(previous.peak_equity, equity)
        prior_max_dd = previous.max_drawdown
        prior_max_dd_pct = previous.max_drawdown_percentage

    drawdown = max(0.0, peak - equity)
    drawdown_pct = drawdown / peak * 100 if peak > 0 else 0.0

    return PortfolioSnapshot(
        timestamp=timestamp,
        balance=balance,
        equity=equity,
        positions=tuple(positions),
        unrealized_pnl=unrealized,
        realized_pnl=realized_pnl,
        peak_equity=peak,
        drawdown=drawdown,
        drawdown_percentage=drawdown_pct,
        max_drawdown=max(prior_max_dd, drawdown),
        max_drawdown_percentage=max(prior_max_dd_pct, drawdown_pct),
    )


class PortfolioLedger:
    """Snapshot series of one backtest run."""

    def __init__(self, initial_balance: float) -> None:
        if initial_balance <= 0:
            raise ValueError("initial_balance must be positive")
        self.initial_balance = initial_balance
        self._snapshots: list[PortfolioSnapshot] = []
        self._open: dict[str, BacktestTrade] = {}
        self._realized_pnl = 0.0

    def __len__(self) -> int:
        return len(self._snapshots)

    def __iter__(self) -> Iterator[PortfolioSnapshot]:
        return iter(self._snapshots)

    @property
    def snapshots(self) -> tuple[PortfolioSnapshot, ...]:
        return tuple(self._snapshots)

    @property
    def latest(self) -> PortfolioSnapshot | None:
        return self._snapshots[-1] if self._snapshots else None

    @property
    def open_trades(self) -> tuple[BacktestTrade, ...]:
        """Open trades in the order they were opened."""
        return tuple(self._open.values())

    @property
    def realized_pnl(self) -> float:
        return self._realized_pnl

    @property
    def balance(self) -> float:
        return self.initial_balance + self._realized_pnl - sum(t.entry_fees for t in self._open.values())

    def advance(
        self,
        timestamp: datetime,
        prices: Mapping[str, float],
        opened: Sequence[BacktestTrade] = (),
        closed: Sequence[BacktestTrade] = (),
    ) -> PortfolioSnapshot:
        """Append the snapshot of one simulated step.

        Args:
            timestamp: Bar timestamp; must be after the latest snapshot.
            prices: Mark prices by symbol (bar closes).
            opened: Trades opened during this step.
            closed: CLOSED versions of trades closed during this step.

        Returns:
            The appended snapshot.

        Raises:
            LedgerOrderError: If the timestamp is not strictly increasing or
                a closure does not match an open trade.
        """
        timestamp = ensure_utc(timestamp)
        latest = self.latest
        if latest is not None and timestamp <= latest.timestamp:
            raise LedgerOrderError(
                f"Snapshot at {timestamp.isoformat()} is not after {latest.timestamp.isoformat()}",
                details={"timestamp": timestamp.isoformat(), "latest": latest.timestamp.isoformat()},
            )

        for trade in opened:
            if trade.status is not TradeStatus.OPEN:
                raise LedgerOrderError(f"Trade {trade.id} is {trade.status.value}, expected OPEN")
            self._open[trade.id] = trade

        for trade in closed:
            if trade.status is not TradeStatus.CLOSED:
                raise LedgerOrderError(f"Trade {trade.id} is {trade.status.value}, expected CLOSED")
            if self._open.pop(trade.id, None) is None:
                raise LedgerOrderError(f"Trade {trade.id} is not open in the ledger")
            self._realized_pnl += trade.pnl

        positions = [self._mark(trade, prices) for trade in self._open.values()]
        snapshot = fold_snapshot(
            latest,
            timestamp,
            self.balance,
            positions,
            self._realized_pnl,
            self.initial_balance,
        )
        self._snapshots.append(snapshot)
        return snapshot

    @staticmethod
    def _mark(trade: BacktestTrade, prices: Mapping[str, float]) -> PositionMark:
        price = prices.get(trade.symbol, trade.entry_price)
        return PositionMark(
            trade_id=trade.id,
            symbol=trade.symbol,
            side=trade.side,
            quantity=trade.quantity,
            entry_price=trade.entry_price,
            mark_price=price,
            unrealized_pnl=trade.unrealized_pnl(price),
            stop_loss=trade.stop_loss,
            take_profit=trade.take_profit,
            strategy=trade.strategy,
        )
