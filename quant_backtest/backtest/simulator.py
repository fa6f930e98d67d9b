"""
Execution simulation for backtesting.

Turns accepted signals and exit decisions into fills:
- Proportional slippage, always adverse to the trader
- Size dependent market impact, saturating at ``impact_size_scale``
- Maker/taker fees (LIMIT entries and take-profit exits rest on the book)
- Probabilistic entry rejection drawn from the run's generator

Exits are never rejected. All randomness comes from the generator handed
to the simulator; global random state is never touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np

from quant_backtest.config.backtest_config import BacktestConfig, ExecutionConfig, FeeSchedule
from quant_backtest.core.data_types import (
    BacktestTrade,
    ExitReason,
    MarketBar,
    OrderSide,
    OrderType,
    TradingSignal,
)
from quant_backtest.core.exceptions import ExecutionRejection
from quant_backtest.monitoring.logger import log_execution


class FillType(str, Enum):
    """Order fill types."""

    FULL = "full"
    REJECTED = "rejected"


class Liquidity(str, Enum):
    """Whether a fill added or removed liquidity."""

    MAKER = "maker"
    TAKER = "taker"


@dataclass(frozen=True)
class FillResult:
    """Result of a fill simulation.

    ``slippage`` and ``market_impact`` are per-unit price adjustments, both
    already included in ``fill_price``.
    """

    fill_type: FillType
    side: OrderSide
    fill_price: float
    quantity: float
    reference_price: float
    slippage: float
    market_impact: float
    commission: float
    liquidity: Liquidity
    timestamp: datetime
    rejection_reason: str | None = None

    @property
    def is_rejected(self) -> bool:
        return self.fill_type is FillType.REJECTED

    @property
    def price_adjustment(self) -> float:
        """Total per-unit adverse adjustment to the reference price."""
        return self.slippage + self.market_impact

    @property
    def total_cost(self) -> float:
        """Total execution cost in quote currency."""
        return self.price_adjustment * self.quantity + self.commission

    def to_rejection(self, signal_id: str) -> ExecutionRejection:
        return ExecutionRejection(
            self.rejection_reason or "Order rejected",
            signal_id=signal_id,
            reason=self.rejection_reason,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "fill_type": self.fill_type.value,
            "side": self.side.value,
            "fill_price": self.fill_price,
            "quantity": self.quantity,
            "reference_price": self.reference_price,
            "slippage": self.slippage,
            "market_impact": self.market_impact,
            "commission": self.commission,
            "liquidity": self.liquidity.value,
            "timestamp": self.timestamp.isoformat(),
            "rejection_reason": self.rejection_reason,
        }


class ExecutionSimulator:
    """Fills entries and exits against bar closes."""

    def __init__(
        self,
        slippage: float,
        fees: FeeSchedule,
        execution: ExecutionConfig,
        rng: np.random.Generator,
    ) -> None:
        """Initialize the simulator.

        Args:
            slippage: Adverse slippage as a fraction of price.
            fees: Maker/taker fee rates.
            execution: Rejection and market impact parameters.
            rng: Generator owned by the run.
        """
        self.slippage = slippage
        self.fees = fees
        self.execution = execution
        self.rng = rng
        self.entries_attempted = 0
        self.entries_rejected = 0

    @classmethod
    def from_config(cls, config: BacktestConfig, rng: np.random.Generator) -> "ExecutionSimulator":
        return cls(config.slippage, config.fees, config.execution, rng)

    @property
    def rejection_rate(self) -> float:
        if self.entries_attempted == 0:
            return 0.0
        return self.entries_rejected / self.entries_attempted

    # =========================================================================
    # Pricing
    # =========================================================================

    def fee_rate(self, liquidity: Liquidity) -> float:
        return self.fees.maker if liquidity is Liquidity.MAKER else self.fees.taker

    def commission(self, price: float, quantity: float, liquidity: Liquidity) -> float:
        """Fee charged on a fill: ``price × quantity × rate``."""
        return abs(price * quantity) * self.fee_rate(liquidity)

    def price_adjustments(self, price: float, quantity: float) -> tuple[float, float]:
        """Per-unit slippage and market impact at ``price`` for ``quantity``.

        Returns:
            Tuple of (slippage, market_impact), both non-negative.
        """
        slippage = price * self.slippage
        size_factor = min(abs(quantity) / self.execution.impact_size_scale, 1.0)
        impact = price * self.execution.market_impact * size_factor
        return slippage, impact

    def market_price(self, side: OrderSide, price: float, quantity: float) -> tuple[float, float, float]:
        """Adverse fill price of a market order on ``side``.

        Returns:
            Tuple of (fill_price, slippage, market_impact).
        """
        slippage, impact = self.price_adjustments(price, quantity)
        fill_price = price + side.direction * (slippage + impact)
        return fill_price, slippage, impact

    # =========================================================================
    # Fills
    # =========================================================================

    def simulate_entry(self, signal: TradingSignal, bar: MarketBar, quantity: float) -> FillResult:
        """Simulate the entry fill of an accepted signal.

        Exactly one value is drawn from the generator per call, whatever
        the outcome.

        Args:
            signal: Accepted signal.
            bar: Bar the signal was generated on; fills reference its close.
            quantity: Quantity approved by the risk manager.

        Returns:
            FillResult, REJECTED when the draw falls below the configured
            rejection probability.
        """
        draw = float(self.rng.random())
        self.entries_attempted += 1
        liquidity = Liquidity.MAKER if signal.order_type is OrderType.LIMIT else Liquidity.TAKER

        if draw < self.execution.reject_probability:
            self.entries_rejected += 1
            reason = f"Order rejected by venue simulation (draw {draw:.4f} < {self.execution.reject_probability})"
            log_execution(f"Signal {signal.id}: {reason}", symbol=signal.symbol, signal_id=signal.id, draw=draw)
            return FillResult(
                fill_type=FillType.REJECTED,
                side=signal.side,
                fill_price=0.0,
                quantity=0.0,
                reference_price=bar.close,
                slippage=0.0,
                market_impact=0.0,
                commission=0.0,
                liquidity=liquidity,
                timestamp=bar.timestamp,
                rejection_reason=reason,
            )

        if liquidity is Liquidity.MAKER:
            fill_price, slippage, impact = bar.close, 0.0, 0.0
        else:
            fill_price, slippage, impact = self.market_price(signal.side, bar.close, quantity)

        fill = FillResult(
            fill_type=FillType.FULL,
            side=signal.side,
            fill_price=fill_price,
            quantity=quantity,
            reference_price=bar.close,
            slippage=slippage,
            market_impact=impact,
            commission=self.commission(fill_price, quantity, liquidity),
            liquidity=liquidity,
            timestamp=bar.timestamp,
        )
        log_execution(
            f"Entry {signal.side.value} {quantity:.6f} filled @ {fill_price:.4f} ({liquidity.value})",
            symbol=signal.symbol,
            signal_id=signal.id,
            commission=fill.commission,
        )
        return fill

    def simulate_exit(self, trade: BacktestTrade, bar: MarketBar, reason: ExitReason) -> FillResult:
        """Simulate the exit fill of an open trade.

        Stops fill at the stop level as taker, targets at the target level
        as maker; strategy and end-of-period exits are market orders at the
        slipped close.
        """
        closing_side = trade.side.opposite
        if reason is ExitReason.STOP_LOSS:
            fill_price, slippage, impact = trade.stop_loss, 0.0, 0.0
            liquidity = Liquidity.TAKER
        elif reason is ExitReason.TAKE_PROFIT:
            fill_price, slippage, impact = trade.take_profit, 0.0, 0.0
            liquidity = Liquidity.MAKER
        else:
            fill_price, slippage, impact = self.market_price(closing_side, bar.close, trade.quantity)
            liquidity = Liquidity.TAKER

        fill = FillResult(
            fill_type=FillType.FULL,
            side=closing_side,
            fill_price=fill_price,
            quantity=trade.quantity,
            reference_price=bar.close,
            slippage=slippage,
            market_impact=impact,
            commission=self.commission(fill_price, trade.quantity, liquidity),
            liquidity=liquidity,
            timestamp=bar.timestamp,
        )
        log_execution(
            f"Exit {trade.id} ({reason.value}) filled @ {fill_price:.4f}",
            symbol=trade.symbol,
            trade_id=trade.id,
            commission=fill.commission,
        )
        return fill
