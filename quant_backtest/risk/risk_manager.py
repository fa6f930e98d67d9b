"""
Pre-trade risk evaluation for simulated entries.

Every candidate entry is evaluated before it reaches the execution
simulator:
- Signal quality filter (strength and confidence floors)
- Portfolio drawdown breaker (no new entries while drawdown is at the limit)
- Minimum risk/reward ratio
- Per-trade risk sizing against the initial balance
- Leverage and correlation weighted exposure caps
- Minimum viable trade size

The manager is stateless: the same signal, price, snapshot and open trades
always produce the same decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from quant_backtest.config.backtest_config import RiskManagementConfig
from quant_backtest.core.data_types import (
    BacktestTrade,
    OrderSide,
    PortfolioSnapshot,
    TradingSignal,
)
from quant_backtest.core.exceptions import RiskLimitExceeded
from quant_backtest.risk.correlation import CorrelationProvider, SymbolCorrelationProvider

logger = logging.getLogger(__name__)


class CheckResult(str, Enum):
    """Result of a risk check."""

    PASSED = "passed"
    FAILED = "failed"
    ADJUSTED = "adjusted"


class RiskAction(str, Enum):
    """Overall decision for a candidate entry."""

    ACCEPT = "accept"
    ADJUST = "adjust"
    REJECT = "reject"


@dataclass(frozen=True)
class RiskCheckResult:
    """Result of a single risk check."""

    check_name: str
    result: CheckResult
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        """Check if the result passed (possibly after adjustment)."""
        return self.result != CheckResult.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "check_name": self.check_name,
            "result": self.result.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class RiskDecision:
    """Decision of the risk manager for one signal.

    ``stop_distance`` is in price units and anchored to the reference
    price, so the loss at the stop is ``stop_distance × quantity`` whatever
    the fill price turns out to be.
    """

    action: RiskAction
    quantity: float
    requested_quantity: float
    stop_distance: float
    reward_ratio: float
    checks: tuple[RiskCheckResult, ...] = ()
    reason: str | None = None
    limit_name: str | None = None
    filtered: bool = False

    @property
    def accepted(self) -> bool:
        return self.action is not RiskAction.REJECT

    @property
    def adjusted(self) -> bool:
        return self.action is RiskAction.ADJUST

    def exit_levels(self, entry_price: float, side: OrderSide) -> tuple[float, float]:
        """Stop-loss and take-profit levels for a fill at ``entry_price``."""
        direction = side.direction
        stop_loss = entry_price - direction * self.stop_distance
        take_profit = entry_price + direction * self.stop_distance * self.reward_ratio
        return stop_loss, take_profit

    def to_error(self) -> RiskLimitExceeded:
        """Describe a rejection as the corresponding non-fatal error."""
        failed = next((c for c in self.checks if c.result is CheckResult.FAILED), None)
        details = failed.details if failed else {}
        return RiskLimitExceeded(
            self.reason or "Risk limit exceeded",
            limit_name=self.limit_name,
            current_value=details.get("current_value"),
            limit_value=details.get("limit_value"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "quantity": self.quantity,
            "requested_quantity": self.requested_quantity,
            "stop_distance": self.stop_distance,
            "reward_ratio": self.reward_ratio,
            "checks": [c.to_dict() for c in self.checks],
            "reason": self.reason,
            "limit_name": self.limit_name,
            "filtered": self.filtered,
        }


class RiskManager:
    """Evaluates candidate entries against the run's risk configuration."""

    def __init__(
        self,
        config: RiskManagementConfig,
        initial_balance: float,
        correlation_provider: CorrelationProvider | None = None,
    ) -> None:
        """Initialize the risk manager.

        Args:
            config: Risk limits of the run.
            initial_balance: Starting balance the per-trade budget refers to.
            correlation_provider: Pairwise correlation capability.
        """
        self.config = config
        self.initial_balance = initial_balance
        self.correlation_provider = correlation_provider or SymbolCorrelationProvider()

    def is_breaker_engaged(self, snapshot: PortfolioSnapshot | None) -> bool:
        """Whether the drawdown breaker blocks new entries."""
        if snapshot is None:
            return False
        return snapshot.drawdown_percentage >= self.config.max_drawdown * 100

    def is_filtered(self, signal: TradingSignal) -> bool:
        """Whether the signal is below the strength or confidence floor."""
        return (
            signal.strength < self.config.min_signal_strength
            or signal.confidence < self.config.min_signal_confidence
        )

    def evaluate(
        self,
        signal: TradingSignal,
        price: float,
        snapshot: PortfolioSnapshot | None = None,
        open_trades: Sequence[BacktestTrade] = (),
    ) -> RiskDecision:
        """Evaluate a candidate entry.

        Args:
            signal: Signal requesting the entry.
            price: Reference price (close of the signal bar).
            snapshot: Latest ledger snapshot; None before the first step.
            open_trades: Trades open at evaluation time.

        Returns:
            RiskDecision with the approved quantity and exit geometry.
        """
        cfg = self.config
        checks: list[RiskCheckResult] = []
        stop_distance = price * cfg.stop_loss_percentage if price > 0 else 0.0

        def reject(name: str, message: str, filtered: bool = False, **details: Any) -> RiskDecision:
            checks.append(RiskCheckResult(name, CheckResult.FAILED, message, details))
            logger.debug(f"Signal {signal.id} rejected by {name}: {message}")
            return RiskDecision(
                action=RiskAction.REJECT,
                quantity=0.0,
                requested_quantity=0.0,
                stop_distance=stop_distance,
                reward_ratio=signal.risk_reward,
                checks=tuple(checks),
                reason=message,
                limit_name=name,
                filtered=filtered,
            )

        # Signal quality
        if self.is_filtered(signal):
            return reject(
                "signal_quality",
                f"Signal strength {signal.strength:.0f}/confidence {signal.confidence:.0f} "
                f"below {cfg.min_signal_strength:.0f}/{cfg.min_signal_confidence:.0f}",
                filtered=True,
                current_value=min(signal.strength, signal.confidence),
            )
        checks.append(RiskCheckResult("signal_quality", CheckResult.PASSED, "Signal quality sufficient"))

        # Drawdown breaker
        if snapshot is not None and self.is_breaker_engaged(snapshot):
            return reject(
                "max_drawdown",
                f"Drawdown {snapshot.drawdown_percentage:.2f}% at or above limit "
                f"{cfg.max_drawdown * 100:.2f}%; new entries are blocked",
                current_value=snapshot.drawdown_percentage,
                limit_value=cfg.max_drawdown * 100,
            )
        checks.append(RiskCheckResult("max_drawdown", CheckResult.PASSED, "Drawdown within limit"))

        # Risk/reward
        if signal.risk_reward < cfg.min_risk_reward_ratio:
            return reject(
                "min_risk_reward",
                f"Risk/reward {signal.risk_reward:.2f} below minimum {cfg.min_risk_reward_ratio:.2f}",
                current_value=signal.risk_reward,
                limit_value=cfg.min_risk_reward_ratio,
            )
        checks.append(RiskCheckResult("min_risk_reward", CheckResult.PASSED, "Risk/reward sufficient"))

        if price <= 0:
            return reject("invalid_price", f"Reference price {price} is not positive", current_value=price)

        balance = snapshot.balance if snapshot else self.initial_balance
        equity = snapshot.equity if snapshot else self.initial_balance
        if balance <= 0 or equity <= 0:
            return reject(
                "insufficient_balance",
                f"Balance {balance:.2f} / equity {equity:.2f} cannot fund new entries",
                current_value=min(balance, equity),
            )

        # Per-trade risk sizing
        requested = balance * cfg.max_risk_per_trade / stop_distance * (signal.confidence / 100.0)
        quantity = requested
        risk_budget = self.initial_balance * cfg.max_risk_per_trade
        if quantity * stop_distance > risk_budget:
            quantity = risk_budget / stop_distance
            checks.append(
                RiskCheckResult(
                    "per_trade_risk",
                    CheckResult.ADJUSTED,
                    f"Position reduced to keep risk within {cfg.max_risk_per_trade * 100:.2f}% of initial balance",
                    {"requested_quantity": requested, "quantity": quantity},
                )
            )
        else:
            checks.append(RiskCheckResult("per_trade_risk", CheckResult.PASSED, "Per-trade risk within budget"))

        # Leverage
        gross_exposure = sum(self._exposure(t, signal.symbol, price) for t in open_trades)
        leverage_room = max(equity * cfg.max_leverage - gross_exposure, 0.0)
        if quantity * price > leverage_room:
            quantity = leverage_room / price
            checks.append(
                RiskCheckResult(
                    "leverage",
                    CheckResult.ADJUSTED,
                    f"Position reduced to stay within {cfg.max_leverage:.2f}x leverage",
                    {"gross_exposure": gross_exposure, "equity": equity},
                )
            )

        # Correlated exposure
        correlated = sum(
            abs(self.correlation_provider.correlation(signal.symbol, t.symbol))
            * self._exposure(t, signal.symbol, price)
            for t in open_trades
        )
        correlation_room = max(equity * cfg.max_correlated_exposure - correlated, 0.0)
        if quantity * price > correlation_room:
            quantity = correlation_room / price
            checks.append(
                RiskCheckResult(
                    "correlated_exposure",
                    CheckResult.ADJUSTED,
                    "Position reduced to respect correlated exposure limit",
                    {"correlated_exposure": correlated, "equity": equity},
                )
            )

        # Minimum viable size
        notional = quantity * price
        if quantity <= 0 or notional < cfg.min_trade_notional:
            return reject(
                "min_trade_size",
                f"Position cannot fit at minimum viable size (notional {notional:.2f} < "
                f"{cfg.min_trade_notional:.2f})",
                current_value=notional,
                limit_value=cfg.min_trade_notional,
            )

        adjusted = any(c.result is CheckResult.ADJUSTED for c in checks)
        return RiskDecision(
            action=RiskAction.ADJUST if adjusted else RiskAction.ACCEPT,
            quantity=quantity,
            requested_quantity=requested,
            stop_distance=stop_distance,
            reward_ratio=signal.risk_reward,
            checks=tuple(checks),
        )

    @staticmethod
    def _exposure(trade: BacktestTrade, symbol: str, price: float) -> float:
        mark = price if trade.symbol == symbol else trade.entry_price
        return abs(trade.quantity * mark)
