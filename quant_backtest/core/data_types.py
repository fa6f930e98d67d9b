"""
Type definitions for the backtesting engine.

Defines strict type contracts for the data flowing through a run:
- MarketBar: immutable OHLCV bar with provenance and integrity fingerprint
- TradingSignal: read-only signal produced by an external strategy
- BacktestTrade: one simulated position lifecycle
- PositionMark / PortfolioSnapshot: ledger entries

Inputs crossing the package boundary are pydantic models; records produced
by the simulation are frozen dataclasses.
"""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def ensure_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def compute_integrity_hash(
    timestamp: datetime,
    open: float,
    high: float,
    low: float,
    close: float,
    volume: float,
) -> str:
    """Compute the content fingerprint of a bar.

    Args:
        timestamp: Bar timestamp.
        open: Open price.
        high: High price.
        low: Low price.
        close: Close price.
        volume: Traded volume.

    Returns:
        Hex encoded sha256 digest of the bar content.
    """
    epoch_ms = int(ensure_utc(timestamp).timestamp() * 1000)
    values = "_".join(repr(float(v)) for v in (open, high, low, close, volume))
    payload = f"{epoch_ms}_{values}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class OrderSide(str, Enum):
    """Order side enum."""

    BUY = "BUY"
    SELL = "SELL"

    @property
    def direction(self) -> int:
        """Signed direction of a position opened on this side."""
        return 1 if self is OrderSide.BUY else -1

    @property
    def opposite(self) -> "OrderSide":
        return OrderSide.SELL if self is OrderSide.BUY else OrderSide.BUY


class OrderType(str, Enum):
    """Order type enum."""

    MARKET = "MARKET"
    LIMIT = "LIMIT"


class TradeStatus(str, Enum):
    """Lifecycle status of a simulated trade."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    REJECTED = "REJECTED"


class ExitReason(str, Enum):
    """Why a trade was closed."""

    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    STRATEGY_EXIT = "STRATEGY_EXIT"
    END_OF_PERIOD = "END_OF_PERIOD"


# =============================================================================
# Market Data
# =============================================================================


class MarketBar(BaseModel):
    """OHLCV bar with provenance metadata.

    The model is frozen but deliberately accepts structurally inconsistent
    prices: the data integrity validator is responsible for classifying
    such bars, so they must be representable.
    """

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., min_length=1, max_length=32, description="Trading pair, e.g. BTC_USDT")
    timestamp: datetime = Field(..., description="Bar open time in UTC")
    open: float = Field(..., description="Open price")
    high: float = Field(..., description="High price")
    low: float = Field(..., description="Low price")
    close: float = Field(..., description="Close price")
    volume: float = Field(..., description="Traded base volume")
    validated: bool = Field(default=False, description="Source-side validation flag")
    source: str = Field(default="UNKNOWN", description="Provenance tag")
    integrity: str = Field(default="", description="Content fingerprint")
    interval: str | None = Field(default=None, description="Bar interval label, e.g. 1h")
    fetched_at: datetime | None = Field(default=None, description="Retrieval time")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Validate and normalize symbol."""
        return v.upper().strip()

    @field_validator("timestamp", "fetched_at")
    @classmethod
    def validate_timestamp(cls, v: datetime | None) -> datetime | None:
        """Normalize timestamps to UTC."""
        if v is None:
            return v
        return ensure_utc(v)

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        return v.upper().strip()

    @property
    def price_range_pct(self) -> float:
        """High-low range as a fraction of the low price."""
        if self.low <= 0:
            return math.inf
        return (self.high - self.low) / self.low

    def expected_integrity(self) -> str:
        """Fingerprint the bar content should carry."""
        return compute_integrity_hash(
            self.timestamp, self.open, self.high, self.low, self.close, self.volume
        )

    def ohlc_violations(self) -> list[str]:
        """Describe every OHLC ordering violation of this bar.

        Returns:
            Empty list when ``high >= max(open, close) >= min(open, close) >= low``.
        """
        violations: list[str] = []
        if self.high < self.low:
            violations.append(f"high ({self.high}) < low ({self.low})")
        if self.high < self.open or self.high < self.close:
            violations.append(
                f"high ({self.high}) below open ({self.open}) or close ({self.close})"
            )
        if self.low > self.open or self.low > self.close:
            violations.append(
                f"low ({self.low}) above open ({self.open}) or close ({self.close})"
            )
        return violations

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with serializable types."""
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "validated": self.validated,
            "source": self.source,
            "integrity": self.integrity,
            "interval": self.interval,
        }


class TradingSignal(BaseModel):
    """Trading signal emitted by a strategy.

    Strength and confidence are on a 0-100 scale; ``risk_reward`` is the
    reward multiple of the stop distance the strategy expects.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="Signal identifier")
    symbol: str = Field(..., min_length=1, description="Trading pair")
    side: OrderSide = Field(..., description="BUY or SELL")
    strength: float = Field(..., ge=0, le=100, description="Signal strength")
    confidence: float = Field(..., ge=0, le=100, description="Signal confidence")
    risk_reward: float = Field(..., gt=0, description="Expected reward / risk multiple")
    timestamp: datetime = Field(..., description="Time the signal became observable")
    order_type: OrderType = Field(default=OrderType.MARKET, description="Entry order type")
    reasoning: str = Field(default="", description="Human readable rationale")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def fill_identifier(cls, data: Any) -> Any:
        """Derive a deterministic id when the strategy supplies none."""
        if isinstance(data, dict) and not data.get("id"):
            timestamp = data.get("timestamp")
            side = data.get("side")
            side_value = side.value if isinstance(side, OrderSide) else side
            if isinstance(timestamp, datetime):
                stamp = int(ensure_utc(timestamp).timestamp())
            else:
                stamp = timestamp
            data = {**data, "id": f"{data.get('symbol')}-{side_value}-{stamp}"}
        return data

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        return v.upper().strip()

    @field_validator("timestamp")
    @classmethod
    def validate_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)


# =============================================================================
# Simulation Records
# =============================================================================


@dataclass(frozen=True)
class BacktestTrade:
    """One simulated position lifecycle.

    Trades are immutable; closing returns a new CLOSED instance.
    """

    id: str
    symbol: str
    side: OrderSide
    strategy: str
    signal_id: str
    entry_time: datetime
    entry_price: float
    quantity: float
    stop_loss: float
    take_profit: float
    entry_fees: float = 0.0
    slippage: float = 0.0
    status: TradeStatus = TradeStatus.OPEN
    exit_time: datetime | None = None
    exit_price: float | None = None
    exit_fees: float = 0.0
    exit_reason: ExitReason | None = None
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    rejection_reason: str | None = None

    @property
    def direction(self) -> int:
        return self.side.direction

    @property
    def fees(self) -> float:
        """Total fees paid on entry and exit."""
        return self.entry_fees + self.exit_fees

    @property
    def notional(self) -> float:
        """Entry notional value."""
        return self.entry_price * self.quantity

    @property
    def is_open(self) -> bool:
        return self.status is TradeStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status is TradeStatus.CLOSED

    @property
    def planned_risk_reward(self) -> float:
        """Reward/risk implied by the stop and target levels."""
        risk = abs(self.entry_price - self.stop_loss)
        if risk <= 0:
            return 0.0
        return abs(self.take_profit - self.entry_price) / risk

    @property
    def holding_minutes(self) -> float:
        if self.exit_time is None:
            return 0.0
        return (self.exit_time - self.entry_time).total_seconds() / 60.0

    def unrealized_pnl(self, price: float) -> float:
        """Mark-to-market P&L at ``price`` before fees."""
        return self.direction * (price - self.entry_price) * self.quantity

    def close(
        self,
        exit_time: datetime,
        exit_price: float,
        exit_fees: float,
        reason: ExitReason,
    ) -> "BacktestTrade":
        """Return the CLOSED version of this trade.

        Raises:
            ValueError: If the trade is not OPEN.
        """
        if self.status is not TradeStatus.OPEN:
            raise ValueError(f"Trade {self.id} is {self.status.value} and cannot be closed")
        pnl = self.unrealized_pnl(exit_price) - self.entry_fees - exit_fees
        notional = self.notional
        return replace(
            self,
            status=TradeStatus.CLOSED,
            exit_time=exit_time,
            exit_price=exit_price,
            exit_fees=exit_fees,
            exit_reason=reason,
            pnl=pnl,
            pnl_percentage=(pnl / notional * 100) if notional > 0 else 0.0,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "strategy": self.strategy,
            "signal_id": self.signal_id,
            "entry_time": self.entry_time.isoformat(),
            "entry_price": self.entry_price,
            "quantity": self.quantity,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "fees": self.fees,
            "entry_fees": self.entry_fees,
            "exit_fees": self.exit_fees,
            "slippage": self.slippage,
            "status": self.status.value,
            "exit_time": self.exit_time.isoformat() if self.exit_time else None,
            "exit_price": self.exit_price,
            "exit_reason": self.exit_reason.value if self.exit_reason else None,
            "pnl": self.pnl,
            "pnl_percentage": self.pnl_percentage,
            "rejection_reason": self.rejection_reason,
        }


@dataclass(frozen=True)
class PositionMark:
    """An open position marked to a price at one ledger step."""

    trade_id: str
    symbol: str
    side: OrderSide
    quantity: float
    entry_price: float
    mark_price: float
    unrealized_pnl: float
    stop_loss: float
    take_profit: float
    strategy: str = ""

    @property
    def market_value(self) -> float:
        return self.mark_price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        return {
            "trade_id": self.trade_id,
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "mark_price": self.mark_price,
            "unrealized_pnl": self.unrealized_pnl,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "strategy": self.strategy,
        }


@dataclass(frozen=True)
class PortfolioSnapshot:
    """One ledger entry per simulated time step."""

    timestamp: datetime
    balance: float
    equity: float
    positions: tuple[PositionMark, ...] = field(default_factory=tuple)
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0
    peak_equity: float = 0.0
    drawdown: float = 0.0
    drawdown_percentage: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percentage: float = 0.0

    @property
    def total_pnl(self) -> float:
        return self.unrealized_pnl + self.realized_pnl

    @property
    def exposure(self) -> float:
        """Gross market value of open positions."""
        return sum(p.market_value for p in self.positions)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "balance": self.balance,
            "equity": self.equity,
            "positions": [p.to_dict() for p in self.positions],
            "unrealized_pnl": self.unrealized_pnl,
            "realized_pnl": self.realized_pnl,
            "total_pnl": self.total_pnl,
            "peak_equity": self.peak_equity,
            "drawdown": self.drawdown,
            "drawdown_percentage": self.drawdown_percentage,
            "max_drawdown": self.max_drawdown,
            "max_drawdown_percentage": self.max_drawdown_percentage,
        }
