"""
Backtest run configuration.

A ``BacktestConfig`` is the immutable input of one run. It is validated
with pydantic; ``from_mapping`` and ``load_backtest_config`` translate
validation failures into ``ConfigurationError`` so callers only ever see
the package's own error taxonomy.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from quant_backtest.core.data_types import ensure_utc
from quant_backtest.core.exceptions import ConfigurationError


class FeeSchedule(BaseModel):
    """Maker/taker fee rates as fractions of notional."""

    model_config = ConfigDict(frozen=True)

    maker: float = Field(default=0.002, ge=0, lt=1, description="Fee rate for resting (limit) fills")
    taker: float = Field(default=0.002, ge=0, lt=1, description="Fee rate for market fills")


class RiskManagementConfig(BaseModel):
    """Per-trade and portfolio risk limits."""

    model_config = ConfigDict(frozen=True)

    max_risk_per_trade: float = Field(default=0.02, gt=0, le=1, description="Max loss at stop as fraction of initial balance")
    stop_loss_percentage: float = Field(default=0.02, gt=0, le=1, description="Stop distance as fraction of entry price")
    min_risk_reward_ratio: float = Field(default=1.5, gt=0, description="Minimum reward/risk multiple")
    max_drawdown: float = Field(default=0.15, gt=0, le=1, description="Drawdown that engages the entry breaker")
    min_signal_strength: float = Field(default=50.0, ge=0, le=100, description="Signals below are skipped")
    min_signal_confidence: float = Field(default=60.0, ge=0, le=100, description="Signals below are skipped")
    max_leverage: float = Field(default=1.0, gt=0, description="Gross notional cap relative to equity")
    max_correlated_exposure: float = Field(default=1.0, gt=0, description="Correlation weighted exposure cap relative to equity")
    min_trade_notional: float = Field(default=10.0, ge=0, description="Smallest viable entry notional")


class ExecutionConfig(BaseModel):
    """Execution friction parameters."""

    model_config = ConfigDict(frozen=True)

    reject_probability: float = Field(default=0.01, ge=0, le=0.1, description="Per-signal rejection probability")
    market_impact: float = Field(default=0.001, ge=0, lt=1, description="Impact at full impact size, fraction of price")
    impact_size_scale: float = Field(default=1000.0, gt=0, description="Quantity at which impact saturates")
    allow_short: bool = Field(default=True, description="Allow SELL signals to open short positions")


class DataValidationConfig(BaseModel):
    """Data integrity requirements for a run."""

    model_config = ConfigDict(frozen=True)

    require_validated_source: bool = Field(default=True, description="Reject bars not validated at source")
    trusted_sources: tuple[str, ...] = Field(
        default=("GATE_IO", "EXCHANGE_ARCHIVE", "LOCAL_CACHE"),
        description="Provenance tags accepted as real market data",
    )
    min_data_points: int = Field(default=2, ge=1, description="Minimum number of bars")
    interval_minutes: float | None = Field(default=None, gt=0, description="Expected bar interval; inferred when unset")
    max_gap_minutes: float | None = Field(default=None, gt=0, description="Gap tolerance; 10 intervals when unset")
    max_gap_fraction: float = Field(default=0.05, gt=0, le=1, description="Gap share of the range escalated to an error")
    max_bar_range_pct: float = Field(default=0.5, gt=0, description="Largest plausible high/low range of one bar")
    verify_integrity: bool = Field(default=True, description="Recompute and compare bar fingerprints")

    @field_validator("trusted_sources")
    @classmethod
    def normalize_sources(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(s.upper().strip() for s in v)


class BacktestConfig(BaseModel):
    """Immutable input of one backtest run."""

    model_config = ConfigDict(frozen=True)

    symbol: str = Field(..., description="Trading pair to backtest")
    start_date: datetime = Field(..., description="Inclusive start of the range (UTC)")
    end_date: datetime = Field(..., description="Inclusive end of the range (UTC)")
    initial_balance: float = Field(..., description="Starting account balance")
    strategies: tuple[str, ...] = Field(..., description="Names of registered strategies to run")
    slippage: float = Field(default=0.001, ge=0, lt=1, description="Adverse price slippage fraction")
    fees: FeeSchedule = Field(default_factory=FeeSchedule)
    risk_management: RiskManagementConfig = Field(default_factory=RiskManagementConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    data_validation: DataValidationConfig = Field(default_factory=DataValidationConfig)
    seed: int | None = Field(default=None, description="Optional seed mixed into the run seed")

    @field_validator("symbol")
    @classmethod
    def validate_symbol(cls, v: str) -> str:
        """Validate and normalize symbol."""
        v = v.upper().strip()
        if not v:
            raise ValueError("Symbol is required")
        return v

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_dates(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator("initial_balance")
    @classmethod
    def validate_initial_balance(cls, v: float) -> float:
        if not v > 0:
            raise ValueError("Initial balance must be positive")
        return v

    @field_validator("strategies")
    @classmethod
    def validate_strategies(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        names = tuple(name.strip() for name in v)
        if not names:
            raise ValueError("At least one strategy must be specified")
        if any(not name for name in names):
            raise ValueError("Strategy names must not be blank")
        return names

    @model_validator(mode="after")
    def validate_date_range(self) -> "BacktestConfig":
        """Validate start_date < end_date."""
        if self.start_date >= self.end_date:
            raise ValueError("Start date must be before end date")
        return self

    @property
    def duration_days(self) -> float:
        return (self.end_date - self.start_date).total_seconds() / 86400.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "BacktestConfig":
        """Build a config from plain data.

        Args:
            data: Mapping with the config fields.

        Returns:
            Validated BacktestConfig.

        Raises:
            ConfigurationError: If the data is not a valid configuration.
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise configuration_error_from(e) from e

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON compatible dictionary."""
        return self.model_dump(mode="json")


def configuration_error_from(error: ValidationError) -> ConfigurationError:
    """Translate a pydantic validation error into a ConfigurationError."""
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "config"
        message = str(item.get("msg", "invalid value")).removeprefix("Value error, ")
        problems.append(f"{location}: {message}")
    first = error.errors()[0] if error.errors() else {}
    field_name = ".".join(str(part) for part in first.get("loc", ())) or None
    return ConfigurationError(
        f"Invalid backtest configuration: {'; '.join(problems)}",
        field_name=field_name,
        details={"errors": problems},
    )


def load_backtest_config(config_path: Path) -> BacktestConfig:
    """Load a backtest configuration from a YAML file.

    Args:
        config_path: Path to the YAML file.

    Returns:
        Validated BacktestConfig.

    Raises:
        ConfigurationError: If the file is missing, unparsable or invalid.
    """
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}", field_name="config_path")
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {config_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")
    return BacktestConfig.from_mapping(data.get("backtest", data))
