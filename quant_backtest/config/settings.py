"""
Central configuration management using Pydantic settings.

Provides type-safe application settings with validation, environment
variable support, and YAML configuration file loading. Per-run parameters
live in ``backtest_config``; this module holds process-wide defaults.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Base paths
BASE_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_DIR = Path(__file__).resolve().parent


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format (json or text)")
    file_path: Path | None = Field(default=None, description="Log file path")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v = v.upper()
        if v not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return v


class EngineSettings(BaseModel):
    """Backtesting engine settings."""

    yield_every_bars: int = Field(default=250, ge=1, description="Bars between event loop yields")
    progress_every_bars: int = Field(default=100, ge=1, description="Bars between progress callbacks")
    risk_free_rate: float = Field(default=0.05, ge=0, description="Annual risk free rate")
    periods_per_year: float | None = Field(
        default=None,
        gt=0,
        description="Return periods per year; inferred from bar spacing when unset",
    )


class DataSourceSettings(BaseModel):
    """Historical data source settings."""

    gateio_base_url: str = Field(default="https://api.gateio.ws/api/v4", description="Gate.io REST base URL")
    request_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP request timeout")
    batch_size: int = Field(default=1000, ge=1, le=1000, description="Points per candlestick request")
    requests_per_minute: int = Field(default=300, ge=1, description="Client side request budget")


class SweepSettings(BaseModel):
    """Concurrent run settings."""

    max_workers: int = Field(default=4, ge=1, description="Worker threads for parameter sweeps")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Application settings
    app_name: str = "Quant Backtest"
    app_version: str = "1.0.0"
    environment: str = Field(default="development", description="Environment (development, staging, production)")

    # Component settings
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    data_source: DataSourceSettings = Field(default_factory=DataSourceSettings)
    sweep: SweepSettings = Field(default_factory=SweepSettings)

    @classmethod
    def load_yaml_config(cls, config_path: Path) -> dict[str, Any]:
        """Load configuration from a YAML file."""
        if config_path.exists():
            with open(config_path, "r") as f:
                return yaml.safe_load(f) or {}
        return {}

    def apply_overrides(self, overrides: dict[str, Any]) -> "Settings":
        """Return a copy with YAML overrides applied section by section."""
        updates: dict[str, Any] = {}
        for name in ("logging", "engine", "data_source", "sweep"):
            section = overrides.get(name)
            if isinstance(section, dict):
                current = getattr(self, name)
                updates[name] = current.model_validate({**current.model_dump(), **section})
        return self.model_copy(update=updates)


@lru_cache(maxsize=1)
def get_settings(config_path: Path | None = None) -> Settings:
    """Get cached settings instance.

    Loads configuration in order:
    1. Defaults
    2. Environment variables and .env file
    3. ``settings`` section of the YAML file (``config_path`` or
       ``CONFIG_DIR/settings.yaml``)
    """
    settings = Settings()
    config = Settings.load_yaml_config(config_path or CONFIG_DIR / "settings.yaml")
    if config:
        settings = settings.apply_overrides(config.get("settings", config))
    return settings
