"""
Pytest fixtures for the Quant Backtest tests.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from quant_backtest.config.backtest_config import BacktestConfig  # noqa: E402
from quant_backtest.config.settings import EngineSettings  # noqa: E402
from quant_backtest.core.data_types import MarketBar, compute_integrity_hash  # noqa: E402

SERIES_START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_bar(
    timestamp,
    close,
    open=None,
    high=None,
    low=None,
    volume=12.5,
    symbol="BTC_USDT",
    source="GATE_IO",
    validated=True,
    interval="1h",
    integrity=None,
):
    """Build a bar that passes validation unless told otherwise."""
    open = close if open is None else open
    high = max(open, close) * 1.001 if high is None else high
    low = min(open, close) * 0.999 if low is None else low
    if integrity is None:
        integrity = compute_integrity_hash(timestamp, open, high, low, close, volume)
    return MarketBar(
        symbol=symbol,
        timestamp=timestamp,
        open=open,
        high=high,
        low=low,
        close=close,
        volume=volume,
        validated=validated,
        source=source,
        integrity=integrity,
        interval=interval,
    )


def build_series(
    closes,
    start=SERIES_START,
    interval=timedelta(hours=1),
    symbol="BTC_USDT",
):
    """Bars whose open is the previous close."""
    bars = []
    previous = closes[0]
    for i, close in enumerate(closes):
        bars.append(
            build_bar(
                start + i * interval,
                float(close),
                open=float(previous),
                symbol=symbol,
            )
        )
        previous = close
    return bars


def sine_closes(n=100, base=50000.0, amplitude=0.02, period=24, noise=50.0, seed=7):
    """Sine-plus-noise close path around ``base``."""
    rng = np.random.default_rng(seed)
    i = np.arange(n)
    return base * (1 + amplitude * np.sin(2 * np.pi * i / period)) + rng.normal(0, noise, n)


@pytest.fixture
def bar_factory():
    """Factory for single bars."""
    return build_bar


@pytest.fixture
def series_factory():
    """Factory for bar series from close prices."""
    return build_series


@pytest.fixture
def sine_bars():
    """100 hourly sine-plus-noise bars starting from 50,000."""
    return build_series(sine_closes())


@pytest.fixture
def config_data(sine_bars):
    """Plain config mapping covering the sine series."""
    return {
        "symbol": "BTC_USDT",
        "start_date": sine_bars[0].timestamp.isoformat(),
        "end_date": sine_bars[-1].timestamp.isoformat(),
        "initial_balance": 10000.0,
        "strategies": ["scheduled"],
        "slippage": 0.001,
        "fees": {"maker": 0.001, "taker": 0.002},
        "risk_management": {
            "max_risk_per_trade": 0.02,
            "stop_loss_percentage": 0.02,
            "min_risk_reward_ratio": 1.5,
            "max_drawdown": 0.15,
        },
        "execution": {"reject_probability": 0.0},
    }


@pytest.fixture
def backtest_config(config_data):
    """Validated config for the sine series."""
    return BacktestConfig.from_mapping(config_data)


@pytest.fixture
def engine_settings():
    """Engine settings independent of the environment."""
    return EngineSettings(yield_every_bars=10, progress_every_bars=10, risk_free_rate=0.0)
