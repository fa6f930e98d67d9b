"""
Quant Backtest - Strategy Backtesting and Performance Evaluation Engine

Validates historical market data, replays trading signals against it with a
realistic, seeded execution model, enforces per-trade and portfolio risk
limits, and computes return, risk and trade statistics.
"""

__version__ = "1.0.0"
__author__ = "AlphaTrade"
