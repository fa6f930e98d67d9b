"""
Backtesting module.

Provides the backtesting engine and its run state machine, execution
simulation with slippage and maker/taker fees, the portfolio ledger,
performance analytics, reference strategies, and parameter sweeps.
"""
