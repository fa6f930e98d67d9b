#!/usr/bin/env python3
"""
Main entry point for the Quant Backtest engine.

Commands:
- backtest: run a strategy over historical data described by a YAML config
- fetch: download and validate historical bars into a CSV cache file
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import Any

from quant_backtest.backtest.engine import BacktestingEngine, BacktestResult, RunState
from quant_backtest.backtest.strategies import STRATEGY_FACTORIES, create_strategy
from quant_backtest.config.backtest_config import DataValidationConfig, load_backtest_config
from quant_backtest.config.settings import Settings, get_settings
from quant_backtest.core.data_types import ensure_utc
from quant_backtest.core.exceptions import BacktestCancelledError, BacktestError
from quant_backtest.data.fetcher import HistoricalDataFetcher
from quant_backtest.data.sources import (
    CsvDataSource,
    GateIOHistoricalSource,
    HistoricalDataSource,
    write_bars_csv,
)
from quant_backtest.monitoring.logger import LogCategory, LogFormat, get_logger, log_system, setup_logging


logger = get_logger("main", LogCategory.SYSTEM)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Quant Backtest",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # Backtest command
    backtest_parser = subparsers.add_parser("backtest", help="Run backtest")
    backtest_parser.add_argument(
        "--config",
        type=Path,
        required=True,
        help="Path to the backtest YAML configuration",
    )
    backtest_parser.add_argument(
        "--csv",
        type=Path,
        help="Read bars from a CSV cache instead of Gate.io",
    )
    backtest_parser.add_argument(
        "--strategy",
        choices=sorted(STRATEGY_FACTORIES),
        default="ma_crossover",
        help="Reference strategy to register",
    )
    backtest_parser.add_argument("--fast-period", type=int, default=10, help="Fast moving average period")
    backtest_parser.add_argument("--slow-period", type=int, default=30, help="Slow moving average period")
    backtest_parser.add_argument(
        "--output",
        type=Path,
        help="Write the full result as JSON to this path",
    )

    # Fetch command
    fetch_parser = subparsers.add_parser("fetch", help="Fetch and validate historical bars")
    fetch_parser.add_argument("--symbol", type=str, required=True, help="Trading pair, e.g. BTC_USDT")
    fetch_parser.add_argument("--start-date", type=str, required=True, help="Start date (YYYY-MM-DD)")
    fetch_parser.add_argument("--end-date", type=str, required=True, help="End date (YYYY-MM-DD)")
    fetch_parser.add_argument("--interval", type=str, help="Candle interval; chosen by duration when omitted")
    fetch_parser.add_argument("--output", type=Path, required=True, help="CSV file to write")

    # Common arguments
    parser.add_argument(
        "--settings",
        type=Path,
        help="Path to application settings YAML",
    )
    parser.add_argument(
        "--log-level",
        choices=["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level",
    )
    parser.add_argument(
        "--log-format",
        choices=["json", "text"],
        default="json",
        help="Log format",
    )

    return parser.parse_args(argv)


def build_gateio_source(settings: Settings, interval: str | None = None) -> GateIOHistoricalSource:
    data_settings = settings.data_source
    return GateIOHistoricalSource(
        base_url=data_settings.gateio_base_url,
        timeout_seconds=data_settings.request_timeout_seconds,
        batch_size=data_settings.batch_size,
        requests_per_minute=data_settings.requests_per_minute,
        interval=interval,
    )


def write_result(result: BacktestResult, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(result.to_dict(), f, indent=2, sort_keys=True)
    logger.info(f"Result written to {path}")


async def run_backtest(args: argparse.Namespace, settings: Settings) -> int:
    """Run backtest mode.

    Args:
        args: Command line arguments.
        settings: Application settings.

    Returns:
        Process exit code.
    """
    config = load_backtest_config(args.config)
    source: HistoricalDataSource = CsvDataSource(args.csv) if args.csv else build_gateio_source(settings)

    params: dict[str, Any] = {}
    if args.strategy == "ma_crossover":
        params = {"fast_period": args.fast_period, "slow_period": args.slow_period}
    strategy = create_strategy(args.strategy, **params)

    engine = BacktestingEngine(data_source=source, settings=settings.engine)
    engine.register_strategy(strategy)

    # Cancel cooperatively on Ctrl+C. The handler sets the engine's cancel
    # flag directly; the bar loop checks it between bars.
    def handle_interrupt(signum: int, frame: Any) -> None:
        if not engine.force_cancel():
            raise KeyboardInterrupt

    previous_handlers = {
        sig: signal.signal(sig, handle_interrupt) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    logger.info(
        f"Running backtest of {config.symbol} from {config.start_date.date()} to {config.end_date.date()}",
        extra={"extra_data": {"initial_balance": config.initial_balance, "source": source.name}},
    )
    try:
        result = await engine.run_backtest(config)
    finally:
        for sig, handler in previous_handlers.items():
            signal.signal(sig, handler)
        await source.close()

    if args.output:
        write_result(result, args.output)

    if isinstance(result.error, BacktestCancelledError):
        logger.warning(f"Backtest interrupted: {result.error}")
        return 130

    if result.state is RunState.FAILED:
        logger.error(f"Backtest failed: {result.error}")
        return 1

    if result.report is not None:
        print(result.report.summary())
    return 0


async def run_fetch(args: argparse.Namespace, settings: Settings) -> int:
    """Fetch bars into a CSV cache file."""
    start = ensure_utc(datetime.fromisoformat(args.start_date))
    end = ensure_utc(datetime.fromisoformat(args.end_date))
    source = build_gateio_source(settings, args.interval)
    fetcher = HistoricalDataFetcher(source)
    try:
        fetched = await fetcher.fetch_for_backtest(args.symbol, start, end, DataValidationConfig())
    finally:
        await source.close()

    validation = fetched.validation
    write_bars_csv(fetched.bars, args.output)
    logger.info(
        f"Wrote {len(fetched.bars)} bars to {args.output}",
        extra={
            "extra_data": {
                "integrity_score": validation.integrity_score,
                "quality_score": validation.quality_score,
                "warnings": len(validation.warnings),
            }
        },
    )
    if not validation.is_valid:
        for error in validation.errors[:10]:
            logger.error(f"Validation error: {error}")
        return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)

    # Load settings
    settings = get_settings(args.settings)

    # Setup logging
    log_format = LogFormat.JSON if args.log_format == "json" else LogFormat.TEXT
    setup_logging(level=args.log_level, log_format=log_format, log_file=settings.logging.file_path)

    log_system(
        f"Quant Backtest v{settings.app_version}",
        command=args.command,
        environment=settings.environment,
    )

    try:
        if args.command == "backtest":
            exit_code = asyncio.run(run_backtest(args, settings))
        else:
            exit_code = asyncio.run(run_fetch(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 130
    except BacktestError as e:
        logger.error(f"{e}")
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
