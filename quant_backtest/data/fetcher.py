"""
Historical data fetcher.

Retrieves bars for a symbol and date range from a data source, normalises
the series (de-duplication, ordering, range filtering), and delegates to
the data integrity validator. The accepted series is returned together
with the validation report and fetch statistics.

A failing source is fatal for the run: no partial or fabricated data is
ever returned, and no retry is attempted.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Sequence

from quant_backtest.config.backtest_config import DataValidationConfig
from quant_backtest.core.data_types import MarketBar, ensure_utc
from quant_backtest.core.exceptions import DataUnavailableError
from quant_backtest.data.sources import HistoricalDataSource
from quant_backtest.data.validator import DataIntegrityValidator, DataValidationResult
from quant_backtest.monitoring.logger import log_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchStatistics:
    """Bookkeeping of one fetch."""

    source: str
    bars_received: int
    duplicates_removed: int
    out_of_range_removed: int
    bars_accepted: int
    elapsed_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "bars_received": self.bars_received,
            "duplicates_removed": self.duplicates_removed,
            "out_of_range_removed": self.out_of_range_removed,
            "bars_accepted": self.bars_accepted,
            "elapsed_ms": self.elapsed_ms,
        }


@dataclass(frozen=True)
class FetchResult:
    """Accepted bars plus the validation report that admitted them."""

    bars: tuple[MarketBar, ...]
    validation: DataValidationResult
    statistics: FetchStatistics

    @property
    def data_source(self) -> str:
        return self.statistics.source


def normalize_bars(
    bars: Sequence[MarketBar],
    start: datetime,
    end: datetime,
) -> tuple[list[MarketBar], int, int]:
    """Sort bars, drop duplicates and bars outside ``[start, end]``.

    The first occurrence of a ``(symbol, timestamp)`` pair wins.

    Returns:
        Tuple of (bars, duplicates_removed, out_of_range_removed).
    """
    start, end = ensure_utc(start), ensure_utc(end)
    seen: set[tuple[str, datetime]] = set()
    unique: list[MarketBar] = []
    duplicates = 0
    for bar in bars:
        key = (bar.symbol, bar.timestamp)
        if key in seen:
            duplicates += 1
            continue
        seen.add(key)
        unique.append(bar)

    in_range = [b for b in unique if start <= b.timestamp <= end]
    in_range.sort(key=lambda b: b.timestamp)
    return in_range, duplicates, len(unique) - len(in_range)


class HistoricalDataFetcher:
    """Fetches and validates the data set of a backtest."""

    def __init__(
        self,
        source: HistoricalDataSource,
        validator: DataIntegrityValidator | None = None,
    ) -> None:
        """Initialize the fetcher.

        Args:
            source: External historical data source.
            validator: Validator to apply; built from the per-call config
                when omitted.
        """
        self.source = source
        self.validator = validator

    async def fetch_raw(self, symbol: str, start: datetime, end: datetime) -> list[MarketBar]:
        """Fetch from the source, wrapping every failure.

        Raises:
            DataUnavailableError: If the source fails or returns nothing.
        """
        try:
            bars = await self.source.fetch(symbol, start, end)
        except DataUnavailableError:
            raise
        except Exception as e:
            raise DataUnavailableError(
                f"Data source {self.source.name} failed: {e}",
                source=self.source.name,
                symbol=symbol,
                cause=type(e).__name__,
            ) from e

        if not bars:
            raise DataUnavailableError(
                f"No historical data returned for {symbol} between "
                f"{start.isoformat()} and {end.isoformat()}",
                source=self.source.name,
                symbol=symbol,
            )
        return list(bars)

    def validate(
        self,
        bars: Sequence[MarketBar],
        symbol: str,
        start: datetime,
        end: datetime,
        validation_config: DataValidationConfig | None = None,
    ) -> DataValidationResult:
        """Run the integrity validator over an already fetched series."""
        validator = self.validator or DataIntegrityValidator(validation_config)
        return validator.validate(bars, symbol=symbol, start=start, end=end)

    async def fetch_for_backtest(
        self,
        symbol: str,
        start: datetime,
        end: datetime,
        validation_config: DataValidationConfig | None = None,
    ) -> FetchResult:
        """Fetch, normalise and validate the bars of a backtest range.

        Args:
            symbol: Trading pair.
            start: Range start (inclusive).
            end: Range end (inclusive).
            validation_config: Integrity requirements of the run.

        Returns:
            FetchResult with the accepted bars. The caller decides whether
            an invalid report is fatal.

        Raises:
            DataUnavailableError: If the source fails or returns nothing.
        """
        started = time.perf_counter()
        raw = await self.fetch_raw(symbol, start, end)
        bars, duplicates, out_of_range = normalize_bars(raw, start, end)
        if not bars:
            raise DataUnavailableError(
                f"No historical data for {symbol} inside the requested range",
                source=self.source.name,
                symbol=symbol,
            )

        validation = self.validate(bars, symbol, start, end, validation_config)
        accepted = tuple(b for i, b in enumerate(bars) if i not in validation.invalid_indices)

        statistics = FetchStatistics(
            source=self.source.name,
            bars_received=len(raw),
            duplicates_removed=duplicates,
            out_of_range_removed=out_of_range,
            bars_accepted=len(accepted),
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )
        log_data(
            f"Fetched {len(raw)} bars for {symbol}, accepted {len(accepted)}",
            symbol=symbol,
            **statistics.to_dict(),
        )
        return FetchResult(bars=accepted, validation=validation, statistics=statistics)
