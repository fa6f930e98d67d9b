"""
Historical market data sources.

Defines the data source interface consumed by the fetcher and its
implementations:
- GateIOHistoricalSource: Gate.io spot candlesticks over aiohttp
- CsvDataSource: locally cached bar files read with pandas
- InMemoryDataSource: bars already held in memory
- CachingDataSource: memoises another source per (symbol, range)

Sources never retry. Any failure surfaces as ``DataUnavailableError`` and
retrying is left to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

import aiohttp
import pandas as pd

from quant_backtest.core.data_types import MarketBar, compute_integrity_hash, ensure_utc
from quant_backtest.core.exceptions import DataUnavailableError

logger = logging.getLogger(__name__)

CSV_COLUMNS = ["symbol", "timestamp", "open", "high", "low", "close", "volume", "integrity"]


class HistoricalDataSource(ABC):
    """Abstract source of historical bars."""

    name: str = "UNKNOWN"

    @abstractmethod
    async def fetch(self, symbol: str, start: datetime, end: datetime) -> list[MarketBar]:
        """Fetch bars for ``symbol`` with timestamps in ``[start, end]``.

        Raises:
            DataUnavailableError: If the source cannot serve the request.
        """
        pass

    async def close(self) -> None:
        """Release resources held by the source."""
        return None


# =============================================================================
# Gate.io
# =============================================================================


@dataclass
class RateLimiter:
    """Sliding window rate limiter for API requests."""

    requests_per_minute: int = 300
    _request_times: list[float] = field(default_factory=list)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def acquire(self) -> None:
        """Wait if rate limit would be exceeded."""
        async with self._lock:
            now = time.monotonic()
            self._request_times = [t for t in self._request_times if now - t < 60]

            if len(self._request_times) >= self.requests_per_minute:
                wait_time = 60 - (now - self._request_times[0])
                if wait_time > 0:
                    logger.debug(f"Rate limit reached, waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)

            self._request_times.append(time.monotonic())


class GateIOHistoricalSource(HistoricalDataSource):
    """Gate.io spot candlestick source.

    Requests are split into batches of at most ``batch_size`` candles. The
    interval is chosen from the range duration unless given explicitly.
    """

    name = "GATE_IO"

    INTERVAL_MINUTES: dict[str, int] = {
        "1m": 1,
        "5m": 5,
        "15m": 15,
        "30m": 30,
        "1h": 60,
        "4h": 240,
        "8h": 480,
        "1d": 1440,
    }

    def __init__(
        self,
        base_url: str = "https://api.gateio.ws/api/v4",
        timeout_seconds: float = 30.0,
        batch_size: int = 1000,
        requests_per_minute: int = 300,
        interval: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            base_url: REST API base URL.
            timeout_seconds: Total timeout per request.
            batch_size: Candles per request (Gate.io caps at 1000).
            requests_per_minute: Client side request budget.
            interval: Fixed candle interval; chosen by duration when None.
            session: Externally owned session; one per fetch otherwise.
        """
        if interval is not None and interval not in self.INTERVAL_MINUTES:
            raise ValueError(f"Unsupported Gate.io interval: {interval}")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.batch_size = batch_size
        self.interval = interval
        self.rate_limiter = RateLimiter(requests_per_minute=requests_per_minute)
        self._session = session

    @staticmethod
    def choose_interval(start: datetime, end: datetime) -> str:
        """Pick the finest interval that keeps the request volume sensible."""
        duration_days = (end - start).total_seconds() / 86400.0
        if duration_days <= 7:
            return "1m"
        if duration_days <= 30:
            return "5m"
        if duration_days <= 90:
            return "15m"
        if duration_days <= 180:
            return "1h"
        return "4h"

    @classmethod
    def plan_batches(
        cls,
        start: datetime,
        end: datetime,
        interval: str,
        batch_size: int = 1000,
    ) -> list[tuple[datetime, datetime]]:
        """Split ``[start, end]`` into request windows of ``batch_size`` candles."""
        step = timedelta(minutes=cls.INTERVAL_MINUTES[interval])
        span = step * (batch_size - 1)
        batches: list[tuple[datetime, datetime]] = []
        cursor = ensure_utc(start)
        end = ensure_utc(end)
        while cursor <= end:
            batch_end = min(cursor + span, end)
            batches.append((cursor, batch_end))
            cursor = batch_end + step
        return batches

    async def fetch(self, symbol: str, start: datetime, end: datetime) -> list[MarketBar]:
        interval = self.interval or self.choose_interval(start, end)
        batches = self.plan_batches(start, end, interval, self.batch_size)
        logger.info(f"Fetching {symbol} {interval} candles from Gate.io in {len(batches)} batches")

        owns_session = self._session is None
        session = self._session or aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout_seconds)
        )
        bars: list[MarketBar] = []
        try:
            for batch_start, batch_end in batches:
                rows = await self._request(
                    session,
                    "/spot/candlesticks",
                    params={
                        "currency_pair": symbol.upper(),
                        "interval": interval,
                        "from": int(batch_start.timestamp()),
                        "to": int(batch_end.timestamp()),
                    },
                )
                bars.extend(self.parse_candles(symbol, rows, interval))
        finally:
            if owns_session:
                await session.close()
        return bars

    async def _request(
        self,
        session: aiohttp.ClientSession,
        endpoint: str,
        params: dict[str, Any],
    ) -> list[Any]:
        """Make one API request.

        Raises:
            DataUnavailableError: On HTTP errors, network errors or timeouts.
        """
        await self.rate_limiter.acquire()
        url = f"{self.base_url}{endpoint}"
        try:
            async with session.get(url, params=params) as response:
                if response.status >= 400:
                    body = await response.text()
                    raise DataUnavailableError(
                        f"Gate.io API error ({response.status}): {body[:200]}",
                        source=self.name,
                        symbol=params.get("currency_pair"),
                    )
                data = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataUnavailableError(
                f"Gate.io request failed: {e}",
                source=self.name,
                symbol=params.get("currency_pair"),
                cause=type(e).__name__,
            ) from e

        if not isinstance(data, list):
            raise DataUnavailableError(
                "Unexpected Gate.io response payload",
                source=self.name,
                symbol=params.get("currency_pair"),
            )
        return data

    @classmethod
    def parse_candles(
        cls,
        symbol: str,
        rows: Sequence[Any],
        interval: str,
        fetched_at: datetime | None = None,
    ) -> list[MarketBar]:
        """Convert Gate.io candle rows into bars.

        Rows are ``[t, quote_volume, close, high, low, open, base_volume,
        window_closed]``; candles whose window is still open are skipped.
        """
        fetched_at = fetched_at or datetime.now(timezone.utc)
        bars: list[MarketBar] = []
        for row in rows:
            try:
                if len(row) > 7 and str(row[7]).lower() == "false":
                    continue
                timestamp = datetime.fromtimestamp(int(row[0]), timezone.utc)
                close, high, low, open_ = (float(row[i]) for i in (2, 3, 4, 5))
                volume = float(row[6]) if len(row) > 6 else float(row[1])
            except (TypeError, ValueError, IndexError) as e:
                raise DataUnavailableError(
                    f"Malformed Gate.io candle: {row!r}",
                    source=cls.name,
                    symbol=symbol,
                    cause=str(e),
                ) from e
            bars.append(
                MarketBar(
                    symbol=symbol,
                    timestamp=timestamp,
                    open=open_,
                    high=high,
                    low=low,
                    close=close,
                    volume=volume,
                    validated=True,
                    source=cls.name,
                    integrity=compute_integrity_hash(timestamp, open_, high, low, close, volume),
                    interval=interval,
                    fetched_at=fetched_at,
                )
            )
        return bars


# =============================================================================
# Local sources
# =============================================================================


class InMemoryDataSource(HistoricalDataSource):
    """Serves bars that are already loaded."""

    name = "IN_MEMORY"

    def __init__(self, bars: Iterable[MarketBar]) -> None:
        self._bars = tuple(bars)

    async def fetch(self, symbol: str, start: datetime, end: datetime) -> list[MarketBar]:
        symbol = symbol.upper()
        start, end = ensure_utc(start), ensure_utc(end)
        return [b for b in self._bars if b.symbol == symbol and start <= b.timestamp <= end]


class CsvDataSource(HistoricalDataSource):
    """Reads bars from a CSV cache file.

    Expected columns: ``timestamp, open, high, low, close, volume`` and
    optionally ``symbol`` and ``integrity``. Bars are tagged with
    ``source_tag`` and marked validated, since the cache only holds data
    previously fetched from an exchange.
    """

    name = "CSV"

    def __init__(
        self,
        path: Path,
        source_tag: str = "LOCAL_CACHE",
        interval: str | None = None,
        fingerprint_missing: bool = False,
    ) -> None:
        """Initialize the source.

        Args:
            path: CSV file path.
            source_tag: Provenance tag stamped on loaded bars.
            interval: Bar interval label of the file.
            fingerprint_missing: Compute fingerprints for rows without one
                instead of leaving them empty.
        """
        self.path = Path(path)
        self.source_tag = source_tag
        self.interval = interval
        self.fingerprint_missing = fingerprint_missing

    async def fetch(self, symbol: str, start: datetime, end: datetime) -> list[MarketBar]:
        try:
            df = pd.read_csv(self.path, float_precision="round_trip")
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise DataUnavailableError(
                f"Failed to read bar cache {self.path}: {e}",
                source=self.name,
                symbol=symbol,
                cause=type(e).__name__,
            ) from e

        missing = {"timestamp", "open", "high", "low", "close", "volume"} - set(df.columns)
        if missing:
            raise DataUnavailableError(
                f"Bar cache {self.path} is missing columns: {sorted(missing)}",
                source=self.name,
                symbol=symbol,
            )

        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        symbol = symbol.upper()
        if "symbol" in df.columns:
            df = df[df["symbol"].astype(str).str.upper() == symbol]
        mask = (df["timestamp"] >= pd.Timestamp(ensure_utc(start))) & (
            df["timestamp"] <= pd.Timestamp(ensure_utc(end))
        )
        df = df.loc[mask]

        bars: list[MarketBar] = []
        for row in df.itertuples(index=False):
            timestamp = row.timestamp.to_pydatetime()
            values = (float(row.open), float(row.high), float(row.low), float(row.close), float(row.volume))
            integrity = getattr(row, "integrity", "")
            if not isinstance(integrity, str):
                integrity = ""
            if not integrity and self.fingerprint_missing:
                integrity = compute_integrity_hash(timestamp, *values)
            bars.append(
                MarketBar(
                    symbol=symbol,
                    timestamp=timestamp,
                    open=values[0],
                    high=values[1],
                    low=values[2],
                    close=values[3],
                    volume=values[4],
                    validated=True,
                    source=self.source_tag,
                    integrity=integrity,
                    interval=self.interval,
                )
            )
        return bars


def write_bars_csv(bars: Sequence[MarketBar], path: Path) -> Path:
    """Write bars to a CSV cache file readable by ``CsvDataSource``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame = pd.DataFrame(
        [
            {
                "symbol": b.symbol,
                "timestamp": b.timestamp.isoformat(),
                "open": b.open,
                "high": b.high,
                "low": b.low,
                "close": b.close,
                "volume": b.volume,
                "integrity": b.integrity,
            }
            for b in bars
        ],
        columns=CSV_COLUMNS,
    )
    frame.to_csv(path, index=False)
    return path


class CachingDataSource(HistoricalDataSource):
    """Memoises another source's responses per (symbol, start, end).

    Safe to share between runs executing on different threads.
    """

    def __init__(self, inner: HistoricalDataSource) -> None:
        self.inner = inner
        self._cache: dict[tuple[str, datetime, datetime], tuple[MarketBar, ...]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @property
    def name(self) -> str:  # type: ignore[override]
        return self.inner.name

    async def fetch(self, symbol: str, start: datetime, end: datetime) -> list[MarketBar]:
        key = (symbol.upper(), ensure_utc(start), ensure_utc(end))
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self.hits += 1
                return list(cached)
        bars = await self.inner.fetch(symbol, start, end)
        with self._lock:
            self.misses += 1
            self._cache[key] = tuple(bars)
        return list(bars)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    async def close(self) -> None:
        await self.inner.close()
