"""
Data layer: historical data sources, fetching, and integrity validation.
"""

from .fetcher import FetchResult, FetchStatistics, HistoricalDataFetcher, normalize_bars
from .sources import (
    CachingDataSource,
    CsvDataSource,
    GateIOHistoricalSource,
    HistoricalDataSource,
    InMemoryDataSource,
    write_bars_csv,
)
from .validator import DataGap, DataIntegrityValidator, DataValidationResult, GapSeverity

__all__ = [
    "FetchResult",
    "FetchStatistics",
    "HistoricalDataFetcher",
    "normalize_bars",
    "CachingDataSource",
    "CsvDataSource",
    "GateIOHistoricalSource",
    "HistoricalDataSource",
    "InMemoryDataSource",
    "write_bars_csv",
    "DataGap",
    "DataIntegrityValidator",
    "DataValidationResult",
    "GapSeverity",
]
