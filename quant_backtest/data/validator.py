"""
Data integrity validation for historical market data.

Classifies a candidate bar series before it may be used in a backtest:
- Structural checks per bar (OHLC ordering, positive prices, plausible volume)
- Provenance checks (source-side validation flag, trusted origin, fingerprint)
- Temporal checks (ordering, duplicates, range, gaps between bars)
- Integrity and quality scores for the data set as a whole

The validator never mutates its input; it only reports.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Sequence

import numpy as np

from quant_backtest.config.backtest_config import DataValidationConfig
from quant_backtest.core.data_types import MarketBar, ensure_utc

logger = logging.getLogger(__name__)

# First block of the Bitcoin chain; nothing tradable predates it.
EARLIEST_MARKET_DATA = datetime(2009, 1, 3, tzinfo=timezone.utc)
MAX_VOLUME = 1e12
MIN_INTEGRITY_LENGTH = 10
SYNTHETIC_SOURCES = frozenset({"MOCK", "SYNTHETIC", "TEST", "GENERATED", "SIMULATED", "FAKE", "RANDOM"})
MAX_REPORTED_MESSAGES = 100

_INTERVAL_PATTERN = re.compile(r"^(\d+)\s*([smhdw])$", re.IGNORECASE)
_INTERVAL_UNIT_MINUTES = {"s": 1 / 60, "m": 1, "h": 60, "d": 1440, "w": 10080}


class GapSeverity(str, Enum):
    """Severity of a gap in the bar series."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


GAP_WEIGHTS = {
    GapSeverity.LOW: 0.02,
    GapSeverity.MEDIUM: 0.05,
    GapSeverity.HIGH: 0.10,
}
MAX_GAP_PENALTY = 0.5


@dataclass(frozen=True)
class DataGap:
    """A contiguous run of missing expected bars."""

    start: datetime
    end: datetime
    duration_minutes: float
    missing_bars: int
    severity: GapSeverity

    @property
    def impact(self) -> str:
        return f"Missing {self.missing_bars} expected data points"

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "duration_minutes": self.duration_minutes,
            "missing_bars": self.missing_bars,
            "severity": self.severity.value,
            "impact": self.impact,
        }


@dataclass
class DataValidationResult:
    """Outcome of validating one bar series."""

    is_valid: bool
    total_points: int
    valid_points: int
    integrity_score: float
    quality_score: float = 100.0
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    gaps: list[DataGap] = field(default_factory=list)
    expected_interval_minutes: float | None = None
    invalid_indices: frozenset[int] = field(default_factory=frozenset)

    @property
    def invalid_points(self) -> int:
        return self.total_points - self.valid_points

    @property
    def high_severity_gaps(self) -> list[DataGap]:
        return [g for g in self.gaps if g.severity is GapSeverity.HIGH]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "is_valid": self.is_valid,
            "total_points": self.total_points,
            "valid_points": self.valid_points,
            "invalid_points": self.invalid_points,
            "integrity_score": self.integrity_score,
            "quality_score": self.quality_score,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "gaps": [g.to_dict() for g in self.gaps],
            "expected_interval_minutes": self.expected_interval_minutes,
        }


def parse_interval_minutes(label: str | None) -> float | None:
    """Parse an interval label such as ``15m`` or ``1h`` into minutes."""
    if not label:
        return None
    match = _INTERVAL_PATTERN.match(label.strip())
    if not match:
        return None
    return int(match.group(1)) * _INTERVAL_UNIT_MINUTES[match.group(2).lower()]


class _MessageLog:
    """Bounded message list that still counts what it drops."""

    def __init__(self, limit: int = MAX_REPORTED_MESSAGES) -> None:
        self.limit = limit
        self.messages: list[str] = []
        self.dropped = 0

    def add(self, message: str) -> None:
        if len(self.messages) < self.limit:
            self.messages.append(message)
        else:
            self.dropped += 1

    def __len__(self) -> int:
        return len(self.messages) + self.dropped

    def finalize(self) -> list[str]:
        if self.dropped:
            return self.messages + [f"... and {self.dropped} more"]
        return list(self.messages)


class DataIntegrityValidator:
    """Validates historical bars before they are used for simulation."""

    def __init__(self, config: DataValidationConfig | None = None) -> None:
        """Initialize the validator.

        Args:
            config: Data validation requirements; defaults apply when omitted.
        """
        self.config = config or DataValidationConfig()

    def validate(
        self,
        bars: Sequence[MarketBar],
        symbol: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        now: datetime | None = None,
    ) -> DataValidationResult:
        """Validate a bar series.

        Args:
            bars: Candidate bars in the order received.
            symbol: Expected symbol; mismatching bars are errors.
            start: Requested range start, used for gap and range checks.
            end: Requested range end.
            now: Reference time for the future-timestamp check.

        Returns:
            DataValidationResult describing the series.
        """
        errors = _MessageLog()
        warnings = _MessageLog()
        invalid: set[int] = set()
        now = ensure_utc(now) if now else datetime.now(timezone.utc)
        expected_symbol = symbol.upper().strip() if symbol else None

        total = len(bars)
        if total < self.config.min_data_points:
            errors.add(
                f"Insufficient data points: {total} < required {self.config.min_data_points}"
            )

        for index, bar in enumerate(bars):
            bar_errors, bar_warnings = self._check_bar(index, bar, expected_symbol, now)
            for message in bar_warnings:
                warnings.add(message)
            if bar_errors:
                invalid.add(index)
                for message in bar_errors:
                    errors.add(message)

        for index, message in self._check_ordering(bars):
            invalid.add(index)
            errors.add(message)

        interval = self._resolve_interval(bars)
        gaps: list[DataGap] = []
        if interval is not None:
            gaps = self.detect_gaps(bars, interval, start, end)
            for gap in gaps:
                message = (
                    f"{gap.severity.value} severity gap of {gap.duration_minutes:.0f} minutes "
                    f"from {gap.start.isoformat()} to {gap.end.isoformat()} ({gap.impact})"
                )
                if gap.severity is GapSeverity.HIGH:
                    errors.add(message)
                else:
                    warnings.add(message)

        valid_points = total - len(invalid)
        integrity_score = self.integrity_score(valid_points, total, gaps)
        quality_score = self.quality_score([bars[i] for i in range(total) if i not in invalid])
        if total and quality_score < 90.0:
            warnings.add(f"Data quality score {quality_score:.1f} is below 90 (price outliers)")

        result = DataValidationResult(
            is_valid=len(errors) == 0,
            total_points=total,
            valid_points=valid_points,
            integrity_score=integrity_score,
            quality_score=quality_score,
            errors=errors.finalize(),
            warnings=warnings.finalize(),
            gaps=gaps,
            expected_interval_minutes=interval,
            invalid_indices=frozenset(invalid),
        )

        logger.info(
            f"Validated {total} bars: valid={valid_points} gaps={len(gaps)} "
            f"integrity={integrity_score:.1f} is_valid={result.is_valid}"
        )
        return result

    # -------------------------------------------------------------------------
    # Per-bar checks
    # -------------------------------------------------------------------------

    def _check_bar(
        self,
        index: int,
        bar: MarketBar,
        expected_symbol: str | None,
        now: datetime,
    ) -> tuple[list[str], list[str]]:
        errors: list[str] = []
        warnings: list[str] = []
        label = f"Bar {index} ({bar.timestamp.isoformat()})"

        if self.config.require_validated_source:
            if not bar.validated:
                errors.append(f"{label} is not validated at source; only validated market data may be used")
            if bar.source in SYNTHETIC_SOURCES:
                errors.append(f"{label} has synthetic provenance '{bar.source}'; mock data is not allowed")
            elif bar.source not in self.config.trusted_sources:
                errors.append(f"{label} has untrusted provenance '{bar.source}'")

        if len(bar.integrity) < MIN_INTEGRITY_LENGTH:
            errors.append(f"{label} is missing its integrity fingerprint")
        elif self.config.verify_integrity and bar.integrity != bar.expected_integrity():
            errors.append(f"{label} integrity fingerprint does not match its content")

        if expected_symbol and bar.symbol != expected_symbol:
            errors.append(f"{label} has symbol {bar.symbol}, expected {expected_symbol}")

        prices = (bar.open, bar.high, bar.low, bar.close)
        if any(not np.isfinite(p) or p <= 0 for p in prices):
            errors.append(f"{label} has non-positive or non-finite prices")
        else:
            for violation in bar.ohlc_violations():
                errors.append(f"{label} violates OHLC ordering: {violation}")
            if bar.price_range_pct > self.config.max_bar_range_pct:
                errors.append(
                    f"{label} has an unrealistic range of {bar.price_range_pct * 100:.1f}% in one bar"
                )

        if not np.isfinite(bar.volume) or bar.volume < 0:
            errors.append(f"{label} has invalid volume {bar.volume}")
        elif bar.volume > MAX_VOLUME:
            errors.append(f"{label} has implausible volume {bar.volume}")
        elif bar.volume == 0:
            warnings.append(f"{label} has zero volume")

        if bar.timestamp > now:
            errors.append(f"{label} is in the future")
        elif bar.timestamp < EARLIEST_MARKET_DATA:
            errors.append(f"{label} predates available market history")

        return errors, warnings

    @staticmethod
    def _check_ordering(bars: Sequence[MarketBar]) -> list[tuple[int, str]]:
        problems: list[tuple[int, str]] = []
        for index in range(1, len(bars)):
            previous, current = bars[index - 1].timestamp, bars[index].timestamp
            if current == previous:
                problems.append((index, f"Bar {index} duplicates timestamp {current.isoformat()}"))
            elif current < previous:
                problems.append((index, f"Bar {index} ({current.isoformat()}) is out of chronological order"))
        return problems

    # -------------------------------------------------------------------------
    # Gaps
    # -------------------------------------------------------------------------

    def _resolve_interval(self, bars: Sequence[MarketBar]) -> float | None:
        if self.config.interval_minutes:
            return self.config.interval_minutes
        for bar in bars:
            parsed = parse_interval_minutes(bar.interval)
            if parsed:
                return parsed
        return self.infer_interval_minutes(bars)

    @staticmethod
    def infer_interval_minutes(bars: Sequence[MarketBar]) -> float | None:
        """Infer the bar interval as the median positive spacing in minutes."""
        if len(bars) < 2:
            return None
        stamps = np.array(sorted(b.timestamp.timestamp() for b in bars), dtype=float)
        spacing = np.diff(stamps)
        spacing = spacing[spacing > 0]
        if spacing.size == 0:
            return None
        return float(np.median(spacing)) / 60.0

    def detect_gaps(
        self,
        bars: Sequence[MarketBar],
        interval_minutes: float,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[DataGap]:
        """Find runs of missing bars.

        A gap is any spacing larger than 1.5 bar intervals, including the
        space between the requested range bounds and the first/last bar.

        Args:
            bars: Bar series.
            interval_minutes: Expected bar interval.
            start: Requested range start.
            end: Requested range end.

        Returns:
            Gaps in chronological order.
        """
        stamps = sorted({b.timestamp for b in bars})
        if not stamps:
            return []

        range_start = ensure_utc(start) if start else stamps[0]
        range_end = ensure_utc(end) if end else stamps[-1]
        range_minutes = max((range_end - range_start).total_seconds() / 60.0, interval_minutes)
        max_gap = self.config.max_gap_minutes or interval_minutes * 10

        boundaries: list[tuple[datetime, datetime]] = []
        if start and stamps[0] > range_start:
            boundaries.append((range_start - timedelta(minutes=interval_minutes), stamps[0]))
        boundaries.extend(zip(stamps, stamps[1:]))
        if end and range_end > stamps[-1]:
            boundaries.append((stamps[-1], range_end + timedelta(minutes=interval_minutes)))

        gaps: list[DataGap] = []
        for previous, current in boundaries:
            delta_minutes = (current - previous).total_seconds() / 60.0
            if delta_minutes <= interval_minutes * 1.5:
                continue
            gap_minutes = delta_minutes - interval_minutes
            missing = max(int(round(delta_minutes / interval_minutes)) - 1, 1)
            if gap_minutes <= max_gap:
                severity = GapSeverity.LOW
            elif (
                gap_minutes > 3 * max_gap
                or gap_minutes > self.config.max_gap_fraction * range_minutes
            ):
                severity = GapSeverity.HIGH
            else:
                severity = GapSeverity.MEDIUM
            gaps.append(
                DataGap(
                    start=previous + timedelta(minutes=interval_minutes),
                    end=current,
                    duration_minutes=gap_minutes,
                    missing_bars=missing,
                    severity=severity,
                )
            )
        return gaps

    # -------------------------------------------------------------------------
    # Scores
    # -------------------------------------------------------------------------

    @staticmethod
    def integrity_score(valid_points: int, total_points: int, gaps: Sequence[DataGap]) -> float:
        """Share of structurally valid bars, weighted down by gap severity.

        Returns:
            Score in [0, 100].
        """
        if total_points <= 0:
            return 0.0
        valid_ratio = valid_points / total_points
        penalty = min(sum(GAP_WEIGHTS[g.severity] for g in gaps), MAX_GAP_PENALTY)
        return max(0.0, valid_ratio - penalty) * 100.0

    @staticmethod
    def quality_score(bars: Sequence[MarketBar]) -> float:
        """Share of bar-to-bar returns that are not IQR outliers, in [0, 100]."""
        closes = np.array([b.close for b in bars if b.close > 0], dtype=float)
        if closes.size < 5:
            return 100.0
        returns = np.diff(closes) / closes[:-1]
        q1, q3 = np.percentile(returns, [25, 75])
        iqr = q3 - q1
        if iqr <= 0:
            return 100.0
        outliers = np.sum((returns < q1 - 1.5 * iqr) | (returns > q3 + 1.5 * iqr))
        return float(100.0 * (1.0 - outliers / returns.size))
