"""
Custom exception hierarchy for the backtesting engine.

Provides a structured exception hierarchy for the failure modes of a run:
- Configuration errors (fatal before the run begins)
- Data errors (validation failures, unavailable sources)
- Per-signal conditions (execution rejections, risk limit breaches)
- Run lifecycle errors (cancellation, invalid state transitions)

Fatal errors abort a run into a FAILED result; per-signal conditions are
recorded and the simulation continues.
"""

from __future__ import annotations

from typing import Any


class BacktestError(Exception):
    """Base exception for all backtesting errors.

    All custom exceptions in the package inherit from this class.
    Provides structured error information including error code, message,
    and additional context.
    """

    #: Whether the error aborts the run it occurs in.
    fatal: bool = True

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            error_code: Optional error code for programmatic handling.
            details: Optional dictionary with additional error context.
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}

    def __str__(self) -> str:
        """Return formatted error string."""
        if self.details:
            return f"[{self.error_code}] {self.message} - Details: {self.details}"
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "fatal": self.fatal,
        }


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(BacktestError):
    """Raised when a backtest configuration is invalid.

    Examples:
        - Empty symbol or strategy list
        - start_date not before end_date
        - Non-positive initial balance
        - Strategy parameters such as fast_period >= slow_period
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        invalid_value: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the configuration error.

        Args:
            message: Human-readable error message.
            field_name: Name of the offending configuration field.
            invalid_value: The value that failed validation.
            **kwargs: Additional context passed to parent.
        """
        details = kwargs.pop("details", {})
        if field_name:
            details["field_name"] = field_name
        if invalid_value is not None:
            details["invalid_value"] = str(invalid_value)
        super().__init__(message, details=details, **kwargs)
        self.field_name = field_name
        self.invalid_value = invalid_value


# =============================================================================
# Data Errors
# =============================================================================


class DataError(BacktestError):
    """Base exception for data-related errors."""

    pass


class DataValidationError(DataError):
    """Raised when a data set fails integrity checks.

    The run is aborted before simulation; the failure is never downgraded
    to warnings.
    """

    def __init__(
        self,
        message: str,
        errors: list[str] | None = None,
        integrity_score: float | None = None,
        validation: Any = None,
        **kwargs: Any,
    ) -> None:
        """Initialize the data validation error.

        Args:
            message: Human-readable error message.
            errors: Validator error messages.
            integrity_score: Integrity score of the rejected data set.
            validation: The full validation result, if available.
            **kwargs: Additional context passed to parent.
        """
        details = kwargs.pop("details", {})
        if errors:
            details["errors"] = errors[:20]
            details["error_count"] = len(errors)
        if integrity_score is not None:
            details["integrity_score"] = integrity_score
        super().__init__(message, details=details, **kwargs)
        self.errors = errors or []
        self.integrity_score = integrity_score
        self.validation = validation


class DataUnavailableError(DataError):
    """Raised when the external historical data source fails.

    Retrying is left to the caller; the core never retries and never
    substitutes partial or fabricated data.
    """

    def __init__(
        self,
        message: str,
        source: str | None = None,
        symbol: str | None = None,
        cause: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if source:
            details["source"] = source
        if symbol:
            details["symbol"] = symbol
        if cause:
            details["cause"] = cause
        super().__init__(message, details=details, **kwargs)
        self.source = source
        self.symbol = symbol
        self.cause = cause


# =============================================================================
# Per-Signal Conditions (non-fatal)
# =============================================================================


class ExecutionRejection(BacktestError):
    """Raised when the execution simulator does not fill a signal.

    Non-fatal: recorded as a rejected signal and the simulation continues.
    """

    fatal = False

    def __init__(
        self,
        message: str,
        signal_id: str | None = None,
        reason: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if signal_id:
            details["signal_id"] = signal_id
        if reason:
            details["reason"] = reason
        super().__init__(message, details=details, **kwargs)
        self.signal_id = signal_id
        self.reason = reason


class RiskLimitExceeded(BacktestError):
    """Raised when a candidate trade breaches a risk limit.

    Non-fatal: the signal is down-sized or rejected and the simulation
    continues.

    Examples:
        - Risk/reward ratio below the configured minimum
        - Portfolio drawdown breaker engaged
        - Position cannot fit at the minimum viable size
    """

    fatal = False

    def __init__(
        self,
        message: str,
        limit_name: str | None = None,
        current_value: float | None = None,
        limit_value: float | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if limit_name:
            details["limit_name"] = limit_name
        if current_value is not None:
            details["current_value"] = current_value
        if limit_value is not None:
            details["limit_value"] = limit_value
        super().__init__(message, details=details, **kwargs)
        self.limit_name = limit_name
        self.current_value = current_value
        self.limit_value = limit_value


# =============================================================================
# Run Lifecycle Errors
# =============================================================================


class BacktestCancelledError(BacktestError):
    """Raised when a run is cancelled cooperatively at a bar boundary."""

    def __init__(
        self,
        message: str = "Backtest cancelled",
        bars_processed: int | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        if bars_processed is not None:
            details["bars_processed"] = bars_processed
        super().__init__(message, details=details, **kwargs)
        self.bars_processed = bars_processed


class InvalidStateTransition(BacktestError):
    """Raised when a run attempts a transition its state does not allow."""

    def __init__(
        self,
        current_state: str,
        target_state: str,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {})
        details["current_state"] = current_state
        details["target_state"] = target_state
        super().__init__(
            f"Invalid run state transition {current_state} -> {target_state}",
            details=details,
            **kwargs,
        )
        self.current_state = current_state
        self.target_state = target_state


class BacktestInProgressError(BacktestError):
    """Raised when an engine is asked to start a second concurrent run."""

    pass


class LedgerOrderError(BacktestError):
    """Raised when a ledger step is not strictly after the latest snapshot."""

    pass
