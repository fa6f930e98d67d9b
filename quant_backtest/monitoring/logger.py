"""
Structured logging for the backtesting engine.

Provides:
- JSON and human-readable log formats
- Log categories for the data, risk, execution and backtest components
- Context loggers carrying a correlation ID (the run ID of a backtest)
- Rotating file handler support
- TRACE level logging for per-bar debugging
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from functools import lru_cache
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any
from uuid import uuid4


# =============================================================================
# TRACE Level Logging (below DEBUG)
# =============================================================================

TRACE = 5
logging.addLevelName(TRACE, "TRACE")


class LogCategory(str, Enum):
    """Log categories for different components."""

    SYSTEM = "SYSTEM"
    DATA = "DATA"
    BACKTEST = "BACKTEST"
    EXECUTION = "EXECUTION"
    RISK = "RISK"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    TEXT = "text"


_OPTIONAL_FIELDS = ("correlation_id", "symbol", "strategy", "extra_data")


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def __init__(self, category: LogCategory = LogCategory.SYSTEM) -> None:
        """Initialize the formatter.

        Args:
            category: Default log category.
        """
        super().__init__()
        self.category = category

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON.

        Args:
            record: Log record to format.

        Returns:
            JSON formatted string.
        """
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "category": getattr(record, "category", self.category.value),
            "message": record.getMessage(),
            "logger": record.name,
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in _OPTIONAL_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development."""

    def __init__(self, category: LogCategory = LogCategory.SYSTEM) -> None:
        super().__init__()
        self.category = category

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as human-readable text."""
        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        category = getattr(record, "category", self.category.value)

        parts = [
            timestamp,
            f"[{record.levelname:8s}]",
            f"[{category:9s}]",
        ]

        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            parts.append(f"[{correlation_id[:8]}]")
        symbol = getattr(record, "symbol", None)
        if symbol:
            parts.append(f"[{symbol}]")

        parts.append(record.getMessage())

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            parts.append(f"| {extra_data}")

        message = " ".join(parts)

        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)

        return message


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter with context support."""

    def __init__(
        self,
        logger: logging.Logger,
        category: LogCategory = LogCategory.SYSTEM,
        correlation_id: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the context logger.

        Args:
            logger: Base logger instance.
            category: Log category.
            correlation_id: Optional correlation ID, e.g. a backtest run ID.
            context: Static fields attached to every record (symbol, strategy).
        """
        super().__init__(logger, {})
        self.category = category
        self.correlation_id = correlation_id or str(uuid4())
        self.context = dict(context or {})

    def process(
        self,
        msg: str,
        kwargs: dict[str, Any],
    ) -> tuple[str, dict[str, Any]]:
        """Process the logging call to add context."""
        extra = dict(self.context)
        extra.update(kwargs.get("extra", {}))
        extra["category"] = self.category.value
        extra["correlation_id"] = self.correlation_id
        kwargs["extra"] = extra
        return msg, kwargs

    def trace(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log at TRACE level."""
        self.log(TRACE, msg, *args, **kwargs)

    def with_context(
        self,
        symbol: str | None = None,
        strategy: str | None = None,
        correlation_id: str | None = None,
        **extra_data: Any,
    ) -> "ContextLogger":
        """Create a new logger with additional context.

        Args:
            symbol: Trading symbol.
            strategy: Strategy name.
            correlation_id: Replacement correlation ID.
            **extra_data: Additional context data.

        Returns:
            New ContextLogger with added context.
        """
        context = dict(self.context)
        if symbol:
            context["symbol"] = symbol
        if strategy:
            context["strategy"] = strategy
        if extra_data:
            context["extra_data"] = {**context.get("extra_data", {}), **extra_data}
        return ContextLogger(
            self.logger,
            self.category,
            correlation_id or self.correlation_id,
            context,
        )


def setup_logging(
    level: str = "INFO",
    log_format: LogFormat = LogFormat.JSON,
    log_file: Path | None = None,
) -> None:
    """Set up logging for the application.

    Args:
        level: Log level (TRACE, DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
        log_file: Optional log file path.
    """
    root_logger = logging.getLogger()
    level_name = level.upper()
    root_logger.setLevel(TRACE if level_name == "TRACE" else getattr(logging, level_name))

    root_logger.handlers.clear()

    if log_format == LogFormat.JSON:
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = TextFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=30,
            )
        except OSError as e:
            root_logger.warning(f"Failed to set up file logging: {e}")
        else:
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)


@lru_cache(maxsize=32)
def get_logger(
    name: str,
    category: LogCategory = LogCategory.SYSTEM,
    correlation_id: str | None = None,
) -> ContextLogger:
    """Get a context logger for a component.

    Args:
        name: Logger name.
        category: Log category.
        correlation_id: Optional correlation ID.

    Returns:
        ContextLogger instance.
    """
    return ContextLogger(logging.getLogger(name), category, correlation_id)


def get_run_logger(name: str, run_id: str, symbol: str | None = None) -> ContextLogger:
    """Get an uncached logger scoped to one backtest run."""
    logger = ContextLogger(logging.getLogger(name), LogCategory.BACKTEST, run_id)
    return logger.with_context(symbol=symbol) if symbol else logger


# Convenience functions for quick logging
def log_system(message: str, level: str = "INFO", **kwargs: Any) -> None:
    """Log a system message."""
    logger = get_logger("system", LogCategory.SYSTEM)
    getattr(logger, level.lower())(message, extra={"extra_data": kwargs})


def log_data(message: str, symbol: str | None = None, level: str = "INFO", **kwargs: Any) -> None:
    """Log a data pipeline message."""
    logger = get_logger("data", LogCategory.DATA)
    extra: dict[str, Any] = {"extra_data": kwargs}
    if symbol:
        extra["symbol"] = symbol
    getattr(logger, level.lower())(message, extra=extra)


def log_execution(message: str, symbol: str | None = None, level: str = "DEBUG", **kwargs: Any) -> None:
    """Log an execution simulation message."""
    logger = get_logger("execution", LogCategory.EXECUTION)
    extra: dict[str, Any] = {"extra_data": kwargs}
    if symbol:
        extra["symbol"] = symbol
    getattr(logger, level.lower())(message, extra=extra)


def log_risk(message: str, level: str = "WARNING", **kwargs: Any) -> None:
    """Log a risk message."""
    logger = get_logger("risk", LogCategory.RISK)
    getattr(logger, level.lower())(message, extra={"extra_data": kwargs})


def trace_bar(logger: ContextLogger, index: int, bar_data: dict[str, Any]) -> None:
    """Trace-log a bar as the simulation reaches it.

    Args:
        logger: Run-scoped logger.
        index: Position of the bar in the run.
        bar_data: Bar OHLCV data.
    """
    if logger.isEnabledFor(TRACE):
        logger.trace(f"Bar {index}", extra={"extra_data": bar_data})
