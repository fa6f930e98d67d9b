"""
Monitoring layer: structured logging.
"""

from .logger import (
    ContextLogger,
    JsonFormatter,
    LogCategory,
    LogFormat,
    TextFormatter,
    get_logger,
    get_run_logger,
    setup_logging,
)

__all__ = [
    "ContextLogger",
    "JsonFormatter",
    "LogCategory",
    "LogFormat",
    "TextFormatter",
    "get_logger",
    "get_run_logger",
    "setup_logging",
]
