"""
Structured logging configuration for the telemd transport layer.

Provides consistent, structured logging with correlation IDs and rich formatting.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from rich.console import Console
from rich.logging import RichHandler

# Correlation ID for request tracing; a ContextVar so concurrent calls keep their own
_correlation_id: ContextVar[Optional[str]] = ContextVar("telemd_correlation_id", default=None)


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set a correlation ID for the current execution context."""
    value = correlation_id or new_request_id()
    _correlation_id.set(value)
    return value


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID."""
    return _correlation_id.get()


def new_request_id() -> str:
    return str(uuid.uuid4())[:8]


def add_correlation_id(logger, method_name, event_dict):
    """Add correlation ID to log entries."""
    correlation_id = _correlation_id.get()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def redact(value: Optional[str], keep: int = 4) -> str:
    """Shorten secrets and ciphertext before they reach a log line."""
    if not value:
        return ""
    if len(value) <= keep:
        return "*" * len(value)
    return f"{value[:keep]}...({len(value)})"


def setup_logging(debug: bool = False, rich_output: bool = True) -> None:
    """
    Configure structured logging for the library and CLI.

    Args:
        debug: Enable debug level logging
        rich_output: Use rich formatting for console output
    """
    level = logging.DEBUG if debug else logging.INFO

    processors = [
        structlog.contextvars.merge_contextvars,
        add_correlation_id,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.dev.set_exc_info,
    ]

    if rich_output:
        # Rich console output for interactive use
        console = Console(stderr=True, force_terminal=True)
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.rich_traceback,
            )
        )
        logging.basicConfig(
            level=level,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, show_path=False)],
        )
    else:
        # JSON output for services
        processors.append(structlog.processors.JSONRenderer())
        logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )
