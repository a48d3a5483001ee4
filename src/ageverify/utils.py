"""
Utility functions and decorators for the age attestation core.

This module provides the timing decorator, logging setup, clock helpers and
small numeric/encoding helpers shared across the package.
"""

import functools
import inspect
import logging
import sys
import time
import uuid
from typing import Any, Callable, TypeVar

import structlog

# Initialize structured logger
logger = structlog.get_logger(__name__)

# Type variable for generic decorators
F = TypeVar("F", bound=Callable[..., Any])


def timer(func: F) -> F:
    """
    Decorator to measure and log function execution time.

    Supports both synchronous functions and coroutine functions; the timing is
    logged at debug level on success and at error level on failure, and the
    exception is re-raised.

    Parameters
    ----------
    func : Callable
        Function to be timed.

    Returns
    -------
    Callable
        Wrapped function with timing capability.
    """

    def _log(start_time: float, error: Exception = None) -> None:
        execution_time = (time.perf_counter() - start_time) * 1000
        if error is None:
            logger.debug(
                "Function execution completed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                success=True,
            )
        else:
            logger.error(
                "Function execution failed",
                function_name=func.__name__,
                module=func.__module__,
                execution_time_ms=execution_time,
                error=str(error),
                error_type=type(error).__name__,
                success=False,
            )

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _log(start_time, e)
                raise
            _log(start_time)
            return result

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        start_time = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            _log(start_time, e)
            raise
        _log(start_time)
        return result

    return wrapper  # type: ignore[return-value]


def configure_logging(level: str = "INFO", structured: bool = False) -> None:
    """
    Configure structlog for command-line and service use.

    Parameters
    ----------
    level : str, default="INFO"
        Minimum level name.
    structured : bool, default=False
        Emit JSON lines instead of console-formatted output.
    """
    renderer = (
        structlog.processors.JSONRenderer()
        if structured
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def generate_session_id() -> str:
    """
    Generate a unique session identifier.

    Returns
    -------
    str
        32 hexadecimal characters.
    """
    return str(uuid.uuid4()).replace("-", "")


def now_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """
    Perform safe division with default value for zero denominator.

    Examples
    --------
    >>> safe_divide(10, 2)
    5.0
    >>> safe_divide(10, 0)
    0.0
    """
    if denominator == 0:
        return default
    return numerator / denominator


def truncate_hex(value: str, keep: int = 16) -> str:
    """Shorten a hex string for logging."""
    if len(value) <= keep:
        return value
    return value[:keep] + "..."
