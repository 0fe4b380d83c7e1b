"""
Opt-in reliability helpers.

The transport clients never retry on their own; these decorators are for
callers that know a particular remote operation is safe to repeat.
"""

import asyncio
import logging
import time
from functools import wraps
from typing import Callable, Tuple, Type

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from telemd_transport.core.exceptions import TransportError

logger = structlog.get_logger(__name__)


def with_retry(
    max_attempts: int = 3,
    backoff_min: float = 0.5,
    backoff_max: float = 10.0,
    retry_exceptions: Tuple[Type[BaseException], ...] = (TransportError,),
):
    """
    Decorator to retry an idempotent coroutine with exponential backoff.

    Only transport failures are retried by default; application failures come
    back as normal ApiResponse values and are never retried here.
    """

    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("with_retry expects an async function")

        @wraps(func)
        async def wrapper(*args, **kwargs):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=1, min=backoff_min, max=backoff_max),
                retry=retry_if_exception_type(retry_exceptions),
                before_sleep=before_sleep_log(logging.getLogger(__name__), logging.WARNING),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    try:
                        return await func(*args, **kwargs)
                    except retry_exceptions as e:
                        logger.warning(
                            "Retrying operation",
                            function=func.__name__,
                            attempt=attempt.retry_state.attempt_number,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        raise

        return wrapper

    return decorator


def track_performance(operation_name: str):
    """
    Decorator to log duration and outcome of sync or async operations.

    Args:
        operation_name: Name of the operation for logging
    """

    def decorator(func: Callable) -> Callable:
        if asyncio.iscoroutinefunction(func):

            @wraps(func)
            async def async_wrapper(*args, **kwargs):
                start_time = time.monotonic()
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    _log_failure(operation_name, start_time, e)
                    raise
                _log_success(operation_name, start_time)
                return result

            return async_wrapper

        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.monotonic()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _log_failure(operation_name, start_time, e)
                raise
            _log_success(operation_name, start_time)
            return result

        return wrapper

    return decorator


def _log_success(operation_name: str, start_time: float) -> None:
    logger.info(
        "Performance tracking completed",
        operation=operation_name,
        duration_seconds=round(time.monotonic() - start_time, 3),
        status="success",
    )


def _log_failure(operation_name: str, start_time: float, error: Exception) -> None:
    logger.error(
        "Performance tracking failed",
        operation=operation_name,
        duration_seconds=round(time.monotonic() - start_time, 3),
        status="failed",
        error=str(error),
    )
