"""Retry helpers for idempotent upstream reads (odds, quotes, funding rates).

Signed private requests never go through these helpers: an exchange nonce
cannot be replayed, so a failed private call is surfaced to the caller.
"""

import asyncio
import random
from functools import wraps
from typing import Callable, Optional, Type, Tuple

import httpx

from utils.logger import get_logger

logger = get_logger("retry")


class RetryConfig:
    """Configuration for retry behavior"""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (
            httpx.TimeoutException,
            httpx.NetworkError,
            httpx.RemoteProtocolError,
            ConnectionError,
            asyncio.TimeoutError,
        ),
        retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504),
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions
        self.retryable_status_codes = retryable_status_codes


MARKET_DATA_RETRY = RetryConfig()


def calculate_delay(attempt: int, config: RetryConfig, error: Optional[Exception] = None) -> float:
    """Exponential backoff with optional jitter; honours Retry-After on 429."""
    delay = min(config.base_delay * (config.exponential_base**attempt), config.max_delay)
    if config.jitter:
        delay = delay * (0.5 + random.random())
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        retry_after = error.response.headers.get("Retry-After")
        if retry_after:
            try:
                delay = max(delay, min(float(retry_after), config.max_delay))
            except ValueError:
                pass
    return delay


def is_retryable_error(error: Exception, config: RetryConfig) -> bool:
    """Check if an error should be retried"""
    if isinstance(error, config.retryable_exceptions):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in config.retryable_status_codes

    return False


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator for async functions with retry logic"""
    if config is None:
        config = MARKET_DATA_RETRY

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(config.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_error(e, config):
                        raise

                    if attempt >= config.max_attempts - 1:
                        logger.warning(
                            "All retry attempts exhausted",
                            function=func.__name__,
                            attempts=config.max_attempts,
                            error=str(e),
                        )
                        raise

                    delay = calculate_delay(attempt, config, e)
                    logger.info(
                        "Retrying after error",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_attempts=config.max_attempts,
                        delay=round(delay, 2),
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

        return wrapper

    return decorator
