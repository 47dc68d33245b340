"""Utility functions and helpers for the certctl application."""
import logging
import time
from typing import Any, Callable, Optional, Type, TypeVar

from ..config import Config

T = TypeVar('T')

logger = logging.getLogger("certctl.utils")


def redact_sensitive_data(data: Any) -> Any:
    """Recursively redact sensitive data from dictionaries and lists.

    Args:
        data: Input data that might contain sensitive information

    Returns:
        Data with sensitive values redacted
    """
    if isinstance(data, dict):
        return {
            k: "[REDACTED]" if any(
                redact_key.lower() in str(k).lower()
                for redact_key in Config.REDACT_KEYS
            ) else redact_sensitive_data(v)
            for k, v in data.items()
        }
    elif isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item) for item in data]
    return data


class RetryError(Exception):
    """Custom exception for retry-related errors."""
    pass


def retry_call(
    func: Callable[[], T],
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    exceptions: tuple[Type[Exception], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "operation",
) -> T:
    """Call ``func`` until it succeeds, waiting a fixed delay between attempts.

    Args:
        func: Zero-argument callable to invoke
        attempts: Total number of attempts
        delay: Seconds to wait between attempts
        exceptions: Tuple of exceptions to catch and retry on
        sleep: Sleep function, e.g. an interruptible ``RunContext.sleep``
        description: Name used in log messages

    Returns:
        The value returned by the first successful call

    Raises:
        RetryError: If every attempt failed
    """
    if attempts is None:
        attempts = Config.API_RETRIES
    if delay is None:
        delay = Config.API_RETRY_DELAY

    last_exception = None
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except exceptions as e:
            last_exception = e
            if attempt < attempts:
                logger.debug(
                    f"{description} attempt {attempt}/{attempts} failed: {e}. "
                    f"Retrying in {delay:.0f}s..."
                )
                sleep(delay)

    raise RetryError(
        f"{description} failed after {attempts} attempts. Last error: {last_exception}"
    ) from last_exception
