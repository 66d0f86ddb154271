"""Exponential backoff for transient transfer failures.

Chunk uploads, broker control-plane calls and object store requests all
go through ``retry_with_backoff``. The decision to retry belongs to the
exception: anything carrying ``retryable=True`` (``TransientError`` and
retryable ``NetworkError``) is retried, everything else is re-raised at
once. Callers that must redo preparatory work on every attempt, such as
requesting a fresh single-use upload grant, wrap that work inside the
retried callable.
"""

import functools
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from site_vault.exceptions import SiteVaultError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Retry budget and backoff curve.

    Attributes:
        max_retries: Maximum number of retry attempts after the first call (default: 3)
        initial_delay: Delay in seconds before the first retry (default: 1.0)
        max_delay: Upper bound for a single delay in seconds (default: 60.0)
        backoff_factor: Multiplier applied per attempt (default: 2.0)
        jitter: Scale each delay by a random factor in [0.5, 1.0) (default: True)
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.max_delay <= 0:
            raise ValueError("max_delay must be > 0")
        if self.backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1")

    def calculate_delay(self, attempt: int) -> float:
        """Return the delay before retry number ``attempt`` (0-indexed)."""
        delay = min(self.initial_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter:
            delay *= 0.5 + random.random() * 0.5

        return delay


def should_retry_exception(exception: Exception) -> bool:
    """Determine if an exception should trigger a retry.

    Args:
        exception: Exception to evaluate

    Returns:
        True only for site-vault errors flagged as retryable
    """
    if isinstance(exception, SiteVaultError):
        return bool(getattr(exception, "retryable", False))

    return False


def retry_with_backoff(
    func: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry it on retryable failures.

    Args:
        func: Function to execute
        *args: Positional arguments to pass to func
        config: Retry configuration (uses defaults if not provided)
        **kwargs: Keyword arguments to pass to func

    Returns:
        Result from the first successful call

    Raises:
        Exception: The last exception once retries are exhausted, or the
            first non-retryable exception

    Example:
        >>> retry_with_backoff(backend.upload, path, key, config=RetryConfig(max_retries=5))
    """
    if config is None:
        config = RetryConfig()

    func_name = getattr(func, "__name__", repr(func))
    attempt = 0

    while True:
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not should_retry_exception(e):
                logger.debug(f"{type(e).__name__} from {func_name} is not retryable")
                raise

            if attempt >= config.max_retries:
                logger.warning(
                    f"Giving up on {func_name} after {attempt + 1} attempt(s), last error: {e}"
                )
                raise

            delay = config.calculate_delay(attempt)
            logger.info(
                f"Attempt {attempt + 1}/{config.max_retries + 1} of {func_name} failed: {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            time.sleep(delay)
            attempt += 1


def retry(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = True,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of ``retry_with_backoff``.

    Example:
        >>> @retry(max_retries=5, initial_delay=2.0)
        >>> def post_heartbeat(session, url):
        >>>     ...
    """
    config = RetryConfig(
        max_retries=max_retries,
        initial_delay=initial_delay,
        max_delay=max_delay,
        backoff_factor=backoff_factor,
        jitter=jitter,
    )

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            return retry_with_backoff(func, *args, config=config, **kwargs)

        return wrapper

    return decorator
