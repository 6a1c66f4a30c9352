"""
Retry utilities for external API calls.

One backoff policy shared by the Nominatim and Overpass clients: bounded
exponential backoff on network errors and on a fixed set of retryable HTTP
status codes. Any other failure (400, 404, ...) is raised immediately.

Usage:
    from buildmap.utils.retry import retry_with_backoff, RetryConfig

    @retry_with_backoff(max_retries=3)
    def fetch_data():
        return requests.get(url)

    # Or with a shared session
    with RetryableRequest(config) as request:
        response = request.get(url, params={"q": "Ilica 1, Zagreb"})
"""

import time
import random
import functools
from dataclasses import dataclass, field, replace
from typing import Callable, TypeVar, Optional, Tuple, Type, Any

import requests

from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    retryable_exceptions: Tuple[Type[Exception], ...] = field(
        default_factory=lambda: (
            ConnectionError,
            TimeoutError,
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
        )
    )
    # HTTP status codes to retry (rate limit, server overload, gateway errors)
    retryable_status_codes: Tuple[int, ...] = (429, 500, 502, 503, 504)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes


DEFAULT_RETRY_CONFIG = RetryConfig(
    max_retries=3,
    base_delay=1.0,
    max_delay=30.0,
)


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = min(
        config.base_delay * (config.exponential_base ** attempt),
        config.max_delay,
    )

    if config.jitter:
        # Up to 25% random jitter; affects only the wait, never the results
        delay = delay * (1 + random.uniform(0, 0.25))

    return delay


def should_retry_exception(exc: Exception, config: RetryConfig) -> bool:
    """Check if exception is retryable."""
    response = getattr(exc, "response", None)
    if response is not None and hasattr(response, "status_code"):
        return config.is_retryable_status(response.status_code)

    return isinstance(exc, config.retryable_exceptions)


def retry_after_seconds(exc: Exception) -> Optional[float]:
    """Server-requested wait from a ``Retry-After`` header, in seconds."""
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None) or {}
    value = headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        # HTTP-date form is not used by Nominatim or Overpass
        return None


def retry_with_backoff(
    func: Optional[Callable[..., T]] = None,
    *,
    config: Optional[RetryConfig] = None,
    max_retries: Optional[int] = None,
    on_retry: Optional[Callable[[Exception, int], None]] = None,
) -> Callable[..., T]:
    """
    Decorator/function for retrying with exponential backoff.

    Can be used as a decorator or called directly:

        @retry_with_backoff(max_retries=3)
        def my_func():
            ...

        wrapped = retry_with_backoff(my_func, max_retries=3)

    The exception that finally escapes carries an ``attempts`` attribute
    with the number of calls made.

    Args:
        func: Function to retry
        config: Full retry configuration
        max_retries: Override for max retries (convenience)
        on_retry: Callback called on each retry (exc, attempt)
    """
    config = config or RetryConfig()
    if max_retries is not None:
        config = replace(config, max_retries=max_retries)

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt in range(config.max_retries + 1):
                try:
                    return fn(*args, **kwargs)
                except Exception as exc:
                    exc.attempts = attempt + 1

                    if not should_retry_exception(exc, config):
                        logger.debug(f"Non-retryable exception: {type(exc).__name__}")
                        raise

                    if attempt >= config.max_retries:
                        logger.error(
                            f"All {config.max_retries} retries failed for {fn.__name__}",
                            extra={"attempts": attempt + 1},
                        )
                        raise

                    delay = calculate_delay(attempt, config)
                    requested = retry_after_seconds(exc)
                    if requested is not None:
                        delay = min(max(delay, requested), config.max_delay)
                    logger.warning(
                        f"Retry {attempt + 1}/{config.max_retries} for {fn.__name__} "
                        f"after {delay:.1f}s (error: {exc})"
                    )
                    if on_retry:
                        on_retry(exc, attempt)
                    time.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator


class RetryableRequest:
    """
    Retrying HTTP requests over one shared ``requests.Session``.

    Every non-2xx response raises ``requests.HTTPError``; only the statuses
    listed in ``config.retryable_status_codes`` are retried.

    Usage:
        with RetryableRequest(config) as request:
            response = request.get(url)
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.config = config or DEFAULT_RETRY_CONFIG
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def close(self) -> None:
        if self._session is not None:
            self._session.close()

    def _make_request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        """Make HTTP request with retry logic."""
        kwargs.setdefault("timeout", self.timeout)

        @retry_with_backoff(config=self.config)
        def _request() -> requests.Response:
            response = getattr(self.session, method)(url, **kwargs)
            response.raise_for_status()
            return response

        return _request()

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        """GET request with retry."""
        return self._make_request("get", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        """POST request with retry."""
        return self._make_request("post", url, **kwargs)
