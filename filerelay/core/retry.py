"""
Retry policy for remote calls.
Exponential backoff with jitter, applied only to errors classified as transient.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from filerelay.core.observability import NULL_OBSERVER, Observer

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 599 is a non-standard network timeout some gateways and proxies emit
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504, 599})

RETRYABLE_ERROR_PATTERNS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "etimedout",
    "connection reset",
    "connection refused",
    "connection aborted",
    "connection lost",
    "connection closed",
    "could not connect",
    "socket hang up",
    "enotfound",
    "econnrefused",
    "name or service not known",
    "temporary failure in name resolution",
    "fetch failed",
    "aborted",
    "protocol error",
    "err_http2",
)


def extract_status_code(error: BaseException) -> Optional[int]:
    """
    Find the HTTP status code carried by an error, if any.

    Understands botocore ``ClientError`` (``response['ResponseMetadata']``),
    httpx ``HTTPStatusError`` (``response.status_code``) and plain
    ``status_code`` attributes.
    """
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status

    response = getattr(error, "response", None)
    if isinstance(response, dict):
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(status, int):
            return status
        code = response.get("Error", {}).get("Code")
        if isinstance(code, str) and code.isdigit():
            return int(code)
    elif response is not None:
        status = getattr(response, "status_code", None)
        if isinstance(status, int):
            return status

    return None


def is_retryable_error(error: BaseException) -> bool:
    """Classify an error as transient (retry) or fatal (raise immediately)."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    # A status code is authoritative; message patterns only classify errors without one
    status_code = extract_status_code(error)
    if status_code is not None:
        return status_code in RETRYABLE_STATUS_CODES

    message = (str(error) or type(error).__name__).lower()
    return any(pattern in message for pattern in RETRYABLE_ERROR_PATTERNS)


class RetryPolicy:
    """
    Runs an async operation with exponential backoff.

    Delay before retry ``k`` (1-indexed attempt that failed) is
    ``base_delay * 2 ** (k - 1) + uniform(0, jitter)``.
    """

    def __init__(
        self,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        jitter: float = 1.0,
        call_timeout: Optional[float] = None,
        observer: Observer = NULL_OBSERVER,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.jitter = jitter
        self.call_timeout = call_timeout
        self.observer = observer
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        """Backoff delay in seconds after failed attempt ``attempt`` (1-indexed)."""
        return self.base_delay * (2 ** (attempt - 1)) + self._rng.uniform(0, self.jitter)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_attempts: Optional[int] = None,
        label: str = "operation",
    ) -> T:
        """
        Run ``operation`` until it succeeds, fails fatally, or attempts run out.

        Args:
            operation: Zero-argument coroutine factory; called once per attempt
            max_attempts: Total attempts (defaults to the policy's setting)
            label: Human-readable name used in logs and events

        Returns:
            Whatever ``operation`` returns

        Raises:
            The last error, unchanged, when it is fatal or attempts are exhausted
        """
        attempts = max_attempts or self.max_attempts

        for attempt in range(1, attempts + 1):
            try:
                if self.call_timeout:
                    return await asyncio.wait_for(operation(), timeout=self.call_timeout)
                return await operation()
            except Exception as e:
                if not is_retryable_error(e):
                    logger.error(f"{label} failed with non-retryable error: {e!r}")
                    raise

                if attempt >= attempts:
                    logger.error(f"{label} failed after {attempts} attempts: {e!r}")
                    self.observer.increment("retry.exhausted", label=label)
                    raise

                delay = self.compute_delay(attempt)
                logger.warning(
                    f"{label} attempt {attempt} failed ({e!r}), retrying in {delay:.2f}s..."
                )
                self.observer.event(
                    "retry",
                    level=logging.WARNING,
                    label=label,
                    attempt=attempt,
                    delay=delay,
                    error=repr(e),
                )
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError(f"{label}: retry loop exited without result")
