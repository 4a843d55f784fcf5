"""Retry utilities for transient database failures.

Partition maintenance talks to PostgreSQL only; the failures worth retrying
are lost connections and lock timeouts. This module provides exponential
backoff with jitter in two shapes:

- ``retry_async``: decorator for short read-only calls (catalog reads)
- ``RetryContext``: explicit loop control for executor actions, which need
  to audit every failed attempt before waiting

Usage:
    from ledger_lifecycle.core.retry import retry_async, RetryContext

    @retry_async(max_retries=2, retry_on=DB_ERRORS, retry_if=is_transient_db_error)
    async def list_partitions(session):
        ...

    retry = RetryContext(max_retries=3, retry_if=is_transient_db_error)
    while True:
        try:
            return await apply_action()
        except Exception as e:
            if not retry.can_retry(e):
                raise
            await retry.wait()
"""

from __future__ import annotations

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from prometheus_client import Counter

from ledger_lifecycle.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

P = ParamSpec("P")
T = TypeVar("T")

logger = get_logger(__name__)

# =============================================================================
# Prometheus Metrics
# =============================================================================

RETRY_ATTEMPTS_TOTAL = Counter(
    "ledger_retry_attempts_total",
    "Total number of retry attempts",
    labelnames=["operation", "outcome"],  # outcome: success, retry, exhausted
)

RETRY_OPERATIONS_TOTAL = Counter(
    "ledger_retry_operations_total",
    "Total number of operations that required retries",
    labelnames=["operation"],
)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Base delay in seconds before first retry
        max_delay: Maximum delay cap in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Jitter factor (0.0-1.0) for randomizing delays
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.1


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Calculate delay for a retry attempt using exponential backoff with jitter.

    The delay is calculated as:
        delay = base_delay * (exponential_base ^ (attempt - 1))
        delay = min(delay, max_delay)
        delay = delay * (1 - jitter + random(0, 2*jitter))

    Args:
        attempt: The retry attempt number (1-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds before the next retry
    """
    delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    delay = min(delay, config.max_delay)

    # Timing variation only, not cryptographic.
    if config.jitter > 0:
        jitter_range = delay * config.jitter
        delay = delay - jitter_range + (random.random() * 2 * jitter_range)  # noqa: S311

    return max(0.0, delay)


# =============================================================================
# Async Retry Decorator
# =============================================================================


def retry_async(
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    retry_if: Callable[[BaseException], bool] | None = None,
    operation_name: str | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for async functions with retry logic.

    Retries the decorated function on specified exceptions using
    exponential backoff with jitter.

    Args:
        max_retries: Maximum retry attempts (0 means no retries)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        exponential_base: Base for exponential growth
        jitter: Random jitter factor (0.0-1.0)
        retry_on: Tuple of exception types to retry on
        retry_if: Optional predicate an exception must also satisfy to be retried
        operation_name: Name for metrics/logging (defaults to function name)

    Returns:
        Decorated async function with retry logic
    """
    config = RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
    )

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        op_name = operation_name or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            attempt = 0

            while True:
                attempt += 1
                try:
                    result = await func(*args, **kwargs)
                except retry_on as e:
                    if retry_if is not None and not retry_if(e):
                        raise
                    if attempt > config.max_retries:
                        logger.error(
                            f"Operation '{op_name}' failed after {attempt} attempts: {e}",
                            extra={
                                "operation": op_name,
                                "attempts": attempt,
                                "outcome": "exhausted",
                                "error_type": type(e).__name__,
                            },
                        )
                        RETRY_ATTEMPTS_TOTAL.labels(operation=op_name, outcome="exhausted").inc()
                        raise

                    delay = calculate_delay(attempt, config)
                    logger.warning(
                        f"Operation '{op_name}' failed (attempt {attempt}/{config.max_retries + 1}), "
                        f"retrying in {delay:.2f}s: {e}",
                        extra={
                            "operation": op_name,
                            "attempt": attempt,
                            "max_attempts": config.max_retries + 1,
                            "delay_seconds": delay,
                            "error_type": type(e).__name__,
                        },
                    )
                    RETRY_ATTEMPTS_TOTAL.labels(operation=op_name, outcome="retry").inc()
                    RETRY_OPERATIONS_TOTAL.labels(operation=op_name).inc()

                    await asyncio.sleep(delay)
                    continue

                if attempt > 1:
                    logger.info(
                        f"Operation '{op_name}' succeeded after {attempt} attempts",
                        extra={"operation": op_name, "attempts": attempt, "outcome": "success"},
                    )
                    RETRY_ATTEMPTS_TOTAL.labels(operation=op_name, outcome="success").inc()
                return result

        return wrapper

    return decorator


# =============================================================================
# Retry Context
# =============================================================================


class RetryContext:
    """Explicit retry loop control.

    Provides more control than the decorator when each failed attempt needs
    its own side effect (the executor audits every attempt).

    Attributes:
        attempts: Number of failed attempts seen so far
        last_error: Last exception passed to ``can_retry``
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: float = 0.1,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        retry_if: Callable[[BaseException], bool] | None = None,
        operation_name: str = "unknown",
    ) -> None:
        self._config = RetryConfig(
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            exponential_base=exponential_base,
            jitter=jitter,
        )
        self._retry_on = retry_on
        self._retry_if = retry_if
        self._operation_name = operation_name
        self._attempts = 0
        self._last_error: BaseException | None = None

    @property
    def attempts(self) -> int:
        """Failed attempt count."""
        return self._attempts

    @property
    def max_attempts(self) -> int:
        """Total attempts allowed, including the first one."""
        return self._config.max_retries + 1

    @property
    def last_error(self) -> BaseException | None:
        """Last exception caught."""
        return self._last_error

    def can_retry(self, error: BaseException) -> bool:
        """Record a failed attempt and report whether another one is allowed.

        Args:
            error: Exception raised by the attempt

        Returns:
            True if error is retryable and attempts remain
        """
        self._last_error = error
        self._attempts += 1

        if not isinstance(error, self._retry_on) or (
            self._retry_if is not None and not self._retry_if(error)
        ):
            logger.debug(
                f"Error type {type(error).__name__} is not retryable",
                extra={"error_type": type(error).__name__},
            )
            return False

        if self._attempts > self._config.max_retries:
            logger.warning(
                f"Retry attempts exhausted for '{self._operation_name}'",
                extra={"operation": self._operation_name, "attempts": self._attempts},
            )
            RETRY_ATTEMPTS_TOTAL.labels(operation=self._operation_name, outcome="exhausted").inc()
            return False

        RETRY_ATTEMPTS_TOTAL.labels(operation=self._operation_name, outcome="retry").inc()
        if self._attempts == 1:
            RETRY_OPERATIONS_TOTAL.labels(operation=self._operation_name).inc()
        return True

    async def wait(self) -> None:
        """Wait before the next retry attempt."""
        delay = calculate_delay(self._attempts, self._config)
        logger.info(
            f"Waiting {delay:.2f}s before retry attempt {self._attempts + 1}",
            extra={
                "operation": self._operation_name,
                "attempt": self._attempts,
                "delay_seconds": delay,
            },
        )
        await asyncio.sleep(delay)
