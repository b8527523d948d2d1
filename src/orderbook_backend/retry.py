"""
Retry and timeout helpers shared by the chain and storage layers.

Every RPC call and every reconnect loop goes through these two functions,
so backoff is always capped and no call can block a tick forever.

Usage:
    result = await retry_with_backoff(
        lambda: connect_once(url),
        max_attempts=5,
        base_delay=1.0,
        max_delay=10.0,
        retry_on=(OSError, asyncio.TimeoutError),
    )

    chain_id = await with_timeout(w3.eth.chain_id, 10.0, "eth_chainId")
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when every attempt of a retried operation failed."""

    def __init__(self, attempts: int, last_error: Optional[BaseException]):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation failed after {attempts} attempts: {last_error}"
        )


class RpcTimeoutError(asyncio.TimeoutError):
    """Raised when a bounded call did not complete in time."""

    def __init__(self, what: str, seconds: float):
        self.what = what
        self.seconds = seconds
        super().__init__(f"{what} timed out after {seconds:.1f}s")


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    multiplier: float = 2.0,
) -> float:
    """Delay before retry number ``attempt`` (1-based), capped at max_delay."""
    return min(base_delay * (multiplier ** (attempt - 1)), max_delay)


async def with_timeout(awaitable: Awaitable[T], seconds: float, what: str = "call") -> T:
    """Await ``awaitable`` for at most ``seconds``; raise RpcTimeoutError otherwise."""
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as e:
        if isinstance(e, RpcTimeoutError):
            raise
        raise RpcTimeoutError(what, seconds) from e


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    fatal: Tuple[Type[BaseException], ...] = (),
    multiplier: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or attempts run out.

    ``operation`` is a zero-argument factory so that every attempt builds
    fresh state. Exceptions outside ``retry_on`` propagate immediately
    (permanent failures are not retried), as do exceptions listed in
    ``fatal`` even when they also match ``retry_on``. CancelledError always
    propagates.

    Raises:
        RetryExhaustedError: after ``max_attempts`` retryable failures
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except fatal:
            raise
        except retry_on as e:
            last_error = e
            if attempt >= max_attempts:
                break
            delay = backoff_delay(attempt, base_delay, max_delay, multiplier)
            logger.warning(
                f"{description} failed (attempt {attempt}/{max_attempts}): {e}. "
                f"Retrying in {delay:.2f}s..."
            )
            await sleep(delay)

    logger.error(f"{description} failed after {max_attempts} attempts: {last_error}")
    raise RetryExhaustedError(max_attempts, last_error)
