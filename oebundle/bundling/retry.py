from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from oebundle.common import log_event

from .errors import BlockEngineError, BlockEngineRateLimitError, RetryTimeoutError

T = TypeVar("T")

DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_DELAY_MULTIPLIER = 2.0
DEFAULT_RETRY_TIMEOUT_SECONDS = 120.0


async def retry_rate_limited(
    operation: Callable[[], Awaitable[T]],
    *,
    initial_delay: float = DEFAULT_INITIAL_DELAY_SECONDS,
    multiplier: float = DEFAULT_DELAY_MULTIPLIER,
    timeout: float = DEFAULT_RETRY_TIMEOUT_SECONDS,
    logger: logging.Logger | None = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    clock: Callable[[], float] | None = None,
) -> T:
    """Run ``operation`` until it stops raising retryable errors.

    Only ``BlockEngineError`` instances tagged ``RETRYABLE`` are retried; any other
    error propagates on the first attempt. The delay grows by ``multiplier`` after
    every retry and the whole loop is bounded by ``timeout`` seconds.
    """
    now = clock or asyncio.get_running_loop().time
    deadline = now() + max(0.0, timeout)
    delay = max(0.0, initial_delay)
    attempt = 0

    while True:
        attempt += 1
        try:
            return await operation()
        except BlockEngineError as error:
            if not error.retryable:
                raise
            last_error: BlockEngineError = error

        wait_seconds = delay
        if isinstance(last_error, BlockEngineRateLimitError) and last_error.retry_after_seconds:
            wait_seconds = max(wait_seconds, last_error.retry_after_seconds)

        remaining = deadline - now()
        if remaining <= 0 or wait_seconds > remaining:
            raise RetryTimeoutError(
                f"Retry budget of {timeout:.1f}s exhausted after {attempt} attempts: {last_error}",
                attempts=attempt,
                last_error=last_error,
            ) from last_error

        if logger is not None:
            log_event(
                logger,
                level="warning",
                event="jito_rate_limited_retry",
                message="Rate-limited by the block engine; backing off before retrying",
                method=last_error.method,
                attempt=attempt,
                backoff_seconds=round(wait_seconds, 3),
                error=str(last_error),
            )
        await sleep(wait_seconds)
        delay *= multiplier
