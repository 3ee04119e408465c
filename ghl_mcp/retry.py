from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from .errors import McpTimeoutError, NetworkError

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0

logger = logging.getLogger("ghl_mcp.retry")


def is_transient_error(exc: BaseException) -> bool:
    """Network failures, timeouts, HTTP 429 and any 5xx are worth another try."""
    if isinstance(exc, (NetworkError, McpTimeoutError, httpx.TransportError)):
        return True
    status = getattr(exc, "status_code", None)
    if status is None:
        return False
    return status == 429 or 500 <= int(status) < 600


def backoff_delay(attempt: int, base_delay: float, rand: Callable[[], float] = random.random) -> float:
    return base_delay * (2 ** attempt) + rand() * base_delay


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """
    Await ``fn()`` and retry transient failures with exponential backoff.

    The delay before retry ``n`` (0-based) is ``base * 2**n`` plus jitter in
    ``[0, base)``. Only call this with operations that are safe to repeat.
    When retries run out, the last error is re-raised unchanged.
    """
    predicate = should_retry or is_transient_error
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if attempt >= max_retries or not predicate(exc):
                raise
            delay = backoff_delay(attempt, base_delay, rand)
            attempt += 1
            logger.warning(
                f"Retry {attempt}/{max_retries} after {delay * 1000:.0f}ms",
                extra={"attempt": attempt, "error": str(exc)},
            )
            await sleep(delay)
