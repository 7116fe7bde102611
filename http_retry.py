from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from app.core.config import clamp, env_int
from app.core.log import log_evt

logger = logging.getLogger("http_retry")

T = TypeVar("T")


def backoff_seconds(attempt: int) -> float:
    """
    Exponential backoff with capped sleep:
      base: HTTP_RETRY_BASE_SLEEP_SECS (default 2)
      max : HTTP_RETRY_MAX_SLEEP_SECS  (default 30)
    """
    base = env_int("HTTP_RETRY_BASE_SLEEP_SECS", 2)
    max_sleep = env_int("HTTP_RETRY_MAX_SLEEP_SECS", 30)
    sleep = base * (2 ** max(0, attempt))
    return float(clamp(int(sleep), 0, int(max_sleep)))


def parse_retry_after(value: Optional[str | int | float]) -> Optional[float]:
    if value is None:
        return None
    try:
        v = float(value)
    except (TypeError, ValueError):
        return None
    return v if v >= 0 else None


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_on: Tuple[Type[BaseException], ...],
    attempts: Optional[int] = None,
    label: str = "http",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run fn() until it succeeds or attempts run out.
    An exception with a `retry_after` attribute waits exactly that long;
    anything else in retry_on waits backoff_seconds(attempt).
    """
    total = int(attempts if attempts is not None else env_int("HTTP_RETRIES", 3))
    total = max(1, total)
    for attempt in range(total):
        try:
            return await fn()
        except retry_on as e:
            if attempt >= total - 1:
                raise
            delay = parse_retry_after(getattr(e, "retry_after", None))
            if delay is None:
                delay = backoff_seconds(attempt)
            log_evt(
                logger,
                "HTTP_RETRY",
                level=logging.WARNING,
                label=label,
                attempt=attempt + 1,
                delay=delay,
                err=f"{type(e).__name__}: {e}",
            )
            await sleep(delay)
    raise RuntimeError("unreachable")
