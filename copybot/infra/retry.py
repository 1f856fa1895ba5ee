"""
Bounded exponential backoff for idempotent remote reads.

Writes (order placement, cancels) are never retried here: a timed-out order
may still have been accepted by the exchange.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Type, TypeVar

from copybot.core.errors import CopyBotError, DataSourceError
from copybot.core.json_utils import dumps

log = logging.getLogger("copybot")

T = TypeVar("T")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    context: str = "",
    max_delay: float = 10.0,
    error_type: Type[CopyBotError] = DataSourceError,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> T:
    """
    Call `fn` up to `max_retries` times, sleeping base_delay * 2**n (+ jitter)
    between attempts. After the last failure raise
    error_type("Failed after N attempts in {context}: {msg}").
    """
    if max_retries < 1:
        raise ValueError("max_retries must be >= 1")
    sleeper = sleep or asyncio.sleep
    backoff = base_delay
    last_exc: Optional[Exception] = None
    for attempt in range(1, max_retries + 1):
        try:
            return await fn()
        except Exception as exc:
            last_exc = exc
            if attempt >= max_retries:
                break
            delay = min(backoff + random.uniform(0, backoff * 0.5), max_delay)
            log.warning(dumps({
                "event": "http_retry",
                "context": context,
                "attempt": attempt,
                "delay_sec": round(delay, 3),
                "err": str(exc),
            }))
            await sleeper(delay)
            backoff *= 2
    raise error_type(f"Failed after {max_retries} attempts in {context}: {last_exc}") from last_exc
