"""
Typed errors and the wrap-and-rethrow policy applied at component boundaries.

Error kinds:
- DataSourceError: remote agent-data fetch failures
- TradingError: order placement / exchange failures
- PositionError: open/close validation or execution failures
- ConfigurationError: invalid tolerance, budget or settings values

Every externally-facing operation wraps unknown failures into the most
specific kind, prefixed with "{context} - {operation}", and re-raises.
Best-effort steps (leverage setup, orphan sweep) go through safe_execute,
which logs a warning and returns a fallback instead.

Usage:
    @wrap_errors("BinanceFuturesClient", TradingError)
    async def place_order(self, ...): ...

    swept = await safe_execute_async(manager.clean_orphaned_orders, None, "orphan_sweep")
"""

from __future__ import annotations

import functools
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from copybot.core.json_utils import dumps

log = logging.getLogger("copybot")

T = TypeVar("T")


class CopyBotError(Exception):
    """Base class for all copybot errors."""


class DataSourceError(CopyBotError):
    def __init__(self, message: str, status_code: Optional[int] = None, endpoint: Optional[str] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class TradingError(CopyBotError):
    def __init__(self, message: str, symbol: Optional[str] = None, order_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.symbol = symbol
        self.order_id = order_id


class PositionError(CopyBotError):
    def __init__(self, message: str, symbol: Optional[str] = None, operation: Optional[str] = None) -> None:
        super().__init__(message)
        self.symbol = symbol
        self.operation = operation


class ConfigurationError(CopyBotError):
    def __init__(self, message: str, config_key: Optional[str] = None) -> None:
        super().__init__(message)
        self.config_key = config_key


def wrap_errors(context: str, error_type: Type[CopyBotError] = CopyBotError) -> Callable:
    """
    Decorator: rethrow failures of the wrapped callable as `error_type`.

    Errors already of `error_type` pass through untouched. Anything else is
    re-raised as error_type("{context} - {func}: {msg}") chained to the cause.
    Works for plain and async functions.
    """

    def decorator(fn: Callable) -> Callable:
        label = f"{context} - {fn.__name__}"

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                try:
                    return await fn(*args, **kwargs)
                except error_type:
                    raise
                except Exception as exc:
                    raise error_type(f"{label}: {exc}") from exc

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except error_type:
                raise
            except Exception as exc:
                raise error_type(f"{label}: {exc}") from exc

        return wrapper

    return decorator


def safe_execute(fn: Callable[[], T], fallback: T, context: str) -> T:
    """Run a best-effort step; on failure log a warning and return `fallback`."""
    try:
        return fn()
    except Exception as exc:
        log.warning(dumps({"event": "best_effort_failed", "context": context, "err": str(exc)}))
        return fallback


async def safe_execute_async(fn: Callable[[], Awaitable[T]], fallback: T, context: str) -> T:
    """Async variant of safe_execute."""
    try:
        return await fn()
    except Exception as exc:
        log.warning(dumps({"event": "best_effort_failed", "context": context, "err": str(exc)}))
        return fallback
