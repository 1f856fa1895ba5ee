"""
Fast JSON utilities backed by orjson.

Used for structured log payloads (one compact object per line) and for the
order ledger file, which is written indented so it stays hand-editable.

Usage:
    from copybot.core.json_utils import dumps, loads

    log.info(dumps({"event": "plan_emitted", "symbol": "BTCUSDT"}))
"""

from __future__ import annotations

from typing import Any

import orjson


def _default(obj: Any) -> Any:
    # Enums and other simple wrappers fall back to their string form.
    value = getattr(obj, "value", None)
    if value is not None:
        return value
    return str(obj)


def dumps(obj: Any) -> str:
    """Compact JSON encode to string."""
    return orjson.dumps(obj, default=_default).decode("utf-8")


def dumps_pretty(obj: Any) -> str:
    """Two-space indented JSON for files people read and edit."""
    return orjson.dumps(obj, default=_default, option=orjson.OPT_INDENT_2).decode("utf-8")


def loads(s: str | bytes) -> Any:
    """JSON decode."""
    return orjson.loads(s)


JSONDecodeError = orjson.JSONDecodeError
