"""
Structured logging setup for copybot.

- Rich console output for operators
- JSON lines in the log file for ingestion, written off the event loop
- Throttling for warnings that repeat every poll (retries, sweep failures)
"""

from __future__ import annotations

import atexit
import logging
import queue
import sys
import threading
import time
from datetime import datetime
from typing import Dict, Optional, Set

from rich.logging import RichHandler

from copybot.core.json_utils import JSONDecodeError, dumps, loads

CRITICAL_SAFETY = logging.CRITICAL  # Double positions, ledger corruption
ERROR = logging.ERROR               # Failed orders, failed closes
WARNING = logging.WARNING           # Best-effort step failures, retries
INFO = logging.INFO                 # Plans, executions, cycle summaries
DEBUG = logging.DEBUG               # Per-symbol diff details

DEFAULT_THROTTLED_EVENTS = frozenset({
    "http_retry",
    "orphan_sweep_failed",
    "follow_cycle_skipped",
    "balance_read_failed",
})


class JsonFormatter(logging.Formatter):
    """Compact JSON formatter for structured log ingestion."""

    def format(self, record: logging.LogRecord) -> str:
        ts = record.created
        payload = {
            "ts": ts,
            "ts_iso": datetime.fromtimestamp(ts).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return dumps(payload)


class AsyncQueueHandler(logging.Handler):
    """
    Non-blocking handler: records are queued and written by a background thread
    so file IO never stalls the poll loop.
    """

    def __init__(self, target_handler: logging.Handler, max_queue_size: int = 10000):
        super().__init__()
        self._queue: queue.Queue = queue.Queue(maxsize=max_queue_size)
        self._target = target_handler
        self._shutdown = False
        self._dropped = 0
        self._thread = threading.Thread(target=self._worker, daemon=True, name="copybot-log-writer")
        self._thread.start()
        atexit.register(self.close)

    def emit(self, record: logging.LogRecord) -> None:
        if self._shutdown:
            return
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1

    def _worker(self) -> None:
        while not self._shutdown or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                self._target.emit(record)
            except Exception:
                self._target.handleError(record)
            finally:
                self._queue.task_done()

    def close(self) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        if self._thread.is_alive():
            self._thread.join(timeout=2.0)
        if self._dropped > 0:
            sys.stderr.write(f"[logging] Dropped {self._dropped} log records due to queue overflow\n")
        self._target.close()
        super().close()


class ThrottledFilter(logging.Filter):
    """
    Lets the first occurrence of a throttled event through, then suppresses
    repeats (per event + symbol/agent) for `cooldown_sec`.
    """

    def __init__(self, cooldown_sec: float = 30.0, throttled_events: Optional[Set[str]] = None):
        super().__init__()
        self._cooldown = cooldown_sec
        self._last_seen: Dict[str, float] = {}
        self._throttled_events = set(throttled_events or DEFAULT_THROTTLED_EVENTS)

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            data = loads(record.getMessage())
        except (JSONDecodeError, TypeError):
            return True
        if not isinstance(data, dict):
            return True
        event = data.get("event", "")
        if event not in self._throttled_events:
            return True

        now = time.time()
        key = f"{event}:{data.get('symbol', '')}:{data.get('agent', '')}"
        if now - self._last_seen.get(key, 0.0) < self._cooldown:
            return False
        self._last_seen[key] = now
        return True


def build_logger(
    name: str = "copybot",
    level: int = logging.INFO,
    file_path: Optional[str] = "copybot.log",
    async_file: bool = True,
    throttle_warnings: bool = True,
) -> logging.Logger:
    """
    Build the process logger. Idempotent: a second call only adjusts levels.

    Args:
        name: Logger name
        level: Minimum log level
        file_path: JSON log file (None disables file logging)
        async_file: Write the file through AsyncQueueHandler
        throttle_warnings: Attach ThrottledFilter to the console handler
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if logger.handlers:
        for h in logger.handlers:
            h.setLevel(level)
        return logger

    console = RichHandler(
        rich_tracebacks=False,
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
    )
    console.setLevel(level)
    console.setFormatter(logging.Formatter("%(message)s"))
    if throttle_warnings:
        console.addFilter(ThrottledFilter(cooldown_sec=30.0))
    logger.addHandler(console)

    if file_path:
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(JsonFormatter())
        file_handler.setLevel(level)
        if async_file:
            async_handler = AsyncQueueHandler(file_handler)
            async_handler.setLevel(level)
            logger.addHandler(async_handler)
        else:
            logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **data) -> None:
    """
    Log a structured event.

    Usage:
        log_event(log, "plan_executed", level=INFO, symbol="BTCUSDT", order_id="42")
    """
    logger.log(level, dumps({"event": event, **data}))
