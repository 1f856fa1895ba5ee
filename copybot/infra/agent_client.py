"""
Async client for the agent-data API (account totals per hourly marker).

The API returns every snapshot recorded for the requested marker window,
possibly several per agent. Consumers must only trust the one with the
highest `since_inception_hourly_marker` per agent ("latest wins"); that
filtering happens here, in latest_snapshots().

Responses are cached per URL for `cache_ttl` seconds (bounded, oldest
evicted first) and fetches are retried with exponential backoff.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from copybot.config.config import DEFAULT_AGENT_API_URL
from copybot.core.errors import DataSourceError, wrap_errors
from copybot.core.json_utils import dumps
from copybot.core.models import AgentSnapshot
from copybot.infra.retry import retry_with_backoff

log = logging.getLogger("copybot")

INITIAL_MARKER_TIME = datetime(2025, 10, 17, 22, 30, tzinfo=timezone.utc)
ACCOUNT_TOTALS_ENDPOINT = "/account-totals"
MAX_CACHE_ENTRIES = 100


def current_marker(now: Optional[datetime] = None) -> int:
    """Whole hours elapsed since the first published marker."""
    now = now or datetime.now(timezone.utc)
    return int((now - INITIAL_MARKER_TIME).total_seconds() // 3600)


def latest_per_agent(snapshots: List[AgentSnapshot]) -> List[AgentSnapshot]:
    """Keep only the highest-marker snapshot per agent id, first-seen order."""
    latest: Dict[str, AgentSnapshot] = {}
    for snap in snapshots:
        kept = latest.get(snap.agent_id)
        if kept is None or snap.marker > kept.marker:
            latest[snap.agent_id] = snap
    return list(latest.values())


class AgentClient:
    def __init__(
        self,
        base_url: str = DEFAULT_AGENT_API_URL,
        timeout: float = 30.0,
        cache_ttl: float = 30.0,
        retries: int = 3,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._cache_ttl = cache_ttl
        self._retries = retries
        self._retry_delay = retry_delay
        self._monotonic = monotonic or time.monotonic
        self._cache: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=timeout,
                headers={"User-Agent": "copybot/0.1"},
            )
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ========== Cache ==========

    def _cache_get(self, key: str) -> Any:
        hit = self._cache.get(key)
        if hit is None:
            return None
        stored_at, data = hit
        if self._monotonic() - stored_at > self._cache_ttl:
            del self._cache[key]
            return None
        return data

    def _cache_put(self, key: str, data: Any) -> None:
        if key not in self._cache and len(self._cache) >= MAX_CACHE_ENTRIES:
            self._cache.popitem(last=False)
        self._cache[key] = (self._monotonic(), data)

    # ========== Fetch ==========

    async def _get_json(self, url: str) -> Any:
        try:
            resp = await self.client.get(url)
        except httpx.HTTPError as exc:
            raise DataSourceError(f"Request to {url} failed: {exc}", endpoint=url) from exc
        if resp.status_code >= 400:
            raise DataSourceError(
                f"Agent API returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                endpoint=url,
            )
        return resp.json()

    @wrap_errors("AgentClient", DataSourceError)
    async def fetch_account_totals(self, marker: Optional[int] = None) -> List[AgentSnapshot]:
        """All snapshots for `marker` (default: the current hour), unfiltered."""
        marker = current_marker() if marker is None else marker
        url = f"{ACCOUNT_TOTALS_ENDPOINT}?lastHourlyMarker={marker}"

        data = self._cache_get(url)
        if data is None:
            data = await retry_with_backoff(
                lambda: self._get_json(url),
                max_retries=self._retries,
                base_delay=self._retry_delay,
                context="fetch_account_totals",
            )
            self._cache_put(url, data)
        else:
            log.debug(dumps({"event": "agent_cache_hit", "url": url}))

        rows = data.get("accountTotals") if isinstance(data, dict) else None
        if not isinstance(rows, list):
            raise DataSourceError("Unexpected account totals payload: missing 'accountTotals'", endpoint=url)
        return [AgentSnapshot.from_api(row) for row in rows]

    async def latest_snapshots(self, marker: Optional[int] = None) -> List[AgentSnapshot]:
        return latest_per_agent(await self.fetch_account_totals(marker))

    async def available_agents(self, marker: Optional[int] = None) -> List[str]:
        return [s.agent_id for s in await self.latest_snapshots(marker)]

    @wrap_errors("AgentClient", DataSourceError)
    async def agent_snapshot(self, agent_id: str, marker: Optional[int] = None) -> AgentSnapshot:
        for snap in await self.latest_snapshots(marker):
            if snap.agent_id == agent_id:
                log.info(dumps({
                    "event": "agent_snapshot",
                    "agent": agent_id,
                    "marker": snap.marker,
                    "positions": len(snap.positions),
                }))
                return snap
        raise DataSourceError(f"Agent {agent_id} not found", endpoint=ACCOUNT_TOTALS_ENDPOINT)
