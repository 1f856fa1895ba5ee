"""
Async client for Binance USDT-M futures REST endpoints.

Signed requests: all parameters plus `timestamp` are sorted, url-encoded and
signed with HMAC-SHA256 using the API secret; the key travels in the
X-MBX-APIKEY header.

Idempotent reads are retried with backoff. Order placement and cancels are
sent once: a timed-out order may still have been accepted.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlencode

import httpx

from copybot.config.config import BINANCE_MAINNET_URL, BINANCE_TESTNET_URL
from copybot.core.errors import TradingError
from copybot.core.json_utils import dumps
from copybot.core.rounding import format_quantity
from copybot.infra.retry import retry_with_backoff

log = logging.getLogger("copybot")

STOP_ORDER_TYPES = frozenset({"TAKE_PROFIT_MARKET", "STOP_MARKET", "TAKE_PROFIT", "STOP"})

# /fapi/v1/userTrades limits: 7-day window, 1000 rows per page.
USER_TRADES_WINDOW_MS = 7 * 24 * 60 * 60 * 1000
USER_TRADES_LIMIT = 1000


def to_exchange_symbol(symbol: str) -> str:
    """Agent symbols are base assets (BTC); the exchange wants BTCUSDT."""
    sym = symbol.upper()
    return sym if sym.endswith("USDT") else f"{sym}USDT"


class BinanceFuturesClient:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        testnet: bool = False,
        timeout: float = 10.0,
        retries: int = 3,
        recv_window: int = 5000,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.base_url = BINANCE_TESTNET_URL if testnet else BINANCE_MAINNET_URL
        self._api_key = api_key
        self._api_secret = api_secret.encode("utf-8")
        self._retries = retries
        self._recv_window = recv_window
        self._clock = clock or (lambda: int(time.time() * 1000))
        # A shared client passed in is not closed by close().
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ========== Transport ==========

    def sign(self, query: str) -> str:
        return hmac.new(self._api_secret, query.encode("utf-8"), hashlib.sha256).hexdigest()

    def _signed_query(self, params: Dict[str, Any]) -> str:
        all_params = {k: v for k, v in params.items() if v is not None}
        all_params["recvWindow"] = self._recv_window
        all_params["timestamp"] = self._clock()
        query = urlencode(sorted(all_params.items()))
        return f"{query}&signature={self.sign(query)}"

    async def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                       signed: bool = True) -> Any:
        params = params or {}
        if signed:
            url = f"{endpoint}?{self._signed_query(params)}"
            headers = {"X-MBX-APIKEY": self._api_key}
        else:
            query = urlencode([(k, v) for k, v in params.items() if v is not None])
            url = f"{endpoint}?{query}" if query else endpoint
            headers = {}
        try:
            resp = await self.client.request(method, url, headers=headers)
        except httpx.HTTPError as exc:
            raise TradingError(f"Request failed: {method} {endpoint}: {exc}",
                               symbol=params.get("symbol")) from exc
        if resp.status_code >= 400:
            try:
                body = resp.json()
                msg = body.get("msg") or body.get("message") or resp.text
            except ValueError:
                msg = resp.text
            raise TradingError(f"Binance API Error: {msg} (HTTP {resp.status_code})",
                               symbol=params.get("symbol"))
        return resp.json()

    async def _read(self, endpoint: str, params: Optional[Dict[str, Any]] = None, signed: bool = True) -> Any:
        return await retry_with_backoff(
            lambda: self._request("GET", endpoint, params, signed=signed),
            max_retries=self._retries,
            base_delay=0.5,
            context=f"BinanceFuturesClient {endpoint}",
            error_type=TradingError,
        )

    # ========== Reads ==========

    async def server_time(self) -> int:
        data = await self._read("/fapi/v1/time", signed=False)
        return int(data["serverTime"])

    async def account_info(self) -> Dict[str, Any]:
        return await self._read("/fapi/v2/account")

    async def available_balance(self) -> float:
        info = await self.account_info()
        return float(info.get("availableBalance", 0))

    async def positions(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        """Open positions only (positionAmt != 0), optionally for one symbol."""
        params = {"symbol": to_exchange_symbol(symbol)} if symbol else None
        rows = await self._read("/fapi/v2/positionRisk", params)
        return [p for p in rows if float(p.get("positionAmt", 0)) != 0]

    async def open_orders(self, symbol: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"symbol": to_exchange_symbol(symbol)} if symbol else None
        return await self._read("/fapi/v1/openOrders", params)

    async def user_trades(
        self,
        symbol: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        from_id: Optional[int] = None,
        limit: int = USER_TRADES_LIMIT,
    ) -> List[Dict[str, Any]]:
        return await self._read("/fapi/v1/userTrades", {
            "symbol": to_exchange_symbol(symbol),
            "startTime": start_time,
            "endTime": end_time,
            "fromId": from_id,
            "limit": limit,
        })

    async def user_trades_in_range(
        self, symbol: str, start_time: int, end_time: int, limit: int = USER_TRADES_LIMIT
    ) -> List[Dict[str, Any]]:
        """
        Every fill of `symbol` with start_time <= time <= end_time, oldest first.

        The endpoint answers at most 7 days per request, so the range is walked
        in 7-day windows. A window that returns a full page is continued by
        trade id until a short page or a fill past the window end.
        """
        trades: List[Dict[str, Any]] = []
        window_start = start_time
        while window_start <= end_time:
            window_end = min(window_start + USER_TRADES_WINDOW_MS - 1, end_time)
            page = await self.user_trades(symbol, start_time=window_start, end_time=window_end, limit=limit)
            while page:
                in_window = [t for t in page if int(t["time"]) <= window_end]
                trades.extend(in_window)
                if len(page) < limit or len(in_window) < len(page):
                    break
                page = await self.user_trades(symbol, from_id=int(page[-1]["id"]) + 1, limit=limit)
            window_start = window_end + 1
        log.debug(dumps({"event": "user_trades_fetched", "symbol": to_exchange_symbol(symbol),
                         "count": len(trades), "start": start_time, "end": end_time}))
        return trades

    # ========== Writes ==========

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str = "MARKET",
        quantity: Optional[float] = None,
        price: Optional[float] = None,
        stop_price: Optional[float] = None,
        close_position: bool = False,
        reduce_only: bool = False,
        time_in_force: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "symbol": to_exchange_symbol(symbol),
            "side": side,
            "type": order_type,
        }
        if close_position:
            # closePosition orders carry no quantity.
            params["closePosition"] = "true"
        else:
            if quantity is None:
                raise TradingError("quantity is required unless close_position is set", symbol=symbol)
            qty = format_quantity(quantity, symbol)
            if float(qty) <= 0:
                raise TradingError(f"Quantity {quantity} rounds to zero for {symbol}", symbol=symbol)
            params["quantity"] = qty
        if price is not None:
            params["price"] = f"{price}"
        if stop_price is not None:
            params["stopPrice"] = f"{stop_price}"
        if time_in_force:
            params["timeInForce"] = time_in_force
        if reduce_only and not close_position:
            params["reduceOnly"] = "true"

        resp = await self._request("POST", "/fapi/v1/order", params)
        log.info(dumps({
            "event": "exchange_order_placed",
            "symbol": params["symbol"],
            "side": side,
            "type": order_type,
            "quantity": params.get("quantity"),
            "order_id": resp.get("orderId"),
            "status": resp.get("status"),
        }))
        return resp

    async def set_leverage(self, symbol: str, leverage: float) -> Dict[str, Any]:
        return await self._request("POST", "/fapi/v1/leverage", {
            "symbol": to_exchange_symbol(symbol),
            "leverage": int(leverage),
        })

    async def cancel_order(self, symbol: str, order_id: int | str) -> Dict[str, Any]:
        return await self._request("DELETE", "/fapi/v1/order", {
            "symbol": to_exchange_symbol(symbol),
            "orderId": order_id,
        })

    async def cancel_all_orders(self, symbol: str) -> Dict[str, Any]:
        return await self._request("DELETE", "/fapi/v1/allOpenOrders", {"symbol": to_exchange_symbol(symbol)})
