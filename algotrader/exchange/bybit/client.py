from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from algotrader.core.errors import (
    ExchangeError,
    FatalExchangeError,
    TransientExchangeError,
)
from algotrader.core.models import OHLCV, MarketData
from algotrader.exchange.bybit.filters import SymbolFilters, extract_filters
from algotrader.exchange.bybit.signing import auth_headers, build_body, build_query
from algotrader.symbols.universe import top_usdt_symbols

log = logging.getLogger("algotrader.bybit")

CATEGORY = "linear"

# retCodes that mean the credentials themselves are unusable
FATAL_RET_CODES = {10003, 10004, 10005, 33004}
# rate limit / timestamp window / server busy
TRANSIENT_RET_CODES = {10002, 10006, 10016, 10018}
TIMESTAMP_RET_CODE = 10002
# orderLinkId already used: an earlier attempt of the same order was accepted
DUPLICATE_LINK_ID_RET_CODE = 110072


def to_float(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def kline_series(rows: list) -> OHLCV:
    """
    Bybit kline rows, newest first:
    [startTime, open, high, low, close, volume, turnover]
    Returned oldest first.
    """
    rows = list(reversed(rows or []))
    return OHLCV.from_lists(
        closes=[r[4] for r in rows],
        highs=[r[2] for r in rows],
        lows=[r[3] for r in rows],
        volumes=[r[5] for r in rows],
        opens=[r[1] for r in rows],
    )


def ticker_to_market_data(item: dict) -> MarketData:
    pcnt = to_float(item.get("price24hPcnt"))
    return MarketData(
        symbol=str(item.get("symbol", "")).upper(),
        price=to_float(item.get("lastPrice")),
        change24h=pcnt,
        change_percent_24h=pcnt * 100,
        volume24h=to_float(item.get("turnover24h")),
        high24h=to_float(item.get("highPrice24h")),
        low24h=to_float(item.get("lowPrice24h")),
    )


class BybitClient:
    """Thin Bybit v5 REST client. One attempt per call; callers own the retry policy."""

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout = timeout
        self.session = session or requests.Session()

        # server time offset (ms); positive means local clock is behind
        self._time_offset_ms: int = 0
        self._filters_cache: Dict[str, SymbolFilters] = {}

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def _now_ms(self) -> int:
        return int(time.time() * 1000) + int(self._time_offset_ms)

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        signed: bool = False,
        resynced: bool = False,
    ) -> dict:
        url = f"{self.base_url}{path}"
        params = {k: v for k, v in (params or {}).items() if v is not None}
        headers: Dict[str, str] = {}
        body: Optional[str] = None

        if method == "POST":
            body = build_body(params)
            headers["Content-Type"] = "application/json"

        if signed:
            if not self.has_credentials:
                raise FatalExchangeError("API key invalid: BYBIT_API_KEY / BYBIT_API_SECRET not set")
            to_sign = body if body is not None else build_query(params)
            headers.update(
                auth_headers(self.api_key, self.api_secret, self._now_ms(), self.recv_window, to_sign)
            )

        try:
            if method == "POST":
                r = self.session.request(method, url, data=body, headers=headers, timeout=self.timeout)
            else:
                r = self.session.request(method, url, params=params, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientExchangeError(f"Network error: {method} {path} ({e})") from e

        if r.status_code in (401, 403):
            raise FatalExchangeError(
                f"Bybit HTTP {r.status_code}: API key invalid or not permitted", status=r.status_code
            )
        if r.status_code == 429 or r.status_code >= 500:
            raise TransientExchangeError(f"Bybit HTTP {r.status_code}: {r.text[:200]}", status=r.status_code)
        if r.status_code >= 400:
            raise ExchangeError(f"Bybit HTTP {r.status_code}: {r.text[:200]}", status=r.status_code)

        try:
            data = r.json()
        except ValueError as e:
            raise TransientExchangeError(f"Bybit returned non-JSON body for {path}") from e

        code = int(data.get("retCode", 0) or 0)
        if code == 0:
            return data.get("result") or {}

        if code == TIMESTAMP_RET_CODE and signed and not resynced:
            # clock drift: resync and retry once
            log.warning("Bybit rejected timestamp for %s, resyncing clock", path)
            self.sync_time()
            return self._request(method, path, params, signed, resynced=True)

        msg = f"Bybit {path} retCode={code}: {data.get('retMsg', '')}"
        if code in FATAL_RET_CODES:
            raise FatalExchangeError(msg, code=code, status=r.status_code)
        if code in TRANSIENT_RET_CODES:
            raise TransientExchangeError(msg, code=code, status=r.status_code)
        raise ExchangeError(msg, code=code, status=r.status_code)

    # ---------------- PUBLIC ----------------

    def server_time_ms(self) -> int:
        result = self._request("GET", "/v5/market/time")
        nano = result.get("timeNano")
        if nano:
            return int(nano) // 1_000_000
        return int(result.get("timeSecond", 0)) * 1000

    def sync_time(self) -> int:
        local_ms = int(time.time() * 1000)
        self._time_offset_ms = self.server_time_ms() - local_ms
        log.debug("bybit clock offset %d ms", self._time_offset_ms)
        return self._time_offset_ms

    def klines(self, symbol: str, interval: str = "15", limit: int = 100) -> list:
        result = self._request(
            "GET",
            "/v5/market/kline",
            params={"category": CATEGORY, "symbol": symbol.upper(), "interval": interval, "limit": limit},
        )
        return result.get("list") or []

    def tickers(self, symbol: Optional[str] = None) -> list:
        params = {"category": CATEGORY}
        if symbol:
            params["symbol"] = symbol.upper()
        result = self._request("GET", "/v5/market/tickers", params=params)
        return result.get("list") or []

    def instruments_info(self, symbol: str) -> dict:
        return self._request(
            "GET",
            "/v5/market/instruments-info",
            params={"category": CATEGORY, "symbol": symbol.upper()},
        )

    def symbol_filters(self, symbol: str) -> SymbolFilters:
        sym = symbol.upper()
        cached = self._filters_cache.get(sym)
        if cached is not None:
            return cached
        filters = extract_filters(self.instruments_info(sym), sym)
        self._filters_cache[sym] = filters
        return filters

    # ---------------- ACCOUNT / TRADING ----------------

    def wallet_balance(self, account_type: str = "UNIFIED") -> dict:
        return self._request(
            "GET", "/v5/account/wallet-balance", params={"accountType": account_type}, signed=True
        )

    def position_list(self, symbol: Optional[str] = None) -> list:
        params: Dict[str, Any] = {"category": CATEGORY}
        if symbol:
            params["symbol"] = symbol.upper()
        else:
            params["settleCoin"] = "USDT"
        result = self._request("GET", "/v5/position/list", params=params, signed=True)
        return result.get("list") or []

    def set_leverage(self, symbol: str, leverage: int) -> dict:
        lev = str(int(leverage))
        try:
            return self._request(
                "POST",
                "/v5/position/set-leverage",
                params={"category": CATEGORY, "symbol": symbol.upper(), "buyLeverage": lev, "sellLeverage": lev},
                signed=True,
            )
        except ExchangeError as e:
            # 110043: leverage not modified
            if e.code == 110043:
                return {}
            raise

    def create_order(self, params: dict) -> dict:
        body = {"category": CATEGORY, **params}
        return self._request("POST", "/v5/order/create", params=body, signed=True)

    def order_history(
        self, symbol: str, order_id: Optional[str] = None, order_link_id: Optional[str] = None
    ) -> list:
        result = self._request(
            "GET",
            "/v5/order/history",
            params={
                "category": CATEGORY,
                "symbol": symbol.upper(),
                "orderId": order_id or None,
                "orderLinkId": order_link_id,
            },
            signed=True,
        )
        return result.get("list") or []


class BybitMarketData:
    """Market Data Provider over BybitClient. Blocking; async callers use asyncio.to_thread."""

    def __init__(self, client: BybitClient):
        self.client = client

    def get_tickers(self, symbols: Optional[List[str]] = None) -> List[MarketData]:
        rows = self.client.tickers()
        data = [ticker_to_market_data(r) for r in rows]
        if symbols:
            wanted = {s.upper() for s in symbols}
            data = [d for d in data if d.symbol in wanted]
        return data

    def get_top_symbols(self, limit: int) -> List[str]:
        return top_usdt_symbols(self.get_tickers(), limit)

    def get_ohlcv(self, symbol: str, interval: str, limit: int) -> OHLCV:
        return kline_series(self.client.klines(symbol, interval=interval, limit=limit))

    def get_current_price(self, symbol: str) -> float:
        rows = self.client.tickers(symbol)
        if not rows:
            raise ExchangeError(f"No ticker for {symbol}")
        return to_float(rows[0].get("lastPrice"))

    def server_time(self) -> int:
        return self.client.server_time_ms()
