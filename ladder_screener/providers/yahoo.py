from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote as url_quote

import aiohttp

from ..aggregation import aggregate_intraday, aggregate_weekly
from ..cache import TtlCache
from ..intervals import interval_minutes, is_intraday, validate_interval
from ..models import Candle, Quote

log = logging.getLogger("yahoo")


class FetchError(RuntimeError):
    """Upstream or network failure after retries."""


@dataclass(frozen=True)
class ChartParams:
    native_interval: str
    range: str
    aggregate_weekly: bool = False


# Requested interval -> what Yahoo can serve and how to roll it up.
CHART_PARAMS: Dict[str, ChartParams] = {
    "1m": ChartParams("1m", "7d"),
    "3m": ChartParams("1m", "7d"),
    "5m": ChartParams("5m", "60d"),
    "15m": ChartParams("15m", "60d"),
    "30m": ChartParams("30m", "60d"),
    "1h": ChartParams("60m", "730d"),
    "2h": ChartParams("60m", "730d"),
    "3h": ChartParams("60m", "730d"),
    "4h": ChartParams("60m", "730d"),
    "1d": ChartParams("1d", "5y"),
    "1w": ChartParams("1d", "10y", aggregate_weekly=True),
    "1mo": ChartParams("1mo", "max"),
}


def parse_chart(payload: Any) -> List[Candle]:
    """Candles from a chart response; rows with missing OHLCV fields are dropped."""
    try:
        result = payload["chart"]["result"][0]
    except (KeyError, IndexError, TypeError):
        raise FetchError("No data from Yahoo Finance")
    if not result:
        raise FetchError("No data from Yahoo Finance")

    timestamps = result.get("timestamp") or []
    quotes = ((result.get("indicators") or {}).get("quote") or [{}])[0] or {}
    cols = {k: quotes.get(k) or [] for k in ("open", "high", "low", "close", "volume")}

    out: List[Candle] = []
    last_ts: Optional[int] = None
    for i, ts in enumerate(timestamps):
        row = {}
        for k, col in cols.items():
            row[k] = col[i] if i < len(col) else None
        if any(v is None for v in row.values()):
            continue
        t_ms = int(ts) * 1000
        if last_ts is not None and t_ms <= last_ts:
            continue  # keep strictly increasing times
        last_ts = t_ms
        out.append(Candle(
            time_ms=t_ms,
            open=float(row["open"]),
            high=float(row["high"]),
            low=float(row["low"]),
            close=float(row["close"]),
            volume=float(row["volume"]),
        ))
    return out


def parse_quote(payload: Any, symbol: str) -> Quote:
    try:
        meta = payload["chart"]["result"][0]["meta"]
    except (KeyError, IndexError, TypeError):
        raise FetchError(f"No quote data for {symbol}")

    price = meta.get("regularMarketPrice")
    prev_close = meta.get("previousClose") or meta.get("chartPreviousClose")
    if price is None or prev_close is None:
        raise FetchError(f"Incomplete quote data for {symbol}")
    price = float(price)
    prev_close = float(prev_close)
    change = price - prev_close
    return Quote(
        symbol=meta.get("symbol") or symbol,
        name=meta.get("longName") or meta.get("shortName") or symbol,
        price=price,
        change=change,
        change_percent=(change / prev_close * 100.0) if prev_close else 0.0,
        volume=float(meta.get("regularMarketVolume") or 0),
    )


class YahooProvider:
    def __init__(
        self,
        base_url: str = "https://query1.finance.yahoo.com",
        *,
        timeout_s: int = 30,
        quote_timeout_s: int = 15,
        max_retries: int = 3,
        backoff_s: float = 0.8,
        user_agent: str = "Mozilla/5.0",
        cache: Optional[TtlCache] = None,
        intraday_ttl_s: int = 120,
        daily_ttl_s: int = 600,
        quote_ttl_s: int = 120,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.quote_timeout_s = quote_timeout_s
        self.max_retries = max_retries
        self.backoff_s = backoff_s
        self.user_agent = user_agent

        self.cache = cache
        self.intraday_ttl_s = intraday_ttl_s
        self.daily_ttl_s = daily_ttl_s
        self.quote_ttl_s = quote_ttl_s

        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"User-Agent": self.user_agent})
        return self._session

    def _chart_url(self, symbol: str) -> str:
        return f"{self.base_url}/v8/finance/chart/{url_quote(symbol, safe='')}"

    async def _get_json(self, symbol: str, params: Dict[str, str], timeout_s: int) -> Any:
        url = self._chart_url(symbol)
        sess = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=timeout_s)

        backoff = float(self.backoff_s)
        last_err: Optional[BaseException] = None
        for attempt in range(1, int(self.max_retries) + 1):
            try:
                async with sess.get(url, params=params, timeout=timeout) as resp:
                    if resp.status == 429:
                        retry_after = resp.headers.get("Retry-After")
                        sleep_s = float(retry_after) if (retry_after and retry_after.isdigit()) else backoff
                        log.warning(
                            "rest_rate_limited symbol=%s params=%s sleep=%.1fs attempt=%d/%d",
                            symbol, params, sleep_s, attempt, self.max_retries,
                        )
                        last_err = FetchError(f"Yahoo rate limited: {symbol}")
                        await asyncio.sleep(sleep_s)
                        backoff = min(backoff * 2.0, 20.0)
                        continue

                    if resp.status != 200:
                        txt = await resp.text()
                        raise FetchError(f"Yahoo chart failed: {resp.status} {txt[:300]}")

                    # Some proxies return a wrong content-type; be tolerant.
                    return await resp.json(content_type=None)

            except (asyncio.TimeoutError, aiohttp.ClientError) as e:
                last_err = e
                if attempt >= int(self.max_retries):
                    break
                log.warning(
                    "rest_timeout_or_client_err attempt=%d/%d symbol=%s backoff=%.1fs err=%s",
                    attempt, self.max_retries, symbol, backoff, e,
                )
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 20.0)

        raise FetchError(f"Yahoo request failed for {symbol}: {last_err!r}") from last_err

    async def _fetch_chart(self, symbol: str, native_interval: str, range_: str) -> List[Candle]:
        key = f"chart:{symbol}:{native_interval}:{range_}"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        payload = await self._get_json(
            symbol,
            {"interval": native_interval, "range": range_, "includeAdjustedClose": "true"},
            self.timeout_s,
        )
        candles = parse_chart(payload)

        if self.cache is not None:
            ttl = self.daily_ttl_s if native_interval in ("1d", "1wk", "1mo") else self.intraday_ttl_s
            self.cache.set(key, candles, ttl)
        return candles

    async def fetch_candles(self, symbol: str, interval: str) -> List[Candle]:
        interval = validate_interval(interval)
        symbol = symbol.upper()
        params = CHART_PARAMS[interval]

        candles = await self._fetch_chart(symbol, params.native_interval, params.range)
        if is_intraday(interval):
            candles = aggregate_intraday(candles, interval_minutes(interval))
        if params.aggregate_weekly:
            candles = aggregate_weekly(candles)
        log.debug("candles symbol=%s interval=%s bars=%d", symbol, interval, len(candles))
        return candles

    async def fetch_quote(self, symbol: str) -> Quote:
        symbol = symbol.upper()
        key = f"quote:{symbol}"
        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        payload = await self._get_json(symbol, {"interval": "1d", "range": "1d"}, self.quote_timeout_s)
        quote = parse_quote(payload, symbol)
        if self.cache is not None:
            self.cache.set(key, quote, self.quote_ttl_s)
        return quote

    async def fetch_quotes(self, symbols: Sequence[str]) -> Dict[str, Quote]:
        out: Dict[str, Quote] = {}
        for sym in symbols:
            try:
                out[sym] = await self.fetch_quote(sym)
            except Exception as e:
                log.warning("quote_failed symbol=%s err=%s", sym, e)
        return out
