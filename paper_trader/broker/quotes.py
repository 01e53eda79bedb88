"""
Price quote sources: ticker search, previous-close quotes and historical
aggregates.

Provides a QuoteSource ABC and two implementations:
  - PolygonQuoteSource: Polygon.io REST API over httpx
  - YFinanceQuoteSource: yfinance, run in a worker thread

All methods are coroutines.  Transport failures and timeouts surface as
NetworkError; unexpected payloads as InvalidResponse.

Usage:
    from paper_trader.broker.quotes import PolygonQuoteSource, fetch_quotes

    async with PolygonQuoteSource(api_key="...") as source:
        quote = await source.previous_close("AAPL")
        quotes = await fetch_quotes(source, ["AAPL", "MSFT", "NOPE"])
        # {"AAPL": Quote(...), "MSFT": Quote(...)}; NOPE logged and skipped
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

import httpx
import pandas as pd
import yfinance as yf

from paper_trader.errors import InvalidResponse, NetworkError

LOGGER = logging.getLogger(__name__)

POLYGON_BASE_URL = "https://api.polygon.io"
DEFAULT_TIMEOUT = 10.0


# =====================================================================
# Quote / TickerInfo
# =====================================================================

@dataclass
class Quote:
    """A previous-close price observation for one ticker."""
    ticker: str
    open: float
    high: float
    low: float
    close: float
    timestamp: datetime

    @property
    def price(self) -> float:
        return self.close


@dataclass
class TickerInfo:
    """One ticker search hit."""
    ticker: str
    name: str
    market: str = ""
    locale: str = ""
    primary_exchange: str | None = None
    type: str | None = None
    active: bool = True
    currency: str | None = None


# =====================================================================
# QuoteSource ABC
# =====================================================================

class QuoteSource(ABC):
    """Abstract base class for market data providers."""

    @abstractmethod
    async def search_tickers(self, query: str, limit: int = 10) -> list[TickerInfo]:
        """Return tickers whose symbol or name matches *query*."""

    @abstractmethod
    async def previous_close(self, ticker: str) -> Quote | None:
        """Most recent previous-close quote, or None if the ticker has none."""

    @abstractmethod
    async def history(self, ticker: str, start: date, end: date,
                      multiplier: int = 1, timespan: str = "day") -> pd.Series:
        """Close prices between *start* and *end* (inclusive).

        Returns
        -------
        pd.Series of floats indexed by a UTC DatetimeIndex, ascending,
        named after the ticker.  Empty when no bars are available.
        """

    async def aclose(self) -> None:
        """Release network resources."""

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()


def _empty_series(ticker: str) -> pd.Series:
    return pd.Series([], index=pd.DatetimeIndex([], tz="UTC"), dtype=float, name=ticker)


# =====================================================================
# PolygonQuoteSource
# =====================================================================

class PolygonQuoteSource(QuoteSource):
    """Quote source backed by the Polygon.io REST API.

    Parameters
    ----------
    api_key : str
        Polygon API key.
    timeout : float
        Per-request timeout in seconds (default 10).
    client : httpx.AsyncClient | None
        Pre-built client (tests pass one with a MockTransport).  When
        None, one is created and owned by this source.
    """

    def __init__(self, api_key: str, timeout: float = DEFAULT_TIMEOUT,
                 client: httpx.AsyncClient | None = None,
                 base_url: str = POLYGON_BASE_URL):
        if not api_key:
            raise ValueError(
                "Polygon API key required. Set POLYGON_API_KEY or configure "
                "polygon_api_key in ~/.paper_trader/config.yaml."
            )
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _get_json(self, path: str, params: dict | None = None) -> dict:
        query = dict(params or {})
        query["apiKey"] = self._api_key
        try:
            resp = await self._client.get(path, params=query)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Polygon request timed out: {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Polygon request failed: {e}") from e

        if resp.status_code != 200:
            raise InvalidResponse(
                f"Polygon returned HTTP {resp.status_code} for {path}")
        try:
            payload = resp.json()
        except ValueError as e:
            raise InvalidResponse(f"Polygon returned non-JSON body for {path}") from e
        if not isinstance(payload, dict):
            raise InvalidResponse(f"Unexpected Polygon payload for {path}")
        return payload

    async def search_tickers(self, query: str, limit: int = 10) -> list[TickerInfo]:
        if not query.strip():
            return []
        payload = await self._get_json(
            "/v3/reference/tickers", {"search": query.strip(), "limit": limit})
        results = []
        for item in payload.get("results") or []:
            try:
                results.append(TickerInfo(
                    ticker=item["ticker"],
                    name=item.get("name", ""),
                    market=item.get("market", ""),
                    locale=item.get("locale", ""),
                    primary_exchange=item.get("primary_exchange"),
                    type=item.get("type"),
                    active=bool(item.get("active", True)),
                    currency=item.get("currency_name"),
                ))
            except (KeyError, TypeError) as e:
                raise InvalidResponse(f"Malformed ticker search result: {item!r}") from e
        return results

    async def previous_close(self, ticker: str) -> Quote | None:
        ticker = ticker.upper()
        payload = await self._get_json(
            f"/v2/aggs/ticker/{ticker}/prev", {"adjusted": "true"})
        results = payload.get("results") or []
        if not results:
            return None
        bar = results[0]
        try:
            return Quote(
                ticker=ticker,
                open=float(bar["o"]),
                high=float(bar["h"]),
                low=float(bar["l"]),
                close=float(bar["c"]),
                timestamp=datetime.fromtimestamp(int(bar["t"]) / 1000, tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidResponse(f"Malformed previous-close bar for {ticker}") from e

    async def history(self, ticker: str, start: date, end: date,
                      multiplier: int = 1, timespan: str = "day") -> pd.Series:
        ticker = ticker.upper()
        path = (f"/v2/aggs/ticker/{ticker}/range/{multiplier}/{timespan}/"
                f"{start.isoformat()}/{end.isoformat()}")
        payload = await self._get_json(path, {"adjusted": "true", "sort": "asc"})
        results = payload.get("results") or []
        if not results:
            return _empty_series(ticker)
        try:
            stamps = [int(r["t"]) for r in results]
            closes = [float(r["c"]) for r in results]
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidResponse(f"Malformed aggregate bars for {ticker}") from e
        index = pd.to_datetime(stamps, unit="ms", utc=True)
        return pd.Series(closes, index=index, name=ticker)


# =====================================================================
# YFinanceQuoteSource
# =====================================================================

_YF_MINUTE_INTERVALS = {1, 2, 5, 15, 30, 60, 90}


def _yf_interval(multiplier: int, timespan: str) -> str:
    """Map a Polygon-style (multiplier, timespan) onto a yfinance interval."""
    if timespan == "minute" and multiplier in _YF_MINUTE_INTERVALS:
        return f"{multiplier}m"
    if timespan == "hour" and multiplier == 1:
        return "1h"
    if timespan == "day" and multiplier in (1, 5):
        return f"{multiplier}d"
    if timespan == "week" and multiplier == 1:
        return "1wk"
    if timespan == "month" and multiplier in (1, 3):
        return f"{multiplier}mo"
    raise ValueError(f"yfinance has no interval for {multiplier} {timespan}")


class YFinanceQuoteSource(QuoteSource):
    """Quote source backed by yfinance.

    yfinance is synchronous; each call runs in a worker thread so the
    event loop stays responsive.
    """

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except (ValueError, InvalidResponse):
            raise
        except Exception as e:
            raise NetworkError(f"yfinance request failed: {e}") from e

    async def search_tickers(self, query: str, limit: int = 10) -> list[TickerInfo]:
        if not query.strip():
            return []

        def _search():
            quotes = yf.Search(query.strip(), max_results=limit).quotes
            return [TickerInfo(
                ticker=q.get("symbol", ""),
                name=q.get("longname") or q.get("shortname") or "",
                market=q.get("quoteType", "").lower(),
                primary_exchange=q.get("exchange"),
                type=q.get("typeDisp"),
            ) for q in quotes if q.get("symbol")]

        return await self._run(_search)

    async def previous_close(self, ticker: str) -> Quote | None:
        ticker = ticker.upper()

        def _prev():
            hist = yf.Ticker(ticker).history(period="5d")
            if hist is None or len(hist) == 0:
                return None
            last = hist.iloc[-1]
            ts = hist.index[-1]
            if hasattr(ts, "to_pydatetime"):
                ts = ts.to_pydatetime()
            return Quote(
                ticker=ticker,
                open=float(last["Open"]),
                high=float(last["High"]),
                low=float(last["Low"]),
                close=float(last["Close"]),
                timestamp=ts,
            )

        return await self._run(_prev)

    async def history(self, ticker: str, start: date, end: date,
                      multiplier: int = 1, timespan: str = "day") -> pd.Series:
        ticker = ticker.upper()
        interval = _yf_interval(multiplier, timespan)

        def _hist():
            # yfinance treats ``end`` as exclusive
            hist = yf.Ticker(ticker).history(
                start=start.isoformat(),
                end=(end + timedelta(days=1)).isoformat(),
                interval=interval,
            )
            if hist is None or len(hist) == 0:
                return _empty_series(ticker)
            closes = hist["Close"].astype(float)
            index = pd.DatetimeIndex(closes.index)
            if index.tz is None:
                index = index.tz_localize("UTC")
            else:
                index = index.tz_convert("UTC")
            return pd.Series(closes.values, index=index, name=ticker)

        return await self._run(_hist)


# =====================================================================
# Batch fetch
# =====================================================================

async def fetch_quotes(source: QuoteSource, tickers: list[str]) -> dict[str, Quote]:
    """Fetch previous-close quotes for *tickers* concurrently.

    Tickers that fail or have no quote are logged and left out; the
    batch itself never fails because of them.  Cancelling the caller
    cancels every outstanding request.
    """
    unique = list(dict.fromkeys(t.upper() for t in tickers))
    if not unique:
        return {}
    results = await asyncio.gather(
        *(source.previous_close(t) for t in unique), return_exceptions=True)

    quotes: dict[str, Quote] = {}
    for ticker, result in zip(unique, results):
        if isinstance(result, BaseException):
            LOGGER.warning("Failed to fetch price for %s: %s", ticker, result)
        elif result is None:
            LOGGER.warning("No previous close available for %s", ticker)
        else:
            quotes[ticker] = result
    return quotes


def quote_prices(quotes: dict[str, Quote]) -> dict[str, float]:
    """{ticker: close} mapping usable as a valuation quote lookup."""
    return {t: q.close for t, q in quotes.items()}


def create_quote_source(settings) -> QuoteSource:
    """Build the quote source named in *settings*."""
    if settings.quote_source == "polygon":
        return PolygonQuoteSource(settings.polygon_api_key, timeout=settings.http_timeout)
    return YFinanceQuoteSource()
