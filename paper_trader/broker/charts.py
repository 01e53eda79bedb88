"""
Chart ranges and read-through loading of price history.

Usage:
    from paper_trader.broker.charts import ChartRange, load_chart

    chart = await load_chart(source, cache, "AAPL", ChartRange.ONE_MONTH)
    chart.price_change, chart.percent_change
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum

import pandas as pd

from paper_trader.broker.quotes import Quote, QuoteSource
from paper_trader.data.chart_cache import ChartCache
from paper_trader.ledger.models import normalize_ticker

LOGGER = logging.getLogger(__name__)


class ChartRange(Enum):
    """(label, days back, timespan, multiplier, strftime format)."""

    TODAY = ("Today", 0, "minute", 5, "%H:%M")
    FIVE_DAYS = ("5D", 5, "hour", 1, "%m/%d %H:%M")
    ONE_MONTH = ("1M", 30, "day", 1, "%m/%d/%y")
    ONE_YEAR = ("1Y", 365, "day", 1, "%m/%d/%y")
    FIVE_YEARS = ("5Y", 365 * 5, "day", 5, "%m/%d/%y")

    def __init__(self, label, days_back, timespan, multiplier, date_format):
        self.label = label
        self.days_back = days_back
        self.timespan = timespan
        self.multiplier = multiplier
        self.date_format = date_format

    @classmethod
    def from_label(cls, label: str) -> "ChartRange":
        for r in cls:
            if r.label.lower() == label.strip().lower():
                return r
        labels = ", ".join(r.label for r in cls)
        raise ValueError(f"Unknown chart range '{label}'. Choose one of: {labels}")

    def window(self, today: date) -> tuple[date, date]:
        """(from, to) dates for a range ending on *today*."""
        return today - timedelta(days=self.days_back), today


@dataclass
class ChartData:
    ticker: str
    range: ChartRange
    closes: pd.Series
    previous_close: Quote | None = None
    from_cache: bool = False

    @property
    def empty(self) -> bool:
        return self.closes.empty

    @property
    def price_change(self) -> float | None:
        return price_change(self.closes)

    @property
    def percent_change(self) -> float | None:
        return percent_change(self.closes)

    def labels(self) -> list[str]:
        """Axis labels formatted for the range."""
        return [ts.strftime(self.range.date_format) for ts in self.closes.index]


def price_change(closes: pd.Series) -> float | None:
    """Last close minus first close; None for an empty series."""
    if closes.empty:
        return None
    return float(closes.iloc[-1] - closes.iloc[0])


def percent_change(closes: pd.Series) -> float | None:
    """Percent move from first to last close; None when undefined."""
    if closes.empty or closes.iloc[0] == 0:
        return None
    first, last = float(closes.iloc[0]), float(closes.iloc[-1])
    return (last - first) / first * 100


async def load_chart(source: QuoteSource, cache: ChartCache | None, ticker: str,
                     chart_range: ChartRange, today: date | None = None,
                     with_previous_close: bool = False) -> ChartData:
    """Load price history, serving from *cache* when it holds a non-empty copy.

    A fresh fetch is written back to the cache unless empty.
    """
    ticker = normalize_ticker(ticker)
    prev = await source.previous_close(ticker) if with_previous_close else None

    if cache is not None:
        cached = cache.load(ticker, chart_range.label)
        if cached is not None and not cached.empty:
            LOGGER.debug("Loaded %d points from cache for %s %s",
                         len(cached), ticker, chart_range.label)
            return ChartData(ticker, chart_range, cached, prev, from_cache=True)

    start, end = chart_range.window(today or date.today())
    closes = await source.history(ticker, start, end,
                                  multiplier=chart_range.multiplier,
                                  timespan=chart_range.timespan)
    if closes.empty:
        LOGGER.info("No price history for %s %s", ticker, chart_range.label)
    elif cache is not None:
        cache.save(ticker, chart_range.label, closes)
    return ChartData(ticker, chart_range, closes, prev)
