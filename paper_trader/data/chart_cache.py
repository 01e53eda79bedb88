"""
File cache for chart price history, one JSON file per (ticker, range).

Files are named ``{TICKER}_{RANGE}.json`` and hold a list of
``{"timestamp": <ISO-8601>, "value": <close>}`` points in time order.
Each file keeps at most ``max_entries`` points; when a save would exceed
that, the oldest points are dropped ``evict_batch`` at a time until it
fits.

Usage:
    from paper_trader.data.chart_cache import ChartCache
    cache = ChartCache("~/.paper_trader/charts")
    series = cache.load("AAPL", "1M")      # None on miss
    cache.save("AAPL", "1M", series)
"""

import json
import logging
import os

import pandas as pd

from paper_trader.errors import PersistenceError
from paper_trader.ledger.models import normalize_ticker

LOGGER = logging.getLogger(__name__)

MAX_ENTRIES = 100
EVICT_BATCH = 5


class ChartCache:
    """Read-through cache of close-price series on disk."""

    def __init__(self, cache_dir: str, max_entries: int = MAX_ENTRIES,
                 evict_batch: int = EVICT_BATCH):
        if max_entries < 1 or evict_batch < 1:
            raise ValueError("max_entries and evict_batch must be positive")
        self.cache_dir = os.path.expanduser(cache_dir)
        self.max_entries = max_entries
        self.evict_batch = evict_batch
        os.makedirs(self.cache_dir, exist_ok=True)

    def path(self, ticker: str, range_key: str) -> str:
        return os.path.join(self.cache_dir,
                            f"{normalize_ticker(ticker)}_{range_key}.json")

    def entries(self) -> list[str]:
        """Cache file paths, sorted by name."""
        return sorted(os.path.join(self.cache_dir, name)
                      for name in os.listdir(self.cache_dir) if name.endswith(".json"))

    def load(self, ticker: str, range_key: str) -> pd.Series | None:
        """Cached series, or None when missing or unreadable."""
        path = self.path(ticker, range_key)
        if not os.path.exists(path):
            return None
        try:
            with open(path) as f:
                points = json.load(f)
            stamps = [p["timestamp"] for p in points]
            values = [float(p["value"]) for p in points]
        except (OSError, ValueError, KeyError, TypeError) as e:
            LOGGER.warning("Ignoring unreadable chart cache %s: %s", path, e)
            return None
        index = pd.to_datetime(stamps, utc=True)
        return pd.Series(values, index=index, name=normalize_ticker(ticker), dtype=float)

    def trim(self, series: pd.Series) -> pd.Series:
        """Drop the oldest points in batches until within ``max_entries``."""
        series = series.sort_index()
        dropped = 0
        while len(series) - dropped > self.max_entries:
            dropped += self.evict_batch
        if dropped:
            LOGGER.debug("Dropping %d oldest chart points", dropped)
        return series.iloc[dropped:]

    def save(self, ticker: str, range_key: str, series: pd.Series) -> str:
        """Write the newest points of *series*. Returns the file path."""
        path = self.path(ticker, range_key)
        points = [{"timestamp": pd.Timestamp(ts).isoformat(), "value": float(v)}
                  for ts, v in self.trim(series).items()]
        tmp = path + ".tmp"
        try:
            with open(tmp, "w") as f:
                json.dump(points, f)
            os.replace(tmp, path)
        except OSError as e:
            raise PersistenceError(f"Could not write chart cache {path}: {e}") from e
        LOGGER.debug("Cached %d points for %s %s", len(points), ticker, range_key)
        return path

    def clear(self) -> None:
        for path in self.entries():
            os.remove(path)
