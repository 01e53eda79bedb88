"""Local persistence: the SQLite ledger store and the chart file cache."""

from paper_trader.data.store import DEFAULT_WATCHLIST, LedgerStore
from paper_trader.data.chart_cache import ChartCache
