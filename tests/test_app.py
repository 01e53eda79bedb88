"""
Tests for the command-line client (apps/paper_trading/app.py).

Each invocation builds a fresh context against the same database file,
the way separate runs of the script would.
"""

import asyncio
import importlib.util
import os
import sys
from datetime import datetime, timezone

import pandas as pd
import pytest

from paper_trader.broker.quotes import Quote, QuoteSource, TickerInfo
from paper_trader.config import Settings

# ---------------------------------------------------------------------------
# Load app.py via importlib to avoid import collisions
# ---------------------------------------------------------------------------
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
_APP_PATH = os.path.join(_REPO_ROOT, "apps", "paper_trading", "app.py")


def _load_module(name, filepath):
    """Load a module by explicit file path to avoid import collisions."""
    spec = importlib.util.spec_from_file_location(name, filepath)
    mod = importlib.util.module_from_spec(spec)
    sys.modules[name] = mod
    spec.loader.exec_module(mod)
    return mod


app = _load_module("paper_trader_app", _APP_PATH)


class FixedQuotes(QuoteSource):
    PRICES = {"AAPL": 150.0, "MSFT": 400.0}

    async def search_tickers(self, query, limit=10):
        return [TickerInfo("AAPL", "Apple Inc.", primary_exchange="XNAS")]

    async def previous_close(self, ticker):
        price = self.PRICES.get(ticker.upper())
        if price is None:
            return None
        return Quote(ticker.upper(), price, price, price, price,
                     datetime(2025, 1, 2, tzinfo=timezone.utc))

    async def history(self, ticker, start, end, multiplier=1, timespan="day"):
        idx = pd.date_range("2025-01-02", periods=3, freq="D", tz="UTC")
        return pd.Series([100.0, 105.0, 110.0], index=idx, name=ticker)


@pytest.fixture
def cli(tmp_path, capsys):
    settings = Settings(db_path=str(tmp_path / "cli.db"), cache_dir=str(tmp_path / "charts"))

    def invoke(*argv):
        args = app.parse_args(list(argv))
        ctx = app.build_context(settings)
        ctx.quotes = FixedQuotes()

        async def go():
            try:
                return await app.dispatch(ctx, args)
            finally:
                await ctx.aclose()

        code = asyncio.run(go())
        return code, capsys.readouterr().out

    return invoke


# =====================================================================
# Argument parsing
# =====================================================================

class TestParseArgs:

    def test_buy(self):
        args = app.parse_args(["buy", "AAPL", "10", "--price", "150"])
        assert (args.command, args.ticker, args.quantity, args.price) == ("buy", "AAPL", 10, "150")

    def test_global_flags(self):
        args = app.parse_args(["--profile", "dev", "-v", "status"])
        assert args.profile == "dev" and args.verbose

    def test_watchlist_add_needs_ticker(self):
        with pytest.raises(SystemExit):
            app.parse_args(["watchlist", "add"])

    def test_chart_range_choices(self):
        with pytest.raises(SystemExit):
            app.parse_args(["chart", "AAPL", "--range", "2W"])

    def test_every_command_has_handler(self):
        for name in ("guest", "login", "logout", "deposit", "buy", "sell",
                     "portfolio", "history", "reconcile", "chart", "watchlist"):
            assert name in app.COMMANDS


# =====================================================================
# Guest trading session
# =====================================================================

class TestGuestFlow:

    def test_requires_session(self, cli):
        code, out = cli("deposit", "100")
        assert code == 1
        assert "No active session" in out

    def test_full_flow(self, cli, tmp_path):
        code, out = cli("guest")
        assert code == 0 and "$1,000.00" in out

        code, out = cli("buy", "AAPL", "4")
        assert code == 0
        assert "previous close: $150.00" in out
        assert "New balance: $400.00" in out

        code, out = cli("buy", "MSFT", "2")
        assert code == 1
        assert "Insufficient funds" in out

        code, out = cli("deposit", "500")
        assert "New balance: $900.00" in out

        code, out = cli("sell", "AAPL", "1", "--price", "160")
        assert "New balance: $1,060.00" in out

        code, out = cli("portfolio")
        assert "AAPL" in out and "$450.00" in out
        assert "$1,510.00" in out

        code, out = cli("history")
        assert "Sold 1 shares of AAPL at $160.00" in out
        assert "Deposited $500.00" in out

        code, out = cli("reconcile")
        assert code == 0 and "consistent" in out

        code, out = cli("logout", "--yes")
        assert code == 0 and "guest data deleted" in out

        code, out = cli("status")
        assert "Not signed in" in out

    def test_guest_twice_reports_active_guest(self, cli):
        code, first = cli("guest")
        cli("deposit", "5")
        code, out = cli("guest")
        assert code == 0
        assert "Guest session for" in out
        assert "$1,005.00" in out
        assert first.split("Guest session for")[1].split("--")[0] in out

    def test_unpriced_ticker_requires_price(self, cli):
        cli("guest")
        code, out = cli("buy", "ZZZZ", "1")
        assert code == 1
        assert "pass --price" in out

    def test_logout_confirmation_declined(self, cli, monkeypatch):
        cli("guest")
        monkeypatch.setattr("builtins.input", lambda prompt="": "n")
        code, out = cli("logout")
        assert code == 1
        code, out = cli("status")
        assert "Guest" in out


# =====================================================================
# Market data commands
# =====================================================================

class TestMarketCommands:

    def test_search(self, cli):
        code, out = cli("search", "apple")
        assert code == 0 and "Apple Inc." in out

    def test_chart(self, cli, tmp_path):
        code, out = cli("chart", "AAPL", "--range", "1M")
        assert code == 0
        assert "+10.00" in out and "+10.00%" in out
        assert os.path.exists(tmp_path / "charts" / "AAPL_1M.json")

        code, out = cli("chart", "AAPL", "--range", "1M")
        assert "(cached)" in out

    def test_watchlist(self, cli):
        code, out = cli("watchlist", "add", "nvda")
        assert "NVDA added" in out
        code, out = cli("watchlist", "--prices")
        assert "$150.00" in out
        for t in ("AAPL", "GOOGL", "MSFT", "TSLA", "AMZN", "NVDA"):
            assert t in out
