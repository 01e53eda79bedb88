"""
Portfolio valuation: holdings combined with externally sourced quotes.

A read-only, derived view.  Tickers without a quote are kept in the
result, flagged, and left out of the totals rather than counted as zero.

Usage:
    val = engine.value_portfolio(user_id, {"AAPL": 190.12, "TSLA": None})
    val.holdings_value      # AAPL only
    val.unavailable         # ["TSLA"]
    val.to_frame()
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Union

import pandas as pd

from paper_trader.errors import InvalidAmount
from paper_trader.ledger.models import ZERO, Holding, to_money

QuoteLookup = Union[Callable[[str], object], Mapping]


@dataclass(frozen=True)
class HoldingValue:
    """One holding priced (or not) at the current quote."""
    ticker: str
    quantity: int
    price: Decimal | None

    @property
    def quote_available(self) -> bool:
        return self.price is not None

    @property
    def market_value(self) -> Decimal | None:
        if self.price is None:
            return None
        return self.price * self.quantity


@dataclass
class PortfolioValuation:
    """Cash plus priced holdings for one account."""
    cash: Decimal
    positions: list[HoldingValue] = field(default_factory=list)

    @property
    def unavailable(self) -> list[str]:
        """Tickers whose quote could not be obtained."""
        return [p.ticker for p in self.positions if not p.quote_available]

    @property
    def holdings_value(self) -> Decimal:
        return sum((p.market_value for p in self.positions if p.quote_available), ZERO)

    @property
    def total_value(self) -> Decimal:
        """Cash + priced holdings. Partial when ``unavailable`` is non-empty."""
        return self.cash + self.holdings_value

    @property
    def complete(self) -> bool:
        return not self.unavailable

    def allocation(self, ticker: str) -> float | None:
        """Fraction of the priced total held in *ticker* (0 to 1)."""
        total = self.total_value
        for p in self.positions:
            if p.ticker == ticker and p.quote_available:
                if total == 0:
                    return 0.0
                return float(p.market_value / total)
        return None

    def to_frame(self) -> pd.DataFrame:
        """Tabular view: one row per holding, NaN where unpriced."""
        rows = [{
            "ticker": p.ticker,
            "quantity": p.quantity,
            "price": float(p.price) if p.quote_available else float("nan"),
            "market_value": float(p.market_value) if p.quote_available else float("nan"),
            "quote_available": p.quote_available,
        } for p in self.positions]
        return pd.DataFrame(rows, columns=["ticker", "quantity", "price",
                                           "market_value", "quote_available"])


def _resolve(quote_lookup: QuoteLookup, ticker: str) -> Decimal | None:
    if isinstance(quote_lookup, Mapping):
        raw = quote_lookup.get(ticker)
    else:
        raw = quote_lookup(ticker)
    if raw is None:
        return None
    try:
        price = to_money(raw)
    except InvalidAmount:
        return None
    return price if price >= 0 else None


def value_holdings(cash: Decimal, holdings: list[Holding],
                   quote_lookup: QuoteLookup) -> PortfolioValuation:
    """Price each holding via *quote_lookup*; None or invalid means unavailable."""
    positions = [HoldingValue(h.ticker, h.quantity, _resolve(quote_lookup, h.ticker))
                 for h in holdings]
    return PortfolioValuation(cash=cash, positions=positions)
