"""Ledger records, the ledger engine, and portfolio valuation."""

from paper_trader.ledger.models import (
    DEFAULT_BALANCE,
    Account,
    Holding,
    ReconciliationReport,
    TransactionEntry,
    TransactionKind,
    format_money,
    to_money,
)
from paper_trader.ledger.engine import LedgerEngine, LedgerEvent, LedgerEventKind
from paper_trader.ledger.valuation import HoldingValue, PortfolioValuation, value_holdings
