"""
Ledger engine: the only code path that changes a balance, a holding, or
the transaction log.

Every operation reads the current account state, validates it against
the trading rules, then writes the new balance, the holding delta and a
log entry inside one store transaction.  Either all three land or none
do.  Listeners are notified only after the commit.

Usage:
    from paper_trader.data.store import LedgerStore
    from paper_trader.ledger.engine import LedgerEngine

    engine = LedgerEngine(LedgerStore("paper_trader.db"))
    engine.subscribe(lambda event: print(event.kind, event.balance))
    engine.buy(user_id, "AAPL", 10, "150.00")
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Callable

from paper_trader.errors import (
    AccountNotFound,
    InsufficientFunds,
    InsufficientShares,
    InvalidAmount,
    NoSuchHolding,
)
from paper_trader.ledger.models import (
    MAX_MONEY,
    ZERO,
    Account,
    Holding,
    ReconciliationReport,
    TransactionEntry,
    TransactionKind,
    format_money,
    normalize_ticker,
    to_money,
)
from paper_trader.ledger.valuation import PortfolioValuation, QuoteLookup, value_holdings

if TYPE_CHECKING:
    from paper_trader.data.store import LedgerStore

LOGGER = logging.getLogger(__name__)


# =====================================================================
# Events
# =====================================================================

class LedgerEventKind(Enum):
    DEPOSIT = "deposit"
    BUY = "buy"
    SELL = "sell"
    ACCOUNT_OPENED = "account_opened"
    ACCOUNT_CLOSED = "account_closed"


@dataclass(frozen=True)
class LedgerEvent:
    """Emitted after a ledger mutation has been committed."""
    kind: LedgerEventKind
    user_id: str
    balance: Decimal | None
    entry: TransactionEntry | None = None
    holding: Holding | None = None


LedgerListener = Callable[[LedgerEvent], None]


# =====================================================================
# Engine
# =====================================================================

class LedgerEngine:
    """Validates and applies deposit/buy/sell against a LedgerStore.

    Parameters
    ----------
    store : LedgerStore
        Durable backing store for accounts, holdings and the log.
    clock : callable, optional
        Returns the timestamp stamped on new entries (UTC now by default).
    """

    def __init__(self, store: "LedgerStore",
                 clock: Callable[[], datetime] | None = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._listeners: list[LedgerListener] = []

    # -----------------------------------------------------------------
    # Observers
    # -----------------------------------------------------------------

    def subscribe(self, listener: LedgerListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: LedgerEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                # already committed
                LOGGER.exception("Ledger listener %r failed on %s",
                                 listener, event.kind.value)

    # -----------------------------------------------------------------
    # Account setup / teardown
    # -----------------------------------------------------------------

    def open_account(self, account: Account) -> Account:
        """Persist a new account with its starting balance."""
        balance = to_money(account.cash_balance)
        if balance < 0:
            raise InvalidAmount("Starting balance cannot be negative.")
        account.cash_balance = balance
        account.initial_balance = balance
        self.store.insert_account(account)
        LOGGER.info("Opened %s account %s with %s", account.role,
                    account.user_id, format_money(balance))
        self._emit(LedgerEvent(LedgerEventKind.ACCOUNT_OPENED,
                               account.user_id, balance))
        return account

    def close_account(self, user_id: str) -> bool:
        """Delete an account together with its holdings and log."""
        removed = self.store.delete_account(user_id)
        if removed:
            LOGGER.info("Closed account %s", user_id)
            self._emit(LedgerEvent(LedgerEventKind.ACCOUNT_CLOSED, user_id, None))
        return removed

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def account(self, user_id: str) -> Account:
        account = self.store.get_account(user_id)
        if account is None:
            raise AccountNotFound(f"Account {user_id} not found.")
        return account

    def balance(self, user_id: str) -> Decimal:
        return self.account(user_id).cash_balance

    def holdings(self, user_id: str) -> list[Holding]:
        return self.store.list_holdings(user_id)

    def transactions(self, user_id: str, limit: int | None = None) -> list[TransactionEntry]:
        """Transaction log for *user_id*, newest first."""
        return self.store.list_transactions(user_id, limit=limit)

    # -----------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------

    def deposit(self, user_id: str, amount) -> Decimal:
        """Add cash. Returns the new balance."""
        amount = to_money(amount)
        if amount <= 0:
            raise InvalidAmount()

        with self.store.atomic():
            account = self.account(user_id)
            new_balance = self._checked_balance(account.cash_balance + amount)
            entry = self._entry(user_id, TransactionKind.DEPOSIT, amount)
            self.store.set_cash_balance(user_id, new_balance)
            self.store.append_transaction(entry)

        LOGGER.info("Deposit %s for %s -> balance %s", format_money(amount),
                    user_id, format_money(new_balance))
        self._emit(LedgerEvent(LedgerEventKind.DEPOSIT, user_id, new_balance, entry))
        return new_balance

    def buy(self, user_id: str, ticker: str, quantity: int, price_per_share) -> Decimal:
        """Buy *quantity* shares at the caller-supplied price.

        Returns the new balance.  Raises InsufficientFunds when the cost
        exceeds the cash balance.
        """
        ticker, quantity, price = self._validate_trade(ticker, quantity, price_per_share)
        cost = price * quantity

        with self.store.atomic():
            account = self.account(user_id)
            if account.cash_balance < cost:
                raise InsufficientFunds(
                    f"Insufficient funds: {quantity} {ticker} costs "
                    f"{format_money(cost)} but the balance is "
                    f"{format_money(account.cash_balance)}."
                )
            held = self.store.get_holding(user_id, ticker)
            new_quantity = (held.quantity if held else 0) + quantity
            new_balance = account.cash_balance - cost
            entry = self._entry(user_id, TransactionKind.BUY, -cost,
                                ticker=ticker, quantity=quantity, price=price)
            self.store.set_cash_balance(user_id, new_balance)
            self.store.set_holding(user_id, ticker, new_quantity)
            self.store.append_transaction(entry)

        LOGGER.info("Bought %d %s @ %s for %s -> balance %s", quantity, ticker,
                    format_money(price), user_id, format_money(new_balance))
        self._emit(LedgerEvent(LedgerEventKind.BUY, user_id, new_balance, entry,
                               Holding(user_id, ticker, new_quantity)))
        return new_balance

    def sell(self, user_id: str, ticker: str, quantity: int, price_per_share) -> Decimal:
        """Sell *quantity* shares at the caller-supplied price.

        Returns the new balance.  The holding row is deleted when the
        position is fully liquidated.
        """
        ticker, quantity, price = self._validate_trade(ticker, quantity, price_per_share)
        proceeds = price * quantity

        with self.store.atomic():
            account = self.account(user_id)
            held = self.store.get_holding(user_id, ticker)
            if held is None:
                raise NoSuchHolding(f"You do not own any shares of {ticker}.")
            if quantity > held.quantity:
                raise InsufficientShares(
                    f"Cannot sell {quantity} shares of {ticker}; "
                    f"only {held.quantity} held."
                )
            remaining = held.quantity - quantity
            new_balance = self._checked_balance(account.cash_balance + proceeds)
            entry = self._entry(user_id, TransactionKind.SELL, proceeds,
                                ticker=ticker, quantity=quantity, price=price)
            self.store.set_cash_balance(user_id, new_balance)
            self.store.set_holding(user_id, ticker, remaining)
            self.store.append_transaction(entry)

        LOGGER.info("Sold %d %s @ %s for %s -> balance %s", quantity, ticker,
                    format_money(price), user_id, format_money(new_balance))
        self._emit(LedgerEvent(LedgerEventKind.SELL, user_id, new_balance, entry,
                               Holding(user_id, ticker, remaining) if remaining else None))
        return new_balance

    # -----------------------------------------------------------------
    # Derived views
    # -----------------------------------------------------------------

    def value_portfolio(self, user_id: str, quote_lookup: QuoteLookup) -> PortfolioValuation:
        """Value holdings with *quote_lookup* (ticker -> price or None)."""
        account = self.account(user_id)
        return value_holdings(account.cash_balance,
                              self.store.list_holdings(user_id),
                              quote_lookup)

    def reconcile(self, user_id: str) -> ReconciliationReport:
        """Replay the transaction log and compare it with stored state."""
        account = self.account(user_id)
        replayed_balance = account.initial_balance
        replayed_holdings: dict[str, int] = {}
        for entry in self.store.list_transactions(user_id, newest_first=False):
            replayed_balance += entry.amount
            if entry.kind is TransactionKind.BUY:
                replayed_holdings[entry.ticker] = (
                    replayed_holdings.get(entry.ticker, 0) + entry.quantity)
            elif entry.kind is TransactionKind.SELL:
                remaining = replayed_holdings.get(entry.ticker, 0) - entry.quantity
                if remaining:
                    replayed_holdings[entry.ticker] = remaining
                else:
                    replayed_holdings.pop(entry.ticker, None)

        report = ReconciliationReport(
            user_id=user_id,
            initial_balance=account.initial_balance,
            stored_balance=account.cash_balance,
            replayed_balance=replayed_balance,
            stored_holdings={h.ticker: h.quantity
                             for h in self.store.list_holdings(user_id)},
            replayed_holdings=replayed_holdings,
        )
        if not report.consistent:
            LOGGER.warning("Ledger for %s is inconsistent: stored %s, replayed %s",
                           user_id, format_money(report.stored_balance),
                           format_money(report.replayed_balance))
        return report

    # -----------------------------------------------------------------
    # Internal helpers
    # -----------------------------------------------------------------

    @staticmethod
    def _validate_trade(ticker: str, quantity: int, price_per_share):
        if not isinstance(ticker, str) or not ticker.strip():
            raise InvalidAmount("A ticker symbol is required.")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidAmount("Quantity must be a whole number greater than zero.")
        price = to_money(price_per_share)
        if price < ZERO:
            raise InvalidAmount("Price per share cannot be negative.")
        return normalize_ticker(ticker), quantity, price

    @staticmethod
    def _checked_balance(balance: Decimal) -> Decimal:
        if balance > MAX_MONEY:
            raise InvalidAmount("The resulting balance is too large.")
        return balance

    def _entry(self, user_id: str, kind: TransactionKind, amount: Decimal,
               ticker: str | None = None, quantity: int | None = None,
               price: Decimal | None = None) -> TransactionEntry:
        return TransactionEntry(
            id=uuid.uuid4().hex,
            user_id=user_id,
            kind=kind,
            amount=amount,
            timestamp=self._clock(),
            ticker=ticker,
            quantity=quantity,
            price_per_share=price,
        )
