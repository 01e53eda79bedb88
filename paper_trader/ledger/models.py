"""
Ledger domain records and money helpers.

Money is always ``decimal.Decimal`` quantized to cents.  The datastore
keeps integer cents; these helpers convert at the boundary so binary
floats never reach a stored balance.

Usage:
    from paper_trader.ledger.models import to_money, Account

    to_money("12.345")   # Decimal("12.35")
    to_money(0.1)        # Decimal("0.10"), via str(), not the float bits
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum

from paper_trader.errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
DEFAULT_BALANCE = Decimal("1000.00")
# largest amount whose cents fit a signed 64-bit sqlite INTEGER
MAX_MONEY = (Decimal(2 ** 63 - 1) / 100).quantize(CENT, rounding=ROUND_DOWN)


# =====================================================================
# Money helpers
# =====================================================================

def to_money(value) -> Decimal:
    """Coerce *value* into a cent-quantized Decimal.

    Floats go through ``str`` so ``0.1`` becomes ``0.10`` rather than the
    nearest binary fraction.  Raises InvalidAmount for anything that is
    not a finite number (including bools) or whose magnitude exceeds
    ``MAX_MONEY``.
    """
    if isinstance(value, bool):
        raise InvalidAmount()
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float, str)):
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation:
            raise InvalidAmount(f"Not a valid amount: {value!r}")
    else:
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    if not amount.is_finite() or abs(amount) > MAX_MONEY:
        raise InvalidAmount(f"Not a valid amount: {value!r}")
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise InvalidAmount(f"Not a valid amount: {value!r}")


def to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_money(amount: Decimal) -> str:
    """``Decimal("-1234.5")`` -> ``"-$1,234.50"``."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def normalize_ticker(ticker: str) -> str:
    return ticker.strip().upper()


# =====================================================================
# Records
# =====================================================================

class TransactionKind(Enum):
    DEPOSIT = "deposit"
    BUY = "buy"
    SELL = "sell"


@dataclass
class Account:
    """One user's profile snapshot and cash balance."""
    user_id: str
    username: str
    email: str = ""
    role: str = "tenant"
    status: str = ""
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    profile_picture_url: str | None = None
    cash_balance: Decimal = DEFAULT_BALANCE
    initial_balance: Decimal = DEFAULT_BALANCE
    created_at: datetime | None = None

    @property
    def is_guest(self) -> bool:
        return self.role == "guest"

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.username


@dataclass(frozen=True)
class Holding:
    """A non-zero quantity of one ticker owned by one account."""
    user_id: str
    ticker: str
    quantity: int


@dataclass(frozen=True)
class TransactionEntry:
    """Immutable ledger log entry.

    ``amount`` is the signed effect on the cash balance: positive for
    deposits and sells, negative for buys.
    """
    id: str
    user_id: str
    kind: TransactionKind
    amount: Decimal
    timestamp: datetime
    ticker: str | None = None
    quantity: int | None = None
    price_per_share: Decimal | None = None

    @property
    def description(self) -> str:
        if self.kind is TransactionKind.DEPOSIT:
            return f"Deposited {format_money(self.amount)}"
        verb = "Bought" if self.kind is TransactionKind.BUY else "Sold"
        if self.ticker is None or self.quantity is None or self.price_per_share is None:
            return f"Unknown {self.kind.value} transaction"
        return (f"{verb} {self.quantity} shares of {self.ticker} "
                f"at {format_money(self.price_per_share)}")


@dataclass
class ReconciliationReport:
    """Result of replaying an account's transaction log."""
    user_id: str
    initial_balance: Decimal
    stored_balance: Decimal
    replayed_balance: Decimal
    stored_holdings: dict[str, int] = field(default_factory=dict)
    replayed_holdings: dict[str, int] = field(default_factory=dict)

    @property
    def balance_consistent(self) -> bool:
        return self.stored_balance == self.replayed_balance

    @property
    def holdings_consistent(self) -> bool:
        return self.stored_holdings == self.replayed_holdings

    @property
    def consistent(self) -> bool:
        return self.balance_consistent and self.holdings_consistent
