"""
SQLite storage for accounts, holdings, and the transaction log.

One file holds everything the device owns: account snapshots, per-ticker
holdings, the append-only transaction log, a small key/value settings
table (session token, last guest pointer), and the watchlist.

Money is stored as integer cents.  Holdings and transactions reference
their account with ``ON DELETE CASCADE`` so deleting a guest account
removes its whole ledger in the same statement.

Usage:
    from paper_trader.data.store import LedgerStore
    store = LedgerStore("paper_trader.db")
    with store.atomic():
        store.set_cash_balance(user_id, new_balance)
        store.append_transaction(entry)
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

from paper_trader.errors import PersistenceError
from paper_trader.ledger.models import (
    Account,
    Holding,
    TransactionEntry,
    TransactionKind,
    from_cents,
    normalize_ticker,
    to_cents,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_WATCHLIST = ["AAPL", "GOOGL", "MSFT", "TSLA", "AMZN"]

_ACCOUNT_COLUMNS = (
    "user_id, username, email, role, status, first_name, last_name, "
    "phone_number, profile_picture_url, cash_cents, initial_cents, created_at"
)


class LedgerStore:
    """SQLite-backed store for the account, holdings and transaction log.

    The connection runs in autocommit mode; multi-statement units of
    work go through :meth:`atomic`, which issues ``BEGIN IMMEDIATE`` and
    commits or rolls back as a whole.  Single writes outside ``atomic``
    are wrapped in their own transaction.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        if db_path != ":memory:":
            parent = os.path.dirname(os.path.abspath(db_path))
            os.makedirs(parent, exist_ok=True)
        try:
            self._conn = sqlite3.connect(db_path, isolation_level=None)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._create_tables()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not open ledger database {db_path}: {e}") from e
        self._depth = 0

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS accounts (
                user_id         TEXT PRIMARY KEY,
                username        TEXT NOT NULL,
                email           TEXT NOT NULL DEFAULT '',
                role            TEXT NOT NULL,
                status          TEXT NOT NULL DEFAULT '',
                first_name      TEXT NOT NULL DEFAULT '',
                last_name       TEXT NOT NULL DEFAULT '',
                phone_number    TEXT NOT NULL DEFAULT '',
                profile_picture_url TEXT,
                cash_cents      INTEGER NOT NULL CHECK (cash_cents >= 0),
                initial_cents   INTEGER NOT NULL,
                created_at      TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS holdings (
                user_id   TEXT NOT NULL,
                ticker    TEXT NOT NULL,
                quantity  INTEGER NOT NULL CHECK (quantity > 0),
                PRIMARY KEY (user_id, ticker),
                FOREIGN KEY (user_id) REFERENCES accounts(user_id)
                    ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS transactions (
                seq         INTEGER PRIMARY KEY AUTOINCREMENT,
                id          TEXT NOT NULL UNIQUE,
                user_id     TEXT NOT NULL,
                kind        TEXT NOT NULL CHECK (kind IN ('deposit', 'buy', 'sell')),
                amount_cents INTEGER NOT NULL,
                ticker      TEXT,
                quantity    INTEGER,
                price_cents INTEGER,
                timestamp   TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES accounts(user_id)
                    ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_user_id
                ON transactions(user_id);

            CREATE TABLE IF NOT EXISTS settings (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS watchlist (
                position INTEGER PRIMARY KEY AUTOINCREMENT,
                ticker   TEXT NOT NULL UNIQUE
            );
        """)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self):
        """Run the enclosed writes as one durable transaction.

        Nested use joins the outer transaction.  Any exception rolls the
        whole unit back; sqlite errors and integers too wide for a
        column surface as PersistenceError.
        """
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        try:
            self._conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not start transaction: {e}") from e
        self._depth = 1
        try:
            yield self
        except (sqlite3.Error, OverflowError) as e:
            self._conn.rollback()
            raise PersistenceError(f"Ledger write failed: {e}") from e
        except BaseException:
            self._conn.rollback()
            raise
        else:
            try:
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise PersistenceError(f"Ledger commit failed: {e}") from e
        finally:
            self._depth = 0

    def _query(self, sql: str, params=()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise PersistenceError(f"Ledger read failed: {e}") from e

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def insert_account(self, account: Account) -> Account:
        created = account.created_at or datetime.now(timezone.utc)
        with self.atomic():
            self._conn.execute(f"""
                INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                account.user_id,
                account.username,
                account.email,
                account.role,
                account.status,
                account.first_name,
                account.last_name,
                account.phone_number,
                account.profile_picture_url,
                to_cents(account.cash_balance),
                to_cents(account.initial_balance),
                created.isoformat(),
            ))
        account.created_at = created
        return account

    def get_account(self, user_id: str) -> Account | None:
        rows = self._query(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE user_id = ?",
            (user_id,),
        )
        return _row_to_account(rows[0]) if rows else None

    def update_profile(self, account: Account) -> None:
        """Overwrite profile fields; the balance columns are left alone."""
        with self.atomic():
            self._conn.execute("""
                UPDATE accounts SET username = ?, email = ?, role = ?,
                    status = ?, first_name = ?, last_name = ?,
                    phone_number = ?, profile_picture_url = ?
                WHERE user_id = ?
            """, (
                account.username,
                account.email,
                account.role,
                account.status,
                account.first_name,
                account.last_name,
                account.phone_number,
                account.profile_picture_url,
                account.user_id,
            ))

    def set_cash_balance(self, user_id: str, balance) -> None:
        with self.atomic():
            self._conn.execute(
                "UPDATE accounts SET cash_cents = ? WHERE user_id = ?",
                (to_cents(balance), user_id),
            )

    def delete_account(self, user_id: str) -> bool:
        """Delete an account and (by cascade) its holdings and log."""
        with self.atomic():
            cur = self._conn.execute(
                "DELETE FROM accounts WHERE user_id = ?", (user_id,))
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Holdings
    # ------------------------------------------------------------------

    def list_holdings(self, user_id: str) -> list[Holding]:
        rows = self._query(
            "SELECT user_id, ticker, quantity FROM holdings "
            "WHERE user_id = ? ORDER BY ticker",
            (user_id,),
        )
        return [Holding(r["user_id"], r["ticker"], int(r["quantity"])) for r in rows]

    def get_holding(self, user_id: str, ticker: str) -> Holding | None:
        rows = self._query(
            "SELECT user_id, ticker, quantity FROM holdings "
            "WHERE user_id = ? AND ticker = ?",
            (user_id, normalize_ticker(ticker)),
        )
        if not rows:
            return None
        r = rows[0]
        return Holding(r["user_id"], r["ticker"], int(r["quantity"]))

    def set_holding(self, user_id: str, ticker: str, quantity: int) -> None:
        """Upsert a holding; a quantity of zero deletes the row."""
        ticker = normalize_ticker(ticker)
        with self.atomic():
            if quantity == 0:
                self._conn.execute(
                    "DELETE FROM holdings WHERE user_id = ? AND ticker = ?",
                    (user_id, ticker),
                )
            else:
                self._conn.execute("""
                    INSERT INTO holdings (user_id, ticker, quantity) VALUES (?, ?, ?)
                    ON CONFLICT(user_id, ticker) DO UPDATE SET quantity = excluded.quantity
                """, (user_id, ticker, quantity))

    # ------------------------------------------------------------------
    # Transaction log
    # ------------------------------------------------------------------

    def append_transaction(self, entry: TransactionEntry) -> None:
        price_cents = (to_cents(entry.price_per_share)
                       if entry.price_per_share is not None else None)
        with self.atomic():
            self._conn.execute("""
                INSERT INTO transactions
                    (id, user_id, kind, amount_cents, ticker, quantity,
                     price_cents, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.id,
                entry.user_id,
                entry.kind.value,
                to_cents(entry.amount),
                entry.ticker,
                entry.quantity,
                price_cents,
                entry.timestamp.isoformat(),
            ))

    def list_transactions(self, user_id: str, limit: int | None = None,
                          newest_first: bool = True) -> list[TransactionEntry]:
        sql = ("SELECT id, user_id, kind, amount_cents, ticker, quantity, "
               "price_cents, timestamp FROM transactions WHERE user_id = ?")
        sql += " ORDER BY seq DESC" if newest_first else " ORDER BY seq ASC"
        params: list = [user_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_entry(r) for r in self._query(sql, params)]

    def sum_transactions(self, user_id: str):
        """Signed sum of all logged amounts for an account."""
        rows = self._query(
            "SELECT COALESCE(SUM(amount_cents), 0) AS total "
            "FROM transactions WHERE user_id = ?",
            (user_id,),
        )
        return from_cents(int(rows[0]["total"]))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_setting(self, key: str, default: str | None = None) -> str | None:
        rows = self._query("SELECT value FROM settings WHERE key = ?", (key,))
        return str(rows[0]["value"]) if rows else default

    def set_setting(self, key: str, value: str) -> None:
        with self.atomic():
            self._conn.execute(
                "INSERT INTO settings (key, value) VALUES (?, ?)"
                " ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    def delete_setting(self, key: str) -> None:
        with self.atomic():
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------

    def list_watchlist(self) -> list[str]:
        """Return the favourites list, seeding the defaults on first use."""
        if self.get_setting("watchlist_seeded") is None:
            with self.atomic():
                self._conn.executemany(
                    "INSERT OR IGNORE INTO watchlist (ticker) VALUES (?)",
                    [(t,) for t in DEFAULT_WATCHLIST],
                )
                self.set_setting("watchlist_seeded", json.dumps(True))
        rows = self._query("SELECT ticker FROM watchlist ORDER BY position")
        return [r["ticker"] for r in rows]

    def add_to_watchlist(self, ticker: str) -> bool:
        """Append *ticker* unless already listed. Returns True if added."""
        self.list_watchlist()
        with self.atomic():
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO watchlist (ticker) VALUES (?)",
                (normalize_ticker(ticker),),
            )
        return cur.rowcount > 0

    def remove_from_watchlist(self, ticker: str) -> bool:
        self.list_watchlist()
        with self.atomic():
            cur = self._conn.execute(
                "DELETE FROM watchlist WHERE ticker = ?",
                (normalize_ticker(ticker),),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------

    def close(self):
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


# =====================================================================
# Row mapping
# =====================================================================

def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        user_id=row["user_id"],
        username=row["username"],
        email=row["email"],
        role=row["role"],
        status=row["status"],
        first_name=row["first_name"],
        last_name=row["last_name"],
        phone_number=row["phone_number"],
        profile_picture_url=row["profile_picture_url"],
        cash_balance=from_cents(int(row["cash_cents"])),
        initial_balance=from_cents(int(row["initial_cents"])),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> TransactionEntry:
    price = row["price_cents"]
    return TransactionEntry(
        id=row["id"],
        user_id=row["user_id"],
        kind=TransactionKind(row["kind"]),
        amount=from_cents(int(row["amount_cents"])),
        timestamp=datetime.fromisoformat(row["timestamp"]),
        ticker=row["ticker"],
        quantity=int(row["quantity"]) if row["quantity"] is not None else None,
        price_per_share=from_cents(int(price)) if price is not None else None,
    )
