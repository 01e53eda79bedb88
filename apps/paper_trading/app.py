"""
Paper Trader -- command-line client for the paper-trading ledger.

Each invocation resumes the device's session (stored sign-in token or
last guest), runs one command against the local ledger, and exits.

Usage:
    python app.py guest                      # continue as guest
    python app.py login alice                # sign in (prompts for password)
    python app.py deposit 500
    python app.py buy AAPL 10                # priced at the previous close
    python app.py sell AAPL 4 --price 160
    python app.py portfolio
    python app.py history --limit 20
    python app.py chart AAPL --range 1M
    python app.py watchlist add NVDA
    python app.py --profile dev --verbose status
"""

import argparse
import asyncio
import getpass
import logging
import sys
from dataclasses import dataclass

from paper_trader.broker.charts import ChartRange, load_chart
from paper_trader.broker.identity import IdentityClient, SignUpRequest
from paper_trader.broker.quotes import QuoteSource, create_quote_source, fetch_quotes, quote_prices
from paper_trader.config import Settings, load_settings
from paper_trader.data.chart_cache import ChartCache
from paper_trader.data.store import LedgerStore
from paper_trader.errors import AuthExpired, PaperTraderError
from paper_trader.ledger.engine import LedgerEngine
from paper_trader.ledger.models import TransactionKind, format_money, to_money
from paper_trader.session.manager import SessionManager, SessionState

# ---------------------------------------------------------------------------
# ANSI colors
# ---------------------------------------------------------------------------
GREEN = "\033[92m"
RED = "\033[91m"
CYAN = "\033[96m"
YELLOW = "\033[93m"
BOLD = "\033[1m"
DIM = "\033[2m"
RESET = "\033[0m"


# ===========================================================================
# Application context
# ===========================================================================

@dataclass
class AppContext:
    """Everything a command needs, wired once per invocation."""
    settings: Settings
    store: LedgerStore
    engine: LedgerEngine
    session: SessionManager
    quotes: QuoteSource
    charts: ChartCache | None = None
    identity: IdentityClient | None = None

    async def aclose(self):
        await self.quotes.aclose()
        if self.identity is not None:
            await self.identity.aclose()
        self.store.close()


def build_context(settings: Settings) -> AppContext:
    """Wire store -> engine -> session from resolved settings."""
    store = LedgerStore(settings.db_path)
    engine = LedgerEngine(store)
    identity = None
    if settings.identity_url:
        identity = IdentityClient(settings.identity_url, timeout=settings.http_timeout)
    session = SessionManager(engine, identity)
    return AppContext(
        settings=settings,
        store=store,
        engine=engine,
        session=session,
        quotes=create_quote_source(settings),
        charts=ChartCache(settings.cache_dir),
        identity=identity,
    )


def _money_color(amount) -> str:
    return GREEN if amount >= 0 else RED


# ===========================================================================
# Session commands
# ===========================================================================

async def cmd_guest(ctx: AppContext, args) -> int:
    if ctx.session.state is SessionState.GUEST:
        # restored by session.start()
        account = ctx.session.require_account()
    else:
        account = ctx.session.continue_as_guest()
    print(f"\n  {GREEN}Guest session for {BOLD}{account.display_name}{RESET}"
          f"{GREEN} -- balance {format_money(account.cash_balance)}{RESET}\n")
    return 0


async def cmd_login(ctx: AppContext, args) -> int:
    password = args.password or getpass.getpass("  Password: ")
    account = await ctx.session.sign_in(args.username, password)
    print(f"\n  {GREEN}Signed in as {BOLD}{account.display_name}{RESET}"
          f"{GREEN} -- balance {format_money(account.cash_balance)}{RESET}\n")
    return 0


async def cmd_signup(ctx: AppContext, args) -> int:
    password = args.password or getpass.getpass("  Choose a password: ")
    result = await ctx.session.sign_up(SignUpRequest(
        username=args.username, email=args.email, password=password,
        phone_number=args.phone or "", role=args.role))
    print(f"\n  {GREEN}{result.message or 'Account created.'}{RESET}")
    print(f"  {DIM}Check {args.email} for a verification code, then run "
          f"'verify {args.username} <code>'.{RESET}\n")
    return 0


async def cmd_verify(ctx: AppContext, args) -> int:
    identity = ctx.session.require_identity()
    if args.resend:
        message = await identity.resend_code(args.username)
    else:
        message = await identity.verify_email(args.username, args.code)
    print(f"\n  {GREEN}{message or 'Done.'}{RESET}\n")
    return 0


async def cmd_reset_password(ctx: AppContext, args) -> int:
    identity = ctx.session.require_identity()
    if args.code:
        password = args.password or getpass.getpass("  New password: ")
        message = await identity.confirm_reset_password(args.email, args.code, password)
    else:
        message = await identity.reset_password(args.email)
    print(f"\n  {GREEN}{message or 'Done.'}{RESET}\n")
    return 0


async def cmd_logout(ctx: AppContext, args) -> int:
    was_guest = ctx.session.state is SessionState.GUEST
    if was_guest and not args.yes:
        answer = input(f"  {YELLOW}Your guest account data will be permanently "
                       f"deleted. Continue? [y/N]: {RESET}").strip().lower()
        if answer not in ("y", "yes"):
            print(f"  {DIM}Cancelled.{RESET}")
            return 1
    ctx.session.logout()
    suffix = " (guest data deleted)" if was_guest else ""
    print(f"\n  {CYAN}Signed out{suffix}.{RESET}\n")
    return 0


async def cmd_status(ctx: AppContext, args) -> int:
    state = ctx.session.state
    if state is SessionState.UNAUTHENTICATED:
        print(f"\n  {DIM}Not signed in. Use 'login' or 'guest'.{RESET}\n")
        return 0
    account = ctx.session.require_account()
    kind = "Guest" if account.is_guest else account.role.capitalize()
    print(f"\n  {BOLD}{account.display_name}{RESET}  {DIM}({kind}, {account.user_id}){RESET}")
    if account.email:
        print(f"  Email:   {account.email}")
    print(f"  Balance: {CYAN}{format_money(account.cash_balance)}{RESET}")
    if ctx.session.expires_at is not None and state is SessionState.AUTHENTICATED:
        print(f"  {DIM}Session valid until {ctx.session.expires_at:%Y-%m-%d %H:%M} UTC{RESET}")
    print()
    return 0


async def cmd_profile(ctx: AppContext, args) -> int:
    changes = {k: v for k, v in {
        "first_name": args.first_name,
        "last_name": args.last_name,
        "email": args.email,
        "phone_number": args.phone,
    }.items() if v is not None}
    if not changes:
        return await cmd_status(ctx, args)
    account = await ctx.session.update_profile(**changes)
    print(f"\n  {GREEN}Profile updated for {account.display_name}.{RESET}\n")
    return 0


# ===========================================================================
# Ledger commands
# ===========================================================================

async def cmd_deposit(ctx: AppContext, args) -> int:
    account = ctx.session.require_account()
    balance = ctx.engine.deposit(account.user_id, args.amount)
    print(f"\n  {GREEN}Deposited {format_money(to_money(args.amount))}. "
          f"New balance: {format_money(balance)}{RESET}\n")
    return 0


async def _resolve_price(ctx: AppContext, ticker: str, price) -> str | None:
    if price is not None:
        return price
    quote = await ctx.quotes.previous_close(ticker)
    if quote is None:
        print(f"\n  {RED}No price available for {ticker.upper()}; pass --price.{RESET}\n")
        return None
    print(f"  {DIM}{ticker.upper()} previous close: ${quote.close:,.2f}{RESET}")
    return str(quote.close)


async def cmd_buy(ctx: AppContext, args) -> int:
    account = ctx.session.require_account()
    price = await _resolve_price(ctx, args.ticker, args.price)
    if price is None:
        return 1
    balance = ctx.engine.buy(account.user_id, args.ticker, args.quantity, price)
    print(f"\n  {GREEN}Bought {args.quantity} {args.ticker.upper()} @ "
          f"{format_money(to_money(price))}. New balance: {format_money(balance)}{RESET}\n")
    return 0


async def cmd_sell(ctx: AppContext, args) -> int:
    account = ctx.session.require_account()
    price = await _resolve_price(ctx, args.ticker, args.price)
    if price is None:
        return 1
    balance = ctx.engine.sell(account.user_id, args.ticker, args.quantity, price)
    print(f"\n  {GREEN}Sold {args.quantity} {args.ticker.upper()} @ "
          f"{format_money(to_money(price))}. New balance: {format_money(balance)}{RESET}\n")
    return 0


async def cmd_portfolio(ctx: AppContext, args) -> int:
    account = ctx.session.require_account()
    holdings = ctx.engine.holdings(account.user_id)
    quotes = await fetch_quotes(ctx.quotes, [h.ticker for h in holdings])
    valuation = ctx.engine.value_portfolio(account.user_id, quote_prices(quotes))

    print(f"\n  {BOLD}{'Ticker':<8} {'Shares':>8} {'Price':>10} {'Value':>14} {'Alloc':>8}{RESET}")
    print(f"  {'─' * 52}")
    for p in valuation.positions:
        if p.quote_available:
            alloc = valuation.allocation(p.ticker) or 0.0
            print(f"  {GREEN}{p.ticker:<8} {p.quantity:>8d} {format_money(p.price):>10} "
                  f"{format_money(p.market_value):>14} {alloc:>8.1%}{RESET}")
        else:
            print(f"  {YELLOW}{p.ticker:<8} {p.quantity:>8d} {'n/a':>10} "
                  f"{'unavailable':>14} {'':>8}{RESET}")
    if not valuation.positions:
        print(f"  {DIM}No holdings.{RESET}")
    print(f"  {'─' * 52}")
    print(f"  {'Cash':<8} {'':>8} {'':>10} {CYAN}{format_money(valuation.cash):>14}{RESET}")
    print(f"  {BOLD}{'Total':<8} {'':>8} {'':>10} {format_money(valuation.total_value):>14}{RESET}")
    if not valuation.complete:
        print(f"  {YELLOW}Total excludes unpriced: {', '.join(valuation.unavailable)}{RESET}")
    print()
    return 0


async def cmd_history(ctx: AppContext, args) -> int:
    account = ctx.session.require_account()
    entries = ctx.engine.transactions(account.user_id, limit=args.limit)
    if not entries:
        print(f"\n  {DIM}No transactions yet.{RESET}\n")
        return 0

    colors = {TransactionKind.DEPOSIT: CYAN, TransactionKind.BUY: GREEN,
              TransactionKind.SELL: RED}
    print(f"\n  {BOLD}{'Date':<18} {'Description':<44} {'Amount':>12}{RESET}")
    print(f"  {'─' * 76}")
    for e in entries:
        print(f"  {colors[e.kind]}{e.timestamp:%Y-%m-%d %H:%M}  {e.description:<44} "
              f"{format_money(e.amount):>12}{RESET}")
    print()
    return 0


async def cmd_reconcile(ctx: AppContext, args) -> int:
    account = ctx.session.require_account()
    report = ctx.engine.reconcile(account.user_id)
    status = f"{GREEN}consistent" if report.consistent else f"{RED}INCONSISTENT"
    print(f"\n  Ledger is {BOLD}{status}{RESET}")
    print(f"  Initial balance:  {format_money(report.initial_balance)}")
    print(f"  Stored balance:   {format_money(report.stored_balance)}")
    print(f"  Replayed balance: {format_money(report.replayed_balance)}")
    if not report.holdings_consistent:
        print(f"  {RED}Holdings stored {report.stored_holdings} "
              f"vs replayed {report.replayed_holdings}{RESET}")
    print()
    return 0 if report.consistent else 2


# ===========================================================================
# Market data commands
# ===========================================================================

async def cmd_search(ctx: AppContext, args) -> int:
    hits = await ctx.quotes.search_tickers(args.query, limit=args.limit)
    if not hits:
        print(f"\n  {DIM}No matches for '{args.query}'.{RESET}\n")
        return 0
    print()
    for h in hits:
        print(f"  {BOLD}{h.ticker:<8}{RESET} {h.name}  {DIM}{h.primary_exchange or ''}{RESET}")
    print()
    return 0


async def cmd_chart(ctx: AppContext, args) -> int:
    chart_range = ChartRange.from_label(args.range)
    chart = await load_chart(ctx.quotes, None if args.no_cache else ctx.charts,
                             args.ticker, chart_range)
    if chart.empty:
        print(f"\n  {YELLOW}No price history for {chart.ticker} ({chart_range.label}).{RESET}\n")
        return 0

    closes = chart.closes
    change, pct = chart.price_change, chart.percent_change
    color = _money_color(change)
    pct_str = f" ({pct:+.2f}%)" if pct is not None else ""
    source = " (cached)" if chart.from_cache else ""
    print(f"\n  {BOLD}{chart.ticker}{RESET} {chart_range.label}{DIM}{source}{RESET}")
    print(f"  Last: ${closes.iloc[-1]:,.2f}  {color}{change:+,.2f}{pct_str}{RESET}")
    print(f"  Low:  ${closes.min():,.2f}   High: ${closes.max():,.2f}   "
          f"Points: {len(closes)}")
    labels = chart.labels()
    print(f"  {DIM}{labels[0]} -> {labels[-1]}{RESET}\n")
    return 0


async def cmd_watchlist(ctx: AppContext, args) -> int:
    if args.action == "add":
        added = ctx.store.add_to_watchlist(args.ticker)
        print(f"  {GREEN if added else DIM}{args.ticker.upper()} "
              f"{'added' if added else 'already on the watchlist'}.{RESET}")
    elif args.action == "remove":
        removed = ctx.store.remove_from_watchlist(args.ticker)
        print(f"  {GREEN if removed else DIM}{args.ticker.upper()} "
              f"{'removed' if removed else 'was not on the watchlist'}.{RESET}")

    tickers = ctx.store.list_watchlist()
    quotes = await fetch_quotes(ctx.quotes, tickers) if args.prices else {}
    print(f"\n  {BOLD}Watchlist{RESET}")
    for t in tickers:
        q = quotes.get(t)
        price = f"${q.close:,.2f}" if q else ""
        print(f"  {t:<8} {price:>12}")
    print()
    return 0


# ===========================================================================
# Entry point
# ===========================================================================

COMMANDS = {
    "guest": cmd_guest,
    "login": cmd_login,
    "signup": cmd_signup,
    "verify": cmd_verify,
    "reset-password": cmd_reset_password,
    "logout": cmd_logout,
    "status": cmd_status,
    "profile": cmd_profile,
    "deposit": cmd_deposit,
    "buy": cmd_buy,
    "sell": cmd_sell,
    "portfolio": cmd_portfolio,
    "history": cmd_history,
    "reconcile": cmd_reconcile,
    "search": cmd_search,
    "chart": cmd_chart,
    "watchlist": cmd_watchlist,
}


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Paper Trader -- simulated stock trading against a local ledger")
    parser.add_argument("--profile", default=None,
                        help="Config profile from ~/.paper_trader/config.yaml")
    parser.add_argument("--db-path", default=None, help="Override the ledger database path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("guest", help="Continue as guest")

    p = sub.add_parser("login", help="Sign in")
    p.add_argument("username")
    p.add_argument("--password", default=None)

    p = sub.add_parser("signup", help="Create an account")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--password", default=None)
    p.add_argument("--phone", default=None)
    p.add_argument("--role", choices=["landlord", "tenant"], default="tenant")

    p = sub.add_parser("verify", help="Verify e-mail with the emailed code")
    p.add_argument("username")
    p.add_argument("code", nargs="?", default="")
    p.add_argument("--resend", action="store_true", help="Send a new code instead")

    p = sub.add_parser("reset-password", help="Request or confirm a password reset")
    p.add_argument("email")
    p.add_argument("--code", default=None, help="Reset code (confirms the reset)")
    p.add_argument("--password", default=None)

    p = sub.add_parser("logout", help="Sign out (guests lose their data)")
    p.add_argument("--yes", "-y", action="store_true", help="Skip the guest confirmation")

    sub.add_parser("status", help="Show the active account")

    p = sub.add_parser("profile", help="Show or edit profile fields")
    p.add_argument("--first-name", dest="first_name", default=None)
    p.add_argument("--last-name", dest="last_name", default=None)
    p.add_argument("--email", default=None)
    p.add_argument("--phone", default=None)

    p = sub.add_parser("deposit", help="Add virtual cash")
    p.add_argument("amount")

    for name in ("buy", "sell"):
        p = sub.add_parser(name, help=f"{name.capitalize()} shares")
        p.add_argument("ticker")
        p.add_argument("quantity", type=int)
        p.add_argument("--price", default=None,
                       help="Price per share (default: previous close)")

    sub.add_parser("portfolio", help="Holdings valued at the previous close")

    p = sub.add_parser("history", help="Transaction history, newest first")
    p.add_argument("--limit", type=int, default=None)

    sub.add_parser("reconcile", help="Replay the transaction log and check balances")

    p = sub.add_parser("search", help="Search tickers")
    p.add_argument("query")
    p.add_argument("--limit", type=int, default=10)

    p = sub.add_parser("chart", help="Price history summary")
    p.add_argument("ticker")
    p.add_argument("--range", default="Today", choices=[r.label for r in ChartRange],
                   help="Chart range (default: Today)")
    p.add_argument("--no-cache", action="store_true")

    p = sub.add_parser("watchlist", help="Show or edit favourites")
    p.add_argument("action", nargs="?", choices=["show", "add", "remove"], default="show")
    p.add_argument("ticker", nargs="?", default=None)
    p.add_argument("--prices", action="store_true", help="Include previous closes")

    args = parser.parse_args(argv)
    if args.command == "watchlist" and args.action != "show" and not args.ticker:
        parser.error(f"watchlist {args.action} requires a ticker")
    return args


async def dispatch(ctx: AppContext, args) -> int:
    """Resume the session, then run one command; errors are printed."""
    try:
        await ctx.session.start()
        return await COMMANDS[args.command](ctx, args)
    except AuthExpired:
        print(f"\n  {DIM}Session expired. Please sign in again.{RESET}\n")
        return 1
    except PaperTraderError as e:
        print(f"\n  {RED}{e}{RESET}\n")
        return 1


async def run(args) -> int:
    settings = load_settings(profile=args.profile, db_path=args.db_path)
    ctx = build_context(settings)
    try:
        return await dispatch(ctx, args)
    finally:
        await ctx.aclose()


def main(argv=None):
    """Entry point."""
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print(f"\n  {DIM}Interrupted.{RESET}")
        return 130


if __name__ == "__main__":
    sys.exit(main())
