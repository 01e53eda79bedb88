"""
Session lifecycle: unauthenticated, guest, and authenticated.

The manager owns which account is active and sets up or tears down the
ledger as the session changes:

    UNAUTHENTICATED --sign_in--------> AUTHENTICATED  (load or open account)
    UNAUTHENTICATED --continue_as_guest--> GUEST      (restore or open guest)
    GUEST           --logout---------> UNAUTHENTICATED (guest ledger deleted)
    AUTHENTICATED   --logout/expiry--> UNAUTHENTICATED (ledger kept)

The identity token and its expiry, and the last guest's user id, live in
the store's settings table so they survive restarts.

Usage:
    session = SessionManager(engine, identity)
    await session.start()
    if session.state is SessionState.UNAUTHENTICATED:
        session.continue_as_guest()
    account = session.require_account()
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from paper_trader.broker.identity import IdentityClient, Profile, SignUpRequest, SignUpResponse
from paper_trader.errors import (
    AuthExpired,
    InvalidSessionTransition,
    PaperTraderError,
    TokenNotFound,
)
from paper_trader.ledger.engine import LedgerEngine
from paper_trader.ledger.models import Account

LOGGER = logging.getLogger(__name__)

TOKEN_LIFETIME = timedelta(days=7)

TOKEN_KEY = "session_token"
EXPIRY_KEY = "session_expires_at"
USER_KEY = "session_user_id"
LAST_GUEST_KEY = "last_guest_user_id"

PROFILE_FIELDS = ("username", "email", "first_name", "last_name",
                  "phone_number", "status", "profile_picture_url")


class SessionState(Enum):
    UNAUTHENTICATED = "unauthenticated"
    GUEST = "guest"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionTransition:
    """Emitted whenever the session state changes."""
    previous: SessionState
    current: SessionState
    user_id: str | None
    reason: str


SessionListener = Callable[[SessionTransition], None]


class SessionManager:
    """Tracks the active account and drives ledger setup/teardown.

    Parameters
    ----------
    engine : LedgerEngine
        Ledger for the local device; its store also holds session settings.
    identity : IdentityClient | None
        Remote identity service.  Guests work without one.
    clock : callable, optional
        Returns the current UTC time (injectable for expiry tests).
    token_lifetime : timedelta
        How long a sign-in stays valid (default 7 days).
    """

    def __init__(self, engine: LedgerEngine, identity: IdentityClient | None = None,
                 clock: Callable[[], datetime] | None = None,
                 token_lifetime: timedelta = TOKEN_LIFETIME):
        self.engine = engine
        self.store = engine.store
        self.identity = identity
        self.token_lifetime = token_lifetime
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = SessionState.UNAUTHENTICATED
        self._user_id: str | None = None
        self._listeners: list[SessionListener] = []

    # -----------------------------------------------------------------
    # State
    # -----------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def token(self) -> str | None:
        return self.store.get_setting(TOKEN_KEY)

    @property
    def expires_at(self) -> datetime | None:
        raw = self.store.get_setting(EXPIRY_KEY)
        return datetime.fromisoformat(raw) if raw else None

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _transition(self, state: SessionState, user_id: str | None, reason: str) -> None:
        event = SessionTransition(self._state, state, user_id, reason)
        self._state = state
        self._user_id = user_id
        LOGGER.info("Session %s -> %s (%s)", event.previous.value, state.value, reason)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Session listener %r failed", listener)

    def _require_state(self, *allowed: SessionState, action: str) -> None:
        if self._state not in allowed:
            raise InvalidSessionTransition(
                f"Cannot {action} while {self._state.value}.")

    def require_identity(self) -> IdentityClient:
        if self.identity is None:
            raise InvalidSessionTransition(
                "No identity service configured; only guest sessions are available.")
        return self.identity

    # -----------------------------------------------------------------
    # Startup
    # -----------------------------------------------------------------

    async def start(self) -> SessionState:
        """Resume whatever session the device last had.

        A stored, unexpired token is revalidated against the identity
        service; any failure there signs the user out and is not retried.
        With no token, the last guest (if any) is restored.
        """
        self._require_state(SessionState.UNAUTHENTICATED, action="start a session")
        token = self.token
        if token is not None:
            expires = self.expires_at
            if expires is None or self._clock() >= expires:
                LOGGER.info("Stored session token has expired")
                self._clear_token()
                return self._state
            if self.identity is None:
                LOGGER.warning("Stored session token ignored: no identity service configured")
                return self._state
            try:
                profile = await self.identity.get_profile(token)
            except PaperTraderError as e:
                LOGGER.warning("Session revalidation failed: %s", e)
                self._clear_token()
                return self._state
            account = self._load_or_open(profile)
            self._transition(SessionState.AUTHENTICATED, account.user_id, "token revalidated")
            return self._state

        account = self._restore_guest()
        if account is not None:
            self._transition(SessionState.GUEST, account.user_id, "guest restored")
        return self._state

    # -----------------------------------------------------------------
    # Authenticated sessions
    # -----------------------------------------------------------------

    async def sign_up(self, request: SignUpRequest) -> SignUpResponse:
        """Register a new user. The session stays unauthenticated."""
        self._require_state(SessionState.UNAUTHENTICATED, action="sign up")
        return await self.require_identity().signup(request)

    async def sign_in(self, username: str, password: str) -> Account:
        """Sign in and activate the user's account, opening it on first use.

        Nothing is persisted until both the login and the profile fetch
        have succeeded, so cancellation or failure leaves state as it was.
        """
        self._require_state(SessionState.UNAUTHENTICATED, action="sign in")
        identity = self.require_identity()
        login = await identity.login(username, password)
        profile = await identity.get_profile(login.id_token)

        with self.store.atomic():
            self.store.set_setting(TOKEN_KEY, login.id_token)
            self.store.set_setting(EXPIRY_KEY,
                                   (self._clock() + self.token_lifetime).isoformat())
            self.store.set_setting(USER_KEY, profile.user_id)
        account = self._load_or_open(profile)
        self._transition(SessionState.AUTHENTICATED, account.user_id, "signed in")
        return account

    def _load_or_open(self, profile: Profile) -> Account:
        account = self.store.get_account(profile.user_id)
        if account is None:
            account = profile.apply_to(Account(user_id=profile.user_id,
                                               username=profile.username))
            return self.engine.open_account(account)
        profile.apply_to(account)
        self.store.update_profile(account)
        return account

    def _clear_token(self) -> None:
        with self.store.atomic():
            for key in (TOKEN_KEY, EXPIRY_KEY, USER_KEY):
                self.store.delete_setting(key)

    # -----------------------------------------------------------------
    # Guest sessions
    # -----------------------------------------------------------------

    def continue_as_guest(self) -> Account:
        """Restore the last guest on this device, or open a new one."""
        self._require_state(SessionState.UNAUTHENTICATED, action="continue as guest")
        account = self._restore_guest()
        reason = "guest restored"
        if account is None:
            suffix = uuid.uuid4().hex[:8]
            account = self.engine.open_account(Account(
                user_id=f"guest-{uuid.uuid4().hex}",
                username=f"Guest-{suffix[:4].upper()}",
                role="guest",
                first_name="Guest",
                last_name=suffix[4:].upper(),
            ))
            self.store.set_setting(LAST_GUEST_KEY, account.user_id)
            reason = "guest created"
        self._transition(SessionState.GUEST, account.user_id, reason)
        return account

    def _restore_guest(self) -> Account | None:
        user_id = self.store.get_setting(LAST_GUEST_KEY)
        if user_id is None:
            return None
        account = self.store.get_account(user_id)
        if account is None or not account.is_guest:
            LOGGER.warning("Last guest %s no longer exists; clearing pointer", user_id)
            self.store.delete_setting(LAST_GUEST_KEY)
            return None
        return account

    # -----------------------------------------------------------------
    # Teardown
    # -----------------------------------------------------------------

    def logout(self) -> None:
        """End the session.

        Guest logout deletes the guest's account, holdings and history.
        Authenticated logout only forgets the token.
        """
        if self._state is SessionState.GUEST:
            self.engine.close_account(self._user_id)
            self.store.delete_setting(LAST_GUEST_KEY)
            self._transition(SessionState.UNAUTHENTICATED, None, "guest logged out")
        elif self._state is SessionState.AUTHENTICATED:
            self._clear_token()
            self._transition(SessionState.UNAUTHENTICATED, None, "logged out")
        else:
            raise InvalidSessionTransition("Cannot log out while unauthenticated.")

    def check_expiry(self) -> None:
        """Sign out an authenticated session whose token has expired.

        Raises AuthExpired after the forced logout.
        """
        if self._state is not SessionState.AUTHENTICATED:
            return
        expires = self.expires_at
        if expires is None or self._clock() >= expires:
            self._clear_token()
            self._transition(SessionState.UNAUTHENTICATED, None, "token expired")
            raise AuthExpired()

    def require_account(self) -> Account:
        """The active account, or TokenNotFound if no session is active."""
        self.check_expiry()
        if self._state is SessionState.UNAUTHENTICATED or self._user_id is None:
            raise TokenNotFound("No active session. Sign in or continue as a guest.")
        return self.engine.account(self._user_id)

    # -----------------------------------------------------------------
    # Profile
    # -----------------------------------------------------------------

    async def update_profile(self, **changes) -> Account:
        """Update profile fields of the active account.

        Authenticated users' changes are pushed to the identity service
        first; guests are updated locally only.
        """
        unknown = set(changes) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")
        account = self.require_account()
        for name, value in changes.items():
            setattr(account, name, value)

        if self._state is SessionState.AUTHENTICATED:
            identity = self.require_identity()
            # the PUT replaces the whole remote profile
            current = await identity.get_profile(self.token)
            await identity.update_profile(
                Profile.from_account(account, current.favorite_listings),
                token=self.token)
        self.store.update_profile(account)
        return account
