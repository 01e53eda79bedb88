"""
Tests for the session manager (manager.py).

Covers:
- Guest create / restore / logout cascade
- Sign-in load-or-open, token persistence and 7-day expiry
- Startup revalidation (valid, expired, rejected tokens)
- Invalid transitions, cancellation, listeners, profile updates
"""

import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from jose import jwt

from paper_trader.broker.identity import IdentityClient
from paper_trader.errors import (
    AuthExpired,
    InvalidCredentials,
    InvalidSessionTransition,
    TokenNotFound,
)
from paper_trader.session.manager import (
    LAST_GUEST_KEY,
    TOKEN_KEY,
    SessionManager,
    SessionState,
)

BASE_URL = "https://identity.test/dev"
USER_ID = "user-123"


def make_token(sub=USER_ID):
    return jwt.encode({"sub": sub}, "secret", algorithm="HS256")


class FakeIdentityService:
    """MockTransport handler emulating the identity endpoints."""

    def __init__(self):
        self.requests = []
        self.profile_status = 200
        self.login_error = None
        self.first_name = "Alice"
        self.favorites = ["listing-1", "listing-7"]
        self.put_bodies = []

    def __call__(self, request):
        self.requests.append((request.method, request.url.path))
        path = request.url.path
        if path.endswith("/users/login"):
            if self.login_error:
                return httpx.Response(400, json={"code": self.login_error})
            return httpx.Response(200, text=json.dumps(json.dumps(
                {"message": "ok", "idToken": make_token()})))
        if request.method == "GET" and path.endswith(f"/users/{USER_ID}"):
            if self.profile_status != 200:
                return httpx.Response(self.profile_status, json={"message": "denied"})
            return httpx.Response(200, json={
                "userId": USER_ID, "username": "alice", "email": "a@x.io",
                "role": "tenant", "firstName": self.first_name, "lastName": "L",
                "favoriteListings": self.favorites})
        if request.method == "PUT":
            self.put_bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"message": "Profile updated"})
        return httpx.Response(404, json={"message": "not found"})


@pytest.fixture
def service():
    return FakeIdentityService()


@pytest.fixture
def make_session(engine, clock, service):
    def _make(identity=True):
        client = None
        if identity:
            http = httpx.AsyncClient(transport=httpx.MockTransport(service), base_url=BASE_URL)
            client = IdentityClient(BASE_URL, client=http)
        return SessionManager(engine, client, clock=clock)
    return _make


def run(coro):
    return asyncio.run(coro)


# =====================================================================
# Guest sessions
# =====================================================================

class TestGuest:

    def test_new_guest(self, make_session, store):
        session = make_session()
        account = session.continue_as_guest()
        assert session.state is SessionState.GUEST
        assert account.is_guest
        assert account.user_id.startswith("guest-")
        assert account.username.startswith("Guest-")
        assert account.cash_balance == Decimal("1000.00")
        assert store.get_setting(LAST_GUEST_KEY) == account.user_id

    def test_guest_restored_on_start(self, make_session, engine):
        first = make_session()
        account = first.continue_as_guest()
        engine.deposit(account.user_id, 25)

        second = make_session()
        assert run(second.start()) is SessionState.GUEST
        restored = second.require_account()
        assert restored.user_id == account.user_id
        assert restored.cash_balance == Decimal("1025.00")

    def test_continue_as_guest_restores_last(self, make_session):
        first = make_session()
        account = first.continue_as_guest()
        second = make_session()
        assert second.continue_as_guest().user_id == account.user_id

    def test_guest_logout_cascades(self, make_session, engine, store):
        session = make_session()
        uid = session.continue_as_guest().user_id
        engine.buy(uid, "AAPL", 2, 100)
        engine.deposit(uid, 10)

        session.logout()
        assert session.state is SessionState.UNAUTHENTICATED
        assert store.get_account(uid) is None
        assert store.list_holdings(uid) == []
        assert store.list_transactions(uid) == []
        assert store.get_setting(LAST_GUEST_KEY) is None

        again = session.continue_as_guest()
        assert again.user_id != uid
        assert again.cash_balance == Decimal("1000.00")

    def test_dangling_pointer_cleared(self, make_session, store):
        store.set_setting(LAST_GUEST_KEY, "guest-gone")
        session = make_session()
        assert run(session.start()) is SessionState.UNAUTHENTICATED
        assert store.get_setting(LAST_GUEST_KEY) is None

    def test_guest_without_identity_service(self, make_session):
        session = make_session(identity=False)
        session.continue_as_guest()
        assert session.state is SessionState.GUEST


# =====================================================================
# Authenticated sessions
# =====================================================================

class TestSignIn:

    def test_first_sign_in_opens_account(self, make_session, store, clock):
        session = make_session()
        account = run(session.sign_in("alice", "pw"))
        assert session.state is SessionState.AUTHENTICATED
        assert account.user_id == USER_ID
        assert account.cash_balance == Decimal("1000.00")
        assert account.first_name == "Alice"
        assert store.get_setting(TOKEN_KEY) == make_token()
        assert session.expires_at == clock.now + timedelta(days=7)

    def test_existing_account_keeps_balance(self, make_session, engine, service):
        session = make_session()
        run(session.sign_in("alice", "pw"))
        engine.deposit(USER_ID, 500)
        session.logout()

        service.first_name = "Alicia"
        account = run(make_session().sign_in("alice", "pw"))
        assert account.cash_balance == Decimal("1500.00")
        assert engine.account(USER_ID).first_name == "Alicia"

    def test_logout_keeps_ledger(self, make_session, engine, store):
        session = make_session()
        run(session.sign_in("alice", "pw"))
        engine.buy(USER_ID, "AAPL", 1, 100)
        session.logout()
        assert session.state is SessionState.UNAUTHENTICATED
        assert store.get_setting(TOKEN_KEY) is None
        assert store.get_account(USER_ID).cash_balance == Decimal("900.00")
        assert len(store.list_holdings(USER_ID)) == 1

    def test_bad_credentials_leave_state(self, make_session, service, store):
        service.login_error = "NotAuthorizedException"
        session = make_session()
        with pytest.raises(InvalidCredentials):
            run(session.sign_in("alice", "wrong"))
        assert session.state is SessionState.UNAUTHENTICATED
        assert store.get_setting(TOKEN_KEY) is None
        assert store.get_account(USER_ID) is None

    def test_sign_in_requires_identity(self, make_session):
        with pytest.raises(InvalidSessionTransition):
            run(make_session(identity=False).sign_in("alice", "pw"))


# =====================================================================
# Expiry and startup
# =====================================================================

class TestExpiry:

    def test_check_expiry_forces_logout(self, make_session, clock, store):
        session = make_session()
        run(session.sign_in("alice", "pw"))
        clock.advance(days=6, hours=23)
        session.check_expiry()
        assert session.state is SessionState.AUTHENTICATED

        clock.advance(hours=1)
        with pytest.raises(AuthExpired):
            session.check_expiry()
        assert session.state is SessionState.UNAUTHENTICATED
        assert store.get_setting(TOKEN_KEY) is None
        assert store.get_account(USER_ID) is not None

    def test_require_account_after_expiry(self, make_session, clock):
        session = make_session()
        run(session.sign_in("alice", "pw"))
        clock.advance(days=8)
        with pytest.raises(AuthExpired):
            session.require_account()
        with pytest.raises(TokenNotFound):
            session.require_account()

    def test_start_revalidates(self, make_session, service):
        run(make_session().sign_in("alice", "pw"))
        service.requests.clear()

        session = make_session()
        assert run(session.start()) is SessionState.AUTHENTICATED
        assert service.requests == [("GET", f"/dev/users/{USER_ID}")]
        assert session.require_account().user_id == USER_ID

    def test_start_with_expired_token(self, make_session, service, clock, store):
        run(make_session().sign_in("alice", "pw"))
        service.requests.clear()
        clock.advance(days=7)

        session = make_session()
        assert run(session.start()) is SessionState.UNAUTHENTICATED
        assert service.requests == []
        assert store.get_setting(TOKEN_KEY) is None

    def test_start_with_rejected_token(self, make_session, service, store):
        run(make_session().sign_in("alice", "pw"))
        service.profile_status = 401
        service.requests.clear()

        session = make_session()
        assert run(session.start()) is SessionState.UNAUTHENTICATED
        assert len(service.requests) == 1
        assert store.get_setting(TOKEN_KEY) is None


# =====================================================================
# Transitions, cancellation, listeners, profile
# =====================================================================

class TestTransitions:

    def test_invalid_transitions(self, make_session):
        session = make_session()
        with pytest.raises(InvalidSessionTransition):
            session.logout()
        session.continue_as_guest()
        with pytest.raises(InvalidSessionTransition):
            run(session.sign_in("alice", "pw"))
        with pytest.raises(InvalidSessionTransition):
            session.continue_as_guest()

    def test_require_account_unauthenticated(self, make_session):
        with pytest.raises(TokenNotFound):
            make_session().require_account()

    def test_cancelled_sign_in_changes_nothing(self, engine, clock, store):
        started = asyncio.Event()

        async def slow_handler(request):
            started.set()
            await asyncio.sleep(30)
            return httpx.Response(200, json={})

        async def go():
            http = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler),
                                     base_url=BASE_URL)
            session = SessionManager(engine, IdentityClient(BASE_URL, client=http),
                                     clock=clock)
            task = asyncio.create_task(session.sign_in("alice", "pw"))
            await started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            return session

        session = run(go())
        assert session.state is SessionState.UNAUTHENTICATED
        assert store.get_setting(TOKEN_KEY) is None
        assert store.get_account(USER_ID) is None

    def test_listeners(self, make_session):
        session = make_session()
        events = []
        unsubscribe = session.subscribe(events.append)
        session.subscribe(lambda e: 1 / 0)

        session.continue_as_guest()
        session.logout()
        unsubscribe()
        session.continue_as_guest()

        assert [(e.previous, e.current) for e in events] == [
            (SessionState.UNAUTHENTICATED, SessionState.GUEST),
            (SessionState.GUEST, SessionState.UNAUTHENTICATED),
        ]
        assert events[0].reason == "guest created"

    def test_guest_profile_update_is_local(self, make_session, service, store):
        session = make_session()
        uid = session.continue_as_guest().user_id
        account = run(session.update_profile(first_name="Zed"))
        assert account.first_name == "Zed"
        assert store.get_account(uid).first_name == "Zed"
        assert service.requests == []

    def test_authenticated_profile_update_pushes(self, make_session, service, store):
        session = make_session()
        run(session.sign_in("alice", "pw"))
        run(session.update_profile(phone_number="+1555"))
        assert ("PUT", f"/dev/users/{USER_ID}") in service.requests
        assert store.get_account(USER_ID).phone_number == "+1555"

    def test_profile_update_keeps_remote_favorites(self, make_session, service):
        session = make_session()
        run(session.sign_in("alice", "pw"))
        run(session.update_profile(first_name="Alicia"))
        body = service.put_bodies[-1]
        assert body["firstName"] == "Alicia"
        assert body["favoriteListings"] == ["listing-1", "listing-7"]

    def test_unknown_profile_field(self, make_session):
        session = make_session()
        session.continue_as_guest()
        with pytest.raises(ValueError):
            run(session.update_profile(cash_balance=5))
