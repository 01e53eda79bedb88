"""
Client for the remote identity/profile service.

Endpoints (all JSON):
  POST /users/signup, /users/login, /users/resend-code, /users/verify-email,
       /users/reset-password, /users/confirm-reset-password
  GET  /users/{id}
  PUT  /users/{id}

The service wraps some responses as a JSON-encoded string of JSON, and
reports failures through an error envelope rather than HTTP status alone.
Errors are read from the envelope's ``code`` / ``__type`` / ``name`` /
``error`` fields and mapped onto the AuthError taxonomy.

Usage:
    from paper_trader.broker.identity import IdentityClient

    async with IdentityClient("https://.../dev") as identity:
        login = await identity.login("alice", "secret")
        profile = await identity.get_profile(login.id_token)
"""

import json
import logging
from dataclasses import asdict, dataclass, field

import httpx
from jose import JWTError, jwt

from paper_trader.errors import (
    AuthExpired,
    InvalidCredentials,
    InvalidResponse,
    NetworkError,
    SignInFailed,
    TokenNotFound,
    UserNotConfirmed,
    UserNotFound,
    UsernameExists,
)
from paper_trader.ledger.models import Account

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0

# Service error codes -> exception types
_ERROR_CODES = {
    "UsernameExistsException": UsernameExists,
    "UserNotFoundException": UserNotFound,
    "NotAuthorizedException": InvalidCredentials,
    "UserNotConfirmedException": UserNotConfirmed,
}


# =====================================================================
# Payloads
# =====================================================================

@dataclass
class SignUpRequest:
    """New user registration."""
    username: str
    email: str
    password: str
    phone_number: str = ""
    role: str = "tenant"

    def to_json(self) -> dict:
        return {
            "id": self.username,
            "userId": self.username,
            "username": self.username,
            "email": self.email,
            "password": self.password,
            "role": self.role,
            "phoneNumber": self.phone_number,
        }


@dataclass
class SignUpResponse:
    message: str
    user_id: str


@dataclass
class LoginResponse:
    message: str
    id_token: str | None = None


@dataclass
class Profile:
    """User profile as returned by GET /users/{id}."""
    user_id: str
    username: str
    email: str
    role: str
    status: str = ""
    first_name: str = ""
    last_name: str = ""
    phone_number: str = ""
    profile_picture_url: str | None = None
    favorite_listings: list[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: dict) -> "Profile":
        try:
            return cls(
                user_id=str(data["userId"]),
                username=str(data["username"]),
                email=str(data.get("email", "")),
                role=str(data.get("role", "tenant")),
                status=str(data.get("status", "")),
                first_name=str(data.get("firstName", "")),
                last_name=str(data.get("lastName", "")),
                phone_number=str(data.get("phoneNumber", "")),
                profile_picture_url=data.get("profilePictureURL"),
                favorite_listings=list(data.get("favoriteListings") or []),
            )
        except (KeyError, TypeError) as e:
            raise UserNotFound(f"User not found: malformed profile ({e})") from e

    def to_json(self) -> dict:
        return {
            "id": self.user_id,
            "userId": self.user_id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "phoneNumber": self.phone_number,
            "profilePictureURL": self.profile_picture_url,
            "favoriteListings": self.favorite_listings,
        }

    def apply_to(self, account: Account) -> Account:
        """Copy profile fields onto a local account snapshot."""
        account.username = self.username
        account.email = self.email
        account.role = self.role
        account.status = self.status
        account.first_name = self.first_name
        account.last_name = self.last_name
        account.phone_number = self.phone_number
        account.profile_picture_url = self.profile_picture_url
        return account

    @classmethod
    def from_account(cls, account: Account,
                     favorite_listings: list[str] | None = None) -> "Profile":
        """Build a profile from a local account.

        Accounts do not carry favourites, so pass the remote profile's
        ``favorite_listings`` when the result is sent back in a PUT.
        """
        data = {k: v for k, v in asdict(account).items()
                if k in cls.__dataclass_fields__}
        return cls(**data, favorite_listings=list(favorite_listings or []))


# =====================================================================
# Envelope decoding
# =====================================================================

def decode_envelope(text: str):
    """Decode a response body that may be JSON wrapped in a JSON string.

    Lambda-proxy style ``{"statusCode": ..., "body": "<json>"}`` bodies
    are unwrapped as well.  A JSON string that does not itself hold JSON
    is returned as the plain message.
    """
    try:
        payload = json.loads(text)
    except ValueError as e:
        raise InvalidResponse("Invalid response from server") from e
    for _ in range(3):
        if isinstance(payload, str):
            inner = payload
        elif isinstance(payload, dict) and isinstance(payload.get("body"), str) \
                and "statusCode" in payload:
            inner = payload["body"]
        else:
            break
        try:
            payload = json.loads(inner)
        except ValueError:
            return inner
    return payload


def error_code(payload) -> str | None:
    """Extract a service error code such as ``UserNotFoundException``."""
    if not isinstance(payload, dict):
        return None
    for key in ("code", "__type", "name", "error"):
        value = payload.get(key)
        if isinstance(value, dict):
            nested = error_code(value)
            if nested:
                return nested
        elif isinstance(value, str) and value:
            # AWS style "com.amazonaws...#UserNotFoundException" or "Code: detail"
            return value.rsplit("#", 1)[-1].split(":", 1)[0].strip()
    return None


def raise_for_error(payload) -> None:
    code = error_code(payload)
    if code in _ERROR_CODES:
        message = payload.get("message") if isinstance(payload, dict) else None
        exc_type = _ERROR_CODES[code]
        raise exc_type(f"{exc_type.message}: {message}" if message else None)


def token_subject(token: str) -> str:
    """User id (``sub`` claim) of an identity token.

    The signature is not verified here; the service verifies it when
    the token is presented.
    """
    try:
        claims = jwt.get_unverified_claims(token)
    except JWTError as e:
        raise InvalidResponse("Malformed identity token") from e
    sub = claims.get("sub")
    if not sub:
        raise InvalidResponse("Identity token has no subject")
    return str(sub)


# =====================================================================
# Client
# =====================================================================

class IdentityClient:
    """Async client for the identity service.

    Parameters
    ----------
    base_url : str
        Service root, e.g. ``https://xyz.execute-api.us-east-2.amazonaws.com/dev``.
    timeout : float
        Per-request timeout in seconds (default 10).
    client : httpx.AsyncClient | None
        Pre-built client (tests pass one with a MockTransport).
    """

    def __init__(self, base_url: str, timeout: float = DEFAULT_TIMEOUT,
                 client: httpx.AsyncClient | None = None):
        if not base_url and client is None:
            raise ValueError(
                "Identity service URL required. Set PAPER_TRADER_IDENTITY_URL "
                "or configure identity_url in ~/.paper_trader/config.yaml."
            )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.aclose()

    async def _request(self, method: str, path: str, body=None,
                       token: str | None = None,
                       text_ok: bool = False) -> tuple[int, object]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            resp = await self._client.request(method, path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Identity service timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}") from e

        try:
            payload = decode_envelope(resp.text)
        except InvalidResponse:
            if not text_ok:
                raise
            # bare text reply, e.g. "Verification code sent"
            payload = resp.text.strip()
        raise_for_error(payload)
        return resp.status_code, payload

    @staticmethod
    def _message(payload) -> str:
        if isinstance(payload, dict):
            return str(payload.get("message", ""))
        return str(payload)

    # -----------------------------------------------------------------
    # Sign up / sign in
    # -----------------------------------------------------------------

    async def signup(self, request: SignUpRequest) -> SignUpResponse:
        status, payload = await self._request("POST", "/users/signup", request.to_json())
        if status >= 400 or not isinstance(payload, dict):
            raise InvalidResponse(self._message(payload) or None)
        try:
            return SignUpResponse(message=str(payload.get("message", "")),
                                  user_id=str(payload["userId"]))
        except KeyError as e:
            raise InvalidResponse("Sign-up response has no userId") from e

    async def login(self, username: str, password: str) -> LoginResponse:
        if not username or not password:
            raise SignInFailed("Please enter username and password")
        status, payload = await self._request(
            "POST", "/users/login", {"username": username, "password": password})
        if not isinstance(payload, dict):
            raise InvalidResponse()
        message = str(payload.get("message", ""))
        token = payload.get("idToken")
        if status != 200 or not token:
            if status not in (200, 400):
                message = message or f"Unexpected response: {status}"
            raise SignInFailed(message or None)
        LOGGER.info("Signed in as %s", username)
        return LoginResponse(message=message, id_token=str(token))

    # -----------------------------------------------------------------
    # Profile
    # -----------------------------------------------------------------

    async def get_profile(self, token: str | None) -> Profile:
        """Fetch the profile of the token's owner."""
        if not token:
            raise TokenNotFound()
        user_id = token_subject(token)
        status, payload = await self._request("GET", f"/users/{user_id}", token=token)
        if status in (401, 403):
            raise AuthExpired()
        if status != 200 or not isinstance(payload, dict):
            raise InvalidResponse()
        return Profile.from_json(payload)

    async def update_profile(self, profile: Profile, token: str | None = None) -> str:
        status, payload = await self._request(
            "PUT", f"/users/{profile.user_id}", profile.to_json(), token=token)
        if status in (401, 403):
            raise AuthExpired()
        if status >= 400:
            raise InvalidResponse(self._message(payload) or None)
        return self._message(payload)

    # -----------------------------------------------------------------
    # Verification / password reset
    # -----------------------------------------------------------------

    async def _post_message(self, path: str, body: dict) -> str:
        status, payload = await self._request("POST", path, body, text_ok=True)
        if status >= 400:
            raise InvalidResponse(self._message(payload) or None)
        return self._message(payload)

    async def resend_code(self, username: str) -> str:
        return await self._post_message("/users/resend-code", {"username": username})

    async def verify_email(self, username: str, verification_code: str) -> str:
        return await self._post_message(
            "/users/verify-email",
            {"username": username, "verification_code": verification_code})

    async def reset_password(self, email: str) -> str:
        return await self._post_message("/users/reset-password", {"email": email})

    async def confirm_reset_password(self, email: str, code: str, password: str) -> str:
        return await self._post_message(
            "/users/confirm-reset-password",
            {"email": email, "code": code, "password": password})
