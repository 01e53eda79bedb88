"""
Error taxonomy for the paper trading client.

Three families, each reported to the caller and never retried by the
library itself:

  - LedgerError:   business-rule violations raised by the ledger engine
  - BoundaryError: failures talking to the identity or market-data services
  - AuthError:     session-level conditions (expired/missing token, bad login)

plus PersistenceError for local datastore failures.  Every message is
meant to be shown to a user as-is.
"""


class PaperTraderError(Exception):
    """Base class for all paper trader errors."""

    message = "Unexpected error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.message)


# =====================================================================
# Ledger rule violations
# =====================================================================

class LedgerError(PaperTraderError):
    message = "Ledger operation rejected"


class InvalidAmount(LedgerError):
    message = "Please enter a valid amount greater than zero."


class InsufficientFunds(LedgerError):
    message = "Insufficient funds for this purchase."


class NoSuchHolding(LedgerError):
    message = "You do not own any shares of this stock."


class InsufficientShares(LedgerError):
    message = "You do not own enough shares to sell."


class AccountNotFound(LedgerError):
    message = "Account not found."


# =====================================================================
# External collaborator failures
# =====================================================================

class BoundaryError(PaperTraderError):
    message = "Remote service error"


class NetworkError(BoundaryError):
    message = "Network error: the service could not be reached."


class InvalidResponse(BoundaryError):
    message = "Invalid response from server"


# =====================================================================
# Session / identity
# =====================================================================

class AuthError(PaperTraderError):
    message = "Authentication error"


class AuthExpired(AuthError):
    message = "Your session has expired. Please sign in again."


class TokenNotFound(AuthError):
    message = "Authentication token not found"


class UsernameExists(AuthError):
    message = "Username already exists"


class UserNotFound(AuthError):
    message = "User not found"


class InvalidCredentials(AuthError):
    message = "Invalid credentials"


class UserNotConfirmed(AuthError):
    message = "User's email not confirmed"


class SignInFailed(AuthError):
    message = "Sign-in failed"


class InvalidSessionTransition(AuthError):
    message = "That action is not available in the current session state."


# =====================================================================
# Local storage
# =====================================================================

class PersistenceError(PaperTraderError):
    message = "Failed to save changes. Please try again."
