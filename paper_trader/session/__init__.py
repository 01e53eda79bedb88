"""Session lifecycle (guest and authenticated)."""

from paper_trader.session.manager import SessionManager, SessionState, SessionTransition
