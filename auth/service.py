"""
auth/service.py -- AuthService: the public login / refresh / logout operations.

Sequences CredentialStore -> TokenIssuer -> SessionLedger. Each call is an
independent unit of work; the service holds no mutable state of its own.

Refresh failures are collapsed here [E1]: malformed, expired, revoked and
replayed credentials all come back as INVALID_REFRESH_TOKEN, so a client
cannot use the error shape to tell "expired" from "stolen and already used".
The specific kind is logged before it is discarded.
"""

from __future__ import annotations

import logging

from auth.ledger import SessionLedger
from auth.models import AuthFailure, FailureKind, RequestMetadata, SessionRecord, TokenPair
from auth.passwords import authenticate_user
from auth.store import CredentialStore
from auth.tokens import TokenIssuer

logger = logging.getLogger("rotaguard.auth")


class AuthService:
    def __init__(self, users: CredentialStore, issuer: TokenIssuer, ledger: SessionLedger) -> None:
        self._users = users
        self._issuer = issuer
        self._ledger = ledger

    def login(
        self,
        email: str,
        password: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenPair | AuthFailure:
        """Verify credentials and issue a new session.

        Absent user, inactive user and wrong password are indistinguishable
        to the caller: all return INVALID_CREDENTIALS.
        """
        user = authenticate_user(self._users, email, password)
        if user is None:
            logger.info("Login failed for a submitted email")
            return AuthFailure(FailureKind.INVALID_CREDENTIALS)
        pair = self._issuer.generate_pair(user, RequestMetadata(user_agent=user_agent, ip_address=ip_address))
        logger.info("Login succeeded for user_id=%s", user.id)
        return pair

    def refresh(
        self,
        refresh_token: str,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> TokenPair | AuthFailure:
        """Rotate refresh_token. Any failure is reported as INVALID_REFRESH_TOKEN [E1]."""
        result = self._issuer.verify_and_rotate(
            refresh_token, RequestMetadata(user_agent=user_agent, ip_address=ip_address)
        )
        if isinstance(result, AuthFailure):
            logger.info("Refresh rejected: %s (user_id=%s)", result.kind.value, result.user_id)
            return AuthFailure(FailureKind.INVALID_REFRESH_TOKEN)
        return result

    def logout(self, refresh_token: str) -> None:
        """Revoke the session behind refresh_token. Unknown tokens are a no-op."""
        self._issuer.revoke(refresh_token)

    def logout_all(self, user_id: int) -> int:
        """Revoke every active session for user_id. Returns the number revoked."""
        revoked = self._ledger.revoke_all(user_id)
        logger.info("Logout-all for user_id=%s revoked %d session(s)", user_id, revoked)
        return revoked

    def list_sessions(self, user_id: int) -> list[SessionRecord]:
        return self._ledger.list_active(user_id)

    def revoke_session(self, user_id: int, session_id: int) -> bool:
        """Revoke one of user_id's own sessions. False if not found or not owned."""
        return self._ledger.revoke_session(session_id, user_id)
