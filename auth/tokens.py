"""
auth/tokens.py -- TokenIssuer: mints, verifies and rotates credential pairs.

Security design decisions:
  JWT: python-jose with HS256. Access and refresh credentials are signed with
       separate secrets, and both carry iss/aud/iat/exp plus a `typ` claim, so
       neither kind is accepted where the other is expected.

  Expiry: jose's own exp check is disabled and exp is compared against the
       injected Clock instead. Same semantics, but tests and the ledger share
       one notion of "now".

  Refresh token-id (`tid`): secrets.token_hex(32), 256 bits of entropy. It is
       the ledger lookup key (stored only as SHA-256) and is unrelated to the
       access credential's `jti`.

  Rotation: every refresh revokes the presented credential and issues a new
       pair. The ledger, not the JWT's exp, decides liveness: a signature-valid
       credential whose ledger row is revoked or missing is a replay, and the
       whole user's session set is revoked [R1].

  Race: the "find active, then revoke" step is the ledger's conditional
       UPDATE. Two concurrent rotations of the same credential cannot both
       match it; the loser is handled exactly like a replay [R2].

Failures are returned as AuthFailure values, never raised. Store errors
(sqlalchemy exceptions) propagate to the caller unchanged.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import timedelta

from jose import JWTError, jwt

from auth.ledger import SessionLedger, hash_token_id
from auth.models import (
    AccessClaims,
    AuthFailure,
    FailureKind,
    RefreshClaims,
    RequestMetadata,
    TokenPair,
    User,
)
from auth.store import CredentialStore
from core.clock import Clock, utc_now
from core.config import Settings

logger = logging.getLogger("rotaguard.auth")

_ALGORITHM = "HS256"
_ACCESS_TYPE = "access"
_REFRESH_TYPE = "refresh"


def new_refresh_token_id() -> str:
    return secrets.token_hex(32)


class TokenIssuer:
    """Produces and validates signed credential pairs; drives rotation.

    Dependencies are passed explicitly: settings for secrets/lifetimes/issuer/
    audience, the ledger for session state, the credential store to re-read
    the user on rotation, and a clock.
    """

    def __init__(
        self,
        settings: Settings,
        ledger: SessionLedger,
        users: CredentialStore,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._users = users
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def generate_pair(self, user: User, metadata: RequestMetadata | None = None) -> TokenPair:
        """Mint an access/refresh pair for user and persist its ledger record."""
        return self._mint_pair(user, metadata or RequestMetadata())

    def _mint_pair(
        self, user: User, metadata: RequestMetadata, replacing_token_id: str | None = None
    ) -> TokenPair:
        now = self._clock()
        refresh_token_id = new_refresh_token_id()
        issued_at = int(now.timestamp())
        access_ttl = self._settings.access_token_ttl_seconds
        refresh_ttl = self._settings.refresh_token_ttl_seconds
        access_token_id = uuid.uuid4().hex

        access_token = jwt.encode(
            {
                "sub": str(user.id),
                "email": user.email,
                "jti": access_token_id,
                "typ": _ACCESS_TYPE,
                "iss": self._settings.jwt_issuer,
                "aud": self._settings.jwt_audience,
                "iat": issued_at,
                "exp": issued_at + access_ttl,
            },
            self._settings.access_token_secret,
            algorithm=_ALGORITHM,
        )
        refresh_token = jwt.encode(
            {
                "sub": str(user.id),
                "tid": refresh_token_id,
                "typ": _REFRESH_TYPE,
                "iss": self._settings.jwt_issuer,
                "aud": self._settings.jwt_audience,
                "iat": issued_at,
                "exp": issued_at + refresh_ttl,
            },
            self._settings.refresh_token_secret,
            algorithm=_ALGORITHM,
        )

        self._ledger.persist(
            user.id,
            refresh_token_id,
            now + timedelta(seconds=refresh_ttl),
            user_agent=metadata.user_agent,
            ip_address=metadata.ip_address,
            replacing_token_id=replacing_token_id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=access_ttl,
            access_token_id=access_token_id,
            refresh_token_id=refresh_token_id,
        )

    # ------------------------------------------------------------------
    # Rotation and revocation
    # ------------------------------------------------------------------

    def verify_and_rotate(
        self, old_refresh_token: str, metadata: RequestMetadata | None = None
    ) -> TokenPair | AuthFailure:
        """Exchange a live refresh credential for a successor pair.

        Steps:
          1. Verify signature, iss, aud, typ and exp.
          2. Look up the active ledger record by hash of the token-id.
          3. Missing or revoked record -> replay: revoke the family [R1].
          4. Mint and persist the successor, then revoke the old record
             (conditional, with successor link). Losing the conditional
             revoke -> replay [R2].

        The successor is persisted before the conditional revoke so that a
        losing racer's family revocation always runs after the winner's
        successor exists, and therefore revokes it too.
        """
        claims = self.decode_refresh(old_refresh_token)
        if isinstance(claims, AuthFailure):
            return claims

        record = self._ledger.find_active(hash_token_id(claims.token_id))
        if record is None:
            return self._reuse_detected(claims)

        user = self._users.get_by_id(claims.user_id)
        if user is None or not user.is_active:
            revoked = self._ledger.revoke_all(claims.user_id)
            logger.info(
                "Refresh rejected for missing or inactive user_id=%s; revoked %d session(s)",
                claims.user_id,
                revoked,
            )
            return AuthFailure(FailureKind.REVOKED_TOKEN, user_id=claims.user_id)

        successor = self._mint_pair(user, metadata or RequestMetadata(), replacing_token_id=claims.token_id)
        if not self._ledger.revoke(claims.token_id, replaced_by_token_id=successor.refresh_token_id):
            # Another request consumed this credential between find_active and now.
            return self._reuse_detected(claims)
        return successor

    def _reuse_detected(self, claims: RefreshClaims) -> AuthFailure:
        owner_id = self._ledger.revoke_family(claims.token_id)
        if owner_id is None:
            # Row already reclaimed; the signed subject is still ours.
            owner_id = claims.user_id
            self._ledger.revoke_all(owner_id)
        logger.warning(
            "SECURITY: refresh token reuse detected for user_id=%s -- all sessions revoked",
            owner_id,
        )
        return AuthFailure(FailureKind.REUSE_DETECTED, user_id=owner_id)

    def revoke(self, refresh_token: str) -> bool:
        """Revoke the single session behind refresh_token (logout).

        Expiry is not enforced: logging out an expired credential still
        retires its ledger row. Returns True if a row was revoked.
        """
        claims = self.decode_refresh(refresh_token, verify_exp=False)
        if isinstance(claims, AuthFailure):
            logger.debug("Logout with unusable refresh token (%s)", claims.kind.value)
            return False
        return self._ledger.revoke(claims.token_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def decode_refresh(self, token: str, verify_exp: bool = True) -> RefreshClaims | AuthFailure:
        payload = self._decode(token, self._settings.refresh_token_secret, _REFRESH_TYPE, verify_exp)
        if isinstance(payload, AuthFailure):
            return payload
        token_id = payload.get("tid")
        if not isinstance(token_id, str) or not token_id:
            return AuthFailure(FailureKind.MALFORMED_TOKEN)
        return RefreshClaims(user_id=payload["sub"], token_id=token_id, expires_at=payload["exp"])

    def verify_access(self, token: str) -> AccessClaims | AuthFailure:
        """Bearer verification primitive: signature, iss, aud, typ and exp."""
        payload = self._decode(token, self._settings.access_token_secret, _ACCESS_TYPE, verify_exp=True)
        if isinstance(payload, AuthFailure):
            return payload
        email = payload.get("email")
        token_id = payload.get("jti")
        if not isinstance(email, str) or not isinstance(token_id, str):
            return AuthFailure(FailureKind.MALFORMED_TOKEN)
        return AccessClaims(user_id=payload["sub"], email=email, token_id=token_id, expires_at=payload["exp"])

    def _decode(self, token: str, secret: str, expected_type: str, verify_exp: bool) -> dict | AuthFailure:
        """Verify a JWT and normalize `sub` to int.

        Returns the payload dict on success. Any signature, issuer, audience or
        shape failure is MALFORMED_TOKEN; an elapsed exp is EXPIRED_TOKEN.
        """
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[_ALGORITHM],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
                options={"verify_exp": False},
            )
        except JWTError:
            return AuthFailure(FailureKind.MALFORMED_TOKEN)

        if payload.get("typ") != expected_type:
            return AuthFailure(FailureKind.MALFORMED_TOKEN)
        expires_at = payload.get("exp")
        if not isinstance(expires_at, int) or isinstance(expires_at, bool):
            return AuthFailure(FailureKind.MALFORMED_TOKEN)
        try:
            payload["sub"] = int(payload.get("sub"))
        except (TypeError, ValueError):
            return AuthFailure(FailureKind.MALFORMED_TOKEN)

        if verify_exp and expires_at <= int(self._clock().timestamp()):
            return AuthFailure(FailureKind.EXPIRED_TOKEN, user_id=payload["sub"])
        return payload
