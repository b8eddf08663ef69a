"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores, the token
issuer and the service do the work; these types only carry shape.

FailureKind / AuthFailure are the explicit failure values returned by the
token issuer and the auth service in place of raised exceptions. Every caller
has to branch on them; only the HTTP boundary collapses refresh failures into
a single opaque code.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


@dataclass
class User:
    """An identity owned by the credential store.

    The core reads users but never mutates them. hashed_password is a bcrypt
    hash; is_active=False users can neither log in nor refresh.
    """

    email: str
    hashed_password: str
    id: int | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class SessionRecord:
    """One issued refresh credential and its lifecycle state.

    Security design:
    - token_hash is SHA-256 of the random token-id embedded in the refresh
      JWT. The raw token-id is never persisted, so a leaked ledger cannot be
      turned back into usable credentials.
    - replaced_by_token is set only when the record was revoked by rotation.
      Logout, logout-all, cap eviction and family revocation leave it NULL.
    - State only moves ACTIVE -> REVOKED. Nothing re-activates a record.
    """

    user_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    is_revoked: bool = False
    revoked_at: str | None = None
    replaced_by_token: str | None = None
    user_agent: str | None = None  # advisory only
    ip_address: str | None = None  # advisory only
    created_at: str | None = None


@dataclass(frozen=True)
class RequestMetadata:
    """Provenance attached to a newly issued session."""

    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class TokenPair:
    """A freshly minted access/refresh credential pair.

    access_token_id and refresh_token_id are internal: the API layer serializes
    only the first four fields.
    """

    access_token: str
    refresh_token: str
    expires_in: int
    access_token_id: str
    refresh_token_id: str
    token_type: str = "Bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password


@dataclass(frozen=True)
class AccessClaims:
    user_id: int
    email: str
    token_id: str
    expires_at: int


@dataclass(frozen=True)
class RefreshClaims:
    user_id: int
    token_id: str
    expires_at: int


class FailureKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    MALFORMED_TOKEN = "malformed_token"
    EXPIRED_TOKEN = "expired_token"
    REVOKED_TOKEN = "revoked_token"
    REUSE_DETECTED = "reuse_detected"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"


@dataclass(frozen=True)
class AuthFailure:
    """Why an auth operation did not succeed.

    user_id is filled in when the failure could be attributed to a user
    (e.g. REUSE_DETECTED) so the caller can log it for audit.
    """

    kind: FailureKind
    user_id: int | None = None
