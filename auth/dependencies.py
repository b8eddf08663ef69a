"""
auth/dependencies.py -- FastAPI Depends() helpers for bearer authentication.

Only the Authorization: Bearer <access token> header is accepted. The token
must carry a valid signature, issuer, audience, typ=access and an unexpired
exp claim, and its subject must still be an active user.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.

Layer rule: auth/dependencies.py may import from fastapi (for Request/
HTTPException) because this module is part of the FastAPI dependency
injection system. It reads its collaborators from app.state, which the API
lifespan populates.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import AuthFailure
from auth.store import CredentialStore
from auth.tokens import TokenIssuer


@dataclass(frozen=True)
class Principal:
    """The authenticated caller, as established by a verified access token."""

    user_id: int
    email: str
    access_token_id: str


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request via its Bearer header. Never raises."""
    token = _bearer_token(request)
    if token is None:
        return None

    issuer: TokenIssuer = request.app.state.token_issuer
    claims = issuer.verify_access(token)
    if isinstance(claims, AuthFailure):
        return None

    user_store: CredentialStore = request.app.state.user_store
    user = user_store.get_by_id(claims.user_id)
    if user is None or not user.is_active:
        return None
    return Principal(user_id=claims.user_id, email=claims.email, access_token_id=claims.token_id)


def get_current_principal(request: Request) -> Principal:
    """Require a valid bearer access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal
