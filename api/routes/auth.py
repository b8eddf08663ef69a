"""
api/routes/auth.py -- Session credential REST endpoints.

Routes:
  POST   /auth/login          -- password login; returns a token pair
  POST   /auth/refresh        -- rotate a refresh token; returns a new pair
  POST   /auth/logout         -- revoke one refresh token; 204
  POST   /auth/logout-all     -- revoke every session of the caller; 204 (bearer)
  GET    /auth/me             -- caller identity from the access token (bearer)
  GET    /auth/sessions       -- caller's active sessions (bearer)
  DELETE /auth/sessions/{id}  -- revoke one of the caller's sessions (bearer)

Security:
  [C1] AuthService.login() uses timing-equalized authenticate_user().
  [E1] Every refresh failure is returned as the same 401 invalid_refresh_token.
  [M5] Cache-Control: no-store on responses that carry credentials.
  Logout always answers 204, so it cannot be used to probe token validity.
  IDOR guard: DELETE /sessions/{id} passes the caller's user_id to the ledger,
  whose WHERE clause requires both to match.

Handlers are plain `def` so FastAPI runs their blocking SQLAlchemy and bcrypt
work in the thread pool.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.models import LoginRequest, MeResponse, RefreshRequest, SessionResponse, TokenPairResponse
from auth.dependencies import Principal, get_current_principal
from auth.models import AuthFailure, TokenPair
from auth.service import AuthService

# Auth policy:
# - POST   /auth/login, /auth/refresh, /auth/logout: public -- the body carries the credential
# - POST   /auth/logout-all:    requires bearer access token
# - GET    /auth/me:            requires bearer access token
# - GET    /auth/sessions:      requires bearer access token
# - DELETE /auth/sessions/{id}: requires bearer access token + ownership check in ledger
router = APIRouter()


def _client_metadata(request: Request) -> tuple[str | None, str | None]:
    user_agent = request.headers.get("user-agent")
    ip_address = request.client.host if request.client else None
    return (user_agent[:512] if user_agent else None), ip_address


def _pair_response(pair: TokenPair) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenPairResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            token_type=pair.token_type,
        ).model_dump(by_alias=True),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _unauthorized(code: str, message: str) -> JSONResponse:
    resp = JSONResponse(status_code=401, content={"error": {"code": code, "message": message}})
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenPairResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return an access/refresh pair.

    Returns the same generic error for unknown email, wrong password and
    inactive account ("invalid_credentials").
    """
    service: AuthService = request.app.state.auth_service
    user_agent, ip_address = _client_metadata(request)
    result = service.login(body.email, body.password, user_agent=user_agent, ip_address=ip_address)
    if isinstance(result, AuthFailure):
        return _unauthorized("invalid_credentials", "Invalid email or password.")
    return _pair_response(result)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Rotate a refresh token. The presented token is dead after this call."""
    service: AuthService = request.app.state.auth_service
    user_agent, ip_address = _client_metadata(request)
    result = service.refresh(body.refresh_token, user_agent=user_agent, ip_address=ip_address)
    if isinstance(result, AuthFailure):
        return _unauthorized("invalid_refresh_token", "Invalid refresh token.")  # [E1]
    return _pair_response(result)


@router.post("/auth/logout", status_code=204)
def logout(request: Request, body: RefreshRequest) -> Response:
    """Revoke the session behind the given refresh token."""
    service: AuthService = request.app.state.auth_service
    service.logout(body.refresh_token)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", status_code=204)
def logout_all(request: Request, principal: Principal = Depends(get_current_principal)) -> Response:
    """Revoke every refresh session of the caller.

    Access tokens already issued stay valid until their short expiry; they
    are not tracked in the ledger.
    """
    service: AuthService = request.app.state.auth_service
    service.logout_all(principal.user_id)
    return Response(status_code=204)


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information carried by the caller's access token."""
    return MeResponse(
        user_id=principal.user_id,
        email=principal.email,
        access_token_id=principal.access_token_id,
    )


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, principal: Principal = Depends(get_current_principal)) -> list[SessionResponse]:
    """List the caller's active refresh sessions (newest first)."""
    service: AuthService = request.app.state.auth_service
    return [
        SessionResponse(
            id=s.id,
            created_at=s.created_at or "",
            expires_at=s.expires_at,
            user_agent=s.user_agent,
            ip_address=s.ip_address,
        )
        for s in service.list_sessions(principal.user_id)
    ]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: int,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    """Revoke one of the caller's sessions. Ownership is verified server-side [IDOR guard]."""
    service: AuthService = request.app.state.auth_service
    if not service.revoke_session(principal.user_id, session_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)
