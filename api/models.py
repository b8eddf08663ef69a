"""
API request and response models for RotaGuard REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers parse and validate
request bodies here, then map between the two.

Wire format is camelCase (refreshToken, expiresIn, ...). The alias generator
handles the mapping; responses are serialized with by_alias=True.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /auth/login.

    max_length=255 on password keeps inputs well below bcrypt's 72-byte
    truncation concerns for realistic passwords and bounds hashing cost.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.lower()


class RefreshRequest(BaseModel):
    """Request body for POST /auth/refresh and POST /auth/logout."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenPairResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/refresh."""

    model_config = _CAMEL

    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password


class MeResponse(BaseModel):
    """Response for GET /auth/me."""

    model_config = _CAMEL

    user_id: int
    email: str
    access_token_id: str


class SessionResponse(BaseModel):
    """One entry of GET /auth/sessions. Token material is never exposed."""

    model_config = _CAMEL

    id: int
    created_at: str
    expires_at: str
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
