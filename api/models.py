"""
API request and response models for folio's auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import Session

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignInRequest(BaseModel):
    """Request body for POST /api/v1/auth/signin.

    Validated before any store access: a malformed email or an empty/oversized
    password never reaches the rate limiter, Redis, or bcrypt.
    """

    email: EmailStr
    password: str = Field(min_length=1, max_length=255)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    role: str


class SignInResponse(BaseModel):
    """Response for POST /api/v1/auth/signin. Tokens travel in cookies only."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user: UserInfo


class RefreshResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    message: str = "Token refreshed."


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    role: str
    session_id: str


def _iso(epoch_ms: int) -> datetime:
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


class SessionInfo(BaseModel):
    """One entry of a session listing. is_current marks the caller's own session."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    user_agent: str
    ip_address: str
    created_at: datetime
    expires_at: datetime
    is_current: bool = False

    @classmethod
    def from_session(cls, session: Session, current_session_id: Optional[str] = None) -> "SessionInfo":
        return cls(
            session_id=session.session_id,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            created_at=_iso(session.created_at),
            expires_at=_iso(session.expires_at),
            is_current=session.session_id == current_session_id,
        )


class SessionListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    sessions: list[SessionInfo]


class RevokeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


# ---------------------------------------------------------------------------
# Shared envelope models
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None
    retry_after: Optional[int] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = {}
