"""
api/routes/v1/auth.py -- Sign-in, token refresh, sign-out and self-service session endpoints.

Routes:
  POST   /api/v1/auth/signin                  -- password sign-in; sets both token cookies
  POST   /api/v1/auth/refresh                 -- rotate session + tokens (replay detection)
  POST   /api/v1/auth/signout                 -- revoke current session; always 200
  GET    /api/v1/auth/me                      -- current identity (deep check)
  GET    /api/v1/auth/sessions                -- caller's live sessions, newest first
  DELETE /api/v1/auth/sessions?session_id=... -- revoke one of the caller's sessions
  DELETE /api/v1/auth/sessions?all=true       -- revoke all of the caller's sessions
  POST   /api/v1/auth/password                -- change password, revoke every session

Security:
  [H2] POST /signin is rate-limited per client IP in Redis (auth/rate_limit.py).
  [C1] Timing equalization lives in AuthFlows.sign_in -- never inline the
       lookup + bcrypt comparison here.
  [M5] Cache-Control: no-store on every response that sets token cookies.
  IDOR guard: DELETE /sessions?session_id= only revokes sessions owned by the
       caller; anything else is a 404 indistinguishable from "no such session".
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    RefreshResponse,
    RevokeResponse,
    SessionInfo,
    SessionListResponse,
    SignInRequest,
    SignInResponse,
    UserInfo,
)
from auth.dependencies import access_token_from, get_current_user
from auth.errors import InvalidRequest
from auth.flows import AuthFlows
from auth.models import CurrentUser
from auth.rate_limit import client_ip
from auth.tokens import REFRESH_COOKIE, clear_auth_cookies, set_auth_cookies

# Auth policy:
# - POST   /api/v1/auth/signin:    public -- rate limited per IP
# - POST   /api/v1/auth/refresh:   public -- refresh cookie is the credential
# - POST   /api/v1/auth/signout:   public -- clearing cookies needs no prior auth
# - GET    /api/v1/auth/me:        requires auth (get_current_user)
# - GET    /api/v1/auth/sessions:  requires auth (get_current_user)
# - DELETE /api/v1/auth/sessions:  requires auth + ownership check in flows
# - POST   /api/v1/auth/password:  requires auth (get_current_user)
router = APIRouter()


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/signin", response_model=SignInResponse)
async def signin(request: Request, body: SignInRequest) -> JSONResponse:
    """Authenticate with email and password; set access + refresh cookies.

    Failures (all via AuthError, rendered by api/main.py):
      429 rate_limited, 401 invalid_credentials, 423 account_locked,
      503 service_unavailable when the session cannot be stored.
    """
    flows: AuthFlows = request.app.state.flows
    settings = request.app.state.settings
    result = await flows.sign_in(
        body.email,
        body.password,
        ip_address=client_ip(request, settings.trust_proxy_headers),
        user_agent=request.headers.get("user-agent", "unknown"),
    )
    resp = JSONResponse(
        content=SignInResponse(
            session_id=result.session.session_id,
            user=UserInfo(
                id=result.principal.id,
                email=result.principal.email,
                name=result.principal.name,
                role=result.principal.role,
            ),
        ).model_dump()
    )
    set_auth_cookies(resp, result.tokens, settings, flows.codec)
    return _no_store(resp)


@router.post("/auth/refresh", response_model=RefreshResponse)
async def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new session and a new token pair.

    A refresh token whose session no longer exists is treated as stolen:
    every session of that user is revoked and the cookies are cleared.
    """
    flows: AuthFlows = request.app.state.flows
    settings = request.app.state.settings
    result = await flows.refresh(request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=RefreshResponse(session_id=result.session.session_id).model_dump())
    set_auth_cookies(resp, result.tokens, settings, flows.codec)
    return _no_store(resp)


@router.post("/auth/signout", response_model=MessageResponse)
async def signout(request: Request) -> JSONResponse:
    """Revoke the current session (best effort) and clear both cookies."""
    flows: AuthFlows = request.app.state.flows
    await flows.sign_out(access_token_from(request), request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=MessageResponse(message="Signed out.").model_dump())
    clear_auth_cookies(resp, request.app.state.settings)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(user: CurrentUser = Depends(get_current_user)) -> MeResponse:
    """Return the identity behind the current access token and session."""
    return MeResponse(user_id=user.user_id, email=user.email, role=user.role, session_id=user.session_id)


@router.get("/auth/sessions", response_model=SessionListResponse)
async def list_sessions(request: Request, user: CurrentUser = Depends(get_current_user)) -> SessionListResponse:
    sessions = await request.app.state.flows.list_sessions(user.user_id)
    return SessionListResponse(sessions=[SessionInfo.from_session(s, user.session_id) for s in sessions])


@router.delete("/auth/sessions", response_model=RevokeResponse)
async def revoke_sessions(
    request: Request,
    session_id: Optional[str] = Query(default=None, max_length=128),
    revoke_all: bool = Query(default=False, alias="all"),
    user: CurrentUser = Depends(get_current_user),
) -> RevokeResponse:
    """Revoke one session (?session_id=) or every session (?all=true) of the caller."""
    flows: AuthFlows = request.app.state.flows
    if revoke_all:
        count = await flows.revoke_all(user.user_id)
        return RevokeResponse(message="All sessions revoked.", revoked=count)
    if not session_id:
        raise InvalidRequest("missing_session_id", "Provide session_id or all=true.")
    await flows.revoke_session(user, session_id)
    return RevokeResponse(message="Session revoked.", revoked=1)


@router.post("/auth/password", response_model=RevokeResponse)
async def change_password(
    request: Request,
    body: PasswordChangeRequest,
    user: CurrentUser = Depends(get_current_user),
) -> JSONResponse:
    """Change the caller's password. Every session, including this one, is revoked."""
    flows: AuthFlows = request.app.state.flows
    revoked = await flows.change_password(user, body.current_password, body.new_password)
    resp = JSONResponse(
        content=RevokeResponse(message="Password changed. Please sign in again.", revoked=revoked).model_dump()
    )
    clear_auth_cookies(resp, request.app.state.settings)
    return _no_store(resp)
