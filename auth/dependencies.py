"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token sources are checked in priority order:
  1. Cookie ("access_token") -- set by the sign-in and refresh routes.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on AuthFlows.authenticate(), the deep check: verified access
token AND a live session in Redis. This is the layer that enforces
revocation; the gating middleware only checks signatures.

get_current_user() raises an AuthError (401) if unauthenticated.
require_roles(...) wraps it and raises Forbidden (403) on a role mismatch.
require_admin is require_roles("admin").

Layer rule: may import from fastapi (Depends/Request) because this module is
part of the FastAPI dependency injection system. No imports from api/.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Request

from auth.errors import Forbidden, RateLimited
from auth.models import CurrentUser
from auth.rate_limit import client_ip, retry_message
from auth.tokens import ACCESS_COOKIE


def access_token_from(request: Request) -> Optional[str]:
    """Return the raw access token from the cookie or Bearer header, if any."""
    token: Optional[str] = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip() or None
    return token


async def get_current_user(request: Request) -> CurrentUser:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: CurrentUser = Depends(get_current_user)): ...
    """
    user = await request.app.state.flows.authenticate(access_token_from(request))
    request.state.user = user
    return user


def require_roles(*roles: str):
    """Dependency factory: authenticated AND one of the given roles."""

    async def _check(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if user.role not in roles:
            raise Forbidden()
        return user

    return _check


require_admin = require_roles("admin")


async def enforce_api_rate_limit(request: Request) -> None:
    """Router-level dependency: count the request against the client's `api` bucket."""
    settings = request.app.state.settings
    decision = await request.app.state.limiter.check(client_ip(request, settings.trust_proxy_headers), "api")
    if not decision.allowed:
        retry_after = decision.retry_after or 1
        raise RateLimited(retry_after, retry_message(retry_after))
