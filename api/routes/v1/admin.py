"""
api/routes/v1/admin.py -- Admin-only session management for any user.

Routes:
  GET    /api/v1/admin/users/{user_id}/sessions  -- list a user's live sessions
  DELETE /api/v1/admin/users/{user_id}/sessions  -- "log out everywhere" for a user

Both sit under /api/v1/admin, so the gating middleware rejects requests
without a valid access token before they get here; require_admin then does
the deep check (live session) and the role check.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Path, Request

from api.models import RevokeResponse, SessionInfo, SessionListResponse
from auth.dependencies import require_admin
from auth.models import CurrentUser

logger = logging.getLogger("folio.api.admin")

router = APIRouter()

_UserId = Path(min_length=1, max_length=64)


@router.get("/admin/users/{user_id}/sessions", response_model=SessionListResponse)
async def list_user_sessions(
    request: Request,
    user_id: str = _UserId,
    admin: CurrentUser = Depends(require_admin),
) -> SessionListResponse:
    sessions = await request.app.state.flows.list_sessions(user_id)
    return SessionListResponse(sessions=[SessionInfo.from_session(s, admin.session_id) for s in sessions])


@router.delete("/admin/users/{user_id}/sessions", response_model=RevokeResponse)
async def revoke_user_sessions(
    request: Request,
    user_id: str = _UserId,
    admin: CurrentUser = Depends(require_admin),
) -> RevokeResponse:
    count = await request.app.state.flows.revoke_all(user_id)
    logger.warning("Admin %s revoked %d session(s) of user %s", admin.user_id, count, user_id)
    return RevokeResponse(message="All sessions revoked.", revoked=count)
