"""
auth/errors.py -- Client-facing error taxonomy for the auth core.

Every failure the flows can report is one of a small, fixed set of
(status_code, code, message) tuples. Flows raise these; api/main.py renders
them into the standard error envelope. Messages are generic on purpose: a
missing account and a wrong password look identical, and a bad token never
says what was wrong with it.

Infrastructure failures are mapped here too (SessionStoreUnavailable), so no
raw RedisError or SQLAlchemyError ever reaches a response body.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import Optional


class AuthError(Exception):
    """Base class. Subclasses set status_code / code / message."""

    status_code: int = 401
    code: str = "unauthorized"
    message: str = "Authentication required."
    # Replay detection and similar: logged with elevated severity.
    security_flagged: bool = False

    def __init__(self, message: Optional[str] = None) -> None:
        if message is not None:
            self.message = message
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class AccountLocked(AuthError):
    status_code = 423
    code = "account_locked"

    def __init__(self, minutes: int) -> None:
        self.minutes = minutes
        plural = "" if minutes == 1 else "s"
        super().__init__(
            f"Account locked due to too many failed attempts. Try again in {minutes} minute{plural}."
        )


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, retry_after: int, message: str) -> None:
        self.retry_after = retry_after
        super().__init__(message)

    def to_detail(self) -> dict:
        return {**super().to_detail(), "retry_after": self.retry_after}


class NoToken(AuthError):
    code = "no_token"
    message = "No refresh token provided."


class InvalidToken(AuthError):
    code = "invalid_token"
    message = "Invalid or expired token."


class SessionNotFound(AuthError):
    code = "session_not_found"
    message = "Session expired or revoked. Please sign in again."


class ReplayDetected(AuthError):
    code = "replay_detected"
    message = "Token reuse detected. All sessions have been revoked for security."
    security_flagged = True


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    message = "You do not have access to this resource."


class SessionStoreUnavailable(AuthError):
    """Session could not be written. Sign-in must fail rather than half-succeed."""

    status_code = 503
    code = "service_unavailable"
    message = "Sign-in is temporarily unavailable. Please try again shortly."


class Unauthorized(AuthError):
    """No credentials at all on a request that needs them."""


class InvalidRequest(AuthError):
    status_code = 400
    code = "invalid_request"
    message = "The request is missing a required parameter."

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        super().__init__(message)


class WeakPassword(AuthError):
    status_code = 400
    code = "weak_password"
    message = "Password does not meet the strength requirements."

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__()

    def to_detail(self) -> dict:
        return {**super().to_detail(), "detail": self.problems}


class SessionNotOwned(AuthError):
    """Target session is absent or belongs to someone else. Both look the same."""

    status_code = 404
    code = "not_found"
    message = "Session not found."
