"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores own persistence,
auth/flows.py owns behaviour; these types only carry shape.

Layer rule: no imports from api/, cache/, or core/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

ROLES: tuple[str, ...] = ("admin", "editor", "viewer")


class TokenKind(str, Enum):
    access = "access"
    refresh = "refresh"


@dataclass
class Principal:
    """One identity in the credential store.

    email is always stored lower-case; lookups lower-case their input so the
    unique constraint doubles as a case-insensitive uniqueness check.

    lock_until is epoch seconds (None = never locked). A value in the past is
    an expired lock: the next failed attempt restarts the counter at 1.
    """

    email: str
    name: str
    password_hash: str
    role: str = "viewer"  # "admin", "editor", "viewer"
    id: Optional[str] = None
    failed_login_attempts: int = 0
    lock_until: Optional[float] = None
    last_login: Optional[str] = None
    password_changed_at: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Session:
    """Server-side record that keeps a token pair revocable.

    created_at / expires_at are epoch milliseconds. The Redis TTL on the
    record always matches expires_at; readers still check expires_at
    themselves because TTL granularity can lag it.
    """

    session_id: str
    user_id: str
    email: str
    role: str
    user_agent: str
    ip_address: str
    created_at: int
    expires_at: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of an access or refresh token.

    email is only present on tokens minted by older releases; current tokens
    keep PII out of the payload.
    """

    user_id: str
    role: str
    session_id: str
    issued_at: int
    expires_at: int
    version: int = 1
    email: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: datetime
    retry_after: Optional[int] = None  # seconds; set only when denied


@dataclass(frozen=True)
class CurrentUser:
    """Identity resolved by the deep check: valid token AND live session."""

    user_id: str
    email: str
    role: str
    session_id: str
