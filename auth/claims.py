"""
auth/claims.py -- Key material and post-decode claim rules shared by both verifiers.

folio verifies tokens in two places:
  - auth/gate.py   GateVerifier   (PyJWT)       request-gating middleware
  - auth/tokens.py ServerVerifier (python-jose) route dependencies and flows

Each library checks the signature and its own view of `exp`; both are told
to skip `aud` and `nbf`. Everything after that -- required claims, role
whitelist, zero-skew expiry, max age, `aud`/`nbf`, secret version -- lives
here, in one function both verifiers call, so the two cannot disagree about
what a valid token is. tests/test_tokens.py runs the same property suite
against both.

This module must stay free of third-party imports: the gate verifier pulls it
in and is meant to run with nothing but PyJWT available.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from auth.models import ROLES, TokenClaims, TokenKind

logger = logging.getLogger("folio.auth.claims")

ALGORITHM = "HS256"
DEFAULT_SECRET_VERSION = 1


class TokenVerifier(Protocol):
    def verify(self, kind: TokenKind, token: str) -> TokenClaims | None: ...


@dataclass(frozen=True)
class SigningKeys:
    """Secrets per (kind, version). The current version signs; all versions verify.

    A token without a `v` claim predates versioning and is checked against
    DEFAULT_SECRET_VERSION.
    """

    current_version: int
    access: dict[int, str] = field(default_factory=dict)
    refresh: dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings) -> "SigningKeys":
        version = settings.jwt_secret_version
        access = dict(settings.jwt_retired_access_secrets)
        refresh = dict(settings.jwt_retired_refresh_secrets)
        access[version] = settings.jwt_access_secret
        refresh[version] = settings.jwt_refresh_secret
        return cls(current_version=version, access=access, refresh=refresh)

    def signing_secret(self, kind: TokenKind) -> str:
        return self._table(kind)[self.current_version]

    def secret_for(self, kind: TokenKind, version: int) -> Optional[str]:
        return self._table(kind).get(version)

    def _table(self, kind: TokenKind) -> dict[int, str]:
        return self.access if kind is TokenKind.access else self.refresh


def secret_version(unverified: dict) -> Optional[int]:
    """Read `v` from an unverified payload. None means "unusable token"."""
    version = unverified.get("v", DEFAULT_SECRET_VERSION)
    if isinstance(version, bool) or not isinstance(version, int) or version < 1:
        return None
    return version


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_claims(payload: dict, *, now: float, max_age: int) -> TokenClaims | None:
    """Apply folio's claim rules to a signature-verified payload.

    Zero clock-skew tolerance: a token is dead at `now >= exp`, and an `iat`
    in the future is rejected. The max-age check uses `iat` only, so a token
    minted with an over-long `exp` still dies on schedule.
    """
    user_id = payload.get("sub")
    role = payload.get("role")
    session_id = payload.get("sid")
    if not (isinstance(user_id, str) and user_id and isinstance(session_id, str) and session_id):
        return None
    if role not in ROLES:
        return None

    issued_at = payload.get("iat")
    expires_at = payload.get("exp")
    if not (_is_number(issued_at) and _is_number(expires_at)):
        return None
    if now >= expires_at or issued_at > now or now - issued_at > max_age:
        return None
    # folio never issues audience-scoped tokens; one carrying `aud` was minted
    # for some other consumer.
    if "aud" in payload:
        return None
    not_before = payload.get("nbf")
    if not_before is not None and not (_is_number(not_before) and now >= not_before):
        return None

    version = secret_version(payload)
    if version is None:
        return None
    email = payload.get("email")
    return TokenClaims(
        user_id=user_id,
        role=role,
        session_id=session_id,
        issued_at=int(issued_at),
        expires_at=int(expires_at),
        version=version,
        email=email if isinstance(email, str) else None,
    )


class BaseVerifier:
    """Shared verify() skeleton. Subclasses supply the library-specific decode.

    verify() never raises and never says why a token failed: callers get a
    TokenClaims or None. The reason is logged at DEBUG for local diagnosis.
    """

    def __init__(
        self,
        keys: SigningKeys,
        *,
        access_ttl: int,
        refresh_ttl: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._keys = keys
        self._max_age = {TokenKind.access: access_ttl, TokenKind.refresh: refresh_ttl}
        self._clock = clock

    def verify(self, kind: TokenKind, token: str) -> TokenClaims | None:
        if not isinstance(token, str) or not token:
            return None
        try:
            version = secret_version(self._peek(token))
            if version is None:
                return None
            secret = self._keys.secret_for(kind, version)
            if secret is None:
                logger.debug("%s token rejected: unknown secret version %s", kind.value, version)
                return None
            payload = self._decode(token, secret)
        except Exception as exc:  # noqa: BLE001 -- verification is silent by contract
            logger.debug("%s token rejected: %s", kind.value, type(exc).__name__)
            return None
        if not isinstance(payload, dict):
            return None
        return validate_claims(payload, now=self._clock(), max_age=self._max_age[kind])

    def _peek(self, token: str) -> dict:
        """Return the payload WITHOUT checking the signature (key selection only)."""
        raise NotImplementedError

    def _decode(self, token: str, secret: str) -> dict:
        """Verify signature + algorithm + exp and return the payload, or raise."""
        raise NotImplementedError
