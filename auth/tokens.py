"""
auth/tokens.py -- Token issuance, the server-side verifier, and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Two token kinds, each with its own secret:
       access  (15 min) -- authorizes requests
       refresh (7 days) -- only mints new pairs
       A refresh token can never verify as an access token (and vice versa)
       because the HMAC keys differ, regardless of claim shape.

  Claims: sub (user id), role, sid (session id), iat, exp, v (secret
       version). Email is deliberately NOT embedded: tokens sit in browser
       storage and logs, PII does not belong there.

  Verification returns None on any failure -- route layer turns that into a
       401 with a generic message. The failure reason is never surfaced, so
       the API cannot be used as an oracle on token structure.

  Validity of a token never implies the session is live. Server code always
       follows verify() with a SessionStore lookup (auth/flows.py).

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from jose import jwt

from auth.claims import ALGORITHM, BaseVerifier, SigningKeys
from auth.models import ROLES, TokenKind, TokenPair

logger = logging.getLogger("folio.auth.tokens")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class TokenCodec:
    """Mints access and refresh tokens. Pure: no I/O, time from an injectable clock."""

    def __init__(
        self,
        keys: SigningKeys,
        *,
        access_ttl: int = 15 * 60,
        refresh_ttl: int = 7 * 24 * 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.keys = keys
        self._ttl = {TokenKind.access: access_ttl, TokenKind.refresh: refresh_ttl}
        self._clock = clock

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "TokenCodec":
        return cls(
            SigningKeys.from_settings(settings),
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            clock=clock,
        )

    def ttl(self, kind: TokenKind) -> int:
        return self._ttl[kind]

    def issue(self, kind: TokenKind, *, user_id: str, role: str, session_id: str) -> str:
        """Encode a signed JWT of the given kind.

        Raises ValueError for an unknown role -- that is a programming error,
        not a client error, and must not produce a token verifiers would reject.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role!r}")
        issued_at = int(self._clock())
        payload = {
            "sub": user_id,
            "role": role,
            "sid": session_id,
            "iat": issued_at,
            "exp": issued_at + self._ttl[kind],
            "v": self.keys.current_version,
        }
        return jwt.encode(payload, self.keys.signing_secret(kind), algorithm=ALGORITHM)

    def issue_pair(self, *, user_id: str, role: str, session_id: str) -> TokenPair:
        return TokenPair(
            access_token=self.issue(TokenKind.access, user_id=user_id, role=role, session_id=session_id),
            refresh_token=self.issue(TokenKind.refresh, user_id=user_id, role=role, session_id=session_id),
        )


# ---------------------------------------------------------------------------
# Server-side verifier (authoritative)
# ---------------------------------------------------------------------------


class ServerVerifier(BaseVerifier):
    """python-jose verifier used by route dependencies and the auth flows.

    Algorithm pinned to HS256 (rejects alg=none and alg switching); leeway 0;
    exp and iat required. Claim rules are applied by BaseVerifier.
    """

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "ServerVerifier":
        return cls(
            SigningKeys.from_settings(settings),
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            clock=clock,
        )

    def _peek(self, token: str) -> dict:
        return jwt.get_unverified_claims(token)

    def _decode(self, token: str, secret: str) -> dict:
        return jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            options={
                "leeway": 0,
                "require_exp": True,
                "require_iat": True,
                "verify_aud": False,
                "verify_nbf": False,
            },
        )


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, settings, codec: TokenCodec) -> None:
    """Write both tokens as httpOnly cookies with lifetimes matching the tokens.

    httponly=True: JS cannot read the cookies (XSS mitigation).
    samesite: "lax" or "strict" from settings -- CSRF mitigation.
    secure: only sent over HTTPS in production (settings.secure_cookies).
    path="/": both cookies reach every route, including /api/v1/auth/refresh.
    """
    common = {
        "httponly": True,
        "secure": bool(settings.secure_cookies),
        "samesite": settings.cookie_samesite,
        "path": "/",
        "domain": settings.cookie_domain,
    }
    response.set_cookie(ACCESS_COOKIE, value=pair.access_token, max_age=codec.ttl(TokenKind.access), **common)
    response.set_cookie(REFRESH_COOKIE, value=pair.refresh_token, max_age=codec.ttl(TokenKind.refresh), **common)


def clear_auth_cookies(response, settings) -> None:
    """Expire both auth cookies. Path/domain must match what set_auth_cookies used."""
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            domain=settings.cookie_domain,
            secure=bool(settings.secure_cookies),
            httponly=True,
            samesite=settings.cookie_samesite,
        )
