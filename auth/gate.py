"""
auth/gate.py -- Lightweight token verifier for request gating.

The gating middleware (api/main.py) admits or denies requests to protected
path prefixes before any route code runs. It must be cheap and must not touch
Redis or the database, so it gets its own verifier: PyJWT's pure-Python HS256
path plus the shared claim rules in auth/claims.py. Nothing here imports
python-jose, SQLAlchemy, or redis.

What the gate cannot see: revocation. A signed-out or replay-revoked session
keeps passing the gate until its access token expires (at most 15 minutes).
Every protected route therefore repeats the check through the deep path
(auth/dependencies.py), which consults the SessionStore.

GateVerifier and ServerVerifier must agree on every token. Keep any new rule
in auth/claims.validate_claims, not here.
"""

from __future__ import annotations

import time
from typing import Callable

import jwt

from auth.claims import ALGORITHM, BaseVerifier, SigningKeys


class GateVerifier(BaseVerifier):
    """PyJWT verifier with the same semantics as auth.tokens.ServerVerifier."""

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.time) -> "GateVerifier":
        return cls(
            SigningKeys.from_settings(settings),
            access_ttl=settings.access_token_ttl_seconds,
            refresh_ttl=settings.refresh_token_ttl_seconds,
            clock=clock,
        )

    def _peek(self, token: str) -> dict:
        return jwt.decode(token, options={"verify_signature": False})

    def _decode(self, token: str, secret: str) -> dict:
        return jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            leeway=0,
            options={"require": ["exp", "iat"], "verify_aud": False, "verify_nbf": False},
        )
