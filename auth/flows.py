"""
auth/flows.py -- Sign-in, refresh, sign-out and session management.

AuthFlows composes the collaborators built in the lifespan (principal store,
session store, rate limiter, token codec, server verifier) into the
operations the routes expose. Routes stay thin: they parse input, call one
method here, and set cookies on the way out.

Security:
  Sign-in always runs exactly one bcrypt comparison before answering
  "invalid credentials" -- against the stored hash, or against a dummy hash
  when the email is unknown [C1]. A locked account answers before the
  comparison and does not touch the failure counter.

  Refresh ALWAYS rotates. The presented refresh token's session is replaced
  by a new one; if that session is already gone, the token was either
  revoked or used before, and both cases are treated as theft: every session
  of the user is revoked and the caller gets replay_detected.

  A verified token is never enough on its own. authenticate() also requires
  the session record to exist, which is what makes sign-out and revocation
  take effect before the access token expires.

Layer rule: no imports from api/. Errors are raised as auth.errors.AuthError
subclasses; api/main.py renders them.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

from auth.errors import (
    AccountLocked,
    Forbidden,
    InvalidCredentials,
    InvalidToken,
    NoToken,
    RateLimited,
    ReplayDetected,
    SessionNotFound,
    SessionNotOwned,
    Unauthorized,
    WeakPassword,
)
from auth.models import ROLES, CurrentUser, Principal, Session, TokenKind, TokenPair
from auth.passwords import burn_dummy_check, hash_password, password_strength_errors, verify_password
from auth.rate_limit import RateLimiter, retry_message
from auth.sessions import SessionStore
from auth.store import PrincipalStore
from auth.tokens import ServerVerifier, TokenCodec

logger = logging.getLogger("folio.auth.flows")


@dataclass(frozen=True)
class SignInResult:
    principal: Principal
    session: Session
    tokens: TokenPair


@dataclass(frozen=True)
class RefreshResult:
    session: Session
    tokens: TokenPair


class AuthFlows:
    def __init__(
        self,
        *,
        principals: PrincipalStore,
        sessions: SessionStore,
        limiter: RateLimiter,
        codec: TokenCodec,
        verifier: ServerVerifier,
        lockout_threshold: int = 5,
        lockout_seconds: int = 30 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.principals = principals
        self.sessions = sessions
        self.limiter = limiter
        self.codec = codec
        self.verifier = verifier
        self.lockout_threshold = lockout_threshold
        self.lockout_seconds = lockout_seconds
        self._clock = clock

    # ------------------------------------------------------------------
    # Sign-in
    # ------------------------------------------------------------------

    async def sign_in(self, email: str, password: str, *, ip_address: str, user_agent: str) -> SignInResult:
        decision = await self.limiter.check(ip_address, "login")
        if not decision.allowed:
            retry_after = decision.retry_after or 1
            logger.info("Sign-in rate limited for %s (retry in %ss)", ip_address, retry_after)
            raise RateLimited(retry_after, retry_message(retry_after))

        principal = await asyncio.to_thread(self.principals.find_by_email, email)
        if principal is None:
            await asyncio.to_thread(burn_dummy_check, password)
            logger.info("Sign-in failed from %s: unknown account", ip_address)
            raise InvalidCredentials()

        now = self._clock()
        if principal.lock_until is not None and principal.lock_until > now:
            minutes = max(1, math.ceil((principal.lock_until - now) / 60))
            logger.info("Sign-in refused for locked account %s", principal.id)
            raise AccountLocked(minutes)

        if not await asyncio.to_thread(verify_password, password, principal.password_hash):
            updated = await asyncio.to_thread(
                self.principals.increment_failed_attempts,
                principal.id,
                self.lockout_threshold,
                self.lockout_seconds,
                now,
            )
            if updated is not None and updated.lock_until is not None and updated.lock_until > now:
                logger.warning(
                    "Account %s locked after %d failed attempts", principal.id, updated.failed_login_attempts
                )
            else:
                logger.info("Sign-in failed from %s: bad password for %s", ip_address, principal.id)
            # Same answer whether or not this attempt triggered the lock.
            raise InvalidCredentials()

        # Tokens only carry ROLES; refuse before a session exists.
        if principal.role not in ROLES:
            logger.error("Sign-in refused for %s: unknown role %r", principal.id, principal.role)
            raise Forbidden("This account is not permitted to sign in.")

        await asyncio.to_thread(self.principals.record_successful_login, principal.id)
        await self.limiter.reset(ip_address, "login")
        session = await self.sessions.create(
            user_id=principal.id,
            email=principal.email,
            role=principal.role,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        tokens = self.codec.issue_pair(user_id=principal.id, role=principal.role, session_id=session.session_id)
        logger.info("Signed in %s (session %s...)", principal.id, session.session_id[:8])
        return SignInResult(principal=principal, session=session, tokens=tokens)

    # ------------------------------------------------------------------
    # Refresh (rotation + replay detection)
    # ------------------------------------------------------------------

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        if not refresh_token:
            raise NoToken()
        claims = self.verifier.verify(TokenKind.refresh, refresh_token)
        if claims is None:
            raise InvalidToken()

        old = await self.sessions.fetch(claims.session_id)
        if old is None:
            revoked = await self.sessions.delete_all_for_user(claims.user_id)
            logger.warning(
                "[SECURITY] Refresh token replay detected for user %s (session %s...); revoked %d session(s)",
                claims.user_id,
                claims.session_id[:8],
                revoked,
            )
            raise ReplayDetected()

        new = await self.sessions.create(
            user_id=old.user_id,
            email=old.email,
            role=old.role,
            user_agent=old.user_agent,
            ip_address=old.ip_address,
        )
        await self.sessions.delete(old.session_id)
        tokens = self.codec.issue_pair(user_id=new.user_id, role=new.role, session_id=new.session_id)
        logger.debug("Rotated session %s... -> %s...", old.session_id[:8], new.session_id[:8])
        return RefreshResult(session=new, tokens=tokens)

    # ------------------------------------------------------------------
    # Sign-out
    # ------------------------------------------------------------------

    async def sign_out(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        """Delete the session behind whichever token still verifies. Never raises."""
        try:
            claims = None
            if access_token:
                claims = self.verifier.verify(TokenKind.access, access_token)
            if claims is None and refresh_token:
                claims = self.verifier.verify(TokenKind.refresh, refresh_token)
            if claims is not None:
                await self.sessions.delete(claims.session_id)
        except Exception:  # noqa: BLE001 -- sign-out always succeeds for the client
            logger.exception("Sign-out cleanup failed")

    # ------------------------------------------------------------------
    # Deep check
    # ------------------------------------------------------------------

    async def authenticate(self, access_token: Optional[str]) -> CurrentUser:
        """Verified access token AND live session, with sliding renewal."""
        if not access_token:
            raise Unauthorized()
        claims = self.verifier.verify(TokenKind.access, access_token)
        if claims is None:
            raise InvalidToken()
        session = await self.sessions.get(claims.session_id)
        if session is None or session.user_id != claims.user_id:
            raise SessionNotFound()
        await self.sessions.extend(session.session_id)
        return CurrentUser(
            user_id=session.user_id,
            email=session.email,
            role=session.role,
            session_id=session.session_id,
        )

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def list_sessions(self, user_id: str) -> list[Session]:
        return await self.sessions.list_for_user(user_id)

    async def revoke_session(self, user: CurrentUser, session_id: str) -> None:
        """Revoke one of the caller's own sessions (404 for anyone else's)."""
        target = await self.sessions.get(session_id)
        if target is None or target.user_id != user.user_id:
            raise SessionNotOwned()
        await self.sessions.delete(session_id)
        logger.info("User %s revoked session %s...", user.user_id, session_id[:8])

    async def revoke_all(self, user_id: str) -> int:
        count = await self.sessions.delete_all_for_user(user_id)
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    async def change_password(self, user: CurrentUser, current_password: str, new_password: str) -> int:
        """Replace the password and revoke every session. Returns sessions revoked."""
        principal = await asyncio.to_thread(self.principals.get_by_id, user.user_id)
        if principal is None:
            raise SessionNotFound()
        if not await asyncio.to_thread(verify_password, current_password, principal.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        problems = password_strength_errors(new_password)
        if problems:
            raise WeakPassword(problems)
        new_hash = await asyncio.to_thread(hash_password, new_password)
        await asyncio.to_thread(self.principals.update_password, principal.id, new_hash)
        revoked = await self.sessions.delete_all_for_user(principal.id)
        logger.info("Password changed for %s; revoked %d session(s)", principal.id, revoked)
        return revoked
