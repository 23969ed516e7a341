"""
auth/sessions.py -- Redis-backed session store with a per-user index.

A session is what makes a stateless token pair revocable: a token whose
session record is gone is dead for every deep-checked request, whatever its
signature says.

Keys (see cache/redis_client.py):
  session:{session_id}      JSON Session, TTL = session lifetime
  user_sessions:{user_id}   SET of session ids, TTL = lifetime + grace

The index is a cache, not a source of truth. It may hold ids whose record is
already gone (TTL expiry, crash between writes); every reader re-validates
against the record and list_for_user() removes stale ids as it finds them.
The opposite drift -- a live record missing from the index -- would make the
session unrevokable in bulk, so writes are ordered and batched to prevent it:
create() adds the index entry and the record in one MULTI/EXEC, and
delete_all_for_user() SREMs only the ids it actually deleted.

Failure policy:
  create()                   raises SessionStoreUnavailable (fail loudly)
  get()/list_for_user()      absent / empty on RedisError   (fail closed)
  delete()/extend()          False on RedisError
  delete_all_for_user()      0 on RedisError, logged at ERROR
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from auth.errors import SessionStoreUnavailable
from auth.models import Session
from cache.redis_client import session_key, user_sessions_key

logger = logging.getLogger("folio.auth.sessions")


def _decode(raw: str) -> Session | None:
    try:
        return Session(**json.loads(raw))
    except (ValueError, TypeError):
        return None


class SessionStore:
    def __init__(
        self,
        client: aioredis.Redis,
        *,
        ttl_seconds: int = 7 * 24 * 60 * 60,
        index_grace_seconds: int = 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = client
        self.ttl_seconds = ttl_seconds
        self._index_ttl = ttl_seconds + index_grace_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, client: aioredis.Redis, settings, clock: Callable[[], float] = time.time) -> "SessionStore":
        return cls(
            client,
            ttl_seconds=settings.session_ttl_seconds,
            index_grace_seconds=settings.session_index_grace_seconds,
            clock=clock,
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Create / read / delete
    # ------------------------------------------------------------------

    async def create(self, *, user_id: str, email: str, role: str, user_agent: str, ip_address: str) -> Session:
        now = self._now_ms()
        session = Session(
            session_id=secrets.token_urlsafe(32),
            user_id=user_id,
            email=email,
            role=role,
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=now,
            expires_at=now + self.ttl_seconds * 1000,
        )
        index_key = user_sessions_key(user_id)
        pipe = self._redis.pipeline(transaction=True)
        # Index first: if the batch is ever split, an orphan index entry is
        # harmless, an unindexed session is not.
        pipe.sadd(index_key, session.session_id)
        pipe.expire(index_key, self._index_ttl)
        pipe.set(session_key(session.session_id), json.dumps(session.to_dict()), ex=self.ttl_seconds)
        try:
            await pipe.execute()
        except RedisError as exc:
            logger.error("Session create failed for user %s: %s", user_id, exc)
            raise SessionStoreUnavailable() from exc
        return session

    async def get(self, session_id: str) -> Session | None:
        """Return the live session or None. Expired/corrupt records are deleted on sight.

        Fails closed: an unreachable store reads as "no session".
        """
        try:
            return await self.fetch(session_id)
        except SessionStoreUnavailable:
            return None

    async def fetch(self, session_id: str) -> Session | None:
        """Like get(), but a store failure raises SessionStoreUnavailable.

        Refresh uses this: an absent session there means token replay, which
        must not be confused with Redis being down.
        """
        if not session_id:
            return None
        try:
            raw = await self._redis.get(session_key(session_id))
        except RedisError as exc:
            logger.error("Session lookup failed: %s", exc)
            raise SessionStoreUnavailable("Session service is temporarily unavailable.") from exc
        if raw is None:
            return None
        session = _decode(raw)
        if session is None or session.expires_at <= self._now_ms():
            await self.delete(session_id)
            return None
        return session

    async def delete(self, session_id: str) -> bool:
        """Remove one session and its index entry. Idempotent: False if already gone."""
        if not session_id:
            return False
        key = session_key(session_id)
        try:
            raw = await self._redis.get(key)
            if raw is None:
                return False
            owner = _decode(raw)
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(key)
            if owner is not None:
                pipe.srem(user_sessions_key(owner.user_id), session_id)
            results = await pipe.execute()
        except RedisError as exc:
            logger.error("Session delete failed for %s: %s", session_id[:8], exc)
            return False
        return bool(results[0])

    # ------------------------------------------------------------------
    # Per-user operations
    # ------------------------------------------------------------------

    async def list_for_user(self, user_id: str) -> list[Session]:
        """Live sessions for a user, newest first. Repairs the index as a side effect."""
        index_key = user_sessions_key(user_id)
        try:
            members = await self._redis.smembers(index_key)
            if not members:
                return []
            ids = sorted(members)
            values = await self._redis.mget([session_key(sid) for sid in ids])
        except RedisError as exc:
            logger.error("Session listing failed for user %s: %s", user_id, exc)
            return []

        now = self._now_ms()
        live: list[Session] = []
        stale: list[str] = []
        dead_records: list[str] = []
        for sid, raw in zip(ids, values):
            session = _decode(raw) if raw is not None else None
            if session is None or session.user_id != user_id:
                stale.append(sid)
                if raw is not None and session is None:
                    dead_records.append(session_key(sid))
            elif session.expires_at <= now:
                stale.append(sid)
                dead_records.append(session_key(sid))
            else:
                live.append(session)

        if stale:
            pipe = self._redis.pipeline(transaction=True)
            pipe.srem(index_key, *stale)
            if dead_records:
                pipe.delete(*dead_records)
            try:
                await pipe.execute()
            except RedisError as exc:
                # Repair is best-effort; the next listing retries it.
                logger.warning("Session index repair failed for user %s: %s", user_id, exc)

        live.sort(key=lambda s: s.created_at, reverse=True)
        return live

    async def delete_all_for_user(self, user_id: str) -> int:
        """Revoke every session of a user. Returns how many records were deleted."""
        index_key = user_sessions_key(user_id)
        try:
            members = await self._redis.smembers(index_key)
            if not members:
                return 0
            ids = list(members)
            pipe = self._redis.pipeline(transaction=True)
            pipe.delete(*[session_key(sid) for sid in ids])
            # SREM rather than DEL: a session created concurrently with this
            # call must stay indexed.
            pipe.srem(index_key, *ids)
            results = await pipe.execute()
        except RedisError as exc:
            logger.error("Bulk session revocation FAILED for user %s: %s", user_id, exc)
            return 0
        return int(results[0])

    # ------------------------------------------------------------------
    # Sliding renewal
    # ------------------------------------------------------------------

    async def extend(self, session_id: str) -> bool:
        """Push expiry to now + lifetime, but only past the midpoint of the current window.

        Avoids a Redis write on every request while still keeping an active
        user signed in indefinitely. Returns True whenever the session exists.
        """
        session = await self.get(session_id)
        if session is None:
            return False
        now = self._now_ms()
        window_ms = self.ttl_seconds * 1000
        window_start = session.expires_at - window_ms
        if now - window_start < window_ms / 2:
            return True

        session.expires_at = now + window_ms
        index_key = user_sessions_key(session.user_id)
        pipe = self._redis.pipeline(transaction=True)
        pipe.set(session_key(session_id), json.dumps(session.to_dict()), ex=self.ttl_seconds, xx=True)
        pipe.sadd(index_key, session_id)
        pipe.expire(index_key, self._index_ttl)
        try:
            results = await pipe.execute()
        except RedisError as exc:
            logger.error("Session extend failed for %s: %s", session_id[:8], exc)
            return False
        return bool(results[0])
