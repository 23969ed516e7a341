"""
cache/redis_client.py -- Redis connection factory and key namespace for folio.

One asyncio Redis client is created per application lifetime (in the FastAPI
lifespan) and passed by reference to every component that needs it: the
session store and the rate limiter. Nothing in folio holds a module-level
client -- tests and the CLI build their own.

Timeouts: socket_timeout and socket_connect_timeout bound every command.
A timeout surfaces as redis.exceptions.TimeoutError (a RedisError), which each
component maps to its own failure policy (fail open / fail closed / raise).

Key namespace: every key folio writes is built by one of the helpers below so
sessions, user indexes, and rate-limit buckets cannot collide.

Usage:
    client = create_client(settings.redis_url)
    await ensure_connected(client)   # True/False, never raises
    ...
    await client.aclose()
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger("folio.cache.redis")


def create_client(redis_url: str, *, socket_timeout: float = 5.0) -> aioredis.Redis:
    """Build the shared asyncio client. Connections are opened lazily from the pool."""
    return aioredis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
        health_check_interval=30,
    )


async def ensure_connected(client: aioredis.Redis) -> bool:
    """Ping Redis once. Returns False (and logs) instead of raising.

    Called at startup so an outage is visible in the logs immediately. The app
    still starts: the rate limiter fails open and session reads fail closed,
    so an unreachable Redis degrades to "nobody can sign in" rather than a
    crash loop.
    """
    try:
        return bool(await client.ping())
    except RedisError as exc:
        logger.error("Redis unreachable: %s", exc)
        return False


# ---------------------------------------------------------------------------
# Key namespace
# ---------------------------------------------------------------------------


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"user_sessions:{user_id}"


def rate_limit_key(action: str, identifier: str) -> str:
    # action comes from a fixed set without ':' so the prefix stays unambiguous
    # even when the identifier (an IPv6 address) contains colons.
    return f"ratelimit:{action}:{identifier}"
