"""
auth/rate_limit.py -- Fixed-window rate limiter on Redis.

One counter per (action, identifier), e.g. ratelimit:login:203.0.113.7.
The read-compare-increment runs as a single Lua script, so concurrent
requests from one client can never both squeeze under the limit.

Failure policy: FAIL OPEN. If Redis is unreachable or times out, check()
reports "allowed" with a full allowance and logs at WARNING. The limiter is
a brake on brute force, not the lock itself -- account lockout (auth/store.py)
still applies, and an outage must not lock every user out of sign-in.

Policies (configurable via core/config.py):
  login  5 attempts / 15 min  -- keyed by client IP, reset on success
  api  100 requests / 1 min

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from auth.models import RateLimitResult
from cache.redis_client import rate_limit_key

logger = logging.getLogger("folio.auth.rate_limit")

# KEYS[1] = counter key, ARGV[1] = max attempts, ARGV[2] = window seconds.
# Returns {allowed (0/1), remaining, ttl}. A counter that somehow lost its
# TTL (e.g. a crash between INCR and EXPIRE on an older release) is given the
# window again instead of blocking its client forever.
_FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local max_attempts = tonumber(ARGV[1])
local window_seconds = tonumber(ARGV[2])

local count = tonumber(redis.call('GET', key) or '0')

if count >= max_attempts then
  local ttl = redis.call('TTL', key)
  if ttl < 0 then
    redis.call('EXPIRE', key, window_seconds)
    ttl = window_seconds
  end
  return {0, 0, ttl}
end

local new_count = redis.call('INCR', key)
local ttl = redis.call('TTL', key)
if new_count == 1 or ttl < 0 then
  redis.call('EXPIRE', key, window_seconds)
  ttl = window_seconds
end

return {1, max_attempts - new_count, ttl}
"""


@dataclass(frozen=True)
class RateLimitPolicy:
    max_attempts: int
    window_seconds: int


def policies_from_settings(settings) -> dict[str, RateLimitPolicy]:
    return {
        "login": RateLimitPolicy(settings.login_max_attempts, settings.login_window_seconds),
        "api": RateLimitPolicy(settings.api_max_attempts, settings.api_window_seconds),
    }


def _reset_at(seconds: int) -> datetime:
    return datetime.now(timezone.utc) + timedelta(seconds=max(seconds, 0))


class RateLimiter:
    def __init__(self, client: aioredis.Redis, policies: dict[str, RateLimitPolicy]) -> None:
        self._redis = client
        self._policies = dict(policies)
        self._script = client.register_script(_FIXED_WINDOW_SCRIPT)

    def policy(self, action: str) -> RateLimitPolicy:
        try:
            return self._policies[action]
        except KeyError:
            raise ValueError(f"Unknown rate-limit action: {action!r}") from None

    def _fail_open(self, policy: RateLimitPolicy) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=policy.max_attempts,
            reset_at=_reset_at(policy.window_seconds),
        )

    async def check(self, identifier: str, action: str = "api") -> RateLimitResult:
        """Count one attempt and say whether it is allowed."""
        policy = self.policy(action)
        key = rate_limit_key(action, identifier)
        try:
            allowed, remaining, ttl = await self._script(
                keys=[key], args=[policy.max_attempts, policy.window_seconds]
            )
        except RedisError as exc:
            logger.warning("Rate limiter unavailable, failing open for %s: %s", key, exc)
            return self._fail_open(policy)

        ttl = int(ttl)
        if not int(allowed):
            retry_after = max(ttl, 1)
            return RateLimitResult(allowed=False, remaining=0, reset_at=_reset_at(retry_after), retry_after=retry_after)
        return RateLimitResult(allowed=True, remaining=max(int(remaining), 0), reset_at=_reset_at(ttl))

    async def status(self, identifier: str, action: str = "api") -> RateLimitResult:
        """Current allowance without consuming an attempt."""
        policy = self.policy(action)
        key = rate_limit_key(action, identifier)
        try:
            pipe = self._redis.pipeline(transaction=False)
            pipe.get(key)
            pipe.ttl(key)
            raw_count, ttl = await pipe.execute()
        except RedisError as exc:
            logger.warning("Rate limiter status unavailable for %s: %s", key, exc)
            return self._fail_open(policy)

        count = int(raw_count or 0)
        ttl = int(ttl) if ttl and int(ttl) > 0 else policy.window_seconds
        if count >= policy.max_attempts:
            return RateLimitResult(allowed=False, remaining=0, reset_at=_reset_at(ttl), retry_after=ttl)
        return RateLimitResult(allowed=True, remaining=policy.max_attempts - count, reset_at=_reset_at(ttl))

    async def reset(self, identifier: str, action: str = "api") -> None:
        """Clear a counter, e.g. the login bucket after a successful sign-in."""
        self.policy(action)
        key = rate_limit_key(action, identifier)
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            logger.warning("Rate limiter reset failed for %s: %s", key, exc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def client_ip(request, trust_proxy_headers: bool = True) -> str:
    """Best-effort client address for rate-limit bucketing.

    Proxy headers are only honoured when the deployment sits behind a proxy
    that overwrites them; otherwise any client could choose its own bucket.
    """
    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        for header in ("x-real-ip", "x-client-ip"):
            value = request.headers.get(header)
            if value and value.strip():
                return value.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def retry_message(retry_after: int) -> str:
    minutes = max(1, math.ceil(retry_after / 60))
    return f"Too many attempts. Please try again in {minutes} minute{'' if minutes == 1 else 's'}."
