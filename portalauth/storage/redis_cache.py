from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

# Refill then consume one token; returns 1 when allowed, 0 otherwise
TOKEN_BUCKET_LUA = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])

local state = redis.call('HMGET', bucket, 'tokens', 'ts')
local tokens = tonumber(state[1]) or capacity
local updated = tonumber(state[2]) or now

tokens = math.min(capacity, tokens + math.max(0, now - updated) * rate)

local allowed = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
end

redis.call('HSET', bucket, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate)))
return allowed
"""


def session_key(session_id: str) -> str:
    return f"portal:session:{session_id}"


def rate_limit_key(key: str) -> str:
    # Usernames are user input; hash them into a fixed-size key
    return f"portal:rate:{hashlib.sha256(key.encode()).hexdigest()}"


def seconds_until(expires_at: datetime) -> int:
    """TTL for a mirror entry, at least one second; naive datetimes are UTC."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(1, int(remaining))


class RedisCache:
    """Session mirror and login rate limiting on ``redis.asyncio``.

    The identity store stays authoritative for sessions; this mirror lets other
    portal services check a session id without a database round trip.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        # Sync ping keeps the async pool free of the startup event loop
        pinger = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            pinger.ping()
        finally:
            pinger.close()

    async def cache_session(self, session_id: str, user_id: int, expires_at: datetime) -> None:
        ttl = seconds_until(expires_at)
        await self.client.set(session_key(session_id), str(user_id), ex=ttl)

    async def get_session_user(self, session_id: str) -> Optional[int]:
        raw = await self.client.get(session_key(session_id))
        return int(raw) if raw is not None else None

    async def revoke_session(self, session_id: str) -> None:
        await self.client.delete(session_key(session_id))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        raw = await self._token_bucket(
            keys=[rate_limit_key(key)],
            args=[time.time(), limit / window_seconds, limit],
        )
        return bool(int(raw))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Blocking client with the same awaitable surface as :class:`RedisCache`.

    Used in test mode, where each test drives its own short-lived event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_LUA)

    def verify_connection(self) -> None:
        self.client.ping()

    async def cache_session(self, session_id: str, user_id: int, expires_at: datetime) -> None:
        ttl = seconds_until(expires_at)
        self.client.set(session_key(session_id), str(user_id), ex=ttl)

    async def get_session_user(self, session_id: str) -> Optional[int]:
        raw = self.client.get(session_key(session_id))
        return int(raw) if raw is not None else None

    async def revoke_session(self, session_id: str) -> None:
        self.client.delete(session_key(session_id))

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        raw = self._token_bucket(
            keys=[rate_limit_key(key)],
            args=[time.time(), limit / window_seconds, limit],
        )
        return bool(int(raw))

    async def close(self) -> None:
        self.client.close()
