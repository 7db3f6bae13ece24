from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume for a token bucket stored as a hash.
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

# Record a failed second-factor attempt; lock out once the threshold is hit.
_TWO_FACTOR_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end
local attempts = redis.call('INCR', KEYS[2])
redis.call('EXPIRE', KEYS[2], ARGV[2])
local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end
return {0, attempts}
"""


def _rate_key(key: str, tenant_id: Optional[str]) -> str:
    """Hash rate-limit subjects so user input cannot collide across delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    tenant_prefix = f"{tenant_id}:" if tenant_id else ""
    return f"rate:{tenant_prefix}{digest}"


def _two_factor_keys(account_id: str) -> tuple[str, str]:
    return f"2fa:lockout:{account_id}", f"2fa:attempts:{account_id}"


class RedisCache:
    """Redis wrapper for rate limits and second-factor lockouts."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._two_factor_attempt = self.client.register_script(_TWO_FACTOR_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        """Consume from a token bucket; returns ``(allowed, remaining, reset_seconds)``."""
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[_rate_key(key, tenant_id)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def check_two_factor_lockout(self, account_id: str) -> bool:
        lockout_key, _ = _two_factor_keys(account_id)
        return bool(await self.client.exists(lockout_key))

    async def record_two_factor_failure(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        """Atomically count a failed code; returns ``(locked_out, attempts)``."""
        result = await self._two_factor_attempt(
            keys=list(_two_factor_keys(account_id)),
            args=[max_attempts, lockout_seconds],
        )
        return bool(result[0]), int(result[1])

    async def clear_two_factor_attempts(self, account_id: str) -> None:
        _, attempts_key = _two_factor_keys(account_id)
        await self.client.delete(attempts_key)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable surface.

    Used in tests so the client is not bound to a pytest-created event loop.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._two_factor_attempt = self.client.register_script(_TWO_FACTOR_ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[_rate_key(key, tenant_id)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    async def check_two_factor_lockout(self, account_id: str) -> bool:
        lockout_key, _ = _two_factor_keys(account_id)
        return bool(self.client.exists(lockout_key))

    async def record_two_factor_failure(
        self, account_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> tuple[bool, int]:
        result = self._two_factor_attempt(
            keys=list(_two_factor_keys(account_id)),
            args=[max_attempts, lockout_seconds],
        )
        return bool(result[0]), int(result[1])

    async def clear_two_factor_attempts(self, account_id: str) -> None:
        _, attempts_key = _two_factor_keys(account_id)
        self.client.delete(attempts_key)

    async def close(self) -> None:
        self.client.close()
