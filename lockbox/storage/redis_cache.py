from __future__ import annotations

import hashlib
import json
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis


def introspection_key(token_hash: str) -> str:
    return f"token:{token_hash}:introspection"


def challenge_key(challenge_hash: str) -> str:
    return f"auth:2fa:challenge:{challenge_hash}"


def _normalize_rate_key(key: str, tenant_id: Optional[str]) -> str:
    """Hash rate-limit subjects so user input cannot inject key delimiters."""
    digest = hashlib.sha256(key.encode()).hexdigest()
    tenant_prefix = f"{tenant_id}:" if tenant_id else ""
    return f"rate:{tenant_prefix}{digest}"


def _decode(raw: Optional[str]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper for introspection entries, 2FA challenges and rate limits."""

    # Atomic refill + consume
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
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

    _GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._getdel = self.client.register_script(self._GETDEL_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client avoids binding the async pool to a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get_introspection(self, token_hash: str) -> Optional[dict]:
        return _decode(await self.client.get(introspection_key(token_hash)))

    async def set_introspection(self, token_hash: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(
            introspection_key(token_hash), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_introspection(self, *token_hashes: str) -> int:
        if not token_hashes:
            return 0
        return int(await self.client.delete(*(introspection_key(h) for h in token_hashes)))

    async def set_two_factor_challenge(
        self, challenge_hash: str, payload: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            challenge_key(challenge_hash), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def get_two_factor_challenge(self, challenge_hash: str) -> Optional[dict]:
        return _decode(await self.client.get(challenge_key(challenge_hash)))

    async def pop_two_factor_challenge(self, challenge_hash: str) -> Optional[dict]:
        """Atomically get and delete a challenge so it can be redeemed once."""
        return _decode(await self._getdel(keys=[challenge_key(challenge_hash)]))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket rate limit evaluated atomically in Lua."""
        safe_key = _normalize_rate_key(key, tenant_id)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[safe_key],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        """Close the connection pool. Call on shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a blocking client internally to avoid event loop binding issues
    under pytest, but exposes the same awaitable interface as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._getdel = self.client.register_script(RedisCache._GETDEL_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def get_introspection(self, token_hash: str) -> Optional[dict]:
        return _decode(self.client.get(introspection_key(token_hash)))

    async def set_introspection(self, token_hash: str, payload: dict, ttl_seconds: int) -> None:
        self.client.set(
            introspection_key(token_hash), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def delete_introspection(self, *token_hashes: str) -> int:
        if not token_hashes:
            return 0
        return int(self.client.delete(*(introspection_key(h) for h in token_hashes)))

    async def set_two_factor_challenge(
        self, challenge_hash: str, payload: dict, ttl_seconds: int
    ) -> None:
        self.client.set(
            challenge_key(challenge_hash), json.dumps(payload), ex=max(1, int(ttl_seconds))
        )

    async def get_two_factor_challenge(self, challenge_hash: str) -> Optional[dict]:
        return _decode(self.client.get(challenge_key(challenge_hash)))

    async def pop_two_factor_challenge(self, challenge_hash: str) -> Optional[dict]:
        return _decode(self._getdel(keys=[challenge_key(challenge_hash)]))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        tenant_id: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = _normalize_rate_key(key, tenant_id)
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        allowed_bool = bool(int(allowed))
        remaining = max(0, int(float(tokens)))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def close(self) -> None:
        self.client.close()
