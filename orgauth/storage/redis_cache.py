from __future__ import annotations

import hashlib
import time
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from orgauth.storage.errors import CacheUnavailable


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        raise CacheUnavailable(f"redis {operation} failed: {exc}") from exc


def attempts_key(user_id: str) -> str:
    return f"otp:attempts:{user_id}"


def lockout_key(user_id: str) -> str:
    return f"otp:lockout:{user_id}"


class RedisCache:
    """Redis-backed ephemeral store for session validity, challenges and throttles."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

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

    # Returns 1 when matched (and deleted), 0 on mismatch, -1 when missing
    _CONSUME_IF_EQUAL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
  return -1
end
if value == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    _FAILED_ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
    redis.call('EXPIRE', KEYS[2], ARGV[2])
end

local max_attempts = tonumber(ARGV[1])
if attempts >= max_attempts then
    redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
    redis.call('DEL', KEYS[2])
    return {1, attempts}
end

return {0, attempts}
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
        self._consume_if_equal = self.client.register_script(
            self._CONSUME_IF_EQUAL_SCRIPT
        )
        self._failed_attempt = self.client.register_script(self._FAILED_ATTEMPT_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate limit subjects so caller-supplied ids cannot collide."""

        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    @staticmethod
    def _consume_result(raw: int) -> Optional[bool]:
        result = int(raw)
        if result < 0:
            return None
        return result == 1

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _translate_errors("set"):
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        with _translate_errors("delete"):
            await self.client.delete(key)

    async def consume_if_equal(self, key: str, expected: str) -> Optional[bool]:
        """Atomically delete ``key`` when it holds ``expected``.

        Returns True when matched, False on mismatch (entry kept) and None
        when the key is missing or expired.
        """
        with _translate_errors("consume"):
            raw = await self._consume_if_equal(keys=[key], args=[expected])
        return self._consume_result(raw)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Token bucket refilling ``limit`` tokens per ``window_seconds``."""

        safe_key = self._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        with _translate_errors("rate_limit"):
            allowed, tokens, reset_after = await self._token_bucket(
                keys=[safe_key],
                args=[time.time(), refill_rate, limit, max(1, cost)],
            )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def check_attempt_lockout(self, user_id: str) -> bool:
        with _translate_errors("lockout_check"):
            return bool(await self.client.exists(lockout_key(user_id)))

    async def record_failed_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        """Atomically count a failed verification and trigger lockout.

        Returns (locked_out, attempts); attempts is -1 when the user was
        already locked out.
        """
        with _translate_errors("record_attempt"):
            result = await self._failed_attempt(
                keys=[lockout_key(user_id), attempts_key(user_id)],
                args=[max_attempts, lockout_seconds],
            )
        return (bool(int(result[0])), int(result[1]))

    async def clear_attempts(self, user_id: str) -> None:
        with _translate_errors("clear_attempts"):
            await self.client.delete(attempts_key(user_id))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client to avoid event loop binding issues under
    pytest and TestClient, but exposes async methods so callers await it
    exactly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )
        self._consume_if_equal = self._sync_client.register_script(
            RedisCache._CONSUME_IF_EQUAL_SCRIPT
        )
        self._failed_attempt = self._sync_client.register_script(
            RedisCache._FAILED_ATTEMPT_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return self._sync_client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with _translate_errors("set"):
            self._sync_client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def delete(self, key: str) -> None:
        with _translate_errors("delete"):
            self._sync_client.delete(key)

    async def consume_if_equal(self, key: str, expected: str) -> Optional[bool]:
        with _translate_errors("consume"):
            raw = self._consume_if_equal(keys=[key], args=[expected])
        return RedisCache._consume_result(raw)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = RedisCache._normalize_rate_key(key)
        refill_rate = float(limit) / float(window_seconds)
        with _translate_errors("rate_limit"):
            allowed, tokens, reset_after = self._token_bucket(
                keys=[safe_key], args=[time.time(), refill_rate, limit, max(1, cost)]
            )

        allowed_bool = bool(int(allowed))
        remaining = max(0, int(tokens))
        reset_seconds = int(reset_after) if reset_after else 0
        if return_remaining:
            return (allowed_bool, remaining, reset_seconds)
        return allowed_bool

    async def check_attempt_lockout(self, user_id: str) -> bool:
        with _translate_errors("lockout_check"):
            return bool(self._sync_client.exists(lockout_key(user_id)))

    async def record_failed_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        with _translate_errors("record_attempt"):
            result = self._failed_attempt(
                keys=[lockout_key(user_id), attempts_key(user_id)],
                args=[max_attempts, lockout_seconds],
            )
        return (bool(int(result[0])), int(result[1]))

    async def clear_attempts(self, user_id: str) -> None:
        with _translate_errors("clear_attempts"):
            self._sync_client.delete(attempts_key(user_id))

    async def close(self) -> None:
        self._sync_client.close()
