from __future__ import annotations

import hashlib
import threading
import time
from typing import Callable, Dict, Optional, Tuple, Union

from orgauth.storage.redis_cache import attempts_key, lockout_key


class MemoryCache:
    """In-process stand-in for RedisCache used when Redis is not configured.

    Expiry is evaluated lazily on access against ``clock``, so tests can
    advance time without sleeping.
    """

    def __init__(
        self, clock: Optional[Callable[[], float]] = None, sweep_every: int = 256
    ):
        self._clock = clock or time.monotonic
        self._lock = threading.RLock()
        self._values: Dict[str, Tuple[str, float]] = {}
        # key -> (tokens, last refill, time the bucket is full again)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._sweep_every = max(1, sweep_every)
        self._writes_since_sweep = 0

    def _live(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return value

    def _maybe_sweep(self) -> None:
        self._writes_since_sweep += 1
        if self._writes_since_sweep < self._sweep_every:
            return
        self._writes_since_sweep = 0
        now = self._clock()
        for key in [k for k, (_, exp) in self._values.items() if now >= exp]:
            del self._values[key]
        for key in [k for k, b in self._buckets.items() if now >= b[2]]:
            del self._buckets[key]

    def verify_connection(self) -> None:
        return None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + max(1, int(ttl_seconds)))
            self._maybe_sweep()

    async def delete(self, key: str) -> None:
        with self._lock:
            self._values.pop(key, None)

    async def consume_if_equal(self, key: str, expected: str) -> Optional[bool]:
        with self._lock:
            current = self._live(key)
            if current is None:
                return None
            if current != expected:
                return False
            self._values.pop(key, None)
            return True

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        safe_key = "rate:" + hashlib.sha256(key.encode()).hexdigest()
        refill_rate = float(limit) / float(window_seconds)
        cost = max(1, cost)
        with self._lock:
            now = self._clock()
            self._maybe_sweep()
            tokens, last, _ = self._buckets.get(safe_key, (float(limit), now, now))
            tokens = min(float(limit), tokens + max(0.0, now - last) * refill_rate)
            if tokens < cost:
                self._buckets[safe_key] = (tokens, now, now + (limit - tokens) / refill_rate)
                reset_after = int(-(-(cost - tokens) // refill_rate))
                allowed = False
            else:
                tokens -= cost
                self._buckets[safe_key] = (tokens, now, now + (limit - tokens) / refill_rate)
                reset_after = 0
                allowed = True
        if return_remaining:
            return (allowed, max(0, int(tokens)), reset_after)
        return allowed

    async def check_attempt_lockout(self, user_id: str) -> bool:
        with self._lock:
            return self._live(lockout_key(user_id)) is not None

    async def record_failed_attempt(
        self, user_id: str, max_attempts: int = 5, lockout_seconds: int = 300
    ) -> Tuple[bool, int]:
        with self._lock:
            if self._live(lockout_key(user_id)) is not None:
                return (True, -1)
            key = attempts_key(user_id)
            current = self._live(key)
            attempts = int(current) + 1 if current is not None else 1
            if attempts >= max_attempts:
                self._values[lockout_key(user_id)] = (
                    "1",
                    self._clock() + lockout_seconds,
                )
                self._values.pop(key, None)
                return (True, attempts)
            expires_at = (
                self._values[key][1]
                if current is not None
                else self._clock() + lockout_seconds
            )
            self._values[key] = (str(attempts), expires_at)
            return (False, attempts)

    async def clear_attempts(self, user_id: str) -> None:
        with self._lock:
            self._values.pop(attempts_key(user_id), None)

    async def close(self) -> None:
        with self._lock:
            self._values.clear()
            self._buckets.clear()
