from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

# (allowed, attempts_in_window, blocked_until_ms)
WindowResult = Tuple[bool, int, int]


class RedisCache:
    """Thin Redis wrapper for rate limits, lockouts and resend cooldowns."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding-window log + lockout marker, evaluated atomically server side.
    # Returns {allowed, count, blocked_until_ms}.
    _SLIDING_WINDOW_SCRIPT = """
local window_key = KEYS[1]
local lock_key = KEYS[2]
local now = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local lockout_ms = tonumber(ARGV[4])
local record = tonumber(ARGV[5])
local member = ARGV[6]

local locked_until = tonumber(redis.call('GET', lock_key))
if locked_until and locked_until > now then
  return {0, redis.call('ZCARD', window_key), locked_until}
end

redis.call('ZREMRANGEBYSCORE', window_key, '-inf', now - window_ms)
local count = redis.call('ZCARD', window_key)

if count >= max_attempts then
  if lockout_ms > 0 then
    locked_until = now + lockout_ms
    redis.call('SET', lock_key, locked_until, 'PX', lockout_ms)
    return {0, count, locked_until}
  end
  local oldest = redis.call('ZRANGE', window_key, 0, 0, 'WITHSCORES')
  return {0, count, tonumber(oldest[2]) + window_ms}
end

if record == 1 then
  redis.call('ZADD', window_key, now, member)
  redis.call('PEXPIRE', window_key, window_ms)
  count = count + 1
end
return {1, count, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def _normalize_rate_key(key: str) -> Tuple[str, str]:
        """Hash the subject so user-controlled text cannot collide across keys."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate_limit:{digest}", f"lockout:{digest}"

    @staticmethod
    def _cooldown_key(key: str) -> str:
        return f"cooldown:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _window_args(
        window_ms: int, max_attempts: int, lockout_ms: int, record: bool
    ) -> list:
        now = RedisCache._now_ms()
        return [
            now,
            window_ms,
            max_attempts,
            max(0, lockout_ms),
            1 if record else 0,
            f"{now}-{uuid.uuid4().hex}",
        ]

    @staticmethod
    def _parse_window_result(raw) -> WindowResult:
        allowed, count, blocked_until = raw
        return bool(int(allowed)), int(count), int(blocked_until or 0)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def sliding_window_hit(
        self,
        key: str,
        *,
        window_ms: int,
        max_attempts: int,
        lockout_ms: int = 0,
        record: bool = False,
    ) -> WindowResult:
        window_key, lock_key = self._normalize_rate_key(key)
        raw = await self._sliding_window(
            keys=[window_key, lock_key],
            args=self._window_args(window_ms, max_attempts, lockout_ms, record),
        )
        return self._parse_window_result(raw)

    async def record_attempt(self, key: str, *, window_ms: int) -> int:
        window_key, _ = self._normalize_rate_key(key)
        now = self._now_ms()
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(window_key, "-inf", now - window_ms)
        pipe.zadd(window_key, {f"{now}-{uuid.uuid4().hex}": now})
        pipe.pexpire(window_key, window_ms)
        pipe.zcard(window_key)
        results = await pipe.execute()
        return int(results[-1])

    async def reset_rate_limit(self, key: str) -> None:
        window_key, lock_key = self._normalize_rate_key(key)
        await self.client.delete(window_key, lock_key)

    async def acquire_cooldown(self, key: str, seconds: int) -> Tuple[bool, int]:
        """``SET NX EX``; returns (acquired, seconds until the holder expires)."""
        cooldown_key = self._cooldown_key(key)
        acquired = await self.client.set(cooldown_key, "1", nx=True, ex=max(1, seconds))
        if acquired:
            return True, 0
        ttl = await self.client.ttl(cooldown_key)
        return False, max(1, int(ttl or 1))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def sliding_window_hit(
        self,
        key: str,
        *,
        window_ms: int,
        max_attempts: int,
        lockout_ms: int = 0,
        record: bool = False,
    ) -> WindowResult:
        window_key, lock_key = RedisCache._normalize_rate_key(key)
        raw = self._sliding_window(
            keys=[window_key, lock_key],
            args=RedisCache._window_args(window_ms, max_attempts, lockout_ms, record),
        )
        return RedisCache._parse_window_result(raw)

    async def record_attempt(self, key: str, *, window_ms: int) -> int:
        window_key, _ = RedisCache._normalize_rate_key(key)
        now = RedisCache._now_ms()
        pipe = self.client.pipeline(transaction=True)
        pipe.zremrangebyscore(window_key, "-inf", now - window_ms)
        pipe.zadd(window_key, {f"{now}-{uuid.uuid4().hex}": now})
        pipe.pexpire(window_key, window_ms)
        pipe.zcard(window_key)
        return int(pipe.execute()[-1])

    async def reset_rate_limit(self, key: str) -> None:
        window_key, lock_key = RedisCache._normalize_rate_key(key)
        self.client.delete(window_key, lock_key)

    async def acquire_cooldown(self, key: str, seconds: int) -> Tuple[bool, int]:
        cooldown_key = RedisCache._cooldown_key(key)
        if self.client.set(cooldown_key, "1", nx=True, ex=max(1, seconds)):
            return True, 0
        ttl = self.client.ttl(cooldown_key)
        return False, max(1, int(ttl or 1))

    async def close(self) -> None:
        self.client.close()


CacheBackend = Optional[RedisCache | SyncRedisCache]
