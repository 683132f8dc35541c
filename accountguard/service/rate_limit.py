from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from accountguard.logging import get_logger
from accountguard.storage.redis_cache import CacheBackend

logger = get_logger(__name__)


@dataclass
class RateLimitPolicy:
    window_seconds: int = 15 * 60
    max_attempts: int = 5
    lockout_seconds: int = 30 * 60

    @property
    def window_ms(self) -> int:
        return int(self.window_seconds * 1000)

    @property
    def lockout_ms(self) -> int:
        return int(self.lockout_seconds * 1000)


@dataclass
class RateLimitResult:
    allowed: bool
    attempts: int
    locked_until: Optional[datetime] = None
    retry_after_seconds: int = 0
    degraded: bool = False


def _ms_to_datetime(value_ms: int) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)


class RateLimiter:
    """Sliding-window attempt counter with lockout.

    Backed by Redis when available; otherwise an in-process log guarded by a
    lock (single-process dev/test deployments). Store failures follow the
    ``fail_open`` policy: allow and log when True, deny when False.
    """

    def __init__(
        self,
        cache: CacheBackend,
        *,
        default_policy: Optional[RateLimitPolicy] = None,
        fail_open: bool = True,
    ) -> None:
        self.cache = cache
        self.default_policy = default_policy or RateLimitPolicy()
        self.fail_open = fail_open
        self._lock = threading.Lock()
        self._local_windows: Dict[str, List[Tuple[int, str]]] = {}
        self._local_lockouts: Dict[str, int] = {}
        self._local_cooldowns: Dict[str, int] = {}

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    def _result(
        self, allowed: bool, attempts: int, blocked_until_ms: int, now_ms: int
    ) -> RateLimitResult:
        if allowed or not blocked_until_ms:
            return RateLimitResult(allowed=allowed, attempts=attempts)
        retry_after = max(1, -(-(blocked_until_ms - now_ms) // 1000))
        return RateLimitResult(
            allowed=False,
            attempts=attempts,
            locked_until=_ms_to_datetime(blocked_until_ms),
            retry_after_seconds=retry_after,
        )

    def _store_failure(
        self, operation: str, key: str, exc: Exception, policy: RateLimitPolicy
    ) -> RateLimitResult:
        logger.warning(
            "rate_limit_store_unavailable",
            operation=operation,
            key_prefix=key.split(":", 1)[0],
            error_type=type(exc).__name__,
            error=str(exc),
            fail_open=self.fail_open,
        )
        if self.fail_open:
            return RateLimitResult(allowed=True, attempts=0, degraded=True)
        return RateLimitResult(
            allowed=False,
            attempts=0,
            retry_after_seconds=max(1, policy.window_seconds),
            degraded=True,
        )

    def _local_hit(
        self, key: str, policy: RateLimitPolicy, *, record: bool
    ) -> RateLimitResult:
        now = self._now_ms()
        with self._lock:
            locked_until = self._local_lockouts.get(key)
            entries = self._local_windows.setdefault(key, [])
            if locked_until and locked_until > now:
                return self._result(False, len(entries), locked_until, now)
            if locked_until:
                self._local_lockouts.pop(key, None)
            cutoff = now - policy.window_ms
            entries[:] = [entry for entry in entries if entry[0] > cutoff]
            count = len(entries)
            if count >= policy.max_attempts:
                if policy.lockout_ms > 0:
                    blocked_until = now + policy.lockout_ms
                    self._local_lockouts[key] = blocked_until
                else:
                    blocked_until = entries[0][0] + policy.window_ms
                return self._result(False, count, blocked_until, now)
            if record:
                entries.append((now, uuid.uuid4().hex))
                count += 1
            return RateLimitResult(allowed=True, attempts=count)

    async def check_rate_limit(
        self,
        key: str,
        policy: Optional[RateLimitPolicy] = None,
        *,
        record: bool = False,
    ) -> RateLimitResult:
        """Prune the window, honour any lockout, and compare against the limit.

        With ``record=True`` an allowed check also consumes one slot, making
        check-and-increment a single atomic step.
        """
        policy = policy or self.default_policy
        if self.cache is None:
            return self._local_hit(key, policy, record=record)
        try:
            allowed, attempts, blocked_until = await self.cache.sliding_window_hit(
                key,
                window_ms=policy.window_ms,
                max_attempts=policy.max_attempts,
                lockout_ms=policy.lockout_ms,
                record=record,
            )
        except (RedisError, OSError) as exc:
            return self._store_failure("check", key, exc, policy)
        result = self._result(allowed, attempts, blocked_until, self._now_ms())
        if not result.allowed:
            logger.info(
                "rate_limit_blocked",
                key_prefix=key.split(":", 1)[0],
                attempts=attempts,
                retry_after_seconds=result.retry_after_seconds,
            )
        return result

    async def record_attempt(
        self, key: str, policy: Optional[RateLimitPolicy] = None
    ) -> int:
        """Append one attempt to the window; returns the post-insert count."""
        policy = policy or self.default_policy
        if self.cache is None:
            now = self._now_ms()
            with self._lock:
                entries = self._local_windows.setdefault(key, [])
                cutoff = now - policy.window_ms
                entries[:] = [entry for entry in entries if entry[0] > cutoff]
                entries.append((now, uuid.uuid4().hex))
                return len(entries)
        try:
            return await self.cache.record_attempt(key, window_ms=policy.window_ms)
        except (RedisError, OSError) as exc:
            self._store_failure("record", key, exc, policy)
            return 0

    async def reset(self, key: str) -> None:
        if self.cache is None:
            with self._lock:
                self._local_windows.pop(key, None)
                self._local_lockouts.pop(key, None)
            return
        try:
            await self.cache.reset_rate_limit(key)
        except (RedisError, OSError) as exc:
            logger.warning(
                "rate_limit_reset_failed",
                key_prefix=key.split(":", 1)[0],
                error=str(exc),
            )

    async def acquire_cooldown(self, key: str, seconds: int) -> Tuple[bool, int]:
        """One action per ``seconds`` for ``key``; returns (acquired, retry_after)."""
        if self.cache is None:
            now = self._now_ms()
            with self._lock:
                until = self._local_cooldowns.get(key, 0)
                if until > now:
                    return False, max(1, -(-(until - now) // 1000))
                self._local_cooldowns[key] = now + seconds * 1000
                return True, 0
        try:
            return await self.cache.acquire_cooldown(key, seconds)
        except (RedisError, OSError) as exc:
            result = self._store_failure(
                "cooldown", key, exc, RateLimitPolicy(window_seconds=seconds)
            )
            return result.allowed, result.retry_after_seconds
