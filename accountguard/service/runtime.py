from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from accountguard.config import get_settings, reset_settings_cache
from accountguard.logging import get_logger
from accountguard.service.audit import SecurityAuditLog
from accountguard.service.auth import AuthService
from accountguard.service.delivery import DeliveryService
from accountguard.service.devices import DeviceRegistry
from accountguard.service.geo import GeoResolver, IPReputation
from accountguard.service.notifications import NotificationDispatcher
from accountguard.service.rate_limit import RateLimiter, RateLimitPolicy
from accountguard.service.risk import RiskEngine
from accountguard.service.sessions import SessionManager
from accountguard.service.two_factor import TwoFactorService
from accountguard.storage.memory import MemoryStore
from accountguard.storage.postgres import PostgresStore
from accountguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        store_type = "memory" if use_memory else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            if use_memory:
                # test runs never leave snapshots behind
                fs_root = None if self.settings.test_mode else self.settings.shared_fs_root
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache | SyncRedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for login rate limits, lockouts and resend cooldowns; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; rate limits and cooldowns "
                    "are tracked in this process only."
                ),
                mode=fallback_mode,
            )

        self.rate_limiter = RateLimiter(
            self.cache,
            default_policy=RateLimitPolicy(
                window_seconds=self.settings.login_rate_limit_window_seconds,
                max_attempts=self.settings.login_rate_limit_max_attempts,
                lockout_seconds=self.settings.login_lockout_seconds,
            ),
            fail_open=self.settings.rate_limit_fail_open,
        )
        self.delivery = DeliveryService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            sms_gateway_url=self.settings.sms_gateway_url,
            sms_gateway_token=self.settings.sms_gateway_token,
        )
        self.audit = SecurityAuditLog(self.store)
        self.devices = DeviceRegistry(self.store)
        self.geo = GeoResolver(
            self.settings.geoip_networks, country_header=self.settings.geoip_country_header
        )
        self.risk = RiskEngine(
            self.store,
            reputation=IPReputation(self.settings.risk_known_bad_ips),
            similarity_threshold=self.settings.device_similarity_threshold,
        )
        self.notifications = NotificationDispatcher(
            self.store, self.delivery, app_base_url=self.settings.app_base_url
        )
        self.sessions = SessionManager(self.store, self.settings, audit=self.audit)
        self.two_factor = TwoFactorService(
            self.store,
            self.rate_limiter,
            self.delivery,
            self.settings,
            devices=self.devices,
            audit=self.audit,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            rate_limiter=self.rate_limiter,
            risk=self.risk,
            devices=self.devices,
            two_factor=self.two_factor,
            sessions=self.sessions,
            notifications=self.notifications,
            audit=self.audit,
            geo=self.geo,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.delivery.email_configured,
            sms_configured=self.delivery.sms_configured,
            geoip_networks=len(self.settings.geoip_networks),
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store:
            close_store()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the fast path skips the lock once the runtime
    exists, the slow path re-checks under the lock before constructing.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache | SyncRedisCache) -> None:
    try:
        if isinstance(cache, SyncRedisCache):
            cache.client.close()
            return
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(cache.close())
        except RuntimeError:
            asyncio.run(cache.close())
    except Exception as exc:
        # connection may already be gone
        logger.debug("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
