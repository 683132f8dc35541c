from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from accountguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = list(value)
    else:
        items = str(value).split(",")
    return [str(item).strip() for item in items if str(item).strip()]


class Settings(BaseModel):
    """Runtime settings for the account security service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/accountguard", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/accountguard", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours (in-process fallbacks, runtime reset).",
    )

    # Tokens
    token_secret: str = env_field(None, "TOKEN_SECRET", validate_default=True)
    token_issuer: str = env_field("accountguard", "TOKEN_ISSUER")
    token_audience: str = env_field("accountguard-clients", "TOKEN_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES")
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES"
    )
    remember_me_refresh_ttl_minutes: int = env_field(
        30 * 24 * 60,
        "REMEMBER_ME_REFRESH_TTL_MINUTES",
        description="Refresh token TTL when the user ticks 'remember me'",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Brute-force defence
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )
    login_rate_limit_max_attempts: int = env_field(5, "LOGIN_RATE_LIMIT_MAX_ATTEMPTS")
    login_lockout_seconds: int = env_field(30 * 60, "LOGIN_LOCKOUT_SECONDS")
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Allow requests when the rate-limit store is unreachable",
    )

    # Second factor
    two_factor_code_ttl_minutes: int = env_field(10, "TWO_FACTOR_CODE_TTL_MINUTES")
    two_factor_max_attempts: int = env_field(5, "TWO_FACTOR_MAX_ATTEMPTS")
    two_factor_code_length: int = env_field(6, "TWO_FACTOR_CODE_LENGTH")
    two_factor_resend_interval_seconds: int = env_field(
        30, "TWO_FACTOR_RESEND_INTERVAL_SECONDS"
    )

    # Risk signals
    risk_known_bad_ips: list[str] = env_field([], "RISK_KNOWN_BAD_IPS")
    geoip_networks: list[str] = env_field(
        [],
        "GEOIP_NETWORKS",
        description="Comma separated cidr=COUNTRY pairs used to resolve client location",
    )
    geoip_country_header: Optional[str] = env_field(None, "GEOIP_COUNTRY_HEADER")
    device_similarity_threshold: Optional[int] = env_field(
        None,
        "DEVICE_SIMILARITY_THRESHOLD",
        description="Treat fingerprints at or above this similarity (0-100) as the same device",
    )

    # Delivery
    smtp_host: Optional[str] = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: Optional[str] = env_field(None, "SMTP_USER")
    smtp_password: Optional[str] = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: Optional[str] = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Account Security", "EMAIL_FROM_NAME")
    sms_gateway_url: Optional[str] = env_field(None, "SMS_GATEWAY_URL")
    sms_gateway_token: Optional[str] = env_field(None, "SMS_GATEWAY_TOKEN")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    auth_request_timeout_seconds: float = env_field(
        5.0,
        "AUTH_REQUEST_TIMEOUT_SECONDS",
        description="Deadline covering store and KV round trips for login and 2FA",
    )
    delivery_wait_seconds: float = env_field(
        3.0,
        "DELIVERY_WAIT_SECONDS",
        description="How long an auth response waits on a code or alert send",
    )
    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000"], "CORS_ALLOW_ORIGINS"
    )
    challenge_cleanup_interval_seconds: int = env_field(
        300,
        "CHALLENGE_CLEANUP_INTERVAL_SECONDS",
        description="How often the app expires stale two-factor challenges; 0 disables",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("risk_known_bad_ips", "geoip_networks", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> list[str]:
        return _split_csv(value)

    @field_validator("device_similarity_threshold", mode="before")
    @classmethod
    def _parse_threshold(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        threshold = int(value)
        if not 0 <= threshold <= 100:
            raise ValueError("device_similarity_threshold must be within 0-100")
        return threshold

    @field_validator("two_factor_code_ttl_minutes")
    @classmethod
    def _clamp_code_ttl(cls, value: int) -> int:
        # One-time codes live between 5 and 10 minutes
        return min(10, max(5, int(value)))

    @field_validator("two_factor_code_length")
    @classmethod
    def _validate_code_length(cls, value: int) -> int:
        if not 4 <= int(value) <= 10:
            raise ValueError("two_factor_code_length must be within 4-10")
        return int(value)

    @field_validator("token_secret")
    @classmethod
    def _ensure_token_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/accountguard"))
        secret_path = fs_root / ".token_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            pass
        except OSError as exc:
            logger.warning(
                "token_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "token_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: Optional[str] = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".token_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "token_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist token secret; set TOKEN_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
