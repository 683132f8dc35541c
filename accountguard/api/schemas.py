from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_VALID_ERROR_CODES = frozenset({
    "VALIDATION_ERROR",
    "UNAUTHORIZED",
    "INVALID_CREDENTIALS",
    "FORBIDDEN",
    "NOT_FOUND",
    "CONFLICT",
    "RATE_LIMITED",
    "ACCOUNT_LOCKED",
    "CHALLENGE_EXPIRED",
    "CHALLENGE_EXHAUSTED",
    "INVALID_CODE",
    "INVALID_OR_EXPIRED_TOKEN",
    "CONNECTION_ERROR",
    "INTERNAL_ERROR",
})


def _normalize_unicode(value: str) -> str:
    """NFKC-normalise after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _ApiModel(BaseModel):
    """Accepts camelCase or snake_case keys; responses are dumped in camelCase."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DeviceSignals(_ApiModel):
    """Optional browser signals sent by the login form."""

    screen_width: Optional[int] = Field(default=None, ge=0, le=100_000)
    screen_height: Optional[int] = Field(default=None, ge=0, le=100_000)
    color_depth: Optional[int] = Field(default=None, ge=0, le=64)
    timezone: Optional[str] = Field(default=None, max_length=64)
    language: Optional[str] = Field(default=None, max_length=35)
    platform: Optional[str] = Field(default=None, max_length=64)
    canvas_hash: Optional[str] = Field(default=None, max_length=128)
    gpu_hash: Optional[str] = Field(default=None, max_length=128)


class SignupRequest(_ApiModel):
    email: str
    password: str = Field(..., max_length=128)
    display_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)


class AccountResponse(_ApiModel):
    id: str
    email: str
    display_name: Optional[str] = None
    two_factor_enabled: bool
    email_notifications: bool
    created_at: datetime


class LoginRequest(_ApiModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False
    device: Optional[DeviceSignals] = None
    delivery_method: Literal["email", "sms"] = "email"

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginResponse(_ApiModel):
    requires_two_factor: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    session_id: Optional[str] = None
    account_id: Optional[str] = None
    challenge_id: Optional[str] = None
    delivery_method: Optional[str] = None
    challenge_expires_at: Optional[datetime] = None


class TwoFactorVerifyRequest(_ApiModel):
    challenge_id: str = Field(..., max_length=64)
    code: str = Field(..., min_length=1, max_length=10)
    trust_device: Optional[bool] = None


class TwoFactorResendRequest(_ApiModel):
    challenge_id: str = Field(..., max_length=64)
    method: Optional[Literal["email", "sms"]] = None


class TwoFactorCancelRequest(_ApiModel):
    challenge_id: str = Field(..., max_length=64)


class ChallengeResponse(_ApiModel):
    challenge_id: str
    delivery_method: str
    expires_at: datetime
    delivered: bool


class TokenRefreshRequest(_ApiModel):
    # Falls back to the refresh_token cookie when omitted
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class PasswordChangeRequest(_ApiModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)


class SessionResponse(_ApiModel):
    id: str
    device_id: Optional[str] = None
    device_info: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_accessed: datetime
    expires_at: datetime
    remember_me: bool = False
    is_current: bool = False


class SessionListResponse(_ApiModel):
    items: List[SessionResponse]


class RevokeAllResponse(_ApiModel):
    sessions_revoked: int
    devices_removed: int = 0


class DeviceResponse(_ApiModel):
    id: str
    friendly_name: str
    device_class: str
    browser: str
    os: str
    trusted: bool
    first_seen: datetime
    last_seen: datetime
    last_ip: Optional[str] = None
    location: Optional[str] = None
    trust_score: int
    trust_level: str
    is_current: bool = False


class DeviceListResponse(_ApiModel):
    items: List[DeviceResponse]


class NotificationResponse(_ApiModel):
    id: str
    event_type: str
    severity: str
    title: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    read: bool
    actioned: bool


class NotificationListResponse(_ApiModel):
    items: List[NotificationResponse]
    unread_count: int


class NotificationPreferencesRequest(_ApiModel):
    email_notifications: bool


class SecurityEventResponse(_ApiModel):
    id: str
    event_type: str
    created_at: datetime
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class SecurityEventListResponse(_ApiModel):
    items: List[SecurityEventResponse]
    limit: int
    offset: int
