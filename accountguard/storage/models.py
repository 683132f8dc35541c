from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Account:
    id: str
    email: str
    display_name: Optional[str] = None
    phone: Optional[str] = None
    two_factor_enabled: bool = False
    email_notifications: bool = True
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class GeoLocation:
    country: str
    city: Optional[str] = None

    def label(self) -> str:
        return f"{self.city}, {self.country}" if self.city else self.country


@dataclass
class DeviceFingerprint:
    """Derived device identity; recomputed from client signals, never stored alone."""

    hash: str
    browser: str = "Unknown"
    os: str = "Unknown"
    device_class: str = "Desktop"
    screen_signature: str = "unknown"
    timezone: str = "unknown"
    language: str = "unknown"
    platform: str = "unknown"
    canvas_hash: Optional[str] = None
    gpu_hash: Optional[str] = None


@dataclass(frozen=True)
class LoginAttempt:
    id: str
    email: str
    ip: str
    user_agent: str
    timestamp: datetime
    success: bool
    account_id: Optional[str] = None
    fingerprint: Optional[DeviceFingerprint] = None
    location: Optional[GeoLocation] = None
    # invalid_credentials, rate_limited, blocked, two_factor_pending, ...
    failure_reason: Optional[str] = None

    @property
    def fingerprint_hash(self) -> Optional[str]:
        return self.fingerprint.hash if self.fingerprint else None


@dataclass
class TrustedDevice:
    id: str
    account_id: str
    fingerprint_hash: str
    friendly_name: str
    device_class: str = "Desktop"
    browser: str = "Unknown"
    os: str = "Unknown"
    trusted: bool = False
    first_seen: datetime = field(default_factory=utcnow)
    last_seen: datetime = field(default_factory=utcnow)
    last_ip: Optional[str] = None
    location: Optional[GeoLocation] = None


@dataclass
class Session:
    id: str
    account_id: str
    access_token_id: str
    refresh_token_id: str
    created_at: datetime
    expires_at: datetime
    refresh_expires_at: datetime
    last_accessed: datetime
    device_id: Optional[str] = None
    device_info: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    is_active: bool = True
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        *,
        access_ttl_minutes: int,
        refresh_ttl_minutes: int,
        device_id: str | None = None,
        device_info: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        remember_me: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            account_id=account_id,
            access_token_id=new_id(),
            refresh_token_id=new_id(),
            created_at=now,
            expires_at=now + timedelta(minutes=access_ttl_minutes),
            refresh_expires_at=now + timedelta(minutes=refresh_ttl_minutes),
            last_accessed=now,
            device_id=device_id,
            device_info=device_info,
            ip=ip,
            user_agent=user_agent,
            remember_me=remember_me,
        )


class ChallengeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class DeliveryChannel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


@dataclass
class TwoFactorChallenge:
    id: str
    account_id: str
    login_attempt_id: Optional[str]
    code_hash: str
    delivery_method: DeliveryChannel
    expires_at: datetime
    attempts_used: int = 0
    max_attempts: int = 5
    trust_device_requested: bool = False
    status: ChallengeStatus = ChallengeStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
    last_sent_at: Optional[datetime] = None
    # Login context carried through to session issuance
    fingerprint: Optional[DeviceFingerprint] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[GeoLocation] = None
    remember_me: bool = False
    risk_score: int = 0


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class SecurityNotification:
    id: str
    account_id: str
    event_type: str
    severity: Severity
    title: str
    message: str
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    read: bool = False
    actioned: bool = False
    emailed: bool = False


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    event_type: str
    created_at: datetime
    account_id: Optional[str] = None
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict = field(default_factory=dict)

