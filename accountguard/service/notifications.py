from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from accountguard.logging import get_logger
from accountguard.service.delivery import DeliveryContent, DeliveryService
from accountguard.service.errors import NotFoundError
from accountguard.storage.base import SecurityStore
from accountguard.storage.errors import StoreUnavailable
from accountguard.storage.models import (
    Account,
    DeliveryChannel,
    SecurityNotification,
    Severity,
    new_id,
)

logger = get_logger(__name__)


class NotificationMetadata(BaseModel):
    """Known metadata fields for security notifications plus an open ``extra`` map."""

    model_config = ConfigDict(extra="forbid")

    ip: Optional[str] = None
    location: Optional[str] = None
    device_name: Optional[str] = None
    device_id: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    risk_score: Optional[int] = None
    risk_factors: Optional[List[str]] = None
    attempts: Optional[int] = None
    session_id: Optional[str] = None
    extra: Dict[str, str] = Field(default_factory=dict)

    def to_record(self) -> dict:
        return self.model_dump(exclude_none=True)


@dataclass(frozen=True)
class NotificationTemplate:
    severity: Severity
    title: str
    message: str


NOTIFICATION_CATALOGUE: Dict[str, NotificationTemplate] = {
    "new_device_login": NotificationTemplate(
        Severity.WARNING,
        "New device sign-in",
        "Your account was accessed from a new device: {device_name}.",
    ),
    "new_location_login": NotificationTemplate(
        Severity.WARNING,
        "Sign-in from a new location",
        "Your account was accessed from a new location: {location}.",
    ),
    "2fa_disabled": NotificationTemplate(
        Severity.WARNING,
        "Two-factor authentication disabled",
        "Two-factor authentication was turned off for your account.",
    ),
    "multiple_failed_attempts": NotificationTemplate(
        Severity.WARNING,
        "Multiple failed sign-in attempts",
        "We blocked sign-in after {attempts} failed attempts. Sign-in is paused for a while.",
    ),
    "unusual_activity": NotificationTemplate(
        Severity.WARNING,
        "Unusual activity",
        "We noticed unusual activity on your account.",
    ),
    "suspicious_login": NotificationTemplate(
        Severity.CRITICAL,
        "Suspicious sign-in blocked",
        "A sign-in attempt from {ip} was blocked (risk score {risk_score}).",
    ),
    "password_changed": NotificationTemplate(
        Severity.CRITICAL,
        "Password changed",
        "Your password was changed. If this was not you, secure your account immediately.",
    ),
    "email_changed": NotificationTemplate(
        Severity.CRITICAL,
        "Email address changed",
        "The email address on your account was changed.",
    ),
    "account_locked": NotificationTemplate(
        Severity.CRITICAL,
        "Account temporarily locked",
        "Your account was locked after a high-risk sign-in attempt.",
    ),
    "2fa_enabled": NotificationTemplate(
        Severity.INFO,
        "Two-factor authentication enabled",
        "Two-factor authentication is now on for your account.",
    ),
    "device_removed": NotificationTemplate(
        Severity.INFO,
        "Device removed",
        "{device_name} was removed from your account and signed out.",
    ),
}

# Warning-level events important enough to reach the inbox.
EMAIL_WARNING_EVENTS = frozenset(
    {"new_device_login", "new_location_login", "multiple_failed_attempts", "suspicious_login"}
)


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return "unknown"


def should_email(event_type: str, severity: Severity) -> bool:
    if severity is Severity.CRITICAL:
        return True
    return severity is Severity.WARNING and event_type in EMAIL_WARNING_EVENTS


class NotificationDispatcher:
    """Persist security notifications and email the ones that warrant it.

    Delivery and persistence failures are logged and swallowed so the
    calling auth operation never fails because of a notification.
    """

    def __init__(
        self,
        store: SecurityStore,
        delivery: DeliveryService,
        *,
        app_base_url: str = "http://localhost:8000",
    ) -> None:
        self.store = store
        self.delivery = delivery
        self.app_base_url = app_base_url.rstrip("/")

    def render(
        self, event_type: str, metadata: Optional[NotificationMetadata] = None
    ) -> NotificationTemplate:
        template = NOTIFICATION_CATALOGUE.get(event_type)
        if template is None:
            raise ValueError(f"unknown notification event: {event_type}")
        values = _Defaults(metadata.to_record() if metadata else {})
        return NotificationTemplate(
            template.severity, template.title, template.message.format_map(values)
        )

    async def notify(
        self,
        account: Account,
        event_type: str,
        metadata: Optional[NotificationMetadata] = None,
    ) -> Optional[SecurityNotification]:
        metadata = metadata or NotificationMetadata()
        rendered = self.render(event_type, metadata)
        notification = SecurityNotification(
            id=new_id(),
            account_id=account.id,
            event_type=event_type,
            severity=rendered.severity,
            title=rendered.title,
            message=rendered.message,
            metadata=metadata.to_record(),
        )
        try:
            self.store.create_notification(notification)
        except StoreUnavailable as exc:
            logger.error(
                "notification_persist_failed", event_type=event_type, error=str(exc)
            )
            return None

        if not should_email(event_type, rendered.severity):
            return notification
        if not account.email_notifications:
            logger.info(
                "notification_email_opted_out", account_id=account.id, event_type=event_type
            )
            return notification

        content = DeliveryContent(
            subject=f"Security alert: {rendered.title}",
            text=(
                f"{rendered.message}\n\n"
                f"Review your account activity: {self.app_base_url}/settings/security\n"
            ),
        )
        try:
            sent = await self.delivery.send(account.email, DeliveryChannel.EMAIL, content)
        except Exception as exc:
            logger.error(
                "notification_email_failed",
                event_type=event_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return notification
        if sent:
            notification.emailed = True
            try:
                self.store.mark_notification(notification.id, account.id, emailed=True)
            except StoreUnavailable as exc:
                logger.warning("notification_mark_emailed_failed", error=str(exc))
        return notification

    def list(
        self, account_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> List[SecurityNotification]:
        return self.store.list_notifications(account_id, unread_only=unread_only, limit=limit)

    def mark_read(self, notification_id: str, account_id: str) -> None:
        if not self.store.mark_notification(notification_id, account_id, read=True):
            raise NotFoundError("notification not found")

    def mark_actioned(self, notification_id: str, account_id: str) -> None:
        if not self.store.mark_notification(notification_id, account_id, actioned=True):
            raise NotFoundError("notification not found")

    def mark_all_read(self, account_id: str) -> int:
        return self.store.mark_all_notifications_read(account_id)

    def unread_count(self, account_id: str) -> int:
        return self.store.count_unread_notifications(account_id)
