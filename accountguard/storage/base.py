from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from accountguard.storage.models import (
    Account,
    ChallengeStatus,
    DeliveryChannel,
    GeoLocation,
    LoginAttempt,
    SecurityEvent,
    SecurityNotification,
    Session,
    TrustedDevice,
    TwoFactorChallenge,
)


class SecurityStore(Protocol):
    """Persistence surface shared by ``MemoryStore`` and ``PostgresStore``."""

    def create_account(
        self, email: str, *, display_name: Optional[str] = None, phone: Optional[str] = None
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields) -> Optional[Account]: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt: ...

    def list_account_attempts(self, account_id: str, *, limit: int = 200) -> List[LoginAttempt]: ...

    def list_attempts_by_email(self, email: str, *, since: datetime) -> List[LoginAttempt]: ...

    def list_attempts_by_ip(self, ip: str, *, since: datetime) -> List[LoginAttempt]: ...

    def touch_device(
        self,
        account_id: str,
        fingerprint_hash: str,
        *,
        friendly_name: str,
        device_class: str,
        browser: str,
        os: str,
        ip: Optional[str],
        location: Optional[GeoLocation] = None,
    ) -> tuple[TrustedDevice, bool]: ...

    def get_device(self, device_id: str, account_id: str) -> Optional[TrustedDevice]: ...

    def get_device_by_fingerprint(
        self, account_id: str, fingerprint_hash: str
    ) -> Optional[TrustedDevice]: ...

    def list_devices(self, account_id: str) -> List[TrustedDevice]: ...

    def set_device_trusted(
        self, device_id: str, account_id: str, trusted: bool
    ) -> Optional[TrustedDevice]: ...

    def delete_device(
        self, device_id: str, account_id: str, *, reason: str
    ) -> Optional[List[str]]: ...

    def delete_devices_except(
        self, account_id: str, keep_device_id: Optional[str], *, reason: str
    ) -> tuple[int, List[str]]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_active_sessions(self, account_id: str) -> List[Session]: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_id: str,
        access_token_id: str,
        refresh_token_id: str,
        expires_at: datetime,
        refresh_expires_at: Optional[datetime] = None,
    ) -> Optional[Session]: ...

    def touch_session(self, session_id: str) -> None: ...

    def deactivate_session(self, session_id: str, account_id: str, *, reason: str) -> bool: ...

    def deactivate_account_sessions(
        self, account_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> List[str]: ...

    def create_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge: ...

    def get_challenge(self, challenge_id: str) -> Optional[TwoFactorChallenge]: ...

    def consume_challenge_attempt(self, challenge_id: str) -> Optional[TwoFactorChallenge]: ...

    def resolve_challenge(
        self,
        challenge_id: str,
        status: ChallengeStatus,
        *,
        trust_device_requested: Optional[bool] = None,
    ) -> bool: ...

    def update_challenge_delivery(
        self,
        challenge_id: str,
        *,
        code_hash: str,
        delivery_method: DeliveryChannel,
        sent_at: datetime,
        expires_at: datetime,
    ) -> bool: ...

    def expire_stale_challenges(self, now: Optional[datetime] = None) -> int: ...

    def create_notification(self, notification: SecurityNotification) -> SecurityNotification: ...

    def list_notifications(
        self, account_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> List[SecurityNotification]: ...

    def mark_notification(
        self,
        notification_id: str,
        account_id: str,
        *,
        read: Optional[bool] = None,
        actioned: Optional[bool] = None,
        emailed: Optional[bool] = None,
    ) -> bool: ...

    def mark_all_notifications_read(self, account_id: str) -> int: ...

    def count_unread_notifications(self, account_id: str) -> int: ...

    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self,
        account_id: str,
        *,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SecurityEvent]: ...
