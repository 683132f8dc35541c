from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from accountguard.logging import get_logger
from accountguard.storage.base import SecurityStore
from accountguard.storage.errors import StoreUnavailable
from accountguard.storage.models import SecurityEvent, new_id, utcnow

logger = get_logger(__name__)


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_BLOCKED = "LOGIN_BLOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    TWO_FACTOR_ISSUED = "TWO_FACTOR_ISSUED"
    TWO_FACTOR_VERIFIED = "TWO_FACTOR_VERIFIED"
    TWO_FACTOR_FAILED = "TWO_FACTOR_FAILED"
    TWO_FACTOR_ENABLED = "TWO_FACTOR_ENABLED"
    TWO_FACTOR_DISABLED = "TWO_FACTOR_DISABLED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    DEVICE_TRUSTED = "DEVICE_TRUSTED"
    DEVICE_UNTRUSTED = "DEVICE_UNTRUSTED"
    DEVICE_REVOKED = "DEVICE_REVOKED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSIONS_REVOKED_ALL = "SESSIONS_REVOKED_ALL"
    REFRESH_TOKEN_REUSE = "REFRESH_TOKEN_REUSE"
    LOGOUT = "LOGOUT"


class SecurityAuditLog:
    """Append-only record of security-relevant state changes."""

    def __init__(self, store: SecurityStore) -> None:
        self.store = store

    def record(
        self,
        event_type: SecurityEventType,
        *,
        account_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        **details: Any,
    ) -> Optional[SecurityEvent]:
        event = SecurityEvent(
            id=new_id(),
            event_type=event_type.value,
            created_at=utcnow(),
            account_id=account_id,
            ip=ip,
            user_agent=user_agent,
            details={k: v for k, v in details.items() if v is not None},
        )
        logger.info(
            "security_event",
            event_type=event.event_type,
            account_id=account_id,
            **event.details,
        )
        try:
            return self.store.append_security_event(event)
        except StoreUnavailable as exc:
            # the structured log line above is the fallback record
            logger.error(
                "security_event_persist_failed", event_type=event.event_type, error=str(exc)
            )
            return None

    def list(
        self,
        account_id: str,
        *,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SecurityEvent]:
        return self.store.list_security_events(
            account_id, event_type=event_type, limit=limit, offset=offset
        )
