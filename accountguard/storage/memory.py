from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from accountguard.logging import get_logger
from accountguard.storage.common import decode_record, encode_record
from accountguard.storage.errors import ConstraintViolation
from accountguard.storage.models import (
    Account,
    ChallengeStatus,
    GeoLocation,
    LoginAttempt,
    SecurityEvent,
    SecurityNotification,
    Session,
    TrustedDevice,
    TwoFactorChallenge,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    All operations run under one re-entrant lock, which gives the per-account
    linearizability the Postgres store gets from row locks. When ``fs_root``
    is set, a JSON snapshot is written after every mutation and reloaded on
    start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.devices: Dict[str, TrustedDevice] = {}
        self.sessions: Dict[str, Session] = {}
        self.challenges: Dict[str, TwoFactorChallenge] = {}
        self.notifications: Dict[str, SecurityNotification] = {}
        self.security_events: List[SecurityEvent] = []
        # RLock so helpers can call each other while holding it
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [encode_record(a) for a in self.accounts.values()],
            "credentials": [
                {"account_id": aid, "password_hash": h, "password_algo": algo}
                for aid, (h, algo) in self.credentials.items()
            ],
            "login_attempts": [encode_record(a) for a in self.login_attempts],
            "devices": [encode_record(d) for d in self.devices.values()],
            "sessions": [encode_record(s) for s in self.sessions.values()],
            "challenges": [encode_record(c) for c in self.challenges.values()],
            "notifications": [encode_record(n) for n in self.notifications.values()],
            "security_events": [encode_record(e) for e in self.security_events],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state))
            tmp_path.replace(path)
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", error=str(exc), path=str(path))

    def _load_state(self) -> bool:
        path = self._state_path()
        if not path.exists():
            return False
        try:
            state = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            self.logger.warning("memory_store_load_failed", error=str(exc), path=str(path))
            return False
        self.accounts = {
            a.id: a for a in (decode_record(Account, raw) for raw in state.get("accounts", []))
        }
        self.credentials = {
            raw["account_id"]: (raw["password_hash"], raw["password_algo"])
            for raw in state.get("credentials", [])
        }
        self.login_attempts = [
            decode_record(LoginAttempt, raw) for raw in state.get("login_attempts", [])
        ]
        self.devices = {
            d.id: d for d in (decode_record(TrustedDevice, raw) for raw in state.get("devices", []))
        }
        self.sessions = {
            s.id: s for s in (decode_record(Session, raw) for raw in state.get("sessions", []))
        }
        self.challenges = {
            c.id: c
            for c in (decode_record(TwoFactorChallenge, raw) for raw in state.get("challenges", []))
        }
        self.notifications = {
            n.id: n
            for n in (
                decode_record(SecurityNotification, raw) for raw in state.get("notifications", [])
            )
        }
        self.security_events = [
            decode_record(SecurityEvent, raw) for raw in state.get("security_events", [])
        ]
        return True

    # accounts
    def create_account(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if any(a.email == normalized for a in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=new_id(), email=normalized, display_name=display_name, phone=phone
            )
            self.accounts[account.id] = account
            self._persist_state()
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        normalized = email.strip().lower()
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == normalized:
                    return replace(account)
        return None

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        allowed = {"display_name", "phone", "two_factor_enabled", "email_notifications", "is_active"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(account, **fields)
            self.accounts[account_id] = updated
            self._persist_state()
            return replace(updated)

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account missing", {"account_id": account_id})
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # login history
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        with self._data_lock:
            self.login_attempts.append(attempt)
            self._persist_state()
        return attempt

    def list_account_attempts(self, account_id: str, *, limit: int = 200) -> List[LoginAttempt]:
        with self._data_lock:
            matches = [a for a in self.login_attempts if a.account_id == account_id]
        matches.sort(key=lambda a: a.timestamp)
        return matches[-limit:]

    def list_attempts_by_email(self, email: str, *, since: datetime) -> List[LoginAttempt]:
        normalized = email.strip().lower()
        with self._data_lock:
            return [
                a for a in self.login_attempts if a.email == normalized and a.timestamp >= since
            ]

    def list_attempts_by_ip(self, ip: str, *, since: datetime) -> List[LoginAttempt]:
        with self._data_lock:
            return [a for a in self.login_attempts if a.ip == ip and a.timestamp >= since]

    # devices
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
    ) -> tuple[TrustedDevice, bool]:
        """Upsert by (account, fingerprint); returns (device, created)."""
        now = utcnow()
        with self._data_lock:
            for device in self.devices.values():
                if device.account_id == account_id and device.fingerprint_hash == fingerprint_hash:
                    device.last_seen = now
                    device.last_ip = ip
                    if location is not None:
                        device.location = location
                    self._persist_state()
                    return replace(device), False
            device = TrustedDevice(
                id=new_id(),
                account_id=account_id,
                fingerprint_hash=fingerprint_hash,
                friendly_name=friendly_name,
                device_class=device_class,
                browser=browser,
                os=os,
                trusted=False,
                first_seen=now,
                last_seen=now,
                last_ip=ip,
                location=location,
            )
            self.devices[device.id] = device
            self._persist_state()
            return replace(device), True

    def get_device(self, device_id: str, account_id: str) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or device.account_id != account_id:
                return None
            return replace(device)

    def get_device_by_fingerprint(
        self, account_id: str, fingerprint_hash: str
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            for device in self.devices.values():
                if device.account_id == account_id and device.fingerprint_hash == fingerprint_hash:
                    return replace(device)
        return None

    def list_devices(self, account_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [replace(d) for d in self.devices.values() if d.account_id == account_id]
        return sorted(devices, key=lambda d: d.last_seen, reverse=True)

    def set_device_trusted(
        self, device_id: str, account_id: str, trusted: bool
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or device.account_id != account_id:
                return None
            device.trusted = trusted
            self._persist_state()
            return replace(device)

    def delete_device(self, device_id: str, account_id: str, *, reason: str) -> Optional[List[str]]:
        """Remove a device and deactivate its sessions; None when not found."""
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device or device.account_id != account_id:
                return None
            del self.devices[device_id]
            revoked = self._deactivate_where(
                lambda s: s.account_id == account_id and s.device_id == device_id, reason
            )
            self._persist_state()
            return revoked

    def delete_devices_except(
        self, account_id: str, keep_device_id: Optional[str], *, reason: str
    ) -> tuple[int, List[str]]:
        with self._data_lock:
            doomed = [
                d.id
                for d in self.devices.values()
                if d.account_id == account_id and d.id != keep_device_id
            ]
            for device_id in doomed:
                del self.devices[device_id]
            doomed_set = set(doomed)
            revoked = self._deactivate_where(
                lambda s: s.account_id == account_id and s.device_id in doomed_set, reason
            )
            self._persist_state()
            return len(doomed), revoked

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation("session account missing", {"account_id": session.account_id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return replace(session) if session else None

    def list_active_sessions(self, account_id: str) -> List[Session]:
        with self._data_lock:
            sessions = [
                replace(s)
                for s in self.sessions.values()
                if s.account_id == account_id and s.is_active
            ]
        return sorted(sessions, key=lambda s: s.last_accessed, reverse=True)

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_id: str,
        access_token_id: str,
        refresh_token_id: str,
        expires_at: datetime,
        refresh_expires_at: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Compare-and-swap the token ids; None if the session moved on."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if (
                not session
                or not session.is_active
                or session.refresh_token_id != expected_refresh_id
            ):
                return None
            session.access_token_id = access_token_id
            session.refresh_token_id = refresh_token_id
            session.expires_at = expires_at
            if refresh_expires_at is not None:
                session.refresh_expires_at = refresh_expires_at
            session.last_accessed = utcnow()
            self._persist_state()
            return replace(session)

    def touch_session(self, session_id: str) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session and session.is_active:
                session.last_accessed = utcnow()

    def _deactivate_where(self, predicate, reason: str) -> List[str]:
        revoked: List[str] = []
        for session in self.sessions.values():
            if session.is_active and predicate(session):
                session.is_active = False
                session.revoked_reason = reason
                revoked.append(session.id)
        return revoked

    def deactivate_session(self, session_id: str, account_id: str, *, reason: str) -> bool:
        with self._data_lock:
            revoked = self._deactivate_where(
                lambda s: s.id == session_id and s.account_id == account_id, reason
            )
            if revoked:
                self._persist_state()
            return bool(revoked)

    def deactivate_account_sessions(
        self, account_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            revoked = self._deactivate_where(
                lambda s: s.account_id == account_id and s.id != except_session_id, reason
            )
            if revoked:
                self._persist_state()
            return revoked

    # two-factor challenges
    def create_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        with self._data_lock:
            self.challenges[challenge.id] = replace(challenge)
            self._persist_state()
            return replace(challenge)

    def get_challenge(self, challenge_id: str) -> Optional[TwoFactorChallenge]:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            return replace(challenge) if challenge else None

    def consume_challenge_attempt(self, challenge_id: str) -> Optional[TwoFactorChallenge]:
        """Atomically count one attempt against a pending challenge.

        Returns the challenge as it was *before* the increment when it was
        still pending, unexpired and had attempts left (the caller then
        compares the code), otherwise the unchanged challenge so the caller
        can report why it is unusable.
        """
        now = utcnow()
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge:
                return None
            snapshot = replace(challenge)
            if (
                challenge.status is ChallengeStatus.PENDING
                and challenge.expires_at > now
                and challenge.attempts_used < challenge.max_attempts
            ):
                challenge.attempts_used += 1
                self._persist_state()
            return snapshot

    def resolve_challenge(
        self,
        challenge_id: str,
        status: ChallengeStatus,
        *,
        trust_device_requested: Optional[bool] = None,
    ) -> bool:
        """PENDING -> terminal, exactly once."""
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.status is not ChallengeStatus.PENDING:
                return False
            challenge.status = status
            challenge.resolved_at = utcnow()
            if trust_device_requested is not None:
                challenge.trust_device_requested = trust_device_requested
            self._persist_state()
            return True

    def update_challenge_delivery(
        self,
        challenge_id: str,
        *,
        code_hash: str,
        delivery_method,
        sent_at: datetime,
        expires_at: datetime,
    ) -> bool:
        with self._data_lock:
            challenge = self.challenges.get(challenge_id)
            if not challenge or challenge.status is not ChallengeStatus.PENDING:
                return False
            challenge.code_hash = code_hash
            challenge.delivery_method = delivery_method
            challenge.last_sent_at = sent_at
            challenge.expires_at = expires_at
            self._persist_state()
            return True

    def expire_stale_challenges(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            stale = [
                c
                for c in self.challenges.values()
                if c.status is ChallengeStatus.PENDING and c.expires_at <= now
            ]
            for challenge in stale:
                challenge.status = ChallengeStatus.EXPIRED
                challenge.resolved_at = now
            if stale:
                self._persist_state()
            return len(stale)

    # notifications
    def create_notification(self, notification: SecurityNotification) -> SecurityNotification:
        with self._data_lock:
            self.notifications[notification.id] = replace(notification)
            self._persist_state()
            return replace(notification)

    def list_notifications(
        self, account_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> List[SecurityNotification]:
        with self._data_lock:
            items = [
                replace(n)
                for n in self.notifications.values()
                if n.account_id == account_id and (not unread_only or not n.read)
            ]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit]

    def mark_notification(
        self,
        notification_id: str,
        account_id: str,
        *,
        read: Optional[bool] = None,
        actioned: Optional[bool] = None,
        emailed: Optional[bool] = None,
    ) -> bool:
        with self._data_lock:
            notification = self.notifications.get(notification_id)
            if not notification or notification.account_id != account_id:
                return False
            if read is not None:
                notification.read = read
            if actioned is not None:
                notification.actioned = actioned
                if actioned:
                    notification.read = True
            if emailed is not None:
                notification.emailed = emailed
            self._persist_state()
            return True

    def mark_all_notifications_read(self, account_id: str) -> int:
        with self._data_lock:
            updated = 0
            for notification in self.notifications.values():
                if notification.account_id == account_id and not notification.read:
                    notification.read = True
                    updated += 1
            if updated:
                self._persist_state()
            return updated

    def count_unread_notifications(self, account_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for n in self.notifications.values() if n.account_id == account_id and not n.read
            )

    # audit
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._data_lock:
            self.security_events.append(event)
            self._persist_state()
        return event

    def list_security_events(
        self,
        account_id: str,
        *,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SecurityEvent]:
        with self._data_lock:
            items = [
                e
                for e in self.security_events
                if e.account_id == account_id and (event_type is None or e.event_type == event_type)
            ]
        items.sort(key=lambda e: e.created_at, reverse=True)
        return items[offset : offset + limit]
