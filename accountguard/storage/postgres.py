from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from accountguard.logging import get_logger
from accountguard.storage.common import (
    encode_value,
    ensure_utc,
    fingerprint_from_json,
    fingerprint_to_json,
    location_from_row,
    parse_json,
)
from accountguard.storage.errors import ConstraintViolation, StoreUnavailable
from accountguard.storage.models import (
    Account,
    ChallengeStatus,
    DeliveryChannel,
    GeoLocation,
    LoginAttempt,
    SecurityEvent,
    SecurityNotification,
    Session,
    Severity,
    TrustedDevice,
    TwoFactorChallenge,
    new_id,
    utcnow,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS account (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        display_name TEXT,
        phone TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        email_notifications BOOLEAN NOT NULL DEFAULT TRUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_credential (
        account_id TEXT PRIMARY KEY REFERENCES account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS login_attempt (
        id TEXT PRIMARY KEY,
        account_id TEXT REFERENCES account(id) ON DELETE CASCADE,
        email TEXT NOT NULL,
        ip TEXT NOT NULL,
        user_agent TEXT NOT NULL,
        fingerprint JSONB,
        country TEXT,
        city TEXT,
        success BOOLEAN NOT NULL,
        failure_reason TEXT,
        attempted_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_attempt_account_idx ON login_attempt (account_id, attempted_at)",
    "CREATE INDEX IF NOT EXISTS login_attempt_email_idx ON login_attempt (email, attempted_at)",
    "CREATE INDEX IF NOT EXISTS login_attempt_ip_idx ON login_attempt (ip, attempted_at)",
    """
    CREATE TABLE IF NOT EXISTS trusted_device (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        fingerprint_hash TEXT NOT NULL,
        friendly_name TEXT NOT NULL,
        device_class TEXT NOT NULL,
        browser TEXT NOT NULL,
        os TEXT NOT NULL,
        trusted BOOLEAN NOT NULL DEFAULT FALSE,
        first_seen TIMESTAMPTZ NOT NULL,
        last_seen TIMESTAMPTZ NOT NULL,
        last_ip TEXT,
        country TEXT,
        city TEXT,
        UNIQUE (account_id, fingerprint_hash)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        access_token_id TEXT NOT NULL,
        refresh_token_id TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ NOT NULL,
        last_accessed TIMESTAMPTZ NOT NULL,
        device_id TEXT,
        device_info TEXT,
        ip TEXT,
        user_agent TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS two_factor_challenge (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        login_attempt_id TEXT,
        code_hash TEXT NOT NULL,
        delivery_method TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts_used INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL,
        trust_device_requested BOOLEAN NOT NULL DEFAULT FALSE,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        resolved_at TIMESTAMPTZ,
        last_sent_at TIMESTAMPTZ,
        fingerprint JSONB,
        ip TEXT,
        user_agent TEXT,
        country TEXT,
        city TEXT,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        risk_score INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_notification (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        metadata JSONB,
        created_at TIMESTAMPTZ NOT NULL,
        read BOOLEAN NOT NULL DEFAULT FALSE,
        actioned BOOLEAN NOT NULL DEFAULT FALSE,
        emailed BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_event (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        account_id TEXT,
        ip TEXT,
        user_agent TEXT,
        details JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS security_event_account_idx ON security_event (account_id, created_at)",
]


def _dt(value: Optional[datetime]) -> Optional[datetime]:
    return ensure_utc(value) if value is not None else None


class PostgresStore:
    """Postgres-backed security store.

    Mutations that must be linearizable per account lock the account row
    first (``SELECT ... FOR UPDATE``); token rotation and challenge updates
    are conditional single-statement updates.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StoreUnavailable("postgres", "database unreachable") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _lock_account(conn, account_id: str) -> None:
        conn.execute("SELECT id FROM account WHERE id = %s FOR UPDATE", (account_id,))

    # row mappers
    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            display_name=row.get("display_name"),
            phone=row.get("phone"),
            two_factor_enabled=bool(row.get("two_factor_enabled")),
            email_notifications=bool(row.get("email_notifications", True)),
            is_active=bool(row.get("is_active", True)),
            created_at=_dt(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _attempt_from_row(row: Dict[str, Any]) -> LoginAttempt:
        return LoginAttempt(
            id=str(row["id"]),
            email=row["email"],
            ip=row["ip"],
            user_agent=row["user_agent"],
            timestamp=_dt(row["attempted_at"]),
            success=bool(row["success"]),
            account_id=row.get("account_id"),
            fingerprint=fingerprint_from_json(row.get("fingerprint")),
            location=location_from_row(row.get("country"), row.get("city")),
            failure_reason=row.get("failure_reason"),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            fingerprint_hash=row["fingerprint_hash"],
            friendly_name=row["friendly_name"],
            device_class=row["device_class"],
            browser=row["browser"],
            os=row["os"],
            trusted=bool(row["trusted"]),
            first_seen=_dt(row["first_seen"]),
            last_seen=_dt(row["last_seen"]),
            last_ip=row.get("last_ip"),
            location=location_from_row(row.get("country"), row.get("city")),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            access_token_id=row["access_token_id"],
            refresh_token_id=row["refresh_token_id"],
            created_at=_dt(row["created_at"]),
            expires_at=_dt(row["expires_at"]),
            refresh_expires_at=_dt(row["refresh_expires_at"]),
            last_accessed=_dt(row["last_accessed"]),
            device_id=row.get("device_id"),
            device_info=row.get("device_info"),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            remember_me=bool(row.get("remember_me")),
            is_active=bool(row.get("is_active")),
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> TwoFactorChallenge:
        return TwoFactorChallenge(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            login_attempt_id=row.get("login_attempt_id"),
            code_hash=row["code_hash"],
            delivery_method=DeliveryChannel(row["delivery_method"]),
            expires_at=_dt(row["expires_at"]),
            attempts_used=int(row["attempts_used"]),
            max_attempts=int(row["max_attempts"]),
            trust_device_requested=bool(row["trust_device_requested"]),
            status=ChallengeStatus(row["status"]),
            created_at=_dt(row["created_at"]),
            resolved_at=_dt(row.get("resolved_at")),
            last_sent_at=_dt(row.get("last_sent_at")),
            fingerprint=fingerprint_from_json(row.get("fingerprint")),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            location=location_from_row(row.get("country"), row.get("city")),
            remember_me=bool(row.get("remember_me")),
            risk_score=int(row.get("risk_score") or 0),
        )

    @staticmethod
    def _notification_from_row(row: Dict[str, Any]) -> SecurityNotification:
        return SecurityNotification(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            event_type=row["event_type"],
            severity=Severity(row["severity"]),
            title=row["title"],
            message=row["message"],
            metadata=parse_json(row.get("metadata")) or {},
            created_at=_dt(row["created_at"]),
            read=bool(row["read"]),
            actioned=bool(row["actioned"]),
            emailed=bool(row["emailed"]),
        )

    @staticmethod
    def _event_from_row(row: Dict[str, Any]) -> SecurityEvent:
        return SecurityEvent(
            id=str(row["id"]),
            event_type=row["event_type"],
            created_at=_dt(row["created_at"]),
            account_id=row.get("account_id"),
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
            details=parse_json(row.get("details")) or {},
        )

    # accounts
    def create_account(
        self,
        email: str,
        *,
        display_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        account = Account(
            id=new_id(), email=email.strip().lower(), display_name=display_name, phone=phone
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, display_name, phone, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (account.id, account.email, display_name, phone, account.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        allowed = ("display_name", "phone", "two_factor_enabled", "email_notifications", "is_active")
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        # column names come from the allow-list above
        assignments = ", ".join(f"{name} = %s" for name in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments} WHERE id = %s RETURNING *",
                (*fields.values(), account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account missing", {"account_id": account_id})

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    # login history
    def record_login_attempt(self, attempt: LoginAttempt) -> LoginAttempt:
        location = attempt.location
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempt (id, account_id, email, ip, user_agent, fingerprint,
                                           country, city, success, failure_reason, attempted_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.account_id,
                    attempt.email,
                    attempt.ip,
                    attempt.user_agent,
                    fingerprint_to_json(attempt.fingerprint),
                    location.country if location else None,
                    location.city if location else None,
                    attempt.success,
                    attempt.failure_reason,
                    attempt.timestamp,
                ),
            )
        return attempt

    def list_account_attempts(self, account_id: str, *, limit: int = 200) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt WHERE account_id = %s
                ORDER BY attempted_at DESC LIMIT %s
                """,
                (account_id, limit),
            ).fetchall()
        return [self._attempt_from_row(row) for row in reversed(rows)]

    def list_attempts_by_email(self, email: str, *, since: datetime) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt WHERE email = %s AND attempted_at >= %s
                ORDER BY attempted_at
                """,
                (email.strip().lower(), since),
            ).fetchall()
        return [self._attempt_from_row(row) for row in rows]

    def list_attempts_by_ip(self, ip: str, *, since: datetime) -> List[LoginAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM login_attempt WHERE ip = %s AND attempted_at >= %s
                ORDER BY attempted_at
                """,
                (ip, since),
            ).fetchall()
        return [self._attempt_from_row(row) for row in rows]

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
        now = utcnow()
        with self._connect() as conn:
            # xmax = 0 only for freshly inserted rows
            row = conn.execute(
                """
                INSERT INTO trusted_device (id, account_id, fingerprint_hash, friendly_name,
                                            device_class, browser, os, trusted, first_seen,
                                            last_seen, last_ip, country, city)
                VALUES (%s, %s, %s, %s, %s, %s, %s, FALSE, %s, %s, %s, %s, %s)
                ON CONFLICT (account_id, fingerprint_hash) DO UPDATE
                SET last_seen = EXCLUDED.last_seen,
                    last_ip = EXCLUDED.last_ip,
                    country = COALESCE(EXCLUDED.country, trusted_device.country),
                    city = CASE WHEN EXCLUDED.country IS NULL THEN trusted_device.city
                                ELSE EXCLUDED.city END
                RETURNING *, (xmax = 0) AS inserted
                """,
                (
                    new_id(),
                    account_id,
                    fingerprint_hash,
                    friendly_name,
                    device_class,
                    browser,
                    os,
                    now,
                    now,
                    ip,
                    location.country if location else None,
                    location.city if location else None,
                ),
            ).fetchone()
        return self._device_from_row(row), bool(row["inserted"])

    def get_device(self, device_id: str, account_id: str) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE id = %s AND account_id = %s",
                (device_id, account_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def get_device_by_fingerprint(
        self, account_id: str, fingerprint_hash: str
    ) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM trusted_device WHERE account_id = %s AND fingerprint_hash = %s",
                (account_id, fingerprint_hash),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_devices(self, account_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE account_id = %s ORDER BY last_seen DESC",
                (account_id,),
            ).fetchall()
        return [self._device_from_row(row) for row in rows]

    def set_device_trusted(
        self, device_id: str, account_id: str, trusted: bool
    ) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE trusted_device SET trusted = %s
                WHERE id = %s AND account_id = %s RETURNING *
                """,
                (trusted, device_id, account_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def delete_device(self, device_id: str, account_id: str, *, reason: str) -> Optional[List[str]]:
        with self._connect() as conn:
            self._lock_account(conn, account_id)
            deleted = conn.execute(
                "DELETE FROM trusted_device WHERE id = %s AND account_id = %s RETURNING id",
                (device_id, account_id),
            ).fetchone()
            if not deleted:
                return None
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, revoked_reason = %s
                WHERE account_id = %s AND device_id = %s AND is_active
                RETURNING id
                """,
                (reason, account_id, device_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def delete_devices_except(
        self, account_id: str, keep_device_id: Optional[str], *, reason: str
    ) -> tuple[int, List[str]]:
        with self._connect() as conn:
            self._lock_account(conn, account_id)
            deleted = conn.execute(
                """
                DELETE FROM trusted_device
                WHERE account_id = %s AND id IS DISTINCT FROM %s
                RETURNING id
                """,
                (account_id, keep_device_id),
            ).fetchall()
            device_ids = [str(row["id"]) for row in deleted]
            revoked: List[str] = []
            if device_ids:
                rows = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE, revoked_reason = %s
                    WHERE account_id = %s AND device_id = ANY(%s) AND is_active
                    RETURNING id
                    """,
                    (reason, account_id, device_ids),
                ).fetchall()
                revoked = [str(row["id"]) for row in rows]
        return len(device_ids), revoked

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._lock_account(conn, session.account_id)
                conn.execute(
                    """
                    INSERT INTO auth_session (id, account_id, access_token_id, refresh_token_id,
                                              created_at, expires_at, refresh_expires_at,
                                              last_accessed, device_id, device_info, ip,
                                              user_agent, remember_me, is_active)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.access_token_id,
                        session.refresh_token_id,
                        session.created_at,
                        session.expires_at,
                        session.refresh_expires_at,
                        session.last_accessed,
                        session.device_id,
                        session.device_info,
                        session.ip,
                        session.user_agent,
                        session.remember_me,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session account missing", {"account_id": session.account_id}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM auth_session WHERE id = %s", (session_id,)).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, account_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session WHERE account_id = %s AND is_active
                ORDER BY last_accessed DESC
                """,
                (account_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

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
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET access_token_id = %s,
                    refresh_token_id = %s,
                    expires_at = %s,
                    refresh_expires_at = COALESCE(%s, refresh_expires_at),
                    last_accessed = now()
                WHERE id = %s AND refresh_token_id = %s AND is_active
                RETURNING *
                """,
                (
                    access_token_id,
                    refresh_token_id,
                    expires_at,
                    refresh_expires_at,
                    session_id,
                    expected_refresh_id,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_accessed = now() WHERE id = %s AND is_active",
                (session_id,),
            )

    def deactivate_session(self, session_id: str, account_id: str, *, reason: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, revoked_reason = %s
                WHERE id = %s AND account_id = %s AND is_active
                RETURNING id
                """,
                (reason, session_id, account_id),
            ).fetchone()
        return row is not None

    def deactivate_account_sessions(
        self, account_id: str, *, reason: str, except_session_id: Optional[str] = None
    ) -> List[str]:
        with self._connect() as conn:
            self._lock_account(conn, account_id)
            rows = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE, revoked_reason = %s
                WHERE account_id = %s AND is_active AND id IS DISTINCT FROM %s
                RETURNING id
                """,
                (reason, account_id, except_session_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # two-factor challenges
    def create_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        location = challenge.location
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO two_factor_challenge (id, account_id, login_attempt_id, code_hash,
                    delivery_method, expires_at, attempts_used, max_attempts,
                    trust_device_requested, status, created_at, last_sent_at, fingerprint,
                    ip, user_agent, country, city, remember_me, risk_score)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.account_id,
                    challenge.login_attempt_id,
                    challenge.code_hash,
                    encode_value(challenge.delivery_method),
                    challenge.expires_at,
                    challenge.attempts_used,
                    challenge.max_attempts,
                    challenge.trust_device_requested,
                    encode_value(challenge.status),
                    challenge.created_at,
                    challenge.last_sent_at,
                    fingerprint_to_json(challenge.fingerprint),
                    challenge.ip,
                    challenge.user_agent,
                    location.country if location else None,
                    location.city if location else None,
                    challenge.remember_me,
                    challenge.risk_score,
                ),
            )
        return challenge

    def get_challenge(self, challenge_id: str) -> Optional[TwoFactorChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM two_factor_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def consume_challenge_attempt(self, challenge_id: str) -> Optional[TwoFactorChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_challenge SET attempts_used = attempts_used + 1
                WHERE id = %s AND status = %s AND expires_at > now()
                  AND attempts_used < max_attempts
                RETURNING *
                """,
                (challenge_id, ChallengeStatus.PENDING.value),
            ).fetchone()
            if row:
                challenge = self._challenge_from_row(row)
                challenge.attempts_used -= 1
                return challenge
            row = conn.execute(
                "SELECT * FROM two_factor_challenge WHERE id = %s", (challenge_id,)
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def resolve_challenge(
        self,
        challenge_id: str,
        status: ChallengeStatus,
        *,
        trust_device_requested: Optional[bool] = None,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_challenge
                SET status = %s,
                    resolved_at = now(),
                    trust_device_requested = COALESCE(%s, trust_device_requested)
                WHERE id = %s AND status = %s
                RETURNING id
                """,
                (status.value, trust_device_requested, challenge_id, ChallengeStatus.PENDING.value),
            ).fetchone()
        return row is not None

    def update_challenge_delivery(
        self,
        challenge_id: str,
        *,
        code_hash: str,
        delivery_method: DeliveryChannel,
        sent_at: datetime,
        expires_at: datetime,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE two_factor_challenge
                SET code_hash = %s, delivery_method = %s, last_sent_at = %s, expires_at = %s
                WHERE id = %s AND status = %s
                RETURNING id
                """,
                (
                    code_hash,
                    encode_value(delivery_method),
                    sent_at,
                    expires_at,
                    challenge_id,
                    ChallengeStatus.PENDING.value,
                ),
            ).fetchone()
        return row is not None

    def expire_stale_challenges(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE two_factor_challenge SET status = %s, resolved_at = %s
                WHERE status = %s AND expires_at <= %s
                RETURNING id
                """,
                (ChallengeStatus.EXPIRED.value, now, ChallengeStatus.PENDING.value, now),
            ).fetchall()
        return len(rows)

    # notifications
    def create_notification(self, notification: SecurityNotification) -> SecurityNotification:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_notification (id, account_id, event_type, severity, title,
                    message, metadata, created_at, read, actioned, emailed)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    notification.id,
                    notification.account_id,
                    notification.event_type,
                    encode_value(notification.severity),
                    notification.title,
                    notification.message,
                    json.dumps(encode_value(notification.metadata)),
                    notification.created_at,
                    notification.read,
                    notification.actioned,
                    notification.emailed,
                ),
            )
        return notification

    def list_notifications(
        self, account_id: str, *, unread_only: bool = False, limit: int = 50
    ) -> List[SecurityNotification]:
        query = "SELECT * FROM security_notification WHERE account_id = %s"
        if unread_only:
            query += " AND NOT read"
        query += " ORDER BY created_at DESC LIMIT %s"
        with self._connect() as conn:
            rows = conn.execute(query, (account_id, limit)).fetchall()
        return [self._notification_from_row(row) for row in rows]

    def mark_notification(
        self,
        notification_id: str,
        account_id: str,
        *,
        read: Optional[bool] = None,
        actioned: Optional[bool] = None,
        emailed: Optional[bool] = None,
    ) -> bool:
        if actioned:
            read = True
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE security_notification
                SET read = COALESCE(%s, read),
                    actioned = COALESCE(%s, actioned),
                    emailed = COALESCE(%s, emailed)
                WHERE id = %s AND account_id = %s
                RETURNING id
                """,
                (read, actioned, emailed, notification_id, account_id),
            ).fetchone()
        return row is not None

    def mark_all_notifications_read(self, account_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE security_notification SET read = TRUE
                WHERE account_id = %s AND NOT read RETURNING id
                """,
                (account_id,),
            ).fetchall()
        return len(rows)

    def count_unread_notifications(self, account_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS unread FROM security_notification
                WHERE account_id = %s AND NOT read
                """,
                (account_id,),
            ).fetchone()
        return int(row["unread"]) if row else 0

    # audit
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_event (id, event_type, created_at, account_id, ip,
                                            user_agent, details)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.created_at,
                    event.account_id,
                    event.ip,
                    event.user_agent,
                    json.dumps(encode_value(event.details)),
                ),
            )
        return event

    def list_security_events(
        self,
        account_id: str,
        *,
        event_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[SecurityEvent]:
        query = "SELECT * FROM security_event WHERE account_id = %s"
        params: list = [account_id]
        if event_type:
            query += " AND event_type = %s"
            params.append(event_type)
        query += " ORDER BY created_at DESC LIMIT %s OFFSET %s"
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._event_from_row(row) for row in rows]

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
