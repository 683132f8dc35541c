from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

from accountguard.config import Settings
from accountguard.logging import get_logger
from accountguard.service.audit import SecurityAuditLog, SecurityEventType
from accountguard.service.errors import InvalidTokenError, NotFoundError
from accountguard.storage.base import SecurityStore
from accountguard.storage.models import Account, Session, new_id, utcnow

logger = get_logger(__name__)

CLOCK_SKEW_LEEWAY = timedelta(seconds=120)


@dataclass
class IssuedTokens:
    session: Session
    access_token: str
    refresh_token: str

    @property
    def access_expires_at(self) -> datetime:
        return self.session.expires_at

    @property
    def refresh_expires_at(self) -> datetime:
        return self.session.refresh_expires_at


@dataclass
class AuthContext:
    account: Account
    session: Session

    @property
    def account_id(self) -> str:
        return self.account.id

    @property
    def session_id(self) -> str:
        return self.session.id


class TokenCodec:
    """HS256-signed compact tokens carrying session and token ids.

    The signature only proves the token was minted here; whether it is still
    usable is always decided against the stored session.
    """

    def __init__(self, secret: str, *, issuer: str, audience: str) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            return None
        # reject alg confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - CLOCK_SKEW_LEEWAY.total_seconds():
            return None
        return payload


class SessionManager:
    """Issue, rotate and revoke sessions backed by server-held state."""

    def __init__(
        self,
        store: SecurityStore,
        settings: Settings,
        *,
        audit: Optional[SecurityAuditLog] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.codec = TokenCodec(
            settings.token_secret,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
        )

    def _refresh_ttl(self, remember_me: bool) -> int:
        if remember_me:
            return self.settings.remember_me_refresh_ttl_minutes
        return self.settings.refresh_token_ttl_minutes

    def _mint(self, session: Session) -> IssuedTokens:
        base = {
            "iss": self.settings.token_issuer,
            "aud": self.settings.token_audience,
            "sub": session.account_id,
            "sid": session.id,
        }
        access_token = self.codec.encode(
            {
                **base,
                "token_type": "access",
                "jti": session.access_token_id,
                "exp": int(session.expires_at.timestamp()),
            }
        )
        refresh_token = self.codec.encode(
            {
                **base,
                "token_type": "refresh",
                "jti": session.refresh_token_id,
                "exp": int(session.refresh_expires_at.timestamp()),
            }
        )
        return IssuedTokens(session=session, access_token=access_token, refresh_token=refresh_token)

    def issue(
        self,
        account_id: str,
        *,
        device_id: Optional[str] = None,
        device_info: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        remember_me: bool = False,
    ) -> IssuedTokens:
        session = Session.new(
            account_id,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self._refresh_ttl(remember_me),
            device_id=device_id,
            device_info=device_info,
            ip=ip,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        session = self.store.create_session(session)
        logger.info(
            "session_issued",
            account_id=account_id,
            session_id=session.id,
            device_id=device_id,
            remember_me=remember_me,
        )
        return self._mint(session)

    def refresh(
        self, refresh_token: str, *, ip: Optional[str] = None, user_agent: Optional[str] = None
    ) -> IssuedTokens:
        """Rotate both token ids; replaying a consumed refresh token revokes everything."""
        payload = self.codec.decode(refresh_token or "")
        if not payload or payload.get("token_type") != "refresh":
            raise InvalidTokenError("invalid or expired token")
        session_id = payload.get("sid")
        jti = payload.get("jti")
        session = self.store.get_session(session_id) if session_id else None
        if not session or not jti or session.account_id != payload.get("sub"):
            raise InvalidTokenError("invalid or expired token")
        if not session.is_active:
            raise InvalidTokenError("invalid or expired token")
        if session.refresh_token_id != jti:
            self._handle_reuse(session, ip=ip, user_agent=user_agent)
        now = utcnow()
        if session.refresh_expires_at <= now:
            raise InvalidTokenError("invalid or expired token")

        rotated = self.store.rotate_session_tokens(
            session.id,
            expected_refresh_id=jti,
            access_token_id=new_id(),
            refresh_token_id=new_id(),
            expires_at=now + timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_expires_at=now + timedelta(minutes=self._refresh_ttl(session.remember_me)),
        )
        if rotated is None:
            # A concurrent refresh consumed this token first
            current = self.store.get_session(session.id)
            if current and current.is_active:
                self._handle_reuse(current, ip=ip, user_agent=user_agent)
            raise InvalidTokenError("invalid or expired token")
        logger.info("session_refreshed", account_id=rotated.account_id, session_id=rotated.id)
        return self._mint(rotated)

    def _handle_reuse(
        self, session: Session, *, ip: Optional[str], user_agent: Optional[str]
    ) -> None:
        revoked = self.store.deactivate_account_sessions(
            session.account_id, reason="refresh_token_reuse"
        )
        logger.warning(
            "refresh_token_reuse_detected",
            account_id=session.account_id,
            session_id=session.id,
            sessions_revoked=len(revoked),
        )
        if self.audit:
            self.audit.record(
                SecurityEventType.REFRESH_TOKEN_REUSE,
                account_id=session.account_id,
                ip=ip,
                user_agent=user_agent,
                session_id=session.id,
                sessions_revoked=len(revoked),
            )
        raise InvalidTokenError("invalid or expired token")

    def authenticate(self, access_token: Optional[str]) -> AuthContext:
        payload = self.codec.decode(access_token or "")
        if not payload or payload.get("token_type") != "access":
            raise InvalidTokenError("invalid or expired token")
        session_id = payload.get("sid")
        session = self.store.get_session(session_id) if session_id else None
        if (
            not session
            or not session.is_active
            or session.access_token_id != payload.get("jti")
            or session.expires_at <= utcnow()
        ):
            raise InvalidTokenError("invalid or expired token")
        account = self.store.get_account(session.account_id)
        if not account or not account.is_active or account.id != payload.get("sub"):
            raise InvalidTokenError("invalid or expired token")
        self.store.touch_session(session.id)
        return AuthContext(account=account, session=session)

    def list(self, account_id: str) -> List[Session]:
        return self.store.list_active_sessions(account_id)

    def revoke(self, session_id: str, account_id: str, *, reason: str = "revoked") -> None:
        if not self.store.deactivate_session(session_id, account_id, reason=reason):
            raise NotFoundError("session not found")
        logger.info("session_revoked", account_id=account_id, session_id=session_id, reason=reason)

    def revoke_all(
        self,
        account_id: str,
        *,
        except_session_id: Optional[str] = None,
        reason: str = "revoked_all",
    ) -> List[str]:
        revoked = self.store.deactivate_account_sessions(
            account_id, reason=reason, except_session_id=except_session_id
        )
        logger.info(
            "sessions_revoked",
            account_id=account_id,
            kept_session_id=except_session_id,
            count=len(revoked),
            reason=reason,
        )
        return revoked

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
