from __future__ import annotations

import asyncio
import secrets
import string
from dataclasses import dataclass, field, replace
from typing import Awaitable, List, Mapping, Optional, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from accountguard.config import Settings
from accountguard.logging import get_logger
from accountguard.service.audit import SecurityAuditLog, SecurityEventType
from accountguard.service.devices import DeviceRegistry
from accountguard.service.errors import (
    AccountLockedError,
    ConflictError,
    ConnectionFailedError,
    InvalidCredentialsError,
    RateLimitedError,
    ValidationError,
)
from accountguard.service.fingerprint import ClientSignals, describe_device, generate_fingerprint
from accountguard.service.geo import GeoResolver
from accountguard.service.notifications import NotificationDispatcher, NotificationMetadata
from accountguard.service.rate_limit import RateLimiter, RateLimitPolicy
from accountguard.service.risk import RiskAssessment, RiskEngine
from accountguard.service.sessions import AuthContext, IssuedTokens, SessionManager
from accountguard.service.two_factor import IssuedChallenge, PendingCode, TwoFactorService
from accountguard.storage.base import SecurityStore
from accountguard.storage.errors import ConstraintViolation
from accountguard.storage.models import (
    Account,
    DeliveryChannel,
    DeviceFingerprint,
    GeoLocation,
    LoginAttempt,
    TrustedDevice,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

Notice = Tuple[Account, str, NotificationMetadata]

PASSWORD_MIN_LENGTH = 8


def check_password_policy(password: str) -> None:
    """At least 8 characters drawing on 3 of: lower, upper, digit, symbol."""
    if len(password or "") < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters",
            detail={"field": "password"},
        )
    classes = [
        any(c.islower() for c in password),
        any(c.isupper() for c in password),
        any(c.isdigit() for c in password),
        any(c in string.punctuation or c.isspace() for c in password),
    ]
    if sum(classes) < 3:
        raise ValidationError(
            "password must mix at least three of lowercase, uppercase, digits and symbols",
            detail={"field": "password"},
        )


def email_rate_key(email: str) -> str:
    return f"login:email:{email.strip().lower()}"


def client_rate_key(ip: Optional[str], user_agent: Optional[str]) -> str:
    return f"login:client:{ip or 'unknown'}|{user_agent or ''}"


@dataclass
class LoginContext:
    ip: str
    user_agent: str
    signals: ClientSignals
    headers: Optional[Mapping[str, str]] = None


@dataclass
class LoginOutcome:
    account: Account
    requires_two_factor: bool
    assessment: Optional[RiskAssessment] = None
    tokens: Optional[IssuedTokens] = None
    challenge: Optional[IssuedChallenge] = None
    device: Optional[TrustedDevice] = None
    pending_code: Optional[PendingCode] = field(default=None, repr=False)


class AuthService:
    """Credential checks and the login decision flow.

    Ties the rate limiter, risk engine, device registry, second factor and
    session manager together; every outcome is recorded as a login attempt
    and an audit event.
    """

    def __init__(
        self,
        store: SecurityStore,
        settings: Settings,
        *,
        rate_limiter: RateLimiter,
        risk: RiskEngine,
        devices: DeviceRegistry,
        two_factor: TwoFactorService,
        sessions: SessionManager,
        notifications: NotificationDispatcher,
        audit: SecurityAuditLog,
        geo: Optional[GeoResolver] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.rate_limiter = rate_limiter
        self.risk = risk
        self.devices = devices
        self.two_factor = two_factor
        self.sessions = sessions
        self.notifications = notifications
        self.audit = audit
        self.geo = geo or GeoResolver()
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.login_policy = RateLimitPolicy(
            window_seconds=settings.login_rate_limit_window_seconds,
            max_attempts=settings.login_rate_limit_max_attempts,
            lockout_seconds=settings.login_lockout_seconds,
        )

    # passwords
    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def verify_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _burn_password_check(self, password: str) -> None:
        # Unknown emails still pay for one argon2 verification
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            pass

    async def _bounded(self, operation: Awaitable[T], name: str) -> T:
        try:
            return await asyncio.wait_for(
                operation, timeout=self.settings.auth_request_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                "auth_request_timeout",
                operation=name,
                timeout_seconds=self.settings.auth_request_timeout_seconds,
            )
            raise ConnectionFailedError("request timed out, try again")

    async def _dispatch(self, notices: List[Notice]) -> None:
        """Send alerts collected by an auth operation once its outcome is settled."""
        wait = self.settings.delivery_wait_seconds
        for account, event_type, metadata in notices:
            try:
                await asyncio.wait_for(
                    self.notifications.notify(account, event_type, metadata), timeout=wait
                )
            except asyncio.TimeoutError:
                # the in-app record is written before the email send starts
                logger.warning(
                    "notification_dispatch_slow",
                    account_id=account.id,
                    event_type=event_type,
                    wait_seconds=wait,
                )

    # signup
    def signup(
        self,
        email: str,
        password: str,
        *,
        display_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        check_password_policy(password)
        try:
            account = self.store.create_account(email, display_name=display_name, phone=phone)
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail)
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(account.id, pwd_hash, algo)
        logger.info("account_created", account_id=account.id)
        return account

    # login
    async def login(
        self,
        email: str,
        password: str,
        context: LoginContext,
        *,
        remember_me: bool = False,
        delivery_method: DeliveryChannel = DeliveryChannel.EMAIL,
    ) -> LoginOutcome:
        """Run the login decision under the request deadline.

        Code delivery and security alerts happen after the decision is
        committed, each with its own wait, so a slow gateway can neither
        time out nor undo a finished sign-in.
        """
        notices: List[Notice] = []
        try:
            outcome = await self._bounded(
                self._login(
                    email,
                    password,
                    context,
                    remember_me=remember_me,
                    delivery_method=delivery_method,
                    notices=notices,
                ),
                "login",
            )
            if outcome.tokens is not None:
                await self._clear_login_windows(outcome.account.email, outcome.tokens)
            if outcome.pending_code is not None:
                outcome.challenge = await self.two_factor.send_code(outcome.pending_code)
                outcome.pending_code = None
            return outcome
        finally:
            await self._dispatch(notices)

    def _record_attempt(
        self,
        email: str,
        context: LoginContext,
        *,
        success: bool,
        account_id: Optional[str] = None,
        fingerprint: Optional[DeviceFingerprint] = None,
        location: Optional[GeoLocation] = None,
        failure_reason: Optional[str] = None,
        attempt_id: Optional[str] = None,
    ) -> LoginAttempt:
        attempt = LoginAttempt(
            id=attempt_id or new_id(),
            email=email,
            ip=context.ip,
            user_agent=context.user_agent,
            timestamp=utcnow(),
            success=success,
            account_id=account_id,
            fingerprint=fingerprint,
            location=location,
            failure_reason=failure_reason,
        )
        return self.store.record_login_attempt(attempt)

    async def _enforce_rate_limit(self, email: str, context: LoginContext) -> int:
        """Take one slot on the email and client windows before any password check.

        Returns the email window count including this attempt. A successful
        sign-in clears both windows afterwards.
        """
        email_key = email_rate_key(email)
        attempts = 0
        for key in (email_key, client_rate_key(context.ip, context.user_agent)):
            result = await self.rate_limiter.check_rate_limit(
                key, self.login_policy, record=True
            )
            if result.allowed:
                if key == email_key:
                    attempts = result.attempts
                continue
            self._record_attempt(email, context, success=False, failure_reason="rate_limited")
            self.audit.record(
                SecurityEventType.RATE_LIMITED,
                ip=context.ip,
                user_agent=context.user_agent,
                key_type=key.split(":")[1],
                retry_after_seconds=result.retry_after_seconds,
            )
            raise RateLimitedError(retry_after_seconds=result.retry_after_seconds)
        return attempts

    def _register_failure(
        self,
        email: str,
        context: LoginContext,
        account: Optional[Account],
        fingerprint: DeviceFingerprint,
        location: Optional[GeoLocation],
        *,
        attempts: int,
        notices: List[Notice],
    ) -> None:
        self._record_attempt(
            email,
            context,
            success=False,
            account_id=account.id if account else None,
            fingerprint=fingerprint,
            location=location,
            failure_reason="invalid_credentials",
        )
        self.audit.record(
            SecurityEventType.LOGIN_FAILED,
            account_id=account.id if account else None,
            ip=context.ip,
            user_agent=context.user_agent,
            reason="invalid_credentials",
        )
        if account and attempts == self.login_policy.max_attempts:
            notices.append(
                (
                    account,
                    "multiple_failed_attempts",
                    NotificationMetadata(ip=context.ip, attempts=attempts),
                )
            )

    async def _login(
        self,
        email: str,
        password: str,
        context: LoginContext,
        *,
        remember_me: bool,
        delivery_method: DeliveryChannel,
        notices: List[Notice],
    ) -> LoginOutcome:
        email = (email or "").strip().lower()
        if "@" not in email or not password:
            raise ValidationError("email and password are required")

        attempts = await self._enforce_rate_limit(email, context)

        fingerprint = generate_fingerprint(context.signals)
        location = self.geo.resolve(context.ip, context.headers)

        account = self.store.get_account_by_email(email)
        if account is None:
            await asyncio.to_thread(self._burn_password_check, password)
            valid = False
        else:
            valid = account.is_active and await asyncio.to_thread(
                self.verify_password, account.id, password
            )
        if not valid:
            self._register_failure(
                email,
                context,
                account,
                fingerprint,
                location,
                attempts=attempts,
                notices=notices,
            )
            raise InvalidCredentialsError()

        attempt = LoginAttempt(
            id=new_id(),
            email=email,
            ip=context.ip,
            user_agent=context.user_agent,
            timestamp=utcnow(),
            success=False,
            account_id=account.id,
            fingerprint=fingerprint,
            location=location,
        )
        assessment = self.risk.evaluate(attempt)

        if assessment.block_access:
            self.store.record_login_attempt(replace(attempt, failure_reason="blocked"))
            self.audit.record(
                SecurityEventType.LOGIN_BLOCKED,
                account_id=account.id,
                ip=context.ip,
                user_agent=context.user_agent,
                risk_score=assessment.score,
                risk_factors=assessment.factors.triggered(),
            )
            metadata = NotificationMetadata(
                ip=context.ip,
                location=location.label() if location else None,
                device_name=describe_device(fingerprint),
                browser=fingerprint.browser,
                os=fingerprint.os,
                risk_score=assessment.score,
                risk_factors=assessment.factors.triggered(),
            )
            notices.append((account, "suspicious_login", metadata))
            notices.append((account, "account_locked", metadata))
            raise AccountLockedError("sign-in blocked, verify your identity or try later")

        trusted = self.devices.is_trusted(account.id, fingerprint.hash)
        needs_second_factor = (
            assessment.require_additional_auth or account.two_factor_enabled
        ) and not trusted

        if needs_second_factor:
            self.store.record_login_attempt(replace(attempt, failure_reason="two_factor_pending"))
            pending = await self.two_factor.create(
                account,
                login_attempt_id=attempt.id,
                method=delivery_method,
                fingerprint=fingerprint,
                ip=context.ip,
                user_agent=context.user_agent,
                location=location,
                remember_me=remember_me,
                risk_score=assessment.score,
            )
            return LoginOutcome(
                account=account,
                requires_two_factor=True,
                assessment=assessment,
                pending_code=pending,
            )

        new_location = self._is_new_country(account.id, location)
        self.store.record_login_attempt(replace(attempt, success=True))
        tokens, device = self._complete_login(
            account,
            fingerprint=fingerprint,
            ip=context.ip,
            user_agent=context.user_agent,
            location=location,
            remember_me=remember_me,
            new_location=new_location,
            notices=notices,
        )
        return LoginOutcome(
            account=account,
            requires_two_factor=False,
            assessment=assessment,
            tokens=tokens,
            device=device,
        )

    def _is_new_country(self, account_id: str, location: Optional[GeoLocation]) -> bool:
        """True when earlier successful sign-ins exist and none came from this country."""
        if not location:
            return False
        countries = {
            a.location.country
            for a in self.store.list_account_attempts(account_id)
            if a.success and a.location
        }
        return bool(countries) and location.country not in countries

    def _complete_login(
        self,
        account: Account,
        *,
        fingerprint: Optional[DeviceFingerprint],
        ip: str,
        user_agent: str,
        location: Optional[GeoLocation],
        remember_me: bool,
        notices: List[Notice],
        device: Optional[TrustedDevice] = None,
        device_created: bool = False,
        new_location: bool = False,
    ) -> Tuple[IssuedTokens, Optional[TrustedDevice]]:
        created = device_created
        if device is None and fingerprint is not None:
            device, created = self.devices.register_or_touch(account.id, fingerprint, ip, location)
        # the very first device of an account is not announced
        had_other_devices = bool(device) and any(
            d.id != device.id for d in self.devices.list(account.id)
        )
        tokens = self.sessions.issue(
            account.id,
            device_id=device.id if device else None,
            device_info=device.friendly_name if device else None,
            ip=ip,
            user_agent=user_agent,
            remember_me=remember_me,
        )
        self.audit.record(
            SecurityEventType.LOGIN_SUCCESS,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
            session_id=tokens.session.id,
            device_id=device.id if device else None,
        )

        if created and had_other_devices:
            notices.append(
                (
                    account,
                    "new_device_login",
                    NotificationMetadata(
                        ip=ip,
                        location=location.label() if location else None,
                        device_name=device.friendly_name,
                        device_id=device.id,
                        browser=device.browser,
                        os=device.os,
                        session_id=tokens.session.id,
                    ),
                )
            )
        if new_location and location:
            notices.append(
                (
                    account,
                    "new_location_login",
                    NotificationMetadata(
                        ip=ip,
                        location=location.label(),
                        device_name=device.friendly_name if device else None,
                        session_id=tokens.session.id,
                    ),
                )
            )
        return tokens, device

    async def _clear_login_windows(self, email: str, tokens: IssuedTokens) -> None:
        session = tokens.session
        await self.rate_limiter.reset(email_rate_key(email))
        await self.rate_limiter.reset(client_rate_key(session.ip, session.user_agent))

    async def verify_two_factor(
        self,
        challenge_id: str,
        code: str,
        *,
        trust_device: Optional[bool] = None,
    ) -> LoginOutcome:
        notices: List[Notice] = []
        try:
            outcome = await self._bounded(
                self._verify_two_factor(
                    challenge_id, code, trust_device=trust_device, notices=notices
                ),
                "two_factor_verify",
            )
            await self._clear_login_windows(outcome.account.email, outcome.tokens)
            return outcome
        finally:
            await self._dispatch(notices)

    async def _verify_two_factor(
        self,
        challenge_id: str,
        code: str,
        *,
        trust_device: Optional[bool],
        notices: List[Notice],
    ) -> LoginOutcome:
        verified = await self.two_factor.verify(challenge_id, code, trust_device=trust_device)
        challenge = verified.challenge
        account = self.store.get_account(challenge.account_id)
        if account is None or not account.is_active:
            raise InvalidCredentialsError()
        context = LoginContext(
            ip=challenge.ip or "unknown",
            user_agent=challenge.user_agent or "",
            signals=ClientSignals(user_agent=challenge.user_agent or ""),
        )
        new_location = self._is_new_country(account.id, challenge.location)
        self._record_attempt(
            account.email,
            context,
            success=True,
            account_id=account.id,
            fingerprint=challenge.fingerprint,
            location=challenge.location,
        )
        tokens, device = self._complete_login(
            account,
            fingerprint=challenge.fingerprint,
            ip=context.ip,
            user_agent=context.user_agent,
            location=challenge.location,
            remember_me=challenge.remember_me,
            notices=notices,
            device=verified.device,
            device_created=verified.device_created,
            new_location=new_location,
        )
        return LoginOutcome(
            account=account, requires_two_factor=False, tokens=tokens, device=device
        )

    # account settings
    async def change_password(
        self,
        ctx: AuthContext,
        current_password: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        account = ctx.account
        if not await asyncio.to_thread(self.verify_password, account.id, current_password):
            self.audit.record(
                SecurityEventType.LOGIN_FAILED,
                account_id=account.id,
                ip=ip,
                user_agent=user_agent,
                reason="password_change_rejected",
            )
            raise InvalidCredentialsError("current password is incorrect")
        check_password_policy(new_password)
        if await asyncio.to_thread(self.verify_password, account.id, new_password):
            raise ValidationError(
                "new password must differ from the current one", detail={"field": "new_password"}
            )
        pwd_hash, algo = await asyncio.to_thread(self._hash_password, new_password)
        self.store.save_password(account.id, pwd_hash, algo)
        revoked = self.sessions.revoke_all(
            account.id, except_session_id=ctx.session_id, reason="password_changed"
        )
        self.audit.record(
            SecurityEventType.PASSWORD_CHANGED,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
            sessions_revoked=len(revoked),
        )
        await self.notifications.notify(
            account, "password_changed", NotificationMetadata(ip=ip, session_id=ctx.session_id)
        )
        return revoked

    async def set_two_factor(
        self,
        ctx: AuthContext,
        enabled: bool,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        account = self.store.update_account(ctx.account_id, two_factor_enabled=enabled)
        if account is None:
            raise InvalidCredentialsError()
        self.audit.record(
            SecurityEventType.TWO_FACTOR_ENABLED if enabled else SecurityEventType.TWO_FACTOR_DISABLED,
            account_id=account.id,
            ip=ip,
            user_agent=user_agent,
        )
        await self.notifications.notify(
            account, "2fa_enabled" if enabled else "2fa_disabled", NotificationMetadata(ip=ip)
        )
        return account

    def set_email_notifications(self, ctx: AuthContext, enabled: bool) -> Account:
        account = self.store.update_account(ctx.account_id, email_notifications=enabled)
        if account is None:
            raise InvalidCredentialsError()
        return account

    def logout(self, ctx: AuthContext, *, ip: Optional[str] = None) -> None:
        self.sessions.revoke(ctx.session_id, ctx.account_id, reason="logout")
        self.audit.record(
            SecurityEventType.LOGOUT, account_id=ctx.account_id, ip=ip, session_id=ctx.session_id
        )

    # sessions and devices
    def revoke_session(self, ctx: AuthContext, session_id: str, *, ip: Optional[str] = None) -> None:
        self.sessions.revoke(session_id, ctx.account_id, reason="user_revoked")
        self.audit.record(
            SecurityEventType.SESSION_REVOKED,
            account_id=ctx.account_id,
            ip=ip,
            session_id=session_id,
        )

    def revoke_all_sessions(
        self, ctx: AuthContext, *, keep_current: bool = False, ip: Optional[str] = None
    ) -> Tuple[List[str], int]:
        """Sign out everywhere; known devices other than the current one are forgotten."""
        revoked = self.sessions.revoke_all(
            ctx.account_id,
            except_session_id=ctx.session_id if keep_current else None,
            reason="user_revoked_all",
        )
        devices_removed, _ = self.devices.revoke_all_except(
            ctx.account_id, ctx.session.device_id
        )
        self.audit.record(
            SecurityEventType.SESSIONS_REVOKED_ALL,
            account_id=ctx.account_id,
            ip=ip,
            sessions_revoked=len(revoked),
            devices_removed=devices_removed,
            kept_current=keep_current,
        )
        return revoked, devices_removed

    def trust_device(self, ctx: AuthContext, device_id: str, *, ip: Optional[str] = None) -> TrustedDevice:
        device = self.devices.trust(device_id, ctx.account_id)
        self.audit.record(
            SecurityEventType.DEVICE_TRUSTED, account_id=ctx.account_id, ip=ip, device_id=device_id
        )
        return device

    def untrust_device(
        self, ctx: AuthContext, device_id: str, *, ip: Optional[str] = None
    ) -> TrustedDevice:
        device = self.devices.untrust(device_id, ctx.account_id)
        self.audit.record(
            SecurityEventType.DEVICE_UNTRUSTED, account_id=ctx.account_id, ip=ip, device_id=device_id
        )
        return device

    async def revoke_device(
        self, ctx: AuthContext, device_id: str, *, ip: Optional[str] = None
    ) -> List[str]:
        device, revoked = self.devices.revoke(device_id, ctx.account_id)
        self.audit.record(
            SecurityEventType.DEVICE_REVOKED,
            account_id=ctx.account_id,
            ip=ip,
            device_id=device_id,
            sessions_revoked=len(revoked),
        )
        await self.notifications.notify(
            ctx.account,
            "device_removed",
            NotificationMetadata(device_name=device.friendly_name, device_id=device.id, ip=ip),
        )
        return revoked

    async def revoke_other_devices(
        self, ctx: AuthContext, *, ip: Optional[str] = None
    ) -> Tuple[int, List[str]]:
        removed, revoked = self.devices.revoke_all_except(ctx.account_id, ctx.session.device_id)
        self.audit.record(
            SecurityEventType.DEVICE_REVOKED,
            account_id=ctx.account_id,
            ip=ip,
            devices_removed=removed,
            sessions_revoked=len(revoked),
        )
        if removed:
            await self.notifications.notify(
                ctx.account,
                "device_removed",
                NotificationMetadata(
                    device_name=f"{removed} device(s)", ip=ip, extra={"count": str(removed)}
                ),
            )
        return removed, revoked
