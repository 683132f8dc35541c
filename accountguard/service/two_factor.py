from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from accountguard.config import Settings
from accountguard.logging import get_logger
from accountguard.service.audit import SecurityAuditLog, SecurityEventType
from accountguard.service.delivery import DeliveryContent, DeliveryService
from accountguard.service.devices import DeviceRegistry
from accountguard.service.errors import (
    ChallengeExhaustedError,
    ChallengeExpiredError,
    InvalidCodeError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from accountguard.service.rate_limit import RateLimiter
from accountguard.storage.base import SecurityStore
from accountguard.storage.models import (
    Account,
    ChallengeStatus,
    DeliveryChannel,
    DeviceFingerprint,
    GeoLocation,
    TrustedDevice,
    TwoFactorChallenge,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class IssuedChallenge:
    challenge: TwoFactorChallenge
    delivered_via: DeliveryChannel
    delivered: bool

    @property
    def challenge_id(self) -> str:
        return self.challenge.id


@dataclass
class PendingCode:
    """A stored challenge whose code has not been sent yet."""

    account: Account
    challenge: TwoFactorChallenge
    channel: DeliveryChannel
    code: str = field(repr=False)


@dataclass
class VerifiedChallenge:
    challenge: TwoFactorChallenge
    trust_device_requested: bool
    device: Optional[TrustedDevice] = None
    device_created: bool = False


class TwoFactorService:
    """Time-boxed one-time codes for second-factor login.

    Only an HMAC of each code is stored. Each challenge moves from PENDING to
    exactly one terminal state and is never reusable afterwards.
    """

    def __init__(
        self,
        store: SecurityStore,
        rate_limiter: RateLimiter,
        delivery: DeliveryService,
        settings: Settings,
        *,
        devices: Optional[DeviceRegistry] = None,
        audit: Optional[SecurityAuditLog] = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.delivery = delivery
        self.settings = settings
        self.devices = devices
        self.audit = audit
        self._secret = settings.token_secret.encode()

    @property
    def code_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.two_factor_code_ttl_minutes)

    def _generate_code(self) -> str:
        length = self.settings.two_factor_code_length
        return str(secrets.randbelow(10**length)).zfill(length)

    def _hash_code(self, challenge_id: str, code: str) -> str:
        return hmac.new(
            self._secret, f"{challenge_id}:{code}".encode(), hashlib.sha256
        ).hexdigest()

    @staticmethod
    def _resolve_channel(account: Account, method: DeliveryChannel) -> DeliveryChannel:
        if method is DeliveryChannel.SMS and not account.phone:
            return DeliveryChannel.EMAIL
        return method

    def _content(self, code: str) -> DeliveryContent:
        minutes = self.settings.two_factor_code_ttl_minutes
        return DeliveryContent(
            subject="Your sign-in verification code",
            text=(
                f"Your verification code is {code}. It expires in {minutes} minutes.\n"
                "If you did not try to sign in, change your password."
            ),
        )

    async def _deliver(self, account: Account, channel: DeliveryChannel, code: str) -> bool:
        destination = account.phone if channel is DeliveryChannel.SMS else account.email
        wait = self.settings.delivery_wait_seconds
        try:
            delivered = await asyncio.wait_for(
                self.delivery.send(destination or "", channel, self._content(code)),
                timeout=wait,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "two_factor_delivery_slow",
                account_id=account.id,
                channel=channel.value,
                wait_seconds=wait,
            )
            return False
        if not delivered:
            logger.warning(
                "two_factor_delivery_failed", account_id=account.id, channel=channel.value
            )
        return delivered

    def _resend_key(self, challenge_id: str) -> str:
        return f"2fa_resend:{challenge_id}"

    async def issue(self, account: Account, **options) -> IssuedChallenge:
        """Store a new challenge and send its code; see ``create`` for options."""
        pending = await self.create(account, **options)
        return await self.send_code(pending)

    async def create(
        self,
        account: Account,
        *,
        login_attempt_id: Optional[str] = None,
        method: DeliveryChannel = DeliveryChannel.EMAIL,
        fingerprint: Optional[DeviceFingerprint] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoLocation] = None,
        remember_me: bool = False,
        risk_score: int = 0,
        trust_device_requested: bool = False,
    ) -> PendingCode:
        channel = self._resolve_channel(account, method)
        code = self._generate_code()
        now = utcnow()
        challenge_id = new_id()
        challenge = TwoFactorChallenge(
            id=challenge_id,
            account_id=account.id,
            login_attempt_id=login_attempt_id,
            code_hash=self._hash_code(challenge_id, code),
            delivery_method=channel,
            expires_at=now + self.code_ttl,
            attempts_used=0,
            max_attempts=self.settings.two_factor_max_attempts,
            trust_device_requested=trust_device_requested,
            created_at=now,
            last_sent_at=now,
            fingerprint=fingerprint,
            ip=ip,
            user_agent=user_agent,
            location=location,
            remember_me=remember_me,
            risk_score=risk_score,
        )
        self.store.create_challenge(challenge)
        # Starts the resend cooldown
        await self.rate_limiter.acquire_cooldown(
            self._resend_key(challenge.id), self.settings.two_factor_resend_interval_seconds
        )
        logger.info(
            "two_factor_challenge_issued",
            account_id=account.id,
            challenge_id=challenge.id,
            channel=channel.value,
            risk_score=risk_score,
        )
        if self.audit:
            self.audit.record(
                SecurityEventType.TWO_FACTOR_ISSUED,
                account_id=account.id,
                ip=ip,
                user_agent=user_agent,
                challenge_id=challenge.id,
                channel=channel.value,
            )
        return PendingCode(account=account, challenge=challenge, channel=channel, code=code)

    async def send_code(self, pending: PendingCode) -> IssuedChallenge:
        """Deliver a pending code; a slow or failed send leaves ``delivered`` False."""
        delivered = await self._deliver(pending.account, pending.channel, pending.code)
        return IssuedChallenge(
            challenge=pending.challenge, delivered_via=pending.channel, delivered=delivered
        )

    def _get(self, challenge_id: str) -> TwoFactorChallenge:
        challenge = self.store.get_challenge(challenge_id)
        if not challenge:
            raise NotFoundError("challenge not found")
        return challenge

    def _raise_unusable(self, challenge: TwoFactorChallenge) -> None:
        """Move a dead PENDING challenge to its terminal state and raise."""
        if challenge.status is ChallengeStatus.PENDING:
            if challenge.expires_at <= utcnow():
                self.store.resolve_challenge(challenge.id, ChallengeStatus.EXPIRED)
                raise ChallengeExpiredError("verification code expired")
            if challenge.attempts_used >= challenge.max_attempts:
                self.store.resolve_challenge(challenge.id, ChallengeStatus.EXHAUSTED)
                raise ChallengeExhaustedError("too many attempts")
            return
        if challenge.status is ChallengeStatus.EXHAUSTED:
            raise ChallengeExhaustedError("too many attempts")
        raise ChallengeExpiredError("verification code expired")

    async def verify(
        self,
        challenge_id: str,
        code: str,
        *,
        trust_device: Optional[bool] = None,
    ) -> VerifiedChallenge:
        code = (code or "").strip()
        if not code.isdigit():
            raise ValidationError("code must be numeric")

        before = self.store.consume_challenge_attempt(challenge_id)
        if before is None:
            raise NotFoundError("challenge not found")
        self._raise_unusable(before)

        attempts_used = before.attempts_used + 1
        if not hmac.compare_digest(before.code_hash, self._hash_code(before.id, code)):
            remaining = max(0, before.max_attempts - attempts_used)
            if remaining == 0:
                self.store.resolve_challenge(before.id, ChallengeStatus.EXHAUSTED)
            logger.info(
                "two_factor_code_rejected",
                account_id=before.account_id,
                challenge_id=before.id,
                attempts_remaining=remaining,
            )
            if self.audit:
                self.audit.record(
                    SecurityEventType.TWO_FACTOR_FAILED,
                    account_id=before.account_id,
                    ip=before.ip,
                    challenge_id=before.id,
                    attempts_remaining=remaining,
                )
            raise InvalidCodeError(attempts_remaining=remaining)

        trust = before.trust_device_requested if trust_device is None else trust_device
        if not self.store.resolve_challenge(
            before.id, ChallengeStatus.VERIFIED, trust_device_requested=trust
        ):
            # Lost a race with another terminal transition
            raise ChallengeExpiredError("verification code expired")

        device = None
        device_created = False
        if self.devices and before.fingerprint:
            device, device_created = self.devices.register_or_touch(
                before.account_id, before.fingerprint, before.ip, before.location
            )
            if trust and not device.trusted:
                device = self.devices.trust(device.id, before.account_id)
                if self.audit:
                    self.audit.record(
                        SecurityEventType.DEVICE_TRUSTED,
                        account_id=before.account_id,
                        ip=before.ip,
                        device_id=device.id,
                        source="two_factor",
                    )

        logger.info(
            "two_factor_challenge_verified",
            account_id=before.account_id,
            challenge_id=before.id,
            trust_device=trust,
        )
        if self.audit:
            self.audit.record(
                SecurityEventType.TWO_FACTOR_VERIFIED,
                account_id=before.account_id,
                ip=before.ip,
                user_agent=before.user_agent,
                challenge_id=before.id,
            )
        verified = self.store.get_challenge(before.id) or before
        return VerifiedChallenge(
            challenge=verified,
            trust_device_requested=trust,
            device=device,
            device_created=device_created,
        )

    async def resend(
        self, challenge_id: str, method: Optional[DeliveryChannel] = None
    ) -> IssuedChallenge:
        """Send a fresh code for a pending challenge, at most once per interval."""
        challenge = self._get(challenge_id)
        self._raise_unusable(challenge)

        acquired, retry_after = await self.rate_limiter.acquire_cooldown(
            self._resend_key(challenge.id), self.settings.two_factor_resend_interval_seconds
        )
        if not acquired:
            raise RateLimitedError(
                "please wait before requesting another code", retry_after_seconds=retry_after
            )

        account = self.store.get_account(challenge.account_id)
        if not account:
            raise NotFoundError("challenge not found")
        channel = self._resolve_channel(account, method or challenge.delivery_method)
        code = self._generate_code()
        now = utcnow()
        if not self.store.update_challenge_delivery(
            challenge.id,
            code_hash=self._hash_code(challenge.id, code),
            delivery_method=channel,
            sent_at=now,
            expires_at=now + self.code_ttl,
        ):
            raise ChallengeExpiredError("verification code expired")
        delivered = await self._deliver(account, channel, code)
        logger.info(
            "two_factor_code_resent",
            account_id=account.id,
            challenge_id=challenge.id,
            channel=channel.value,
        )
        refreshed = self.store.get_challenge(challenge.id) or challenge
        return IssuedChallenge(challenge=refreshed, delivered_via=channel, delivered=delivered)

    def cancel(self, challenge_id: str) -> None:
        challenge = self._get(challenge_id)
        if not self.store.resolve_challenge(challenge.id, ChallengeStatus.CANCELLED):
            raise ChallengeExpiredError("challenge is no longer pending")
        logger.info(
            "two_factor_challenge_cancelled",
            account_id=challenge.account_id,
            challenge_id=challenge.id,
        )

    def cleanup_expired(self) -> int:
        expired = self.store.expire_stale_challenges()
        if expired:
            logger.info("two_factor_challenges_expired", count=expired)
        return expired
