from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from accountguard.logging import get_logger
from accountguard.service.errors import NotFoundError
from accountguard.service.fingerprint import describe_device
from accountguard.storage.base import SecurityStore
from accountguard.storage.models import (
    DeviceFingerprint,
    GeoLocation,
    TrustedDevice,
    utcnow,
)

logger = get_logger(__name__)


@dataclass
class DeviceTrustAnalysis:
    score: int
    level: str
    reasons: List[str] = field(default_factory=list)


def analyze_device_trust(device: TrustedDevice, now: Optional[datetime] = None) -> DeviceTrustAnalysis:
    """Heuristic 0-100 trust score from device age, recency and the trust flag."""
    now = now or utcnow()
    score = 50
    reasons: List[str] = []

    age = now - device.first_seen
    if age > timedelta(days=30):
        score += 20
        reasons.append("known for more than 30 days")
    elif age > timedelta(days=7):
        score += 10
        reasons.append("known for more than 7 days")
    elif age < timedelta(days=1):
        score -= 20
        reasons.append("first seen within the last day")

    idle = now - device.last_seen
    if idle < timedelta(days=1):
        score += 10
        reasons.append("active within the last day")
    elif idle > timedelta(days=30):
        score -= 10
        reasons.append("inactive for more than 30 days")

    if device.trusted:
        score += 20
        reasons.append("marked as trusted")

    score = max(0, min(100, score))
    if score >= 80:
        level = "high"
    elif score >= 60:
        level = "medium"
    elif score >= 40:
        level = "low"
    else:
        level = "unknown"
    return DeviceTrustAnalysis(score=score, level=level, reasons=reasons)


class DeviceRegistry:
    """Known devices per account, keyed by (account, fingerprint hash)."""

    def __init__(self, store: SecurityStore) -> None:
        self.store = store

    def register_or_touch(
        self,
        account_id: str,
        fingerprint: DeviceFingerprint,
        ip: Optional[str],
        location: Optional[GeoLocation] = None,
    ) -> tuple[TrustedDevice, bool]:
        """Insert an untrusted device on first sight, otherwise bump last-seen.

        Returns ``(device, created)``. Repeated calls with the same fingerprint
        never create a second row.
        """
        device, created = self.store.touch_device(
            account_id,
            fingerprint.hash,
            friendly_name=describe_device(fingerprint),
            device_class=fingerprint.device_class,
            browser=fingerprint.browser,
            os=fingerprint.os,
            ip=ip,
            location=location,
        )
        if created:
            logger.info(
                "device_registered",
                account_id=account_id,
                device_id=device.id,
                device_name=device.friendly_name,
            )
        return device, created

    def find(self, account_id: str, fingerprint_hash: str) -> Optional[TrustedDevice]:
        return self.store.get_device_by_fingerprint(account_id, fingerprint_hash)

    def is_trusted(self, account_id: str, fingerprint_hash: Optional[str]) -> bool:
        if not fingerprint_hash:
            return False
        device = self.find(account_id, fingerprint_hash)
        return bool(device and device.trusted)

    def get(self, device_id: str, account_id: str) -> TrustedDevice:
        device = self.store.get_device(device_id, account_id)
        if not device:
            raise NotFoundError("device not found")
        return device

    def list(self, account_id: str) -> List[TrustedDevice]:
        return self.store.list_devices(account_id)

    def trust(self, device_id: str, account_id: str) -> TrustedDevice:
        device = self.store.set_device_trusted(device_id, account_id, True)
        if not device:
            raise NotFoundError("device not found")
        logger.info("device_trusted", account_id=account_id, device_id=device_id)
        return device

    def untrust(self, device_id: str, account_id: str) -> TrustedDevice:
        device = self.store.set_device_trusted(device_id, account_id, False)
        if not device:
            raise NotFoundError("device not found")
        logger.info("device_untrusted", account_id=account_id, device_id=device_id)
        return device

    def revoke(self, device_id: str, account_id: str) -> tuple[TrustedDevice, List[str]]:
        """Delete the device and deactivate every session issued to it."""
        device = self.get(device_id, account_id)
        revoked = self.store.delete_device(device_id, account_id, reason="device_revoked")
        if revoked is None:
            raise NotFoundError("device not found")
        logger.info(
            "device_revoked",
            account_id=account_id,
            device_id=device_id,
            sessions_revoked=len(revoked),
        )
        return device, revoked

    def revoke_all_except(
        self, account_id: str, current_device_id: Optional[str]
    ) -> tuple[int, List[str]]:
        removed, revoked = self.store.delete_devices_except(
            account_id, current_device_id, reason="device_revoked"
        )
        logger.info(
            "devices_revoked",
            account_id=account_id,
            kept_device_id=current_device_id,
            devices_removed=removed,
            sessions_revoked=len(revoked),
        )
        return removed, revoked
