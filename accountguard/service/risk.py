from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional

from accountguard.logging import get_logger
from accountguard.service.fingerprint import compare_fingerprints
from accountguard.service.geo import IPReputation
from accountguard.storage.base import SecurityStore
from accountguard.storage.errors import StoreUnavailable
from accountguard.storage.models import LoginAttempt

logger = get_logger(__name__)

# Additive weights; the total is capped at 100.
NEW_LOCATION_WEIGHT = 15
UNUSUAL_LOCATION_WEIGHT = 25
NEW_DEVICE_WEIGHT = 20
DEVICE_MISMATCH_WEIGHT = 15
UNUSUAL_TIME_WEIGHT = 10
RAPID_RETRIES_WEIGHT = 30
SUSPICIOUS_IP_WEIGHT = 35
MULTIPLE_FAILED_WEIGHT = 20

ADDITIONAL_AUTH_THRESHOLD = 25
BLOCK_THRESHOLD = 75
MAX_SCORE = 100

UNUSUAL_LOCATION_SHARE = 0.05
UNUSUAL_HOUR_SHARE = 0.10
MISMATCH_LOOKBACK = 5
RAPID_RETRY_WINDOW = timedelta(minutes=5)
RAPID_RETRY_LIMIT = 3
IP_FAILURE_LIMIT = 3
IP_HISTORY_WINDOW = timedelta(hours=24)

# Attempts that stopped at the second factor are not credential failures.
_NON_FAILURE_REASONS = frozenset({"two_factor_pending"})


@dataclass
class RiskFactors:
    new_location: bool = False
    unusual_location: bool = False
    new_device: bool = False
    device_mismatch: bool = False
    unusual_time: bool = False
    rapid_retries: bool = False
    suspicious_ip: bool = False
    multiple_failed: bool = False

    def triggered(self) -> List[str]:
        return [name for name, value in asdict(self).items() if value]


@dataclass
class RiskAssessment:
    score: int
    level: str
    factors: RiskFactors = field(default_factory=RiskFactors)
    recommendations: List[str] = field(default_factory=list)
    require_additional_auth: bool = False
    block_access: bool = False
    degraded: bool = False

    def to_log(self) -> Dict[str, object]:
        return {
            "risk_score": self.score,
            "risk_level": self.level,
            "risk_factors": self.factors.triggered(),
            "require_additional_auth": self.require_additional_auth,
            "block_access": self.block_access,
            "degraded": self.degraded,
        }


def risk_level(score: int) -> str:
    if score >= 75:
        return "critical"
    if score >= 50:
        return "high"
    if score >= 25:
        return "medium"
    return "low"


def _is_failure(attempt: LoginAttempt) -> bool:
    return not attempt.success and attempt.failure_reason not in _NON_FAILURE_REASONS


class RiskEngine:
    """Additive heuristic scorer for login attempts.

    ``assess`` is pure over the supplied history. Factors that compare the
    attempt with the account's own baseline (location, device, hour) need at
    least one earlier successful login and are skipped otherwise.
    """

    def __init__(
        self,
        store: Optional[SecurityStore] = None,
        *,
        reputation: Optional[IPReputation] = None,
        similarity_threshold: Optional[int] = None,
    ) -> None:
        self.store = store
        self.reputation = reputation or IPReputation()
        self.similarity_threshold = similarity_threshold

    def assess(self, attempt: LoginAttempt, history: Iterable[LoginAttempt]) -> RiskAssessment:
        history = [h for h in history if h.id != attempt.id]
        successful = [h for h in history if h.success]
        factors = RiskFactors()
        score = 0
        recommendations: List[str] = []

        if successful:
            if attempt.location and attempt.location.country:
                country = attempt.location.country
                known = Counter(h.location.country for h in successful if h.location)
                if country not in known:
                    factors.new_location = True
                    score += NEW_LOCATION_WEIGHT
                    recommendations.append("Sign-in from a new location")
                if known.get(country, 0) < len(successful) * UNUSUAL_LOCATION_SHARE:
                    factors.unusual_location = True
                    score += UNUSUAL_LOCATION_WEIGHT
                    recommendations.append("Location is unusual for this account")

            if attempt.fingerprint:
                with_device = [h for h in successful if h.fingerprint]
                if with_device and self._is_new_device(attempt, with_device):
                    factors.new_device = True
                    score += NEW_DEVICE_WEIGHT
                    recommendations.append("Sign-in from a new device")
                recent = with_device[-MISMATCH_LOOKBACK:]
                if any(
                    h.fingerprint.os != attempt.fingerprint.os
                    or h.fingerprint.browser != attempt.fingerprint.browser
                    for h in recent
                ):
                    factors.device_mismatch = True
                    score += DEVICE_MISMATCH_WEIGHT
                    recommendations.append("Device details differ from recent sign-ins")

            hours = Counter(h.timestamp.hour for h in successful)
            if hours.get(attempt.timestamp.hour, 0) < len(successful) * UNUSUAL_HOUR_SHARE:
                factors.unusual_time = True
                score += UNUSUAL_TIME_WEIGHT
                recommendations.append("Sign-in at an unusual time")

        window_start = attempt.timestamp - RAPID_RETRY_WINDOW
        recent_for_email = [
            h
            for h in history
            if h.email == attempt.email and window_start < h.timestamp <= attempt.timestamp
        ]
        if len(recent_for_email) > RAPID_RETRY_LIMIT:
            factors.rapid_retries = True
            score += RAPID_RETRIES_WEIGHT
            recommendations.append("Rapid repeated sign-in attempts")

        if self.reputation.is_known_bad(attempt.ip):
            factors.suspicious_ip = True
            score += SUSPICIOUS_IP_WEIGHT
            recommendations.append("IP address is known for malicious activity")

        ip_failures = [h for h in history if h.ip == attempt.ip and _is_failure(h)]
        if len(ip_failures) >= IP_FAILURE_LIMIT:
            factors.multiple_failed = True
            score += MULTIPLE_FAILED_WEIGHT
            recommendations.append("Previous failed attempts from this IP address")

        score = min(MAX_SCORE, score)
        require_additional_auth = score >= ADDITIONAL_AUTH_THRESHOLD
        block_access = score >= BLOCK_THRESHOLD
        if require_additional_auth:
            recommendations.append("Additional verification (2FA) recommended")
        if block_access:
            recommendations.append("Block access and require further verification")

        return RiskAssessment(
            score=score,
            level=risk_level(score),
            factors=factors,
            recommendations=recommendations,
            require_additional_auth=require_additional_auth,
            block_access=block_access,
        )

    def _is_new_device(self, attempt: LoginAttempt, with_device: List[LoginAttempt]) -> bool:
        if any(h.fingerprint.hash == attempt.fingerprint.hash for h in with_device):
            return False
        if self.similarity_threshold is None:
            return True
        return not any(
            compare_fingerprints(h.fingerprint, attempt.fingerprint) >= self.similarity_threshold
            for h in with_device
        )

    def gather_history(self, attempt: LoginAttempt) -> List[LoginAttempt]:
        """Account history plus recent attempts sharing the email or IP."""
        if self.store is None:
            return []
        merged: Dict[str, LoginAttempt] = {}
        if attempt.account_id:
            for item in self.store.list_account_attempts(attempt.account_id):
                merged[item.id] = item
        for item in self.store.list_attempts_by_email(
            attempt.email, since=attempt.timestamp - RAPID_RETRY_WINDOW
        ):
            merged[item.id] = item
        for item in self.store.list_attempts_by_ip(
            attempt.ip, since=attempt.timestamp - IP_HISTORY_WINDOW
        ):
            merged[item.id] = item
        return sorted(merged.values(), key=lambda a: a.timestamp)

    def evaluate(self, attempt: LoginAttempt) -> RiskAssessment:
        """Gather history and assess; history lookups fail open."""
        try:
            history = self.gather_history(attempt)
        except StoreUnavailable as exc:
            logger.warning("risk_history_unavailable", error=str(exc))
            assessment = self.assess(attempt, [])
            assessment.degraded = True
        else:
            assessment = self.assess(attempt, history)
        logger.info(
            "login_risk_assessed",
            account_id=attempt.account_id,
            attempt_id=attempt.id,
            **assessment.to_log(),
        )
        return assessment
