from datetime import timedelta

import pytest

from accountguard.service.devices import DeviceRegistry, analyze_device_trust
from accountguard.service.errors import NotFoundError
from accountguard.service.fingerprint import ClientSignals, generate_fingerprint
from accountguard.storage.models import Session, TrustedDevice, utcnow

UA = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


@pytest.fixture
def registry(memory_store):
    return DeviceRegistry(memory_store)


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("devices@example.com")


def _device(**overrides) -> TrustedDevice:
    now = utcnow()
    fields = dict(
        id="d1",
        account_id="a1",
        fingerprint_hash="fp",
        friendly_name="Desktop - Linux - Chrome",
        first_seen=now,
        last_seen=now,
    )
    fields.update(overrides)
    return TrustedDevice(**fields)


class TestRegistry:
    def test_register_twice_yields_one_device(self, registry, account):
        fingerprint = generate_fingerprint(ClientSignals(user_agent=UA))
        first, created = registry.register_or_touch(account.id, fingerprint, "10.0.0.1")
        second, created_again = registry.register_or_touch(account.id, fingerprint, "10.0.0.1")
        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.friendly_name == "Desktop - Linux - Chrome"
        assert not first.trusted

    def test_trust_round_trip(self, registry, account):
        fingerprint = generate_fingerprint(ClientSignals(user_agent=UA))
        device, _ = registry.register_or_touch(account.id, fingerprint, None)
        assert not registry.is_trusted(account.id, fingerprint.hash)
        registry.trust(device.id, account.id)
        assert registry.is_trusted(account.id, fingerprint.hash)
        registry.untrust(device.id, account.id)
        assert not registry.is_trusted(account.id, fingerprint.hash)

    def test_is_trusted_without_fingerprint(self, registry, account):
        assert registry.is_trusted(account.id, None) is False

    def test_other_accounts_devices_are_not_found(self, registry, memory_store, account):
        fingerprint = generate_fingerprint(ClientSignals(user_agent=UA))
        device, _ = registry.register_or_touch(account.id, fingerprint, None)
        other = memory_store.create_account("other@example.com")
        with pytest.raises(NotFoundError):
            registry.trust(device.id, other.id)
        with pytest.raises(NotFoundError):
            registry.revoke(device.id, other.id)

    def test_revoke_deactivates_device_sessions(self, registry, memory_store, account):
        fingerprint = generate_fingerprint(ClientSignals(user_agent=UA))
        device, _ = registry.register_or_touch(account.id, fingerprint, None)
        session = memory_store.create_session(
            Session.new(
                account.id, access_ttl_minutes=15, refresh_ttl_minutes=60, device_id=device.id
            )
        )

        removed, revoked = registry.revoke(device.id, account.id)

        assert removed.id == device.id
        assert revoked == [session.id]
        assert registry.list(account.id) == []
        assert not memory_store.get_session(session.id).is_active


class TestTrustAnalysis:
    def test_brand_new_untrusted_device(self):
        analysis = analyze_device_trust(_device())
        # 50 base, -20 new, +10 recently active
        assert analysis.score == 40
        assert analysis.level == "low"

    def test_old_trusted_active_device_is_high(self):
        now = utcnow()
        device = _device(first_seen=now - timedelta(days=60), last_seen=now, trusted=True)
        analysis = analyze_device_trust(device, now=now)
        assert analysis.score == 100
        assert analysis.level == "high"
        assert "marked as trusted" in analysis.reasons

    def test_stale_device_loses_trust(self):
        now = utcnow()
        device = _device(
            first_seen=now - timedelta(days=10), last_seen=now - timedelta(days=45)
        )
        analysis = analyze_device_trust(device, now=now)
        assert analysis.score == 50
        assert analysis.level == "low"

    def test_score_is_bounded(self):
        now = utcnow()
        device = _device(first_seen=now - timedelta(days=400), last_seen=now, trusted=True)
        assert 0 <= analyze_device_trust(device, now=now).score <= 100
