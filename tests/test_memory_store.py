"""Tests for the in-process store, including its JSON snapshot."""

from datetime import timedelta

import pytest

from accountguard.storage.errors import ConstraintViolation
from accountguard.storage.memory import MemoryStore
from accountguard.storage.models import (
    ChallengeStatus,
    DeliveryChannel,
    DeviceFingerprint,
    GeoLocation,
    LoginAttempt,
    SecurityEvent,
    SecurityNotification,
    Session,
    Severity,
    TwoFactorChallenge,
    new_id,
    utcnow,
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def account(store):
    return store.create_account("Owner@Example.com", display_name="Owner")


def _touch(store, account_id, fingerprint_hash="fp-1", ip="10.0.0.1"):
    return store.touch_device(
        account_id,
        fingerprint_hash,
        friendly_name="Desktop - macOS - Chrome",
        device_class="Desktop",
        browser="Chrome",
        os="macOS",
        ip=ip,
    )


def _session(store, account_id, device_id=None):
    return store.create_session(
        Session.new(account_id, access_ttl_minutes=15, refresh_ttl_minutes=60, device_id=device_id)
    )


class TestAccounts:
    def test_email_is_lowercased_and_unique(self, store, account):
        assert account.email == "owner@example.com"
        assert store.get_account_by_email("OWNER@example.com").id == account.id
        with pytest.raises(ConstraintViolation):
            store.create_account("owner@EXAMPLE.com")

    def test_update_rejects_unknown_fields(self, store, account):
        updated = store.update_account(account.id, two_factor_enabled=True)
        assert updated.two_factor_enabled
        with pytest.raises(ValueError):
            store.update_account(account.id, email="other@example.com")

    def test_returned_objects_are_copies(self, store, account):
        copy = store.get_account(account.id)
        copy.display_name = "mutated"
        assert store.get_account(account.id).display_name == "Owner"


class TestDevices:
    def test_touch_is_idempotent_per_fingerprint(self, store, account):
        first, created = _touch(store, account.id, ip="10.0.0.1")
        second, created_again = _touch(store, account.id, ip="10.0.0.2")
        assert created and not created_again
        assert first.id == second.id
        assert second.last_ip == "10.0.0.2"
        assert len(store.list_devices(account.id)) == 1

    def test_delete_cascades_to_device_sessions(self, store, account):
        device, _ = _touch(store, account.id)
        other, _ = _touch(store, account.id, fingerprint_hash="fp-2")
        doomed = _session(store, account.id, device_id=device.id)
        survivor = _session(store, account.id, device_id=other.id)

        revoked = store.delete_device(device.id, account.id, reason="device_revoked")

        assert revoked == [doomed.id]
        assert not store.get_session(doomed.id).is_active
        assert store.get_session(doomed.id).revoked_reason == "device_revoked"
        assert store.get_session(survivor.id).is_active

    def test_delete_foreign_device_is_not_found(self, store, account):
        device, _ = _touch(store, account.id)
        intruder = store.create_account("intruder@example.com")
        assert store.delete_device(device.id, intruder.id, reason="x") is None

    def test_delete_all_except_keeps_current(self, store, account):
        keep, _ = _touch(store, account.id)
        _touch(store, account.id, fingerprint_hash="fp-2")
        _touch(store, account.id, fingerprint_hash="fp-3")
        removed, _ = store.delete_devices_except(account.id, keep.id, reason="revoked_all")
        assert removed == 2
        assert [d.id for d in store.list_devices(account.id)] == [keep.id]


class TestSessions:
    def test_rotation_is_compare_and_swap(self, store, account):
        session = _session(store, account.id)
        expires = utcnow() + timedelta(minutes=15)
        rotated = store.rotate_session_tokens(
            session.id,
            expected_refresh_id=session.refresh_token_id,
            access_token_id="a2",
            refresh_token_id="r2",
            expires_at=expires,
        )
        assert rotated.refresh_token_id == "r2"
        stale = store.rotate_session_tokens(
            session.id,
            expected_refresh_id=session.refresh_token_id,
            access_token_id="a3",
            refresh_token_id="r3",
            expires_at=expires,
        )
        assert stale is None
        assert store.get_session(session.id).refresh_token_id == "r2"

    def test_deactivate_all_except(self, store, account):
        keep = _session(store, account.id)
        drop = _session(store, account.id)
        revoked = store.deactivate_account_sessions(
            account.id, reason="password_changed", except_session_id=keep.id
        )
        assert revoked == [drop.id]
        assert [s.id for s in store.list_active_sessions(account.id)] == [keep.id]

    def test_session_requires_account(self, store):
        with pytest.raises(ConstraintViolation):
            _session(store, "missing")


class TestChallenges:
    def _challenge(self, store, account, **overrides):
        fields = dict(
            id=new_id(),
            account_id=account.id,
            login_attempt_id=None,
            code_hash="h",
            delivery_method=DeliveryChannel.EMAIL,
            expires_at=utcnow() + timedelta(minutes=5),
            max_attempts=2,
        )
        fields.update(overrides)
        return store.create_challenge(TwoFactorChallenge(**fields))

    def test_consume_returns_pre_increment_snapshot(self, store, account):
        challenge = self._challenge(store, account)
        first = store.consume_challenge_attempt(challenge.id)
        second = store.consume_challenge_attempt(challenge.id)
        third = store.consume_challenge_attempt(challenge.id)
        assert [first.attempts_used, second.attempts_used, third.attempts_used] == [0, 1, 2]
        assert store.get_challenge(challenge.id).attempts_used == 2

    def test_resolve_only_from_pending(self, store, account):
        challenge = self._challenge(store, account)
        assert store.resolve_challenge(challenge.id, ChallengeStatus.VERIFIED)
        assert not store.resolve_challenge(challenge.id, ChallengeStatus.CANCELLED)
        assert store.get_challenge(challenge.id).status is ChallengeStatus.VERIFIED

    def test_expire_stale(self, store, account):
        stale = self._challenge(store, account, expires_at=utcnow() - timedelta(seconds=1))
        fresh = self._challenge(store, account)
        assert store.expire_stale_challenges() == 1
        assert store.get_challenge(stale.id).status is ChallengeStatus.EXPIRED
        assert store.get_challenge(fresh.id).status is ChallengeStatus.PENDING


class TestNotificationsAndAudit:
    def test_actioned_implies_read(self, store, account):
        notification = store.create_notification(
            SecurityNotification(
                id=new_id(),
                account_id=account.id,
                event_type="password_changed",
                severity=Severity.CRITICAL,
                title="t",
                message="m",
            )
        )
        assert store.count_unread_notifications(account.id) == 1
        assert store.mark_notification(notification.id, account.id, actioned=True)
        assert store.count_unread_notifications(account.id) == 0
        assert not store.mark_notification(notification.id, "someone-else", read=True)

    def test_security_events_filter_and_page(self, store, account):
        for event_type in ("LOGIN_SUCCESS", "LOGIN_FAILED", "LOGIN_FAILED"):
            store.append_security_event(
                SecurityEvent(
                    id=new_id(), event_type=event_type, created_at=utcnow(), account_id=account.id
                )
            )
        failed = store.list_security_events(account.id, event_type="LOGIN_FAILED")
        assert len(failed) == 2
        assert len(store.list_security_events(account.id, limit=1, offset=2)) == 1


class TestSnapshot:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        account = store.create_account("persist@example.com")
        store.save_password(account.id, "hash", "argon2id")
        store.record_login_attempt(
            LoginAttempt(
                id=new_id(),
                email=account.email,
                ip="10.0.0.1",
                user_agent="ua",
                timestamp=utcnow(),
                success=True,
                account_id=account.id,
                fingerprint=DeviceFingerprint(hash="fp-1", browser="Chrome"),
                location=GeoLocation(country="DE", city="Berlin"),
            )
        )
        _touch(store, account.id)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_account_by_email("persist@example.com").id == account.id
        assert reloaded.get_password_record(account.id) == ("hash", "argon2id")
        attempts = reloaded.list_account_attempts(account.id)
        assert attempts[0].fingerprint.hash == "fp-1"
        assert attempts[0].location == GeoLocation(country="DE", city="Berlin")
        assert reloaded.list_devices(account.id)[0].fingerprint_hash == "fp-1"

    def test_no_snapshot_without_fs_root(self, tmp_path):
        store = MemoryStore()
        store.create_account("volatile@example.com")
        assert not (tmp_path / "state").exists()
