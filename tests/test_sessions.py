import time
from datetime import timedelta

import pytest

from accountguard.service.audit import SecurityAuditLog
from accountguard.service.errors import InvalidTokenError, NotFoundError
from accountguard.service.sessions import SessionManager, TokenCodec
from accountguard.storage.models import utcnow


@pytest.fixture
def manager(memory_store, settings):
    return SessionManager(memory_store, settings, audit=SecurityAuditLog(memory_store))


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("sessions@example.com")


class TestTokenCodec:
    def test_round_trip_and_tamper(self):
        codec = TokenCodec("secret", issuer="iss", audience="aud")
        token = codec.encode({"iss": "iss", "aud": "aud", "exp": time.time() + 60, "sid": "s"})
        assert codec.decode(token)["sid"] == "s"
        header, payload, signature = token.split(".")
        assert codec.decode(f"{header}.{payload}.{signature[:-2]}xx") is None

    def test_rejects_other_audience_and_secret(self):
        token = TokenCodec("secret", issuer="iss", audience="aud").encode(
            {"iss": "iss", "aud": "aud", "exp": time.time() + 60}
        )
        assert TokenCodec("secret", issuer="iss", audience="other").decode(token) is None
        assert TokenCodec("other", issuer="iss", audience="aud").decode(token) is None

    def test_expired(self):
        codec = TokenCodec("secret", issuer="iss", audience="aud")
        token = codec.encode({"iss": "iss", "aud": "aud", "exp": time.time() - 3600})
        assert codec.decode(token) is None

    def test_garbage(self):
        assert TokenCodec("s", issuer="i", audience="a").decode("not-a-token") is None


class TestSessionManager:
    def test_issue_then_authenticate(self, manager, account):
        tokens = manager.issue(account.id, ip="10.0.0.1")
        ctx = manager.authenticate(tokens.access_token)
        assert ctx.account_id == account.id
        assert ctx.session_id == tokens.session.id

    def test_refresh_token_is_not_an_access_token(self, manager, account):
        tokens = manager.issue(account.id)
        with pytest.raises(InvalidTokenError):
            manager.authenticate(tokens.refresh_token)

    def test_session_expiry_has_no_grace_period(self, manager, account, memory_store):
        tokens = manager.issue(account.id)
        memory_store.sessions[tokens.session.id].expires_at = utcnow() - timedelta(seconds=30)
        with pytest.raises(InvalidTokenError):
            manager.authenticate(tokens.access_token)

    def test_refresh_rotates_both_tokens(self, manager, account):
        tokens = manager.issue(account.id)
        rotated = manager.refresh(tokens.refresh_token)
        assert rotated.session.id == tokens.session.id
        assert rotated.refresh_token != tokens.refresh_token
        assert manager.authenticate(rotated.access_token).session_id == tokens.session.id
        with pytest.raises(InvalidTokenError):
            manager.authenticate(tokens.access_token)

    def test_replayed_refresh_token_revokes_all_sessions(self, manager, account, memory_store):
        """Presenting a rotated-out refresh token kills every session of the account."""
        first = manager.issue(account.id)
        second = manager.issue(account.id)
        manager.refresh(first.refresh_token)

        with pytest.raises(InvalidTokenError):
            manager.refresh(first.refresh_token)

        assert memory_store.list_active_sessions(account.id) == []
        with pytest.raises(InvalidTokenError):
            manager.authenticate(second.access_token)
        events = memory_store.list_security_events(account.id, event_type="REFRESH_TOKEN_REUSE")
        assert len(events) == 1

    def test_revoked_session_cannot_refresh(self, manager, account):
        tokens = manager.issue(account.id)
        manager.revoke(tokens.session.id, account.id)
        with pytest.raises(InvalidTokenError):
            manager.refresh(tokens.refresh_token)
        with pytest.raises(InvalidTokenError):
            manager.authenticate(tokens.access_token)

    def test_revoke_other_accounts_session(self, manager, account, memory_store):
        tokens = manager.issue(account.id)
        other = memory_store.create_account("other-sessions@example.com")
        with pytest.raises(NotFoundError):
            manager.revoke(tokens.session.id, other.id)

    def test_revoke_all_keeps_current(self, manager, account):
        current = manager.issue(account.id)
        manager.issue(account.id)
        manager.issue(account.id)
        revoked = manager.revoke_all(account.id, except_session_id=current.session.id)
        assert len(revoked) == 2
        assert [s.id for s in manager.list(account.id)] == [current.session.id]

    def test_remember_me_extends_refresh(self, manager, account, settings):
        short = manager.issue(account.id)
        long = manager.issue(account.id, remember_me=True)
        assert long.refresh_expires_at > short.refresh_expires_at
        assert long.session.remember_me

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc", "abc"),
            ("bearer  abc ", "abc"),
            ("Basic abc", None),
            ("Bearer ", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert SessionManager.extract_bearer(header) == expected
