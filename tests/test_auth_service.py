"""Login decision flow, exercised through the runtime's wired services."""

import asyncio
import threading

import pytest

from accountguard.service.errors import (
    AccountLockedError,
    ConflictError,
    ConnectionFailedError,
    InvalidCredentialsError,
    RateLimitedError,
    ValidationError,
)
from accountguard.service.auth import LoginContext, check_password_policy
from accountguard.service.fingerprint import ClientSignals, generate_fingerprint
from accountguard.service.geo import IPReputation
from accountguard.service.runtime import get_runtime
from accountguard.storage.models import ChallengeStatus

PASSWORD = "Correct-Horse-9"
CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_WIN = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"


def _context(user_agent=CHROME_MAC, ip="198.51.100.7") -> LoginContext:
    return LoginContext(ip=ip, user_agent=user_agent, signals=ClientSignals(user_agent=user_agent))


@pytest.fixture
def runtime(monkeypatch, delivery):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.delivery, "send", delivery.send)
    runtime.recorder = delivery
    return runtime


@pytest.fixture
def account(runtime):
    return runtime.auth.signup("flow@example.com", PASSWORD, display_name="Flow")


def _events(runtime, account, event_type):
    return [n for n in runtime.notifications.list(account.id) if n.event_type == event_type]


class TestPasswordPolicy:
    @pytest.mark.parametrize("password", ["short1A", "alllowercase", "lowercase123"])
    def test_weak_passwords_rejected(self, password):
        with pytest.raises(ValidationError):
            check_password_policy(password)

    def test_strong_password_accepted(self):
        check_password_policy(PASSWORD)


class TestSignup:
    def test_duplicate_email_conflicts(self, runtime, account):
        with pytest.raises(ConflictError):
            runtime.auth.signup("FLOW@example.com", PASSWORD)

    def test_password_is_hashed_with_argon2id(self, runtime, account):
        stored_hash, algo = runtime.store.get_password_record(account.id)
        assert algo == "argon2id"
        assert stored_hash.startswith("$argon2id$")
        assert PASSWORD not in stored_hash


class TestLogin:
    async def test_first_login_issues_tokens(self, runtime, account):
        outcome = await runtime.auth.login(account.email, PASSWORD, _context())
        assert not outcome.requires_two_factor
        assert outcome.tokens.access_token
        assert outcome.assessment.score == 0
        assert len(runtime.devices.list(account.id)) == 1
        # the first device is not announced
        assert _events(runtime, account, "new_device_login") == []

    async def test_wrong_password_and_unknown_email_look_identical(self, runtime, account):
        with pytest.raises(InvalidCredentialsError) as wrong:
            await runtime.auth.login(account.email, "Wrong-Pass-1", _context())
        with pytest.raises(InvalidCredentialsError) as unknown:
            await runtime.auth.login("nobody@example.com", PASSWORD, _context())
        assert wrong.value.message == unknown.value.message
        assert wrong.value.error_code == unknown.value.error_code

    async def test_new_device_requires_second_factor(self, runtime, account):
        await runtime.auth.login(account.email, PASSWORD, _context())

        outcome = await runtime.auth.login(account.email, PASSWORD, _context(FIREFOX_WIN))

        assert outcome.requires_two_factor
        assert outcome.tokens is None
        assert outcome.assessment.factors.new_device
        code = runtime.recorder.last_code()
        verified = await runtime.auth.verify_two_factor(
            outcome.challenge.challenge_id, code, trust_device=True
        )
        assert verified.tokens is not None
        assert verified.device.trusted
        assert len(_events(runtime, account, "new_device_login")) == 1

    async def test_trusted_device_skips_second_factor(self, runtime, account):
        first = await runtime.auth.login(account.email, PASSWORD, _context())
        runtime.devices.trust(first.device.id, account.id)
        runtime.store.update_account(account.id, two_factor_enabled=True)

        outcome = await runtime.auth.login(account.email, PASSWORD, _context())

        assert not outcome.requires_two_factor

    async def test_two_factor_enabled_challenges_untrusted_device(self, runtime, account):
        runtime.store.update_account(account.id, two_factor_enabled=True)
        outcome = await runtime.auth.login(account.email, PASSWORD, _context())
        assert outcome.requires_two_factor
        assert outcome.challenge.delivered

    async def test_sixth_attempt_is_rate_limited(self, runtime, account):
        """Five failures lock the email out, even for the right password."""
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login(account.email, "Wrong-Pass-1", _context())
        with pytest.raises(RateLimitedError) as exc_info:
            await runtime.auth.login(account.email, PASSWORD, _context())
        assert exc_info.value.retry_after_seconds > 0
        assert len(_events(runtime, account, "multiple_failed_attempts")) == 1

    async def test_success_resets_failure_window(self, runtime, account):
        for _ in range(2):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login(account.email, "Wrong-Pass-1", _context())
        await runtime.auth.login(account.email, PASSWORD, _context())
        for _ in range(4):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login(account.email, "Wrong-Pass-1", _context())

    async def test_high_risk_login_is_blocked(self, runtime, account):
        await runtime.auth.login(account.email, PASSWORD, _context())
        runtime.risk.reputation = IPReputation(["203.0.113.0/24"])
        attacker = _context(FIREFOX_WIN, ip="203.0.113.50")
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await runtime.auth.login("someone-else@example.com", PASSWORD, attacker)

        with pytest.raises(AccountLockedError):
            await runtime.auth.login(account.email, PASSWORD, attacker)

        assert len(_events(runtime, account, "suspicious_login")) == 1
        assert len(_events(runtime, account, "account_locked")) == 1
        assert runtime.audit.list(account.id, event_type="LOGIN_BLOCKED")


class TestAccountSettings:
    async def test_change_password_revokes_other_sessions(self, runtime, account):
        current = await runtime.auth.login(account.email, PASSWORD, _context())
        other = await runtime.auth.login(account.email, PASSWORD, _context())
        ctx = runtime.sessions.authenticate(current.tokens.access_token)

        revoked = await runtime.auth.change_password(ctx, PASSWORD, "Another-Horse-7")

        assert revoked == [other.tokens.session.id]
        assert len(_events(runtime, account, "password_changed")) == 1
        assert runtime.auth.verify_password(account.id, "Another-Horse-7")

    async def test_change_password_requires_current(self, runtime, account):
        outcome = await runtime.auth.login(account.email, PASSWORD, _context())
        ctx = runtime.sessions.authenticate(outcome.tokens.access_token)
        with pytest.raises(InvalidCredentialsError):
            await runtime.auth.change_password(ctx, "Wrong-Pass-1", "Another-Horse-7")

    async def test_revoke_all_sessions_forgets_other_devices(self, runtime, account):
        current = await runtime.auth.login(account.email, PASSWORD, _context())
        runtime.devices.register_or_touch(
            account.id,
            generate_fingerprint(ClientSignals(user_agent=FIREFOX_WIN)),
            "10.0.0.2",
        )
        ctx = runtime.sessions.authenticate(current.tokens.access_token)

        revoked, devices_removed = runtime.auth.revoke_all_sessions(ctx, keep_current=True)

        assert revoked == []
        assert devices_removed == 1
        assert [d.id for d in runtime.devices.list(account.id)] == [current.device.id]

    async def test_toggle_two_factor_notifies(self, runtime, account):
        outcome = await runtime.auth.login(account.email, PASSWORD, _context())
        ctx = runtime.sessions.authenticate(outcome.tokens.access_token)
        enabled = await runtime.auth.set_two_factor(ctx, True)
        disabled = await runtime.auth.set_two_factor(ctx, False)
        assert enabled.two_factor_enabled and not disabled.two_factor_enabled
        assert _events(runtime, account, "2fa_enabled")
        assert _events(runtime, account, "2fa_disabled")



class TestConcurrentLogins:
    async def test_parallel_guesses_stop_at_the_limit(self, runtime, account, slow_cache, monkeypatch):
        """Guesses racing through a suspending rate-limit backend still get five password checks."""
        monkeypatch.setattr(runtime.rate_limiter, "cache", slow_cache)
        checked = []
        original = runtime.auth.verify_password

        def counting(account_id, password):
            checked.append(account_id)
            return original(account_id, password)

        monkeypatch.setattr(runtime.auth, "verify_password", counting)

        results = await asyncio.gather(
            *[runtime.auth.login(account.email, "Wrong-Pass-1", _context()) for _ in range(12)],
            return_exceptions=True,
        )

        assert len(checked) == runtime.settings.login_rate_limit_max_attempts
        assert sum(isinstance(r, InvalidCredentialsError) for r in results) == 5
        assert sum(isinstance(r, RateLimitedError) for r in results) == 7
        assert len(_events(runtime, account, "multiple_failed_attempts")) == 1

    async def test_password_checks_run_off_the_event_loop(self, runtime, account, monkeypatch):
        threads = []
        original = runtime.auth.verify_password

        def spy(account_id, password):
            threads.append(threading.current_thread())
            return original(account_id, password)

        monkeypatch.setattr(runtime.auth, "verify_password", spy)
        await runtime.auth.login(account.email, PASSWORD, _context())
        assert threads
        assert all(t is not threading.main_thread() for t in threads)


class TestDeadlines:
    async def test_stalled_backend_fails_cleanly(self, runtime, account, slow_cache, monkeypatch):
        slow_cache.delay = 1.0
        monkeypatch.setattr(runtime.rate_limiter, "cache", slow_cache)
        monkeypatch.setattr(runtime.settings, "auth_request_timeout_seconds", 0.2)

        with pytest.raises(ConnectionFailedError) as exc_info:
            await runtime.auth.login(account.email, PASSWORD, _context())

        assert exc_info.value.error_code == "CONNECTION_ERROR"
        assert runtime.store.list_active_sessions(account.id) == []

    async def test_stalled_verify_leaves_challenge_pending(self, runtime, account, monkeypatch):
        await runtime.auth.login(account.email, PASSWORD, _context())
        pending = await runtime.auth.login(account.email, PASSWORD, _context(FIREFOX_WIN))
        code = runtime.recorder.last_code()
        real_verify = runtime.two_factor.verify

        async def stalled(*args, **kwargs):
            await asyncio.sleep(1)

        monkeypatch.setattr(runtime.settings, "auth_request_timeout_seconds", 0.2)
        monkeypatch.setattr(runtime.two_factor, "verify", stalled)
        with pytest.raises(ConnectionFailedError):
            await runtime.auth.verify_two_factor(pending.challenge.challenge_id, code)

        challenge = runtime.store.get_challenge(pending.challenge.challenge_id)
        assert challenge.status is ChallengeStatus.PENDING
        assert len(runtime.store.list_active_sessions(account.id)) == 1

        monkeypatch.setattr(runtime.two_factor, "verify", real_verify)
        verified = await runtime.auth.verify_two_factor(pending.challenge.challenge_id, code)
        assert verified.tokens is not None

    async def test_slow_gateway_does_not_undo_a_verified_sign_in(self, runtime, account, monkeypatch):
        """Code and alert sends outlive the request deadline without failing the sign-in."""
        await runtime.auth.login(account.email, PASSWORD, _context())
        monkeypatch.setattr(runtime.settings, "auth_request_timeout_seconds", 0.5)
        monkeypatch.setattr(runtime.settings, "delivery_wait_seconds", 0.1)

        async def slow_send(destination, channel, content):
            runtime.recorder.sent.append((destination, channel, content))
            await asyncio.sleep(1)
            return True

        monkeypatch.setattr(runtime.delivery, "send", slow_send)

        pending = await runtime.auth.login(account.email, PASSWORD, _context(FIREFOX_WIN))
        assert pending.requires_two_factor
        assert pending.challenge.delivered is False

        verified = await runtime.auth.verify_two_factor(
            pending.challenge.challenge_id, runtime.recorder.last_code()
        )

        assert verified.tokens is not None
        assert runtime.sessions.authenticate(verified.tokens.access_token).account_id == account.id
        assert len(runtime.store.list_active_sessions(account.id)) == 2
        challenge = runtime.store.get_challenge(pending.challenge.challenge_id)
        assert challenge.status is ChallengeStatus.VERIFIED
        assert len(_events(runtime, account, "new_device_login")) == 1
