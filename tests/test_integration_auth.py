"""Integration tests for the HTTP surface.

Covers the complete sign-in flow:
- Signup and password login
- Second factor for an unfamiliar device, then trusting it
- Lockout after repeated failures
- Token refresh, rotation and replay
- Session, device, notification and audit endpoints
"""

import pytest
from fastapi.testclient import TestClient

from accountguard import app as app_module
from accountguard.service.runtime import get_runtime

PASSWORD = "TestPassword123!"
CHROME_MAC = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
FIREFOX_WIN = "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


@pytest.fixture
def outbox(monkeypatch, delivery):
    monkeypatch.setattr(get_runtime().delivery, "send", delivery.send)
    return delivery


@pytest.fixture
def email(client):
    address = "testuser@example.com"
    response = client.post("/v1/auth/signup", json={"email": address, "password": PASSWORD})
    assert response.status_code == 201
    return address


def _login(client, email, password=PASSWORD, user_agent=CHROME_MAC, **extra):
    return client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, **extra},
        headers={"User-Agent": user_agent},
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _tokens(client, email, user_agent=CHROME_MAC):
    response = _login(client, email, user_agent=user_agent)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["requiresTwoFactor"] is False
    return data


class TestSignupFlow:
    def test_signup_returns_account(self, client):
        response = client.post(
            "/v1/auth/signup",
            json={"email": "New@Example.com", "password": PASSWORD, "displayName": "New"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "new@example.com"
        assert body["data"]["twoFactorEnabled"] is False
        assert "password" not in str(body).lower()

    def test_signup_rejects_duplicate_email(self, client, email):
        response = client.post("/v1/auth/signup", json={"email": email, "password": PASSWORD})
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_signup_validates_email_format(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": "invalid-email", "password": PASSWORD}
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_signup_validates_password_strength(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": "weak@example.com", "password": "password"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestLoginFlow:
    def test_first_login_returns_tokens_and_cookies(self, client, email):
        response = _login(client, email)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["requiresTwoFactor"] is False
        assert data["accessToken"] and data["refreshToken"]
        assert data["tokenType"] == "bearer"
        assert "access_token" in response.cookies
        assert response.headers["Cache-Control"].startswith("no-store")

    def test_wrong_password_is_generic(self, client, email):
        wrong = _login(client, email, password="WrongPassword1!")
        unknown = _login(client, "nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"]
        assert wrong.json()["code"] == "INVALID_CREDENTIALS"

    def test_new_device_two_factor_then_trusted(self, client, email, outbox):
        """Unfamiliar device gets a code; after trusting it, no code is needed."""
        _tokens(client, email)

        challenge = _login(client, email, user_agent=FIREFOX_WIN)
        assert challenge.status_code == 200
        data = challenge.json()["data"]
        assert data["requiresTwoFactor"] is True
        assert data["deliveryMethod"] == "email"
        assert "accessToken" not in data or data["accessToken"] is None

        verified = client.post(
            "/v1/auth/2fa/verify",
            json={
                "challengeId": data["challengeId"],
                "code": outbox.last_code(),
                "trustDevice": True,
            },
        )
        assert verified.status_code == 200
        access = verified.json()["data"]["accessToken"]

        devices = client.get("/v1/devices", headers=_bearer(access)).json()["data"]["items"]
        firefox = [d for d in devices if d["browser"] == "Firefox"]
        assert len(firefox) == 1
        assert firefox[0]["trusted"] is True
        assert firefox[0]["isCurrent"] is True

        again = _login(client, email, user_agent=FIREFOX_WIN)
        assert again.json()["data"]["requiresTwoFactor"] is False

    def test_wrong_code_reports_attempts_remaining(self, client, email, outbox):
        _tokens(client, email)
        data = _login(client, email, user_agent=FIREFOX_WIN).json()["data"]
        code = outbox.last_code()
        wrong = str((int(code) + 1) % 10 ** len(code)).zfill(len(code))
        response = client.post(
            "/v1/auth/2fa/verify", json={"challengeId": data["challengeId"], "code": wrong}
        )
        assert response.status_code == 401
        body = response.json()
        assert body["code"] == "INVALID_CODE"
        assert body["error"]["details"]["attempts_remaining"] == 4

    def test_resend_is_throttled(self, client, email, outbox):
        _tokens(client, email)
        data = _login(client, email, user_agent=FIREFOX_WIN).json()["data"]
        response = client.post("/v1/auth/2fa/resend", json={"challengeId": data["challengeId"]})
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) > 0

    def test_cancelled_challenge_cannot_be_verified(self, client, email, outbox):
        _tokens(client, email)
        data = _login(client, email, user_agent=FIREFOX_WIN).json()["data"]
        cancel = client.post("/v1/auth/2fa/cancel", json={"challengeId": data["challengeId"]})
        assert cancel.status_code == 200
        response = client.post(
            "/v1/auth/2fa/verify",
            json={"challengeId": data["challengeId"], "code": outbox.last_code()},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "CHALLENGE_EXPIRED"


class TestLockout:
    def test_sixth_attempt_is_rate_limited(self, client, email):
        for _ in range(5):
            assert _login(client, email, password="WrongPassword1!").status_code == 401

        response = _login(client, email)

        assert response.status_code == 429
        body = response.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["retryAfterSeconds"] > 0
        assert int(response.headers["Retry-After"]) == body["retryAfterSeconds"]


class TestTokenRefresh:
    def test_refresh_rotates_and_replay_revokes_everything(self, client, email):
        tokens = _tokens(client, email)
        rotated = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})
        assert rotated.status_code == 200
        new_access = rotated.json()["data"]["accessToken"]
        assert client.get("/v1/auth/me", headers=_bearer(new_access)).status_code == 200

        replay = client.post("/v1/auth/refresh", json={"refreshToken": tokens["refreshToken"]})

        assert replay.status_code == 401
        assert replay.json()["code"] == "INVALID_OR_EXPIRED_TOKEN"
        assert client.get("/v1/auth/me", headers=_bearer(new_access)).status_code == 401

    def test_protected_route_requires_token(self, client):
        response = client.get("/v1/sessions")
        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_OR_EXPIRED_TOKEN"

    def test_logout_invalidates_access_token(self, client, email):
        tokens = _tokens(client, email)
        headers = _bearer(tokens["accessToken"])
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.get("/v1/auth/me", headers=headers).status_code == 401


class TestSessionsAndDevices:
    def test_list_and_revoke_sessions(self, client, email):
        first = _tokens(client, email)
        second = _tokens(client, email)
        headers = _bearer(first["accessToken"])

        items = client.get("/v1/sessions", headers=headers).json()["data"]["items"]
        assert len(items) == 2
        assert [s["isCurrent"] for s in items].count(True) == 1

        response = client.delete(f"/v1/sessions/{second['sessionId']}", headers=headers)
        assert response.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(second["accessToken"])).status_code == 401

    def test_revoke_all_sessions(self, client, email):
        first = _tokens(client, email)
        _tokens(client, email)
        headers = _bearer(first["accessToken"])
        response = client.delete("/v1/sessions", params={"keep_current": "true"}, headers=headers)
        assert response.json()["data"]["sessionsRevoked"] == 1
        assert client.get("/v1/auth/me", headers=headers).status_code == 200

    def test_revoking_someone_elses_session_is_not_found(self, client, email):
        mine = _tokens(client, email)
        client.post("/v1/auth/signup", json={"email": "other@example.com", "password": PASSWORD})
        theirs = _tokens(client, "other@example.com")
        response = client.delete(
            f"/v1/sessions/{theirs['sessionId']}", headers=_bearer(mine["accessToken"])
        )
        assert response.status_code == 404

    def test_device_trust_and_revoke(self, client, email, outbox):
        tokens = _tokens(client, email)
        headers = _bearer(tokens["accessToken"])
        device = client.get("/v1/devices", headers=headers).json()["data"]["items"][0]
        assert device["trusted"] is False
        assert device["trustLevel"] in {"unknown", "low", "medium", "high"}

        trusted = client.post(f"/v1/devices/{device['id']}/trust", headers=headers)
        assert trusted.json()["data"]["trusted"] is True
        untrusted = client.delete(f"/v1/devices/{device['id']}/trust", headers=headers)
        assert untrusted.json()["data"]["trusted"] is False

        removed = client.delete(f"/v1/devices/{device['id']}", headers=headers)
        assert removed.json()["data"]["sessionsRevoked"] == 1
        assert client.get("/v1/auth/me", headers=headers).status_code == 401


class TestNotificationsAndAudit:
    def test_password_change_notifies_and_signs_out_others(self, client, email, outbox):
        current = _tokens(client, email)
        other = _tokens(client, email)
        headers = _bearer(current["accessToken"])

        response = client.post(
            "/v1/auth/password",
            json={"currentPassword": PASSWORD, "newPassword": "NewPassword456!"},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["sessionsRevoked"] == 1
        assert client.get("/v1/auth/me", headers=_bearer(other["accessToken"])).status_code == 401
        inbox = client.get("/v1/notifications", headers=headers).json()["data"]
        assert inbox["unreadCount"] == 1
        assert inbox["items"][0]["eventType"] == "password_changed"
        assert inbox["items"][0]["severity"] == "critical"
        assert outbox.sent[-1][0] == email

        notification_id = inbox["items"][0]["id"]
        client.post(f"/v1/notifications/{notification_id}/read", headers=headers)
        count = client.get("/v1/notifications/unread-count", headers=headers).json()["data"]
        assert count["unreadCount"] == 0

    def test_preferences_and_two_factor_toggle(self, client, email, outbox):
        headers = _bearer(_tokens(client, email)["accessToken"])
        prefs = client.put(
            "/v1/notifications/preferences", json={"emailNotifications": False}, headers=headers
        )
        assert prefs.json()["data"]["emailNotifications"] is False
        enabled = client.post("/v1/auth/2fa/enable", headers=headers)
        assert enabled.json()["data"]["twoFactorEnabled"] is True
        assert client.post("/v1/notifications/read-all", headers=headers).json()["data"]["updated"] == 1

    def test_security_events_are_listed(self, client, email):
        headers = _bearer(_tokens(client, email)["accessToken"])
        response = client.get(
            "/v1/security/events", params={"event_type": "LOGIN_SUCCESS"}, headers=headers
        )
        items = response.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["eventType"] == "LOGIN_SUCCESS"


class TestHealth:
    def test_healthz_reports_memory_store(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
