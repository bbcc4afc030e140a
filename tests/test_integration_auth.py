"""End-to-end tests for the /api/auth surface."""

import time

import pytest
from fastapi.testclient import TestClient

from bankcore.app import app
from bankcore.service.mfa import generate_totp
from bankcore.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    return TestClient(app)


def _signup(client, username="alice", email="alice@example.com", **extra):
    payload = {"username": username, "email": email, "password": PASSWORD}
    payload.update(extra)
    return client.post("/api/auth/signup", json=payload)


def _login(client, identifier="alice", password=PASSWORD):
    return client.post(
        "/api/auth/login", json={"identifier": identifier, "password": password}
    )


def _assert_no_secrets(payload):
    text = str(payload)
    assert "ssn" not in text
    assert "123456789" not in text
    assert "password" not in text
    assert "$argon2" not in text


class TestSignup:
    """Tests for account creation over HTTP."""

    def test_signup_returns_account(self, client):
        resp = _signup(
            client,
            first_name="Alice",
            phone="(555) 123-4567",
            ssn="123-45-6789",
            zip="12345",
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["username"] == "alice"
        assert data["account_numbers"]["primary"].startswith("1998")
        assert len(data["account_numbers"]["primary"]) == 11
        assert data["balances"] == {"primary": 0.0}
        assert data["phone"] == "5551234567"
        assert data["zip_code"] == "12345"
        assert data["mfa_enabled"] is False
        assert "id_number" not in data
        _assert_no_secrets(data)
        assert "access_token" not in resp.cookies

    def test_duplicate_username(self, client):
        _signup(client)
        resp = _signup(client, email="other@example.com")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "conflict"

    def test_invalid_email(self, client):
        resp = _signup(client, email="not-an-email")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_short_password(self, client):
        resp = client.post(
            "/api/auth/signup",
            json={"username": "alice", "email": "alice@example.com", "password": "short"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["details"] == {"field": "password"}


class TestLoginAndMFA:
    """Full login flow with MFA enrollment."""

    def test_alice_enrolls_and_logs_in_with_mfa(self, client):
        assert _signup(client).status_code == 201

        resp = _login(client)
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["state"] == "session_issued"
        assert data["mfa_required"] is False
        assert data["access_token"]
        assert data["user"]["last_login"] is not None
        assert client.cookies.get("access_token")

        assert client.get("/api/auth/check-auth").status_code == 200

        setup = client.post("/api/auth/setup-mfa")
        assert setup.status_code == 200
        secret = setup.json()["data"]["secret"]
        assert setup.json()["data"]["otpauth_uri"].startswith("otpauth://totp/")

        confirm = client.post(
            "/api/auth/verify-mfa-setup",
            json={"code": generate_totp(secret, time.time())},
        )
        assert confirm.status_code == 200
        assert confirm.json()["data"]["mfa_enabled"] is True
        assert confirm.json()["data"]["session"] is None

        assert client.post("/api/auth/logout").status_code == 200
        client.cookies.clear()
        assert client.get("/api/auth/check-auth").status_code == 401

        resp = _login(client)
        data = resp.json()["data"]
        assert data["state"] == "mfa_branch"
        assert data["mfa_required"] is True
        assert data["access_token"] is None
        assert data["user"] is None
        assert "access_token" not in resp.cookies
        assert client.get("/api/auth/check-auth").status_code == 401

        bad = client.post(
            "/api/auth/verify-mfa", json={"mfa_token": data["mfa_token"], "code": "abcdef"}
        )
        assert bad.status_code == 400
        assert bad.json()["error"]["code"] == "unauthorized"

        # the enrollment code's step is spent, so use the next one
        good = client.post(
            "/api/auth/verify-mfa",
            json={"mfa_token": data["mfa_token"], "code": generate_totp(secret, time.time() + 30)},
        )
        assert good.status_code == 200
        assert good.json()["data"]["state"] == "session_issued"
        assert good.json()["data"]["user"]["mfa_enabled"] is True

        check = client.get("/api/auth/check-auth")
        assert check.status_code == 200
        assert check.json()["data"]["username"] == "alice"
        _assert_no_secrets(check.json())
        assert secret not in str(check.json())

    def test_login_by_email_alias(self, client):
        _signup(client)
        resp = client.post(
            "/api/auth/login", json={"email": "alice@example.com", "password": PASSWORD}
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["state"] == "session_issued"

    def test_bad_credentials_are_indistinguishable(self, client):
        _signup(client)
        wrong_pw = _login(client, password="WrongPassword1!")
        unknown = _login(client, identifier="nobody")
        assert wrong_pw.status_code == unknown.status_code == 400
        assert wrong_pw.json()["error"] == unknown.json()["error"]

    def test_bearer_header(self, client):
        _signup(client)
        token = _login(client).json()["data"]["access_token"]
        client.cookies.clear()
        resp = client.get(
            "/api/auth/check-auth", headers={"Authorization": f"Bearer {token}"}
        )
        assert resp.status_code == 200

    def test_invalid_session_is_forbidden(self, client):
        resp = client.get(
            "/api/auth/check-auth", headers={"Authorization": "Bearer not-a-token"}
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_enforced_enrollment(self, client, monkeypatch):
        monkeypatch.setenv("MFA_ENFORCE_ENROLLMENT", "true")
        reset_runtime_for_tests()
        _signup(client)

        data = _login(client).json()["data"]
        assert data["mfa_setup_required"] is True
        assert data["access_token"] is None
        assert client.get("/api/auth/check-auth").status_code == 401

        setup = client.post("/api/auth/setup-mfa", json={"mfa_token": data["mfa_token"]})
        secret = setup.json()["data"]["secret"]
        confirm = client.post(
            "/api/auth/verify-mfa-setup",
            json={"mfa_token": data["mfa_token"], "code": generate_totp(secret, time.time())},
        )
        assert confirm.status_code == 200
        session = confirm.json()["data"]["session"]
        assert session["state"] == "session_issued"
        assert client.get("/api/auth/check-auth").status_code == 200

    def test_pending_approval(self, client, monkeypatch):
        monkeypatch.setenv("REQUIRE_APPROVAL", "true")
        reset_runtime_for_tests()
        user_id = _signup(client).json()["data"]["id"]

        resp = _login(client)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "pending_approval"

        get_runtime().auth.approve_user(user_id)
        assert _login(client).json()["data"]["state"] == "session_issued"


class TestPasswordReset:
    """Forgot and reset password over HTTP."""

    def test_reset_flow(self, client):
        _signup(client)
        old_session = _login(client).json()["data"]["access_token"]

        resp = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        assert resp.status_code == 200
        token = get_runtime().store.get_user_by_email("alice@example.com").reset_token
        assert token

        reset = client.post(f"/api/auth/reset-password/{token}", json={"password": "NewPassword456!"})
        assert reset.status_code == 200

        again = client.post(f"/api/auth/reset-password/{token}", json={"password": "Again"})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "unauthorized"

        assert _login(client).status_code == 400
        assert _login(client, password="NewPassword456!").status_code == 200

        client.cookies.clear()
        stale = client.get(
            "/api/auth/check-auth", headers={"Authorization": f"Bearer {old_session}"}
        )
        assert stale.status_code == 403

    def test_unknown_email_gets_same_ack(self, client):
        _signup(client)
        known = client.post("/api/auth/forgot-password", json={"email": "alice@example.com"})
        unknown = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_unknown_email_revealed(self, client, monkeypatch):
        monkeypatch.setenv("REVEAL_UNKNOWN_RESET_EMAIL", "true")
        reset_runtime_for_tests()
        resp = client.post("/api/auth/forgot-password", json={"email": "ghost@example.com"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "not_found"


class TestBalance:
    """Balance updates and transaction history over HTTP."""

    def _session(self, client, username, email):
        user_id = _signup(client, username=username, email=email).json()["data"]["id"]
        token = _login(client, identifier=username).json()["data"]["access_token"]
        client.cookies.clear()
        return user_id, {"Authorization": f"Bearer {token}"}

    def test_balance_and_transactions(self, client):
        user_id, headers = self._session(client, "alice", "alice@example.com")
        resp = client.put(
            "/api/auth/balance",
            json={"user_id": user_id, "amount": 100.0, "description": "deposit"},
            headers=headers,
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["balance"] == 100.0
        assert data["account_type"] == "primary"
        assert data["transaction"]["balance_after"] == 100.0

        client.put(
            "/api/auth/balance", json={"user_id": user_id, "amount": -30}, headers=headers
        )
        history = client.get(f"/api/auth/transactions/{user_id}", headers=headers)
        assert history.status_code == 200
        amounts = [item["amount"] for item in history.json()["data"]["items"]]
        assert amounts == [-30.0, 100.0]

    def test_zero_amount_rejected(self, client):
        user_id, headers = self._session(client, "alice", "alice@example.com")
        resp = client.put(
            "/api/auth/balance", json={"user_id": user_id, "amount": 0}, headers=headers
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_other_users_are_forbidden(self, client):
        alice_id, alice_headers = self._session(client, "alice", "alice@example.com")
        bob_id, _ = self._session(client, "bob", "bob@example.com")
        resp = client.put(
            "/api/auth/balance", json={"user_id": bob_id, "amount": 5}, headers=alice_headers
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        history = client.get(f"/api/auth/transactions/{bob_id}", headers=alice_headers)
        assert history.status_code == 403
        assert history.json()["error"]["message"] == "cannot view another user's transactions"
        assert get_runtime().store.get_user(bob_id).balances == {"primary": 0.0}

    def test_requires_session(self, client):
        resp = client.put("/api/auth/balance", json={"user_id": "x", "amount": 5})
        assert resp.status_code == 401
