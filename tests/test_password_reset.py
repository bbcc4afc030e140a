"""Tests for the password reset token lifecycle."""

from datetime import datetime, timedelta

import pytest

from bankcore.service.accounts import AccountNumberGenerator
from bankcore.service.auth import AuthService, SignupData
from bankcore.service.errors import (
    AuthenticationError,
    NotFoundError,
    ValidationError,
)
from bankcore.service.mfa import MFAEngine
from bankcore.service.reset import PasswordResetService
from bankcore.service.tokens import TokenIssuer
from bankcore.storage.memory import MemoryStore

OLD_PASSWORD = "OldPassword123!"
NEW_PASSWORD = "NewPassword456!"


class DateClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-key")


@pytest.fixture
def date_clock():
    return DateClock()


@pytest.fixture
def services(store, make_settings, notifier, date_clock):
    settings = make_settings(client_url="https://bank.example.com/")
    auth = AuthService(
        store,
        settings,
        tokens=TokenIssuer(settings),
        mfa=MFAEngine(store, settings),
        accounts=AccountNumberGenerator(store),
    )
    reset = PasswordResetService(
        store, settings, hasher=auth, notifier=notifier, clock=date_clock
    )
    return auth, reset


async def _signup(auth):
    return await auth.signup(
        SignupData(username="alice", email="alice@example.com", password=OLD_PASSWORD)
    )


class TestRequestReset:
    """Tests for issuing reset tokens."""

    async def test_known_email_stores_token_and_sends_link(self, services, store, notifier, date_clock):
        auth, reset = services
        user = await _signup(auth)
        token = await reset.request_reset("Alice@Example.com")
        assert len(token) == 40
        stored = store.get_user(user.id)
        assert stored.reset_token == token
        assert stored.reset_expires_at == date_clock.now + timedelta(minutes=60)
        assert notifier.resets == [
            ("alice@example.com", f"https://bank.example.com/reset-password/{token}")
        ]

    async def test_unknown_email_is_silent(self, services, notifier):
        _, reset = services
        assert await reset.request_reset("ghost@example.com") is None
        assert notifier.resets == []

    async def test_unknown_email_revealed_when_configured(self, store, make_settings):
        settings = make_settings(reveal_unknown_reset_email=True)
        reset = PasswordResetService(store, settings, hasher=object())
        with pytest.raises(NotFoundError) as exc:
            await reset.request_reset("ghost@example.com")
        assert exc.value.status_code == 400
        assert exc.value.error_code == "not_found"

    async def test_new_request_replaces_previous_token(self, services, store):
        auth, reset = services
        user = await _signup(auth)
        first = await reset.request_reset("alice@example.com")
        second = await reset.request_reset("alice@example.com")
        assert first != second
        assert store.get_user(user.id).reset_token == second
        with pytest.raises(AuthenticationError):
            await reset.redeem(first, NEW_PASSWORD)


class TestRedeem:
    """Tests for redeeming reset tokens."""

    async def test_redeem_changes_password_once(self, services, store, notifier):
        auth, reset = services
        user = await _signup(auth)
        token = await reset.request_reset("alice@example.com")

        redeemed = await reset.redeem(token, NEW_PASSWORD)
        assert redeemed.id == user.id
        assert auth.verify_password(user.id, NEW_PASSWORD) is True
        assert auth.verify_password(user.id, OLD_PASSWORD) is False
        stored = store.get_user(user.id)
        assert stored.reset_token is None
        assert stored.reset_expires_at is None
        assert notifier.reset_successes == ["alice@example.com"]

        with pytest.raises(AuthenticationError):
            await reset.redeem(token, "AnotherPassword789!")
        assert auth.verify_password(user.id, NEW_PASSWORD) is True

    async def test_expired_token_rejected(self, services, date_clock):
        auth, reset = services
        user = await _signup(auth)
        token = await reset.request_reset("alice@example.com")
        date_clock.now += timedelta(minutes=61)
        with pytest.raises(AuthenticationError) as exc:
            await reset.redeem(token, NEW_PASSWORD)
        assert exc.value.message == "invalid or expired reset token"
        assert auth.verify_password(user.id, OLD_PASSWORD) is True

    async def test_unknown_token_rejected(self, services):
        auth, reset = services
        await _signup(auth)
        with pytest.raises(AuthenticationError):
            await reset.redeem("f" * 40, NEW_PASSWORD)

    async def test_weak_password_keeps_token_live(self, services, store):
        auth, reset = services
        user = await _signup(auth)
        token = await reset.request_reset("alice@example.com")
        with pytest.raises(ValidationError):
            await reset.redeem(token, "short")
        assert store.get_user(user.id).reset_token == token
        await reset.redeem(token, NEW_PASSWORD)
        assert auth.verify_password(user.id, NEW_PASSWORD) is True

    async def test_redeem_invalidates_existing_sessions(self, services):
        auth, reset = services
        await _signup(auth)
        session = await auth.login("alice", OLD_PASSWORD)
        token = await reset.request_reset("alice@example.com")
        await reset.redeem(token, NEW_PASSWORD)
        assert auth.authenticate(session.access_token) is None

    async def test_notifier_failure_does_not_undo_reset(self, store, make_settings):
        class BrokenNotifier:
            def send_password_reset(self, to_email, reset_url, ttl_minutes=60):
                raise OSError("smtp down")

            def send_reset_success(self, to_email):
                raise OSError("smtp down")

        settings = make_settings()
        auth = AuthService(
            store,
            settings,
            tokens=TokenIssuer(settings),
            mfa=MFAEngine(store, settings),
            accounts=AccountNumberGenerator(store),
        )
        reset = PasswordResetService(
            store, settings, hasher=auth, notifier=BrokenNotifier()
        )
        user = await _signup(auth)
        token = await reset.request_reset("alice@example.com")
        assert token
        await reset.redeem(token, NEW_PASSWORD)
        assert auth.verify_password(user.id, NEW_PASSWORD) is True

    async def test_used_token_with_weak_password_is_unauthorized(self, services):
        auth, reset = services
        user = await _signup(auth)
        token = await reset.request_reset("alice@example.com")
        await reset.redeem(token, NEW_PASSWORD)
        with pytest.raises(AuthenticationError):
            await reset.redeem(token, "Again")
        assert auth.verify_password(user.id, NEW_PASSWORD) is True

    async def test_expired_token_with_weak_password_is_unauthorized(self, services, date_clock):
        auth, reset = services
        await _signup(auth)
        token = await reset.request_reset("alice@example.com")
        date_clock.now += timedelta(minutes=61)
        with pytest.raises(AuthenticationError):
            await reset.redeem(token, "Again")

    async def test_unknown_token_with_weak_password_is_unauthorized(self, services):
        _, reset = services
        with pytest.raises(AuthenticationError):
            await reset.redeem("f" * 40, "")
