"""Unit tests for the TOTP engine.

Tests for:
- RFC 6238 code generation
- Secret issuance and the otpauth URI
- Verification window, replay rejection and lockout
"""

import base64

import pytest
from conftest import FakeClock

from bankcore.service.errors import ConflictError, NotFoundError
from bankcore.service.mfa import MFAEngine, generate_totp
from bankcore.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-key")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(store, make_settings, clock):
    return MFAEngine(store, make_settings(), clock=clock)


@pytest.fixture
def user(store):
    return store.create_user(
        "alice", "alice@example.com", account_numbers={"primary": "19981234567"}
    )


class TestGenerateTotp:
    """Tests against the RFC 6238 SHA1 reference values."""

    RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()

    @pytest.mark.parametrize(
        "timestamp,expected",
        [(59, "94287082"), (1111111109, "07081804"), (1234567890, "89005924")],
    )
    def test_reference_vectors(self, timestamp, expected):
        assert generate_totp(self.RFC_SECRET, timestamp, digits=8) == expected

    def test_six_digit_codes(self):
        assert generate_totp(self.RFC_SECRET, 59) == "287082"

    def test_invalid_secret_yields_empty_code(self):
        assert generate_totp("not base32!", 59) == ""


class TestIssueSecret:
    """Tests for enrollment secrets."""

    def test_secret_and_uri(self, engine, user, store):
        secret, uri = engine.issue_secret(user.id)
        assert len(secret) == 32
        assert len(base64.b32decode(secret)) == 20
        assert uri.startswith("otpauth://totp/BankCore%3Aalice?")
        assert f"secret={secret}" in uri
        assert "issuer=BankCore" in uri
        assert "algorithm=SHA1&digits=6&period=30" in uri
        cfg = store.get_user_mfa_secret(user.id)
        assert cfg.secret == secret
        assert cfg.enabled is False

    def test_reissue_before_enrollment_replaces_secret(self, engine, user):
        first, _ = engine.issue_secret(user.id)
        second, _ = engine.issue_secret(user.id)
        assert first != second

    def test_reissue_after_enrollment_conflicts(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now))
        with pytest.raises(ConflictError):
            engine.issue_secret(user.id)

    def test_unknown_user(self, engine):
        with pytest.raises(NotFoundError):
            engine.issue_secret("missing")


class TestVerifyCode:
    """Tests for code verification."""

    def test_valid_code_enrolls(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        assert engine.is_enabled(user.id) is False
        assert engine.verify_code(user.id, generate_totp(secret, clock.now)) is True
        assert engine.is_enabled(user.id) is True

    def test_enable_on_verify_off_keeps_flag(self, store, user, make_settings, clock):
        engine = MFAEngine(store, make_settings(mfa_enable_on_verify=False), clock=clock)
        secret, _ = engine.issue_secret(user.id)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now)) is True
        assert engine.is_enabled(user.id) is False

    def test_code_replay_rejected(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        code = generate_totp(secret, clock.now)
        assert engine.verify_code(user.id, code) is True
        assert engine.verify_code(user.id, code) is False

    def test_later_step_accepted_after_use(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now))
        clock.advance(30)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now))

    def test_drift_within_window(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now - 4 * 30))

    def test_drift_outside_window(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now - 7 * 30)) is False

    def test_malformed_codes(self, engine, user):
        engine.issue_secret(user.id)
        for code in ("", "12345", "abcdef", "1234567"):
            assert engine.verify_code(user.id, code) is False

    def test_no_secret(self, engine, user):
        assert engine.verify_code(user.id, "123456") is False


class TestLockout:
    """Tests for failed-attempt lockout."""

    def _wrong_code(self, secret, clock):
        valid = {generate_totp(secret, clock.now + k * 30) for k in range(-5, 6)}
        return next(c for c in ("000000", "111111", "222222") if c not in valid)

    def test_lockout_after_five_failures(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        for _ in range(5):
            assert engine.verify_code(user.id, self._wrong_code(secret, clock)) is False
        assert engine.is_locked_out(user.id)
        assert engine.verify_code(user.id, generate_totp(secret, clock.now)) is False

    def test_lockout_expires(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        for _ in range(5):
            engine.verify_code(user.id, self._wrong_code(secret, clock))
        clock.advance(301)
        assert engine.is_locked_out(user.id) is False
        assert engine.verify_code(user.id, generate_totp(secret, clock.now)) is True

    def test_success_resets_failure_count(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        for _ in range(4):
            engine.verify_code(user.id, self._wrong_code(secret, clock))
        assert engine.verify_code(user.id, generate_totp(secret, clock.now)) is True
        clock.advance(30)
        for _ in range(4):
            engine.verify_code(user.id, self._wrong_code(secret, clock))
        assert engine.is_locked_out(user.id) is False

    def test_failures_outside_window_do_not_accumulate(self, engine, user, clock):
        secret, _ = engine.issue_secret(user.id)
        for _ in range(4):
            engine.verify_code(user.id, self._wrong_code(secret, clock))
        clock.advance(301)
        engine.verify_code(user.id, self._wrong_code(secret, clock))
        assert engine.is_locked_out(user.id) is False
