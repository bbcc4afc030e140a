from __future__ import annotations

import base64
import hashlib
import hmac
import os
import threading
import time
from typing import Callable, Optional, Protocol
from urllib.parse import quote

from bankcore.config import Settings
from bankcore.logging import get_logger
from bankcore.service.errors import ConflictError, NotFoundError
from bankcore.storage.models import UserAccount, UserMFAConfig

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
MAX_FAILED_ATTEMPTS = 5
FAILURE_WINDOW_SECONDS = 300
LOCKOUT_SECONDS = 300


class MFAStore(Protocol):
    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def set_user_mfa_secret(
        self, user_id: str, secret: str, enabled: bool = False
    ) -> UserMFAConfig: ...

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def enable_user_mfa(self, user_id: str, expected_secret: str) -> bool: ...

    def consume_mfa_step(self, user_id: str, step: int) -> bool: ...


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``secret`` at ``timestamp`` (HMAC-SHA1)."""
    return _totp_for_step(secret, int(timestamp // interval), digits=digits)


def _totp_for_step(secret: str, step: int, *, digits: int = TOTP_DIGITS) -> str:
    padded = secret + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    digest = hmac.new(key, step.to_bytes(8, "big"), hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class MFAEngine:
    """TOTP enrollment and verification.

    A user moves from unenrolled to secret-issued when ``issue_secret`` runs,
    and to enrolled on the first accepted code (when enable-on-verify is on).
    Accepted steps are consumed so a code works once. Repeated failures lock
    the user out for a few minutes.
    """

    def __init__(
        self,
        store: MFAStore,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock
        self._state_lock = threading.Lock()
        self._failed_attempts: dict[str, tuple[int, float]] = {}
        self._lockouts: dict[str, float] = {}

    def is_enabled(self, user_id: str) -> bool:
        cfg = self.store.get_user_mfa_secret(user_id)
        return bool(cfg and cfg.enabled)

    def build_uri(self, username: str, secret: str) -> str:
        issuer = self.settings.mfa_issuer
        label = quote(f"{issuer}:{username}")
        return (
            f"otpauth://totp/{label}?secret={secret}&issuer={quote(issuer)}"
            f"&algorithm=SHA1&digits={TOTP_DIGITS}&period={TOTP_INTERVAL}"
        )

    def issue_secret(self, user_id: str) -> tuple[str, str]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        existing = self.store.get_user_mfa_secret(user_id)
        if existing and existing.enabled:
            raise ConflictError("mfa already enabled")
        secret = base64.b32encode(os.urandom(20)).decode("ascii").rstrip("=")
        self.store.set_user_mfa_secret(user_id, secret, enabled=False)
        logger.info("mfa_secret_issued", user_id=user_id)
        return secret, self.build_uri(user.username, secret)

    def is_locked_out(self, user_id: str) -> bool:
        now = self._clock()
        with self._state_lock:
            locked_until = self._lockouts.get(user_id)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(user_id, None)
            return False

    def _record_failure(self, user_id: str) -> None:
        now = self._clock()
        with self._state_lock:
            attempts, window_start = 1, now
            current = self._failed_attempts.get(user_id)
            if current:
                count, prev_start = current
                if now - prev_start < FAILURE_WINDOW_SECONDS:
                    attempts, window_start = count + 1, prev_start
            self._failed_attempts[user_id] = (attempts, window_start)
            if attempts >= MAX_FAILED_ATTEMPTS:
                self._lockouts[user_id] = now + LOCKOUT_SECONDS
                self._failed_attempts.pop(user_id, None)
                logger.warning("mfa_lockout_triggered", user_id=user_id, attempts=attempts)

    def _match_step(self, secret: str, code: str) -> Optional[int]:
        current = int(self._clock() // TOTP_INTERVAL)
        window = self.settings.mfa_valid_window
        matched = None
        for offset in range(-window, window + 1):
            generated = _totp_for_step(secret, current + offset)
            if generated and hmac.compare_digest(generated, code):
                matched = current + offset
        return matched

    def verify_code(self, user_id: str, code: str) -> bool:
        cfg = self.store.get_user_mfa_secret(user_id)
        if not cfg:
            return False
        if self.is_locked_out(user_id):
            logger.warning("mfa_locked_out", user_id=user_id)
            return False
        code = (code or "").strip()
        step = None
        if len(code) == TOTP_DIGITS and code.isdigit():
            step = self._match_step(cfg.secret, code)
        if step is None:
            self._record_failure(user_id)
            logger.info("mfa_code_rejected", user_id=user_id)
            return False
        if not self.store.consume_mfa_step(user_id, step):
            self._record_failure(user_id)
            logger.warning("mfa_code_replayed", user_id=user_id)
            return False
        with self._state_lock:
            self._failed_attempts.pop(user_id, None)
        if self.settings.mfa_enable_on_verify and not cfg.enabled:
            if self.store.enable_user_mfa(user_id, cfg.secret):
                logger.info("mfa_enrolled", user_id=user_id)
        return True
