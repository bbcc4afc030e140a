from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from bankcore.config import Settings
from bankcore.logging import get_logger
from bankcore.service.auth import Notifier, PasswordHasherLike, validate_password
from bankcore.service.errors import AuthenticationError, NotFoundError, storage_errors
from bankcore.storage.models import UserAccount

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 20


class ResetStore(Protocol):
    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def set_reset_token(self, user_id: str, token: str, expires_at: datetime) -> None: ...

    def get_user_by_live_reset_token(
        self, token: str, now: datetime
    ) -> Optional[UserAccount]: ...

    def redeem_reset_token(
        self,
        token: str,
        now: datetime,
        password_hash: str,
        password_algo: str,
    ) -> Optional[UserAccount]: ...


class PasswordResetService:
    """Single-use, time-limited password reset tokens.

    Requesting a reset stores the token and its expiry together; redeeming
    swaps the password and clears both in one store call. Expired, unknown and
    already used tokens fail the same way.
    """

    def __init__(
        self,
        store: ResetStore,
        settings: Settings,
        *,
        hasher: PasswordHasherLike,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.notifier = notifier
        self._clock = clock

    def reset_url(self, token: str) -> str:
        return f"{self.settings.client_url.rstrip('/')}/reset-password/{token}"

    @storage_errors
    async def request_reset(self, email: str) -> Optional[str]:
        """Issue a reset token for ``email``.

        Returns the token for a known address and None otherwise, unless
        unknown addresses are configured to be revealed.
        """
        email_hash = hashlib.sha256((email or "").strip().lower().encode()).hexdigest()
        user = self.store.get_user_by_email(email or "")
        if not user:
            logger.info("password_reset_unknown_email", email_hash=email_hash)
            if self.settings.reveal_unknown_reset_email:
                raise NotFoundError("no account with that email", status_code=400)
            return None
        token = secrets.token_hex(RESET_TOKEN_BYTES)
        expires_at = self._clock() + timedelta(minutes=self.settings.reset_token_ttl_minutes)
        self.store.set_reset_token(user.id, token, expires_at)
        logger.info("password_reset_requested", user_id=user.id, email_hash=email_hash)
        if self.notifier:
            try:
                await asyncio.to_thread(
                    self.notifier.send_password_reset,
                    user.email,
                    self.reset_url(token),
                    self.settings.reset_token_ttl_minutes,
                )
            except Exception as exc:
                logger.warning("notification_failed", kind="send_password_reset", error=str(exc))
        return token

    def _reject(self, token: str) -> AuthenticationError:
        logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
        return AuthenticationError("invalid or expired reset token")

    @storage_errors
    async def redeem(self, token: str, new_password: str) -> UserAccount:
        """Set a new password for the holder of a live reset token.

        A dead token fails with the same error whatever password comes with it.
        """
        now = self._clock()
        if not self.store.get_user_by_live_reset_token(token, now):
            raise self._reject(token)
        validate_password(new_password)
        password_hash, algo = self.hasher.hash_password(new_password)
        user = self.store.redeem_reset_token(token, now, password_hash, algo)
        if not user:
            raise self._reject(token)
        logger.info("password_reset_completed", user_id=user.id)
        if self.notifier:
            try:
                await asyncio.to_thread(self.notifier.send_reset_success, user.email)
            except Exception as exc:
                logger.warning("notification_failed", kind="send_reset_success", error=str(exc))
        return user
