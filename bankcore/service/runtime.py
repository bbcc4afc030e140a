from __future__ import annotations

import threading

from bankcore.config import get_settings, reset_settings_cache
from bankcore.logging import get_logger
from bankcore.service.accounts import AccountNumberGenerator
from bankcore.service.auth import AuthService
from bankcore.service.email import EmailService
from bankcore.service.ledger import LedgerService
from bankcore.service.mfa import MFAEngine
from bankcore.service.reset import PasswordResetService
from bankcore.service.tokens import TokenIssuer
from bankcore.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            balance_model=self.settings.balance_model.value,
            persisted=bool(self.settings.shared_fs_root),
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = MemoryStore(
                fs_root=self.settings.shared_fs_root,
                mfa_encryption_key=self.settings.mfa_encryption_key,
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.tokens = TokenIssuer(self.settings)
        self.accounts = AccountNumberGenerator(
            self.store,
            prefix=self.settings.account_number_prefix,
            digits=self.settings.account_number_digits,
            max_attempts=self.settings.account_number_max_attempts,
        )
        self.mfa = MFAEngine(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            tokens=self.tokens,
            mfa=self.mfa,
            accounts=self.accounts,
            notifier=self.email,
        )
        self.reset = PasswordResetService(
            self.store,
            self.settings,
            hasher=self.auth,
            notifier=self.email,
        )
        self.ledger = LedgerService(self.store, self.settings)

        logger.info(
            "runtime_initialized",
            email_configured=self.email.is_configured,
            mfa_enabled=self.settings.enable_mfa,
            require_approval=self.settings.require_approval,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent races during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
