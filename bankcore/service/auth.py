from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from bankcore.config import Settings, get_balance_subtypes
from bankcore.logging import get_logger
from bankcore.service.accounts import AccountNumberGenerator
from bankcore.service.errors import (
    AuthenticationError,
    ConflictError,
    ExhaustionError,
    NotFoundError,
    PendingApprovalError,
    ValidationError,
    storage_errors,
)
from bankcore.service.mfa import MFAEngine
from bankcore.service.tokens import TokenIssuer
from bankcore.storage.errors import ConstraintViolation
from bankcore.storage.models import UserAccount, UserMFAConfig

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.-]{3,50}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_DIGIT_RULES = {"phone": 10, "ssn": 9, "zip_code": 5}


class CredentialStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        *,
        account_numbers: Dict[str, str],
        balances: Optional[Dict[str, float]] = None,
        approved: bool = True,
        profile: Optional[Dict[str, Optional[str]]] = None,
        password: Optional[tuple[str, str]] = None,
    ) -> UserAccount: ...

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def get_user_by_username(self, username: str) -> Optional[UserAccount]: ...

    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def list_users(self, limit: int = 100) -> List[UserAccount]: ...

    def account_number_exists(self, number: str) -> bool: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def get_user_mfa_secret(self, user_id: str) -> Optional[UserMFAConfig]: ...

    def set_user_approved(self, user_id: str, approved: bool) -> Optional[UserAccount]: ...

    def touch_last_login(self, user_id: str) -> Optional[UserAccount]: ...


class Notifier(Protocol):
    def send_welcome(self, to_email: str, username: str) -> bool: ...

    def send_password_reset(
        self, to_email: str, reset_url: str, ttl_minutes: int = 60
    ) -> bool: ...

    def send_reset_success(self, to_email: str) -> bool: ...


class PasswordHasherLike(Protocol):
    def hash_password(self, password: str) -> Tuple[str, str]: ...


class LoginState(str, Enum):
    CREDENTIAL_CHECK = "credential_check"
    APPROVAL_GATE = "approval_gate"
    MFA_BRANCH = "mfa_branch"
    SESSION_ISSUED = "session_issued"
    REJECTED = "rejected"


@dataclass
class SignupData:
    username: str
    email: str
    password: str
    profile: Dict[str, Optional[str]] = field(default_factory=dict)


@dataclass
class LoginOutcome:
    state: LoginState
    user: UserAccount
    access_token: Optional[str] = None
    mfa_required: bool = False
    mfa_setup_required: bool = False
    mfa_token: Optional[str] = None


def validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )
    if len(password) > MAX_PASSWORD_LENGTH:
        raise ValidationError("password too long", detail={"field": "password"})


def validate_signup(data: SignupData) -> None:
    """Field checks applied before any account is created."""
    if not data.username or not _USERNAME_RE.match(data.username):
        raise ValidationError(
            "username must be 3-50 letters, digits, dots, dashes or underscores",
            detail={"field": "username"},
        )
    if not data.email or not _EMAIL_RE.match(data.email.strip()):
        raise ValidationError("invalid email address", detail={"field": "email"})
    validate_password(data.password)
    for name, length in _DIGIT_RULES.items():
        value = data.profile.get(name)
        if value and not (value.isdigit() and len(value) == length):
            raise ValidationError(
                f"{name} must be {length} digits", detail={"field": name}
            )


class AuthService:
    """Signup, login with an optional TOTP second factor, and session checks.

    ``login`` walks the states in ``LoginState`` in a fixed order and either
    raises or returns a ``LoginOutcome``. A session token is only issued in
    ``SESSION_ISSUED``; the MFA branch hands out a short-lived pending handle
    that ``complete_mfa_login`` exchanges for a session once a code verifies.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        tokens: TokenIssuer,
        mfa: MFAEngine,
        accounts: AccountNumberGenerator,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.mfa = mfa
        self.accounts = accounts
        self.notifier = notifier
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # -- passwords ----------------------------------------------------------

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    # -- signup -------------------------------------------------------------

    @storage_errors
    async def signup(self, data: SignupData) -> UserAccount:
        validate_signup(data)
        password = self.hash_password(data.password)
        subtypes = get_balance_subtypes(self.settings.balance_model)
        user: Optional[UserAccount] = None
        for _ in range(self.accounts.max_attempts):
            numbers = self.accounts.generate_set(subtypes)
            try:
                user = self.store.create_user(
                    data.username,
                    data.email,
                    account_numbers=numbers,
                    balances={subtype: 0.0 for subtype in subtypes},
                    approved=not self.settings.require_approval,
                    profile=data.profile,
                    password=password,
                )
                break
            except ConstraintViolation as exc:
                if exc.field == "account_number":
                    self.logger.info("signup_account_number_race")
                    continue
                raise ConflictError(
                    "user already exists", detail={"field": exc.field}
                ) from exc
        if user is None:
            raise ExhaustionError("unable to allocate an account number")
        self.logger.info("signup_completed", user_id=user.id, approved=user.approved)
        await self._notify("send_welcome", user.email, user.username)
        return user

    async def _notify(self, method: str, *args: Any) -> None:
        if not self.notifier:
            return
        try:
            await asyncio.to_thread(getattr(self.notifier, method), *args)
        except Exception as exc:
            self.logger.warning("notification_failed", kind=method, error=str(exc))

    # -- approval -----------------------------------------------------------

    @storage_errors
    def approve_user(self, user_id: str, approved: bool = True) -> UserAccount:
        user = self.store.set_user_approved(user_id, approved)
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("user_approval_changed", user_id=user_id, approved=approved)
        return user

    # -- login --------------------------------------------------------------

    def _lookup(self, identifier: str) -> Optional[UserAccount]:
        identifier = (identifier or "").strip()
        if not identifier:
            return None
        return self.store.get_user_by_username(identifier) or self.store.get_user_by_email(
            identifier
        )

    @storage_errors
    async def login(self, identifier: str, password: str) -> LoginOutcome:
        # CREDENTIAL_CHECK: identity lookup
        user = self._lookup(identifier)
        if not user:
            self.logger.info("login_rejected", reason="unknown_identity")
            raise AuthenticationError("invalid credentials")

        # APPROVAL_GATE
        if self.settings.require_approval and not user.approved:
            self.logger.info("login_rejected", user_id=user.id, reason="pending_approval")
            raise PendingApprovalError("account pending approval")

        if not self.verify_password(user.id, password or ""):
            self.logger.info("login_rejected", user_id=user.id, reason="bad_password")
            raise AuthenticationError("invalid credentials")

        # MFA_BRANCH
        if self.settings.enable_mfa:
            if self.mfa.is_enabled(user.id):
                self.logger.info("login_mfa_required", user_id=user.id)
                return LoginOutcome(
                    state=LoginState.MFA_BRANCH,
                    user=user,
                    mfa_required=True,
                    mfa_token=self._issue_pending(user),
                )
            if self.settings.mfa_enforce_enrollment:
                self.logger.info("login_mfa_setup_required", user_id=user.id)
                return LoginOutcome(
                    state=LoginState.MFA_BRANCH,
                    user=user,
                    mfa_setup_required=True,
                    mfa_token=self._issue_pending(user),
                )

        return self.issue_session(user)

    def _issue_pending(self, user: UserAccount) -> str:
        return self.tokens.issue(
            user.id,
            timedelta(minutes=self.settings.mfa_pending_ttl_minutes),
            token_type="mfa_pending",
            claims={"epoch": user.session_epoch},
        )

    @storage_errors
    def resolve_pending(self, mfa_token: str) -> UserAccount:
        """Return the user behind a pending-MFA handle or raise."""
        payload = self.tokens.verify(mfa_token, token_type="mfa_pending")
        user = self.store.get_user(payload["sub"]) if payload else None
        if not user or payload.get("epoch") != user.session_epoch:
            raise AuthenticationError("invalid or expired mfa token")
        return user

    @storage_errors
    async def complete_mfa_login(self, mfa_token: str, code: str) -> LoginOutcome:
        user = self.resolve_pending(mfa_token)
        if not self.mfa.verify_code(user.id, code):
            self.logger.info("login_rejected", user_id=user.id, reason="bad_mfa_code")
            raise AuthenticationError("invalid mfa code")
        return self.issue_session(user)

    def issue_session(self, user: UserAccount) -> LoginOutcome:
        token = self.tokens.issue(
            user.id,
            timedelta(minutes=self.settings.access_token_ttl_minutes),
            claims={"epoch": user.session_epoch},
        )
        updated = self.store.touch_last_login(user.id) or user
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginOutcome(
            state=LoginState.SESSION_ISSUED, user=updated, access_token=token
        )

    # -- mfa enrollment -----------------------------------------------------

    @storage_errors
    async def begin_mfa_setup(self, user_id: str) -> tuple[str, str]:
        if not self.settings.enable_mfa:
            raise ValidationError("mfa is disabled")
        return self.mfa.issue_secret(user_id)

    @storage_errors
    async def complete_mfa_setup(self, user_id: str, code: str) -> bool:
        """Verify the first code after enrollment; returns the enabled flag."""
        if not self.store.get_user_mfa_secret(user_id):
            raise ValidationError("mfa setup has not been started")
        if not self.mfa.verify_code(user_id, code):
            raise AuthenticationError("invalid mfa code")
        return self.mfa.is_enabled(user_id)

    # -- sessions -----------------------------------------------------------

    @storage_errors
    def authenticate(self, token: Optional[str]) -> Optional[UserAccount]:
        payload = self.tokens.verify(token, token_type="access")
        if not payload:
            return None
        user = self.store.get_user(payload.get("sub"))
        if not user or payload.get("epoch") != user.session_epoch:
            return None
        return user
