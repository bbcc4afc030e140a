from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from bankcore.storage.models import Transaction, UserAccount

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "pending_approval",
    "exhausted",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    cleaned = ''.join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class SignupRequest(BaseModel):
    username: str = Field(..., max_length=50)
    email: str
    password: str = Field(..., max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    middle_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=20)
    date_of_birth: Optional[str] = Field(default=None, max_length=32)
    street: Optional[str] = Field(default=None, max_length=200)
    apt: Optional[str] = Field(default=None, max_length=50)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=50)
    zip_code: Optional[str] = Field(
        default=None, max_length=10, validation_alias=AliasChoices("zip_code", "zip")
    )
    id_number: Optional[str] = Field(default=None, max_length=50)
    issue_state: Optional[str] = Field(default=None, max_length=50)
    id_expiration: Optional[str] = Field(default=None, max_length=32)
    ssn: Optional[str] = Field(default=None, max_length=11)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("phone", "ssn")
    @classmethod
    def _strip_separators(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return re.sub(r"[\s().-]", "", value) or None

    def profile(self) -> Dict[str, Optional[str]]:
        return self.model_dump(exclude={"username", "email", "password"})


class LoginRequest(BaseModel):
    identifier: str = Field(
        ...,
        max_length=254,
        validation_alias=AliasChoices("identifier", "username", "email"),
    )
    password: str = Field(..., max_length=128)


class MFAVerifyRequest(BaseModel):
    mfa_token: str = Field(..., max_length=2048)
    code: str = Field(..., max_length=10)


class MFASetupRequest(BaseModel):
    mfa_token: Optional[str] = Field(default=None, max_length=2048)


class MFASetupVerifyRequest(BaseModel):
    mfa_token: Optional[str] = Field(default=None, max_length=2048)
    code: str = Field(..., max_length=10)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    password: str = Field(..., max_length=128)


class BalanceUpdateRequest(BaseModel):
    user_id: str = Field(..., max_length=64)
    amount: float
    account_type: Optional[str] = Field(default=None, max_length=32)
    description: Optional[str] = Field(default=None, max_length=200)


class AccountResponse(BaseModel):
    """Public projection of an account; credentials and identifiers stay server-side."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: str
    account_numbers: Dict[str, str]
    first_name: Optional[str] = None
    middle_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    date_of_birth: Optional[str] = None
    street: Optional[str] = None
    apt: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    issue_state: Optional[str] = None
    id_expiration: Optional[str] = None
    approved: bool
    balances: Dict[str, float]
    mfa_enabled: bool = False
    last_login: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_user(cls, user: UserAccount, *, mfa_enabled: bool = False) -> "AccountResponse":
        return cls.model_validate(user).model_copy(update={"mfa_enabled": mfa_enabled})


class LoginResponse(BaseModel):
    state: str
    user_id: str
    mfa_required: bool = False
    mfa_setup_required: bool = False
    mfa_token: Optional[str] = None
    access_token: Optional[str] = None
    token_type: Optional[str] = None
    user: Optional[AccountResponse] = None


class MFASetupResponse(BaseModel):
    otpauth_uri: str
    secret: str


class MFASetupVerifyResponse(BaseModel):
    mfa_enabled: bool
    session: Optional[LoginResponse] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount: float
    account_type: str
    description: Optional[str] = None
    balance_after: float
    created_at: datetime

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionResponse":
        return cls.model_validate(txn)


class BalanceResponse(BaseModel):
    user_id: str
    account_type: str
    balance: float
    transaction: TransactionResponse


class TransactionListResponse(BaseModel):
    items: List[TransactionResponse]
