from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from bankcore.logging import get_logger

logger = get_logger(__name__)


class BalanceModel(str, Enum):
    """Account layouts supported by the ledger.

    - SINGLE: one balance and one account number per user
    - DUAL: separate checking and savings balances, each with its own number
    """

    SINGLE = "single"
    DUAL = "dual"


BALANCE_SUBTYPES: dict[BalanceModel, tuple[str, ...]] = {
    BalanceModel.SINGLE: ("primary",),
    BalanceModel.DUAL: ("checking", "savings"),
}


def get_balance_subtypes(model: BalanceModel | str) -> tuple[str, ...]:
    """Return the balance subtypes for a balance model, first one is the default."""
    return BALANCE_SUBTYPES[BalanceModel(model)]


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the banking service."""

    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory for the store snapshot; unset keeps state in memory only",
    )
    mfa_encryption_key: str | None = env_field(None, "MFA_SECRET_KEY")
    client_url: str = env_field(
        "http://localhost:5173",
        "CLIENT_URL",
        description="Frontend base URL used to build password reset links",
    )
    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("BankCore", "EMAIL_FROM_NAME")
    # Session tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("bankcore", "JWT_ISSUER")
    jwt_audience: str = env_field("bankcore-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of the session credential",
    )
    mfa_pending_ttl_minutes: int = env_field(
        5,
        "MFA_PENDING_TTL_MINUTES",
        description="Lifetime of the handle returned while a login awaits its second factor",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    # Accounts
    balance_model: BalanceModel = env_field(BalanceModel.SINGLE, "BALANCE_MODEL")
    account_number_prefix: str = env_field("1998", "ACCOUNT_NUMBER_PREFIX")
    account_number_digits: int = env_field(7, "ACCOUNT_NUMBER_DIGITS", ge=1, le=18)
    account_number_max_attempts: int = env_field(
        10,
        "ACCOUNT_NUMBER_MAX_ATTEMPTS",
        ge=1,
        description="Collision retries before account number generation gives up",
    )
    require_approval: bool = env_field(
        False,
        "REQUIRE_APPROVAL",
        description="New accounts cannot log in until approved out of band",
    )
    # MFA policy
    enable_mfa: bool = env_field(True, "ENABLE_MFA")
    mfa_enforce_enrollment: bool = env_field(
        False,
        "MFA_ENFORCE_ENROLLMENT",
        description="Users without MFA must enroll before a session is issued",
    )
    mfa_enable_on_verify: bool = env_field(
        True,
        "MFA_ENABLE_ON_VERIFY",
        description="First successful code after enrollment turns MFA on for the user",
    )
    mfa_valid_window: int = env_field(
        5,
        "MFA_VALID_WINDOW",
        ge=0,
        description="Accepted clock drift in 30 second steps on either side",
    )
    mfa_issuer: str = env_field("BankCore", "MFA_ISSUER")
    # Password reset
    reset_token_ttl_minutes: int = env_field(60, "RESET_TOKEN_TTL_MINUTES", ge=1)
    reveal_unknown_reset_email: bool = env_field(
        False,
        "REVEAL_UNKNOWN_RESET_EMAIL",
        description="Answer forgot-password for unknown emails with an error instead of the generic ack",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("balance_model")
    @classmethod
    def _validate_balance_model(cls, value: BalanceModel) -> BalanceModel:
        return BalanceModel(value)

    @field_validator("account_number_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("account number prefix must be numeric")
        return value

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; sessions will not survive a restart",
        )
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
