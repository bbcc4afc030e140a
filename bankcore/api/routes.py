from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Response

from bankcore.api.schemas import (
    AccountResponse,
    BalanceResponse,
    BalanceUpdateRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    MFASetupRequest,
    MFASetupResponse,
    MFASetupVerifyRequest,
    MFASetupVerifyResponse,
    MFAVerifyRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SignupRequest,
    TransactionListResponse,
    TransactionResponse,
)
from bankcore.logging import get_logger
from bankcore.service.auth import LoginOutcome, LoginState, SignupData
from bankcore.service.errors import ForbiddenError
from bankcore.service.runtime import Runtime, get_runtime
from bankcore.storage.models import UserAccount

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

SESSION_COOKIE = "access_token"
RESET_ACK = "If an account exists for that email, a password reset link has been sent"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def _session_token(
    authorization: Optional[str], access_token: Optional[str]
) -> Optional[str]:
    return _extract_bearer(authorization) or access_token


async def get_current_user(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> UserAccount:
    token = _session_token(authorization, access_token)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    user = get_runtime().auth.authenticate(token)
    if not user:
        raise _http_error("forbidden", "invalid or expired session", status_code=403)
    return user


def _account_view(runtime: Runtime, user: UserAccount) -> AccountResponse:
    return AccountResponse.from_user(user, mfa_enabled=runtime.mfa.is_enabled(user.id))


def _apply_session_cookie(response: Response, runtime: Runtime, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        path="/",
    )


def _login_response(
    runtime: Runtime, outcome: LoginOutcome, response: Response
) -> LoginResponse:
    body = LoginResponse(
        state=outcome.state.value,
        user_id=outcome.user.id,
        mfa_required=outcome.mfa_required,
        mfa_setup_required=outcome.mfa_setup_required,
        mfa_token=outcome.mfa_token,
    )
    if outcome.state is LoginState.SESSION_ISSUED and outcome.access_token:
        _apply_session_cookie(response, runtime, outcome.access_token)
        body.access_token = outcome.access_token
        body.token_type = "bearer"
        body.user = _account_view(runtime, outcome.user)
    return body


def _resolve_enrolling_user(
    runtime: Runtime,
    mfa_token: Optional[str],
    authorization: Optional[str],
    access_token: Optional[str],
) -> tuple[UserAccount, bool]:
    """Find who is enrolling: a pending login handle or an existing session.

    Returns the user and whether they came in through a pending handle.
    """
    if mfa_token:
        return runtime.auth.resolve_pending(mfa_token), True
    token = _session_token(authorization, access_token)
    if not token:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    user = runtime.auth.authenticate(token)
    if not user:
        raise _http_error("forbidden", "invalid or expired session", status_code=403)
    return user, False


@router.post("/signup", response_model=Envelope, status_code=201)
async def signup(body: SignupRequest):
    """Create a new account.

    Allocates account numbers for every balance subtype and starts each balance
    at zero. No session is issued; the client logs in afterwards.

    Raises:
        400: Invalid fields, or username/email already taken
        503: Account numbers could not be allocated
    """
    runtime = get_runtime()
    user = await runtime.auth.signup(
        SignupData(
            username=body.username,
            email=body.email,
            password=body.password,
            profile=body.profile(),
        )
    )
    return Envelope(status="ok", data=_account_view(runtime, user))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, response: Response):
    """Authenticate with username or email and password.

    Returns either a session (cookie plus bearer token) or an MFA marker with
    a short-lived ``mfa_token`` to pass to ``/verify-mfa`` or the setup flow.
    """
    runtime = get_runtime()
    outcome = await runtime.auth.login(body.identifier, body.password)
    return Envelope(status="ok", data=_login_response(runtime, outcome, response))


@router.post("/verify-mfa", response_model=Envelope)
async def verify_mfa(body: MFAVerifyRequest, response: Response):
    runtime = get_runtime()
    outcome = await runtime.auth.complete_mfa_login(body.mfa_token, body.code)
    return Envelope(status="ok", data=_login_response(runtime, outcome, response))


@router.post("/setup-mfa", response_model=Envelope)
async def setup_mfa(
    body: Optional[MFASetupRequest] = None,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
):
    """Issue a TOTP secret and its otpauth URI for the authenticator app."""
    runtime = get_runtime()
    user, _ = _resolve_enrolling_user(
        runtime, body.mfa_token if body else None, authorization, access_token
    )
    secret, uri = await runtime.auth.begin_mfa_setup(user.id)
    return Envelope(status="ok", data=MFASetupResponse(otpauth_uri=uri, secret=secret))


@router.post("/verify-mfa-setup", response_model=Envelope)
async def verify_mfa_setup(
    body: MFASetupVerifyRequest,
    response: Response,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
):
    """Confirm enrollment with a first code.

    When enrollment was reached from a pending login the session is issued here.
    """
    runtime = get_runtime()
    user, pending = _resolve_enrolling_user(
        runtime, body.mfa_token, authorization, access_token
    )
    enabled = await runtime.auth.complete_mfa_setup(user.id, body.code)
    session = None
    if pending:
        session = _login_response(runtime, runtime.auth.issue_session(user), response)
    return Envelope(
        status="ok", data=MFASetupVerifyResponse(mfa_enabled=enabled, session=session)
    )


@router.post("/logout", response_model=Envelope)
async def logout(response: Response):
    runtime = get_runtime()
    response.delete_cookie(
        SESSION_COOKIE,
        path="/",
        secure=runtime.settings.cookie_secure,
        httponly=True,
        samesite="lax",
    )
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await runtime.reset.request_reset(body.email)
    return Envelope(status="ok", data={"message": RESET_ACK})


@router.post("/reset-password/{token}", response_model=Envelope)
async def reset_password(
    body: PasswordResetConfirm,
    token: str = Path(..., min_length=1, max_length=128),
):
    runtime = get_runtime()
    await runtime.reset.redeem(token, body.password)
    return Envelope(status="ok", data={"message": "password has been reset"})


@router.get("/check-auth", response_model=Envelope)
async def check_auth(user: UserAccount = Depends(get_current_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_account_view(runtime, user))


@router.put("/balance", response_model=Envelope)
async def update_balance(
    body: BalanceUpdateRequest, user: UserAccount = Depends(get_current_user)
):
    """Apply a signed amount to one of the caller's balances.

    Raises:
        400: Non-finite or zero amount, or unknown account type
        403: The balance belongs to another user
        404: Unknown user
    """
    if body.user_id != user.id:
        raise ForbiddenError("cannot modify another user's balance")
    runtime = get_runtime()
    new_balance, txn = runtime.ledger.apply_delta(
        body.user_id, body.amount, body.account_type, body.description
    )
    return Envelope(
        status="ok",
        data=BalanceResponse(
            user_id=body.user_id,
            account_type=txn.account_type,
            balance=new_balance,
            transaction=TransactionResponse.from_transaction(txn),
        ),
    )


@router.get("/transactions/{user_id}", response_model=Envelope)
async def list_transactions(
    user_id: str = Path(..., max_length=64),
    user: UserAccount = Depends(get_current_user),
):
    if user_id != user.id:
        raise ForbiddenError("cannot view another user's transactions")
    runtime = get_runtime()
    items = runtime.ledger.list_transactions(user_id)
    return Envelope(
        status="ok",
        data=TransactionListResponse(
            items=[TransactionResponse.from_transaction(txn) for txn in items]
        ),
    )
