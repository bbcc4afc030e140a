from __future__ import annotations

import functools
import inspect
from typing import Any, Callable, Optional, TypeVar

from bankcore.storage.errors import StoreUnavailable

F = TypeVar("F", bound=Callable[..., Any])


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that is placed in the response envelope:
    - validation_error (400)
    - conflict (400)
    - unauthorized (400, 401 when a session credential is missing)
    - pending_approval (400)
    - forbidden (403)
    - not_found (404)
    - server_error (500)
    - exhausted (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ConflictError(ServiceError):
    """Duplicate identifier or account number (400)."""
    status_code = 400
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Bad credentials, bad MFA code or unusable reset token.

    The message is always generic; callers never learn which check failed.
    """
    status_code = 400
    error_code = "unauthorized"


class PendingApprovalError(ServiceError):
    """Credentials belong to an account that has not been approved yet (400)."""
    status_code = 400
    error_code = "pending_approval"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StorageError(ServerError):
    """Persistence failed; details are logged, never returned."""
    pass


class ExhaustionError(ServiceError):
    """Account number generation ran out of attempts (503)."""
    status_code = 503
    error_code = "exhausted"


def storage_errors(func: F) -> F:
    """Re-raise ``StoreUnavailable`` from ``func`` as ``StorageError``.

    Works for plain and ``async`` methods. The store message is chained but
    never copied into the service error.
    """
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except StoreUnavailable as exc:
                raise StorageError("storage unavailable") from exc

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StoreUnavailable as exc:
            raise StorageError("storage unavailable") from exc

    return wrapper  # type: ignore[return-value]


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "PendingApprovalError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "StorageError",
    "ExhaustionError",
    "storage_errors",
]
