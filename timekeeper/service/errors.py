from __future__ import annotations

import functools
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional, TypeVar

from timekeeper.storage.errors import StoreUnavailable

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass fixes a stable ``error_code`` that clients can branch on and
    the HTTP ``status_code`` the API layer should answer with. Messages are
    written for end users and never carry internal detail.
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown username or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"


class MfaRequiredError(AuthenticationError):
    """Password was correct but the account needs a TOTP code."""
    error_code = "mfa_required"


class MfaInvalidError(AuthenticationError):
    error_code = "mfa_invalid"


class AccountLockedError(ServiceError):
    """Too many consecutive failures; ``detail['locked_until']`` says until when."""
    status_code = 423
    error_code = "account_locked"


class InvalidTokenError(AuthenticationError):
    """Token is expired, malformed, revoked or unknown."""
    error_code = "invalid_token"


class TokenReuseDetectedError(AuthenticationError):
    """An already-consumed refresh token was presented again.

    Raised after every session of the owning user has been revoked.
    """
    error_code = "token_reuse_detected"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ResetTokenInvalidError(ServiceError):
    status_code = 400
    error_code = "reset_token_invalid"


class ResetTokenExpiredError(ServiceError):
    status_code = 400
    error_code = "reset_token_expired"


class InfrastructureUnavailableError(ServiceError):
    """Durable store unreachable (503)."""
    status_code = 503
    error_code = "infrastructure_unavailable"


@contextmanager
def translate_store_errors() -> Iterator[None]:
    """Surface an unreachable durable store as a stable 503 error kind."""
    try:
        yield
    except StoreUnavailable as exc:
        raise InfrastructureUnavailableError("service temporarily unavailable") from exc


def store_guarded(func: F) -> F:
    @functools.wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        with translate_store_errors():
            return await func(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MfaRequiredError",
    "MfaInvalidError",
    "AccountLockedError",
    "InvalidTokenError",
    "TokenReuseDetectedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ResetTokenInvalidError",
    "ResetTokenExpiredError",
    "InfrastructureUnavailableError",
    "translate_store_errors",
    "store_guarded",
]
