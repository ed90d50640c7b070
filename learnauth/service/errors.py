from __future__ import annotations

import contextlib
from typing import Iterator, Optional

from learnauth.logging import get_logger
from learnauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to transport responses.

    Each exception class carries both an HTTP ``status_code`` and a stable
    ``error_code`` so callers can map errors without inspecting messages:

    - validation_error / weak_password (400)
    - invalid_credentials / invalid_token (401)
    - account_locked / email_not_verified / account_inactive (403)
    - not_found (404)
    - conflict (409)
    - infrastructure_error (503, safe to retry)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

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


class WeakPasswordError(ValidationError):
    """Password does not satisfy the strength policy (400)."""
    error_code = "weak_password"

    def __init__(self, message: str, *, violations: Optional[list[str]] = None) -> None:
        super().__init__(message, detail={"violations": list(violations or [])})
        self.violations = list(violations or [])


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"


class InvalidTokenError(AuthenticationError):
    """Access or refresh token is malformed, badly signed, expired or revoked."""
    error_code = "invalid_token"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountLockedError(ForbiddenError):
    error_code = "account_locked"


class EmailNotVerifiedError(ForbiddenError):
    error_code = "email_not_verified"


class AccountNotActiveError(ForbiddenError):
    error_code = "account_inactive"


class InvalidOrExpiredTokenError(ValidationError):
    """Reset or verification token is unknown, expired or already used (400)."""
    error_code = "invalid_or_expired_token"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class InfrastructureError(ServiceError):
    """Persistence or delivery backend unavailable (503). Callers may retry."""
    status_code = 503
    error_code = "infrastructure_error"
    retryable = True


@contextlib.contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Surface store connectivity failures as a retryable InfrastructureError."""
    try:
        yield
    except StorageUnavailable as exc:
        logger.error("storage_unavailable", operation=operation, error=exc.message)
        raise InfrastructureError(
            "storage temporarily unavailable", detail={"operation": operation}
        ) from exc


__all__ = [
    "storage_errors",
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "ForbiddenError",
    "AccountLockedError",
    "EmailNotVerifiedError",
    "AccountNotActiveError",
    "InvalidOrExpiredTokenError",
    "NotFoundError",
    "ConflictError",
    "InfrastructureError",
]
