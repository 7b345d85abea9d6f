from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from warden.storage.errors import StorageUnavailable


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and an HTTP ``status_code``
    so the API layer can render it without inspecting the message.
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


class AlreadyExistsError(ServiceError):
    """A user with the same email or username exists (409)."""
    status_code = 409
    error_code = "already_exists"

    def __init__(self, message: str = "User with this username or email already exists", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; deliberately indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class EmailNotVerifiedError(ServiceError):
    """Credentials are valid but the email address is not verified (403)."""
    status_code = 403
    error_code = "email_not_verified"

    def __init__(self, message: str = "Email is not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(ServiceError):
    """A refresh or single-use token failed validation (401).

    ``reason`` is one of ``not_found``, ``used``, ``expired`` or ``malformed``.
    """
    status_code = 401
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", *, reason: str = "not_found", **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("reason", reason)
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class SamePasswordError(ServiceError):
    """New password equals the current one (400)."""
    status_code = 400
    error_code = "same_password"

    def __init__(self, message: str = "New password must be different from the current password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(ServiceError):
    """No user matched the identifier (404)."""
    status_code = 404
    error_code = "user_not_found"

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnauthorizedError(ServiceError):
    """Missing or invalid bearer credentials (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, message: str = "Unauthorized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many requests", *, retry_after: int = 1, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class StorageUnavailableError(ServiceError):
    """Backing store unreachable or timed out; not retried (503)."""
    status_code = 503
    error_code = "storage_unavailable"

    def __init__(self, message: str = "Storage temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


@contextmanager
def translate_storage_errors() -> Iterator[None]:
    """Surface store connectivity failures as a service-level 503."""

    try:
        yield
    except StorageUnavailable as exc:
        raise StorageUnavailableError(detail=exc.detail) from exc


__all__ = [
    "ServiceError",
    "ValidationError",
    "AlreadyExistsError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "InvalidTokenError",
    "SamePasswordError",
    "UserNotFoundError",
    "UnauthorizedError",
    "RateLimitedError",
    "StorageUnavailableError",
    "translate_storage_errors",
]
