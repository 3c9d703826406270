from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:
    - unauthorized (401)
    - invalid_token (401)
    - conflict (409)
    - rate_limited (429)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthenticationFailed(AuthenticationError):
    """Username/password pair did not match an account."""

    def __init__(self, message: str = "Invalid username or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """Token failed signature/expiry checks or its record was revoked.

    Forged and revoked tokens are deliberately indistinguishable to callers.
    """

    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFound(AuthenticationError):
    """A token's subject no longer resolves to an account."""

    def __init__(self, message: str = "User not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateUsername(ConflictError):
    def __init__(self, message: str = "Username is already taken.", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "username"})
        super().__init__(message, **kwargs)


class DuplicateEmail(ConflictError):
    def __init__(self, message: str = "Email is already registered.", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "AuthenticationFailed",
    "InvalidToken",
    "UserNotFound",
    "ConflictError",
    "DuplicateUsername",
    "DuplicateEmail",
    "RateLimitedError",
]
