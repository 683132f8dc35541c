from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - VALIDATION_ERROR (400)
    - UNAUTHORIZED / INVALID_CREDENTIALS (401)
    - RATE_LIMITED (429, with retry-after)
    - ACCOUNT_LOCKED (423)
    - CHALLENGE_EXPIRED / CHALLENGE_EXHAUSTED (400), INVALID_CODE (401)
    - INVALID_OR_EXPIRED_TOKEN (401)
    - CONNECTION_ERROR (503)
    - INTERNAL_ERROR (500)
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

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

    @property
    def retry_after_seconds(self) -> Optional[int]:
        value = self.detail.get("retry_after_seconds")
        return int(value) if value is not None else None


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    """Unknown account or wrong password; both share one message."""
    error_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Access or refresh token is unknown, revoked, rotated or expired."""
    error_code = "INVALID_OR_EXPIRED_TOKEN"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "too many attempts, try again later",
        *,
        retry_after_seconds: int = 1,
        detail: Optional[dict] = None,
    ) -> None:
        payload = dict(detail or {})
        payload["retry_after_seconds"] = max(1, int(retry_after_seconds))
        super().__init__(message, detail=payload)


class AccountLockedError(ServiceError):
    """Login refused for this account until a lock clears (423)."""
    status_code = 423
    error_code = "ACCOUNT_LOCKED"

    def __init__(
        self,
        message: str = "account temporarily locked",
        *,
        retry_after_seconds: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        payload = dict(detail or {})
        if retry_after_seconds is not None:
            payload["retry_after_seconds"] = max(1, int(retry_after_seconds))
        super().__init__(message, detail=payload)


class ChallengeExpiredError(ServiceError):
    status_code = 400
    error_code = "CHALLENGE_EXPIRED"

    def __init__(self, message: str = "verification code expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ChallengeExhaustedError(ServiceError):
    status_code = 400
    error_code = "CHALLENGE_EXHAUSTED"

    def __init__(
        self, message: str = "too many incorrect codes, sign in again", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(ServiceError):
    """Wrong one-time code; only a coarse attempts-remaining counter is exposed."""
    status_code = 401
    error_code = "INVALID_CODE"

    def __init__(self, attempts_remaining: int, message: str = "invalid code") -> None:
        super().__init__(message, detail={"attempts_remaining": max(0, attempts_remaining)})
        self.attempts_remaining = max(0, attempts_remaining)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "CONFLICT"


class ConnectionFailedError(ServiceError):
    """A backing store could not be reached (503)."""
    status_code = 503
    error_code = "CONNECTION_ERROR"

    def __init__(self, message: str = "service temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "RateLimitedError",
    "AccountLockedError",
    "ChallengeExpiredError",
    "ChallengeExhaustedError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ConnectionFailedError",
    "ServerError",
]
