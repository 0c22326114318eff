from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for broker exceptions mapped to HTTP responses.

    Each exception class carries an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - unauthorized (401)
    - rate_limited (429)
    - server_error (500)
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


class AuthenticationFailed(ServiceError):
    """Confirmation could not be completed (401).

    Subclasses share one public message so callers cannot tell an unknown
    session from a wrong code.
    """

    status_code = 401
    error_code = "unauthorized"
    public_message = "authentication failed"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or self.public_message, **kwargs)


class SessionNotFound(AuthenticationFailed):
    """No live session for the nonce (unknown, expired or already consumed)."""


class CodeMismatch(AuthenticationFailed):
    """The confirmation code did not match; the session is gone regardless."""


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "too many attempts, try again later", *, retry_after: int = 60, **kwargs) -> None:
        detail = {"retry_after": retry_after, **(kwargs.pop("detail", None) or {})}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NoSuchAlgorithm(ServerError):
    """Signing was requested with an algorithm that has no configured key."""

    def __init__(self, alg: str) -> None:
        super().__init__(f"no signing key for algorithm {alg}", detail={"alg": alg})
        self.alg = alg


class KeyGenerationFailure(ServerError):
    """The key generator could not produce a usable private key."""


class DispatchError(ServerError):
    """The confirmation email could not be sent."""

    def __init__(self, message: str = "unable to send email", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationFailed",
    "SessionNotFound",
    "CodeMismatch",
    "RateLimitedError",
    "ServerError",
    "NoSuchAlgorithm",
    "KeyGenerationFailure",
    "DispatchError",
]
