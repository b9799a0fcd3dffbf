from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """An account-service failure that the API renders as an error envelope.

    ``status_code`` and ``error_code`` are class attributes, so one ``except``
    clause catches a whole family: every ``AuthenticationError`` is a 401
    whatever its code. Instances may override either for a single raise.
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.status_code}, {self.error_code!r}, {self.message!r})"


class ValidationError(ServiceError):
    """Missing or malformed input."""

    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """No usable credentials, or credentials that do not match."""

    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class ExpiredTokenError(AuthenticationError):
    error_code = "expired_token"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email or username already belongs to another account."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """A collaborator (mail, upload, storage) failed."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "ExpiredTokenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
