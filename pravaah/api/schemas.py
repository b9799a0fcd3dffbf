from __future__ import annotations

import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from pravaah.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "expired_token",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# Generous upper bounds; the service layer applies the real length rules
_MAX_TEXT = 256
_MAX_PASSWORD = 128
_MAX_TOKEN = 2048


def _request_id() -> str:
    return get_correlation_id() or str(uuid.uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Uniform response envelope: ``{status, message, data, error, request_id}``."""

    status: str = Field(..., pattern="^(ok|error)$")
    message: str = ""
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LoginRequest(_CamelModel):
    username: Optional[str] = Field(default=None, alias="userName", max_length=_MAX_TEXT)
    email: Optional[str] = Field(default=None, max_length=_MAX_TEXT)
    password: Optional[str] = Field(default=None, max_length=_MAX_PASSWORD)


class TokenRefreshRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=_MAX_TOKEN)


class PasswordChangeRequest(_CamelModel):
    """Request to change password (requires current password)."""

    current_password: Optional[str] = Field(
        default=None, alias="currentPassword", max_length=_MAX_PASSWORD
    )
    new_password: Optional[str] = Field(default=None, alias="newPassword", max_length=_MAX_PASSWORD)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=_MAX_PASSWORD
    )


class PasswordResetRequest(_CamelModel):
    email: Optional[str] = Field(default=None, max_length=_MAX_TEXT)


class PasswordResetConfirm(_CamelModel):
    token: Optional[str] = Field(default=None, max_length=_MAX_TEXT)
    new_password: Optional[str] = Field(default=None, alias="newPassword", max_length=_MAX_PASSWORD)
    confirm_password: Optional[str] = Field(
        default=None, alias="confirmPassword", max_length=_MAX_PASSWORD
    )


class AccountDetailsUpdate(_CamelModel):
    full_name: Optional[str] = Field(default=None, alias="fullName", max_length=_MAX_TEXT)
    email: Optional[str] = Field(default=None, max_length=_MAX_TEXT)


class SubscribeRequest(_CamelModel):
    channel_id: Optional[str] = Field(default=None, alias="channelId", max_length=_MAX_TEXT)
