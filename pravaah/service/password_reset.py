from __future__ import annotations

import asyncio
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

from pravaah.logging import get_logger, redact_email
from pravaah.service.auth import AccountStore, clean_text, check_new_password
from pravaah.service.email import EmailService, password_reset_message
from pravaah.service.errors import ExpiredTokenError, InvalidTokenError, ServerError, ValidationError
from pravaah.service.passwords import PasswordHasher, prepare_user_write
from pravaah.storage.errors import ConstraintViolation
from pravaah.storage.models import ResetToken

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32
# Returned for known and unknown addresses alike
RESET_REQUEST_MESSAGE = "If an account exists for that email, a reset link has been sent."


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PasswordResetService:
    """Issues and consumes one-time password reset tokens.

    Only the SHA-256 of a token is stored. Each user has at most one live
    token: issuing a new one deletes the old ones first.
    """

    def __init__(
        self,
        store: AccountStore,
        email: EmailService,
        hasher: PasswordHasher,
        *,
        app_base_url: str,
        reset_path: str = "/reset-password",
        ttl_minutes: int = 15,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.hasher = hasher
        self.app_base_url = app_base_url.rstrip("/")
        self.reset_path = reset_path
        self.ttl_minutes = ttl_minutes
        self.clock = clock or _utcnow

    def reset_url(self, token: str) -> str:
        return f"{self.app_base_url}{self.reset_path}?{urlencode({'token': token})}"

    async def request_reset(self, email: Optional[str]) -> str:
        email = clean_text(email).lower()
        if not email:
            raise ValidationError("Email is required.")

        user = await asyncio.to_thread(self.store.find_user, email=email)
        if not user:
            logger.info("password_reset_unknown_email", email=redact_email(email))
            return RESET_REQUEST_MESSAGE

        token = secrets.token_hex(RESET_TOKEN_BYTES)
        record = ResetToken.new(
            user.id, hash_reset_token(token), ttl_minutes=self.ttl_minutes, now=self.clock()
        )
        removed = await asyncio.to_thread(self._replace_tokens, record)

        subject, text, html = password_reset_message(self.reset_url(token), self.ttl_minutes)
        result = await asyncio.to_thread(self.email.send, user.email, subject, text, html)
        if not (result or {}).get("accepted"):
            await asyncio.to_thread(self.store.delete_reset_token, record.id)
            logger.error("password_reset_mail_failed", user_id=user.id)
            raise ServerError("Failed to send reset email.")

        logger.info("password_reset_requested", user_id=user.id, replaced=removed)
        return RESET_REQUEST_MESSAGE

    async def consume_reset(
        self,
        token: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        token = clean_text(token)
        if not token:
            raise ValidationError("Reset token is required.")
        if not new_password or not confirm_password:
            raise ValidationError("New password and confirm password are required.")
        check_new_password(new_password, confirm_password)

        user_id = await asyncio.to_thread(self._apply_reset, token, new_password)
        logger.info("password_reset_completed", user_id=user_id)

    def _replace_tokens(self, record: ResetToken) -> int:
        removed = self.store.delete_reset_tokens_for_user(record.user_id)
        try:
            self.store.create_reset_token(record)
        except ConstraintViolation as exc:
            logger.error("password_reset_record_failed", user_id=record.user_id)
            raise ServerError("Failed to create reset token.") from exc
        return removed

    def _apply_reset(self, token: str, new_password: str) -> str:
        record = self.store.get_reset_token(hash_reset_token(token))
        if not record:
            raise InvalidTokenError("Invalid or already used reset token.")
        if record.is_expired(self.clock()):
            self.store.delete_reset_token(record.id)
            raise ExpiredTokenError("Reset token has expired.")

        user = self.store.get_user(record.user_id)
        if not user:
            self.store.delete_reset_token(record.id)
            raise InvalidTokenError("Invalid or already used reset token.")

        self.store.update_user(
            user.id, **prepare_user_write({"password": new_password}, self.hasher)
        )
        # Existing sessions end with the reset
        self.store.unset_refresh_token(user.id)
        self.store.delete_reset_token(record.id)
        return user.id
