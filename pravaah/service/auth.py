from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from pravaah.logging import get_logger
from pravaah.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    ServerError,
    ValidationError,
)
from pravaah.service.file_store import FileStore
from pravaah.service.passwords import PasswordHasher, prepare_user_write
from pravaah.service.tokens import TokenIssuer
from pravaah.storage.errors import ConstraintViolation
from pravaah.storage.models import ResetToken, User

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[\w\-.]+@([\w-]+\.)+[\w-]{2,4}$")
USERNAME_MIN, USERNAME_MAX = 3, 20
FULL_NAME_MIN = 3
REGISTER_PASSWORD_MIN = 6
PASSWORD_MIN, PASSWORD_MAX = 8, 16

_CONFLICT_MESSAGES = {
    "email": "Email is already registered.",
    "username": "Username is already taken.",
}


class AccountStore(Protocol):
    def create_user(
        self,
        *,
        username: str,
        email: str,
        full_name: str,
        password_hash: str,
        avatar: str,
        cover_image: str = "",
    ) -> User: ...

    def get_user(self, user_id: str, *, include_secrets: bool = False) -> Optional[User]: ...

    def find_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        include_secrets: bool = False,
    ) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def unset_refresh_token(self, user_id: str) -> None: ...

    def create_reset_token(self, token: ResetToken) -> ResetToken: ...

    def get_reset_token(self, token_hash: str) -> Optional[ResetToken]: ...

    def list_reset_tokens(self, user_id: str) -> List[ResetToken]: ...

    def delete_reset_token(self, token_id: str) -> bool: ...

    def delete_reset_tokens_for_user(self, user_id: str) -> int: ...

    def toggle_subscription(self, subscriber_id: str, channel_id: str) -> bool: ...

    def count_subscribers(self, channel_id: str) -> int: ...

    def count_subscribed_to(self, subscriber_id: str) -> int: ...

    def is_subscribed(self, subscriber_id: str, channel_id: str) -> bool: ...


def clean_text(value: Optional[str]) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_username(value: Optional[str]) -> str:
    username = clean_text(value).lower()
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
        raise ValidationError(
            f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters.",
            detail={"field": "userName"},
        )
    return username


def normalize_email(value: Optional[str]) -> str:
    email = clean_text(value).lower()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Please enter a valid email.", detail={"field": "email"})
    return email


def normalize_full_name(value: Optional[str]) -> str:
    full_name = clean_text(value)
    if len(full_name) < FULL_NAME_MIN:
        raise ValidationError(
            f"Full name must be at least {FULL_NAME_MIN} characters.",
            detail={"field": "fullName"},
        )
    return full_name


def check_new_password(new_password: str, confirm_password: str) -> None:
    """Shared rules for password change and reset."""
    if new_password != confirm_password:
        raise ValidationError("New password and confirm password do not match.")
    if not PASSWORD_MIN <= len(new_password) <= PASSWORD_MAX:
        raise ValidationError(
            f"Password must be between {PASSWORD_MIN} and {PASSWORD_MAX} characters."
        )


def conflict_from(exc: ConstraintViolation) -> ConflictError:
    field = exc.detail.get("field", "")
    return ConflictError(
        _CONFLICT_MESSAGES.get(field, "Account already exists."), detail={"field": field}
    )


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    user: User


class AuthService:
    """Registration, login, token rotation and account maintenance."""

    def __init__(
        self,
        store: AccountStore,
        tokens: TokenIssuer,
        hasher: PasswordHasher,
        files: FileStore,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.files = files
        self.logger = logger

    def _write_user(self, user_id: str, **fields) -> Optional[User]:
        prepared = prepare_user_write(fields, self.hasher)
        try:
            return self.store.update_user(user_id, **prepared)
        except ConstraintViolation as exc:
            raise conflict_from(exc) from exc

    def _create_user(self, *, password: str, **fields) -> User:
        prepared = prepare_user_write({"password": password}, self.hasher)
        try:
            return self.store.create_user(password_hash=prepared["password_hash"], **fields)
        except ConstraintViolation as exc:
            raise conflict_from(exc) from exc

    def _check_password(self, user_id: str, password: str) -> Optional[User]:
        record = self.store.get_user(user_id, include_secrets=True)
        if record and self.hasher.verify_password(password, record.password_hash):
            return record
        return None

    async def _upload_or_fail(self, local_path: str, *, field: str) -> Dict[str, Any]:
        uploaded = await self.files.upload(local_path)
        if not uploaded or not uploaded.get("url"):
            self.logger.error("image_upload_failed", field=field)
            raise ServerError(f"Failed to upload {field}.")
        return uploaded

    async def _discard_uploads(self, assets: List[Dict[str, Any]]) -> None:
        for asset in assets:
            if not await self.files.remove(asset):
                self.logger.warning("orphaned_upload", url=asset.get("url"))

    async def register(
        self,
        *,
        full_name: Optional[str],
        email: Optional[str],
        username: Optional[str],
        password: Optional[str],
        avatar_path: Optional[str],
        cover_path: Optional[str] = None,
    ) -> User:
        if not all(clean_text(v) for v in (full_name, email, username, password)):
            raise ValidationError("All fields are required.")
        full_name = normalize_full_name(full_name)
        email = normalize_email(email)
        username = normalize_username(username)
        if len(password) < REGISTER_PASSWORD_MIN:
            raise ValidationError(
                f"Password must be at least {REGISTER_PASSWORD_MIN} characters."
            )

        if await asyncio.to_thread(self.store.find_user, email=email):
            raise ConflictError(_CONFLICT_MESSAGES["email"], detail={"field": "email"})
        if await asyncio.to_thread(self.store.find_user, username=username):
            raise ConflictError(_CONFLICT_MESSAGES["username"], detail={"field": "username"})
        if not avatar_path:
            raise ValidationError("Avatar image is required.", detail={"field": "avatar"})

        assets: List[Dict[str, Any]] = []
        try:
            assets.append(await self._upload_or_fail(avatar_path, field="avatar"))
            if cover_path:
                assets.append(await self._upload_or_fail(cover_path, field="coverImage"))
            user = await asyncio.to_thread(
                self._create_user,
                password=password,
                username=username,
                email=email,
                full_name=full_name,
                avatar=assets[0]["url"],
                cover_image=assets[1]["url"] if len(assets) > 1 else "",
            )
        except Exception:
            await self._discard_uploads(assets)
            raise
        self.logger.info("user_registered", user_id=user.id)
        return user

    async def login(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
    ) -> SessionTokens:
        username = clean_text(username).lower() or None
        email = clean_text(email).lower() or None
        if not (username or email) or not password:
            raise ValidationError("Username or email and password are required.")

        user = await asyncio.to_thread(
            self.store.find_user, username=username, email=email, include_secrets=True
        )
        if not user or not await asyncio.to_thread(
            self.hasher.verify_password, password, user.password_hash
        ):
            self.logger.info("login_failed")
            raise AuthenticationError("Invalid credentials")

        access_token, refresh_token = self.tokens.issue_pair(user)
        public = await asyncio.to_thread(
            self.store.update_user, user.id, refresh_token=refresh_token
        )
        self.logger.info("login_succeeded", user_id=user.id)
        return SessionTokens(access_token, refresh_token, public or user.without_secrets())

    async def refresh(self, refresh_token: Optional[str]) -> SessionTokens:
        if not refresh_token:
            raise AuthenticationError("Refresh token is required")
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
        except (InvalidTokenError, ExpiredTokenError) as exc:
            raise AuthenticationError("Invalid refresh token") from exc

        user = await asyncio.to_thread(self.store.get_user, claims["id"], include_secrets=True)
        if not user:
            raise AuthenticationError("Invalid refresh token")
        if not user.refresh_token or user.refresh_token != refresh_token:
            # Rotated or logged out; the stored value is the only live token
            self.logger.warning("refresh_token_reuse_detected", user_id=user.id)
            raise AuthenticationError("Refresh token is expired or used")

        access_token, new_refresh = self.tokens.issue_pair(user)
        public = await asyncio.to_thread(
            self.store.update_user, user.id, refresh_token=new_refresh
        )
        self.logger.info("refresh_rotated", user_id=user.id)
        return SessionTokens(access_token, new_refresh, public or user.without_secrets())

    async def logout(self, user: Optional[User]) -> None:
        if not user:
            raise AuthenticationError("Unauthorized request")
        await asyncio.to_thread(self.store.unset_refresh_token, user.id)
        self.logger.info("logout", user_id=user.id)

    async def change_password(
        self,
        user: User,
        *,
        current_password: Optional[str],
        new_password: Optional[str],
        confirm_password: Optional[str],
    ) -> None:
        if not current_password or not new_password or not confirm_password:
            raise ValidationError("All password fields are required.")
        check_new_password(new_password, confirm_password)
        if new_password == current_password:
            raise ValidationError("New password must be different from the current password.")

        if not await asyncio.to_thread(self._check_password, user.id, current_password):
            raise AuthenticationError("Current password is incorrect")
        await asyncio.to_thread(self._write_user, user.id, password=new_password)
        self.logger.info("password_changed", user_id=user.id)

    async def authenticate(self, access_token: Optional[str]) -> User:
        """Resolve an access token to the public user it names."""
        if not access_token:
            raise AuthenticationError("Access token is required")
        try:
            claims = self.tokens.verify_access_token(access_token)
        except ExpiredTokenError as exc:
            raise ExpiredTokenError("Access token has expired") from exc
        except InvalidTokenError as exc:
            raise InvalidTokenError("Invalid access token") from exc
        user = await asyncio.to_thread(self.store.get_user, claims["id"])
        if not user:
            raise InvalidTokenError("Invalid access token")
        return user

    async def update_account_details(
        self,
        user: User,
        *,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        fields = {}
        if clean_text(full_name):
            fields["full_name"] = normalize_full_name(full_name)
        if clean_text(email):
            fields["email"] = normalize_email(email)
        if not fields:
            raise ValidationError("Provide a full name or email to update.")
        updated = await asyncio.to_thread(self._write_user, user.id, **fields)
        if not updated:
            raise AuthenticationError("Invalid access token")
        self.logger.info("account_updated", user_id=user.id, fields=sorted(fields))
        return updated

    async def update_profile_images(
        self,
        user: User,
        *,
        avatar_path: Optional[str] = None,
        cover_path: Optional[str] = None,
    ) -> User:
        if not avatar_path and not cover_path:
            raise ValidationError("Avatar or cover image is required.")
        fields = {}
        assets: List[Dict[str, Any]] = []
        try:
            if avatar_path:
                assets.append(await self._upload_or_fail(avatar_path, field="avatar"))
                fields["avatar"] = assets[-1]["url"]
            if cover_path:
                assets.append(await self._upload_or_fail(cover_path, field="coverImage"))
                fields["cover_image"] = assets[-1]["url"]
            updated = await asyncio.to_thread(self._write_user, user.id, **fields)
            if not updated:
                raise AuthenticationError("Invalid access token")
        except Exception:
            await self._discard_uploads(assets)
            raise
        self.logger.info("profile_images_updated", user_id=user.id, fields=sorted(fields))
        return updated
