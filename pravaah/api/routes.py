from __future__ import annotations

import shutil
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from fastapi import APIRouter, Cookie, Depends, File, Form, Header, Request, Response, UploadFile

from pravaah.api.schemas import (
    AccountDetailsUpdate,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SubscribeRequest,
    TokenRefreshRequest,
)
from pravaah.logging import get_logger
from pravaah.service.auth import SessionTokens
from pravaah.service.errors import AuthenticationError, RateLimitedError, ValidationError
from pravaah.service.fs import safe_join, sanitize_filename
from pravaah.service.runtime import Runtime, check_rate_limit, get_runtime
from pravaah.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/users", tags=["users"])

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"
_COOKIE_OPTIONS = {"httponly": True, "secure": True, "samesite": "none", "path": "/"}


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a token-bucket limit and raise ``RateLimitedError`` once exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "Too many requests, try again later.", detail={"retry_after": reset_seconds}
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None),
) -> User:
    runtime = get_runtime()
    return await runtime.auth.authenticate(access_cookie or _bearer_token(authorization))


async def get_optional_user(
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    authorization: Optional[str] = Header(None),
) -> Optional[User]:
    token = access_cookie or _bearer_token(authorization)
    if not token:
        return None
    try:
        return await get_runtime().auth.authenticate(token)
    except AuthenticationError:
        return None


def _apply_session_cookies(response: Response, tokens: SessionTokens, runtime: Runtime) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=runtime.settings.access_token_ttl_minutes * 60,
        **_COOKIE_OPTIONS,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=runtime.settings.refresh_token_ttl_minutes * 60,
        **_COOKIE_OPTIONS,
    )


def _clear_session_cookies(response: Response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, **_COOKIE_OPTIONS)


def _session_payload(tokens: SessionTokens) -> dict:
    return {
        "user": tokens.user.to_public(),
        "accessToken": tokens.access_token,
        "refreshToken": tokens.refresh_token,
    }


@contextmanager
def _upload_workspace(runtime: Runtime) -> Iterator[Path]:
    """Per-request scratch directory for multipart uploads, removed on exit."""
    workspace = safe_join(runtime.upload_root, uuid.uuid4().hex)
    workspace.mkdir(parents=True, exist_ok=True)
    try:
        yield workspace
    finally:
        shutil.rmtree(workspace, ignore_errors=True)


async def _save_upload(
    upload: Optional[UploadFile], workspace: Path, runtime: Runtime, *, field: str
) -> Optional[str]:
    if upload is None or not upload.filename:
        return None
    max_bytes = max(1, runtime.settings.max_upload_bytes)
    contents = await upload.read(max_bytes + 1)
    if len(contents) > max_bytes:
        raise ValidationError(f"{field} file is too large.", detail={"field": field})
    if not contents:
        return None
    dest = safe_join(workspace, f"{field}_{sanitize_filename(upload.filename)}")
    dest.write_bytes(contents)
    return str(dest)


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    full_name: Optional[str] = Form(None, alias="fullName"),
    email: Optional[str] = Form(None),
    username: Optional[str] = Form(None, alias="userName"),
    password: Optional[str] = Form(None),
    avatar: Optional[UploadFile] = File(None),
    cover_image: Optional[UploadFile] = File(None, alias="coverImage"),
):
    runtime = get_runtime()
    with _upload_workspace(runtime) as workspace:
        avatar_path = await _save_upload(avatar, workspace, runtime, field="avatar")
        cover_path = await _save_upload(cover_image, workspace, runtime, field="coverImage")
        user = await runtime.auth.register(
            full_name=full_name,
            email=email,
            username=username,
            password=password,
            avatar_path=avatar_path,
            cover_path=cover_path,
        )
    return Envelope(status="ok", message="User registered successfully", data=user.to_public())


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with a username or email plus password.

    Sets ``accessToken`` and ``refreshToken`` cookies and returns both tokens.

    Raises:
        400: If the identifier or password is missing
        401: If the credentials do not match (same message for unknown users)
        429: If the rate limit for this identifier is exceeded
    """
    runtime = get_runtime()
    identifier = (body.email or body.username or "").strip().lower()
    await _enforce_rate_limit(
        runtime,
        f"login:{identifier or _client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    tokens = await runtime.auth.login(
        username=body.username, email=body.email, password=body.password
    )
    _apply_session_cookies(response, tokens, runtime)
    return Envelope(status="ok", message="User logged in successfully", data=_session_payload(tokens))


@router.post("/logout", response_model=Envelope)
async def logout(response: Response, user: User = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(user)
    _clear_session_cookies(response)
    return Envelope(status="ok", message="User logged out successfully", data={})


@router.post("/accessTokenGenerator", response_model=Envelope)
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    token = refresh_cookie or (body.refresh_token if body else None)
    tokens = await runtime.auth.refresh(token)
    _apply_session_cookies(response, tokens, runtime)
    return Envelope(status="ok", message="Access token refreshed", data=_session_payload(tokens))


@router.post("/changePassword", response_model=Envelope)
async def change_password(body: PasswordChangeRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.change_password(
        user,
        current_password=body.current_password,
        new_password=body.new_password,
        confirm_password=body.confirm_password,
    )
    return Envelope(status="ok", message="Password changed successfully", data={})


@router.post("/forgotPasswordSendReq", response_model=Envelope)
async def request_password_reset(body: PasswordResetRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{(body.email or '').strip().lower() or _client_ip(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    message = await runtime.password_reset.request_reset(body.email)
    return Envelope(status="ok", message=message, data={})


@router.post("/forgotPasswordTokenVerify", response_model=Envelope)
async def confirm_password_reset(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset_confirm:{_client_ip(request)}",
        runtime.settings.reset_confirm_rate_limit_per_minute,
        60,
        response=response,
    )
    await runtime.password_reset.consume_reset(
        body.token, body.new_password, body.confirm_password
    )
    return Envelope(status="ok", message="Password reset successfully", data={})


@router.get("/getCurrentUser", response_model=Envelope)
async def get_current_user(user: User = Depends(get_user)):
    return Envelope(status="ok", message="Current user fetched", data=user.to_public())


@router.patch("/updateAccountDetails", response_model=Envelope)
async def update_account_details(body: AccountDetailsUpdate, user: User = Depends(get_user)):
    runtime = get_runtime()
    updated = await runtime.auth.update_account_details(
        user, full_name=body.full_name, email=body.email
    )
    return Envelope(status="ok", message="Account details updated", data=updated.to_public())


@router.patch("/updateProfilePicture", response_model=Envelope)
async def update_profile_picture(
    avatar: Optional[UploadFile] = File(None),
    cover_image: Optional[UploadFile] = File(None, alias="coverImage"),
    user: User = Depends(get_user),
):
    runtime = get_runtime()
    with _upload_workspace(runtime) as workspace:
        avatar_path = await _save_upload(avatar, workspace, runtime, field="avatar")
        cover_path = await _save_upload(cover_image, workspace, runtime, field="coverImage")
        updated = await runtime.auth.update_profile_images(
            user, avatar_path=avatar_path, cover_path=cover_path
        )
    return Envelope(status="ok", message="Profile images updated", data=updated.to_public())


@router.get("/getProfile/{user_name}", response_model=Envelope)
async def get_profile(user_name: str, viewer: Optional[User] = Depends(get_optional_user)):
    runtime = get_runtime()
    profile = await runtime.profiles.get_channel_profile(user_name, viewer)
    return Envelope(status="ok", message="Channel profile fetched", data=profile)


@router.post("/subscribeUser", response_model=Envelope)
async def subscribe_user(body: SubscribeRequest, user: User = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.profiles.toggle_subscription(user, body.channel_id)
    message = "Subscribed" if result["subscribed"] else "Unsubscribed"
    return Envelope(status="ok", message=message, data=result)


@router.get("/getWatchHistory", response_model=Envelope)
async def get_watch_history(user: User = Depends(get_user)):
    runtime = get_runtime()
    history = await runtime.profiles.get_watch_history(user)
    return Envelope(status="ok", message="Watch history fetched", data=history)
