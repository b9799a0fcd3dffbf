from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pravaah.config import Settings
from pravaah.logging import get_logger
from pravaah.service.errors import ExpiredTokenError, InvalidTokenError
from pravaah.storage.models import User

logger = get_logger(__name__)

Clock = Callable[[], datetime]

ACCESS = "access"
REFRESH = "refresh"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Issues and verifies HS256 access and refresh tokens.

    Access and refresh tokens are signed with distinct secrets and carry a
    ``type`` claim, so one can never be replayed as the other.
    """

    def __init__(self, settings: Settings, *, clock: Optional[Clock] = None) -> None:
        self.access_secret = settings.access_token_secret
        self.refresh_secret = settings.refresh_token_secret
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.leeway = timedelta(seconds=settings.token_clock_skew_seconds)
        self.clock = clock or _utcnow

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def _claims(self, token_type: str, ttl: timedelta, extra: dict[str, Any]) -> dict[str, Any]:
        now = self.clock()
        return {
            **extra,
            "type": token_type,
            # Unique per token so two issued in the same second still differ
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
        }

    def issue_access_token(self, user: User) -> str:
        claims = self._claims(
            ACCESS,
            self.access_ttl,
            {
                "id": user.id,
                "email": user.email,
                "userName": user.username,
                "fullName": user.full_name,
            },
        )
        return self._encode(claims, self.access_secret)

    def issue_refresh_token(self, user: User) -> str:
        return self._encode(self._claims(REFRESH, self.refresh_ttl, {"id": user.id}), self.refresh_secret)

    def issue_pair(self, user: User) -> tuple[str, str]:
        return self.issue_access_token(user), self.issue_refresh_token(user)

    def verify(self, token: str, secret: str, *, expected_type: Optional[str] = None) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("token missing")
        if not token.isascii():
            raise InvalidTokenError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError("malformed token") from None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            raise InvalidTokenError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError("bad token signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token") from None
        if not isinstance(payload, dict) or not payload.get("id"):
            raise InvalidTokenError("token missing subject")
        if expected_type and payload.get("type") != expected_type:
            raise InvalidTokenError("wrong token type")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError("token missing expiry") from None
        if exp_ts <= (self.clock() - self.leeway).timestamp():
            raise ExpiredTokenError("token expired")
        return payload

    def verify_access_token(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.access_secret, expected_type=ACCESS)

    def verify_refresh_token(self, token: str) -> dict[str, Any]:
        return self.verify(token, self.refresh_secret, expected_type=REFRESH)
