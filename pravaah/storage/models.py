from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    username: str
    email: str
    full_name: str
    avatar: str
    cover_image: str = ""
    watch_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    # Secret fields; stores blank these unless the caller asks for secrets
    password_hash: Optional[str] = None
    refresh_token: Optional[str] = None

    def without_secrets(self) -> "User":
        return replace(self, password_hash=None, refresh_token=None)

    def to_public(self) -> dict:
        """Serialize the identity for responses; never includes secret fields."""
        return {
            "id": self.id,
            "userName": self.username,
            "email": self.email,
            "fullName": self.full_name,
            "avatar": self.avatar,
            "coverImage": self.cover_image,
            "watchHistory": list(self.watch_history),
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class ResetToken:
    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        *,
        ttl_minutes: int = 15,
        now: Optional[datetime] = None,
    ) -> "ResetToken":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            expires_at=created + timedelta(minutes=ttl_minutes),
            created_at=created,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class Subscription:
    id: str
    subscriber_id: str
    channel_id: str
    created_at: datetime = field(default_factory=utcnow)
