from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from pravaah.logging import get_logger
from pravaah.storage.errors import ConstraintViolation
from pravaah.storage.models import ResetToken, Subscription, User, utcnow

# Columns a caller may change through ``update_user``
UPDATABLE_USER_FIELDS = frozenset(
    {
        "username",
        "email",
        "full_name",
        "avatar",
        "cover_image",
        "watch_history",
        "password_hash",
        "refresh_token",
    }
)


def check_user_write(fields: Dict[str, Any]) -> None:
    """Reject writes that would persist a plaintext password or unknown column."""
    if "password" in fields:
        raise ValueError("plaintext password writes are not accepted; hash first")
    unknown = set(fields) - UPDATABLE_USER_FIELDS
    if unknown:
        raise ValueError(f"unknown user fields: {sorted(unknown)}")


class MemoryStore:
    """In-process account store persisted to a JSON file under ``fs_root``."""

    def __init__(self, fs_root: str = "/tmp/pravaah") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.reset_tokens: Dict[str, ResetToken] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    @staticmethod
    def _present(user: User, include_secrets: bool) -> User:
        return replace(user) if include_secrets else user.without_secrets()

    def _check_unique(
        self, *, username: Optional[str], email: Optional[str], exclude_id: Optional[str] = None
    ) -> None:
        for existing in self.users.values():
            if existing.id == exclude_id:
                continue
            if email is not None and existing.email == email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username is not None and existing.username == username:
                raise ConstraintViolation("username already exists", {"field": "username"})

    # users
    def create_user(
        self,
        *,
        username: str,
        email: str,
        full_name: str,
        password_hash: str,
        avatar: str,
        cover_image: str = "",
    ) -> User:
        with self._data_lock:
            self._check_unique(username=username, email=email)
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                full_name=full_name,
                avatar=avatar,
                cover_image=cover_image,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            self._persist_state()
            return user.without_secrets()

    def get_user(self, user_id: str, *, include_secrets: bool = False) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._present(user, include_secrets) if user else None

    def find_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        include_secrets: bool = False,
    ) -> Optional[User]:
        """Return the first user matching either identifier."""
        if username is None and email is None:
            return None
        with self._data_lock:
            for user in self.users.values():
                if (username is not None and user.username == username) or (
                    email is not None and user.email == email
                ):
                    return self._present(user, include_secrets)
            return None

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_user_write(fields)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self._check_unique(
                username=fields.get("username"),
                email=fields.get("email"),
                exclude_id=user_id,
            )
            for name, value in fields.items():
                if name == "watch_history":
                    value = list(value)
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return user.without_secrets()

    def unset_refresh_token(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user and user.refresh_token is not None:
                user.refresh_token = None
                user.updated_at = utcnow()
                self._persist_state()

    # password reset
    def create_reset_token(self, token: ResetToken) -> ResetToken:
        with self._data_lock:
            if any(t.token_hash == token.token_hash for t in self.reset_tokens.values()):
                raise ConstraintViolation("reset token already exists", {"field": "token_hash"})
            self.reset_tokens[token.id] = token
            self._persist_state()
            return token

    def get_reset_token(self, token_hash: str) -> Optional[ResetToken]:
        with self._data_lock:
            return next(
                (t for t in self.reset_tokens.values() if t.token_hash == token_hash), None
            )

    def list_reset_tokens(self, user_id: str) -> List[ResetToken]:
        with self._data_lock:
            return [t for t in self.reset_tokens.values() if t.user_id == user_id]

    def delete_reset_token(self, token_id: str) -> bool:
        with self._data_lock:
            removed = self.reset_tokens.pop(token_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_reset_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [t.id for t in self.reset_tokens.values() if t.user_id == user_id]
            for token_id in doomed:
                del self.reset_tokens[token_id]
            if doomed:
                self._persist_state()
            return len(doomed)

    # subscriptions
    def toggle_subscription(self, subscriber_id: str, channel_id: str) -> bool:
        """Flip the subscription and return True when it now exists."""
        with self._data_lock:
            existing = next(
                (
                    s
                    for s in self.subscriptions.values()
                    if s.subscriber_id == subscriber_id and s.channel_id == channel_id
                ),
                None,
            )
            if existing:
                del self.subscriptions[existing.id]
                subscribed = False
            else:
                sub = Subscription(
                    id=str(uuid.uuid4()), subscriber_id=subscriber_id, channel_id=channel_id
                )
                self.subscriptions[sub.id] = sub
                subscribed = True
            self._persist_state()
            return subscribed

    def count_subscribers(self, channel_id: str) -> int:
        with self._data_lock:
            return sum(1 for s in self.subscriptions.values() if s.channel_id == channel_id)

    def count_subscribed_to(self, subscriber_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for s in self.subscriptions.values() if s.subscriber_id == subscriber_id
            )

    def is_subscribed(self, subscriber_id: str, channel_id: str) -> bool:
        with self._data_lock:
            return any(
                s.subscriber_id == subscriber_id and s.channel_id == channel_id
                for s in self.subscriptions.values()
            )

    def ping(self) -> bool:
        return True

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "reset_tokens": [
                self._serialize_reset_token(t) for t in self.reset_tokens.values()
            ],
            "subscriptions": [
                self._serialize_subscription(s) for s in self.subscriptions.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.reset_tokens = {
            t["id"]: self._deserialize_reset_token(t) for t in data.get("reset_tokens", [])
        }
        self.subscriptions = {
            s["id"]: self._deserialize_subscription(s)
            for s in data.get("subscriptions", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        payload = {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "full_name": user.full_name,
            "avatar": user.avatar,
            "cover_image": user.cover_image,
            "watch_history": list(user.watch_history),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "password_hash": user.password_hash,
        }
        # An unset refresh token is absent from the record, not null
        if user.refresh_token is not None:
            payload["refresh_token"] = user.refresh_token
        return payload

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            full_name=data["full_name"],
            avatar=data.get("avatar", ""),
            cover_image=data.get("cover_image", ""),
            watch_history=list(data.get("watch_history", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
            password_hash=data.get("password_hash"),
            refresh_token=data.get("refresh_token"),
        )

    def _serialize_reset_token(self, token: ResetToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
        }

    def _deserialize_reset_token(self, data: dict) -> ResetToken:
        return ResetToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_subscription(self, sub: Subscription) -> dict:
        return {
            "id": sub.id,
            "subscriber_id": sub.subscriber_id,
            "channel_id": sub.channel_id,
            "created_at": self._serialize_datetime(sub.created_at),
        }

    def _deserialize_subscription(self, data: dict) -> Subscription:
        return Subscription(
            id=data["id"],
            subscriber_id=data["subscriber_id"],
            channel_id=data["channel_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )
