from __future__ import annotations

import uuid
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from pravaah.logging import get_logger
from pravaah.storage.errors import ConstraintViolation
from pravaah.storage.memory import check_user_write
from pravaah.storage.models import ResetToken, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        full_name TEXT NOT NULL,
        avatar TEXT NOT NULL,
        cover_image TEXT NOT NULL DEFAULT '',
        watch_history TEXT[] NOT NULL DEFAULT '{}',
        password_hash TEXT NOT NULL,
        refresh_token TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_username_key UNIQUE (username),
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT password_reset_token_hash_key UNIQUE (token_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_token_user_idx ON password_reset_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS subscription (
        id TEXT PRIMARY KEY,
        subscriber_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        channel_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT subscription_pair_key UNIQUE (subscriber_id, channel_id)
    )
    """,
)

_CONSTRAINT_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
    "password_reset_token_hash_key": "token_hash",
}


def _constraint_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
    field = _CONSTRAINT_FIELDS.get(constraint or "", "unknown")
    return ConstraintViolation(f"{field} already exists", {"field": field})


class PostgresStore:
    """Postgres-backed account store."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create account tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: dict, include_secrets: bool) -> User:
        user = User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            full_name=row["full_name"],
            avatar=row.get("avatar") or "",
            cover_image=row.get("cover_image") or "",
            watch_history=list(row.get("watch_history") or []),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            password_hash=row.get("password_hash"),
            refresh_token=row.get("refresh_token"),
        )
        return user if include_secrets else user.without_secrets()

    @staticmethod
    def _reset_token_from_row(row: dict) -> ResetToken:
        return ResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, full_name, avatar, cover_image, password_hash)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email, full_name, avatar, cover_image, password_hash),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return self._user_from_row(row, include_secrets=False)

    def get_user(self, user_id: str, *, include_secrets: bool = False) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row, include_secrets)

    def find_user(
        self,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        include_secrets: bool = False,
    ) -> Optional[User]:
        if username is None and email is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE (%s::text IS NOT NULL AND username = %s)
                   OR (%s::text IS NOT NULL AND email = %s)
                ORDER BY created_at
                LIMIT 1
                """,
                (username, username, email, email),
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row, include_secrets)

    def update_user(self, user_id: str, **fields: Any) -> Optional[User]:
        check_user_write(fields)
        if not fields:
            return self.get_user(user_id)
        # Column names come from the whitelist enforced by check_user_write
        assignments = ", ".join(f"{name} = %s" for name in fields)
        params: List[Any] = [
            list(value) if name == "watch_history" else value
            for name, value in fields.items()
        ]
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        if not row:
            return None
        return self._user_from_row(row, include_secrets=False)

    def unset_refresh_token(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET refresh_token = NULL, updated_at = now() WHERE id = %s",
                (user_id,),
            )

    # password reset
    def create_reset_token(self, token: ResetToken) -> ResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, user_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.user_id, token.token_hash, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation as exc:
            raise _constraint_violation(exc) from exc
        return token

    def get_reset_token(self, token_hash: str) -> Optional[ResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._reset_token_from_row(row) if row else None

    def list_reset_tokens(self, user_id: str) -> List[ResetToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM password_reset_token WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._reset_token_from_row(row) for row in rows]

    def delete_reset_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM password_reset_token WHERE id = %s", (token_id,))
            return cur.rowcount > 0

    def delete_reset_tokens_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    # subscriptions
    def toggle_subscription(self, subscriber_id: str, channel_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM subscription WHERE subscriber_id = %s AND channel_id = %s",
                (subscriber_id, channel_id),
            )
            if cur.rowcount > 0:
                return False
            conn.execute(
                """
                INSERT INTO subscription (id, subscriber_id, channel_id)
                VALUES (%s, %s, %s)
                ON CONFLICT (subscriber_id, channel_id) DO NOTHING
                """,
                (str(uuid.uuid4()), subscriber_id, channel_id),
            )
            return True

    def count_subscribers(self, channel_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM subscription WHERE channel_id = %s",
                (channel_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def count_subscribed_to(self, subscriber_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM subscription WHERE subscriber_id = %s",
                (subscriber_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def is_subscribed(self, subscriber_id: str, channel_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM subscription WHERE subscriber_id = %s AND channel_id = %s",
                (subscriber_id, channel_id),
            ).fetchone()
        return row is not None

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True
