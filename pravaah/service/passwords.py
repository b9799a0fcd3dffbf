from __future__ import annotations

from typing import Any, Dict

from argon2 import PasswordHasher as _Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pravaah.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id hashing with the salt embedded in the encoded hash."""

    algo = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash_password(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify_password(self, plaintext: str, password_hash: str | None) -> bool:
        if not password_hash or plaintext is None:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False


def prepare_user_write(fields: Dict[str, Any], hasher: PasswordHasher) -> Dict[str, Any]:
    """Hash ``password`` into ``password_hash`` when it is part of a user write.

    Every write to a user record goes through here. Writes that do not carry a
    password pass through unchanged so an existing hash is never re-hashed.
    """
    if "password" not in fields:
        return dict(fields)
    prepared = {k: v for k, v in fields.items() if k != "password"}
    prepared["password_hash"] = hasher.hash_password(fields["password"])
    return prepared
