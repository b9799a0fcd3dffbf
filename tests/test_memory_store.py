"""Tests for the JSON-persisted memory store."""

import json
from datetime import timedelta

import pytest

from pravaah.storage.errors import ConstraintViolation
from pravaah.storage.memory import MemoryStore
from pravaah.storage.models import ResetToken, utcnow


def _create(store, username="ada", email="ada@example.com"):
    return store.create_user(
        username=username,
        email=email,
        full_name="Ada Lovelace",
        password_hash="$argon2id$v=19$m=1024,t=1,p=4$c2FsdA$aGFzaA",
        avatar="https://cdn.example/a.png",
    )


def _state(tmp_path) -> dict:
    return json.loads((tmp_path / "state" / "memory_store.json").read_text())


class TestUsers:
    def test_user_persists_across_instances(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)
        store.update_user(user.id, refresh_token="refresh-1", watch_history=["video-1"])

        reloaded = MemoryStore(fs_root=str(tmp_path))
        record = reloaded.get_user(user.id, include_secrets=True)

        assert record.username == "ada"
        assert record.refresh_token == "refresh-1"
        assert record.watch_history == ["video-1"]
        assert record.created_at == user.created_at

    def test_reads_hide_secrets_by_default(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)
        store.update_user(user.id, refresh_token="refresh-1")

        for record in (store.get_user(user.id), store.find_user(username="ada")):
            assert record.password_hash is None
            assert record.refresh_token is None
        assert store.find_user(email="ada@example.com", include_secrets=True).password_hash

    def test_returned_users_are_copies(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)

        fetched = store.get_user(user.id, include_secrets=True)
        fetched.password_hash = "tampered"

        assert store.get_user(user.id, include_secrets=True).password_hash != "tampered"

    def test_unset_refresh_token_removes_key(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)
        store.update_user(user.id, refresh_token="refresh-1")
        assert "refresh_token" in _state(tmp_path)["users"][0]

        store.unset_refresh_token(user.id)

        assert "refresh_token" not in _state(tmp_path)["users"][0]
        assert store.get_user(user.id, include_secrets=True).refresh_token is None

    def test_duplicate_email_and_username(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        _create(store)

        with pytest.raises(ConstraintViolation) as email_dup:
            _create(store, username="other")
        with pytest.raises(ConstraintViolation) as name_dup:
            _create(store, email="other@example.com")

        assert email_dup.value.detail == {"field": "email"}
        assert name_dup.value.detail == {"field": "username"}

    def test_update_checks_uniqueness(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        _create(store)
        other = _create(store, username="babbage", email="babbage@example.com")

        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, email="ada@example.com")

    def test_update_rejects_unknown_fields(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)

        with pytest.raises(ValueError):
            store.update_user(user.id, is_admin=True)

    def test_update_missing_user(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        assert store.update_user("missing", full_name="Nobody") is None

    def test_find_without_identifier(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        _create(store)

        assert store.find_user() is None


class TestResetTokens:
    def test_reset_tokens_persist_and_delete(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)
        token = store.create_reset_token(ResetToken.new(user.id, "hash-1"))

        reloaded = MemoryStore(fs_root=str(tmp_path))
        fetched = reloaded.get_reset_token("hash-1")
        assert fetched.id == token.id
        assert fetched.expires_at == token.expires_at

        assert reloaded.delete_reset_token(token.id) is True
        assert reloaded.delete_reset_token(token.id) is False
        assert reloaded.get_reset_token("hash-1") is None

    def test_token_hash_is_unique(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _create(store)
        store.create_reset_token(ResetToken.new(user.id, "hash-1"))

        with pytest.raises(ConstraintViolation):
            store.create_reset_token(ResetToken.new(user.id, "hash-1"))

    def test_delete_tokens_for_user(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        ada = _create(store)
        babbage = _create(store, username="babbage", email="babbage@example.com")
        store.create_reset_token(ResetToken.new(ada.id, "hash-1"))
        store.create_reset_token(ResetToken.new(ada.id, "hash-2"))
        store.create_reset_token(ResetToken.new(babbage.id, "hash-3"))

        assert store.delete_reset_tokens_for_user(ada.id) == 2
        assert store.list_reset_tokens(ada.id) == []
        assert len(store.list_reset_tokens(babbage.id)) == 1

    def test_expiry_boundary(self):
        now = utcnow()
        token = ResetToken.new("user-1", "hash-1", ttl_minutes=15, now=now)

        assert not token.is_expired(now + timedelta(minutes=14))
        assert token.is_expired(now + timedelta(minutes=15))


class TestSubscriptions:
    def test_toggle_and_counts(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        ada = _create(store)
        babbage = _create(store, username="babbage", email="babbage@example.com")

        assert store.toggle_subscription(babbage.id, ada.id) is True
        assert store.is_subscribed(babbage.id, ada.id)
        assert store.count_subscribers(ada.id) == 1
        assert store.count_subscribed_to(babbage.id) == 1

        reloaded = MemoryStore(fs_root=str(tmp_path))
        assert reloaded.is_subscribed(babbage.id, ada.id)

        assert reloaded.toggle_subscription(babbage.id, ada.id) is False
        assert reloaded.count_subscribers(ada.id) == 0
        assert not reloaded.is_subscribed(babbage.id, ada.id)
