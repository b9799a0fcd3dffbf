"""Unit tests for AuthService against the memory store.

Covers registration validation and uniqueness, login, refresh rotation,
logout, password change and account updates.
"""

import threading
from pathlib import Path

import pytest

from pravaah.config import Settings
from pravaah.service.auth import AuthService
from pravaah.service.errors import (
    AuthenticationError,
    ConflictError,
    ExpiredTokenError,
    InvalidTokenError,
    ServerError,
    ValidationError,
)
from pravaah.service.file_store import FileStore
from pravaah.service.passwords import PasswordHasher
from pravaah.service.tokens import TokenIssuer
from pravaah.storage.errors import ConstraintViolation
from pravaah.storage.memory import MemoryStore


class FailingFileStore:
    """File store stand-in whose uploads always fail."""

    def __init__(self):
        self.calls = []

    async def upload(self, local_path):
        self.calls.append(local_path)
        return None


class CoverFailsFileStore:
    """Stores avatars locally but fails any upload named like a cover image."""

    def __init__(self, inner):
        self.inner = inner
        self.removed = []

    async def upload(self, local_path):
        if "cover" in Path(local_path).name:
            return None
        return await self.inner.upload(local_path)

    async def remove(self, asset):
        self.removed.append(asset)
        return await self.inner.remove(asset)


class RacingStore(MemoryStore):
    """Memory store that loses the uniqueness race on every insert."""

    def create_user(self, **fields):
        raise ConstraintViolation("duplicate email", {"field": "email"})


class ThreadRecordingHasher(PasswordHasher):
    """Records which thread each argon2 call ran on."""

    def __init__(self):
        super().__init__(time_cost=1, memory_cost=1024)
        self.threads = []

    def hash_password(self, plaintext):
        self.threads.append(threading.get_ident())
        return super().hash_password(plaintext)

    def verify_password(self, plaintext, password_hash):
        self.threads.append(threading.get_ident())
        return super().verify_password(plaintext, password_hash)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        access_token_secret="a" * 40,
        refresh_token_secret="r" * 40,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "state"))


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024)


@pytest.fixture
def files(tmp_path):
    return FileStore(media_root=str(tmp_path / "media"), public_base_url="http://testserver")


@pytest.fixture
def service(store, settings, hasher, files):
    return AuthService(store, TokenIssuer(settings), hasher, files)


@pytest.fixture
def image(tmp_path):
    def _make(name="avatar.png") -> str:
        path = tmp_path / "uploads" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\x89PNG fake image bytes")
        return str(path)

    return _make


async def _register(service, image, **overrides):
    fields = {
        "full_name": "Ada Lovelace",
        "email": "ada@example.com",
        "username": "ada",
        "password": "s3cretpw",
        "avatar_path": image(),
    }
    fields.update(overrides)
    return await service.register(**fields)


class TestRegister:
    async def test_register_creates_user_with_hashed_password(self, service, store, hasher, image):
        user = await _register(service, image)

        assert user.username == "ada"
        assert user.email == "ada@example.com"
        assert user.password_hash is None
        assert user.avatar.startswith("http://testserver/media/")
        record = store.get_user(user.id, include_secrets=True)
        assert record.password_hash != "s3cretpw"
        assert hasher.verify_password("s3cretpw", record.password_hash)

    async def test_register_normalizes_identifiers(self, service, image):
        user = await _register(
            service, image, email="  Ada@Example.COM ", username=" AdaL ", full_name=" Ada Lovelace "
        )

        assert user.email == "ada@example.com"
        assert user.username == "adal"
        assert user.full_name == "Ada Lovelace"

    async def test_register_removes_uploaded_source_file(self, service, image):
        avatar = image()

        await _register(service, image, avatar_path=avatar)

        assert not Path(avatar).exists()

    async def test_register_with_cover_image(self, service, image):
        user = await _register(service, image, cover_path=image("cover.png"))

        assert user.cover_image.startswith("http://testserver/media/")
        assert user.cover_image != user.avatar

    @pytest.mark.parametrize("missing", ["full_name", "email", "username", "password"])
    async def test_register_requires_all_fields(self, service, image, missing):
        with pytest.raises(ValidationError) as excinfo:
            await _register(service, image, **{missing: "   "})

        assert excinfo.value.message == "All fields are required."

    async def test_register_rejects_bad_email(self, service, image):
        with pytest.raises(ValidationError):
            await _register(service, image, email="not-an-email")

    async def test_register_rejects_short_password(self, service, image):
        with pytest.raises(ValidationError):
            await _register(service, image, password="abc")

    async def test_register_requires_avatar(self, service, image):
        with pytest.raises(ValidationError) as excinfo:
            await _register(service, image, avatar_path=None)

        assert excinfo.value.message == "Avatar image is required."

    async def test_duplicate_email_conflicts(self, service, image):
        await _register(service, image)

        with pytest.raises(ConflictError) as excinfo:
            await _register(service, image, username="other")

        assert excinfo.value.detail == {"field": "email"}

    async def test_duplicate_username_conflicts(self, service, image):
        await _register(service, image)

        with pytest.raises(ConflictError) as excinfo:
            await _register(service, image, email="other@example.com")

        assert excinfo.value.detail == {"field": "username"}

    async def test_failed_upload_creates_no_user(self, store, settings, hasher, image):
        failing = FailingFileStore()
        service = AuthService(store, TokenIssuer(settings), hasher, failing)

        with pytest.raises(ServerError):
            await _register(service, image)

        assert failing.calls
        assert store.find_user(email="ada@example.com") is None

    async def test_failed_cover_upload_discards_avatar(self, store, settings, hasher, files, image, tmp_path):
        flaky = CoverFailsFileStore(files)
        service = AuthService(store, TokenIssuer(settings), hasher, flaky)

        with pytest.raises(ServerError):
            await _register(service, image, cover_path=image("cover.png"))

        assert len(flaky.removed) == 1
        assert list((tmp_path / "media").iterdir()) == []
        assert store.find_user(email="ada@example.com") is None

    async def test_lost_insert_race_discards_uploads(self, settings, hasher, files, image, tmp_path):
        service = AuthService(
            RacingStore(fs_root=str(tmp_path / "state")), TokenIssuer(settings), hasher, files
        )

        with pytest.raises(ConflictError) as excinfo:
            await _register(service, image, cover_path=image("cover.png"))

        assert excinfo.value.detail == {"field": "email"}
        assert list((tmp_path / "media").iterdir()) == []

    async def test_password_hashing_runs_off_the_event_loop(self, store, settings, files, image):
        recording = ThreadRecordingHasher()
        service = AuthService(store, TokenIssuer(settings), recording, files)
        loop_thread = threading.get_ident()

        user = await _register(service, image)
        await service.login(username="ada", password="s3cretpw")
        await service.change_password(
            user,
            current_password="s3cretpw",
            new_password="newpass99",
            confirm_password="newpass99",
        )

        assert len(recording.threads) == 4
        assert loop_thread not in recording.threads


class TestLogin:
    async def test_login_by_username(self, service, store, image):
        user = await _register(service, image)

        session = await service.login(username="ADA", password="s3cretpw")

        assert session.user.id == user.id
        assert session.user.password_hash is None
        assert session.user.refresh_token is None
        stored = store.get_user(user.id, include_secrets=True)
        assert stored.refresh_token == session.refresh_token

    async def test_login_by_email(self, service, image):
        await _register(service, image)

        session = await service.login(email="ada@example.com", password="s3cretpw")

        assert session.access_token != session.refresh_token

    async def test_wrong_password_and_unknown_user_look_the_same(self, service, image):
        await _register(service, image)

        with pytest.raises(AuthenticationError) as wrong:
            await service.login(username="ada", password="wrongpass")
        with pytest.raises(AuthenticationError) as unknown:
            await service.login(username="nobody", password="s3cretpw")

        assert wrong.value.message == unknown.value.message == "Invalid credentials"

    async def test_login_requires_identifier_and_password(self, service):
        with pytest.raises(ValidationError):
            await service.login(password="s3cretpw")
        with pytest.raises(ValidationError):
            await service.login(username="ada", password="")


class TestRefresh:
    async def test_refresh_rotates_tokens(self, service, store, image):
        user = await _register(service, image)
        first = await service.login(username="ada", password="s3cretpw")

        second = await service.refresh(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert second.access_token != first.access_token
        stored = store.get_user(user.id, include_secrets=True)
        assert stored.refresh_token == second.refresh_token

    async def test_rotated_token_cannot_be_reused(self, service, image):
        await _register(service, image)
        first = await service.login(username="ada", password="s3cretpw")
        await service.refresh(first.refresh_token)

        with pytest.raises(AuthenticationError) as excinfo:
            await service.refresh(first.refresh_token)

        assert excinfo.value.message == "Refresh token is expired or used"

    async def test_refresh_requires_token(self, service):
        with pytest.raises(AuthenticationError) as excinfo:
            await service.refresh(None)

        assert excinfo.value.message == "Refresh token is required"

    async def test_access_token_is_not_a_refresh_token(self, service, image):
        await _register(service, image)
        session = await service.login(username="ada", password="s3cretpw")

        with pytest.raises(AuthenticationError) as excinfo:
            await service.refresh(session.access_token)

        assert excinfo.value.message == "Invalid refresh token"

    async def test_logout_invalidates_refresh_token(self, service, store, image):
        user = await _register(service, image)
        session = await service.login(username="ada", password="s3cretpw")

        await service.logout(session.user)

        assert store.get_user(user.id, include_secrets=True).refresh_token is None
        with pytest.raises(AuthenticationError):
            await service.refresh(session.refresh_token)

    async def test_logout_without_user(self, service):
        with pytest.raises(AuthenticationError) as excinfo:
            await service.logout(None)

        assert excinfo.value.message == "Unauthorized request"


class TestAuthenticate:
    async def test_authenticate_returns_public_user(self, service, image):
        user = await _register(service, image)
        session = await service.login(username="ada", password="s3cretpw")

        resolved = await service.authenticate(session.access_token)

        assert resolved.id == user.id
        assert resolved.password_hash is None
        assert resolved.refresh_token is None

    async def test_missing_token(self, service):
        with pytest.raises(AuthenticationError) as excinfo:
            await service.authenticate(None)

        assert excinfo.value.message == "Access token is required"

    async def test_invalid_token(self, service):
        with pytest.raises(InvalidTokenError):
            await service.authenticate("garbage.token.value")

    async def test_expired_token(self, store, settings, hasher, files, image):
        from datetime import datetime, timedelta, timezone

        now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
        tokens = TokenIssuer(settings, clock=lambda: now[0])
        service = AuthService(store, tokens, hasher, files)
        await _register(service, image)
        session = await service.login(username="ada", password="s3cretpw")
        now[0] = now[0] + timedelta(hours=1)

        with pytest.raises(ExpiredTokenError) as excinfo:
            await service.authenticate(session.access_token)

        assert excinfo.value.message == "Access token has expired"


class TestChangePassword:
    async def test_change_password(self, service, image):
        user = await _register(service, image)

        await service.change_password(
            user,
            current_password="s3cretpw",
            new_password="newpass123",
            confirm_password="newpass123",
        )

        await service.login(username="ada", password="newpass123")
        with pytest.raises(AuthenticationError):
            await service.login(username="ada", password="s3cretpw")

    async def test_wrong_current_password(self, service, image):
        user = await _register(service, image)

        with pytest.raises(AuthenticationError) as excinfo:
            await service.change_password(
                user,
                current_password="wrongpass",
                new_password="newpass123",
                confirm_password="newpass123",
            )

        assert excinfo.value.message == "Current password is incorrect"

    @pytest.mark.parametrize(
        "new_password,confirm_password",
        [
            ("newpass123", "newpass124"),
            ("short", "short"),
            ("x" * 17, "x" * 17),
        ],
    )
    async def test_new_password_rules(self, service, image, new_password, confirm_password):
        user = await _register(service, image)

        with pytest.raises(ValidationError):
            await service.change_password(
                user,
                current_password="s3cretpw",
                new_password=new_password,
                confirm_password=confirm_password,
            )

    async def test_new_password_must_differ(self, service, image):
        user = await _register(service, image, password="samepass1")

        with pytest.raises(ValidationError):
            await service.change_password(
                user,
                current_password="samepass1",
                new_password="samepass1",
                confirm_password="samepass1",
            )


class TestAccountUpdates:
    async def test_update_details_keeps_password_hash(self, service, store, image):
        user = await _register(service, image)
        before = store.get_user(user.id, include_secrets=True).password_hash

        updated = await service.update_account_details(
            user, full_name="Augusta Ada King", email="ada@analytical.org"
        )

        assert updated.full_name == "Augusta Ada King"
        assert updated.email == "ada@analytical.org"
        assert store.get_user(user.id, include_secrets=True).password_hash == before

    async def test_update_details_requires_a_field(self, service, image):
        user = await _register(service, image)

        with pytest.raises(ValidationError):
            await service.update_account_details(user, full_name=" ", email=None)

    async def test_update_email_conflict(self, service, image):
        user = await _register(service, image)
        await _register(service, image, email="babbage@example.com", username="babbage")

        with pytest.raises(ConflictError):
            await service.update_account_details(user, email="babbage@example.com")

    async def test_update_profile_images(self, service, image):
        user = await _register(service, image)

        updated = await service.update_profile_images(user, cover_path=image("cover.png"))

        assert updated.cover_image.startswith("http://testserver/media/")
        assert updated.avatar == user.avatar

    async def test_failed_image_update_discards_new_avatar(self, store, settings, hasher, files, image, tmp_path):
        user = await _register(AuthService(store, TokenIssuer(settings), hasher, files), image)
        flaky = CoverFailsFileStore(files)
        service = AuthService(store, TokenIssuer(settings), hasher, flaky)

        with pytest.raises(ServerError):
            await service.update_profile_images(
                user, avatar_path=image("new.png"), cover_path=image("cover.png")
            )

        assert len(flaky.removed) == 1
        assert [p.name for p in (tmp_path / "media").iterdir()] == [user.avatar.rsplit("/", 1)[1]]
        assert store.get_user(user.id).avatar == user.avatar

    async def test_update_profile_images_requires_a_file(self, service, image):
        user = await _register(service, image)

        with pytest.raises(ValidationError):
            await service.update_profile_images(user)
