"""Tests for channel profiles, subscription toggling and watch history."""

import pytest
from fastapi.testclient import TestClient

from pravaah import app as app_module
from pravaah.service.errors import NotFoundError, ValidationError
from pravaah.service.profiles import ProfileService
from pravaah.storage.memory import MemoryStore

API = "/api/v1/users"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def service(store):
    return ProfileService(store)


def _create(store, username, email):
    return store.create_user(
        username=username,
        email=email,
        full_name=username.title(),
        password_hash="$argon2id$hash",
        avatar=f"https://cdn.example/{username}.png",
    )


class TestProfileService:
    async def test_channel_profile_counts(self, service, store):
        ada = _create(store, "ada", "ada@example.com")
        babbage = _create(store, "babbage", "babbage@example.com")
        store.toggle_subscription(babbage.id, ada.id)

        profile = await service.get_channel_profile("ADA", viewer=babbage)

        assert profile["userName"] == "ada"
        assert profile["subscribersCount"] == 1
        assert profile["channelsSubscribedToCount"] == 0
        assert profile["isSubscribed"] is True
        assert "watchHistory" not in profile
        assert "refreshToken" not in profile

    async def test_anonymous_viewer_is_not_subscribed(self, service, store):
        _create(store, "ada", "ada@example.com")

        profile = await service.get_channel_profile("ada")

        assert profile["isSubscribed"] is False

    async def test_unknown_channel(self, service):
        with pytest.raises(NotFoundError):
            await service.get_channel_profile("nobody")

    async def test_toggle_subscription(self, service, store):
        ada = _create(store, "ada", "ada@example.com")
        babbage = _create(store, "babbage", "babbage@example.com")

        assert await service.toggle_subscription(babbage, ada.id) == {"subscribed": True}
        assert await service.toggle_subscription(babbage, ada.id) == {"subscribed": False}
        assert store.count_subscribers(ada.id) == 0

    async def test_cannot_subscribe_to_self(self, service, store):
        ada = _create(store, "ada", "ada@example.com")

        with pytest.raises(ValidationError):
            await service.toggle_subscription(ada, ada.id)

    async def test_subscribe_to_missing_channel(self, service, store):
        ada = _create(store, "ada", "ada@example.com")

        with pytest.raises(NotFoundError):
            await service.toggle_subscription(ada, "missing-id")

    async def test_watch_history(self, service, store):
        ada = _create(store, "ada", "ada@example.com")
        store.update_user(ada.id, watch_history=["video-1", "video-2"])

        assert await service.get_watch_history(ada) == ["video-1", "video-2"]


class TestProfileRoutes:
    @pytest.fixture
    def client(self):
        with TestClient(app_module.app, base_url="https://testserver") as test_client:
            yield test_client

    def _register_and_login(self, client, username):
        client.post(
            f"{API}/register",
            data={
                "fullName": username.title(),
                "email": f"{username}@example.com",
                "userName": username,
                "password": "s3cretpw",
            },
            files={"avatar": ("a.png", b"\x89PNG image", "image/png")},
        )
        resp = client.post(f"{API}/login", json={"userName": username, "password": "s3cretpw"})
        return resp.json()["data"]["user"]

    def test_subscribe_and_view_profile(self, client):
        ada = self._register_and_login(client, "ada")
        self._register_and_login(client, "babbage")

        subscribed = client.post(f"{API}/subscribeUser", json={"channelId": ada["id"]})
        profile = client.get(f"{API}/getProfile/ada")

        assert subscribed.status_code == 200
        assert subscribed.json()["message"] == "Subscribed"
        assert profile.status_code == 200
        assert profile.json()["data"]["subscribersCount"] == 1
        assert profile.json()["data"]["isSubscribed"] is True

        client.cookies.clear()
        anonymous = client.get(f"{API}/getProfile/ada")
        assert anonymous.json()["data"]["isSubscribed"] is False

    def test_missing_profile(self, client):
        resp = client.get(f"{API}/getProfile/nobody")

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_watch_history_requires_login(self, client):
        assert client.get(f"{API}/getWatchHistory").status_code == 401

        self._register_and_login(client, "ada")
        resp = client.get(f"{API}/getWatchHistory")

        assert resp.status_code == 200
        assert resp.json()["data"] == []
