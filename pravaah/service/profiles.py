from __future__ import annotations

import asyncio
from typing import List, Optional

from pravaah.logging import get_logger
from pravaah.service.auth import AccountStore, clean_text
from pravaah.service.errors import NotFoundError, ValidationError
from pravaah.storage.models import User

logger = get_logger(__name__)


class ProfileService:
    """Channel profiles, subscriptions and watch history."""

    def __init__(self, store: AccountStore) -> None:
        self.store = store

    async def get_channel_profile(self, username: Optional[str], viewer: Optional[User] = None) -> dict:
        username = clean_text(username).lower()
        if not username:
            raise ValidationError("Username is required.")
        return await asyncio.to_thread(self._load_profile, username, viewer)

    def _load_profile(self, username: str, viewer: Optional[User]) -> dict:
        channel = self.store.find_user(username=username)
        if not channel:
            raise NotFoundError("Channel does not exist.")
        profile = channel.to_public()
        profile.pop("watchHistory", None)
        profile["subscribersCount"] = self.store.count_subscribers(channel.id)
        profile["channelsSubscribedToCount"] = self.store.count_subscribed_to(channel.id)
        profile["isSubscribed"] = bool(
            viewer and self.store.is_subscribed(viewer.id, channel.id)
        )
        return profile

    async def toggle_subscription(self, subscriber: User, channel_id: Optional[str]) -> dict:
        channel_id = clean_text(channel_id)
        if not channel_id:
            raise ValidationError("Channel id is required.")
        if channel_id == subscriber.id:
            raise ValidationError("You cannot subscribe to your own channel.")
        if not await asyncio.to_thread(self.store.get_user, channel_id):
            raise NotFoundError("Channel does not exist.")
        subscribed = await asyncio.to_thread(
            self.store.toggle_subscription, subscriber.id, channel_id
        )
        logger.info(
            "subscription_toggled",
            subscriber_id=subscriber.id,
            channel_id=channel_id,
            subscribed=subscribed,
        )
        return {"subscribed": subscribed}

    async def get_watch_history(self, user: User) -> List[str]:
        record = await asyncio.to_thread(self.store.get_user, user.id)
        if not record:
            raise NotFoundError("User does not exist.")
        return list(record.watch_history)
