"""
An in-process backend implementing every gateway protocol.

It is intended for tests and local development. Any operation can be made to
fail (`fail`) or to take time (`delay`) so degraded and racing refreshes can be
exercised deterministically.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Dict, List, Set

from ..models import Event, Notification, Organization, Story
from ..protocols import NotificationCallback, Unsubscribe


class MemoryBackend:
    def __init__(self):
        self.events: Dict[str, Event] = {}
        self.organizations: List[Organization] = []
        self.stories: Dict[str, List[Story]] = defaultdict(list)
        self.friends: Dict[str, Set[str]] = defaultdict(set)
        self.joined: Dict[str, List[str]] = defaultdict(list)
        self.pinned: Dict[str, List[str]] = defaultdict(list)
        self.favorites: Dict[str, List[str]] = defaultdict(list)
        self.notifications: Dict[str, List[Notification]] = defaultdict(list)
        self.calls: Dict[str, int] = defaultdict(int)
        self._failures: Dict[str, Exception] = {}
        self._delays: Dict[str, float] = {}
        self._listeners: Dict[str, List[NotificationCallback]] = defaultdict(list)

    # --- Test controls ---

    def fail(self, operation: str, error: Exception | None = None):
        self._failures[operation] = error or ConnectionError(f"{operation} unavailable")

    def recover(self, operation: str):
        self._failures.pop(operation, None)

    def delay(self, operation: str, seconds: float):
        self._delays[operation] = seconds

    async def _enter(self, operation: str):
        self.calls[operation] += 1
        if operation in self._delays:
            await asyncio.sleep(self._delays[operation])
        if operation in self._failures:
            raise self._failures[operation]

    # --- Seeding ---

    def add_event(self, event: Event):
        self.events[event.uid] = event

    def add_story(self, story: Story):
        self.stories[story.event_id].append(story)

    def befriend(self, user_id: str, friend_id: str):
        self.friends[user_id].add(friend_id)
        self.friends[friend_id].add(user_id)

    def join(self, user_id: str, event_id: str):
        if event_id not in self.joined[user_id]:
            self.joined[user_id].append(event_id)

    def push_notification(self, notification: Notification):
        self.notifications[notification.user_id].insert(0, notification)
        self._dispatch(notification.user_id)

    # --- EventGateway ---

    async def fetch_visible_events(self) -> List[Event]:
        await self._enter("fetch_visible_events")
        return list(self.events.values())

    async def fetch_owned_events(self, owner_id: str) -> List[Event]:
        await self._enter("fetch_owned_events")
        return [e for e in self.events.values() if e.owner_id == owner_id]

    async def fetch_joined_event_ids(self, user_id: str) -> List[str]:
        await self._enter("fetch_joined_event_ids")
        return list(self.joined[user_id])

    async def fetch_event(self, event_id: str) -> Event | None:
        await self._enter("fetch_event")
        return self.events.get(event_id)

    # --- OrganizationGateway / StoryGateway / FriendGateway ---

    async def fetch_organizations(self) -> List[Organization]:
        await self._enter("fetch_organizations")
        return list(self.organizations)

    async def fetch_stories(self, event_id: str) -> List[Story]:
        await self._enter("fetch_stories")
        return list(self.stories.get(event_id, []))

    async def fetch_friend_ids(self, user_id: str) -> List[str]:
        await self._enter("fetch_friend_ids")
        return sorted(self.friends[user_id])

    # --- PinnedGateway / FavoriteGateway ---

    async def get_pinned(self, user_id: str) -> List[str]:
        await self._enter("get_pinned")
        return list(self.pinned[user_id])

    async def add_pinned(self, user_id: str, event_id: str):
        await self._enter("add_pinned")
        if event_id not in self.pinned[user_id]:
            self.pinned[user_id].append(event_id)

    async def remove_pinned(self, user_id: str, event_id: str):
        await self._enter("remove_pinned")
        if event_id in self.pinned[user_id]:
            self.pinned[user_id].remove(event_id)

    async def get_favorites(self, user_id: str) -> List[str]:
        await self._enter("get_favorites")
        return list(self.favorites[user_id])

    async def add_favorite(self, user_id: str, event_id: str):
        await self._enter("add_favorite")
        if event_id not in self.favorites[user_id]:
            self.favorites[user_id].append(event_id)

    async def remove_favorite(self, user_id: str, event_id: str):
        await self._enter("remove_favorite")
        if event_id in self.favorites[user_id]:
            self.favorites[user_id].remove(event_id)

    # --- NotificationGateway ---

    def _dispatch(self, user_id: str):
        snapshot = list(self.notifications[user_id])
        for callback in list(self._listeners.get(user_id, [])):
            try:
                callback(snapshot)
            except Exception as e:
                logging.warning(f"Notification listener for {user_id} failed: {e}")

    def listener_count(self, user_id: str) -> int:
        return len(self._listeners.get(user_id, []))

    async def subscribe_notifications(self, user_id: str, callback: NotificationCallback) -> Unsubscribe:
        await self._enter("subscribe_notifications")
        self._listeners[user_id].append(callback)
        callback(list(self.notifications[user_id]))

        async def unsubscribe():
            if callback in self._listeners.get(user_id, []):
                self._listeners[user_id].remove(callback)
                if not self._listeners[user_id]:
                    del self._listeners[user_id]

        return unsubscribe

    def _owner_of(self, notification_id: str) -> str | None:
        for user_id, notifications in self.notifications.items():
            if any(n.id == notification_id for n in notifications):
                return user_id
        return None

    async def mark_read(self, notification_id: str):
        await self._enter("mark_read")
        user_id = self._owner_of(notification_id)
        if user_id is None:
            return
        self.notifications[user_id] = [
            n.model_copy(update={"is_read": True}) if n.id == notification_id else n
            for n in self.notifications[user_id]
        ]
        self._dispatch(user_id)

    async def mark_all_read(self, user_id: str):
        await self._enter("mark_all_read")
        self.notifications[user_id] = [n.model_copy(update={"is_read": True}) for n in self.notifications[user_id]]
        self._dispatch(user_id)

    async def delete(self, notification_id: str):
        await self._enter("delete")
        user_id = self._owner_of(notification_id)
        if user_id is None:
            return
        self.notifications[user_id] = [n for n in self.notifications[user_id] if n.id != notification_id]
        self._dispatch(user_id)
