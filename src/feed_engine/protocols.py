"""
This module defines the abstract protocols for the data sources the feed
engine consumes.

Each gateway exposes idempotent "fetch current state" operations and, where the
backend owns a mutable set, the mutations on it. Every call may fail with a
transport error; the engine treats each one as independently failable. Using
`Protocol`-based interfaces keeps the engine decoupled from the concrete
backend (in-memory, SQLite, a remote document store, ...).
"""
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Protocol

from .models import Event, Notification, Organization, Story

NotificationCallback = Callable[[List[Notification]], None]
Unsubscribe = Callable[[], Awaitable[None]]


class EventGateway(Protocol):
    async def fetch_visible_events(self) -> List[Event]:
        ...

    async def fetch_owned_events(self, owner_id: str) -> List[Event]:
        ...

    async def fetch_joined_event_ids(self, user_id: str) -> List[str]:
        ...

    async def fetch_event(self, event_id: str) -> Event | None:
        ...


class OrganizationGateway(Protocol):
    async def fetch_organizations(self) -> List[Organization]:
        ...


class StoryGateway(Protocol):
    async def fetch_stories(self, event_id: str) -> List[Story]:
        ...


class FriendGateway(Protocol):
    async def fetch_friend_ids(self, user_id: str) -> List[str]:
        ...


class PinnedGateway(Protocol):
    async def get_pinned(self, user_id: str) -> List[str]:
        ...

    async def add_pinned(self, user_id: str, event_id: str):
        ...

    async def remove_pinned(self, user_id: str, event_id: str):
        ...


class FavoriteGateway(Protocol):
    async def get_favorites(self, user_id: str) -> List[str]:
        ...

    async def add_favorite(self, user_id: str, event_id: str):
        ...

    async def remove_favorite(self, user_id: str, event_id: str):
        ...


class NotificationGateway(Protocol):
    """
    A realtime notification source. `subscribe_notifications` delivers the full
    current list to `callback` once, then again after every change, until the
    returned handle is awaited.
    """
    async def subscribe_notifications(
        self, user_id: str, callback: NotificationCallback
    ) -> Unsubscribe:
        ...

    async def mark_read(self, notification_id: str):
        ...

    async def mark_all_read(self, user_id: str):
        ...

    async def delete(self, notification_id: str):
        ...


@dataclass
class Gateways:
    """One implementation of every source. A single backend object may fill several slots."""
    events: EventGateway
    organizations: OrganizationGateway
    stories: StoryGateway
    friends: FriendGateway
    pinned: PinnedGateway
    favorites: FavoriteGateway
    notifications: NotificationGateway | None = None

    @classmethod
    def from_backend(cls, backend) -> "Gateways":
        return cls(
            events=backend,
            organizations=backend,
            stories=backend,
            friends=backend,
            pinned=backend,
            favorites=backend,
            notifications=backend,
        )
