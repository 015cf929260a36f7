"""
Notification diffing and the realtime listener lifecycle.

`reduce_notifications` is a pure function from the previous snapshot and a raw
list to the next snapshot. `NotificationCenter` owns the subscription to the
realtime source, feeds every delivered list through the reducer and publishes
the result.
"""
import logging
from typing import Awaitable, Callable, Iterable, List

from .models import Notification, NotificationSnapshot
from .protocols import NotificationGateway, Unsubscribe


def reduce_notifications(
    previous: NotificationSnapshot | None, incoming: Iterable[Notification]
) -> NotificationSnapshot:
    """
    Builds the next snapshot.

    `latest` is only set when a previous non-empty snapshot existed and the new
    list contains an id it did not have, so the first load never announces
    anything. The source delivers newest first; the first unseen entry wins.
    A pending `latest` survives later deliveries until cleared or deleted.
    """
    notifications = tuple(incoming)
    unread = sum(1 for n in notifications if not n.is_read)
    current_ids = {n.id for n in notifications}

    latest = None
    if previous is not None and previous.notifications:
        known_ids = {n.id for n in previous.notifications}
        latest = next((n for n in notifications if n.id not in known_ids), None)
        if latest is None and previous.latest is not None and previous.latest.id in current_ids:
            latest = next(n for n in notifications if n.id == previous.latest.id)

    return NotificationSnapshot(
        notifications=notifications, unread_count=unread, latest=latest, loaded=True
    )


def clear_latest(snapshot: NotificationSnapshot) -> NotificationSnapshot:
    return snapshot.model_copy(update={"latest": None})


class NotificationCenter:
    """
    Holds the notification state of one viewer session.

    The subscription is a scoped resource: use `async with` (or `start`/`stop`)
    so the listener is always torn down when the session ends. Starting for
    another user stops the previous listener first.
    """

    def __init__(self, gateway: NotificationGateway, user_id: str | None = None):
        self._gateway = gateway
        self._user_id = user_id
        self._unsubscribe: Unsubscribe | None = None
        self._snapshot = NotificationSnapshot()

    @property
    def snapshot(self) -> NotificationSnapshot:
        return self._snapshot

    @property
    def is_listening(self) -> bool:
        return self._unsubscribe is not None

    async def __aenter__(self) -> "NotificationCenter":
        if self._user_id:
            await self.start(self._user_id)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def start(self, user_id: str):
        await self.stop()
        self._user_id = user_id
        self._snapshot = NotificationSnapshot()
        self._unsubscribe = await self._gateway.subscribe_notifications(user_id, self._on_notifications)
        logging.info(f"Notification listener started for user {user_id}")

    async def stop(self):
        if self._unsubscribe is None:
            return
        unsubscribe, self._unsubscribe = self._unsubscribe, None
        try:
            await unsubscribe()
        finally:
            logging.info(f"Notification listener stopped for user {self._user_id}")

    def _on_notifications(self, notifications: List[Notification]):
        self._snapshot = reduce_notifications(self._snapshot if self._snapshot.loaded else None, notifications)

    def clear_latest(self) -> NotificationSnapshot:
        self._snapshot = clear_latest(self._snapshot)
        return self._snapshot

    def _replace_list(self, notifications: Iterable[Notification]) -> NotificationSnapshot:
        notifications = tuple(notifications)
        latest = self._snapshot.latest
        if latest is not None and latest.id not in {n.id for n in notifications}:
            latest = None
        self._snapshot = self._snapshot.model_copy(
            update={
                "notifications": notifications,
                "unread_count": sum(1 for n in notifications if not n.is_read),
                "latest": latest,
            }
        )
        return self._snapshot

    async def _apply(
        self, notifications: Iterable[Notification], call: Callable[[], Awaitable[None]], action: str
    ) -> bool:
        """
        Shows the change locally, then performs the backend call. On failure the
        previous state is restored, unless a listener push already replaced the
        optimistic one.
        """
        previous = self._snapshot
        optimistic = self._replace_list(notifications)
        try:
            await call()
        except Exception as e:
            logging.error(f"Failed to {action}: {e}")
            if self._snapshot is optimistic:
                self._snapshot = previous
            return False
        return True

    async def mark_as_read(self, notification_id: str) -> bool:
        return await self._apply(
            (
                n.model_copy(update={"is_read": True}) if n.id == notification_id else n
                for n in self._snapshot.notifications
            ),
            lambda: self._gateway.mark_read(notification_id),
            f"mark notification {notification_id} as read",
        )

    async def mark_all_as_read(self) -> bool:
        if not self._user_id:
            return False
        user_id = self._user_id
        return await self._apply(
            (n.model_copy(update={"is_read": True}) for n in self._snapshot.notifications),
            lambda: self._gateway.mark_all_read(user_id),
            "mark all notifications as read",
        )

    async def delete(self, notification_id: str) -> bool:
        return await self._apply(
            (n for n in self._snapshot.notifications if n.id != notification_id),
            lambda: self._gateway.delete(notification_id),
            f"delete notification {notification_id}",
        )
