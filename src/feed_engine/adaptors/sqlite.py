"""
This module provides a SQLite-backed implementation of every gateway protocol.
It is responsible for all direct database interactions: storing events,
organizations and stories as validated JSON payloads, the per-user friend,
joined, pinned and favorite sets, and notifications.

Notifications are realtime: every write to them appends a row to a change log,
and a single `SQLiteNotificationNotifier` task polls that log and pushes fresh
lists to the subscribers of the affected users.
"""
import asyncio
import json
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List

import aiosqlite
import pydantic_core

from ..config import EngineConfig
from ..models import Event, EventKind, Notification, Organization, Story, parse_notification
from ..protocols import NotificationCallback, Unsubscribe

NotificationLoader = Callable[[str], Awaitable[List[Notification]]]


async def _create_schema(conn: aiosqlite.Connection):
    # Schema management is centralized here and is idempotent.
    await conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS events (
            uid TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            start TEXT NOT NULL,
            payload TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_events_owner ON events (owner_id);
        CREATE TABLE IF NOT EXISTS joined_events (
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            PRIMARY KEY (user_id, event_id)
        );
        CREATE TABLE IF NOT EXISTS organizations (
            id TEXT PRIMARY KEY,
            payload TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS stories (
            story_id TEXT PRIMARY KEY,
            event_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            payload TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_stories_event ON stories (event_id, created_at);
        CREATE TABLE IF NOT EXISTS friendships (
            user_id TEXT NOT NULL,
            friend_id TEXT NOT NULL,
            PRIMARY KEY (user_id, friend_id)
        );
        CREATE TABLE IF NOT EXISTS pinned_events (
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            PRIMARY KEY (user_id, event_id)
        );
        CREATE TABLE IF NOT EXISTS favorite_events (
            user_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            PRIMARY KEY (user_id, event_id)
        );
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            timestamp TEXT,
            is_read INTEGER NOT NULL DEFAULT 0,
            payload TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications (user_id, timestamp);
        CREATE TABLE IF NOT EXISTS notification_changes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL
        );
        """
    )
    await conn.commit()


class SQLiteNotificationNotifier:
    """
    A centralized watcher that polls the notification change log once for all
    users and dispatches fresh lists to the subscribed callbacks. This avoids
    one polling loop per listener.
    """

    def __init__(
        self,
        conn: aiosqlite.Connection,
        load: NotificationLoader,
        write_lock: asyncio.Lock,
        polling_interval: float = 0.2,
    ):
        self._conn = conn
        self._load = load
        self._write_lock = write_lock
        self._polling_interval = polling_interval
        self._subscribers: Dict[str, List[NotificationCallback]] = defaultdict(list)
        self._last_id = 0
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    async def start(self):
        """Starts the polling task from the current end of the change log."""
        if self._task:
            return
        async with self._conn.execute("SELECT MAX(id) FROM notification_changes") as cursor:
            row = await cursor.fetchone()
            self._last_id = row[0] if row and row[0] is not None else 0
        self._task = asyncio.create_task(self._poll_for_changes())
        logging.info(f"Notification notifier started, polling from change {self._last_id}")

    async def stop(self):
        """Stops the polling task. The connection is owned by the factory."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logging.info("Notification notifier stopped")

    async def poll_once(self):
        """Dispatches every change recorded since the last poll."""
        # Holding the write lock keeps the poll from observing a half-written transaction.
        async with self._write_lock:
            async with self._conn.execute(
                "SELECT id, user_id FROM notification_changes WHERE id > ? ORDER BY id",
                (self._last_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        if not rows:
            return
        self._last_id = rows[-1][0]
        changed_users = list(dict.fromkeys(user_id for _, user_id in rows))
        async with self._lock:
            targets = {u: list(self._subscribers[u]) for u in changed_users if u in self._subscribers}
        for user_id, callbacks in targets.items():
            notifications = await self._load(user_id)
            for callback in callbacks:
                self._deliver(user_id, callback, notifications)

    async def _poll_for_changes(self):
        """The single background task that polls the change log."""
        while True:
            try:
                await self.poll_once()
            except Exception as e:
                logging.error(f"Notification notifier poll loop error: {e}")
            await asyncio.sleep(self._polling_interval)

    def _deliver(self, user_id: str, callback: NotificationCallback, notifications: List[Notification]):
        try:
            callback(list(notifications))
        except Exception as e:
            logging.warning(f"Notification subscriber for {user_id} failed: {e}")

    async def subscribe(self, user_id: str, callback: NotificationCallback) -> Unsubscribe:
        """Registers a callback and delivers the current list to it right away."""
        async with self._lock:
            self._subscribers[user_id].append(callback)
        self._deliver(user_id, callback, await self._load(user_id))

        async def unsubscribe():
            await self.unsubscribe(user_id, callback)

        return unsubscribe

    async def unsubscribe(self, user_id: str, callback: NotificationCallback):
        async with self._lock:
            if user_id in self._subscribers and callback in self._subscribers[user_id]:
                self._subscribers[user_id].remove(callback)
                if not self._subscribers[user_id]:
                    del self._subscribers[user_id]

    @property
    def polling_interval(self) -> float:
        return self._polling_interval

    def subscriber_count(self, user_id: str) -> int:
        return len(self._subscribers.get(user_id, []))


class SQLiteBackend:
    """
    Implements every gateway on one shared connection. Writes are serialized by
    a lock and run in a transaction that commits on success and rolls back on
    failure.
    """

    def __init__(self, conn: aiosqlite.Connection, polling_interval: float = 0.2):
        self.conn = conn
        self.write_lock = asyncio.Lock()
        self.notifier = SQLiteNotificationNotifier(
            conn, self.load_notifications, self.write_lock, polling_interval=polling_interval
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        async with self.write_lock:
            try:
                yield self.conn
                await self.conn.commit()
            except Exception as e:
                await self.conn.rollback()
                logging.error(f"Failed to write to SQLite: {e}")
                raise

    async def _column(self, query: str, params=()) -> List[str]:
        async with self.conn.execute(query, params) as cursor:
            return [row[0] async for row in cursor]

    async def _models(self, model, query: str, params=()) -> list:
        out = []
        async with self.conn.execute(query, params) as cursor:
            async for (payload,) in cursor:
                try:
                    out.append(model.model_validate_json(payload))
                except pydantic_core.ValidationError as e:
                    logging.warning(f"Skipping invalid {model.__name__} row: {e}")
        return out

    # --- Seeding ---

    async def add_event(self, event: Event):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO events (uid, owner_id, kind, start, payload) VALUES (?, ?, ?, ?, ?)",
                (event.uid, event.owner_id, event.kind.value, event.start.isoformat(), event.model_dump_json()),
            )

    async def add_organization(self, organization: Organization):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO organizations (id, payload) VALUES (?, ?)",
                (organization.id, organization.model_dump_json()),
            )

    async def add_story(self, story: Story):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO stories (story_id, event_id, created_at, payload) VALUES (?, ?, ?, ?)",
                (story.story_id, story.event_id, story.created_at.isoformat(), story.model_dump_json()),
            )

    async def befriend(self, user_id: str, friend_id: str):
        async with self._transaction() as conn:
            await conn.executemany(
                "INSERT OR IGNORE INTO friendships (user_id, friend_id) VALUES (?, ?)",
                [(user_id, friend_id), (friend_id, user_id)],
            )

    async def join(self, user_id: str, event_id: str):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO joined_events (user_id, event_id) VALUES (?, ?)", (user_id, event_id)
            )

    async def push_notification(self, notification: Notification):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR REPLACE INTO notifications (id, user_id, timestamp, is_read, payload) VALUES (?, ?, ?, ?, ?)",
                (
                    notification.id,
                    notification.user_id,
                    notification.timestamp.isoformat() if notification.timestamp else None,
                    int(notification.is_read),
                    notification.model_dump_json(),
                ),
            )
            await conn.execute("INSERT INTO notification_changes (user_id) VALUES (?)", (notification.user_id,))

    # --- EventGateway ---

    async def fetch_visible_events(self) -> List[Event]:
        return await self._models(
            Event, "SELECT payload FROM events WHERE kind = ? ORDER BY start", (EventKind.PUBLIC.value,)
        )

    async def fetch_owned_events(self, owner_id: str) -> List[Event]:
        return await self._models(Event, "SELECT payload FROM events WHERE owner_id = ? ORDER BY start", (owner_id,))

    async def fetch_joined_event_ids(self, user_id: str) -> List[str]:
        return await self._column("SELECT event_id FROM joined_events WHERE user_id = ? ORDER BY rowid", (user_id,))

    async def fetch_event(self, event_id: str) -> Event | None:
        found = await self._models(Event, "SELECT payload FROM events WHERE uid = ?", (event_id,))
        return found[0] if found else None

    # --- OrganizationGateway / StoryGateway / FriendGateway ---

    async def fetch_organizations(self) -> List[Organization]:
        return await self._models(Organization, "SELECT payload FROM organizations ORDER BY rowid")

    async def fetch_stories(self, event_id: str) -> List[Story]:
        return await self._models(
            Story, "SELECT payload FROM stories WHERE event_id = ? ORDER BY created_at", (event_id,)
        )

    async def fetch_friend_ids(self, user_id: str) -> List[str]:
        return await self._column("SELECT friend_id FROM friendships WHERE user_id = ? ORDER BY friend_id", (user_id,))

    # --- PinnedGateway / FavoriteGateway ---

    async def get_pinned(self, user_id: str) -> List[str]:
        return await self._column("SELECT event_id FROM pinned_events WHERE user_id = ? ORDER BY rowid", (user_id,))

    async def add_pinned(self, user_id: str, event_id: str):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO pinned_events (user_id, event_id) VALUES (?, ?)", (user_id, event_id)
            )

    async def remove_pinned(self, user_id: str, event_id: str):
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM pinned_events WHERE user_id = ? AND event_id = ?", (user_id, event_id))

    async def get_favorites(self, user_id: str) -> List[str]:
        return await self._column("SELECT event_id FROM favorite_events WHERE user_id = ? ORDER BY rowid", (user_id,))

    async def add_favorite(self, user_id: str, event_id: str):
        async with self._transaction() as conn:
            await conn.execute(
                "INSERT OR IGNORE INTO favorite_events (user_id, event_id) VALUES (?, ?)", (user_id, event_id)
            )

    async def remove_favorite(self, user_id: str, event_id: str):
        async with self._transaction() as conn:
            await conn.execute("DELETE FROM favorite_events WHERE user_id = ? AND event_id = ?", (user_id, event_id))

    # --- NotificationGateway ---

    async def load_notifications(self, user_id: str) -> List[Notification]:
        """Newest first, with the read flag taken from its own column."""
        out = []
        async with self.conn.execute(
            "SELECT payload, is_read FROM notifications WHERE user_id = ? ORDER BY timestamp DESC, rowid DESC",
            (user_id,),
        ) as cursor:
            async for payload, is_read in cursor:
                try:
                    data = json.loads(payload)
                except json.JSONDecodeError as e:
                    logging.warning(f"Skipping undecodable notification row for {user_id}: {e}")
                    continue
                data["is_read"] = bool(is_read)
                notification = parse_notification(data)
                if notification is not None:
                    out.append(notification)
        return out

    async def subscribe_notifications(self, user_id: str, callback: NotificationCallback) -> Unsubscribe:
        return await self.notifier.subscribe(user_id, callback)

    async def _owner_of(self, conn: aiosqlite.Connection, notification_id: str) -> str | None:
        async with conn.execute("SELECT user_id FROM notifications WHERE id = ?", (notification_id,)) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def mark_read(self, notification_id: str):
        async with self._transaction() as conn:
            user_id = await self._owner_of(conn, notification_id)
            if user_id is None:
                raise KeyError(f"Notification {notification_id} not found")
            await conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
            await conn.execute("INSERT INTO notification_changes (user_id) VALUES (?)", (user_id,))

    async def mark_all_read(self, user_id: str):
        async with self._transaction() as conn:
            await conn.execute("UPDATE notifications SET is_read = 1 WHERE user_id = ?", (user_id,))
            await conn.execute("INSERT INTO notification_changes (user_id) VALUES (?)", (user_id,))

    async def delete(self, notification_id: str):
        async with self._transaction() as conn:
            user_id = await self._owner_of(conn, notification_id)
            if user_id is None:
                raise KeyError(f"Notification {notification_id} not found")
            await conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
            await conn.execute("INSERT INTO notification_changes (user_id) VALUES (?)", (user_id,))


@asynccontextmanager
async def sqlite_backend(
    db_path: str, *, config: EngineConfig | None = None, polling_interval: float | None = None
) -> AsyncIterator[SQLiteBackend]:
    """
    Opens a SQLite database, ensures the schema, starts the notification
    notifier and yields a `SQLiteBackend`. On exit the notifier is stopped and
    the connection closed.

    The notifier polls every `config.polling_interval` seconds unless
    `polling_interval` is given explicitly.
    """
    if polling_interval is None:
        polling_interval = (config or EngineConfig()).polling_interval
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    conn = await aiosqlite.connect(db_path)
    try:
        if db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode=WAL;")
            await conn.execute("PRAGMA synchronous = NORMAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        await _create_schema(conn)
        backend = SQLiteBackend(conn, polling_interval=polling_interval)
        await backend.notifier.start()
        try:
            yield backend
        finally:
            await backend.notifier.stop()
    finally:
        await conn.close()
