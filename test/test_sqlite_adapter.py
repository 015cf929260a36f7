import pytest
from pytest_asyncio import fixture
import asyncio
import os
import tempfile
from datetime import datetime, timedelta, timezone

from feed_engine.adaptors.sqlite import sqlite_backend
from feed_engine.aggregator import FeedAggregator
from feed_engine.config import EngineConfig
from feed_engine.models import Event, EventKind, FriendRequest, GeoPoint, Organization, Story
from feed_engine.protocols import Gateways

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
H = timedelta(hours=1)


@fixture
async def backend():
    """
    Provides a SQLiteBackend with a clean in-memory database for each test function.
    """
    async with sqlite_backend(":memory:", polling_interval=0.01) as backend:
        yield backend


@pytest.mark.asyncio
async def test_event_round_trip(backend):
    event = Event(
        uid="e1",
        owner_id="me",
        title="Market",
        start=NOW,
        end=NOW + H,
        location=GeoPoint(latitude=1.0, longitude=2.0, name="Square"),
        tags=frozenset({"food", "outdoor"}),
        price=12,
    )
    await backend.add_event(event)
    assert await backend.fetch_event("e1") == event
    assert await backend.fetch_event("missing") is None


@pytest.mark.asyncio
async def test_visible_events_are_public_only(backend):
    await backend.add_event(Event(uid="pub", owner_id="me", start=NOW + H))
    await backend.add_event(Event(uid="priv", owner_id="me", kind=EventKind.PRIVATE, start=NOW))
    assert [e.uid for e in await backend.fetch_visible_events()] == ["pub"]
    assert [e.uid for e in await backend.fetch_owned_events("me")] == ["priv", "pub"]


@pytest.mark.asyncio
async def test_invalid_rows_are_skipped(backend):
    await backend.add_event(Event(uid="ok", owner_id="me", start=NOW))
    async with backend.write_lock:
        await backend.conn.execute(
            "INSERT INTO events (uid, owner_id, kind, start, payload) VALUES (?, ?, ?, ?, ?)",
            ("bad", "me", "public", NOW.isoformat(), '{"uid": "bad"}'),
        )
        await backend.conn.commit()
    assert [e.uid for e in await backend.fetch_visible_events()] == ["ok"]


@pytest.mark.asyncio
async def test_sets_and_relations(backend):
    await backend.befriend("me", "bob")
    await backend.join("me", "e1")
    await backend.join("me", "e1")
    await backend.add_pinned("me", "a")
    await backend.add_pinned("me", "b")
    await backend.add_pinned("me", "a")
    await backend.remove_pinned("me", "b")
    await backend.add_favorite("me", "x")

    assert await backend.fetch_friend_ids("bob") == ["me"]
    assert await backend.fetch_joined_event_ids("me") == ["e1"]
    assert await backend.get_pinned("me") == ["a"]
    assert await backend.get_favorites("me") == ["x"]
    await backend.remove_favorite("me", "x")
    assert await backend.get_favorites("me") == []


@pytest.mark.asyncio
async def test_stories_and_organizations(backend):
    await backend.add_organization(Organization(id="o1", name="Club"))
    await backend.add_story(Story(story_id="s2", event_id="e1", author_id="me", created_at=NOW))
    await backend.add_story(Story(story_id="s1", event_id="e1", author_id="me", created_at=NOW - H))
    assert [o.name for o in await backend.fetch_organizations()] == ["Club"]
    assert [s.story_id for s in await backend.fetch_stories("e1")] == ["s1", "s2"]


@pytest.mark.asyncio
async def test_notifications_newest_first_with_read_flag(backend):
    await backend.push_notification(FriendRequest(id="n1", user_id="me", timestamp=NOW - H))
    await backend.push_notification(FriendRequest(id="n2", user_id="me", timestamp=NOW))
    await backend.mark_read("n1")

    notifications = await backend.load_notifications("me")
    assert [n.id for n in notifications] == ["n2", "n1"]
    assert [n.is_read for n in notifications] == [False, True]

    await backend.delete("n2")
    assert [n.id for n in await backend.load_notifications("me")] == ["n1"]
    with pytest.raises(KeyError):
        await backend.mark_read("n2")


@pytest.mark.asyncio
async def test_notifier_pushes_changes_to_subscribers():
    # A long interval leaves dispatching to the explicit polls below.
    async with sqlite_backend(":memory:", polling_interval=60) as backend:
        await _check_notifier(backend)


async def _check_notifier(backend):
    received = []
    unsubscribe = await backend.subscribe_notifications("me", received.append)
    assert received == [[]]

    await backend.push_notification(FriendRequest(id="n1", user_id="me", timestamp=NOW))
    await backend.push_notification(FriendRequest(id="other", user_id="someone", timestamp=NOW))
    await backend.notifier.poll_once()
    assert [n.id for n in received[-1]] == ["n1"]
    assert len(received) == 2

    await unsubscribe()
    assert backend.notifier.subscriber_count("me") == 0
    await backend.mark_all_read("me")
    await backend.notifier.poll_once()
    assert len(received) == 2


@pytest.mark.asyncio
async def test_background_polling_delivers(backend):
    received = []
    await backend.subscribe_notifications("me", received.append)
    await backend.push_notification(FriendRequest(id="n1", user_id="me", timestamp=NOW))
    for _ in range(100):
        if len(received) > 1:
            break
        await asyncio.sleep(0.01)
    assert [n.id for n in received[-1]] == ["n1"]


@pytest.mark.asyncio
async def test_aggregator_over_sqlite(backend):
    await backend.add_event(Event(uid="A", owner_id="owner", start=NOW + H))
    await backend.add_event(Event(uid="B", owner_id="owner", start=NOW - 5 * H))
    await backend.add_event(Event(uid="C", owner_id="owner", start=NOW - H, end=NOW + 2 * H))
    await backend.join("me", "B")

    async with FeedAggregator(Gateways.from_backend(backend), "me", clock=lambda: NOW) as agg:
        snapshot = await agg.refresh()
        assert [e.uid for e in snapshot.events] == ["C", "A"]
        assert [e.uid for e in await agg.load_history()] == ["B"]

        await agg.toggle_pinned("A")
        assert await backend.get_pinned("me") == ["A"]


@pytest.mark.asyncio
async def test_file_database_persists():
    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "feed.db")
        async with sqlite_backend(db_path) as backend:
            await backend.add_favorite("me", "x")
        async with sqlite_backend(db_path) as backend:
            assert await backend.get_favorites("me") == ["x"]


@pytest.mark.asyncio
async def test_db_path_is_required():
    with pytest.raises(ValueError):
        async with sqlite_backend(""):
            pass


@pytest.mark.asyncio
async def test_polling_interval_comes_from_config():
    async with sqlite_backend(":memory:", config=EngineConfig(polling_interval=0.05)) as backend:
        assert backend.notifier.polling_interval == 0.05
    async with sqlite_backend(":memory:", config=EngineConfig(polling_interval=0.05), polling_interval=1) as backend:
        assert backend.notifier.polling_interval == 1
    async with sqlite_backend(":memory:") as backend:
        assert backend.notifier.polling_interval == EngineConfig().polling_interval
