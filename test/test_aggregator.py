import pytest
from pytest_asyncio import fixture
import asyncio
from datetime import date, datetime, timedelta, timezone

from feed_engine.adaptors.memory import MemoryBackend
from feed_engine.aggregator import FeedAggregator, dedupe_events
from feed_engine.config import EngineConfig
from feed_engine.models import Event, FilterCriteria, FriendRequest, GeoPoint, Story
from feed_engine.pinning import ToggleOutcome
from feed_engine.protocols import Gateways
from feed_engine.temporal import TemporalStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
H = timedelta(hours=1)
HOME = GeoPoint(latitude=48.8566, longitude=2.3522)
NEARBY = GeoPoint(latitude=48.86, longitude=2.36)


class GatedBackend(MemoryBackend):
    """Holds `fetch_visible_events` on an asyncio.Event while `gate` is set."""

    def __init__(self):
        super().__init__()
        self.gate = None

    async def fetch_visible_events(self):
        gate = self.gate
        events = await super().fetch_visible_events()
        if gate is not None:
            await gate.wait()
        return events


@fixture
def backend():
    backend = GatedBackend()
    backend.add_event(Event(uid="A", owner_id="owner", title="Picnic", start=NOW + H, tags=frozenset({"outdoor"})))
    backend.add_event(Event(uid="B", owner_id="owner", title="Jazz night", start=NOW - 5 * H))
    backend.add_event(
        Event(uid="C", owner_id="owner", title="Market", start=NOW - H, end=NOW + 2 * H, location=NEARBY)
    )
    return backend


@fixture
async def aggregator(backend):
    async with FeedAggregator(Gateways.from_backend(backend), "me", clock=lambda: NOW) as agg:
        yield agg


def uids(snapshot):
    return [e.uid for e in snapshot.events]


@pytest.mark.asyncio
async def test_feed_keeps_live_and_upcoming(aggregator):
    snapshot = await aggregator.refresh()
    assert uids(snapshot) == ["C", "A"]
    assert not snapshot.is_loading
    assert snapshot.last_error is None
    assert snapshot.generation == 1
    assert aggregator.snapshot is snapshot


@pytest.mark.asyncio
async def test_history_uses_assumed_duration(backend, aggregator):
    backend.join("me", "B")
    backend.join("me", "C")
    assert [e.uid for e in await aggregator.load_history()] == ["B"]
    assert [e.uid for e in await aggregator.load_history(TemporalStatus.UPCOMING)] == ["C"]
    assert await aggregator.load_history(query="market") == []


@pytest.mark.asyncio
async def test_radius_and_sentinel(aggregator):
    wide = await aggregator.refresh(FilterCriteria(location=HOME, radius_km=100))
    assert uids(wide) == ["C", "A"]
    narrow = await aggregator.refresh(FilterCriteria(location=HOME, radius_km=10))
    assert uids(narrow) == ["C"]


@pytest.mark.asyncio
async def test_criteria_persist_between_refreshes(aggregator):
    await aggregator.refresh(FilterCriteria(categories=frozenset({"OUTDOOR"})))
    snapshot = await aggregator.refresh()
    assert uids(snapshot) == ["A"]


@pytest.mark.asyncio
async def test_events_from_several_sources_are_deduplicated(backend):
    backend.add_event(Event(uid="mine", owner_id="me", start=NOW + 2 * H))
    backend.join("me", "A")
    backend.join("me", "mine")
    agg = FeedAggregator(Gateways.from_backend(backend), "me", clock=lambda: NOW)
    snapshot = await agg.refresh()
    assert uids(snapshot) == ["C", "A", "mine"]


def test_dedupe_first_occurrence_wins():
    first = Event(uid="x", owner_id="u", title="first", start=NOW)
    second = Event(uid="x", owner_id="u", title="second", start=NOW)
    merged = dedupe_events([first], [second])
    assert [e.title for e in merged] == ["first"]


@pytest.mark.asyncio
async def test_failing_source_degrades_to_empty(backend, aggregator):
    backend.fail("fetch_organizations")
    backend.fail("fetch_friend_ids")
    snapshot = await aggregator.refresh()
    assert uids(snapshot) == ["C", "A"]
    assert snapshot.organizations == ()
    assert snapshot.failed_sources == {"organizations", "friends"}
    assert "SOURCE_UNAVAILABLE" in snapshot.last_error

    backend.recover("fetch_organizations")
    backend.recover("fetch_friend_ids")
    snapshot = await aggregator.refresh()
    assert snapshot.failed_sources == frozenset()
    assert snapshot.last_error is None


@pytest.mark.asyncio
async def test_failing_joined_event_is_skipped(backend, aggregator):
    backend.join("me", "A")
    backend.fail("fetch_event")
    snapshot = await aggregator.refresh()
    assert "event:A" in snapshot.failed_sources
    assert uids(snapshot) == ["C", "A"]


@pytest.mark.asyncio
async def test_superseded_refresh_is_discarded(backend, aggregator):
    gate = asyncio.Event()
    backend.gate = gate
    stale = asyncio.create_task(aggregator.refresh())
    await asyncio.sleep(0.01)

    backend.gate = None
    backend.add_event(Event(uid="D", owner_id="owner", start=NOW + 3 * H))
    fresh = await aggregator.refresh()
    assert uids(fresh) == ["C", "A", "D"]

    gate.set()
    result = await stale
    assert result is fresh
    assert aggregator.snapshot is fresh
    assert aggregator.snapshot.generation == 2


@pytest.mark.asyncio
async def test_story_visibility(backend, aggregator):
    backend.befriend("me", "friend")
    for story_id, author in (("s1", "me"), ("s2", "friend"), ("s3", "stranger")):
        backend.add_story(Story(story_id=story_id, event_id="A", author_id=author, created_at=NOW - H))
    snapshot = await aggregator.refresh()
    summary = snapshot.stories["A"]
    assert [vs.story.story_id for vs in summary.stories] == ["s1", "s2"]
    assert summary.unseen_count == 1

    updated = await aggregator.mark_story_seen("A", "s2")
    assert updated.stories["A"].unseen_count == 0
    # Seen state survives the next refresh.
    again = await aggregator.refresh()
    assert again.stories["A"].unseen_count == 0


@pytest.mark.asyncio
async def test_stories_fetched_only_for_most_imminent_events(backend):
    config = EngineConfig(story_event_limit=1)
    agg = FeedAggregator(Gateways.from_backend(backend), "me", config=config, clock=lambda: NOW)
    snapshot = await agg.refresh()
    assert set(snapshot.stories) == {"C"}
    assert backend.calls["fetch_stories"] == 1


@pytest.mark.asyncio
async def test_favorites_filter_reuses_last_fetch(backend, aggregator):
    await aggregator.refresh()
    fetches = backend.calls["fetch_visible_events"]

    result = await aggregator.toggle_favorite("A")
    assert result.outcome is ToggleOutcome.ADDED
    snapshot = await aggregator.toggle_favorites_filter()
    assert uids(snapshot) == ["A"]
    assert snapshot.favorite_ids == {"A"}
    assert backend.calls["fetch_visible_events"] == fetches

    snapshot = await aggregator.toggle_favorites_filter()
    assert uids(snapshot) == ["C", "A"]


@pytest.mark.asyncio
async def test_favorites_fetch_failure_keeps_last_known(backend, aggregator):
    await aggregator.toggle_favorite("A")
    backend.fail("get_favorites")
    snapshot = await aggregator.refresh()
    assert snapshot.favorite_ids == {"A"}
    assert "favorites" in snapshot.failed_sources


@pytest.mark.asyncio
async def test_pin_cap_through_aggregator(aggregator):
    await aggregator.refresh()
    for event_id in ("A", "B", "C"):
        await aggregator.toggle_pinned(event_id)
    result = await aggregator.toggle_pinned("D", "Max 3")
    assert result.outcome is ToggleOutcome.LIMIT_REACHED
    assert result.message == "Max 3"
    assert aggregator.snapshot.pinned_ids == {"A", "B", "C"}


@pytest.mark.asyncio
async def test_events_for_date(aggregator):
    await aggregator.refresh()
    assert {e.uid for e in aggregator.get_events_for_date(date(2024, 6, 1))} == {"A", "C"}
    assert aggregator.get_events_for_date(date(2024, 6, 2)) == []


@pytest.mark.asyncio
async def test_watch_yields_published_snapshots(aggregator):
    stream = aggregator.watch()
    initial = await stream.__anext__()
    assert initial.generation == 0

    await aggregator.refresh()
    loading = await stream.__anext__()
    final = await stream.__anext__()
    assert loading.is_loading
    assert not final.is_loading
    assert uids(final) == ["C", "A"]
    await stream.aclose()


@pytest.mark.asyncio
async def test_notifications_follow_the_session(backend):
    backend.push_notification(FriendRequest(id="n1", user_id="me", from_user_name="Bob"))
    async with FeedAggregator(Gateways.from_backend(backend), "me", clock=lambda: NOW) as agg:
        assert backend.listener_count("me") == 1
        backend.push_notification(FriendRequest(id="n2", user_id="me", from_user_name="Ann"))
        assert agg.notifications.snapshot.latest.id == "n2"
        assert agg.clear_latest_notification().latest is None
    assert backend.listener_count("me") == 0


@pytest.mark.asyncio
async def test_anonymous_viewer(backend):
    agg = FeedAggregator(Gateways.from_backend(backend), None, clock=lambda: NOW)
    snapshot = await agg.refresh()
    assert uids(snapshot) == ["C", "A"]
    assert backend.calls["fetch_owned_events"] == 0
    assert backend.calls["fetch_friend_ids"] == 0
    result = await agg.toggle_pinned("A")
    assert result.outcome is ToggleOutcome.SKIPPED


@pytest.mark.asyncio
async def test_naive_timestamps_are_read_as_utc(backend, aggregator):
    backend.add_event(Event(uid="naive", owner_id="owner", start=datetime(2024, 6, 1, 13, 30)))
    backend.add_story(Story(story_id="s1", event_id="naive", author_id="me", created_at=datetime(2024, 6, 1, 11, 0)))
    snapshot = await aggregator.refresh()
    assert uids(snapshot) == ["C", "A", "naive"]
    assert snapshot.events[-1].start.tzinfo is timezone.utc
    assert snapshot.stories["naive"].count == 1


@pytest.mark.asyncio
async def test_pin_is_published_before_backend_confirms(backend, aggregator):
    await aggregator.refresh()
    backend.delay("add_pinned", 0.2)
    pending = asyncio.create_task(aggregator.toggle_pinned("A"))
    await asyncio.sleep(0.05)
    assert aggregator.snapshot.pinned_ids == {"A"}
    result = await pending
    assert result.outcome is ToggleOutcome.ADDED
    assert aggregator.snapshot.pinned_ids == {"A"}


@pytest.mark.asyncio
async def test_favorite_is_published_before_backend_confirms(backend, aggregator):
    await aggregator.refresh(FilterCriteria(favorites_only=True))
    backend.delay("add_favorite", 0.2)
    pending = asyncio.create_task(aggregator.toggle_favorite("A"))
    await asyncio.sleep(0.05)
    assert aggregator.snapshot.favorite_ids == {"A"}
    assert uids(aggregator.snapshot) == ["A"]
    await pending


@pytest.mark.asyncio
async def test_failed_pin_publishes_reconciled_state(backend, aggregator):
    await aggregator.refresh()
    backend.fail("add_pinned")
    stream = aggregator.watch()
    await stream.__anext__()

    result = await aggregator.toggle_pinned("A")
    optimistic = await stream.__anext__()
    reconciled = await stream.__anext__()
    await stream.aclose()

    assert result.outcome is ToggleOutcome.RECONCILED
    assert optimistic.pinned_ids == {"A"}
    assert reconciled.pinned_ids == frozenset()
    assert aggregator.snapshot.pinned_ids == frozenset()


@pytest.mark.asyncio
async def test_seen_stories_are_pruned_when_gone(backend, aggregator):
    backend.befriend("me", "friend")
    backend.add_story(Story(story_id="s1", event_id="A", author_id="friend", created_at=NOW - H))
    await aggregator.refresh()
    await aggregator.mark_story_seen("A", "s1")
    assert aggregator.seen_story_ids == {"s1"}

    backend.stories["A"].clear()
    await aggregator.refresh()
    assert aggregator.seen_story_ids == frozenset()


@pytest.mark.asyncio
async def test_local_change_keeps_pending_refresh_loading(backend, aggregator):
    await aggregator.refresh()
    gate = asyncio.Event()
    backend.gate = gate
    pending = asyncio.create_task(aggregator.refresh())
    await asyncio.sleep(0.01)
    assert aggregator.snapshot.is_loading

    await aggregator.toggle_favorite("A")
    assert aggregator.snapshot.is_loading
    assert aggregator.snapshot.favorite_ids == {"A"}

    backend.gate = None
    gate.set()
    snapshot = await pending
    assert not snapshot.is_loading
    assert snapshot.favorite_ids == {"A"}
