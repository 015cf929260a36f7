"""
The feed aggregator turns the independent sources into one `FeedSnapshot`.

A refresh fans out to every gateway concurrently. Each call writes to its own
slot and the slots are merged only once all of them have completed, so the
published snapshot always reflects a single consistent barrier: the events,
the favorites used to filter them and the friend list used for their stories
come from the same pass.

Every source is guarded on its own. A failing gateway contributes an empty (or
last known) value and is recorded on the snapshot; it never aborts the pass and
never reaches the caller as an exception.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone, tzinfo
from typing import (
    AsyncIterable,
    Awaitable,
    Callable,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Tuple,
    TypeVar,
)

from .config import EngineConfig
from .errors import DomainError, SourceUnavailableError, StaleRefreshError
from .filters import apply_feed_filters, events_on_date, filter_history
from .models import Event, FeedSnapshot, FilterCriteria, NotificationSnapshot, Organization, Story
from .notifications import NotificationCenter
from .pinning import DEFAULT_LIMIT_MESSAGE, FavoriteEvents, PinnedEvents, ToggleResult
from .protocols import Gateways
from .stories import mark_seen, summarize_stories
from .temporal import TemporalStatus

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dedupe_events(*groups: Iterable[Event]) -> List[Event]:
    """Merges event lists by uid; the first occurrence wins."""
    seen = set()
    merged = []
    for group in groups:
        for event in group:
            if event.uid not in seen:
                seen.add(event.uid)
                merged.append(event)
    return merged


@dataclass
class _FanOut:
    """Results of one fan-out, kept so local changes can re-filter without refetching."""
    events: List[Event]
    organizations: List[Organization]
    friend_ids: FrozenSet[str]
    errors: List[DomainError]
    stories: Dict[str, List[Story]] = field(default_factory=dict)


class FeedAggregator:
    def __init__(
        self,
        gateways: Gateways,
        viewer_id: str | None,
        *,
        config: EngineConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.gateways = gateways
        self.viewer_id = viewer_id or None
        self.config = config or EngineConfig()
        self._clock = clock or _utcnow
        self.favorites = FavoriteEvents(gateways.favorites, self.viewer_id, on_change=self._on_favorites_changed)
        self.pinned = PinnedEvents(
            gateways.pinned,
            self.viewer_id,
            max_pinned=self.config.max_pinned,
            on_change=self._on_pinned_changed,
        )
        self.notifications = (
            NotificationCenter(gateways.notifications, self.viewer_id)
            if gateways.notifications is not None
            else None
        )
        self._snapshot = FeedSnapshot()
        self._generation = 0
        self._fan_out_result: _FanOut | None = None
        self._seen_story_ids: set = set()
        self._watchers: List[asyncio.Queue] = []
        self._lock = asyncio.Lock()

    @property
    def snapshot(self) -> FeedSnapshot:
        return self._snapshot

    @property
    def seen_story_ids(self) -> FrozenSet[str]:
        return frozenset(self._seen_story_ids)

    # --- Lifecycle ---

    async def __aenter__(self) -> "FeedAggregator":
        if self.notifications is not None and self.viewer_id:
            await self.notifications.start(self.viewer_id)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        """Tears down the notification listener of this session."""
        if self.notifications is not None:
            await self.notifications.stop()

    # --- Snapshot stream ---

    async def subscribe(self) -> asyncio.Queue:
        async with self._lock:
            queue = asyncio.Queue()
            self._watchers.append(queue)
            return queue

    async def unsubscribe(self, queue: asyncio.Queue):
        async with self._lock:
            if queue in self._watchers:
                self._watchers.remove(queue)

    async def watch(self) -> AsyncIterable[FeedSnapshot]:
        """Yields the current snapshot, then every snapshot published afterwards."""
        queue = await self.subscribe()
        try:
            yield self._snapshot
            while True:
                yield await queue.get()
        finally:
            await self.unsubscribe(queue)

    async def _publish(self, snapshot: FeedSnapshot):
        self._snapshot = snapshot
        async with self._lock:
            watchers = list(self._watchers)
        for queue in watchers:
            await queue.put(snapshot)

    # --- Fan-out ---

    async def _guarded(
        self, source: str, call: Callable[[], Awaitable[T]], default: T
    ) -> Tuple[T, DomainError | None]:
        try:
            return await call(), None
        except Exception as e:
            logging.warning(f"Source {source} unavailable, using empty contribution: {e}")
            return default, SourceUnavailableError(source, e)

    async def _fetch_joined_events(self, user_id: str) -> Tuple[List[Event], List[DomainError]]:
        ids, error = await self._guarded(
            "joined_events", lambda: self.gateways.events.fetch_joined_event_ids(user_id), []
        )
        errors = [error] if error else []
        results = await asyncio.gather(
            *(
                self._guarded(f"event:{event_id}", lambda event_id=event_id: self.gateways.events.fetch_event(event_id), None)
                for event_id in ids
            )
        )
        events = []
        for event, event_error in results:
            if event_error:
                errors.append(event_error)
            elif event is not None:
                events.append(event)
        return events, errors

    async def _fetch_own_events(self, user_id: str | None) -> Tuple[List[Event], List[Event], List[DomainError]]:
        if not user_id:
            return [], [], []
        (owned, owned_error), (joined, joined_errors) = await asyncio.gather(
            self._guarded("owned_events", lambda: self.gateways.events.fetch_owned_events(user_id), []),
            self._fetch_joined_events(user_id),
        )
        errors = ([owned_error] if owned_error else []) + joined_errors
        return owned, joined, errors

    async def _fan_out(self) -> _FanOut:
        viewer = self.viewer_id
        (
            (visible, visible_error),
            (owned, joined, own_errors),
            (organizations, organizations_error),
            (friend_ids, friends_error),
            (_, favorites_error),
            (_, pinned_error),
        ) = await asyncio.gather(
            self._guarded("visible_events", self.gateways.events.fetch_visible_events, []),
            self._fetch_own_events(viewer),
            self._guarded("organizations", self.gateways.organizations.fetch_organizations, []),
            self._guarded(
                "friends",
                (lambda: self.gateways.friends.fetch_friend_ids(viewer)) if viewer else _no_friends,
                [],
            ),
            # On failure the last known local copy stays in place.
            self._guarded("favorites", self.favorites.load, self.favorites.ids),
            self._guarded("pinned", self.pinned.load, self.pinned.ids),
        )
        errors = [
            e
            for e in (visible_error, *own_errors, organizations_error, friends_error, favorites_error, pinned_error)
            if e is not None
        ]
        return _FanOut(
            events=dedupe_events(visible, owned, joined),
            organizations=list(organizations),
            friend_ids=frozenset(friend_ids),
            errors=errors,
        )

    async def _assemble(self, fan_out: _FanOut, criteria: FilterCriteria, generation: int) -> FeedSnapshot:
        now = self._clock()
        favorite_ids = self.favorites.ids
        events = apply_feed_filters(
            fan_out.events,
            criteria,
            now=now,
            favorite_ids=favorite_ids,
            sentinel_km=self.config.sentinel_distance_km,
            default_duration=self.config.feed_default_duration,
        )

        # Stories only for the most imminent survivors.
        story_targets = [e.uid for e in events[: self.config.story_event_limit]]
        missing = [uid for uid in story_targets if uid not in fan_out.stories]
        fetched = await asyncio.gather(
            *(
                self._guarded(f"stories:{uid}", lambda uid=uid: self.gateways.stories.fetch_stories(uid), [])
                for uid in missing
            )
        )
        errors = list(fan_out.errors)
        for uid, (stories, error) in zip(missing, fetched):
            if error:
                errors.append(error)
            else:
                fan_out.stories[uid] = list(stories)

        summaries = {
            uid: summarize_stories(
                uid,
                fan_out.stories.get(uid, []),
                viewer_id=self.viewer_id,
                friend_ids=fan_out.friend_ids,
                seen_ids=self._seen_story_ids,
                now=now,
                lifetime=self.config.story_lifetime,
            )
            for uid in story_targets
        }
        return FeedSnapshot(
            events=tuple(events),
            stories=summaries,
            organizations=tuple(fan_out.organizations),
            favorite_ids=favorite_ids,
            pinned_ids=self.pinned.ids,
            is_loading=False,
            last_error=str(errors[-1]) if errors else None,
            failed_sources=frozenset(e.source for e in errors if isinstance(e, SourceUnavailableError)),
            criteria=criteria,
            generated_at=now,
            generation=generation,
        )

    def _ensure_current(self, generation: int):
        if generation != self._generation:
            raise StaleRefreshError(generation)

    async def refresh(self, criteria: FilterCriteria | None = None) -> FeedSnapshot:
        """
        Runs one aggregation pass and publishes its snapshot.

        A refresh started later supersedes this one: if that happens while this
        pass is suspended, its results are dropped and the currently published
        snapshot is returned instead.
        """
        criteria = criteria or self._snapshot.criteria
        self._generation += 1
        generation = self._generation
        await self._publish(self._snapshot.model_copy(update={"is_loading": True}))
        try:
            fan_out = await self._fan_out()
            self._ensure_current(generation)
            snapshot = await self._assemble(fan_out, criteria, generation)
            self._ensure_current(generation)
        except StaleRefreshError as e:
            logging.info(f"Discarding superseded refresh: {e}")
            return self._snapshot

        self._fan_out_result = fan_out
        self._prune_seen_stories(fan_out)
        await self._publish(snapshot)
        logging.info(
            f"Published feed generation {generation}: {len(snapshot.events)} events, "
            f"{len(snapshot.failed_sources)} failed sources"
        )
        return snapshot

    def _prune_seen_stories(self, fan_out: _FanOut):
        present = {s.story_id for stories in fan_out.stories.values() for s in stories}
        self._seen_story_ids &= present

    async def _refilter(self, criteria: FilterCriteria) -> FeedSnapshot:
        """Re-applies filters to the last fan-out without refetching."""
        fan_out = self._fan_out_result
        if fan_out is None:
            snapshot = self._snapshot.model_copy(
                update={
                    "criteria": criteria,
                    "favorite_ids": self.favorites.ids,
                    "pinned_ids": self.pinned.ids,
                }
            )
            await self._publish(snapshot)
            return snapshot
        snapshot = await self._assemble(fan_out, criteria, self._snapshot.generation)
        if fan_out is not self._fan_out_result:
            # A refresh completed meanwhile and already published newer data.
            return self._snapshot
        if self._snapshot.is_loading:
            # A refresh is still in flight.
            snapshot = snapshot.model_copy(update={"is_loading": True})
        await self._publish(snapshot)
        return snapshot

    async def _on_favorites_changed(self, ids: FrozenSet[str]):
        await self._refilter(self._snapshot.criteria)

    async def _on_pinned_changed(self, ids: FrozenSet[str]):
        await self._publish(self._snapshot.model_copy(update={"pinned_ids": ids}))

    # --- Viewer actions ---

    async def toggle_favorite(self, event_id: str) -> ToggleResult:
        result = await self.favorites.toggle(event_id)
        await self._refilter(self._snapshot.criteria)
        return result

    async def toggle_favorites_filter(self) -> FeedSnapshot:
        criteria = self._snapshot.criteria
        return await self._refilter(criteria.model_copy(update={"favorites_only": not criteria.favorites_only}))

    async def toggle_pinned(self, event_id: str, limit_message: str = DEFAULT_LIMIT_MESSAGE) -> ToggleResult:
        result = await self.pinned.toggle(event_id, limit_message)
        await self._publish(self._snapshot.model_copy(update={"pinned_ids": self.pinned.ids}))
        return result

    async def mark_story_seen(self, event_id: str, story_id: str) -> FeedSnapshot:
        self._seen_story_ids.add(story_id)
        summary = self._snapshot.stories.get(event_id)
        if summary is None:
            return self._snapshot
        stories = dict(self._snapshot.stories)
        stories[event_id] = mark_seen(summary, story_id)
        snapshot = self._snapshot.model_copy(update={"stories": stories})
        await self._publish(snapshot)
        return snapshot

    def get_events_for_date(self, day: date, tz: tzinfo | None = None) -> List[Event]:
        return events_on_date(self._snapshot.events, day, tz)

    def clear_latest_notification(self) -> NotificationSnapshot | None:
        if self.notifications is None:
            return None
        return self.notifications.clear_latest()

    async def load_history(
        self, status: TemporalStatus = TemporalStatus.PAST, query: str = ""
    ) -> List[Event]:
        """Owned and joined events of the viewer, classified with the history policy."""
        owned, joined, errors = await self._fetch_own_events(self.viewer_id)
        for error in errors:
            logging.warning(f"History degraded: {error}")
        return filter_history(
            dedupe_events(owned, joined),
            now=self._clock(),
            status=status,
            query=query,
            default_duration=self.config.history_default_duration,
        )


async def _no_friends() -> List[str]:
    return []
