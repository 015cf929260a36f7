import argparse
import asyncio
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone

from feed_engine import (
    EngineConfig,
    Event,
    FeedAggregator,
    FilterCriteria,
    GeoPoint,
    Gateways,
    sqlite_backend,
)
from feed_engine.models import FriendRequest, Story

HOME = GeoPoint(latitude=48.8566, longitude=2.3522, name="Paris")


async def seed(backend, now: datetime):
    # A small neighbourhood: some events close by, one far away, one without a location.
    await backend.add_event(
        Event(uid="picnic", owner_id="ann", title="Picnic", start=now + timedelta(hours=2),
              location=GeoPoint(latitude=48.85, longitude=2.34), tags=frozenset({"outdoor", "food"}))
    )
    await backend.add_event(
        Event(uid="market", owner_id="bob", title="Night market", start=now - timedelta(hours=1),
              end=now + timedelta(hours=3), location=GeoPoint(latitude=48.87, longitude=2.37),
              tags=frozenset({"food"}), price=5)
    )
    await backend.add_event(
        Event(uid="london", owner_id="bob", title="Gig in London", start=now + timedelta(days=1),
              location=GeoPoint(latitude=51.5074, longitude=-0.1278), tags=frozenset({"music"}), price=30)
    )
    await backend.add_event(
        Event(uid="online", owner_id="ann", title="Online quiz", start=now + timedelta(hours=5))
    )
    await backend.add_event(
        Event(uid="brunch", owner_id="me", title="Jazz brunch", start=now - timedelta(hours=20))
    )
    await backend.befriend("me", "ann")
    await backend.add_story(
        Story(story_id="s1", event_id="picnic", author_id="ann", created_at=now - timedelta(minutes=20))
    )
    await backend.add_story(
        Story(story_id="s2", event_id="picnic", author_id="stranger", created_at=now - timedelta(minutes=5))
    )
    await backend.push_notification(
        FriendRequest(id="n1", user_id="me", timestamp=now, from_user_id="bob", from_user_name="Bob")
    )


def print_snapshot(title: str, snapshot):
    print(f"\n--- {title} ---")
    for event in snapshot.events:
        summary = snapshot.stories.get(event.uid)
        stories = f", {summary.count} stories ({summary.unseen_count} unseen)" if summary and summary.count else ""
        pinned = " [pinned]" if event.uid in snapshot.pinned_ids else ""
        print(f"{event.start:%a %H:%M}  {event.title}{pinned}{stories}")
    if snapshot.failed_sources:
        print(f"Degraded sources: {', '.join(sorted(snapshot.failed_sources))}")


async def run(db_path: str, radius_km: float):
    now = datetime.now(timezone.utc)
    config = EngineConfig.from_dict({"polling_interval": 0.1})
    async with sqlite_backend(db_path, config=config) as backend:
        await seed(backend, now)
        async with FeedAggregator(Gateways.from_backend(backend), "me", config=config) as feed:
            print_snapshot("Everything", await feed.refresh())
            print_snapshot(
                f"Within {radius_km:g} km of {HOME.name}",
                await feed.refresh(FilterCriteria(location=HOME, radius_km=radius_km)),
            )
            for event_id in ("picnic", "market", "online", "london"):
                result = await feed.toggle_pinned(event_id)
                print(f"Pin {event_id}: {result.outcome.value}{f' ({result.message})' if result.message else ''}")
            print_snapshot("After pinning", feed.snapshot)

            history = await feed.load_history()
            print(f"\nHistory: {', '.join(e.title for e in history) or 'nothing yet'}")
            notifications = feed.notifications.snapshot
            print(f"Notifications: {notifications.unread_count} unread")
            for notification in notifications.notifications:
                print(f"  {notification.message}")


async def main():
    parser = argparse.ArgumentParser(description="Builds a feed from a seeded SQLite database.")
    parser.add_argument("--db-path", default=None, help="SQLite file to use (a temporary one by default)")
    parser.add_argument("--radius-km", type=float, default=10.0)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)

    if args.db_path:
        await run(args.db_path, args.radius_km)
        return
    with tempfile.TemporaryDirectory() as tmpdir:
        await run(os.path.join(tmpdir, "feed.db"), args.radius_km)


if __name__ == "__main__":
    asyncio.run(main())
