"""
Story visibility.

A viewer sees their own stories and the stories of confirmed friends, nothing
else. The friend set is fetched once per aggregation pass and shared by every
event of that pass.
"""
from datetime import datetime, timedelta
from typing import AbstractSet, Iterable, List

from .models import Story, StorySummary, VisibleStory

DEFAULT_STORY_LIFETIME = timedelta(hours=24)


def visible_stories(
    stories: Iterable[Story], viewer_id: str | None, friend_ids: AbstractSet[str]
) -> List[Story]:
    return [s for s in stories if s.author_id == viewer_id or s.author_id in friend_ids]


def is_expired(story: Story, now: datetime, lifetime: timedelta = DEFAULT_STORY_LIFETIME) -> bool:
    expires_at = story.expires_at or story.created_at + lifetime
    return expires_at <= now


def summarize_stories(
    event_id: str,
    stories: Iterable[Story],
    *,
    viewer_id: str | None,
    friend_ids: AbstractSet[str],
    seen_ids: AbstractSet[str] = frozenset(),
    now: datetime,
    lifetime: timedelta = DEFAULT_STORY_LIFETIME,
) -> StorySummary:
    kept = [
        s
        for s in visible_stories(stories, viewer_id, friend_ids)
        if s.event_id == event_id and not is_expired(s, now, lifetime)
    ]
    kept.sort(key=lambda s: s.created_at)
    annotated = []
    for story in kept:
        is_own = story.author_id == viewer_id
        annotated.append(
            VisibleStory(story=story, is_own=is_own, seen=is_own or story.story_id in seen_ids)
        )
    return StorySummary(event_id=event_id, stories=tuple(annotated))


def mark_seen(summary: StorySummary, story_id: str) -> StorySummary:
    """Returns a copy of the summary with one story flagged as seen."""
    updated = tuple(
        vs.model_copy(update={"seen": True}) if vs.story.story_id == story_id else vs
        for vs in summary.stories
    )
    return summary.model_copy(update={"stories": updated})
