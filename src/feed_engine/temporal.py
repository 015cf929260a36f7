"""
Temporal classification of events relative to a reference instant.

One classifier serves both the feed and the history view. They differ only in
the duration assumed for events that have no end: the feed assumes none (the
event is over as soon as it has started), the history view assumes a few hours.
"""
from datetime import datetime, timedelta
from enum import Enum

from .models import Event


class TemporalStatus(str, Enum):
    PAST = "past"
    LIVE = "live"
    UPCOMING = "upcoming"


def classify(
    start: datetime,
    end: datetime | None,
    now: datetime,
    default_duration: timedelta = timedelta(0),
) -> TemporalStatus:
    if start > now:
        return TemporalStatus.UPCOMING
    if end is None:
        if default_duration <= timedelta(0):
            return TemporalStatus.PAST
        end = start + default_duration
    return TemporalStatus.LIVE if end >= now else TemporalStatus.PAST


def classify_event(
    event: Event, now: datetime, default_duration: timedelta = timedelta(0)
) -> TemporalStatus:
    return classify(event.start, event.end, now, default_duration)


def is_current(event: Event, now: datetime, default_duration: timedelta = timedelta(0)) -> bool:
    """True for events the feed should show (live or upcoming)."""
    return classify_event(event, now, default_duration) is not TemporalStatus.PAST
