"""
Event predicates and the feed filtering pipeline.

Each predicate is a plain `Event -> bool` callable. The pipeline ANDs them in
order of cost, so a cheap rejection (already over, wrong category) skips the
distance computation entirely.
"""
from datetime import date, datetime, timedelta, tzinfo
from typing import Callable, FrozenSet, Iterable, List

from .models import Event, EventKind, FilterCriteria, PriceRange, TabMode
from .spatial import DEFAULT_SENTINEL_DISTANCE_KM, within_radius
from .temporal import TemporalStatus, classify_event, is_current

EventPredicate = Callable[[Event], bool]


def _normalize(labels: Iterable[str]) -> FrozenSet[str]:
    return frozenset(label.casefold() for label in labels)


def matches_categories(event: Event, categories: FrozenSet[str]) -> bool:
    """OR semantics: any shared tag is enough. An empty selection matches everything."""
    if not categories:
        return True
    return not _normalize(event.tags).isdisjoint(_normalize(categories))


def matches_price(event: Event, price_range: PriceRange) -> bool:
    return event.price in price_range


def matches_tab(event: Event, tab: TabMode, interests: FrozenSet[str]) -> bool:
    if tab is TabMode.EVENTS or not interests:
        return True
    shares_interest = not _normalize(event.tags).isdisjoint(_normalize(interests))
    return shares_interest if tab is TabMode.FOR_YOU else not shares_interest


def feed_predicates(
    criteria: FilterCriteria,
    *,
    now: datetime,
    favorite_ids: FrozenSet[str] = frozenset(),
    sentinel_km: float = DEFAULT_SENTINEL_DISTANCE_KM,
    default_duration: timedelta = timedelta(0),
) -> List[EventPredicate]:
    predicates: List[EventPredicate] = [lambda e: is_current(e, now, default_duration)]
    if criteria.public_only:
        predicates.append(lambda e: e.kind is EventKind.PUBLIC)
    if criteria.tab is not TabMode.EVENTS:
        predicates.append(lambda e: matches_tab(e, criteria.tab, criteria.interests))
    if criteria.categories:
        predicates.append(lambda e: matches_categories(e, criteria.categories))
    predicates.append(lambda e: matches_price(e, criteria.price_range))
    if criteria.favorites_only:
        predicates.append(lambda e: e.uid in favorite_ids)
    if criteria.location is not None:
        predicates.append(
            lambda e: within_radius(e, criteria.location, criteria.radius_km, sentinel_km)
        )
    return predicates


def apply_feed_filters(
    events: Iterable[Event],
    criteria: FilterCriteria,
    *,
    now: datetime,
    favorite_ids: FrozenSet[str] = frozenset(),
    sentinel_km: float = DEFAULT_SENTINEL_DISTANCE_KM,
    default_duration: timedelta = timedelta(0),
) -> List[Event]:
    """Returns the events passing every active predicate, soonest first."""
    predicates = feed_predicates(
        criteria,
        now=now,
        favorite_ids=favorite_ids,
        sentinel_km=sentinel_km,
        default_duration=default_duration,
    )
    survivors = [e for e in events if all(p(e) for p in predicates)]
    return sorted(survivors, key=lambda e: e.start)


def filter_history(
    events: Iterable[Event],
    *,
    now: datetime,
    status: TemporalStatus = TemporalStatus.PAST,
    query: str = "",
    default_duration: timedelta = timedelta(hours=3),
) -> List[Event]:
    """
    Filters a viewer's own events for the history view.

    `status=PAST` keeps finished events; any other status keeps the events that
    are not finished yet (live and upcoming together). Results are newest first.
    """
    needle = query.strip().casefold()
    selected = []
    for event in events:
        is_past = classify_event(event, now, default_duration) is TemporalStatus.PAST
        if is_past != (status is TemporalStatus.PAST):
            continue
        if needle and needle not in event.title.casefold():
            continue
        selected.append(event)
    return sorted(selected, key=lambda e: e.start, reverse=True)


def events_on_date(events: Iterable[Event], day: date, tz: tzinfo | None = None) -> List[Event]:
    """Events starting on the given calendar day, evaluated in `tz` (the event's own zone if None)."""
    return [e for e in events if (e.start.astimezone(tz) if tz else e.start).date() == day]
