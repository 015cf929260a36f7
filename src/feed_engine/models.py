"""
This module defines the core data models of the feed engine using Pydantic.
These models are the values that flow between the gateways, the filters and
the caller. All of them are frozen: the engine never patches a model in place,
it builds a new one.
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Literal, Mapping, Tuple, Union

import pydantic_core
from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    computed_field,
    model_validator,
)


def _assume_utc(value: datetime) -> datetime:
    # Naive timestamps from a gateway are read as UTC so they compare with the aware clock.
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class GeoPoint(_Frozen):
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    name: str | None = None


class EventKind(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"


class Event(_Frozen):
    uid: str
    kind: EventKind = EventKind.PUBLIC
    owner_id: str
    title: str = ""
    start: UtcDatetime
    end: UtcDatetime | None = None
    location: GeoPoint | None = None
    tags: FrozenSet[str] = frozenset()
    price: int = Field(default=0, ge=0)
    is_flash: bool = False

    @model_validator(mode="after")
    def _check_interval(self):
        if self.end is not None and self.end < self.start:
            raise ValueError("Event end cannot be before its start")
        return self


class Organization(_Frozen):
    id: str
    name: str
    description: str | None = None
    created_by: str = ""


class Story(_Frozen):
    story_id: str
    event_id: str
    author_id: str
    media_url: str = ""
    created_at: UtcDatetime
    expires_at: UtcDatetime | None = None


class VisibleStory(_Frozen):
    story: Story
    is_own: bool
    seen: bool


class StorySummary(_Frozen):
    event_id: str
    stories: Tuple[VisibleStory, ...] = ()

    @computed_field
    @property
    def count(self) -> int:
        return len(self.stories)

    @computed_field
    @property
    def unseen_count(self) -> int:
        return sum(1 for s in self.stories if not s.seen)


class PriceRange(_Frozen):
    lo: int = Field(default=0, ge=0)
    hi: int | None = None  # None means no upper bound

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.hi is not None and self.lo > self.hi:
            raise ValueError("Price range lower bound exceeds upper bound")
        return self

    def __contains__(self, price: int) -> bool:
        return self.lo <= price and (self.hi is None or price <= self.hi)


class TabMode(str, Enum):
    FOR_YOU = "for_you"
    EVENTS = "events"
    DISCOVER = "discover"


class FilterCriteria(_Frozen):
    categories: FrozenSet[str] = frozenset()
    price_range: PriceRange = PriceRange()
    location: GeoPoint | None = None
    radius_km: float = Field(default=10.0, gt=0)
    favorites_only: bool = False
    public_only: bool = False
    tab: TabMode = TabMode.EVENTS
    interests: FrozenSet[str] = frozenset()


class FeedSnapshot(_Frozen):
    """
    The single output of an aggregation pass. A new snapshot is built for every
    pass and for every local change (favorite toggled, story seen, ...).
    """
    events: Tuple[Event, ...] = ()
    stories: Dict[str, StorySummary] = Field(default_factory=dict)
    organizations: Tuple[Organization, ...] = ()
    favorite_ids: FrozenSet[str] = frozenset()
    pinned_ids: FrozenSet[str] = frozenset()
    is_loading: bool = False
    last_error: str | None = None
    failed_sources: FrozenSet[str] = frozenset()
    criteria: FilterCriteria = FilterCriteria()
    generated_at: datetime | None = None
    generation: int = 0


# --- Notifications ---

class _NotificationBase(_Frozen):
    id: str
    user_id: str = ""
    timestamp: datetime | None = None
    is_read: bool = False


class FriendRequest(_NotificationBase):
    type: Literal["FRIEND_REQUEST"] = "FRIEND_REQUEST"
    from_user_id: str = ""
    from_user_name: str = ""

    @property
    def message(self) -> str:
        return f"{self.from_user_name} sent you a friend request"


class EventStarting(_NotificationBase):
    type: Literal["EVENT_STARTING"] = "EVENT_STARTING"
    event_id: str = ""
    event_title: str = ""
    event_start: datetime | None = None

    @property
    def message(self) -> str:
        return f'Event "{self.event_title}" is starting soon'


class OrganizationMemberInvitation(_NotificationBase):
    type: Literal["ORGANIZATION_MEMBER_INVITATION"] = "ORGANIZATION_MEMBER_INVITATION"
    organization_id: str = ""
    organization_name: str = ""
    role: str = ""
    invited_by: str = ""

    @property
    def message(self) -> str:
        return f"You were invited to join {self.organization_name} as {self.role}"


Notification = Annotated[
    Union[FriendRequest, EventStarting, OrganizationMemberInvitation],
    Field(discriminator="type"),
]

_notification_adapter: TypeAdapter = TypeAdapter(Notification)


def parse_notification(data: Mapping[str, Any]) -> Notification | None:
    """Decodes a stored notification record, returning None for unknown or malformed ones."""
    try:
        return _notification_adapter.validate_python(dict(data))
    except pydantic_core.ValidationError as e:
        logging.warning(f"Skipping notification record {data.get('id')!r}: {e}")
        return None


class NotificationSnapshot(_Frozen):
    notifications: Tuple[Notification, ...] = ()
    unread_count: int = 0
    latest: Notification | None = None
    loaded: bool = False
