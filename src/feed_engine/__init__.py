# feed_engine package

from .aggregator import FeedAggregator
from .config import EngineConfig
from .errors import (
    CapacityExceededError,
    DomainError,
    ErrorCode,
    ReconciliationRequiredError,
    SourceUnavailableError,
    StaleRefreshError,
)
from .models import (
    Event,
    EventKind,
    FeedSnapshot,
    FilterCriteria,
    GeoPoint,
    Notification,
    NotificationSnapshot,
    Organization,
    PriceRange,
    Story,
    StorySummary,
    TabMode,
)
from .pinning import ToggleOutcome, ToggleResult
from .protocols import Gateways
from .temporal import TemporalStatus
from .adaptors import MemoryBackend, sqlite_backend

__all__ = [
    "FeedAggregator",
    "EngineConfig",
    "CapacityExceededError",
    "DomainError",
    "ErrorCode",
    "ReconciliationRequiredError",
    "SourceUnavailableError",
    "StaleRefreshError",
    "Event",
    "EventKind",
    "FeedSnapshot",
    "FilterCriteria",
    "GeoPoint",
    "Notification",
    "NotificationSnapshot",
    "Organization",
    "PriceRange",
    "Story",
    "StorySummary",
    "TabMode",
    "ToggleOutcome",
    "ToggleResult",
    "Gateways",
    "TemporalStatus",
    "MemoryBackend",
    "sqlite_backend",
]
