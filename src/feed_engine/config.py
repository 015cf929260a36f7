"""
Engine configuration.

The defaults reproduce the product behavior: three pinned events at most,
stories fetched for the ten most imminent events, a 3 hour assumed duration for
events without an end in the history view, and a sentinel distance for
location-less events that sits between the smallest and largest radius offered
by the filter bar.
"""
from datetime import timedelta
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .spatial import DEFAULT_SENTINEL_DISTANCE_KM


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_pinned: int = Field(default=3, ge=1)
    story_event_limit: int = Field(default=10, ge=0)
    sentinel_distance_km: float = DEFAULT_SENTINEL_DISTANCE_KM
    min_radius_km: float = 10.0
    max_radius_km: float = 100.0
    feed_default_duration: timedelta = timedelta(0)
    history_default_duration: timedelta = timedelta(hours=3)
    story_lifetime: timedelta = timedelta(hours=24)
    polling_interval: float = Field(default=0.2, gt=0)

    @model_validator(mode="after")
    def _check_sentinel(self):
        if not self.min_radius_km < self.sentinel_distance_km < self.max_radius_km:
            raise ValueError(
                f"sentinel_distance_km must lie strictly between {self.min_radius_km} "
                f"and {self.max_radius_km}"
            )
        return self

    @classmethod
    def from_dict(cls, config: Dict[str, Any] | None) -> "EngineConfig":
        """Builds a config from a plain dict, ignoring unknown keys."""
        config = config or {}
        known = {k: v for k, v in config.items() if k in cls.model_fields}
        return cls(**known)
