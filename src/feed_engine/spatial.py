"""Great-circle distance and radius filtering."""
from math import asin, cos, radians, sin, sqrt

from .models import Event, GeoPoint

EARTH_RADIUS_KM = 6371.0
DEFAULT_SENTINEL_DISTANCE_KM = 50.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    d_lat = radians(b.latitude - a.latitude)
    d_lon = radians(b.longitude - a.longitude)
    h = sin(d_lat / 2) ** 2 + cos(radians(a.latitude)) * cos(radians(b.latitude)) * sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * asin(min(1.0, sqrt(h)))


def event_distance_km(
    event: Event, reference: GeoPoint, sentinel_km: float = DEFAULT_SENTINEL_DISTANCE_KM
) -> float:
    # Location-less events sit at a fixed distance so the radius test stays total.
    if event.location is None:
        return sentinel_km
    return haversine_km(reference, event.location)


def within_radius(
    event: Event,
    reference: GeoPoint | None,
    radius_km: float,
    sentinel_km: float = DEFAULT_SENTINEL_DISTANCE_KM,
) -> bool:
    if reference is None:
        return True
    return event_distance_km(event, reference, sentinel_km) <= radius_km
