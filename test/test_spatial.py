import pytest

from datetime import datetime, timezone

from feed_engine.models import Event, GeoPoint
from feed_engine.spatial import event_distance_km, haversine_km, within_radius

PARIS = GeoPoint(latitude=48.8566, longitude=2.3522)
LONDON = GeoPoint(latitude=51.5074, longitude=-0.1278)
START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_haversine_known_distance():
    assert haversine_km(PARIS, LONDON) == pytest.approx(343.5, abs=1.0)


def test_haversine_zero_for_same_point():
    assert haversine_km(PARIS, PARIS) == pytest.approx(0.0)


def test_locationless_event_uses_sentinel():
    event = Event(uid="x", owner_id="u", start=START)
    assert event_distance_km(event, PARIS) == 50.0
    assert within_radius(event, PARIS, 100)
    assert not within_radius(event, PARIS, 10)


def test_no_reference_passes_everything():
    event = Event(uid="x", owner_id="u", start=START, location=LONDON)
    assert within_radius(event, None, 1)


def test_radius_is_inclusive():
    event = Event(uid="x", owner_id="u", start=START, location=LONDON)
    distance = event_distance_km(event, PARIS)
    assert within_radius(event, PARIS, distance)
    assert not within_radius(event, PARIS, distance - 1)
