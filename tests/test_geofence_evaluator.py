import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from geofence_evaluator import GeofenceEvaluator, haversine_m  # noqa: E402
from ingest_models import AlertKind, GeofenceKind, LocationFix, RestrictedZone, RouteStop  # noqa: E402


BASE = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

# ~1.11 m per 0.00001 deg of latitude
INSIDE = 0.0004  # ~44 m
BAND = 0.00048  # ~53 m, between radius and radius * 1.1
OUTSIDE = 0.0006  # ~67 m


def _stop(stop_id="S1", sequence=1, lat=0.0, lon=0.0, radius_m=50.0):
    return RouteStop(stop_id=stop_id, route_id="R1", sequence=sequence, lat=lat, lon=lon, radius_m=radius_m)


def _fix(lat, lon=0.0, seconds=0):
    return LocationFix(bus_id="B1", lat=lat, lon=lon, timestamp=BASE + timedelta(seconds=seconds))


def test_haversine_matches_known_distance():
    # One degree of latitude on a 6371 km sphere
    assert haversine_m(0.0, 0.0, 1.0, 0.0) == pytest.approx(111194.93, rel=1e-6)
    assert haversine_m(12.97, 77.59, 12.97, 77.59) == 0.0


def test_enter_and_exit_only_on_state_change():
    evaluator = GeofenceEvaluator()
    stops = [_stop()]

    assert evaluator.evaluate("T1", "B1", _fix(OUTSIDE), stops) == []
    entered = evaluator.evaluate("T1", "B1", _fix(INSIDE, seconds=10), stops)
    assert [e.kind for e in entered] == [GeofenceKind.ENTER]
    assert entered[0].stop_id == "S1"
    assert entered[0].distance_m == pytest.approx(44.48, abs=0.05)

    assert evaluator.evaluate("T1", "B1", _fix(INSIDE / 2, seconds=20), stops) == []
    exited = evaluator.evaluate("T1", "B1", _fix(OUTSIDE, seconds=30), stops)
    assert [e.kind for e in exited] == [GeofenceKind.EXIT]
    assert evaluator.evaluate("T1", "B1", _fix(OUTSIDE, seconds=40), stops) == []


def test_hysteresis_band_does_not_flap():
    evaluator = GeofenceEvaluator(exit_hysteresis=1.1)
    stops = [_stop()]
    evaluator.evaluate("T1", "B1", _fix(INSIDE), stops)

    for i in range(10):
        lat = BAND if i % 2 == 0 else INSIDE
        assert evaluator.evaluate("T1", "B1", _fix(lat, seconds=i + 1), stops) == []
    assert evaluator.trip_state["T1"].stops["S1"].inside is True


def test_band_does_not_count_as_entry_from_outside():
    evaluator = GeofenceEvaluator()
    stops = [_stop()]
    assert evaluator.evaluate("T1", "B1", _fix(BAND), stops) == []
    assert evaluator.trip_state["T1"].stops["S1"].inside is False


def test_enter_exit_counts_stay_balanced_for_random_walk():
    rng = random.Random(7)
    evaluator = GeofenceEvaluator()
    stops = [_stop("S1", 1, 0.0, 0.0), _stop("S2", 2, 0.0, 0.0008, radius_m=40.0)]
    enters = exits = 0
    for i in range(500):
        lat = rng.uniform(-0.001, 0.001)
        lon = rng.uniform(-0.0005, 0.0013)
        for event in evaluator.evaluate("T1", "B1", _fix(lat, lon, seconds=i), stops):
            if event.kind == GeofenceKind.ENTER:
                enters += 1
            else:
                exits += 1
        inside_now = sum(1 for fence in evaluator.trip_state["T1"].stops.values() if fence.inside)
        assert enters - exits == inside_now
        assert 0 <= enters - exits <= len(stops)
    state = evaluator.trip_state["T1"]
    assert state.enter_count == enters
    assert state.exit_count == exits


def test_state_is_per_trip_and_discarded():
    evaluator = GeofenceEvaluator()
    stops = [_stop()]
    evaluator.evaluate("T1", "B1", _fix(INSIDE), stops)
    assert evaluator.current_stop("T1") == "S1"
    # A new trip starts Outside everywhere
    entered = evaluator.evaluate("T2", "B1", _fix(INSIDE, seconds=5), stops)
    assert [e.kind for e in entered] == [GeofenceKind.ENTER]

    evaluator.discard_trip("T1")
    assert "T1" not in evaluator.trip_state
    assert evaluator.current_stop("T1") is None
    assert evaluator.get_trip_state("T1")["tracked"] is False


def test_skipped_stop_reported_once():
    evaluator = GeofenceEvaluator()
    stops = [_stop("S1", 1, 0.0, 0.0), _stop("S2", 2, 0.01, 0.0), _stop("S3", 3, 0.02, 0.0)]

    events = evaluator.evaluate("T1", "B1", _fix(0.0), stops)
    assert evaluator.skipped_stops("T1", "B1", events, stops) == []

    # Drive straight to S3 without touching S2
    evaluator.evaluate("T1", "B1", _fix(0.015, seconds=60), stops)
    events = evaluator.evaluate("T1", "B1", _fix(0.02, seconds=120), stops)
    alerts = evaluator.skipped_stops("T1", "B1", events, stops)
    assert [(a.kind, a.stop_id) for a in alerts] == [(AlertKind.GEOFENCE_BREACH, "S2")]
    assert alerts[0].data["next_stop_id"] == "S3"

    evaluator.evaluate("T1", "B1", _fix(0.015, seconds=180), stops)
    events = evaluator.evaluate("T1", "B1", _fix(0.02, seconds=240), stops)
    assert evaluator.skipped_stops("T1", "B1", events, stops) == []


def test_restricted_zone_alerts_once_per_entry():
    evaluator = GeofenceEvaluator()
    zones = [RestrictedZone(zone_id="Z1", lat=0.0, lon=0.0, radius_m=100.0, name="Highway")]
    assert evaluator.check_zones("T1", "B1", _fix(0.002), zones) == []
    alerts = evaluator.check_zones("T1", "B1", _fix(0.0, seconds=10), zones)
    assert len(alerts) == 1
    assert alerts[0].severity == "critical"
    assert alerts[0].data["zone_id"] == "Z1"
    assert evaluator.check_zones("T1", "B1", _fix(0.0001, seconds=20), zones) == []
    evaluator.check_zones("T1", "B1", _fix(0.002, seconds=30), zones)
    assert len(evaluator.check_zones("T1", "B1", _fix(0.0, seconds=40), zones)) == 1


def test_hysteresis_below_one_rejected():
    with pytest.raises(ValueError):
        GeofenceEvaluator(exit_hysteresis=0.9)


def test_next_stop_is_first_not_entered():
    evaluator = GeofenceEvaluator()
    stops = [_stop("S2", sequence=2, lat=0.01), _stop("S1", sequence=1)]
    assert evaluator.next_stop("T1", stops).stop_id == "S1"

    evaluator.evaluate("T1", "B1", _fix(INSIDE), stops)
    evaluator.evaluate("T1", "B1", _fix(OUTSIDE, seconds=30), stops)
    assert evaluator.next_stop("T1", stops).stop_id == "S2"

    evaluator.evaluate("T1", "B1", _fix(0.01, seconds=300), stops)
    assert evaluator.next_stop("T1", stops) is None
