import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from alert_dispatcher import LoggingAlertDispatcher  # noqa: E402
from dead_letters import DeadLetterSink  # noqa: E402
from ingest_config import IngestConfig  # noqa: E402
from ingest_engine import IngestEngine  # noqa: E402
from ingest_models import PersistenceUnavailable  # noqa: E402
from ingest_storage import FileIngestStorage  # noqa: E402
from push_subscriptions import PushSubscriptionStore  # noqa: E402


BASE = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

ROSTER = {
    "routes": {
        "R1": {
            "stops": [
                {"stop_id": "STOP1", "sequence": 1, "lat": 0.0, "lon": 0.0, "student_ids": ["S1", "S2"]},
                {"stop_id": "STOP2", "sequence": 2, "lat": 0.01, "lon": 0.0},
            ]
        }
    },
    "tags": {"TAG1": "S1", "TAG2": "S2"},
    "guardians": {"S1": ["P1"]},
    "trips": [
        {
            "trip_id": "T1",
            "route_id": "R1",
            "bus_id": "B1",
            "scheduled_start": "2024-05-01T08:00:00Z",
            "scheduled_end": "2024-05-01T09:00:00Z",
        }
    ],
}


class Clock:
    def __init__(self, now):
        self.now = now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStorage(FileIngestStorage):
    fail_fixes = False

    def save_location_fix(self, fix, trip_id):
        if self.fail_fixes:
            raise PersistenceUnavailable("write_failed", operation="save_location_fix")
        super().save_location_fix(fix, trip_id)


@pytest.fixture()
def service(tmp_path, monkeypatch):
    storage = FlakyStorage(tmp_path)
    storage.save_roster(ROSTER)
    clock = Clock(BASE)
    sink = DeadLetterSink(tmp_path / "dead_letters.jsonl")
    engine = IngestEngine(
        storage,
        dispatcher=LoggingAlertDispatcher(),
        config=IngestConfig(reorder_hold_s=0, persistence_backoff_s=0, persistence_attempts=1),
        dead_letters=sink,
        clock=lambda: clock.now,
    )
    monkeypatch.setattr(app_module, "engine", engine, raising=False)
    monkeypatch.setattr(app_module, "dead_letters", sink, raising=False)
    monkeypatch.setattr(
        app_module, "push_subscription_store", PushSubscriptionStore(tmp_path / "push.json"), raising=False
    )
    monkeypatch.setattr(app_module, "VAPID_PUBLIC_KEY", "", raising=False)
    monkeypatch.setattr(app_module, "VAPID_PRIVATE_KEY", "", raising=False)
    with TestClient(app_module.app) as client:
        yield client, clock, storage


def _location(at, lat, lon=0.0, **extra):
    return {"bus_id": "B1", "lat": lat, "lon": lon, "timestamp": at.isoformat(), **extra}


def test_location_and_scans_drive_attendance(service):
    client, clock, _ = service

    response = client.post("/v1/ingest/location", json=_location(clock.now, 0.0))
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "accepted"
    assert body["trip_id"] == "T1"
    assert [e["kind"] for e in body["geofence_events"]] == ["enter"]

    location = client.get("/v1/buses/B1/location").json()
    assert location["trip_id"] == "T1"
    assert location["current_stop_id"] == "STOP1"

    at = clock.advance(seconds=30)
    scan = {"bus_id": "B1", "rfidTag": "TAG1", "action": "pickup", "timestamp": at.isoformat()}
    response = client.post("/v1/ingest/scan", json=scan)
    assert response.status_code == 200
    assert response.json()["attendance"]["status"] == "picked_up"

    clock.advance(seconds=2)
    response = client.post("/v1/ingest/scan", json=scan)
    assert response.status_code == 200
    assert response.json()["status"] == "duplicate"

    response = client.post(
        "/v1/ingest/scan",
        json={"bus_id": "B1", "rfidTag": "TAG2", "action": "drop", "timestamp": clock.now.isoformat()},
    )
    assert response.status_code == 422
    assert response.json()["error"]["reason"] == "drop_before_pickup"


def test_ingest_errors_map_to_status_codes(service):
    client, clock, _ = service

    stale = client.post("/v1/ingest/location", json=_location(clock.now - timedelta(minutes=10), 0.0))
    assert stale.status_code == 400
    assert stale.json()["error"]["reason"] == "stale"

    unknown_bus = client.post("/v1/ingest/location", json={**_location(clock.now, 0.0), "bus_id": "B9"})
    assert unknown_bus.status_code == 409

    client.post("/v1/ingest/location", json=_location(clock.now, 0.0))
    unknown_tag = client.post(
        "/v1/ingest/scan",
        json={"bus_id": "B1", "rfidTag": "NOPE", "action": "pickup", "timestamp": clock.now.isoformat()},
    )
    assert unknown_tag.status_code == 404

    assert client.post("/v1/ingest/location", content=b"not json").status_code == 400
    assert client.post("/v1/ingest/location", json=[1, 2]).status_code == 400


def test_batch_reports_counts(service):
    client, clock, _ = service
    events = [
        {"type": "location", **_location(clock.now + timedelta(seconds=s), 0.002)}
        for s in (0, 10)
    ] + [{"type": "location", "bus_id": "B1"}]
    response = client.post("/v1/ingest/batch", json={"events": events})
    assert response.status_code == 200
    assert response.json()["counts"] == {"accepted": 2, "rejected": 1}

    oversized = [{"type": "location"}] * (app_module.MAX_BATCH_EVENTS + 1)
    assert client.post("/v1/ingest/batch", json=oversized).status_code == 413


def test_trip_lifecycle_endpoints(service):
    client, clock, storage = service

    response = client.post("/v1/trips/T1/start", json={"at": clock.now.isoformat()})
    assert response.status_code == 200
    assert response.json()["trip"]["status"] == "in_progress"

    manual = client.post(
        "/v1/attendance/manual", json={"trip_id": "T1", "student_id": "S1", "action": "Pickup"}
    )
    assert manual.status_code == 200
    assert manual.json()["attendance"]["method"] == "manual"

    response = client.post("/v1/trips/T1/end", json={"at": (clock.now + timedelta(minutes=50)).isoformat()})
    assert response.status_code == 200
    assert response.json()["trip"]["status"] == "completed"
    assert storage.get_trip("T1").status.value == "completed"

    attendance = client.get("/v1/trips/T1/attendance").json()
    assert attendance["counts"] == {"picked_up": 1, "absent": 1}

    assert client.post("/v1/trips/T404/end").status_code == 404
    assert client.post("/v1/trips/T1/start").status_code == 422
    assert client.post("/v1/attendance/manual", json={"trip_id": "T1"}).status_code == 400


def test_cancel_endpoint_and_geofence_view(service):
    client, clock, _ = service
    client.post("/v1/ingest/location", json=_location(clock.now, 0.0))
    assert client.get("/v1/trips/T1/geofence").json()["tracked"] is True

    response = client.post("/v1/trips/T1/cancel")
    assert response.json()["trip"]["status"] == "cancelled"
    assert client.get("/v1/trips/T1/geofence").json()["tracked"] is False
    assert client.get("/v1/trips/T1/attendance").json()["counts"] == {"not_recorded": 2}


def test_emergency_endpoint(service):
    client, clock, _ = service
    client.post("/v1/ingest/location", json=_location(clock.now, 0.001))
    response = client.post("/v1/alerts/emergency", json={"bus_id": "B1", "message": "Flat tyre"})
    assert response.status_code == 200
    alert = response.json()["alert"]
    assert alert["kind"] == "emergency"
    assert alert["severity"] == "critical"
    assert alert["trip_id"] == "T1"
    assert alert["data"]["lat"] == 0.001

    assert client.post("/v1/alerts/emergency", json={"message": "?"}).status_code == 400
    assert client.post("/v1/alerts/emergency", json={"bus_id": "B1", "lat": "north"}).status_code == 400


def test_dead_letter_then_replay(service):
    client, clock, storage = service
    storage.fail_fixes = True
    response = client.post("/v1/ingest/location", json=_location(clock.now, 0.0))
    assert response.status_code == 202
    assert response.json()["status"] == "dead_lettered"
    assert client.get("/v1/diagnostics").json()["dead_letters"] == 1

    storage.fail_fixes = False
    assert client.post("/v1/deadletters/replay").json() == {"replayed": 1, "failed": 0}
    assert client.get("/v1/buses/B1/location").status_code == 200


def test_speed_and_missing_location(service):
    client, clock, _ = service
    assert client.get("/v1/buses/B1/location").status_code == 404

    client.post("/v1/ingest/location", json=_location(clock.now, 0.0, speed=30))
    clock.advance(minutes=1)
    client.post("/v1/ingest/location", json=_location(clock.now, 0.005, speed=62))
    params = {"start": (BASE - timedelta(hours=1)).isoformat(), "end": (BASE + timedelta(hours=1)).isoformat()}
    report = client.get("/v1/buses/B1/speed", params=params).json()
    assert report["fix_count"] == 2
    assert report["max_kmh"] == 62.0
    assert report["violations"] == 1

    bad = client.get("/v1/buses/B1/speed", params={"start": params["end"], "end": params["start"]})
    assert bad.status_code == 400


def test_push_subscription_endpoints(service, monkeypatch):
    client, _, _ = service
    assert client.get("/v1/push/vapid-public-key").status_code == 503

    monkeypatch.setattr(app_module, "VAPID_PUBLIC_KEY", "public", raising=False)
    monkeypatch.setattr(app_module, "VAPID_PRIVATE_KEY", "private", raising=False)
    assert client.get("/v1/push/vapid-public-key").json() == {"publicKey": "public"}

    subscription = {
        "endpoint": "https://push.example.com/abc",
        "keys": {"p256dh": "key", "auth": "secret"},
        "user_id": "P1",
        "role": "parent",
    }
    response = client.post("/v1/push/subscribe", json=subscription)
    assert response.json() == {"status": "subscribed", "new": True}
    assert client.post("/v1/push/subscribe", json={**subscription, "role": "pilot"}).status_code == 400
    assert client.post("/v1/push/subscribe", json={"endpoint": "x", "keys": {}}).status_code == 400
    assert client.get("/v1/push/status").json() == {
        "configured": True,
        "subscription_count": 1,
        "by_role": {"parent": 1},
    }

    response = client.post("/v1/push/unsubscribe", json={"endpoint": subscription["endpoint"]})
    assert response.json() == {"status": "unsubscribed", "found": True}
    assert client.get("/v1/push/status").json()["subscription_count"] == 0


def test_history_eta_and_active_trip_endpoints(service):
    client, clock, _ = service
    assert client.get("/v1/buses/B1/trip").status_code == 404
    assert client.get("/v1/buses/B1/eta").status_code == 404

    client.post("/v1/ingest/location", json=_location(clock.now, 0.0, speed=20))
    at = clock.advance(minutes=1)
    client.post("/v1/ingest/location", json=_location(at, 0.002, speed=40))

    assert client.get("/v1/buses/B1/trip").json()["trip"]["trip_id"] == "T1"

    eta = client.get("/v1/buses/B1/eta").json()
    assert eta["next_stop_id"] == "STOP2"
    assert eta["distance_m"] == 890
    assert eta["estimated_arrival"].endswith("Z")

    params = {"start": (BASE - timedelta(hours=1)).isoformat(), "end": (BASE + timedelta(hours=1)).isoformat()}
    history = client.get("/v1/buses/B1/locations", params=params).json()
    assert history["count"] == 2
    assert [p["lat"] for p in history["locations"]] == [0.0, 0.002]
    latest = client.get("/v1/buses/B1/locations", params={**params, "limit": 1}).json()
    assert [p["lat"] for p in latest["locations"]] == [0.002]

    events = client.get("/v1/trips/T1/geofence/events").json()["events"]
    assert [(e["kind"], e["stop_id"]) for e in events] == [("enter", "STOP1"), ("exit", "STOP1")]
    assert client.get("/v1/trips/T404/geofence/events").status_code == 404
