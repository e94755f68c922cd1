"""
School Bus Ingestion Service: HTTP surface (FastAPI)

Purpose
=======
Accept GPS fixes and RFID/NFC tag scans from school buses, attach them to
the bus's trip, detect stop arrivals/departures and attendance changes, and
hand alerts (breaches, missed pickups, speeding, SOS, parent notices) to the
configured dispatchers.

Run
---
$ uvicorn app:app --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install fastapi uvicorn httpx pywebpush
- INGEST_DATA_DIR           data directory (roster, trips, attendance, logs)
- INGEST_*                  pipeline tunables, see ingest_config.py
- VAPID_PUBLIC_KEY / VAPID_PRIVATE_KEY / VAPID_SUBJECT   Web Push delivery
- ALERT_WEBHOOK_URL         optional JSON webhook for every alert
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timedelta
from pathlib import Path
import os

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from alert_dispatcher import (
    AlertDispatcher,
    FanoutAlertDispatcher,
    LoggingAlertDispatcher,
    WebhookAlertDispatcher,
    WebPushAlertDispatcher,
)
from dead_letters import DeadLetterSink
from ingest_config import IngestConfig
from ingest_engine import IngestEngine, IngestResult
from ingest_models import (
    IngestError,
    InvalidEvent,
    InvalidTransition,
    NoActiveTrip,
    NotFound,
    PersistenceUnavailable,
    utcnow,
)
from ingest_storage import FileIngestStorage
from ingress_normalizer import parse_timestamp
from push_subscriptions import KNOWN_ROLES, PushSubscriptionStore

# ---------------------------
# Config
# ---------------------------
DATA_DIR = Path(os.getenv("INGEST_DATA_DIR", "/data"))
DEAD_LETTER_PATH = DATA_DIR / "dead_letters.jsonl"
PUSH_SUBSCRIPTIONS_PATH = DATA_DIR / "push_subscriptions.json"

# Push notifications (Web Push)
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:transport@example.org")

ALERT_WEBHOOK_URL = os.getenv("ALERT_WEBHOOK_URL", "").strip()

MAX_BATCH_EVENTS = int(os.getenv("INGEST_MAX_BATCH_EVENTS", "500"))

ERROR_STATUS = {
    InvalidEvent: 400,
    NotFound: 404,
    NoActiveTrip: 409,
    InvalidTransition: 422,
    PersistenceUnavailable: 503,
}

config = IngestConfig.from_env()
storage = FileIngestStorage(DATA_DIR)
dead_letters = DeadLetterSink(DEAD_LETTER_PATH)
push_subscription_store = PushSubscriptionStore(PUSH_SUBSCRIPTIONS_PATH)


def build_dispatcher() -> AlertDispatcher:
    dispatchers: List[AlertDispatcher] = [LoggingAlertDispatcher()]
    if VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY:
        dispatchers.append(
            WebPushAlertDispatcher(push_subscription_store, VAPID_PRIVATE_KEY, VAPID_SUBJECT)
        )
    else:
        print("[push] VAPID keys not configured, Web Push alerts disabled")
    if ALERT_WEBHOOK_URL:
        dispatchers.append(WebhookAlertDispatcher(ALERT_WEBHOOK_URL, timeout_s=config.alert_timeout_s))
    return FanoutAlertDispatcher(dispatchers)


engine = IngestEngine(storage, build_dispatcher(), config=config, dead_letters=dead_letters)


def status_for(exc: IngestError) -> int:
    for exc_type, status in ERROR_STATUS.items():
        if isinstance(exc, exc_type):
            return status
    return 500


def _result_status(result: IngestResult) -> int:
    if result.status == "dead_lettered":
        return 202
    if result.error is not None:
        return status_for(result.error)
    return 200


def _parse_when(value: Any, label: str) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except InvalidEvent:
        raise HTTPException(status_code=400, detail=f"invalid {label}; use ISO-8601 or epoch")


async def _json_object(request: Request) -> Dict[str, Any]:
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid JSON body")
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="expected a JSON object")
    return data


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="School Bus Ingestion Service")


@app.exception_handler(IngestError)
async def ingest_error_handler(request: Request, exc: IngestError):
    return JSONResponse({"detail": exc.to_dict()}, status_code=status_for(exc))


@app.on_event("startup")
async def announce_config() -> None:
    print(
        f"[engine] starting: data_dir={DATA_DIR} staleness={config.staleness_s:.0f}s "
        f"grace={config.grace_period_s:.0f}s idle={config.idle_timeout_s:.0f}s "
        f"hysteresis={config.exit_hysteresis}"
    )
    pruned = dead_letters.prune_old_entries()
    if pruned:
        print(f"[deadletter] pruned {pruned} expired entries")


@app.on_event("shutdown")
async def shutdown_engine() -> None:
    await engine.close()


# ---------------------------
# REST: Ingestion
# ---------------------------
async def _ingest_one(data: Dict[str, Any], event_type: Optional[str] = None) -> JSONResponse:
    if event_type is not None:
        data.setdefault("type", event_type)
    result = await engine.submit(data)
    return JSONResponse(result.to_dict(), status_code=_result_status(result))


@app.post("/v1/ingest/location")
async def ingest_location(request: Request):
    data = await _json_object(request)
    return await _ingest_one(data, "location")


@app.post("/v1/ingest/scan")
async def ingest_scan(request: Request):
    data = await _json_object(request)
    return await _ingest_one(data, "scan")


@app.post("/v1/ingest/batch")
async def ingest_batch(request: Request):
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="invalid JSON body")
    events = data.get("events") if isinstance(data, dict) else data
    if not isinstance(events, list):
        raise HTTPException(status_code=400, detail="expected a list of events")
    if len(events) > MAX_BATCH_EVENTS:
        raise HTTPException(status_code=413, detail=f"batch limited to {MAX_BATCH_EVENTS} events")
    results = await engine.submit_many(events)
    counts: Dict[str, int] = {}
    for result in results:
        counts[result.status] = counts.get(result.status, 0) + 1
    return {"counts": counts, "results": [r.to_dict() for r in results]}


# ---------------------------
# REST: Trips
# ---------------------------
async def _optional_at(request: Request) -> Optional[datetime]:
    body = await request.body()
    if not body:
        return None
    data = await _json_object(request)
    return _parse_when(data.get("at"), "at")


@app.post("/v1/trips/{trip_id}/start")
async def start_trip(trip_id: str, request: Request):
    trip = await engine.start_trip(trip_id, at=await _optional_at(request))
    return {"trip": trip.to_dict()}


@app.post("/v1/trips/{trip_id}/end")
async def end_trip(trip_id: str, request: Request):
    trip = await engine.end_trip(trip_id, at=await _optional_at(request))
    return {"trip": trip.to_dict()}


@app.post("/v1/trips/{trip_id}/cancel")
async def cancel_trip(trip_id: str, request: Request):
    trip = await engine.cancel_trip(trip_id, at=await _optional_at(request))
    return {"trip": trip.to_dict()}


@app.post("/v1/trips/expire-idle")
async def expire_idle_trips():
    ended = await engine.expire_idle_trips()
    return {"ended": ended}


@app.get("/v1/trips/{trip_id}/attendance")
async def trip_attendance(trip_id: str):
    records = await engine.trip_attendance(trip_id)
    counts: Dict[str, int] = {}
    for record in records:
        counts[record.status.value] = counts.get(record.status.value, 0) + 1
    return {
        "trip_id": trip_id,
        "counts": counts,
        "records": [r.to_dict() for r in records],
    }


@app.get("/v1/trips/{trip_id}/geofence")
async def trip_geofence(trip_id: str):
    return engine.geofence_state(trip_id)


@app.get("/v1/trips/{trip_id}/geofence/events")
async def trip_geofence_events(trip_id: str):
    events = await engine.geofence_events(trip_id)
    return {"trip_id": trip_id, "events": [e.to_dict() for e in events]}


# ---------------------------
# REST: Attendance & alerts
# ---------------------------
@app.post("/v1/attendance/manual")
async def manual_attendance(request: Request):
    data = await _json_object(request)
    trip_id = data.get("trip_id")
    student_id = data.get("student_id")
    action = data.get("action")
    if not trip_id or not student_id or not action:
        raise HTTPException(status_code=400, detail="trip_id, student_id and action are required")
    record = await engine.record_manual_attendance(
        str(trip_id),
        str(student_id),
        str(action).strip().lower(),
        at=_parse_when(data.get("at"), "at"),
        stop_id=data.get("stop_id"),
    )
    return {"attendance": record.to_dict()}


@app.post("/v1/alerts/emergency")
async def raise_emergency(request: Request):
    data = await _json_object(request)
    bus_id = data.get("bus_id")
    if not bus_id:
        raise HTTPException(status_code=400, detail="bus_id is required")
    lat = data.get("lat", data.get("latitude"))
    lon = data.get("lon", data.get("longitude"))
    try:
        lat = float(lat) if lat is not None else None
        lon = float(lon) if lon is not None else None
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="lat and lon must be numbers")
    intent = engine.raise_emergency(
        str(bus_id),
        str(data.get("message") or "").strip(),
        at=_parse_when(data.get("at"), "at"),
        lat=lat,
        lon=lon,
        reported_by=data.get("reported_by"),
    )
    return {"alert": intent.to_dict()}


# ---------------------------
# REST: Buses
# ---------------------------
@app.get("/v1/buses/{bus_id}/location")
async def bus_location(bus_id: str):
    fix = engine.current_location(bus_id)
    if fix is None:
        raise HTTPException(status_code=404, detail="no location for bus")
    trip = await engine.active_trip(bus_id)
    return {
        "location": fix.to_dict(),
        "trip_id": trip.trip_id if trip else None,
        "current_stop_id": engine.geofence.current_stop(trip.trip_id) if trip else None,
    }


def _window(start: Optional[str], end: Optional[str], default_hours: float = 24) -> Tuple[datetime, datetime]:
    end_dt = _parse_when(end, "end") or utcnow()
    start_dt = _parse_when(start, "start") or end_dt - timedelta(hours=default_hours)
    if end_dt < start_dt:
        raise HTTPException(status_code=400, detail="end must be on or after start")
    return start_dt, end_dt


@app.get("/v1/buses/{bus_id}/trip")
async def bus_active_trip(bus_id: str):
    trip = await engine.active_trip(bus_id)
    if trip is None:
        raise HTTPException(status_code=404, detail="no active trip for bus")
    return {"trip": trip.to_dict()}


@app.get("/v1/buses/{bus_id}/locations")
async def bus_location_history(
    bus_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
    limit: int = Query(1000, ge=1, le=10000),
):
    start_dt, end_dt = _window(start, end)
    fixes = await engine.location_history(bus_id, start_dt, end_dt)
    return {
        "bus_id": bus_id,
        "start": start_dt.isoformat(),
        "end": end_dt.isoformat(),
        "count": len(fixes),
        "locations": [f.to_dict() for f in fixes[-limit:]],
    }


@app.get("/v1/buses/{bus_id}/speed")
async def bus_speed(
    bus_id: str,
    start: Optional[str] = Query(None),
    end: Optional[str] = Query(None),
):
    start_dt, end_dt = _window(start, end)
    analysis = await engine.speed_report(bus_id, start_dt, end_dt)
    return {"bus_id": bus_id, "start": start_dt.isoformat(), "end": end_dt.isoformat(), **analysis.to_dict()}


@app.get("/v1/buses/{bus_id}/eta")
async def bus_eta(bus_id: str):
    estimate = await engine.eta(bus_id)
    return estimate.to_dict()


# ---------------------------
# REST: Operations
# ---------------------------
@app.get("/v1/diagnostics")
async def diagnostics():
    payload = engine.diagnostics()
    payload["push"] = {
        "configured": bool(VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY),
        "subscription_count": await push_subscription_store.count(),
    }
    payload["webhook_configured"] = bool(ALERT_WEBHOOK_URL)
    return payload


@app.post("/v1/deadletters/replay")
async def replay_dead_letters():
    return await engine.replay_dead_letters()


# ---------------------------
# Push Notifications API
# ---------------------------
@app.get("/v1/push/vapid-public-key")
async def get_vapid_public_key():
    """Return the VAPID public key for push subscription."""
    if not VAPID_PUBLIC_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    return {"publicKey": VAPID_PUBLIC_KEY}


@app.post("/v1/push/subscribe")
async def push_subscribe(request: Request):
    """Subscribe a user's browser to alert notifications."""
    if not VAPID_PUBLIC_KEY or not VAPID_PRIVATE_KEY:
        raise HTTPException(status_code=503, detail="Push notifications not configured")
    data = await _json_object(request)
    endpoint = data.get("endpoint")
    keys = data.get("keys", {})
    if not endpoint or not isinstance(keys, dict) or not keys.get("p256dh") or not keys.get("auth"):
        raise HTTPException(status_code=400, detail="Invalid subscription data")
    user_id = data.get("user_id")
    role = data.get("role")
    if role is not None and role not in KNOWN_ROLES:
        raise HTTPException(status_code=400, detail=f"role must be one of {', '.join(KNOWN_ROLES)}")
    user_agent = request.headers.get("user-agent")
    is_new = await push_subscription_store.add_subscription(
        endpoint,
        keys,
        user_id=str(user_id) if user_id is not None else None,
        role=role,
        user_agent=user_agent,
    )
    return {"status": "subscribed", "new": is_new}


@app.post("/v1/push/unsubscribe")
async def push_unsubscribe(request: Request):
    data = await _json_object(request)
    endpoint = data.get("endpoint")
    if not endpoint:
        raise HTTPException(status_code=400, detail="Missing endpoint")
    removed = await push_subscription_store.remove_subscription(endpoint)
    return {"status": "unsubscribed", "found": removed}


@app.get("/v1/push/status")
async def push_status():
    subscriptions = await push_subscription_store.get_all_subscriptions()
    by_role: Dict[str, int] = {}
    for sub in subscriptions:
        role = sub.role or "unassigned"
        by_role[role] = by_role.get(role, 0) + 1
    return {
        "configured": bool(VAPID_PUBLIC_KEY and VAPID_PRIVATE_KEY),
        "subscription_count": len(subscriptions),
        "by_role": by_role,
    }
