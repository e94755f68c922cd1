from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _isoformat(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return _to_utc(dt).isoformat().replace("+00:00", "Z")


def parse_iso8601_utc(value: str) -> datetime:
    text = value.strip()
    if text.lower().endswith("z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------
# Errors
# ---------------------------
class IngestError(Exception):
    """Base class for every recoverable ingestion failure."""

    def __init__(self, reason: str, **detail: Any):
        super().__init__(reason)
        self.reason = reason
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": type(self).__name__, "reason": self.reason, **self.detail}


class InvalidEvent(IngestError):
    """Malformed or stale input. Dropped, never retried."""


class NoActiveTrip(IngestError):
    """No trip can own the event. The caller may buffer and retry."""


class InvalidTransition(IngestError):
    """Attendance rule violation, surfaced as a rejected scan."""


class NotFound(IngestError):
    """The storage collaborator has no such entity."""


class PersistenceUnavailable(IngestError):
    """Storage timed out or failed. Retryable."""


class AlertDispatchFailure(IngestError):
    """Alert could not be delivered. Logged only."""


# ---------------------------
# Enums
# ---------------------------
class TripStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ScanAction(str, Enum):
    PICKUP = "pickup"
    DROP = "drop"


class GeofenceKind(str, Enum):
    ENTER = "enter"
    EXIT = "exit"


class AttendanceStatus(str, Enum):
    NOT_RECORDED = "not_recorded"
    PICKED_UP = "picked_up"
    DROPPED_OFF = "dropped_off"
    ABSENT = "absent"


class AlertKind(str, Enum):
    GEOFENCE_BREACH = "geofence_breach"
    MISSED_PICKUP = "missed_pickup"
    EMERGENCY = "emergency"
    SPEED_VIOLATION = "speed_violation"
    STUDENT_PICKUP = "student_pickup"
    STUDENT_DROP = "student_drop"


# ---------------------------
# Records
# ---------------------------
@dataclass
class Bus:
    bus_id: str
    capacity: Optional[int] = None
    active_trip_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus_id": self.bus_id,
            "capacity": self.capacity,
            "active_trip_id": self.active_trip_id,
        }


@dataclass
class Trip:
    """One run of a bus over a route."""
    trip_id: str
    route_id: str
    bus_id: str
    scheduled_start: datetime
    scheduled_end: Optional[datetime] = None
    status: TripStatus = TripStatus.SCHEDULED
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    end_reason: Optional[str] = None  # "ended", "idle", "cancelled"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trip_id": self.trip_id,
            "route_id": self.route_id,
            "bus_id": self.bus_id,
            "scheduled_start": _isoformat(self.scheduled_start),
            "scheduled_end": _isoformat(self.scheduled_end),
            "status": self.status.value,
            "actual_start": _isoformat(self.actual_start),
            "actual_end": _isoformat(self.actual_end),
            "end_reason": self.end_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Trip":
        def _dt(key: str) -> Optional[datetime]:
            value = data.get(key)
            if value is None or value == "":
                return None
            if isinstance(value, datetime):
                return _to_utc(value)
            return parse_iso8601_utc(str(value))

        scheduled_start = _dt("scheduled_start")
        if scheduled_start is None:
            raise ValueError("trip requires scheduled_start")
        return cls(
            trip_id=str(data["trip_id"]),
            route_id=str(data["route_id"]),
            bus_id=str(data["bus_id"]),
            scheduled_start=scheduled_start,
            scheduled_end=_dt("scheduled_end"),
            status=TripStatus(data.get("status") or TripStatus.SCHEDULED.value),
            actual_start=_dt("actual_start"),
            actual_end=_dt("actual_end"),
            end_reason=data.get("end_reason"),
        )


@dataclass
class RouteStop:
    """A stop geofence on a route. Immutable while a trip runs."""
    stop_id: str
    route_id: str
    sequence: int
    lat: float
    lon: float
    radius_m: float = 50.0
    pickup_time: Optional[str] = None  # local "HH:MM"
    drop_time: Optional[str] = None  # local "HH:MM"
    name: Optional[str] = None
    student_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stop_id": self.stop_id,
            "route_id": self.route_id,
            "sequence": self.sequence,
            "lat": self.lat,
            "lon": self.lon,
            "radius_m": self.radius_m,
            "pickup_time": self.pickup_time,
            "drop_time": self.drop_time,
            "name": self.name,
            "student_ids": list(self.student_ids),
        }


@dataclass
class RestrictedZone:
    """An area the bus must not enter while on a trip."""
    zone_id: str
    lat: float
    lon: float
    radius_m: float
    name: Optional[str] = None


@dataclass(frozen=True)
class LocationFix:
    bus_id: str
    lat: float
    lon: float
    timestamp: datetime
    speed_kmh: Optional[float] = None
    heading_deg: Optional[float] = None
    accuracy_m: Optional[float] = None
    trip_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus_id": self.bus_id,
            "lat": self.lat,
            "lon": self.lon,
            "timestamp": _isoformat(self.timestamp),
            "speed_kmh": self.speed_kmh,
            "heading_deg": self.heading_deg,
            "accuracy_m": self.accuracy_m,
            "trip_id": self.trip_id,
        }


@dataclass(frozen=True)
class TagScan:
    tag_id: str
    bus_id: str
    timestamp: datetime
    action: ScanAction
    trip_id: Optional[str] = None
    method: str = "rfid"  # "rfid", "nfc" or "manual"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tag_id": self.tag_id,
            "bus_id": self.bus_id,
            "timestamp": _isoformat(self.timestamp),
            "action": self.action.value,
            "trip_id": self.trip_id,
            "method": self.method,
        }


@dataclass(frozen=True)
class GeofenceEvent:
    bus_id: str
    trip_id: str
    stop_id: str
    kind: GeofenceKind
    timestamp: datetime
    distance_m: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus_id": self.bus_id,
            "trip_id": self.trip_id,
            "stop_id": self.stop_id,
            "kind": self.kind.value,
            "timestamp": _isoformat(self.timestamp),
            "distance_m": self.distance_m,
        }


@dataclass
class AttendanceRecord:
    student_id: str
    trip_id: str
    status: AttendanceStatus = AttendanceStatus.NOT_RECORDED
    pickup_time: Optional[datetime] = None
    drop_time: Optional[datetime] = None
    pickup_stop_id: Optional[str] = None
    drop_stop_id: Optional[str] = None
    method: Optional[str] = None
    revision: int = 0
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "trip_id": self.trip_id,
            "status": self.status.value,
            "pickup_time": _isoformat(self.pickup_time),
            "drop_time": _isoformat(self.drop_time),
            "pickup_stop_id": self.pickup_stop_id,
            "drop_stop_id": self.drop_stop_id,
            "method": self.method,
            "revision": self.revision,
            "updated_at": _isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttendanceRecord":
        def _dt(key: str) -> Optional[datetime]:
            value = data.get(key)
            if not value:
                return None
            return parse_iso8601_utc(str(value))

        return cls(
            student_id=str(data["student_id"]),
            trip_id=str(data["trip_id"]),
            status=AttendanceStatus(data.get("status") or AttendanceStatus.NOT_RECORDED.value),
            pickup_time=_dt("pickup_time"),
            drop_time=_dt("drop_time"),
            pickup_stop_id=data.get("pickup_stop_id"),
            drop_stop_id=data.get("drop_stop_id"),
            method=data.get("method"),
            revision=int(data.get("revision") or 0),
            updated_at=_dt("updated_at"),
        )


@dataclass
class AlertIntent:
    """Something a human should hear about. Delivery is the dispatcher's job."""
    kind: AlertKind
    message: str
    timestamp: datetime
    severity: str = "high"
    bus_id: Optional[str] = None
    trip_id: Optional[str] = None
    student_id: Optional[str] = None
    stop_id: Optional[str] = None
    recipient_ids: List[str] = field(default_factory=list)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": _isoformat(self.timestamp),
            "severity": self.severity,
            "bus_id": self.bus_id,
            "trip_id": self.trip_id,
            "student_id": self.student_id,
            "stop_id": self.stop_id,
            "recipient_ids": list(self.recipient_ids),
            "data": dict(self.data),
        }


__all__ = [
    "AlertDispatchFailure",
    "AlertIntent",
    "AlertKind",
    "AttendanceRecord",
    "AttendanceStatus",
    "Bus",
    "GeofenceEvent",
    "GeofenceKind",
    "IngestError",
    "InvalidEvent",
    "InvalidTransition",
    "LocationFix",
    "NoActiveTrip",
    "NotFound",
    "PersistenceUnavailable",
    "RestrictedZone",
    "RouteStop",
    "ScanAction",
    "TagScan",
    "Trip",
    "TripStatus",
    "parse_iso8601_utc",
    "utcnow",
]
