"""
Storage collaborator for the ingestion engine.

IngestStorage is the interface the engine talks to. Methods are blocking;
the engine runs them in worker threads under a timeout. Implementations
raise NotFound for missing entities and PersistenceUnavailable for I/O
failures so callers can tell "not there" from "cannot tell right now".

FileIngestStorage lays data out under one base directory:

    roster.json              routes (stops, students, zones), tags, guardians, seed trips
    trips.json               trip documents
    attendance.json          attendance records keyed by trip and student
    locations/YYYY-MM-DD.csv location fix log, one file per UTC day
    geofence/YYYY-MM-DD.csv  geofence event log, one file per UTC day
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import csv
import json
import threading

from ingest_models import (
    AttendanceRecord,
    GeofenceEvent,
    GeofenceKind,
    LocationFix,
    NotFound,
    PersistenceUnavailable,
    RestrictedZone,
    RouteStop,
    Trip,
    TripStatus,
    _isoformat,
    _to_utc,
    parse_iso8601_utc,
)


class IngestStorage(ABC):
    """Persistence the engine depends on."""

    @abstractmethod
    def save_location_fix(self, fix: LocationFix, trip_id: Optional[str]) -> None:
        ...

    @abstractmethod
    def save_geofence_event(self, event: GeofenceEvent) -> None:
        ...

    @abstractmethod
    def upsert_attendance(self, record: AttendanceRecord) -> None:
        ...

    @abstractmethod
    def get_attendance(self, trip_id: str, student_id: str) -> Optional[AttendanceRecord]:
        ...

    @abstractmethod
    def list_attendance(self, trip_id: str) -> List[AttendanceRecord]:
        ...

    @abstractmethod
    def get_active_trip(self, bus_id: str) -> Optional[Trip]:
        ...

    @abstractmethod
    def get_trip(self, trip_id: str) -> Trip:
        ...

    @abstractmethod
    def get_trips_for_bus(self, bus_id: str) -> List[Trip]:
        ...

    @abstractmethod
    def save_trip(self, trip: Trip) -> None:
        ...

    @abstractmethod
    def get_route_stops(self, route_id: str) -> List[RouteStop]:
        ...

    @abstractmethod
    def get_route_students(self, route_id: str) -> List[str]:
        ...

    @abstractmethod
    def get_restricted_zones(self, route_id: str) -> List[RestrictedZone]:
        ...

    @abstractmethod
    def resolve_tag(self, tag_id: str) -> str:
        """Student id for an RFID/NFC tag. Raises NotFound for unknown tags."""

    @abstractmethod
    def get_student_guardians(self, student_id: str) -> List[str]:
        ...

    @abstractmethod
    def query_location_fixes(self, bus_id: str, start: datetime, end: datetime) -> List[LocationFix]:
        ...

    @abstractmethod
    def query_geofence_events(self, trip_id: str, start: datetime, end: datetime) -> List[GeofenceEvent]:
        ...


def _float_or_none(value: str) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _fmt(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.6f}".rstrip("0").rstrip(".")


def fix_to_row(fix: LocationFix, trip_id: Optional[str]) -> List[str]:
    return [
        _isoformat(fix.timestamp) or "",
        fix.bus_id,
        trip_id or fix.trip_id or "",
        _fmt(fix.lat),
        _fmt(fix.lon),
        _fmt(fix.speed_kmh),
        _fmt(fix.heading_deg),
        _fmt(fix.accuracy_m),
    ]


def fix_from_row(row: Sequence[str]) -> Optional[LocationFix]:
    if len(row) < 5:
        return None
    try:
        ts = parse_iso8601_utc(row[0])
        lat = float(row[3])
        lon = float(row[4])
    except ValueError:
        return None
    return LocationFix(
        bus_id=row[1],
        lat=lat,
        lon=lon,
        timestamp=ts,
        speed_kmh=_float_or_none(row[5]) if len(row) > 5 else None,
        heading_deg=_float_or_none(row[6]) if len(row) > 6 else None,
        accuracy_m=_float_or_none(row[7]) if len(row) > 7 else None,
        trip_id=row[2] or None,
    )


def event_to_row(event: GeofenceEvent) -> List[str]:
    return [
        _isoformat(event.timestamp) or "",
        event.bus_id,
        event.trip_id,
        event.stop_id,
        event.kind.value,
        "" if event.distance_m is None else f"{event.distance_m:.2f}",
    ]


def event_from_row(row: Sequence[str]) -> Optional[GeofenceEvent]:
    if len(row) < 5:
        return None
    try:
        ts = parse_iso8601_utc(row[0])
        kind = GeofenceKind(row[4])
    except ValueError:
        return None
    return GeofenceEvent(
        bus_id=row[1],
        trip_id=row[2],
        stop_id=row[3],
        kind=kind,
        timestamp=ts,
        distance_m=_float_or_none(row[5]) if len(row) > 5 else None,
    )


def stop_from_dict(route_id: str, index: int, data: Dict[str, Any]) -> RouteStop:
    return RouteStop(
        stop_id=str(data.get("stop_id") or data.get("id")),
        route_id=route_id,
        sequence=int(data.get("sequence", data.get("stop_order", index + 1))),
        lat=float(data.get("lat", data.get("latitude"))),
        lon=float(data.get("lon", data.get("longitude"))),
        radius_m=float(data.get("radius_m") or 50.0),
        pickup_time=data.get("pickup_time"),
        drop_time=data.get("drop_time"),
        name=data.get("name"),
        student_ids=[str(s) for s in data.get("student_ids") or []],
    )


def zone_from_dict(data: Dict[str, Any]) -> RestrictedZone:
    return RestrictedZone(
        zone_id=str(data.get("zone_id") or data.get("id")),
        lat=float(data.get("lat", data.get("latitude"))),
        lon=float(data.get("lon", data.get("longitude"))),
        radius_m=float(data.get("radius_m") or data.get("radius") or 100.0),
        name=data.get("name"),
    )


class FileIngestStorage(IngestStorage):
    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self.roster_path = self.base_dir / "roster.json"
        self.trips_path = self.base_dir / "trips.json"
        self.attendance_path = self.base_dir / "attendance.json"
        self.locations_dir = self.base_dir / "locations"
        self.geofence_dir = self.base_dir / "geofence"
        self._lock = threading.RLock()
        self._roster: Optional[Dict[str, Any]] = None
        self._roster_mtime: Optional[float] = None

    # -- low level --------------------------------------------------------

    def _read_json(self, path: Path) -> Optional[Any]:
        try:
            text = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceUnavailable("read_failed", path=str(path), error=str(exc))
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            print(f"[storage] ignoring corrupt {path.name}: {exc}")
            return None

    def _write_json(self, path: Path, data: Any) -> None:
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(data, indent=2, sort_keys=True))
            tmp_path.replace(path)
        except OSError as exc:
            raise PersistenceUnavailable("write_failed", path=str(path), error=str(exc))

    def _append_row(self, directory: Path, ts: datetime, row: List[str]) -> None:
        path = directory / f"{_to_utc(ts).date().isoformat()}.csv"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with path.open("a", newline="") as f:
                csv.writer(f).writerow(row)
        except OSError as exc:
            raise PersistenceUnavailable("write_failed", path=str(path), error=str(exc))

    def _iter_rows(self, directory: Path, start: datetime, end: datetime) -> Iterable[List[str]]:
        current = _to_utc(start).date()
        end_date = _to_utc(end).date()
        while current <= end_date:
            path = directory / f"{current.isoformat()}.csv"
            current += timedelta(days=1)
            if not path.exists():
                continue
            try:
                with path.open("r", newline="") as f:
                    rows = list(csv.reader(f))
            except OSError as exc:
                raise PersistenceUnavailable("read_failed", path=str(path), error=str(exc))
            yield from rows

    # -- roster -----------------------------------------------------------

    def _load_roster(self) -> Dict[str, Any]:
        try:
            mtime = self.roster_path.stat().st_mtime
        except FileNotFoundError:
            mtime = None
        except OSError as exc:
            raise PersistenceUnavailable("read_failed", path=str(self.roster_path), error=str(exc))
        if self._roster is None or mtime != self._roster_mtime:
            raw = self._read_json(self.roster_path)
            self._roster = raw if isinstance(raw, dict) else {}
            self._roster_mtime = mtime
        return self._roster

    def save_roster(self, roster: Dict[str, Any]) -> None:
        with self._lock:
            self._write_json(self.roster_path, roster)
            self._roster = None

    def _route(self, route_id: str) -> Dict[str, Any]:
        routes = self._load_roster().get("routes") or {}
        route = routes.get(route_id)
        if not isinstance(route, dict):
            raise NotFound("route_not_found", route_id=route_id)
        return route

    def get_route_stops(self, route_id: str) -> List[RouteStop]:
        with self._lock:
            route = self._route(route_id)
        stops = [stop_from_dict(route_id, i, s) for i, s in enumerate(route.get("stops") or [])]
        stops.sort(key=lambda s: s.sequence)
        return stops

    def get_route_students(self, route_id: str) -> List[str]:
        with self._lock:
            route = self._route(route_id)
        students = {str(s) for s in route.get("students") or []}
        for stop in route.get("stops") or []:
            students.update(str(s) for s in stop.get("student_ids") or [])
        return sorted(students)

    def get_restricted_zones(self, route_id: str) -> List[RestrictedZone]:
        with self._lock:
            roster = self._load_roster()
            route = (roster.get("routes") or {}).get(route_id) or {}
        entries = list(roster.get("restricted_zones") or []) + list(route.get("restricted_zones") or [])
        return [zone_from_dict(z) for z in entries]

    def resolve_tag(self, tag_id: str) -> str:
        with self._lock:
            tags = self._load_roster().get("tags") or {}
        student_id = tags.get(tag_id)
        if student_id is None:
            raise NotFound("unknown_tag", tag_id=tag_id)
        return str(student_id)

    def get_student_guardians(self, student_id: str) -> List[str]:
        with self._lock:
            guardians = self._load_roster().get("guardians") or {}
        return [str(g) for g in guardians.get(student_id) or []]

    # -- trips ------------------------------------------------------------

    def _load_trips(self) -> Dict[str, Trip]:
        raw = self._read_json(self.trips_path)
        if raw is None:
            raw = {"trips": self._load_roster().get("trips") or []}
        entries = raw.get("trips", []) if isinstance(raw, dict) else []
        trips: Dict[str, Trip] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                trip = Trip.from_dict(entry)
            except (KeyError, ValueError) as exc:
                print(f"[storage] skipping invalid trip {entry.get('trip_id')!r}: {exc}")
                continue
            trips[trip.trip_id] = trip
        return trips

    def get_trip(self, trip_id: str) -> Trip:
        with self._lock:
            trip = self._load_trips().get(trip_id)
        if trip is None:
            raise NotFound("trip_not_found", trip_id=trip_id)
        return trip

    def get_trips_for_bus(self, bus_id: str) -> List[Trip]:
        with self._lock:
            trips = [t for t in self._load_trips().values() if t.bus_id == bus_id]
        trips.sort(key=lambda t: t.scheduled_start)
        return trips

    def get_active_trip(self, bus_id: str) -> Optional[Trip]:
        for trip in self.get_trips_for_bus(bus_id):
            if trip.status == TripStatus.IN_PROGRESS:
                return trip
        return None

    def list_trips(self) -> List[Trip]:
        with self._lock:
            return sorted(self._load_trips().values(), key=lambda t: t.scheduled_start)

    def save_trip(self, trip: Trip) -> None:
        with self._lock:
            trips = self._load_trips()
            trips[trip.trip_id] = trip
            data = {"trips": [t.to_dict() for t in sorted(trips.values(), key=lambda t: t.scheduled_start)]}
            self._write_json(self.trips_path, data)

    # -- attendance -------------------------------------------------------

    def _load_attendance(self) -> Dict[Tuple[str, str], AttendanceRecord]:
        raw = self._read_json(self.attendance_path)
        entries = raw.get("records", []) if isinstance(raw, dict) else []
        records: Dict[Tuple[str, str], AttendanceRecord] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                record = AttendanceRecord.from_dict(entry)
            except (KeyError, ValueError):
                continue
            records[(record.trip_id, record.student_id)] = record
        return records

    def upsert_attendance(self, record: AttendanceRecord) -> None:
        with self._lock:
            records = self._load_attendance()
            key = (record.trip_id, record.student_id)
            existing = records.get(key)
            if existing is not None and existing.revision > record.revision:
                print(
                    f"[storage] keeping newer attendance revision {existing.revision} "
                    f"for student={record.student_id} trip={record.trip_id}"
                )
                return
            records[key] = record
            data = {"records": [r.to_dict() for _, r in sorted(records.items())]}
            self._write_json(self.attendance_path, data)

    def get_attendance(self, trip_id: str, student_id: str) -> Optional[AttendanceRecord]:
        with self._lock:
            return self._load_attendance().get((trip_id, student_id))

    def list_attendance(self, trip_id: str) -> List[AttendanceRecord]:
        with self._lock:
            records = [r for (t, _), r in self._load_attendance().items() if t == trip_id]
        records.sort(key=lambda r: r.student_id)
        return records

    # -- event logs -------------------------------------------------------

    def save_location_fix(self, fix: LocationFix, trip_id: Optional[str]) -> None:
        with self._lock:
            self._append_row(self.locations_dir, fix.timestamp, fix_to_row(fix, trip_id))

    def save_geofence_event(self, event: GeofenceEvent) -> None:
        with self._lock:
            self._append_row(self.geofence_dir, event.timestamp, event_to_row(event))

    def query_location_fixes(self, bus_id: str, start: datetime, end: datetime) -> List[LocationFix]:
        start_utc = _to_utc(start)
        end_utc = _to_utc(end)
        if end_utc < start_utc:
            return []
        fixes: List[LocationFix] = []
        with self._lock:
            for row in self._iter_rows(self.locations_dir, start_utc, end_utc):
                fix = fix_from_row(row)
                if fix is None or fix.bus_id != bus_id:
                    continue
                if start_utc <= fix.timestamp <= end_utc:
                    fixes.append(fix)
        fixes.sort(key=lambda f: f.timestamp)
        return fixes

    def query_geofence_events(self, trip_id: str, start: datetime, end: datetime) -> List[GeofenceEvent]:
        start_utc = _to_utc(start)
        end_utc = _to_utc(end)
        if end_utc < start_utc:
            return []
        events: List[GeofenceEvent] = []
        with self._lock:
            for row in self._iter_rows(self.geofence_dir, start_utc, end_utc):
                event = event_from_row(row)
                if event is None or event.trip_id != trip_id:
                    continue
                if start_utc <= event.timestamp <= end_utc:
                    events.append(event)
        events.sort(key=lambda e: e.timestamp)
        return events


__all__ = ["FileIngestStorage", "IngestStorage"]
