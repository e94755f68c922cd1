"""
Location & attendance ingestion engine.

    raw payload -> normalize -> per-bus worker -> correlate trip
        -> location fix: persist, geofence, speed, missed pickups
        -> tag scan: resolve student, attendance transition, guardian notice
        -> alert intents (fire-and-forget)

Ordering: each bus has one worker task draining a timestamp-ordered heap, so
events from the same bus apply in timestamp order (within the reorder hold)
while different buses run in parallel. A per-bus asyncio.Lock is shared by
the worker and by explicit trip start/end/cancel calls.

Storage calls run in a thread under a timeout and are retried with
exponential backoff; events that still cannot be persisted go to the
dead-letter sink.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, Union
import asyncio
import heapq
import itertools

from alert_dispatcher import AlertDispatcher, LoggingAlertDispatcher
from attendance_machine import AttendanceAction, AttendanceBook, action_for_scan
from dead_letters import DeadLetterSink
from geofence_evaluator import GeofenceEvaluator
from ingest_config import IngestConfig
from ingest_models import (
    AlertDispatchFailure,
    AlertIntent,
    AlertKind,
    AttendanceRecord,
    AttendanceStatus,
    GeofenceEvent,
    GeofenceKind,
    IngestError,
    InvalidEvent,
    InvalidTransition,
    LocationFix,
    NoActiveTrip,
    NotFound,
    PersistenceUnavailable,
    RestrictedZone,
    RouteStop,
    TagScan,
    Trip,
    TripStatus,
    _isoformat,
    parse_iso8601_utc,
    utcnow,
)
from ingest_storage import IngestStorage
from ingress_normalizer import CanonicalEvent, normalize
from speed_monitor import EtaEstimate, SpeedAnalysis, SpeedMonitor, analyze_speeds, estimate_eta
from trip_correlator import TERMINAL_STATUSES, TripCorrelator


@dataclass
class IngestResult:
    """Outcome of one submitted event."""
    status: str  # "accepted", "duplicate", "late", "rejected", "dead_lettered"
    kind: Optional[str] = None  # "location" or "scan"
    bus_id: Optional[str] = None
    trip_id: Optional[str] = None
    student_id: Optional[str] = None
    geofence_events: List[GeofenceEvent] = field(default_factory=list)
    attendance: Optional[AttendanceRecord] = None
    error: Optional[IngestError] = None

    @property
    def ok(self) -> bool:
        return self.status in ("accepted", "duplicate", "late")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "kind": self.kind,
            "bus_id": self.bus_id,
            "trip_id": self.trip_id,
            "student_id": self.student_id,
            "geofence_events": [e.to_dict() for e in self.geofence_events],
            "attendance": self.attendance.to_dict() if self.attendance else None,
            "error": self.error.to_dict() if self.error else None,
        }


def _event_kind(event: CanonicalEvent) -> str:
    return "location" if isinstance(event, LocationFix) else "scan"


class IngestEngine:
    def __init__(
        self,
        storage: IngestStorage,
        dispatcher: Optional[AlertDispatcher] = None,
        config: Optional[IngestConfig] = None,
        dead_letters: Optional[DeadLetterSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or IngestConfig()
        self.storage = storage
        self.dispatcher = dispatcher or LoggingAlertDispatcher()
        self.dead_letters = dead_letters
        self.clock = clock

        self.correlator = TripCorrelator(self.config)
        self.geofence = GeofenceEvaluator(self.config.exit_hysteresis)
        self.attendance = AttendanceBook(self.config.duplicate_scan_window_s)
        self.speed = SpeedMonitor(self.config)

        self._bus_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Dict[str, List[Tuple[datetime, int, CanonicalEvent, Any, datetime, asyncio.Future]]] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._seq = itertools.count()
        self._loaded_buses: Set[str] = set()
        self._prepared_trips: Set[str] = set()
        self._idle_timers: Dict[str, asyncio.Task] = {}
        self._last_activity: Dict[str, float] = {}
        self._alert_tasks: Set[asyncio.Task] = set()

        self._stops: Dict[str, List[RouteStop]] = {}
        self._students: Dict[str, List[str]] = {}
        self._zones: Dict[str, List[RestrictedZone]] = {}

        self.locations: Dict[str, LocationFix] = {}
        self.stats: Dict[str, int] = {
            "received": 0,
            "accepted": 0,
            "duplicates": 0,
            "late": 0,
            "rejected": 0,
            "dead_lettered": 0,
            "storage_retries": 0,
            "alerts_sent": 0,
            "alerts_failed": 0,
        }
        self.recent_errors: deque = deque(maxlen=100)
        self.recent_alerts: deque = deque(maxlen=100)

    # -- storage ----------------------------------------------------------

    async def _storage(self, method: str, *args: Any) -> Any:
        fn = getattr(self.storage, method)
        attempts = self.config.persistence_attempts
        delay = self.config.persistence_backoff_s
        last_exc: Optional[PersistenceUnavailable] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args), timeout=self.config.persistence_timeout_s
                )
            except asyncio.TimeoutError:
                last_exc = PersistenceUnavailable(
                    "timeout", operation=method, timeout_s=self.config.persistence_timeout_s
                )
            except PersistenceUnavailable as exc:
                last_exc = exc
            except OSError as exc:
                last_exc = PersistenceUnavailable("io_error", operation=method, error=str(exc))
            if attempt < attempts:
                self.stats["storage_retries"] += 1
                print(f"[engine] {method} failed ({last_exc.reason}), retry {attempt}/{attempts - 1} in {delay:.2f}s")
                await asyncio.sleep(delay)
                delay *= 2
        print(f"[engine] {method} gave up after {attempts} attempts")
        raise last_exc

    async def _load_record(self, trip_id: str, student_id: str) -> Optional[AttendanceRecord]:
        return await self._storage("get_attendance", trip_id, student_id)

    async def _save_record(self, record: AttendanceRecord) -> None:
        await self._storage("upsert_attendance", record)

    async def _route_stops(self, route_id: str) -> List[RouteStop]:
        stops = self._stops.get(route_id)
        if stops is None:
            stops = await self._storage("get_route_stops", route_id)
            self._stops[route_id] = stops
        return stops

    async def _route_students(self, route_id: str) -> List[str]:
        students = self._students.get(route_id)
        if students is None:
            students = await self._storage("get_route_students", route_id)
            self._students[route_id] = students
        return students

    async def _route_zones(self, route_id: str) -> List[RestrictedZone]:
        zones = self._zones.get(route_id)
        if zones is None:
            zones = await self._storage("get_restricted_zones", route_id)
            self._zones[route_id] = zones
        return zones

    def invalidate_route_cache(self) -> None:
        self._stops.clear()
        self._students.clear()
        self._zones.clear()

    def _dead_letter(
        self,
        payload: Any,
        exc: IngestError,
        kind: str = "event",
        received_at: Optional[datetime] = None,
    ) -> None:
        self.stats["dead_lettered"] += 1
        self.recent_errors.append({"kind": kind, **exc.to_dict()})
        if self.dead_letters is None:
            print(f"[engine] no dead-letter sink; dropping {kind}: {exc.reason}")
            return
        self.dead_letters.write(
            payload, exc.reason, error=exc.to_dict(), kind=kind, received_at=_isoformat(received_at)
        )

    # -- trips ------------------------------------------------------------

    def _bus_lock(self, bus_id: str) -> asyncio.Lock:
        lock = self._bus_locks.get(bus_id)
        if lock is None:
            lock = asyncio.Lock()
            self._bus_locks[bus_id] = lock
        return lock

    async def refresh_trips(self, bus_id: str) -> None:
        trips = await self._storage("get_trips_for_bus", bus_id)
        self.correlator.load_trips(trips)
        self._loaded_buses.add(bus_id)
        active = self.correlator.active_trip(bus_id)
        if active is not None:
            await self._prepare_trip(active)

    async def _known_trip(self, trip_id: str) -> Trip:
        trip = self.correlator.trips.get(trip_id)
        if trip is not None:
            return trip
        stored = await self._storage("get_trip", trip_id)
        if stored.bus_id in self._loaded_buses:
            self.correlator.load_trips([stored])
        else:
            await self.refresh_trips(stored.bus_id)
        trip = self.correlator.get_trip(trip_id)
        if trip.status == TripStatus.IN_PROGRESS:
            await self._prepare_trip(trip)
        return trip

    async def _prepare_trip(self, trip: Trip) -> None:
        if trip.trip_id in self._prepared_trips:
            return
        self._prepared_trips.add(trip.trip_id)
        try:
            records = await self._storage("list_attendance", trip.trip_id)
        except PersistenceUnavailable as exc:
            print(f"[engine] could not prime attendance for trip={trip.trip_id}: {exc.reason}")
            self._prepared_trips.discard(trip.trip_id)
        else:
            self.attendance.prime(trip.trip_id, records)
        self._touch_activity(trip.trip_id)
        self._arm_idle_timer(trip.trip_id)

    async def _handle_transitions(self) -> None:
        for transition in self.correlator.drain_transitions():
            trip = transition.trip
            try:
                await self._storage("save_trip", trip)
            except PersistenceUnavailable as exc:
                self._dead_letter(trip.to_dict(), exc, kind="trip")
            if transition.current == TripStatus.IN_PROGRESS:
                await self._prepare_trip(trip)
            elif transition.current in TERMINAL_STATUSES:
                await self._finish_trip(trip)

    async def _finish_trip(self, trip: Trip) -> None:
        timer = self._idle_timers.pop(trip.trip_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        self._last_activity.pop(trip.trip_id, None)
        self.geofence.discard_trip(trip.trip_id)
        self.speed.discard_trip(trip.trip_id)
        if trip.status == TripStatus.COMPLETED:
            await self._sweep(trip)
        self.attendance.discard_trip(trip.trip_id)
        self._prepared_trips.discard(trip.trip_id)

    async def _sweep(self, trip: Trip) -> bool:
        """Mark unrecorded students absent. False when the sweep was dead-lettered.

        Runs once per completion transition; re-running it (replay) only
        touches students that are still unrecorded.
        """
        at = trip.actual_end or self.clock()
        try:
            students = await self._route_students(trip.route_id)
            await self.attendance.sweep(
                trip.trip_id, students, at, load=self._load_record, save=self._save_record
            )
        except NotFound as exc:
            print(f"[engine] sweep skipped for trip={trip.trip_id}: {exc.reason}")
        except PersistenceUnavailable as exc:
            self._dead_letter({"trip_id": trip.trip_id}, exc, kind="sweep")
            return False
        return True

    async def start_trip(self, trip_id: str, at: Optional[datetime] = None) -> Trip:
        trip = await self._known_trip(trip_id)
        async with self._bus_lock(trip.bus_id):
            trip = self.correlator.start_trip(trip_id, at or self.clock())
            await self._handle_transitions()
        return trip

    async def end_trip(self, trip_id: str, at: Optional[datetime] = None, reason: str = "ended") -> Trip:
        """Complete a trip; runs the absent sweep exactly once."""
        trip = await self._known_trip(trip_id)
        async with self._bus_lock(trip.bus_id):
            trip, _ = self.correlator.end_trip(trip_id, at or self.clock(), reason=reason)
            await self._handle_transitions()
        return trip

    async def cancel_trip(self, trip_id: str, at: Optional[datetime] = None) -> Trip:
        trip = await self._known_trip(trip_id)
        async with self._bus_lock(trip.bus_id):
            trip, _ = self.correlator.cancel_trip(trip_id, at or self.clock())
            await self._handle_transitions()
        return trip

    async def expire_idle_trips(self, now: Optional[datetime] = None) -> List[str]:
        """Complete in-progress trips whose last event is older than the idle timeout."""
        now = now or self.clock()
        ended: List[str] = []
        for trip_id in self.correlator.idle_trips(now):
            last = self.correlator.last_event_at.get(trip_id)
            at = last + timedelta(seconds=self.config.idle_timeout_s) if last else now
            await self.end_trip(trip_id, at=at, reason="idle")
            ended.append(trip_id)
        return ended

    # -- idle timers ------------------------------------------------------

    def _touch_activity(self, trip_id: str) -> None:
        self._last_activity[trip_id] = asyncio.get_running_loop().time()

    def _arm_idle_timer(self, trip_id: str) -> None:
        timer = self._idle_timers.get(trip_id)
        if timer is not None and not timer.done():
            return
        self._idle_timers[trip_id] = asyncio.create_task(self._idle_watch(trip_id))

    async def _idle_watch(self, trip_id: str) -> None:
        loop = asyncio.get_running_loop()
        idle_s = self.config.idle_timeout_s
        while True:
            last = self._last_activity.get(trip_id)
            trip = self.correlator.trips.get(trip_id)
            if last is None or trip is None or trip.status != TripStatus.IN_PROGRESS:
                return
            remaining = last + idle_s - loop.time()
            if remaining > 0:
                await asyncio.sleep(remaining)
                continue
            last_event = self.correlator.last_event_at.get(trip_id)
            at = last_event + timedelta(seconds=idle_s) if last_event else self.clock()
            print(f"[engine] trip={trip_id} idle for {idle_s:.0f}s, completing")
            try:
                await self.end_trip(trip_id, at=at, reason="idle")
            except IngestError as exc:
                print(f"[engine] idle completion failed for trip={trip_id}: {exc.reason}")
            return

    # -- alerts -----------------------------------------------------------

    def _emit(self, intent: AlertIntent) -> None:
        self.recent_alerts.append(intent.to_dict())
        task = asyncio.create_task(self._deliver(intent))
        self._alert_tasks.add(task)
        task.add_done_callback(self._alert_tasks.discard)

    async def _deliver(self, intent: AlertIntent) -> None:
        try:
            await asyncio.wait_for(self.dispatcher.dispatch(intent), timeout=self.config.alert_timeout_s)
            self.stats["alerts_sent"] += 1
        except asyncio.TimeoutError:
            self.stats["alerts_failed"] += 1
            failure = AlertDispatchFailure("timeout", kind=intent.kind.value)
            self.recent_errors.append(failure.to_dict())
            print(f"[alerts] dispatch timed out for {intent.kind.value}")
        except AlertDispatchFailure as exc:
            self.stats["alerts_failed"] += 1
            self.recent_errors.append(exc.to_dict())
            print(f"[alerts] dispatch failed for {intent.kind.value}: {exc.reason}")
        except Exception as exc:
            self.stats["alerts_failed"] += 1
            self.recent_errors.append(AlertDispatchFailure("error", kind=intent.kind.value, error=str(exc)).to_dict())
            print(f"[alerts] dispatch error for {intent.kind.value}: {exc}")

    async def drain(self) -> None:
        """Wait for in-flight alert deliveries."""
        while self._alert_tasks:
            await asyncio.gather(*list(self._alert_tasks), return_exceptions=True)

    async def _guardians(self, student_id: str) -> List[str]:
        try:
            return await self._storage("get_student_guardians", student_id)
        except PersistenceUnavailable as exc:
            print(f"[engine] guardian lookup failed for student={student_id}: {exc.reason}")
            return []

    async def _notify_guardians(self, record: AttendanceRecord, bus_id: str) -> None:
        guardians = await self._guardians(record.student_id)
        if not guardians:
            return
        if record.status == AttendanceStatus.PICKED_UP:
            kind, verb, at, stop_id = AlertKind.STUDENT_PICKUP, "boarded", record.pickup_time, record.pickup_stop_id
        elif record.status == AttendanceStatus.DROPPED_OFF:
            kind, verb, at, stop_id = AlertKind.STUDENT_DROP, "left", record.drop_time, record.drop_stop_id
        else:
            return
        self._emit(
            AlertIntent(
                kind=kind,
                message=f"Student {record.student_id} {verb} bus {bus_id}",
                timestamp=at or self.clock(),
                severity="info",
                bus_id=bus_id,
                trip_id=record.trip_id,
                student_id=record.student_id,
                stop_id=stop_id,
                recipient_ids=guardians,
            )
        )

    # -- ingestion --------------------------------------------------------

    async def submit(self, raw: Mapping[str, Any], received_at: Optional[datetime] = None) -> IngestResult:
        """Normalize one raw payload and apply it in per-bus order."""
        self.stats["received"] += 1
        received_at = received_at or self.clock()
        try:
            event = normalize(raw, received_at=received_at, config=self.config)
        except InvalidEvent as exc:
            self.stats["rejected"] += 1
            self.recent_errors.append(exc.to_dict())
            print(f"[ingress] rejected event: {exc.reason}")
            return IngestResult(status="rejected", error=exc)

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        heap = self._pending.setdefault(event.bus_id, [])
        heapq.heappush(heap, (event.timestamp, next(self._seq), event, raw, received_at, future))
        worker = self._workers.get(event.bus_id)
        if worker is None or worker.done():
            self._workers[event.bus_id] = asyncio.create_task(self._bus_worker(event.bus_id))
        return await future

    async def submit_many(
        self, raws: Iterable[Mapping[str, Any]], received_at: Optional[datetime] = None
    ) -> List[IngestResult]:
        received_at = received_at or self.clock()
        return list(await asyncio.gather(*(self.submit(raw, received_at) for raw in raws)))

    async def _bus_worker(self, bus_id: str) -> None:
        heap = self._pending[bus_id]
        while heap:
            if self.config.reorder_hold_s > 0:
                await asyncio.sleep(self.config.reorder_hold_s)
            while heap:
                _, _, event, raw, received_at, future = heapq.heappop(heap)
                if future.done():
                    continue
                try:
                    result = await self._process(event, raw, received_at)
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    print(f"[engine] unexpected error on bus={bus_id}: {exc!r}")
                    self.recent_errors.append({"error": type(exc).__name__, "reason": str(exc), "bus_id": bus_id})
                    self.stats["rejected"] += 1
                    result = IngestResult(
                        status="rejected",
                        kind=_event_kind(event),
                        bus_id=bus_id,
                        error=IngestError("internal_error", error=str(exc)),
                    )
                if not future.done():
                    future.set_result(result)
        self._workers.pop(bus_id, None)

    async def _correlate(self, event: CanonicalEvent) -> str:
        if event.bus_id not in self._loaded_buses:
            await self.refresh_trips(event.bus_id)
        try:
            return self.correlator.correlate(event.bus_id, event.timestamp, event.trip_id)
        except NoActiveTrip as exc:
            if exc.reason != "no_active_trip":
                raise
        # The schedule may have changed since the bus was loaded
        await self.refresh_trips(event.bus_id)
        return self.correlator.correlate(event.bus_id, event.timestamp, event.trip_id)

    async def _process(self, event: CanonicalEvent, raw: Any, received_at: datetime) -> IngestResult:
        kind = _event_kind(event)
        async with self._bus_lock(event.bus_id):
            trip_id: Optional[str] = None
            try:
                trip_id = await self._correlate(event)
                await self._handle_transitions()
                self._touch_activity(trip_id)
                if isinstance(event, LocationFix):
                    result = await self._apply_fix(event, trip_id)
                else:
                    result = await self._apply_scan(event, trip_id)
            except PersistenceUnavailable as exc:
                self._dead_letter(raw, exc, received_at=received_at)
                return IngestResult(status="dead_lettered", kind=kind, bus_id=event.bus_id, trip_id=trip_id, error=exc)
            except IngestError as exc:
                self.stats["rejected"] += 1
                self.recent_errors.append({"bus_id": event.bus_id, **exc.to_dict()})
                print(f"[engine] rejected {kind} from bus={event.bus_id}: {exc.reason}")
                return IngestResult(status="rejected", kind=kind, bus_id=event.bus_id, trip_id=trip_id, error=exc)
        if result.status == "duplicate":
            self.stats["duplicates"] += 1
        elif result.status == "late":
            self.stats["late"] += 1
        else:
            self.stats["accepted"] += 1
        return result

    async def _apply_fix(self, fix: LocationFix, trip_id: str) -> IngestResult:
        trip = self.correlator.get_trip(trip_id)
        # Route lookups come first: once the fix is saved nothing below may
        # raise PersistenceUnavailable, or a replay would store it twice.
        stops = await self._route_stops(trip.route_id)
        zones = await self._route_zones(trip.route_id)
        await self._storage("save_location_fix", fix, trip_id)

        latest = self.locations.get(fix.bus_id)
        if latest is not None and fix.timestamp < latest.timestamp:
            print(f"[engine] late fix from bus={fix.bus_id} ({_isoformat(fix.timestamp)}), geofence unchanged")
            return IngestResult(status="late", kind="location", bus_id=fix.bus_id, trip_id=trip_id)
        self.locations[fix.bus_id] = fix

        events = self.geofence.evaluate(trip_id, fix.bus_id, fix, stops)
        for event in events:
            try:
                await self._storage("save_geofence_event", event)
            except PersistenceUnavailable as exc:
                self._dead_letter(event.to_dict(), exc, kind="geofence_event")

        for intent in self.geofence.skipped_stops(trip_id, fix.bus_id, events, stops):
            self._emit(intent)
        for intent in self.geofence.check_zones(trip_id, fix.bus_id, fix, zones):
            self._emit(intent)
        speed_alert = self.speed.check(trip_id, fix)
        if speed_alert is not None:
            self._emit(speed_alert)
        self._check_missed_pickups(trip, stops, fix.timestamp)

        return IngestResult(status="accepted", kind="location", bus_id=fix.bus_id, trip_id=trip_id, geofence_events=events)

    def _check_missed_pickups(self, trip: Trip, stops: List[RouteStop], now: datetime) -> None:
        missed = self.attendance.missed_pickups(
            trip,
            stops,
            now,
            grace_s=self.config.missed_pickup_grace_s,
            tz=self.config.local_timezone,
        )
        for student_id, stop in missed:
            label = stop.name or stop.stop_id
            print(f"[engine] missed pickup: student={student_id} stop={stop.stop_id} trip={trip.trip_id}")
            self._emit(
                AlertIntent(
                    kind=AlertKind.MISSED_PICKUP,
                    message=f"Student {student_id} was not picked up at {label}",
                    timestamp=now,
                    severity="high",
                    bus_id=trip.bus_id,
                    trip_id=trip.trip_id,
                    student_id=student_id,
                    stop_id=stop.stop_id,
                    data={"pickup_time": stop.pickup_time},
                )
            )

    async def _require_assigned(self, trip: Trip, student_id: str) -> None:
        students = await self._route_students(trip.route_id)
        if student_id not in students:
            raise InvalidTransition(
                "student_not_assigned", student_id=student_id, trip_id=trip.trip_id, route_id=trip.route_id
            )

    async def _apply_scan(self, scan: TagScan, trip_id: str) -> IngestResult:
        trip = self.correlator.get_trip(trip_id)
        student_id = await self._storage("resolve_tag", scan.tag_id)
        await self._require_assigned(trip, student_id)
        record, changed = await self.attendance.apply(
            trip_id,
            student_id,
            action_for_scan(scan.action),
            scan.timestamp,
            stop_id=self.geofence.current_stop(trip_id),
            method=scan.method,
            load=self._load_record,
            save=self._save_record,
        )
        if changed:
            await self._notify_guardians(record, scan.bus_id)
        return IngestResult(
            status="accepted" if changed else "duplicate",
            kind="scan",
            bus_id=scan.bus_id,
            trip_id=trip_id,
            student_id=student_id,
            attendance=record,
        )

    # -- manual operations ------------------------------------------------

    async def record_manual_attendance(
        self,
        trip_id: str,
        student_id: str,
        action: Union[str, AttendanceAction],
        at: Optional[datetime] = None,
        stop_id: Optional[str] = None,
    ) -> AttendanceRecord:
        """Staff override: pickup, drop or absent without a tag read."""
        try:
            action = AttendanceAction(action)
        except ValueError:
            raise InvalidEvent("unknown_action", action=action)
        trip = await self._known_trip(trip_id)
        if trip.status == TripStatus.CANCELLED:
            raise InvalidTransition("trip_cancelled", trip_id=trip_id)
        await self._require_assigned(trip, student_id)
        at = at or self.clock()
        if stop_id is None and action != AttendanceAction.ABSENT:
            stop_id = self.geofence.current_stop(trip_id)
        record, changed = await self.attendance.apply(
            trip_id,
            student_id,
            action,
            at,
            stop_id=stop_id,
            method="manual",
            load=self._load_record,
            save=self._save_record,
        )
        if trip.status in TERMINAL_STATUSES:
            # Corrections after completion go straight to storage
            self.attendance.discard_trip(trip_id)
        if changed:
            await self._notify_guardians(record, trip.bus_id)
        return record

    def raise_emergency(
        self,
        bus_id: str,
        message: str,
        at: Optional[datetime] = None,
        lat: Optional[float] = None,
        lon: Optional[float] = None,
        reported_by: Optional[str] = None,
    ) -> AlertIntent:
        """Pass an SOS straight to the dispatcher."""
        trip = self.correlator.active_trip(bus_id)
        last = self.locations.get(bus_id)
        if (lat is None or lon is None) and last is not None:
            lat, lon = last.lat, last.lon
        intent = AlertIntent(
            kind=AlertKind.EMERGENCY,
            message=message or f"Emergency reported on bus {bus_id}",
            timestamp=at or self.clock(),
            severity="critical",
            bus_id=bus_id,
            trip_id=trip.trip_id if trip else None,
            data={"lat": lat, "lon": lon, "reported_by": reported_by},
        )
        print(f"[engine] EMERGENCY bus={bus_id}: {intent.message}")
        self._emit(intent)
        return intent

    # -- queries ----------------------------------------------------------

    def current_location(self, bus_id: str) -> Optional[LocationFix]:
        return self.locations.get(bus_id)

    async def active_trip(self, bus_id: str) -> Optional[Trip]:
        """The bus's IN_PROGRESS trip; asks storage for buses not loaded yet."""
        if bus_id in self._loaded_buses:
            return self.correlator.active_trip(bus_id)
        return await self._storage("get_active_trip", bus_id)

    async def trip_attendance(self, trip_id: str) -> List[AttendanceRecord]:
        """Every student on the trip's route with their current record."""
        trip = await self._known_trip(trip_id)
        stored = await self._storage("list_attendance", trip_id)
        merged: Dict[str, AttendanceRecord] = {r.student_id: r for r in stored}
        for record in self.attendance.trip_records(trip_id):
            current = merged.get(record.student_id)
            if current is None or record.revision > current.revision:
                merged[record.student_id] = record
        for student_id in await self._route_students(trip.route_id):
            merged.setdefault(student_id, AttendanceRecord(student_id=student_id, trip_id=trip_id))
        return [merged[s] for s in sorted(merged)]

    def geofence_state(self, trip_id: str) -> Dict[str, Any]:
        return self.geofence.get_trip_state(trip_id)

    async def speed_report(self, bus_id: str, start: datetime, end: datetime) -> SpeedAnalysis:
        fixes = await self._storage("query_location_fixes", bus_id, start, end)
        return analyze_speeds(fixes, self.config.speed_limit_kmh)

    async def location_history(self, bus_id: str, start: datetime, end: datetime) -> List[LocationFix]:
        return await self._storage("query_location_fixes", bus_id, start, end)

    async def geofence_events(self, trip_id: str) -> List[GeofenceEvent]:
        """Stored Enter/Exit events of a trip, oldest first."""
        trip = await self._known_trip(trip_id)
        start = trip.actual_start or trip.scheduled_start
        end = trip.actual_end or self.clock() + timedelta(seconds=self.config.future_skew_s)
        return await self._storage("query_geofence_events", trip_id, start, end)

    async def eta(self, bus_id: str) -> EtaEstimate:
        """Arrival estimate at the first stop of the active trip not yet entered."""
        fix = self.locations.get(bus_id)
        if fix is None:
            raise NotFound("no_location", bus_id=bus_id)
        trip = self.correlator.active_trip(bus_id)
        if trip is None:
            raise NoActiveTrip("no_active_trip", bus_id=bus_id)
        stops = await self._route_stops(trip.route_id)
        next_stop = self.geofence.next_stop(trip.trip_id, stops)
        since = fix.timestamp - timedelta(seconds=self.config.eta_speed_window_s)
        recent = await self._storage("query_location_fixes", bus_id, since, fix.timestamp)
        return estimate_eta(fix, trip.trip_id, next_stop, recent, tz=self.config.local_timezone)

    def diagnostics(self) -> Dict[str, Any]:
        active = [
            {"bus_id": bus.bus_id, "trip_id": bus.active_trip_id}
            for bus in self.correlator.buses.values()
            if bus.active_trip_id
        ]
        return {
            "stats": dict(self.stats),
            "active_trips": active,
            "queued_events": {bus_id: len(heap) for bus_id, heap in self._pending.items() if heap},
            "idle_timers": sorted(t for t, task in self._idle_timers.items() if not task.done()),
            "pending_alerts": len(self._alert_tasks),
            "dead_letters": self.dead_letters.count() if self.dead_letters else 0,
            "recent_errors": list(self.recent_errors),
            "recent_alerts": list(self.recent_alerts),
            "correlator_rejections": list(self.correlator.recent_rejections),
            "attendance_rejections": list(self.attendance.recent_rejections),
            "geofence_transitions": list(self.geofence.recent_transitions),
            "speed_violations": list(self.speed.recent_violations),
        }

    # -- dead letters -----------------------------------------------------

    async def replay_dead_letters(self) -> Dict[str, int]:
        """Re-apply everything in the dead-letter sink. Failures go back in."""
        summary = {"replayed": 0, "failed": 0}
        if self.dead_letters is None:
            return summary
        for entry in self.dead_letters.drain():
            kind = entry.get("kind") or "event"
            payload = entry.get("payload")
            try:
                ok = await self._replay_one(kind, payload, entry.get("received_at"))
            except IngestError as exc:
                self._dead_letter(payload, exc, kind=kind)
                ok = False
            summary["replayed" if ok else "failed"] += 1
        print(f"[deadletter] replay: {summary['replayed']} replayed, {summary['failed']} failed")
        return summary

    async def _replay_one(self, kind: str, payload: Any, received_at: Optional[str]) -> bool:
        if kind == "event":
            when = parse_iso8601_utc(received_at) if received_at else None
            result = await self.submit(payload, received_at=when)
            return result.status != "dead_lettered"
        if kind == "geofence_event":
            event = GeofenceEvent(
                bus_id=payload["bus_id"],
                trip_id=payload["trip_id"],
                stop_id=payload["stop_id"],
                kind=GeofenceKind(payload["kind"]),
                timestamp=parse_iso8601_utc(payload["timestamp"]),
                distance_m=payload.get("distance_m"),
            )
            await self._storage("save_geofence_event", event)
            return True
        if kind == "trip":
            await self._storage("save_trip", Trip.from_dict(payload))
            return True
        if kind == "sweep":
            trip = await self._known_trip(payload["trip_id"])
            swept = await self._sweep(trip)
            if trip.status in TERMINAL_STATUSES:
                self.attendance.discard_trip(trip.trip_id)
            return swept
        print(f"[deadletter] unknown entry kind {kind!r}, skipping")
        return False

    # -- lifecycle --------------------------------------------------------

    async def close(self) -> None:
        for task in list(self._idle_timers.values()) + list(self._workers.values()):
            task.cancel()
        for task in list(self._idle_timers.values()) + list(self._workers.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._idle_timers.clear()
        self._workers.clear()
        for heap in self._pending.values():
            for *_, future in heap:
                if not future.done():
                    future.cancel()
            heap.clear()
        await self.drain()
        await self.dispatcher.close()


__all__ = ["IngestEngine", "IngestResult"]
