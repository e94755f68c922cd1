from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from collections import deque

from ingest_config import IngestConfig
from ingest_models import Bus, InvalidTransition, NoActiveTrip, NotFound, Trip, TripStatus, _isoformat, _to_utc


TERMINAL_STATUSES = {TripStatus.COMPLETED, TripStatus.CANCELLED}


@dataclass
class TripTransition:
    """A status change the engine still has to persist and react to."""
    trip: Trip
    previous: TripStatus
    current: TripStatus
    at: datetime


class TripCorrelator:
    """
    Maps events to the trip that owns them.

    A bus has at most one IN_PROGRESS trip. A SCHEDULED trip starts on the
    first accepted event timestamped at or after scheduled_start - grace.
    Trips end on an explicit signal or after idle_timeout without events.

    Every status change is queued as a TripTransition; drain_transitions()
    hands each one out exactly once.
    """

    def __init__(self, config: Optional[IngestConfig] = None):
        self.config = config or IngestConfig()
        self.trips: Dict[str, Trip] = {}
        self.buses: Dict[str, Bus] = {}
        self.last_event_at: Dict[str, datetime] = {}
        self._transitions: List[TripTransition] = []
        self.recent_rejections: deque = deque(maxlen=50)

    # -- trip table -------------------------------------------------------

    def load_trips(self, trips: Iterable[Trip]) -> None:
        """Merge trips from storage without losing local progress."""
        for trip in trips:
            local = self.trips.get(trip.trip_id)
            # Once a trip has moved locally, this correlator owns its status
            if local is not None and local.status != TripStatus.SCHEDULED:
                continue
            self.trips[trip.trip_id] = trip
            bus = self._bus(trip.bus_id)
            if trip.status == TripStatus.IN_PROGRESS:
                bus.active_trip_id = trip.trip_id
                self.last_event_at.setdefault(trip.trip_id, trip.actual_start or trip.scheduled_start)
            elif bus.active_trip_id == trip.trip_id:
                bus.active_trip_id = None

    def get_trip(self, trip_id: str) -> Trip:
        trip = self.trips.get(trip_id)
        if trip is None:
            raise NotFound("trip_not_found", trip_id=trip_id)
        return trip

    def active_trip(self, bus_id: str) -> Optional[Trip]:
        bus = self.buses.get(bus_id)
        if bus is None or bus.active_trip_id is None:
            return None
        return self.trips.get(bus.active_trip_id)

    def trips_for_bus(self, bus_id: str) -> List[Trip]:
        trips = [t for t in self.trips.values() if t.bus_id == bus_id]
        trips.sort(key=lambda t: t.scheduled_start)
        return trips

    def _bus(self, bus_id: str) -> Bus:
        bus = self.buses.get(bus_id)
        if bus is None:
            bus = Bus(bus_id=bus_id)
            self.buses[bus_id] = bus
        return bus

    # -- correlation ------------------------------------------------------

    def _window_opens(self, trip: Trip) -> datetime:
        return trip.scheduled_start - timedelta(seconds=self.config.grace_period_s)

    def _startable(self, trip: Trip, timestamp: datetime) -> bool:
        if trip.status != TripStatus.SCHEDULED:
            return False
        if timestamp < self._window_opens(trip):
            return False
        if trip.scheduled_end is not None:
            latest = trip.scheduled_end + timedelta(seconds=self.config.idle_timeout_s)
            if timestamp > latest:
                return False
        return True

    def _reject(self, reason: str, bus_id: str, timestamp: datetime, **detail) -> NoActiveTrip:
        self.recent_rejections.append({
            "reason": reason,
            "bus_id": bus_id,
            "timestamp": _isoformat(timestamp),
            **detail,
        })
        return NoActiveTrip(reason, bus_id=bus_id, **detail)

    def correlate(self, bus_id: str, timestamp: datetime, trip_id: Optional[str] = None) -> str:
        """Return the id of the trip that owns an event, starting it if due."""
        timestamp = _to_utc(timestamp)
        active = self.active_trip(bus_id)

        if active is not None:
            if trip_id is not None and trip_id != active.trip_id:
                raise self._reject("trip_mismatch", bus_id, timestamp, trip_id=trip_id, active_trip_id=active.trip_id)
            if timestamp < self._window_opens(active):
                raise self._reject("before_trip_window", bus_id, timestamp, trip_id=active.trip_id)
            self.touch(active.trip_id, timestamp)
            return active.trip_id

        candidates = [t for t in self.trips_for_bus(bus_id) if self._startable(t, timestamp)]
        if trip_id is not None:
            candidates = [t for t in candidates if t.trip_id == trip_id]
        if not candidates:
            raise self._reject("no_active_trip", bus_id, timestamp, trip_id=trip_id)

        # Latest scheduled start wins when windows overlap
        trip = max(candidates, key=lambda t: t.scheduled_start)
        self._start(trip, timestamp)
        return trip.trip_id

    def touch(self, trip_id: str, timestamp: datetime) -> None:
        timestamp = _to_utc(timestamp)
        previous = self.last_event_at.get(trip_id)
        if previous is None or timestamp > previous:
            self.last_event_at[trip_id] = timestamp

    # -- transitions ------------------------------------------------------

    def _record(self, trip: Trip, previous: TripStatus, at: datetime) -> None:
        self._transitions.append(TripTransition(trip=trip, previous=previous, current=trip.status, at=at))
        print(f"[correlator] trip={trip.trip_id} bus={trip.bus_id} {previous.value} -> {trip.status.value}")

    def _start(self, trip: Trip, at: datetime) -> None:
        bus = self._bus(trip.bus_id)
        if bus.active_trip_id is not None and bus.active_trip_id != trip.trip_id:
            raise InvalidTransition(
                "bus_has_active_trip", bus_id=trip.bus_id, active_trip_id=bus.active_trip_id
            )
        previous = trip.status
        trip.status = TripStatus.IN_PROGRESS
        trip.actual_start = at
        bus.active_trip_id = trip.trip_id
        self.last_event_at[trip.trip_id] = at
        self._record(trip, previous, at)

    def start_trip(self, trip_id: str, at: datetime) -> Trip:
        """Explicitly start a scheduled trip."""
        trip = self.get_trip(trip_id)
        at = _to_utc(at)
        if trip.status == TripStatus.IN_PROGRESS:
            return trip
        if trip.status != TripStatus.SCHEDULED:
            raise InvalidTransition("trip_not_startable", trip_id=trip_id, status=trip.status.value)
        self._start(trip, at)
        return trip

    def _finish(self, trip_id: str, at: datetime, status: TripStatus, reason: str) -> Tuple[Trip, bool]:
        trip = self.get_trip(trip_id)
        at = _to_utc(at)
        if trip.status in TERMINAL_STATUSES:
            return trip, False
        if status == TripStatus.COMPLETED and trip.status != TripStatus.IN_PROGRESS:
            raise InvalidTransition("trip_not_in_progress", trip_id=trip_id, status=trip.status.value)
        previous = trip.status
        trip.status = status
        trip.actual_end = at
        trip.end_reason = reason
        bus = self._bus(trip.bus_id)
        if bus.active_trip_id == trip.trip_id:
            bus.active_trip_id = None
        self.last_event_at.pop(trip.trip_id, None)
        self._record(trip, previous, at)
        return trip, True

    def end_trip(self, trip_id: str, at: datetime, reason: str = "ended") -> Tuple[Trip, bool]:
        """Complete a trip. Returns (trip, changed)."""
        return self._finish(trip_id, at, TripStatus.COMPLETED, reason)

    def cancel_trip(self, trip_id: str, at: datetime) -> Tuple[Trip, bool]:
        return self._finish(trip_id, at, TripStatus.CANCELLED, "cancelled")

    def idle_trips(self, now: datetime) -> List[str]:
        """In-progress trips with no event for idle_timeout."""
        now = _to_utc(now)
        cutoff = now - timedelta(seconds=self.config.idle_timeout_s)
        idle: List[str] = []
        for trip_id, last_seen in self.last_event_at.items():
            trip = self.trips.get(trip_id)
            if trip is None or trip.status != TripStatus.IN_PROGRESS:
                continue
            if last_seen <= cutoff:
                idle.append(trip_id)
        return idle

    def drain_transitions(self) -> List[TripTransition]:
        transitions, self._transitions = self._transitions, []
        return transitions


__all__ = ["TERMINAL_STATUSES", "TripCorrelator", "TripTransition"]
