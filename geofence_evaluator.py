from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set
from collections import deque
import math

from ingest_models import (
    AlertIntent,
    AlertKind,
    GeofenceEvent,
    GeofenceKind,
    LocationFix,
    RestrictedZone,
    RouteStop,
    _isoformat,
)


# Exit radius multiplier; keeps noisy fixes near the boundary from flapping
DEFAULT_EXIT_HYSTERESIS = 1.1

EARTH_RADIUS_M = 6371000.0


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two lat/lon points."""
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


@dataclass
class FenceState:
    """Last known Inside/Outside state of one bus against one fence."""
    inside: bool = False
    ever_entered: bool = False
    entered_at: Optional[datetime] = None
    last_distance_m: Optional[float] = None
    last_seen: Optional[datetime] = None


@dataclass
class TripFenceState:
    """All geofence state owned by one trip. Discarded when the trip ends."""
    stops: Dict[str, FenceState] = field(default_factory=dict)
    zones: Dict[str, FenceState] = field(default_factory=dict)
    reported_skips: Set[str] = field(default_factory=set)
    enter_count: int = 0
    exit_count: int = 0


class GeofenceEvaluator:
    """
    Turns a stream of location fixes into stop Enter/Exit events.

    State is an explicit map trip_id -> stop_id -> FenceState:
    - Enter is emitted only on an Outside -> Inside transition
    - Exit is emitted only on an Inside -> Outside transition
    - A fix that leaves the state unchanged emits nothing

    A fence counts as entered at distance <= radius and as left only at
    distance > radius * exit_hysteresis.
    """

    def __init__(self, exit_hysteresis: float = DEFAULT_EXIT_HYSTERESIS):
        if exit_hysteresis < 1.0:
            raise ValueError("exit_hysteresis must be >= 1.0")
        self.exit_hysteresis = exit_hysteresis
        self.trip_state: Dict[str, TripFenceState] = {}
        self.recent_transitions: deque = deque(maxlen=100)

    def _state(self, trip_id: str) -> TripFenceState:
        state = self.trip_state.get(trip_id)
        if state is None:
            state = TripFenceState()
            self.trip_state[trip_id] = state
        return state

    def _classify(self, fence: FenceState, distance: float, radius: float) -> bool:
        if fence.inside:
            return distance <= radius * self.exit_hysteresis
        return distance <= radius

    def evaluate(
        self,
        trip_id: str,
        bus_id: str,
        fix: LocationFix,
        stops: Sequence[RouteStop],
    ) -> List[GeofenceEvent]:
        """Test one fix against every stop fence of the trip's route."""
        state = self._state(trip_id)
        events: List[GeofenceEvent] = []
        for stop in sorted(stops, key=lambda s: s.sequence):
            fence = state.stops.get(stop.stop_id)
            if fence is None:
                fence = FenceState()
                state.stops[stop.stop_id] = fence

            distance = haversine_m(fix.lat, fix.lon, stop.lat, stop.lon)
            inside = self._classify(fence, distance, stop.radius_m)
            fence.last_distance_m = distance
            fence.last_seen = fix.timestamp

            if inside == fence.inside:
                continue

            fence.inside = inside
            if inside:
                fence.ever_entered = True
                fence.entered_at = fix.timestamp
                state.enter_count += 1
                kind = GeofenceKind.ENTER
            else:
                state.exit_count += 1
                kind = GeofenceKind.EXIT

            event = GeofenceEvent(
                bus_id=bus_id,
                trip_id=trip_id,
                stop_id=stop.stop_id,
                kind=kind,
                timestamp=fix.timestamp,
                distance_m=round(distance, 2),
            )
            events.append(event)
            self._log_transition(event, stop.radius_m)
        return events

    def skipped_stops(
        self,
        trip_id: str,
        bus_id: str,
        events: Iterable[GeofenceEvent],
        stops: Sequence[RouteStop],
    ) -> List[AlertIntent]:
        """Breach alerts for earlier stops never entered before a later Enter."""
        state = self._state(trip_id)
        by_id = {stop.stop_id: stop for stop in stops}
        alerts: List[AlertIntent] = []
        for event in events:
            if event.kind != GeofenceKind.ENTER:
                continue
            entered = by_id.get(event.stop_id)
            if entered is None:
                continue
            for stop in sorted(stops, key=lambda s: s.sequence):
                if stop.sequence >= entered.sequence:
                    break
                fence = state.stops.get(stop.stop_id)
                if (fence is not None and fence.ever_entered) or stop.stop_id in state.reported_skips:
                    continue
                state.reported_skips.add(stop.stop_id)
                label = stop.name or stop.stop_id
                print(f"[geofence] stop skipped: trip={trip_id} bus={bus_id} stop={stop.stop_id}")
                alerts.append(
                    AlertIntent(
                        kind=AlertKind.GEOFENCE_BREACH,
                        message=f"Bus {bus_id} skipped stop {label}",
                        timestamp=event.timestamp,
                        severity="high",
                        bus_id=bus_id,
                        trip_id=trip_id,
                        stop_id=stop.stop_id,
                        data={"reason": "stop_skipped", "next_stop_id": entered.stop_id},
                    )
                )
        return alerts

    def check_zones(
        self,
        trip_id: str,
        bus_id: str,
        fix: LocationFix,
        zones: Sequence[RestrictedZone],
    ) -> List[AlertIntent]:
        """Breach alerts for entries into restricted zones, one per entry."""
        if not zones:
            return []
        state = self._state(trip_id)
        alerts: List[AlertIntent] = []
        for zone in zones:
            fence = state.zones.get(zone.zone_id)
            if fence is None:
                fence = FenceState()
                state.zones[zone.zone_id] = fence
            distance = haversine_m(fix.lat, fix.lon, zone.lat, zone.lon)
            inside = self._classify(fence, distance, zone.radius_m)
            fence.last_distance_m = distance
            fence.last_seen = fix.timestamp
            if inside and not fence.inside:
                fence.ever_entered = True
                fence.entered_at = fix.timestamp
                label = zone.name or zone.zone_id
                print(f"[geofence] restricted zone entered: trip={trip_id} bus={bus_id} zone={zone.zone_id}")
                alerts.append(
                    AlertIntent(
                        kind=AlertKind.GEOFENCE_BREACH,
                        message=f"Bus {bus_id} entered restricted zone {label}",
                        timestamp=fix.timestamp,
                        severity="critical",
                        bus_id=bus_id,
                        trip_id=trip_id,
                        data={
                            "reason": "restricted_zone",
                            "zone_id": zone.zone_id,
                            "distance_m": round(distance, 2),
                            "lat": fix.lat,
                            "lon": fix.lon,
                        },
                    )
                )
            fence.inside = inside
        return alerts

    def current_stop(self, trip_id: str) -> Optional[str]:
        """The stop the bus is currently inside, nearest first."""
        state = self.trip_state.get(trip_id)
        if state is None:
            return None
        inside = [
            (fence.last_distance_m if fence.last_distance_m is not None else math.inf, stop_id)
            for stop_id, fence in state.stops.items()
            if fence.inside
        ]
        if not inside:
            return None
        return min(inside)[1]

    def next_stop(self, trip_id: str, stops: Sequence[RouteStop]) -> Optional[RouteStop]:
        """First stop by sequence the bus has not entered on this trip."""
        state = self.trip_state.get(trip_id)
        for stop in sorted(stops, key=lambda s: s.sequence):
            fence = state.stops.get(stop.stop_id) if state is not None else None
            if fence is None or not fence.ever_entered:
                return stop
        return None

    def discard_trip(self, trip_id: str) -> None:
        self.trip_state.pop(trip_id, None)

    def get_trip_state(self, trip_id: str) -> Dict[str, Any]:
        state = self.trip_state.get(trip_id)
        if state is None:
            return {"trip_id": trip_id, "tracked": False, "stops": []}
        return {
            "trip_id": trip_id,
            "tracked": True,
            "enter_count": state.enter_count,
            "exit_count": state.exit_count,
            "skipped_stop_ids": sorted(state.reported_skips),
            "stops": [
                {
                    "stop_id": stop_id,
                    "inside": fence.inside,
                    "ever_entered": fence.ever_entered,
                    "entered_at": _isoformat(fence.entered_at),
                    "last_distance_m": fence.last_distance_m,
                    "last_seen": _isoformat(fence.last_seen),
                }
                for stop_id, fence in state.stops.items()
            ],
        }

    def _log_transition(self, event: GeofenceEvent, radius_m: float) -> None:
        self.recent_transitions.append({
            "timestamp": _isoformat(event.timestamp),
            "bus_id": event.bus_id,
            "trip_id": event.trip_id,
            "stop_id": event.stop_id,
            "kind": event.kind.value,
            "distance_m": event.distance_m,
            "radius_m": radius_m,
        })
        print(
            f"[geofence] {event.kind.value}: bus={event.bus_id} trip={event.trip_id} "
            f"stop={event.stop_id} distance={event.distance_m}m"
        )


__all__ = ["GeofenceEvaluator", "haversine_m"]
