from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence
from zoneinfo import ZoneInfo

from geofence_evaluator import haversine_m
from ingest_config import IngestConfig
from ingest_models import AlertIntent, AlertKind, LocationFix, RouteStop, _isoformat


SEVERITY_ORDER = {"warning": 1, "violation": 2, "critical": 3}


@dataclass
class SpeedAnalysis:
    fix_count: int
    average_kmh: float
    max_kmh: float
    min_kmh: float
    violations: int
    distance_km: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "fix_count": self.fix_count,
            "average_kmh": self.average_kmh,
            "max_kmh": self.max_kmh,
            "min_kmh": self.min_kmh,
            "violations": self.violations,
            "distance_km": self.distance_km,
        }


def analyze_speeds(fixes: Sequence[LocationFix], limit_kmh: float) -> SpeedAnalysis:
    """Summarize reported speeds and travelled distance for a run of fixes."""
    ordered = sorted(fixes, key=lambda f: f.timestamp)
    speeds = [f.speed_kmh for f in ordered if f.speed_kmh is not None]
    distance_m = 0.0
    for prev, curr in zip(ordered, ordered[1:]):
        distance_m += haversine_m(prev.lat, prev.lon, curr.lat, curr.lon)
    if not speeds:
        return SpeedAnalysis(len(ordered), 0.0, 0.0, 0.0, 0, round(distance_m / 1000.0, 1))
    return SpeedAnalysis(
        fix_count=len(ordered),
        average_kmh=round(sum(speeds) / len(speeds), 1),
        max_kmh=round(max(speeds), 1),
        min_kmh=round(min(speeds), 1),
        violations=sum(1 for s in speeds if s > limit_kmh),
        distance_km=round(distance_m / 1000.0, 1),
    )


# Fallback and floor (km/h) for the speed used in ETA estimates
ETA_DEFAULT_SPEED_KMH = 30.0
ETA_MIN_SPEED_KMH = 10.0
ETA_SPEED_SAMPLES = 50


def traffic_factor(local_hour: int) -> float:
    """Slowdown applied to the average speed: school runs and lunch hour."""
    if 7 <= local_hour <= 9 or 16 <= local_hour <= 18:
        return 1.3
    if 11 <= local_hour <= 13:
        return 1.1
    return 1.0


@dataclass
class EtaEstimate:
    bus_id: str
    trip_id: str
    lat: float
    lon: float
    as_of: datetime
    next_stop_id: Optional[str] = None
    distance_m: Optional[int] = None
    average_kmh: Optional[float] = None
    traffic_factor: Optional[float] = None
    duration_min: Optional[float] = None
    estimated_arrival: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bus_id": self.bus_id,
            "trip_id": self.trip_id,
            "location": {"lat": self.lat, "lon": self.lon},
            "as_of": _isoformat(self.as_of),
            "next_stop_id": self.next_stop_id,
            "distance_m": self.distance_m,
            "average_kmh": self.average_kmh,
            "traffic_factor": self.traffic_factor,
            "duration_min": self.duration_min,
            "estimated_arrival": _isoformat(self.estimated_arrival),
        }


def estimate_eta(
    fix: LocationFix,
    trip_id: str,
    next_stop: Optional[RouteStop],
    recent: Sequence[LocationFix],
    tz: str = "UTC",
) -> EtaEstimate:
    """
    Arrival estimate at next_stop from the bus's latest fix.

    Speed is the mean of the newest reported speeds in `recent` (30 km/h when
    none are reported, never below 10 km/h), divided by the traffic factor
    for the local hour of the fix. The arrival is relative to the fix time.
    """
    estimate = EtaEstimate(bus_id=fix.bus_id, trip_id=trip_id, lat=fix.lat, lon=fix.lon, as_of=fix.timestamp)
    if next_stop is None:
        return estimate
    distance = haversine_m(fix.lat, fix.lon, next_stop.lat, next_stop.lon)
    newest = sorted(recent, key=lambda f: f.timestamp, reverse=True)
    speeds = [f.speed_kmh for f in newest if f.speed_kmh is not None][:ETA_SPEED_SAMPLES]
    average = sum(speeds) / len(speeds) if speeds else ETA_DEFAULT_SPEED_KMH
    effective = max(average, ETA_MIN_SPEED_KMH)
    factor = traffic_factor(fix.timestamp.astimezone(ZoneInfo(tz)).hour)
    duration_min = distance / 1000.0 / (effective / factor) * 60.0

    estimate.next_stop_id = next_stop.stop_id
    estimate.distance_m = round(distance)
    estimate.average_kmh = round(effective, 1)
    estimate.traffic_factor = factor
    estimate.duration_min = round(duration_min, 1)
    estimate.estimated_arrival = fix.timestamp + timedelta(minutes=duration_min)
    return estimate


class SpeedMonitor:
    """
    Raises SPEED_VIOLATION intents from the speed reported on each fix.

    One intent per escalation (warning -> violation -> critical) per trip.
    The trip re-arms once the bus slows below the warning band.
    """

    def __init__(self, config: Optional[IngestConfig] = None):
        self.config = config or IngestConfig()
        self.level: Dict[str, int] = {}
        self.recent_violations: deque = deque(maxlen=50)

    def severity(self, speed_kmh: float) -> Optional[str]:
        if speed_kmh >= self.config.speed_critical_kmh:
            return "critical"
        if speed_kmh >= self.config.speed_violation_kmh:
            return "violation"
        if speed_kmh >= self.config.speed_warning_kmh:
            return "warning"
        return None

    def check(self, trip_id: str, fix: LocationFix) -> Optional[AlertIntent]:
        if fix.speed_kmh is None:
            return None
        severity = self.severity(fix.speed_kmh)
        if severity is None:
            self.level.pop(trip_id, None)
            return None
        rank = SEVERITY_ORDER[severity]
        if rank <= self.level.get(trip_id, 0):
            return None
        self.level[trip_id] = rank

        limit = self.config.speed_limit_kmh
        self.recent_violations.append({
            "trip_id": trip_id,
            "bus_id": fix.bus_id,
            "speed_kmh": fix.speed_kmh,
            "severity": severity,
            "timestamp": _isoformat(fix.timestamp),
        })
        print(f"[speed] {severity}: bus={fix.bus_id} trip={trip_id} speed={fix.speed_kmh}km/h limit={limit}km/h")
        return AlertIntent(
            kind=AlertKind.SPEED_VIOLATION,
            message=f"Bus {fix.bus_id} at {fix.speed_kmh:.0f} km/h (limit {limit:.0f} km/h)",
            timestamp=fix.timestamp,
            severity="critical" if severity == "critical" else "high",
            bus_id=fix.bus_id,
            trip_id=trip_id,
            data={
                "speed_kmh": fix.speed_kmh,
                "speed_limit_kmh": limit,
                "band": severity,
                "lat": fix.lat,
                "lon": fix.lon,
            },
        )

    def discard_trip(self, trip_id: str) -> None:
        self.level.pop(trip_id, None)


__all__ = ["EtaEstimate", "SpeedAnalysis", "SpeedMonitor", "analyze_speeds", "estimate_eta", "traffic_factor"]
