"""
Ingress normalization for raw bus telemetry.

Raw events arrive as loosely-shaped dicts from the HTTP endpoints, device
pushes or queue consumers. normalize() validates one payload and turns it
into a canonical LocationFix or TagScan. It has no side effects.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Sequence, Union
import math

from ingest_config import IngestConfig
from ingest_models import InvalidEvent, LocationFix, ScanAction, TagScan, parse_iso8601_utc


CanonicalEvent = Union[LocationFix, TagScan]

BUS_ID_KEYS = ("bus_id", "busId", "BusID", "vehicle_id", "VehicleID")
TRIP_ID_KEYS = ("trip_id", "tripId", "TripID")
LAT_KEYS = ("latitude", "lat", "Latitude", "Lat")
LON_KEYS = ("longitude", "lon", "lng", "Longitude", "Lon", "Lng")
SPEED_KEYS = ("speed_kmh", "speed", "Speed")
HEADING_KEYS = ("heading_deg", "heading", "Heading")
ACCURACY_KEYS = ("accuracy_m", "accuracy", "Accuracy")
TIMESTAMP_KEYS = ("timestamp", "ts", "time", "Timestamp")

# Tag keys and the reader method they imply
TAG_KEYS = (
    ("rfidTag", "rfid"),
    ("rfid_tag", "rfid"),
    ("nfcTag", "nfc"),
    ("nfc_tag", "nfc"),
    ("tag_id", None),
    ("tagId", None),
    ("tag", None),
)

LOCATION_TYPES = {"location", "gps", "fix", "location_fix"}
SCAN_TYPES = {"scan", "tag", "tag_scan", "rfid", "nfc"}
SCAN_METHODS = {"rfid", "nfc", "manual"}

# Epoch values above this are treated as milliseconds
_EPOCH_MS_CUTOFF = 1e11


def _first(raw: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _normalize_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _parse_number(value: Any, field_name: str) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise InvalidEvent("invalid_number", field=field_name, value=value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidEvent("invalid_number", field=field_name, value=value)
    if not math.isfinite(number):
        raise InvalidEvent("invalid_number", field=field_name, value=value)
    return number


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 text, epoch seconds/milliseconds or a datetime into UTC."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, bool):
        raise InvalidEvent("invalid_timestamp", value=value)
    if isinstance(value, (int, float)):
        seconds = float(value)
        if not math.isfinite(seconds):
            raise InvalidEvent("invalid_timestamp", value=value)
        if abs(seconds) >= _EPOCH_MS_CUTOFF:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise InvalidEvent("invalid_timestamp", value=value)
    text = str(value).strip()
    try:
        return parse_iso8601_utc(text)
    except ValueError:
        pass
    try:
        return parse_timestamp(float(text))
    except ValueError:
        raise InvalidEvent("invalid_timestamp", value=value)


def normalize_heading_deg(value: float) -> float:
    return value % 360.0


def _event_type(raw: Mapping[str, Any]) -> str:
    declared = raw.get("type") or raw.get("kind") or raw.get("event_type")
    if declared is not None:
        text = str(declared).strip().lower()
        if text in LOCATION_TYPES:
            return "location"
        if text in SCAN_TYPES:
            return "scan"
        raise InvalidEvent("unknown_event_type", type=declared)
    if any(raw.get(key) is not None for key, _ in TAG_KEYS):
        return "scan"
    if _first(raw, LAT_KEYS) is not None or _first(raw, LON_KEYS) is not None:
        return "location"
    raise InvalidEvent("unknown_event_type", type=None)


def _check_time(timestamp: datetime, received_at: datetime, config: IngestConfig) -> None:
    oldest = received_at - timedelta(seconds=config.staleness_s)
    if timestamp < oldest:
        raise InvalidEvent(
            "stale",
            age_s=round((received_at - timestamp).total_seconds(), 3),
            threshold_s=config.staleness_s,
        )
    newest = received_at + timedelta(seconds=config.future_skew_s)
    if timestamp > newest:
        raise InvalidEvent(
            "future_timestamp",
            ahead_s=round((timestamp - received_at).total_seconds(), 3),
            threshold_s=config.future_skew_s,
        )


def _normalize_location(
    raw: Mapping[str, Any], bus_id: str, timestamp: datetime
) -> LocationFix:
    lat = _parse_number(_first(raw, LAT_KEYS), "lat")
    lon = _parse_number(_first(raw, LON_KEYS), "lon")
    if lat is None or lon is None:
        raise InvalidEvent("missing_coordinates", bus_id=bus_id)
    if abs(lat) > 90.0:
        raise InvalidEvent("latitude_out_of_range", lat=lat)
    if abs(lon) > 180.0:
        raise InvalidEvent("longitude_out_of_range", lon=lon)

    speed = _parse_number(_first(raw, SPEED_KEYS), "speed")
    if speed is not None and speed < 0:
        raise InvalidEvent("negative_speed", speed=speed)
    heading = _parse_number(_first(raw, HEADING_KEYS), "heading")
    if heading is not None:
        heading = normalize_heading_deg(heading)
    accuracy = _parse_number(_first(raw, ACCURACY_KEYS), "accuracy")
    if accuracy is not None and accuracy < 0:
        raise InvalidEvent("negative_accuracy", accuracy=accuracy)

    return LocationFix(
        bus_id=bus_id,
        lat=lat,
        lon=lon,
        timestamp=timestamp,
        speed_kmh=speed,
        heading_deg=heading,
        accuracy_m=accuracy,
        trip_id=_normalize_id(_first(raw, TRIP_ID_KEYS)),
    )


def _normalize_scan(raw: Mapping[str, Any], bus_id: str, timestamp: datetime) -> TagScan:
    tag_id: Optional[str] = None
    method: Optional[str] = None
    for key, implied_method in TAG_KEYS:
        tag_id = _normalize_id(raw.get(key))
        if tag_id is not None:
            method = implied_method
            break
    if tag_id is None:
        raise InvalidEvent("missing_tag", bus_id=bus_id)

    declared_method = raw.get("method")
    if declared_method is not None:
        method = str(declared_method).strip().lower()
        if method not in SCAN_METHODS:
            raise InvalidEvent("unknown_scan_method", method=declared_method)
    if method is None:
        declared_type = str(raw.get("type") or "").strip().lower()
        method = declared_type if declared_type in SCAN_METHODS else "rfid"

    raw_action = raw.get("action")
    if raw_action is None:
        raise InvalidEvent("missing_action", tag_id=tag_id)
    try:
        action = ScanAction(str(raw_action).strip().lower())
    except ValueError:
        raise InvalidEvent("unknown_action", action=raw_action)

    return TagScan(
        tag_id=tag_id,
        bus_id=bus_id,
        timestamp=timestamp,
        action=action,
        trip_id=_normalize_id(_first(raw, TRIP_ID_KEYS)),
        method=method,
    )


def normalize(
    raw: Mapping[str, Any],
    received_at: Optional[datetime] = None,
    config: Optional[IngestConfig] = None,
) -> CanonicalEvent:
    """Validate a raw payload and return its canonical event.

    Raises InvalidEvent for missing identifiers, out-of-range coordinates,
    timestamps older than the staleness threshold (relative to
    received_at) or too far in the future.
    """
    if not isinstance(raw, Mapping):
        raise InvalidEvent("not_an_object")
    config = config or IngestConfig()
    if received_at is None:
        received_at = datetime.now(timezone.utc)
    elif received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=timezone.utc)

    kind = _event_type(raw)
    bus_id = _normalize_id(_first(raw, BUS_ID_KEYS))
    if bus_id is None:
        raise InvalidEvent("missing_bus_id")

    timestamp = parse_timestamp(_first(raw, TIMESTAMP_KEYS)) or received_at
    _check_time(timestamp, received_at, config)

    if kind == "location":
        return _normalize_location(raw, bus_id, timestamp)
    return _normalize_scan(raw, bus_id, timestamp)


__all__ = ["CanonicalEvent", "normalize", "normalize_heading_deg", "parse_timestamp"]
