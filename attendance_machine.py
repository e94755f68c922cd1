"""
Attendance state machine for (student, trip) pairs.

    NOT_RECORDED --pickup--> PICKED_UP --drop--> DROPPED_OFF
    NOT_RECORDED --absent--> ABSENT

Anything else is an InvalidTransition, except re-applying an action that is
already satisfied at (nearly) the same time, which is a no-op success so
duplicate reads from flaky tag readers do not surface as errors.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, time as dtime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple
from collections import deque
from zoneinfo import ZoneInfo
import asyncio

from ingest_models import (
    AttendanceRecord,
    AttendanceStatus,
    InvalidTransition,
    RouteStop,
    ScanAction,
    Trip,
)


class AttendanceAction(str, Enum):
    PICKUP = "pickup"
    DROP = "drop"
    ABSENT = "absent"


TRANSITIONS: Dict[Tuple[AttendanceStatus, AttendanceAction], AttendanceStatus] = {
    (AttendanceStatus.NOT_RECORDED, AttendanceAction.PICKUP): AttendanceStatus.PICKED_UP,
    (AttendanceStatus.PICKED_UP, AttendanceAction.DROP): AttendanceStatus.DROPPED_OFF,
    (AttendanceStatus.NOT_RECORDED, AttendanceAction.ABSENT): AttendanceStatus.ABSENT,
}

# Rejection reason for each invalid (state, action) pair
REJECTIONS: Dict[Tuple[AttendanceStatus, AttendanceAction], str] = {
    (AttendanceStatus.NOT_RECORDED, AttendanceAction.DROP): "drop_before_pickup",
    (AttendanceStatus.PICKED_UP, AttendanceAction.PICKUP): "already_picked_up",
    (AttendanceStatus.PICKED_UP, AttendanceAction.ABSENT): "already_picked_up",
    (AttendanceStatus.DROPPED_OFF, AttendanceAction.PICKUP): "already_dropped_off",
    (AttendanceStatus.DROPPED_OFF, AttendanceAction.DROP): "already_dropped_off",
    (AttendanceStatus.DROPPED_OFF, AttendanceAction.ABSENT): "already_dropped_off",
    (AttendanceStatus.ABSENT, AttendanceAction.PICKUP): "marked_absent",
    (AttendanceStatus.ABSENT, AttendanceAction.DROP): "marked_absent",
}


def action_for_scan(action: ScanAction) -> AttendanceAction:
    return AttendanceAction(action.value)


def _within(a: Optional[datetime], b: datetime, window_s: float) -> bool:
    if a is None:
        return False
    return abs((b - a).total_seconds()) <= window_s


def _is_duplicate(record: AttendanceRecord, action: AttendanceAction, timestamp: datetime, window_s: float) -> bool:
    if action == AttendanceAction.PICKUP:
        return record.status in (AttendanceStatus.PICKED_UP, AttendanceStatus.DROPPED_OFF) and _within(
            record.pickup_time, timestamp, window_s
        )
    if action == AttendanceAction.DROP:
        return record.status == AttendanceStatus.DROPPED_OFF and _within(record.drop_time, timestamp, window_s)
    return record.status == AttendanceStatus.ABSENT


def apply_transition(
    record: AttendanceRecord,
    action: AttendanceAction,
    timestamp: datetime,
    *,
    duplicate_window_s: float,
    stop_id: Optional[str] = None,
    method: Optional[str] = None,
) -> Tuple[AttendanceRecord, bool]:
    """Return (new_record, changed). Never mutates the given record."""
    if _is_duplicate(record, action, timestamp, duplicate_window_s):
        return record, False

    target = TRANSITIONS.get((record.status, action))
    if target is None:
        reason = REJECTIONS.get((record.status, action), "invalid_transition")
        raise InvalidTransition(
            reason,
            student_id=record.student_id,
            trip_id=record.trip_id,
            status=record.status.value,
            action=action.value,
        )

    updated = replace(record, status=target, revision=record.revision + 1, updated_at=timestamp)
    if action == AttendanceAction.PICKUP:
        updated.pickup_time = timestamp
        updated.pickup_stop_id = stop_id
    elif action == AttendanceAction.DROP:
        updated.drop_time = timestamp
        updated.drop_stop_id = stop_id
    if method is not None:
        updated.method = method
    return updated, True


RecordLoader = Callable[[str, str], Awaitable[Optional[AttendanceRecord]]]
RecordSaver = Callable[[AttendanceRecord], Awaitable[None]]


class AttendanceBook:
    """
    Holds attendance records per trip and serializes their updates.

    Each (student, trip) pair gets its own asyncio.Lock around the
    read-modify-write; persistence happens inside the lock through the
    injected saver, and the cached record only changes once the save
    succeeded.
    """

    def __init__(self, duplicate_window_s: float = 5.0):
        self.duplicate_window_s = duplicate_window_s
        self.records: Dict[str, Dict[str, AttendanceRecord]] = {}
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._missed_reported: Dict[str, Set[str]] = {}
        self.recent_rejections: deque = deque(maxlen=50)

    def lock_for(self, trip_id: str, student_id: str) -> asyncio.Lock:
        key = (trip_id, student_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def prime(self, trip_id: str, records: Iterable[AttendanceRecord]) -> None:
        """Seed the cache from storage; existing cached records win."""
        cached = self.records.setdefault(trip_id, {})
        for record in records:
            cached.setdefault(record.student_id, record)

    def get(self, trip_id: str, student_id: str) -> AttendanceRecord:
        record = self.records.get(trip_id, {}).get(student_id)
        if record is None:
            return AttendanceRecord(student_id=student_id, trip_id=trip_id)
        return record

    def trip_records(self, trip_id: str) -> List[AttendanceRecord]:
        return sorted(self.records.get(trip_id, {}).values(), key=lambda r: r.student_id)

    async def _current(self, trip_id: str, student_id: str, load: Optional[RecordLoader]) -> AttendanceRecord:
        cached = self.records.get(trip_id, {}).get(student_id)
        if cached is not None:
            return cached
        if load is not None:
            stored = await load(trip_id, student_id)
            if stored is not None:
                self.records.setdefault(trip_id, {})[student_id] = stored
                return stored
        return AttendanceRecord(student_id=student_id, trip_id=trip_id)

    async def apply(
        self,
        trip_id: str,
        student_id: str,
        action: AttendanceAction,
        timestamp: datetime,
        *,
        stop_id: Optional[str] = None,
        method: Optional[str] = None,
        load: Optional[RecordLoader] = None,
        save: Optional[RecordSaver] = None,
    ) -> Tuple[AttendanceRecord, bool]:
        async with self.lock_for(trip_id, student_id):
            current = await self._current(trip_id, student_id, load)
            try:
                updated, changed = apply_transition(
                    current,
                    action,
                    timestamp,
                    duplicate_window_s=self.duplicate_window_s,
                    stop_id=stop_id,
                    method=method,
                )
            except InvalidTransition as exc:
                self.recent_rejections.append({"trip_id": trip_id, "student_id": student_id, **exc.to_dict()})
                print(f"[attendance] rejected {action.value}: student={student_id} trip={trip_id} reason={exc.reason}")
                raise
            if not changed:
                print(f"[attendance] duplicate {action.value} ignored: student={student_id} trip={trip_id}")
                return current, False
            if save is not None:
                await save(updated)
            self.records.setdefault(trip_id, {})[student_id] = updated
            print(f"[attendance] student={student_id} trip={trip_id} {current.status.value} -> {updated.status.value}")
            return updated, True

    async def apply_tag_scan(
        self,
        trip_id: str,
        student_id: str,
        action: ScanAction,
        timestamp: datetime,
        **kwargs,
    ) -> AttendanceRecord:
        record, _ = await self.apply(trip_id, student_id, action_for_scan(action), timestamp, **kwargs)
        return record

    async def mark_absent(
        self,
        trip_id: str,
        student_id: str,
        timestamp: datetime,
        **kwargs,
    ) -> AttendanceRecord:
        kwargs.setdefault("method", "manual")
        record, _ = await self.apply(trip_id, student_id, AttendanceAction.ABSENT, timestamp, **kwargs)
        return record

    async def sweep(
        self,
        trip_id: str,
        student_ids: Iterable[str],
        at: datetime,
        *,
        load: Optional[RecordLoader] = None,
        save: Optional[RecordSaver] = None,
    ) -> List[AttendanceRecord]:
        """Mark every still-unrecorded student ABSENT. Others are left alone."""
        marked: List[AttendanceRecord] = []
        for student_id in student_ids:
            async with self.lock_for(trip_id, student_id):
                current = await self._current(trip_id, student_id, load)
                if current.status != AttendanceStatus.NOT_RECORDED:
                    continue
                updated, _ = apply_transition(
                    current,
                    AttendanceAction.ABSENT,
                    at,
                    duplicate_window_s=self.duplicate_window_s,
                    method="sweep",
                )
                if save is not None:
                    await save(updated)
                self.records.setdefault(trip_id, {})[student_id] = updated
                marked.append(updated)
        if marked:
            print(f"[attendance] sweep trip={trip_id} marked {len(marked)} absent")
        return marked

    def missed_pickups(
        self,
        trip: Trip,
        stops: Sequence[RouteStop],
        now: datetime,
        *,
        grace_s: float,
        tz: str = "UTC",
    ) -> List[Tuple[str, RouteStop]]:
        """(student_id, stop) pairs still unrecorded past the stop's pickup time + grace.

        Each pair is reported once per trip.
        """
        reported = self._missed_reported.setdefault(trip.trip_id, set())
        zone = ZoneInfo(tz)
        service_date = trip.scheduled_start.astimezone(zone).date()
        missed: List[Tuple[str, RouteStop]] = []
        for stop in stops:
            pickup = _parse_hhmm(stop.pickup_time)
            if pickup is None or not stop.student_ids:
                continue
            deadline = datetime.combine(service_date, pickup, tzinfo=zone) + timedelta(seconds=grace_s)
            if now <= deadline:
                continue
            for student_id in stop.student_ids:
                if student_id in reported:
                    continue
                if self.get(trip.trip_id, student_id).status != AttendanceStatus.NOT_RECORDED:
                    continue
                reported.add(student_id)
                missed.append((student_id, stop))
        return missed

    def discard_trip(self, trip_id: str) -> None:
        self.records.pop(trip_id, None)
        self._missed_reported.pop(trip_id, None)
        for key in [k for k in self._locks if k[0] == trip_id]:
            lock = self._locks[key]
            if not lock.locked():
                del self._locks[key]


def _parse_hhmm(value: Optional[str]) -> Optional[dtime]:
    if not value:
        return None
    text = str(value).strip()
    parts = text.split(":")
    try:
        hour = int(parts[0])
        minute = int(parts[1]) if len(parts) > 1 else 0
        return dtime(hour, minute)
    except (ValueError, IndexError):
        print(f"[attendance] ignoring invalid stop time {value!r}")
        return None


__all__ = [
    "AttendanceAction",
    "AttendanceBook",
    "REJECTIONS",
    "TRANSITIONS",
    "action_for_scan",
    "apply_transition",
]
