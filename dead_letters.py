"""JSON-lines sink for events whose persistence retries were exhausted."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import threading
import time


ONE_WEEK_MS = 7 * 24 * 3600 * 1000


def _json_default(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


class DeadLetterSink:
    """Append-only log; entries older than the retention window are pruned."""

    def __init__(self, path: Path, retention_ms: int = ONE_WEEK_MS):
        self.path = Path(path)
        self.retention_ms = retention_ms
        self._lock = threading.Lock()

    def write(
        self,
        payload: Any,
        reason: str,
        error: Optional[Dict[str, Any]] = None,
        kind: str = "event",
        received_at: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append one entry.

        kind says how to replay the payload: "event" is a raw ingress
        payload, "geofence_event" and "trip" are documents to re-save,
        "sweep" names a trip whose end-of-trip sweep did not finish.
        """
        entry = {
            "ts": int(time.time() * 1000),
            "kind": kind,
            "reason": reason,
            "error": error or {},
            "received_at": received_at,
            "payload": payload,
        }
        line = json.dumps(entry, default=_json_default)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a") as f:
                    f.write(line + "\n")
            except OSError as exc:
                # Last resort: the event survives only in the process log.
                print(f"[deadletter] write failed ({exc}); dropping {line}")
                return entry
        print(f"[deadletter] stored {kind}: reason={reason}")
        return entry

    def _read_lines(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        entries: List[Dict[str, Any]] = []
        with self.path.open() as f:
            for line in f:
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(entry, dict):
                    entries.append(entry)
        return entries

    def read_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return self._read_lines()

    def count(self) -> int:
        return len(self.read_all())

    def drain(self) -> List[Dict[str, Any]]:
        """Return every entry and truncate the log."""
        with self._lock:
            entries = self._read_lines()
            if self.path.exists():
                self.path.write_text("")
        return entries

    def prune_old_entries(self) -> int:
        cutoff = int(time.time() * 1000) - self.retention_ms
        with self._lock:
            entries = self._read_lines()
            kept = [e for e in entries if e.get("ts", 0) >= cutoff]
            if len(kept) != len(entries):
                with self.path.open("w") as f:
                    f.writelines(json.dumps(e, default=_json_default) + "\n" for e in kept)
        return len(entries) - len(kept)


__all__ = ["DeadLetterSink"]
