from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional
from zoneinfo import ZoneInfo
import os


# Defaults for the ingestion pipeline. Every value can be overridden through
# the INGEST_* environment variables read by IngestConfig.from_env().
DEFAULT_STALENESS_S = 5 * 60
DEFAULT_FUTURE_SKEW_S = 120
DEFAULT_GRACE_PERIOD_S = 15 * 60
DEFAULT_IDLE_TIMEOUT_S = 45 * 60
DEFAULT_EXIT_HYSTERESIS = 1.1
DEFAULT_DUPLICATE_SCAN_WINDOW_S = 5.0
DEFAULT_PERSISTENCE_TIMEOUT_S = 5.0
DEFAULT_ALERT_TIMEOUT_S = 5.0
DEFAULT_PERSISTENCE_ATTEMPTS = 4
DEFAULT_PERSISTENCE_BACKOFF_S = 0.2
DEFAULT_REORDER_HOLD_S = 0.25
DEFAULT_MISSED_PICKUP_GRACE_S = 10 * 60

# Speed bands (km/h) for school zones
DEFAULT_SPEED_LIMIT_KMH = 50.0
DEFAULT_SPEED_WARNING_KMH = 55.0
DEFAULT_SPEED_VIOLATION_KMH = 65.0
DEFAULT_SPEED_CRITICAL_KMH = 80.0

# Next-stop ETA: average speed over this window, with a floor for stopped buses
DEFAULT_ETA_SPEED_WINDOW_S = 30 * 60


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return float(raw)
    except ValueError:
        print(f"[config] ignoring invalid {name}={raw!r}, using {default}")
        return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not str(raw).strip():
        return default
    try:
        return int(raw)
    except ValueError:
        print(f"[config] ignoring invalid {name}={raw!r}, using {default}")
        return default


def _valid_timezone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ValueError, KeyError):
        # ZoneInfoNotFoundError is a KeyError; malformed keys raise ValueError
        return False
    return True


def _env_timezone(env: Mapping[str, str], name: str, default: str) -> str:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    if not _valid_timezone(raw):
        print(f"[config] ignoring invalid {name}={raw!r}, using {default}")
        return default
    return raw


@dataclass
class IngestConfig:
    """Tunables for normalization, correlation, geofencing and retries."""
    staleness_s: float = DEFAULT_STALENESS_S
    future_skew_s: float = DEFAULT_FUTURE_SKEW_S
    grace_period_s: float = DEFAULT_GRACE_PERIOD_S
    idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S
    exit_hysteresis: float = DEFAULT_EXIT_HYSTERESIS
    duplicate_scan_window_s: float = DEFAULT_DUPLICATE_SCAN_WINDOW_S
    persistence_timeout_s: float = DEFAULT_PERSISTENCE_TIMEOUT_S
    alert_timeout_s: float = DEFAULT_ALERT_TIMEOUT_S
    persistence_attempts: int = DEFAULT_PERSISTENCE_ATTEMPTS
    persistence_backoff_s: float = DEFAULT_PERSISTENCE_BACKOFF_S
    reorder_hold_s: float = DEFAULT_REORDER_HOLD_S
    missed_pickup_grace_s: float = DEFAULT_MISSED_PICKUP_GRACE_S
    speed_limit_kmh: float = DEFAULT_SPEED_LIMIT_KMH
    speed_warning_kmh: float = DEFAULT_SPEED_WARNING_KMH
    speed_violation_kmh: float = DEFAULT_SPEED_VIOLATION_KMH
    speed_critical_kmh: float = DEFAULT_SPEED_CRITICAL_KMH
    eta_speed_window_s: float = DEFAULT_ETA_SPEED_WINDOW_S
    local_timezone: str = "UTC"

    def __post_init__(self) -> None:
        if self.exit_hysteresis < 1.0:
            raise ValueError("exit_hysteresis must be >= 1.0")
        if self.persistence_attempts < 1:
            raise ValueError("persistence_attempts must be >= 1")
        if self.staleness_s <= 0:
            raise ValueError("staleness_s must be positive")
        if not _valid_timezone(self.local_timezone):
            raise ValueError(f"unknown local_timezone {self.local_timezone!r}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "IngestConfig":
        env = os.environ if env is None else env
        return cls(
            staleness_s=_env_float(env, "INGEST_STALENESS_S", DEFAULT_STALENESS_S),
            future_skew_s=_env_float(env, "INGEST_FUTURE_SKEW_S", DEFAULT_FUTURE_SKEW_S),
            grace_period_s=_env_float(env, "INGEST_GRACE_PERIOD_S", DEFAULT_GRACE_PERIOD_S),
            idle_timeout_s=_env_float(env, "INGEST_IDLE_TIMEOUT_S", DEFAULT_IDLE_TIMEOUT_S),
            exit_hysteresis=_env_float(env, "INGEST_EXIT_HYSTERESIS", DEFAULT_EXIT_HYSTERESIS),
            duplicate_scan_window_s=_env_float(
                env, "INGEST_DUPLICATE_SCAN_WINDOW_S", DEFAULT_DUPLICATE_SCAN_WINDOW_S
            ),
            persistence_timeout_s=_env_float(
                env, "INGEST_PERSISTENCE_TIMEOUT_S", DEFAULT_PERSISTENCE_TIMEOUT_S
            ),
            alert_timeout_s=_env_float(env, "INGEST_ALERT_TIMEOUT_S", DEFAULT_ALERT_TIMEOUT_S),
            persistence_attempts=_env_int(
                env, "INGEST_PERSISTENCE_ATTEMPTS", DEFAULT_PERSISTENCE_ATTEMPTS
            ),
            persistence_backoff_s=_env_float(
                env, "INGEST_PERSISTENCE_BACKOFF_S", DEFAULT_PERSISTENCE_BACKOFF_S
            ),
            reorder_hold_s=_env_float(env, "INGEST_REORDER_HOLD_S", DEFAULT_REORDER_HOLD_S),
            missed_pickup_grace_s=_env_float(
                env, "INGEST_MISSED_PICKUP_GRACE_S", DEFAULT_MISSED_PICKUP_GRACE_S
            ),
            speed_limit_kmh=_env_float(env, "INGEST_SPEED_LIMIT_KMH", DEFAULT_SPEED_LIMIT_KMH),
            speed_warning_kmh=_env_float(env, "INGEST_SPEED_WARNING_KMH", DEFAULT_SPEED_WARNING_KMH),
            speed_violation_kmh=_env_float(
                env, "INGEST_SPEED_VIOLATION_KMH", DEFAULT_SPEED_VIOLATION_KMH
            ),
            speed_critical_kmh=_env_float(
                env, "INGEST_SPEED_CRITICAL_KMH", DEFAULT_SPEED_CRITICAL_KMH
            ),
            eta_speed_window_s=_env_float(
                env, "INGEST_ETA_SPEED_WINDOW_S", DEFAULT_ETA_SPEED_WINDOW_S
            ),
            local_timezone=_env_timezone(env, "INGEST_LOCAL_TIMEZONE", "UTC"),
        )


__all__ = ["IngestConfig"]
