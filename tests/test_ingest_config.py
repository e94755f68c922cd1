import sys
from pathlib import Path

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ingest_config import IngestConfig  # noqa: E402


def test_from_env_reads_overrides():
    cfg = IngestConfig.from_env(
        {
            "INGEST_STALENESS_S": "60",
            "INGEST_PERSISTENCE_ATTEMPTS": "2",
            "INGEST_LOCAL_TIMEZONE": "America/New_York",
        }
    )
    assert cfg.staleness_s == 60.0
    assert cfg.persistence_attempts == 2
    assert cfg.local_timezone == "America/New_York"


def test_from_env_falls_back_on_bad_values(capsys):
    cfg = IngestConfig.from_env({"INGEST_IDLE_TIMEOUT_S": "soon", "INGEST_LOCAL_TIMEZONE": "Not/AZone"})
    assert cfg.idle_timeout_s == IngestConfig().idle_timeout_s
    assert cfg.local_timezone == "UTC"
    out = capsys.readouterr().out
    assert "INGEST_LOCAL_TIMEZONE" in out
    assert "INGEST_IDLE_TIMEOUT_S" in out


def test_unknown_timezone_rejected_at_construction():
    with pytest.raises(ValueError):
        IngestConfig(local_timezone="Not/AZone")
    with pytest.raises(ValueError):
        IngestConfig(local_timezone="")


def test_invalid_numbers_rejected():
    with pytest.raises(ValueError):
        IngestConfig(exit_hysteresis=0.5)
    with pytest.raises(ValueError):
        IngestConfig(persistence_attempts=0)
