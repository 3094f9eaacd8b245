"""Target registry and measurement store interfaces with in-memory implementations."""

import bisect
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol

from probewatch.models import Measurement, Target

logger = logging.getLogger(__name__)


class TargetRegistry(Protocol):
    """Source of the targets to probe."""

    def list_active_targets(self) -> list[Target]:
        ...

    def get_target(self, target_id: str) -> Target | None:
        ...


class MeasurementStore(Protocol):
    """Append-only measurement storage.

    ``insert`` raises StoreWriteFailure when the write is rejected.
    """

    def insert(self, measurement: Measurement) -> None:
        ...

    def query(self, target_id: str, start: datetime, end: datetime) -> list[Measurement]:
        """Measurements with ``start <= timestamp <= end``, oldest first."""
        ...


class InMemoryTargetRegistry:
    """Thread-safe registry kept in a dict."""

    def __init__(self, targets=None):
        self._lock = threading.Lock()
        self._targets: dict[str, Target] = {}
        for target in targets or []:
            self.add(target)

    def add(self, target: Target) -> None:
        with self._lock:
            if target.id in self._targets:
                raise ValueError(f"duplicate target id: {target.id}")
            self._targets[target.id] = target

    def update(self, target: Target) -> None:
        with self._lock:
            if target.id not in self._targets:
                raise KeyError(target.id)
            self._targets[target.id] = target

    def remove(self, target_id: str) -> bool:
        with self._lock:
            return self._targets.pop(target_id, None) is not None

    def list_active_targets(self) -> list[Target]:
        with self._lock:
            return [t for t in self._targets.values() if t.is_active]

    def get_target(self, target_id: str) -> Target | None:
        with self._lock:
            return self._targets.get(target_id)


class InMemoryMeasurementStore:
    """Thread-safe store keeping each target's measurements sorted by timestamp."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_target: dict[str, list[Measurement]] = {}

    def insert(self, measurement: Measurement) -> None:
        with self._lock:
            rows = self._by_target.setdefault(measurement.target_id, [])
            keys = [m.timestamp for m in rows]
            rows.insert(bisect.bisect_right(keys, measurement.timestamp), measurement)

    def query(self, target_id: str, start: datetime, end: datetime) -> list[Measurement]:
        with self._lock:
            rows = self._by_target.get(target_id, [])
            return [m for m in rows if start <= m.timestamp <= end]

    def latest(self, target_id: str) -> Measurement | None:
        with self._lock:
            rows = self._by_target.get(target_id)
            return rows[-1] if rows else None

    def purge_older_than(self, cutoff: datetime) -> int:
        """Drop measurements older than ``cutoff``; returns how many were removed."""
        removed = 0
        with self._lock:
            for target_id, rows in self._by_target.items():
                kept = [m for m in rows if m.timestamp >= cutoff]
                removed += len(rows) - len(kept)
                self._by_target[target_id] = kept
        if removed:
            logger.info("Purged %d measurements older than %s", removed, cutoff.isoformat())
        return removed

    def __len__(self):
        with self._lock:
            return sum(len(rows) for rows in self._by_target.values())


def target_from_dict(entry: dict) -> Target:
    """Build a Target from a JSON object.

    Accepts both snake_case and the camelCase keys used by web clients
    (``probeType``, ``interval``).

    Raises:
        ValueError: If required keys are missing or values are invalid
    """
    if not isinstance(entry, dict):
        raise ValueError("each target entry must be an object")
    for key in ("id", "host"):
        if not entry.get(key):
            raise ValueError(f"target entry is missing {key!r}")

    interval = entry.get("interval_seconds", entry.get("interval", 300))
    try:
        interval = int(interval)
    except (TypeError, ValueError):
        raise ValueError(f"invalid interval for target {entry['id']}: {interval!r}") from None
    if interval <= 0:
        raise ValueError(f"interval must be positive for target {entry['id']}")

    return Target(
        id=str(entry["id"]),
        host=str(entry["host"]).strip(),
        probe_type=entry.get("probe_type", entry.get("probeType", "echo")),
        interval_seconds=interval,
        status=entry.get("status", "active"),
        name=entry.get("name", ""),
        group=entry.get("group"),
    )


def load_targets_file(path) -> list[Target]:
    """Load targets from a JSON file holding a list of objects (or one object).

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the content is not a valid target list
    """
    path = Path(path)
    with path.open("r", encoding="utf-8") as handle:
        payload = json.load(handle)

    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a list of targets")

    targets = [target_from_dict(entry) for entry in payload]
    logger.info("Loaded %d targets from %s", len(targets), path)
    return targets
