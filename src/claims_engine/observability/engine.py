"""In-memory counters for engine operation outcomes."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineEventLog:
    last_contention_at: datetime | None = None
    last_contention_keys: tuple[str, ...] = ()
    last_integrity_error_at: datetime | None = None
    last_integrity_error: str | None = None


@dataclass
class EngineSnapshot:
    """Serializable view handed to hosting diagnostics."""

    totals: Dict[str, int]
    per_operation: Dict[str, Dict[str, int]]
    events: EngineEventLog

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "per_operation": self.per_operation,
            "events": {
                "last_contention_at": self.events.last_contention_at.isoformat()
                if self.events.last_contention_at
                else None,
                "last_contention_keys": list(self.events.last_contention_keys),
                "last_integrity_error_at": self.events.last_integrity_error_at.isoformat()
                if self.events.last_integrity_error_at
                else None,
                "last_integrity_error": self.events.last_integrity_error,
            },
        }


@dataclass
class EngineObservabilityStore:
    """Tracks successes, typed failures, replays and contention per operation."""

    _lock: Lock = field(default_factory=Lock)
    _totals: Counter = field(default_factory=Counter)
    _per_operation: Dict[str, Counter] = field(default_factory=dict)
    _events: EngineEventLog = field(default_factory=EngineEventLog)

    def _counter(self, operation: str) -> Counter:
        counter = self._per_operation.get(operation)
        if counter is None:
            counter = Counter()
            self._per_operation[operation] = counter
        return counter

    def record_success(self, operation: str, *, replayed: bool = False) -> None:
        with self._lock:
            self._totals["success"] += 1
            self._counter(operation)["success"] += 1
            if replayed:
                self._totals["replayed"] += 1
                self._counter(operation)["replayed"] += 1

    def record_failure(self, operation: str, code: str) -> None:
        with self._lock:
            self._totals["failed"] += 1
            self._counter(operation)[f"failed:{code}"] += 1

    def record_contention(self, keys: tuple[str, ...]) -> None:
        with self._lock:
            self._totals["contention"] += 1
            self._events.last_contention_at = _utcnow()
            self._events.last_contention_keys = tuple(keys)

    def record_integrity_error(self, message: str) -> None:
        with self._lock:
            self._totals["integrity_errors"] += 1
            self._events.last_integrity_error_at = _utcnow()
            self._events.last_integrity_error = message

    def snapshot(self) -> EngineSnapshot:
        with self._lock:
            totals = dict(self._totals)
            per_operation = {key: dict(counter) for key, counter in self._per_operation.items()}
            events = EngineEventLog(
                last_contention_at=self._events.last_contention_at,
                last_contention_keys=self._events.last_contention_keys,
                last_integrity_error_at=self._events.last_integrity_error_at,
                last_integrity_error=self._events.last_integrity_error,
            )
        return EngineSnapshot(totals=totals, per_operation=per_operation, events=events)

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            self._per_operation.clear()
            self._events = EngineEventLog()


_STORE = EngineObservabilityStore()


def get_engine_store() -> EngineObservabilityStore:
    return _STORE


__all__ = ["EngineObservabilityStore", "EngineSnapshot", "get_engine_store"]
