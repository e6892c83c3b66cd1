"""Housekeeping schedule definitions read from TOML.

Each ``[jobs.<id>]`` table names an async task by dotted path, a crontab
expression and an optional retry policy::

    [jobs.gift-expiry]
    task = "claims_engine.jobs.expire_pending_gifts"
    cron = "15 * * * *"
    max_attempts = 3
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import tomllib

# field -> (default, floor)
_RETRY_FIELDS: dict[str, tuple[float, float]] = {
    "max_attempts": (1, 1),
    "base_backoff_seconds": (5.0, 0.0),
    "backoff_multiplier": (2.0, 1.0),
    "max_backoff_seconds": (60.0, 0.0),
    "jitter_seconds": (1.0, 0.0),
}


def _retry_value(table: Mapping[str, Any], name: str) -> float:
    default, floor = _RETRY_FIELDS[name]
    raw = table.get(name, default)
    if isinstance(raw, bool):
        raise ValueError(f"Schedule field {name!r} must be numeric, got {raw!r}")
    try:
        return max(float(raw), floor)
    except (TypeError, ValueError) as error:
        raise ValueError(f"Schedule field {name!r} must be numeric, got {raw!r}") from error


@dataclass(slots=True)
class JobDefinition:
    id: str
    task: str
    cron: str
    kwargs: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    max_attempts: int = 1
    base_backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 60.0
    jitter_seconds: float = 1.0

    @classmethod
    def from_table(cls, key: str, table: Mapping[str, Any]) -> "JobDefinition | None":
        """Build a definition from one TOML table; ``None`` when task or cron is missing."""

        task, cron = table.get("task"), table.get("cron")
        if not isinstance(task, str) or not isinstance(cron, str):
            return None
        kwargs = table.get("kwargs")
        retry = {name: _retry_value(table, name) for name in _RETRY_FIELDS}
        return cls(
            id=str(table.get("id") or key),
            task=task,
            cron=cron,
            kwargs=dict(kwargs) if isinstance(kwargs, Mapping) else {},
            enabled=bool(table.get("enabled", True)),
            max_attempts=int(retry.pop("max_attempts")),
            **retry,
        )


@dataclass(slots=True)
class ScheduleConfig:
    timezone: str
    jobs: list[JobDefinition]

    def get(self, job_id: str) -> JobDefinition | None:
        return next((job for job in self.jobs if job.id == job_id), None)


def load_job_definitions(config_path: Path) -> ScheduleConfig:
    if not config_path.exists():
        raise FileNotFoundError(f"Schedule config not found: {config_path}")

    data = tomllib.loads(config_path.read_text())
    tables = data.get("jobs", {})
    jobs = [
        job
        for key, table in tables.items()
        if isinstance(table, Mapping) and (job := JobDefinition.from_table(key, table)) is not None
    ]
    return ScheduleConfig(timezone=str(data.get("timezone", "UTC")), jobs=jobs)


__all__ = ["JobDefinition", "ScheduleConfig", "load_job_definitions"]
