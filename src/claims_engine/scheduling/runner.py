"""APScheduler runtime for the housekeeping jobs."""

from __future__ import annotations

import asyncio
import functools
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from claims_engine.observability.scheduler import get_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def backoff_delay(job: JobDefinition, attempt: int) -> float:
    """Seconds to wait after ``attempt`` failed attempts."""

    delay = job.base_backoff_seconds * max(job.backoff_multiplier, 1.0) ** (attempt - 1)
    if job.max_backoff_seconds:
        delay = min(delay, job.max_backoff_seconds)
    if job.jitter_seconds:
        delay += random.uniform(0, job.jitter_seconds)
    return max(delay, 0.0)


def resolve_task(path: str) -> JobCallable:
    """Import ``package.module.function`` and insist it is a coroutine function."""

    module_name, _, attr = path.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {path}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {path} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {path} must be an async function")
    return func


class HousekeepingScheduler:
    """Register and run the recurring gift, allocation and audit jobs."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def load(self) -> ScheduleConfig:
        if self._config is None:
            self._config = load_job_definitions(self._config_path)
        return self._config

    def start(self) -> None:
        config = self.load()
        zone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=zone)

        enabled = [job for job in config.jobs if job.enabled]
        for job in config.jobs:
            if not job.enabled:
                logger.info("Skipping disabled housekeeping job", job_id=job.id)
        for job in enabled:
            scheduler.add_job(
                self._wrap_callable(self._resolve_callable(job), job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=zone),
                id=job.id,
                replace_existing=True,
            )
            logger.info("Registered housekeeping job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Housekeeping scheduler started", jobs=len(enabled), timezone=config.timezone)

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        outcome = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(outcome):
            await outcome
        self._scheduler = None
        self._is_running = False
        logger.info("Housekeeping scheduler stopped")

    async def run_once(self, job_id: str) -> dict[str, Any] | None:
        """Run one configured job now, honouring its retry policy."""

        job = self.load().get(job_id)
        if job is None:
            raise KeyError(f"Unknown housekeeping job: {job_id}")
        return await self._run_with_retries(self._resolve_callable(job), job)

    def _resolve_callable(self, job: JobDefinition) -> JobCallable:
        return resolve_task(job.task)

    def _wrap_callable(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[dict[str, Any] | None]]:
        return functools.partial(self._run_with_retries, func, job)

    async def _run_with_retries(self, func: JobCallable, job: JobDefinition) -> dict[str, Any] | None:
        store = self._observability
        store.record_dispatch(job.id, job.task)
        started = time.perf_counter()
        limit = max(job.max_attempts, 1)
        attempt = 0

        while True:
            attempt += 1
            try:
                result = await func(session_factory=self._session_factory, **job.kwargs)
            except Exception as exc:
                store.record_attempt_failure(job.id, job.task, attempts=attempt, error=str(exc))
                if attempt >= limit:
                    store.record_run_failure(
                        job.id,
                        job.task,
                        runtime_seconds=time.perf_counter() - started,
                        attempts=attempt,
                        error=str(exc),
                    )
                    logger.exception("Housekeeping job gave up", job_id=job.id, task=job.task, attempts=attempt)
                    return None
                wait = backoff_delay(job, attempt)
                store.record_retry(job.id, job.task, attempts=attempt + 1)
                logger.warning(
                    "Retrying housekeeping job",
                    job_id=job.id,
                    next_attempt=attempt + 1,
                    delay_seconds=round(wait, 3),
                )
                if wait:
                    await asyncio.sleep(wait)
                continue

            summary = result if isinstance(result, dict) else None
            elapsed = time.perf_counter() - started
            store.record_success(job.id, job.task, runtime_seconds=elapsed, attempts=attempt, summary=summary)
            logger.info(
                "Housekeeping job finished",
                job_id=job.id,
                attempts=attempt,
                runtime_seconds=round(elapsed, 3),
            )
            return summary

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = self._config.jobs if self._config else []

        def _describe(job: JobDefinition) -> dict[str, object]:
            state = snapshot.jobs.get(job.id)
            return {
                "id": job.id,
                "task": job.task,
                "cron": job.cron,
                "enabled": job.enabled,
                "max_attempts": job.max_attempts,
                "backoff": {
                    "base_seconds": job.base_backoff_seconds,
                    "multiplier": job.backoff_multiplier,
                    "max_seconds": job.max_backoff_seconds,
                    "jitter_seconds": job.jitter_seconds,
                },
                "metrics": state.as_dict() if state else None,
            }

        return {
            "running": self._is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": [_describe(job) for job in jobs],
        }


__all__ = ["HousekeepingScheduler", "backoff_delay", "resolve_task"]
