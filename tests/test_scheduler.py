from pathlib import Path

import pytest
from apscheduler.triggers.cron import CronTrigger

from claims_engine.observability.scheduler import get_scheduler_store
from claims_engine.scheduling.config import JobDefinition, ScheduleConfig, load_job_definitions
from claims_engine.scheduling.runner import HousekeepingScheduler, backoff_delay

REPO_SCHEDULE = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"


def _job(job_id: str, *, max_attempts: int = 1, **overrides) -> JobDefinition:
    values = dict(
        id=job_id,
        task="tests.noop",
        cron="* * * * *",
        kwargs={},
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )
    values.update(overrides)
    return JobDefinition(**values)


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"settled": 4}

    summary = await scheduler._wrap_callable(flaky_job, _job("job-alpha", max_attempts=3))()

    assert summary == {"settled": 4}
    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    state = snapshot.jobs["job-alpha"]
    assert state.last_success_at is not None
    assert state.last_error is None
    assert state.last_attempts == 2
    assert state.last_summary == {"settled": 4}
    assert attempts == 2


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    summary = await scheduler._wrap_callable(failing_job, _job("job-failure", max_attempts=2))()

    assert summary is None
    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    assert snapshot.totals["attempt_failures"] == 2
    state = snapshot.jobs["job-failure"]
    assert state.as_dict()["totals"]["consecutive_failures"] == 1
    assert state.last_error == "boom"
    assert state.last_error_at is not None


@pytest.mark.asyncio
async def test_scheduler_tracks_consecutive_failures_and_resets(tmp_path: Path) -> None:
    store = get_scheduler_store()
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    run_count = 0

    async def sometimes_failing_job(*, session_factory) -> None:
        nonlocal run_count
        run_count += 1
        if run_count < 3:
            raise RuntimeError("boom")

    runner = scheduler._wrap_callable(sometimes_failing_job, _job("job-consecutive"))

    await runner()
    await runner()

    snapshot = store.snapshot()
    state = snapshot.jobs["job-consecutive"]
    assert snapshot.totals["runs"] == 2
    assert snapshot.totals["run_failures"] == 2
    assert state.consecutive_failures == 2
    assert state.last_success_at is None

    await runner()

    snapshot = store.snapshot()
    state = snapshot.jobs["job-consecutive"]
    assert snapshot.totals["runs"] == 3
    assert snapshot.totals["success"] == 1
    assert state.consecutive_failures == 0
    assert state.last_error is None


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path) -> None:
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("job-health")
    await scheduler._wrap_callable(successful_job, job)()

    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job, _job("job-idle", enabled=False)])
    scheduler._is_running = True

    health = scheduler.health()
    assert health["running"] is True
    assert health["configured_jobs"] == 2
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None
    assert health["jobs"][1]["enabled"] is False
    assert health["jobs"][1]["metrics"] is None


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "America/New_York"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        enabled = false
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.sample.kwargs]
        limit = 50

        [jobs.incomplete]
        task = "module.other"
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "America/New_York"
    assert len(config.jobs) == 1
    job = config.get("sample")
    assert job.enabled is False
    assert job.kwargs == {"limit": 50}
    assert job.max_attempts == 5
    assert job.base_backoff_seconds == 2.0
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 30.0
    assert job.jitter_seconds == 1.5
    assert config.get("incomplete") is None


def test_load_job_definitions_rejects_bad_input(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")

    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        [jobs.sample]
        task = "module.task"
        cron = "* * * * *"
        max_attempts = "many"
        """
    )
    with pytest.raises(ValueError):
        load_job_definitions(config_path)


def test_backoff_delay_grows_and_caps() -> None:
    job = _job("job-backoff", base_backoff_seconds=2.0, backoff_multiplier=3.0, max_backoff_seconds=30.0)

    assert [backoff_delay(job, attempt) for attempt in range(1, 5)] == [2.0, 6.0, 18.0, 30.0]


def test_repository_schedule_resolves_every_task() -> None:
    config = load_job_definitions(REPO_SCHEDULE)
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=REPO_SCHEDULE)

    assert {job.id for job in config.jobs} == {"gift-expiry", "tier-allocation", "ledger-audit"}
    for job in config.jobs:
        assert callable(scheduler._resolve_callable(job))
        CronTrigger.from_crontab(job.cron)


@pytest.mark.parametrize(
    ("task", "error"),
    [
        ("nodots", ValueError),
        ("claims_engine.jobs.missing_job", AttributeError),
        ("claims_engine.jobs.allocations.allocation_reference", TypeError),
    ],
)
def test_resolve_callable_rejects_bad_tasks(tmp_path: Path, task: str, error: type) -> None:
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    with pytest.raises(error):
        scheduler._resolve_callable(_job("job-bad", task=task))


@pytest.mark.asyncio
async def test_run_once_executes_a_configured_job(tmp_path: Path, session_factory, create_member) -> None:
    await create_member(balance=10)
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        [jobs.audit]
        task = "claims_engine.jobs.audit_ledger_balances"
        cron = "0 3 * * *"
        jitter_seconds = 0
        """
    )
    scheduler = HousekeepingScheduler(session_factory=session_factory, config_path=config_path)

    summary = await scheduler.run_once("audit")

    assert summary == {"members_checked": 1, "mismatches": 0}
    assert get_scheduler_store().snapshot().jobs["audit"].last_summary == summary
    with pytest.raises(KeyError):
        await scheduler.run_once("unknown")


@pytest.mark.asyncio
async def test_start_registers_enabled_jobs_only(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "UTC"

        [jobs.audit]
        task = "claims_engine.jobs.audit_ledger_balances"
        cron = "30 3 * * *"

        [jobs.expiry]
        task = "claims_engine.jobs.expire_pending_gifts"
        cron = "15 * * * *"
        enabled = false
        """
    )
    scheduler = HousekeepingScheduler(session_factory=lambda: None, config_path=config_path)

    scheduler.start()
    try:
        assert scheduler.is_running
        registered = {job.id for job in scheduler._scheduler.get_jobs()}
        assert registered == {"audit"}
    finally:
        await scheduler.stop()

    assert not scheduler.is_running
