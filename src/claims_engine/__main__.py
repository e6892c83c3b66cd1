"""Housekeeping entrypoint.

Examples:
    python -m claims_engine init-db
    python -m claims_engine seed-tiers
    python -m claims_engine run-job gift-expiry
    python -m claims_engine scheduler
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from pathlib import Path

from loguru import logger

from claims_engine import __version__
from claims_engine.core.logging import configure_logging
from claims_engine.core.settings import settings
from claims_engine.jobs import JOB_REGISTRY
from claims_engine.observability.tracing import configure_tracing


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="claims-engine", description="Claims engine housekeeping")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scheduler = subparsers.add_parser("scheduler", help="Run the housekeeping scheduler until interrupted")
    scheduler.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Schedule file; defaults to the housekeeping_schedule_path setting.",
    )
    scheduler.add_argument(
        "--force",
        action="store_true",
        help="Start even when housekeeping_scheduler_enabled is false.",
    )

    run_job = subparsers.add_parser("run-job", help="Run one housekeeping job immediately")
    run_job.add_argument("name", choices=sorted(JOB_REGISTRY))

    subparsers.add_parser("seed-tiers", help="Insert any missing default status tiers")
    subparsers.add_parser("init-db", help="Create engine tables without migrations")
    return parser.parse_args(argv)


async def _run_scheduler(config_path: Path) -> None:
    from claims_engine.db.session import async_session
    from claims_engine.scheduling import HousekeepingScheduler

    scheduler = HousekeepingScheduler(session_factory=async_session, config_path=config_path)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:  # pragma: no cover - platforms without signal support
            pass

    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()


async def _run_job(name: str) -> dict:
    from claims_engine.db.session import async_session

    return await JOB_REGISTRY[name](session_factory=async_session)


async def _seed_tiers() -> int:
    from claims_engine.db.session import async_session
    from claims_engine.domain.tiers import seed_default_tiers

    async with async_session() as session:
        created = await seed_default_tiers(session)
        await session.commit()
    return created


async def _init_db() -> None:
    from claims_engine.db.session import create_all

    await create_all()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(
        service_name=settings.service_name,
        environment=settings.environment,
        version=__version__,
        level=settings.log_level,
    )
    configure_tracing(
        service_name=settings.service_name,
        service_version=__version__,
        environment=settings.environment,
    )

    if args.command == "scheduler":
        if not (settings.housekeeping_scheduler_enabled or args.force):
            logger.warning("Housekeeping scheduler disabled", reason="housekeeping_scheduler_enabled is false")
            return 1
        config_path = args.config or Path(settings.housekeeping_schedule_path)
        asyncio.run(_run_scheduler(config_path))
    elif args.command == "run-job":
        summary = asyncio.run(_run_job(args.name))
        logger.success("Housekeeping job finished", job=args.name, summary=summary)
        print(json.dumps(summary, default=str))
    elif args.command == "seed-tiers":
        created = asyncio.run(_seed_tiers())
        logger.success("Status tiers seeded", created=created)
    elif args.command == "init-db":
        asyncio.run(_init_db())
        logger.success("Engine tables created")
    return 0


if __name__ == "__main__":
    sys.exit(main())
