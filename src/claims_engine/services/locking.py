"""Bounded per-resource locking and unit-of-work execution.

Two layers serialize writers. Inside one process an ``asyncio.Lock`` per
resource key (``member:<id>``, ``reward:<id>``) is taken in sorted key order
with a bounded wait. Across processes PostgreSQL row locks are taken with
``SELECT ... FOR UPDATE`` under ``SET LOCAL lock_timeout``; the conditional
balance and stock updates are the last line of defence on every backend.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from threading import Lock
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from claims_engine.core.settings import settings
from claims_engine.domain.results import Failure, FailureCode, Result, fail
from claims_engine.exceptions import LockContentionError, StorageUnavailableError
from claims_engine.observability.engine import get_engine_store
from claims_engine.services.events import discard_pending_events, publish_pending_events

T = TypeVar("T")

# lock_not_available, serialization_failure, deadlock_detected
CONTENTION_SQLSTATES = frozenset({"55P03", "40001", "40P01"})
UNIQUE_VIOLATION_SQLSTATE = "23505"


def member_key(member_id: UUID) -> str:
    return f"member:{member_id}"


def reward_key(reward_id: UUID) -> str:
    return f"reward:{reward_id}"


class ResourceLockRegistry:
    """Process-local registry of named asyncio locks."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def hold(self, *keys: str, timeout: float | None = None) -> AsyncIterator[tuple[str, ...]]:
        """Acquire every key in sorted order or raise :class:`LockContentionError`."""

        ordered = tuple(sorted(set(keys)))
        wait = settings.lock_timeout_seconds if timeout is None else timeout
        acquired: list[asyncio.Lock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                try:
                    await asyncio.wait_for(lock.acquire(), timeout=wait)
                except asyncio.TimeoutError as error:
                    raise LockContentionError(ordered, wait) from error
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()

    def reset(self) -> None:
        """Forget every lock; locks bind to the event loop that first awaited them."""

        with self._guard:
            self._locks.clear()


_REGISTRY = ResourceLockRegistry()


def get_lock_registry() -> ResourceLockRegistry:
    return _REGISTRY


async def lock_rows(session: AsyncSession, model: Any, ids: Iterable[UUID]) -> None:
    """Take row locks in id order on backends that support ``FOR UPDATE``."""

    bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        return
    ordered = sorted(set(ids), key=str)
    if not ordered:
        return
    timeout_ms = int(settings.lock_timeout_seconds * 1000)
    await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
    await session.execute(select(model.id).where(model.id.in_(ordered)).order_by(model.id).with_for_update())


def _sqlstate(error: DBAPIError) -> str | None:
    origin = error.orig
    for candidate in (origin, getattr(origin, "__cause__", None)):
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code:
            return str(code)
    return None


def is_contention_error(error: BaseException) -> bool:
    if isinstance(error, StaleDataError):
        return True
    if not isinstance(error, DBAPIError):
        return False
    code = _sqlstate(error)
    if code in CONTENTION_SQLSTATES:
        return True
    message = str(error.orig).lower()
    if "database is locked" in message:
        return True
    # A concurrent writer in another process won the idempotency key; a retry replays it.
    if isinstance(error, IntegrityError):
        return code == UNIQUE_VIOLATION_SQLSTATE or "unique constraint failed" in message
    return False


def contention_failure(keys: Iterable[str], *, operation: str) -> Failure:
    keys = tuple(keys)
    get_engine_store().record_contention(keys)
    logger.warning("Lock contention; caller should retry", operation=operation, keys=list(keys))
    return fail(
        FailureCode.TRANSIENT_LOCK_CONTENTION,
        "The account is busy, please try again",
        keys=list(keys),
    )


async def run_unit_of_work(
    session: AsyncSession,
    keys: Iterable[str],
    operation: Callable[[], Awaitable[Result[T]]],
    *,
    name: str,
) -> Result[T]:
    """Run ``operation`` under the resource locks and commit on success.

    A :class:`~claims_engine.domain.results.Failure` rolls back whatever the
    operation flushed unless the operation committed first. Contention of any
    flavour becomes a retryable failure; other storage errors propagate.
    """

    keys = tuple(keys)
    store = get_engine_store()
    registry = get_lock_registry()
    try:
        async with registry.hold(*keys):
            try:
                result = await operation()
                if result.ok:
                    await session.commit()
                else:
                    discard_pending_events(session)
                    await session.rollback()
            except BaseException:
                discard_pending_events(session)
                await session.rollback()
                raise
    except LockContentionError:
        return contention_failure(keys, operation=name)
    except (DBAPIError, StaleDataError) as error:
        if is_contention_error(error):
            return contention_failure(keys, operation=name)
        if isinstance(error, OperationalError):
            logger.exception("Storage unavailable", operation=name)
            raise StorageUnavailableError(f"{name} could not reach the claims store") from error
        raise

    if result.ok:
        await publish_pending_events(session)
        store.record_success(name, replayed=bool(getattr(result.value, "replayed", False)))
    else:
        store.record_failure(name, result.code.value)
    return result


__all__ = [
    "CONTENTION_SQLSTATES",
    "ResourceLockRegistry",
    "contention_failure",
    "get_lock_registry",
    "is_contention_error",
    "lock_rows",
    "member_key",
    "reward_key",
    "run_unit_of_work",
]
