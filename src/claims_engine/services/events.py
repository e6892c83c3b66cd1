"""Optional in-process notification of committed balance changes.

Ledger writes queue a :class:`BalanceChanged` on the session; the queue is
published once the unit of work commits and discarded on rollback. Nothing in
the engine waits on subscribers, so callers that prefer to re-read after a
mutation can ignore the bus entirely.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from threading import Lock
from typing import Awaitable, Callable, Union
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.models.ledger import LedgerReason

_PENDING_KEY = "claims_engine.pending_balance_events"


@dataclass(frozen=True, slots=True)
class BalanceChanged:
    member_id: UUID
    balance: int
    delta: int
    reason: LedgerReason
    correlation_id: str


BalanceListener = Callable[[BalanceChanged], Union[None, Awaitable[None]]]


class BalanceEventBus:
    def __init__(self) -> None:
        self._lock = Lock()
        self._listeners: list[BalanceListener] = []

    def subscribe(self, listener: BalanceListener) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it."""

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    async def publish(self, event: BalanceChanged) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "Balance listener failed",
                    member_id=str(event.member_id),
                    reason=event.reason.value,
                )

    def clear(self) -> None:
        with self._lock:
            self._listeners.clear()


_BUS = BalanceEventBus()


def get_event_bus() -> BalanceEventBus:
    return _BUS


def queue_balance_event(session: AsyncSession, event: BalanceChanged) -> None:
    session.info.setdefault(_PENDING_KEY, []).append(event)


def discard_pending_events(session: AsyncSession) -> None:
    session.info.pop(_PENDING_KEY, None)


async def publish_pending_events(session: AsyncSession) -> int:
    events: list[BalanceChanged] = session.info.pop(_PENDING_KEY, [])
    bus = get_event_bus()
    for event in events:
        await bus.publish(event)
    return len(events)


__all__ = [
    "BalanceChanged",
    "BalanceEventBus",
    "discard_pending_events",
    "get_event_bus",
    "publish_pending_events",
    "queue_balance_event",
]
