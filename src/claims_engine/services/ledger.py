"""Append-only Claims ledger with a materialized per-member balance.

Every balance change in the engine goes through :meth:`ClaimsLedger.record_entry`.
The materialized ``members.claims_balance`` is only ever written by a single
conditional ``UPDATE`` that refuses to take it below zero, and the matching
ledger row records the balance it produced.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.core.clock import utcnow
from claims_engine.domain.results import FailureCode, Result, Success, fail
from claims_engine.exceptions import LedgerIntegrityError
from claims_engine.models.ledger import LedgerEntry, LedgerReason
from claims_engine.models.member import Member
from claims_engine.observability.engine import get_engine_store
from claims_engine.observability.tracing import get_tracer
from claims_engine.services.events import BalanceChanged, queue_balance_event
from claims_engine.services.locking import lock_rows, member_key, run_unit_of_work


@dataclass(frozen=True, slots=True)
class LedgerReceipt:
    """Outcome of a ledger write; ``replayed`` marks an idempotent repeat."""

    member_id: UUID
    balance: int
    delta: int
    reason: LedgerReason
    correlation_id: str
    entry_id: UUID
    replayed: bool = False


def _is_claims_amount(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class ClaimsLedger:
    """Single point of Claims balance mutation."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self._tracer = get_tracer()

    async def apply_entry(
        self,
        member_id: UUID,
        delta: int,
        reason: LedgerReason | str,
        correlation_id: str,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result[LedgerReceipt]:
        """Apply one entry in its own transaction under the member lock."""

        async def _operation() -> Result[LedgerReceipt]:
            return await self.record_entry(
                member_id,
                delta,
                reason,
                correlation_id,
                description=description,
                metadata=metadata,
            )

        return await run_unit_of_work(
            self._session,
            [member_key(member_id)],
            _operation,
            name="ledger.apply_entry",
        )

    async def record_entry(
        self,
        member_id: UUID,
        delta: int,
        reason: LedgerReason | str,
        correlation_id: str,
        *,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Result[LedgerReceipt]:
        """Write an entry inside the caller's transaction without committing.

        The caller must hold the member lock and own the commit; a failure
        leaves nothing flushed.
        """

        if not correlation_id:
            raise ValueError("Ledger entries require a correlation id")
        reason = LedgerReason(reason)
        if not _is_claims_amount(delta) or delta == 0:
            return fail(FailureCode.INVALID_AMOUNT, "Amount must be a non-zero whole number of Claims", delta=delta)

        with self._tracer.start_as_current_span("claims_ledger.record_entry") as span:
            span.set_attribute("claims.reason", reason.value)
            span.set_attribute("claims.delta", delta)

            existing = await self._find_entry(correlation_id, reason)
            if existing is not None:
                return await self._replay(existing, member_id, delta)

            await lock_rows(self._session, Member, [member_id])
            stmt = (
                update(Member)
                .where(Member.id == member_id, Member.claims_balance + delta >= 0)
                .values(
                    claims_balance=Member.claims_balance + delta,
                    version=Member.version + 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            outcome = await self._session.execute(stmt)
            if outcome.rowcount == 0:
                balance = await self.get_balance(member_id)
                if balance is None:
                    return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))
                span.set_attribute("claims.rejected", True)
                return fail(
                    FailureCode.INSUFFICIENT_BALANCE,
                    "Not enough Claims for this action",
                    balance=balance,
                    shortfall=-(balance + delta),
                )

            balance = await self.get_balance(member_id) or 0
            entry = LedgerEntry(
                member_id=member_id,
                delta=delta,
                reason=reason,
                correlation_id=correlation_id,
                balance_after=balance,
                description=description,
                metadata_json=metadata or {},
            )
            self._session.add(entry)
            await self._session.flush()

        queue_balance_event(
            self._session,
            BalanceChanged(
                member_id=member_id,
                balance=balance,
                delta=delta,
                reason=reason,
                correlation_id=correlation_id,
            ),
        )
        logger.info(
            "Recorded claims ledger entry",
            member_id=str(member_id),
            delta=delta,
            reason=reason.value,
            correlation_id=correlation_id,
            balance=balance,
        )
        return Success(
            LedgerReceipt(
                member_id=member_id,
                balance=balance,
                delta=delta,
                reason=reason,
                correlation_id=correlation_id,
                entry_id=entry.id,
            )
        )

    async def _find_entry(self, correlation_id: str, reason: LedgerReason) -> LedgerEntry | None:
        stmt = select(LedgerEntry).where(
            LedgerEntry.correlation_id == correlation_id,
            LedgerEntry.reason == reason,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _replay(self, existing: LedgerEntry, member_id: UUID, delta: int) -> Result[LedgerReceipt]:
        if existing.member_id != member_id or existing.delta != delta:
            logger.warning(
                "Rejected reuse of ledger correlation id",
                correlation_id=existing.correlation_id,
                reason=existing.reason.value,
                member_id=str(member_id),
            )
            return fail(
                FailureCode.INVALID_STATE,
                "This request id was already used for a different change",
                correlation_id=existing.correlation_id,
            )
        balance = await self.get_balance(member_id) or 0
        logger.info(
            "Replayed claims ledger entry",
            member_id=str(member_id),
            reason=existing.reason.value,
            correlation_id=existing.correlation_id,
        )
        return Success(
            LedgerReceipt(
                member_id=member_id,
                balance=balance,
                delta=existing.delta,
                reason=existing.reason,
                correlation_id=existing.correlation_id,
                entry_id=existing.id,
                replayed=True,
            )
        )

    async def get_balance(self, member_id: UUID) -> int | None:
        """Read the materialized balance; ``None`` for unknown members."""

        result = await self._session.execute(select(Member.claims_balance).where(Member.id == member_id))
        return result.scalar_one_or_none()

    async def ledger_sum(self, member_id: UUID) -> int:
        stmt = select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(LedgerEntry.member_id == member_id)
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def verify_balance(self, member_id: UUID) -> int:
        """Recompute the balance from entries and fail loudly on disagreement."""

        materialized = await self.get_balance(member_id)
        if materialized is None:
            raise LookupError(f"Member {member_id} not found")
        total = await self.ledger_sum(member_id)
        if materialized != total or materialized < 0:
            error = LedgerIntegrityError(member_id, materialized=materialized, ledger_sum=total)
            get_engine_store().record_integrity_error(str(error))
            logger.error(
                "Claims ledger integrity violation",
                member_id=str(member_id),
                materialized=materialized,
                ledger_sum=total,
            )
            raise error
        return materialized

    async def list_entries(
        self,
        member_id: UUID,
        *,
        limit: int = 25,
        cursor: str | None = None,
        reasons: list[LedgerReason] | None = None,
    ) -> tuple[list[LedgerEntry], str | None]:
        """Return a newest-first page of entries and the cursor for the next one."""

        bounded_limit = max(1, min(limit, 100))
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.member_id == member_id)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
        )
        if reasons:
            stmt = stmt.where(LedgerEntry.reason.in_(reasons))
        if cursor:
            cursor_time, cursor_id = decode_time_uuid_cursor(cursor)
            stmt = stmt.where(
                or_(
                    LedgerEntry.created_at < cursor_time,
                    and_(LedgerEntry.created_at == cursor_time, LedgerEntry.id < cursor_id),
                )
            )

        result = await self._session.execute(stmt.limit(bounded_limit + 1))
        rows = list(result.scalars().all())
        entries = rows[:bounded_limit]
        next_cursor = None
        if len(rows) > bounded_limit and entries:
            tail = entries[-1]
            next_cursor = encode_time_uuid_cursor(tail.created_at, tail.id)
        return entries, next_cursor

    async def entries_for_correlation(self, correlation_id: str) -> list[LedgerEntry]:
        stmt = (
            select(LedgerEntry)
            .where(LedgerEntry.correlation_id == correlation_id)
            .order_by(LedgerEntry.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def admin_credit(
        self,
        member_id: UUID,
        amount: int,
        correlation_id: str,
        *,
        notes: str | None = None,
    ) -> Result[LedgerReceipt]:
        if not _is_claims_amount(amount) or amount <= 0:
            return fail(FailureCode.INVALID_AMOUNT, "Credit must be a positive whole number of Claims", amount=amount)
        return await self.apply_entry(
            member_id,
            amount,
            LedgerReason.ADMIN_CREDIT,
            correlation_id,
            description=notes or "Administrative credit",
        )


def encode_time_uuid_cursor(timestamp: datetime, identifier: UUID) -> str:
    payload = f"{timestamp.isoformat()}|{identifier}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("utf-8")


def decode_time_uuid_cursor(cursor: str) -> Tuple[datetime, UUID]:
    raw = base64.urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8")
    timestamp_str, identifier_str = raw.split("|", 1)
    return datetime.fromisoformat(timestamp_str), UUID(identifier_str)


__all__ = [
    "ClaimsLedger",
    "LedgerReceipt",
    "decode_time_uuid_cursor",
    "encode_time_uuid_cursor",
]
