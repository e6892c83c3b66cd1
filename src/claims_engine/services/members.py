"""Member records, locked-token positions and the explicit member context."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.core.clock import utcnow
from claims_engine.domain.results import FailureCode, Result, Success, fail
from claims_engine.domain.tiers import TierLadder, TierResolution, load_ladder, resolve_tier
from claims_engine.models.member import Member, TokenLock
from claims_engine.services.locking import member_key, run_unit_of_work


@dataclass(frozen=True, slots=True)
class MemberContext:
    """Snapshot of a member handed to every engine call that needs one.

    Contexts are never refreshed in place; call :meth:`MemberService.load_context`
    again after any mutation.
    """

    member_id: UUID
    tier_name: str
    tier_rank: int
    balance: int
    total_locked: Decimal
    progress_pct: Decimal
    next_tier_name: str | None
    loaded_at: datetime


@dataclass(frozen=True, slots=True)
class TokenLockReceipt:
    lock_id: UUID
    member_id: UUID
    source: str
    amount: Decimal
    locked_at: datetime | None
    released_at: datetime | None

    @classmethod
    def from_model(cls, lock: TokenLock) -> "TokenLockReceipt":
        return cls(
            lock_id=lock.id,
            member_id=lock.member_id,
            source=lock.source,
            amount=Decimal(lock.amount),
            locked_at=lock.locked_at,
            released_at=lock.released_at,
        )


class MemberService:
    def __init__(self, session: AsyncSession, *, ladder: TierLadder | None = None) -> None:
        self._session = session
        self._ladder = ladder

    async def ladder(self) -> TierLadder:
        if self._ladder is None:
            self._ladder = await load_ladder(self._session)
        return self._ladder

    async def get_member(self, member_id: UUID) -> Member | None:
        return await self._session.get(Member, member_id)

    async def ensure_member(self, external_user_id: str, *, email: str | None = None) -> Member:
        """Fetch or create the engine record for a hosting-app user."""

        stmt = select(Member).where(Member.external_user_id == external_user_id)
        result = await self._session.execute(stmt)
        member = result.scalar_one_or_none()
        if member:
            return member

        member = Member(external_user_id=external_user_id, email=email.lower() if email else None)
        self._session.add(member)
        try:
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            logger.warning("Detected race when creating member", external_user_id=external_user_id)
            return await self.ensure_member(external_user_id, email=email)

        await self._session.commit()
        logger.info("Created member", external_user_id=external_user_id, member_id=str(member.id))
        return member

    async def total_locked(self, member_id: UUID) -> Decimal:
        stmt = select(func.coalesce(func.sum(TokenLock.amount), 0)).where(
            TokenLock.member_id == member_id,
            TokenLock.released_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return Decimal(result.scalar_one())

    async def resolve(self, member_id: UUID) -> TierResolution:
        return resolve_tier(await self.total_locked(member_id), await self.ladder())

    async def load_context(self, member_id: UUID) -> MemberContext | None:
        """Read balance, locked position and tier in one consistent snapshot."""

        result = await self._session.execute(select(Member.claims_balance).where(Member.id == member_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            return None

        locked = await self.total_locked(member_id)
        resolution = resolve_tier(locked, await self.ladder())
        return MemberContext(
            member_id=member_id,
            tier_name=resolution.tier.name,
            tier_rank=resolution.tier.sort_order,
            balance=int(balance),
            total_locked=locked,
            progress_pct=resolution.progress_pct,
            next_tier_name=resolution.next_tier.name if resolution.next_tier else None,
            loaded_at=utcnow(),
        )

    async def lock_tokens(
        self, member_id: UUID, amount: Decimal | int | str, *, source: str
    ) -> Result[TokenLockReceipt]:
        """Record tokens committed to status from one wallet or source."""

        try:
            value = Decimal(str(amount))
        except ArithmeticError:
            return fail(FailureCode.INVALID_AMOUNT, "Lock amount must be a number", amount=str(amount))
        if not value.is_finite() or value <= 0:
            return fail(FailureCode.INVALID_AMOUNT, "Lock amount must be positive", amount=str(amount))

        async def _operation() -> Result[TokenLockReceipt]:
            if await self.get_member(member_id) is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))
            lock = TokenLock(member_id=member_id, source=source, amount=value)
            self._session.add(lock)
            await self._session.flush()
            logger.info("Locked tokens", member_id=str(member_id), amount=str(value), source=source)
            return Success(TokenLockReceipt.from_model(lock))

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="members.lock_tokens")

    async def release_lock(self, lock_id: UUID, *, actor_id: UUID) -> Result[TokenLockReceipt]:
        result = await self._session.execute(select(TokenLock.member_id).where(TokenLock.id == lock_id))
        owner_id = result.scalar_one_or_none()
        if owner_id is None:
            return fail(FailureCode.NOT_FOUND, "Lock not found", lock_id=str(lock_id))

        async def _operation() -> Result[TokenLockReceipt]:
            if owner_id != actor_id:
                return fail(FailureCode.FORBIDDEN, "Only the owner can release this lock")
            lock = await self._session.get(TokenLock, lock_id, populate_existing=True)
            if lock is None:
                return fail(FailureCode.NOT_FOUND, "Lock not found", lock_id=str(lock_id))
            if lock.released_at is not None:
                return fail(FailureCode.INVALID_STATE, "Lock already released")
            lock.released_at = utcnow()
            await self._session.flush()
            logger.info("Released token lock", member_id=str(owner_id), lock_id=str(lock_id))
            return Success(TokenLockReceipt.from_model(lock))

        return await run_unit_of_work(self._session, [member_key(owner_id)], _operation, name="members.release_lock")


__all__ = ["MemberContext", "MemberService", "TokenLockReceipt"]
