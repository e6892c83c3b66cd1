"""Claims-funded claims against the shared reward catalog."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.domain.pricing import ClaimAssessment, RewardPricingResolver, RewardTerms
from claims_engine.domain.results import FailureCode, Result, Success, fail
from claims_engine.domain.tiers import TierLadder
from claims_engine.models.ledger import LedgerReason
from claims_engine.models.reward import Reward, RewardClaim, RewardClaimStatus
from claims_engine.services.ledger import ClaimsLedger
from claims_engine.services.locking import member_key, reward_key, run_unit_of_work
from claims_engine.services.members import MemberContext, MemberService


async def take_reward_stock(session: AsyncSession, reward_id: UUID) -> int | None:
    """Atomically take one unit of stock; ``None`` when the reward is sold out."""

    stmt = (
        update(Reward)
        .where(Reward.id == reward_id, Reward.stock_quantity > 0)
        .values(stock_quantity=Reward.stock_quantity - 1)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        return None
    remaining = await session.execute(select(Reward.stock_quantity).where(Reward.id == reward_id))
    return remaining.scalar_one()


@dataclass(frozen=True, slots=True)
class RewardClaimReceipt:
    claim_id: UUID
    reward_id: UUID
    price_paid: int
    tier_name: str
    balance: int
    remaining_stock: int | None
    replayed: bool = False


@dataclass(frozen=True, slots=True)
class DeliveryReceipt:
    claim_id: UUID
    member_id: UUID
    reward_id: UUID
    status: RewardClaimStatus


class RewardClaimService:
    def __init__(
        self,
        session: AsyncSession,
        *,
        ladder: TierLadder | None = None,
        ledger: ClaimsLedger | None = None,
    ) -> None:
        self._session = session
        self._members = MemberService(session, ladder=ladder)
        self._ledger = ledger or ClaimsLedger(session)

    async def quote(self, context: MemberContext, reward_id: UUID) -> ClaimAssessment | None:
        """Price and affordability of a reward for a loaded member context."""

        reward = await self._session.get(Reward, reward_id)
        if reward is None:
            return None
        resolver = RewardPricingResolver(await self._members.ladder())
        return resolver.assess(RewardTerms.from_model(reward), context.tier_name, context.balance)

    async def claim_reward(self, member_id: UUID, reward_id: UUID, correlation_id: str) -> Result[RewardClaimReceipt]:
        """Debit the tier price, take stock and record the claim in one transaction."""

        if not correlation_id:
            raise ValueError("Reward claims require a correlation id")

        async def _operation() -> Result[RewardClaimReceipt]:
            previous = await self._find_claim(member_id, correlation_id)
            if previous is not None:
                return await self._replay(previous, reward_id)

            reward = await self._session.get(Reward, reward_id)
            if reward is None:
                return fail(FailureCode.NOT_FOUND, "Reward not found", reward_id=str(reward_id))
            await self._session.refresh(reward)
            context = await self._members.load_context(member_id)
            if context is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))

            resolver = RewardPricingResolver(await self._members.ladder())
            assessment = resolver.assess(RewardTerms.from_model(reward), context.tier_name, context.balance)
            if not assessment.can_claim:
                return fail(
                    assessment.blocked_by,
                    assessment.reason or "This reward cannot be claimed",
                    price=assessment.quote.price,
                    shortfall=assessment.shortfall,
                )

            remaining = None
            if reward.stock_quantity is not None:
                remaining = await take_reward_stock(self._session, reward_id)
                if remaining is None:
                    return fail(FailureCode.OUT_OF_STOCK, "Out of stock", reward_id=str(reward_id))

            claim_id = uuid4()
            price = assessment.quote.price
            balance = context.balance
            if price > 0:
                debit = await self._ledger.record_entry(
                    member_id,
                    -price,
                    LedgerReason.REDEMPTION_DEBIT,
                    str(claim_id),
                    description=f"Claimed {reward.title}",
                    metadata={"reward_id": str(reward_id), "tier": context.tier_name},
                )
                if not debit.ok:
                    return debit
                balance = debit.value.balance

            self._session.add(
                RewardClaim(
                    id=claim_id,
                    member_id=member_id,
                    reward_id=reward_id,
                    price_paid=price,
                    tier_name=context.tier_name,
                    correlation_id=correlation_id,
                    status=RewardClaimStatus.CLAIMED,
                )
            )
            await self._session.flush()
            logger.info(
                "Claimed catalog reward",
                member_id=str(member_id),
                reward_id=str(reward_id),
                price=price,
                tier=context.tier_name,
            )
            return Success(
                RewardClaimReceipt(
                    claim_id=claim_id,
                    reward_id=reward_id,
                    price_paid=price,
                    tier_name=context.tier_name,
                    balance=balance,
                    remaining_stock=remaining,
                )
            )

        return await run_unit_of_work(
            self._session,
            [member_key(member_id), reward_key(reward_id)],
            _operation,
            name="rewards.claim",
        )

    async def mark_delivered(self, claim_id: UUID) -> Result[DeliveryReceipt]:
        result = await self._session.execute(select(RewardClaim.member_id).where(RewardClaim.id == claim_id))
        member_id = result.scalar_one_or_none()
        if member_id is None:
            return fail(FailureCode.NOT_FOUND, "Claim not found", claim_id=str(claim_id))

        async def _operation() -> Result[DeliveryReceipt]:
            claim = await self._session.get(RewardClaim, claim_id, populate_existing=True)
            if claim is None:
                return fail(FailureCode.NOT_FOUND, "Claim not found", claim_id=str(claim_id))
            if claim.status is not RewardClaimStatus.CLAIMED:
                return fail(FailureCode.INVALID_STATE, "Claim was already delivered")
            claim.status = RewardClaimStatus.DELIVERED
            await self._session.flush()
            return Success(
                DeliveryReceipt(
                    claim_id=claim.id,
                    member_id=claim.member_id,
                    reward_id=claim.reward_id,
                    status=claim.status,
                )
            )

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="rewards.deliver")

    async def list_claims(self, member_id: UUID) -> list[RewardClaim]:
        stmt = select(RewardClaim).where(RewardClaim.member_id == member_id).order_by(RewardClaim.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _find_claim(self, member_id: UUID, correlation_id: str) -> RewardClaim | None:
        stmt = select(RewardClaim).where(
            RewardClaim.member_id == member_id,
            RewardClaim.correlation_id == correlation_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _replay(self, previous: RewardClaim, reward_id: UUID) -> Result[RewardClaimReceipt]:
        if previous.reward_id != reward_id:
            return fail(
                FailureCode.INVALID_STATE,
                "This request id was already used for a different reward",
                correlation_id=previous.correlation_id,
            )
        balance = await self._ledger.get_balance(previous.member_id) or 0
        stock = await self._session.execute(select(Reward.stock_quantity).where(Reward.id == reward_id))
        return Success(
            RewardClaimReceipt(
                claim_id=previous.id,
                reward_id=reward_id,
                price_paid=previous.price_paid,
                tier_name=previous.tier_name,
                balance=balance,
                remaining_stock=stock.scalar_one_or_none(),
                replayed=True,
            )
        )


__all__ = ["DeliveryReceipt", "RewardClaimReceipt", "RewardClaimService", "take_reward_stock"]
