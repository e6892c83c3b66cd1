from uuid import uuid4

import pytest
from sqlalchemy import func, select

from claims_engine.domain.results import FailureCode
from claims_engine.models.ledger import LedgerEntry, LedgerReason
from claims_engine.models.reward import RewardClaimStatus
from claims_engine.services.ledger import ClaimsLedger
from claims_engine.services.members import MemberService
from claims_engine.services.rewards import RewardClaimService


@pytest.fixture
def gold_member(create_member):
    async def _create(balance: int = 100):
        return await create_member(balance=balance, locked=5000)

    return _create


@pytest.mark.asyncio
async def test_claim_charges_the_tier_price(seeded_tiers, gold_member, create_reward) -> None:
    member_id = await gold_member()
    reward_id = await create_reward(cost=50, tier_price_overrides={"version": 1, "prices": {"gold": 20}}, stock_quantity=3)

    async with seeded_tiers() as session:
        service = RewardClaimService(session)
        context = await MemberService(session).load_context(member_id)
        quote = await service.quote(context, reward_id)
        assert quote.can_claim
        assert quote.quote.price == 20
        assert quote.quote.discount_amount == 30

        claimed = await service.claim_reward(member_id, reward_id, "order-1")

        assert claimed.ok
        assert claimed.value.price_paid == 20
        assert claimed.value.tier_name == "gold"
        assert claimed.value.balance == 80
        assert claimed.value.remaining_stock == 2
        assert await ClaimsLedger(session).verify_balance(member_id) == 80


@pytest.mark.asyncio
async def test_free_claim_writes_no_debit(seeded_tiers, gold_member, create_reward) -> None:
    member_id = await gold_member()
    reward_id = await create_reward(cost=50, tier_price_overrides={"bronze": 50, "gold": 0})

    async with seeded_tiers() as session:
        claimed = await RewardClaimService(session).claim_reward(member_id, reward_id, "order-free")
        debits = await session.execute(
            select(func.count(LedgerEntry.id)).where(LedgerEntry.reason == LedgerReason.REDEMPTION_DEBIT)
        )

        assert claimed.ok
        assert claimed.value.price_paid == 0
        assert claimed.value.balance == 100
        assert debits.scalar_one() == 0


@pytest.mark.asyncio
async def test_claim_replays_by_correlation_id(seeded_tiers, gold_member, create_reward) -> None:
    member_id = await gold_member()
    reward_id = await create_reward(cost=30)
    other_reward_id = await create_reward(cost=30)

    async with seeded_tiers() as session:
        service = RewardClaimService(session)
        first = await service.claim_reward(member_id, reward_id, "order-7")
        second = await service.claim_reward(member_id, reward_id, "order-7")
        conflicting = await service.claim_reward(member_id, other_reward_id, "order-7")

        assert first.ok and second.ok
        assert second.value.replayed
        assert second.value.claim_id == first.value.claim_id
        assert second.value.balance == 70
        assert conflicting.code is FailureCode.INVALID_STATE
        assert len(await service.list_claims(member_id)) == 1

    with pytest.raises(ValueError):
        async with seeded_tiers() as session:
            await RewardClaimService(session).claim_reward(member_id, reward_id, "")


@pytest.mark.asyncio
async def test_claim_rejections(seeded_tiers, gold_member, create_member, create_reward) -> None:
    member_id = await gold_member(balance=10)
    expensive_id = await create_reward(cost=50)
    platinum_id = await create_reward(cost=5, min_status_tier="platinum")
    retired_id = await create_reward(cost=5, is_active=False)
    sold_out_id = await create_reward(cost=5, stock_quantity=0)

    async with seeded_tiers() as session:
        service = RewardClaimService(session)

        short = await service.claim_reward(member_id, expensive_id, "a")
        assert short.code is FailureCode.INSUFFICIENT_BALANCE
        assert short.detail["shortfall"] == 40

        assert (await service.claim_reward(member_id, platinum_id, "b")).code is FailureCode.INELIGIBLE
        assert (await service.claim_reward(member_id, retired_id, "c")).code is FailureCode.INVALID_STATE
        assert (await service.claim_reward(member_id, sold_out_id, "d")).code is FailureCode.OUT_OF_STOCK
        assert (await service.claim_reward(member_id, uuid4(), "e")).code is FailureCode.NOT_FOUND
        assert (await service.claim_reward(uuid4(), expensive_id, "f")).code is FailureCode.NOT_FOUND
        assert await ClaimsLedger(session).get_balance(member_id) == 10
        assert await service.list_claims(member_id) == []


@pytest.mark.asyncio
async def test_last_unit_of_stock_goes_to_one_member(seeded_tiers, gold_member, create_reward) -> None:
    first_id = await gold_member()
    second_id = await gold_member()
    reward_id = await create_reward(cost=10, stock_quantity=1)

    async with seeded_tiers() as session:
        service = RewardClaimService(session)
        won = await service.claim_reward(first_id, reward_id, "race-1")
        lost = await service.claim_reward(second_id, reward_id, "race-2")

        assert won.ok and won.value.remaining_stock == 0
        assert lost.code is FailureCode.OUT_OF_STOCK
        assert await ClaimsLedger(session).get_balance(second_id) == 100


@pytest.mark.asyncio
async def test_mark_delivered_once(seeded_tiers, gold_member, create_reward) -> None:
    member_id = await gold_member()
    reward_id = await create_reward(cost=10)

    async with seeded_tiers() as session:
        service = RewardClaimService(session)
        claimed = await service.claim_reward(member_id, reward_id, "ship-1")

        delivered = await service.mark_delivered(claimed.value.claim_id)
        again = await service.mark_delivered(claimed.value.claim_id)
        missing = await service.mark_delivered(uuid4())

    assert delivered.ok
    assert delivered.value.status is RewardClaimStatus.DELIVERED
    assert delivered.value.claim_id == claimed.value.claim_id
    assert delivered.value.reward_id == reward_id
    assert again.code is FailureCode.INVALID_STATE
    assert missing.code is FailureCode.NOT_FOUND
