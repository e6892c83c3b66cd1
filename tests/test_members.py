from decimal import Decimal
from uuid import uuid4

import pytest

from claims_engine.domain.results import FailureCode
from claims_engine.services.members import MemberService


@pytest.mark.asyncio
async def test_ensure_member_is_idempotent(session_factory) -> None:
    async with session_factory() as session:
        service = MemberService(session)
        created = await service.ensure_member("auth0|abc", email="Fan@Example.com")
        again = await service.ensure_member("auth0|abc", email="other@example.com")

    assert created.id == again.id
    assert again.email == "fan@example.com"
    assert again.claims_balance == 0


@pytest.mark.asyncio
async def test_lock_and_release_positions_move_the_tier(seeded_tiers, create_member) -> None:
    member_id = await create_member(locked=1750)
    stranger_id = await create_member()

    async with seeded_tiers() as session:
        service = MemberService(session)
        context = await service.load_context(member_id)
        assert context.tier_name == "bronze"
        assert context.next_tier_name == "silver"
        assert context.progress_pct == Decimal("50.00")
        assert context.total_locked == Decimal("1750")

        extra = await service.lock_tokens(member_id, "1000", source="wallet:0xabc")
        assert extra.ok
        assert (await service.resolve(member_id)).tier.name == "silver"

        foreign = await service.release_lock(extra.value.lock_id, actor_id=stranger_id)
        assert foreign.code is FailureCode.FORBIDDEN

        released = await service.release_lock(extra.value.lock_id, actor_id=member_id)
        assert released.ok
        assert released.value.released_at is not None
        assert await service.total_locked(member_id) == Decimal("1750")

        twice = await service.release_lock(extra.value.lock_id, actor_id=member_id)
        assert twice.code is FailureCode.INVALID_STATE
        assert (await service.release_lock(uuid4(), actor_id=member_id)).code is FailureCode.NOT_FOUND


@pytest.mark.asyncio
async def test_lock_receipt_survives_later_failure_on_same_session(session_factory, create_member) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        service = MemberService(session)
        locked = await service.lock_tokens(member_id, "250.50", source="wallet:0xdef")
        rejected = await service.lock_tokens(uuid4(), 10, source="360LOCK")

    assert rejected.code is FailureCode.NOT_FOUND
    assert locked.value.member_id == member_id
    assert locked.value.amount == Decimal("250.50")
    assert locked.value.source == "wallet:0xdef"
    assert locked.value.released_at is None


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -10, "abc", "NaN"])
async def test_lock_tokens_rejects_bad_amounts(session_factory, create_member, amount) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        result = await MemberService(session).lock_tokens(member_id, amount, source="360LOCK")

    assert result.code is FailureCode.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_context_for_unknown_member(session_factory) -> None:
    async with session_factory() as session:
        service = MemberService(session)
        assert await service.load_context(uuid4()) is None
        missing = await service.lock_tokens(uuid4(), 10, source="360LOCK")

    assert missing.code is FailureCode.NOT_FOUND


@pytest.mark.asyncio
async def test_context_without_locks_has_no_status(seeded_tiers, create_member) -> None:
    member_id = await create_member(balance=40)

    async with seeded_tiers() as session:
        context = await MemberService(session).load_context(member_id)

    assert context.tier_name == "none"
    assert context.tier_rank == -1
    assert context.balance == 40
    assert context.next_tier_name == "bronze"
