from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from claims_engine.jobs import JOB_REGISTRY, audit_ledger_balances, distribute_monthly_tier_claims
from claims_engine.jobs.allocations import allocation_reference
from claims_engine.models.member import Member
from claims_engine.observability.engine import get_engine_store
from claims_engine.services.ledger import ClaimsLedger


def test_registry_names_every_job() -> None:
    assert set(JOB_REGISTRY) == {"gift-expiry", "tier-allocation", "ledger-audit"}


def test_allocation_reference_embeds_month() -> None:
    assert allocation_reference("abc", "2024-03") == "allocation:abc:2024-03"


@pytest.mark.asyncio
async def test_monthly_allocation_credits_once_per_month(seeded_tiers, create_member) -> None:
    session_factory = seeded_tiers
    gold_id = await create_member(locked=5000)
    platinum_id = await create_member(locked=10000)
    await create_member(locked=1200)
    await create_member()
    march = datetime(2024, 3, 15, 12, tzinfo=timezone.utc)

    summary = await distribute_monthly_tier_claims(session_factory=session_factory, now=march, batch_size=3)
    rerun = await distribute_monthly_tier_claims(session_factory=session_factory, now=march)
    april = await distribute_monthly_tier_claims(
        session_factory=session_factory,
        now=datetime(2024, 4, 1, tzinfo=timezone.utc),
    )

    assert summary == {
        "month": "2024-03",
        "credited": 2,
        "replayed": 0,
        "skipped": 2,
        "claims_granted": 3,
        "failed": 0,
    }
    assert rerun["credited"] == 0
    assert rerun["replayed"] == 2
    assert april["month"] == "2024-04"
    assert april["claims_granted"] == 3

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        assert await ledger.verify_balance(gold_id) == 2
        assert await ledger.verify_balance(platinum_id) == 4


@pytest.mark.asyncio
async def test_ledger_audit_reports_drift(session_factory, create_member) -> None:
    healthy_id = await create_member(balance=50)
    drifted_id = await create_member(balance=20)

    clean = await audit_ledger_balances(session_factory=session_factory)
    assert clean == {"members_checked": 2, "mismatches": 0}

    async with session_factory() as session:
        await session.execute(update(Member).where(Member.id == drifted_id).values(claims_balance=999))
        await session.commit()

    dirty = await audit_ledger_balances(session_factory=session_factory)

    assert dirty == {"members_checked": 2, "mismatches": 1}
    snapshot = get_engine_store().snapshot()
    assert snapshot.totals["integrity_errors"] == 1
    assert str(drifted_id) in snapshot.events.last_integrity_error
    async with session_factory() as session:
        assert await ClaimsLedger(session).verify_balance(healthy_id) == 50
