import asyncio

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from claims_engine.core.settings import settings
from claims_engine.domain.results import FailureCode
from claims_engine.exceptions import LedgerIntegrityError
from claims_engine.models.ledger import LedgerEntry, LedgerReason
from claims_engine.models.member import Member
from claims_engine.observability.engine import get_engine_store
from claims_engine.services.events import get_event_bus
from claims_engine.services.ledger import ClaimsLedger, decode_time_uuid_cursor, encode_time_uuid_cursor
from claims_engine.services.locking import get_lock_registry, is_contention_error, member_key


async def _entry_count(session, member_id) -> int:
    result = await session.execute(select(func.count(LedgerEntry.id)).where(LedgerEntry.member_id == member_id))
    return int(result.scalar_one())


@pytest.mark.asyncio
async def test_credit_and_debit_update_materialized_balance(session_factory, create_member) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        credit = await ledger.apply_entry(member_id, 100, LedgerReason.PURCHASE, "checkout-1")
        debit = await ledger.apply_entry(member_id, -40, "redemption_debit", "claim-1")

        assert credit.ok and credit.value.balance == 100
        assert debit.ok and debit.value.balance == 60
        assert await ledger.get_balance(member_id) == 60
        assert await ledger.ledger_sum(member_id) == 60
        assert await ledger.verify_balance(member_id) == 60

        entries, _ = await ledger.list_entries(member_id)
        assert [entry.balance_after for entry in entries] == [60, 100]


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected_without_side_effects(session_factory, create_member) -> None:
    member_id = await create_member(balance=10)

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        result = await ledger.apply_entry(member_id, -30, LedgerReason.GIFT_SEND_HOLD, "gift-x")

        assert not result.ok
        assert result.code is FailureCode.INSUFFICIENT_BALANCE
        assert result.detail["shortfall"] == 20
        assert await ledger.get_balance(member_id) == 10
        assert await _entry_count(session, member_id) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("delta", [0, True, 1.5, "10"])
async def test_invalid_amounts_are_rejected(session_factory, create_member, delta) -> None:
    member_id = await create_member(balance=10)

    async with session_factory() as session:
        result = await ClaimsLedger(session).apply_entry(member_id, delta, LedgerReason.PURCHASE, "bad-amount")

    assert result.code is FailureCode.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_missing_correlation_id_is_a_programming_error(session_factory, create_member) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        with pytest.raises(ValueError):
            await ClaimsLedger(session).apply_entry(member_id, 5, LedgerReason.PURCHASE, "")


@pytest.mark.asyncio
async def test_unknown_member_is_not_found(session_factory) -> None:
    from uuid import uuid4

    async with session_factory() as session:
        result = await ClaimsLedger(session).apply_entry(uuid4(), 5, LedgerReason.PURCHASE, "ghost")

    assert result.code is FailureCode.NOT_FOUND


@pytest.mark.asyncio
async def test_repeated_correlation_id_replays_instead_of_applying_twice(session_factory, create_member) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        first = await ledger.apply_entry(member_id, 25, LedgerReason.PURCHASE, "checkout-9")
        second = await ledger.apply_entry(member_id, 25, LedgerReason.PURCHASE, "checkout-9")
        conflicting = await ledger.apply_entry(member_id, 30, LedgerReason.PURCHASE, "checkout-9")

        assert first.ok and not first.value.replayed
        assert second.ok and second.value.replayed
        assert second.value.entry_id == first.value.entry_id
        assert conflicting.code is FailureCode.INVALID_STATE
        assert await ledger.get_balance(member_id) == 25
        assert await _entry_count(session, member_id) == 1

    snapshot = get_engine_store().snapshot()
    assert snapshot.totals["replayed"] == 1


@pytest.mark.asyncio
async def test_same_correlation_id_with_different_reason_is_independent(session_factory, create_member) -> None:
    member_id = await create_member(balance=50)

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        hold = await ledger.apply_entry(member_id, -20, LedgerReason.GIFT_SEND_HOLD, "gift-1")
        refund = await ledger.apply_entry(member_id, 20, LedgerReason.GIFT_CANCEL_REFUND, "gift-1")

        assert hold.ok and refund.ok
        assert await ledger.get_balance(member_id) == 50
        assert sum(entry.delta for entry in await ledger.entries_for_correlation("gift-1")) == 0


@pytest.mark.asyncio
async def test_verify_balance_detects_drift(session_factory, create_member) -> None:
    member_id = await create_member(balance=40)

    async with session_factory() as session:
        await session.execute(update(Member).where(Member.id == member_id).values(claims_balance=999))
        await session.commit()

        with pytest.raises(LedgerIntegrityError) as excinfo:
            await ClaimsLedger(session).verify_balance(member_id)

    assert excinfo.value.materialized == 999
    assert excinfo.value.ledger_sum == 40
    assert get_engine_store().snapshot().events.last_integrity_error is not None


@pytest.mark.asyncio
async def test_admin_credit_requires_positive_amount(session_factory, create_member) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        rejected = await ledger.admin_credit(member_id, -5, "ops-1")
        granted = await ledger.admin_credit(member_id, 15, "ops-2", notes="Support goodwill")

        assert rejected.code is FailureCode.INVALID_AMOUNT
        assert granted.ok and granted.value.reason is LedgerReason.ADMIN_CREDIT
        assert await ledger.get_balance(member_id) == 15


@pytest.mark.asyncio
async def test_list_entries_paginates_without_duplicates(session_factory, create_member) -> None:
    member_id = await create_member()

    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        for index in range(3):
            assert (await ledger.apply_entry(member_id, 10, LedgerReason.PURCHASE, f"checkout-{index}")).ok

        first_page, cursor = await ledger.list_entries(member_id, limit=2)
        assert len(first_page) == 2
        assert cursor is not None

        second_page, final_cursor = await ledger.list_entries(member_id, limit=2, cursor=cursor)
        assert final_cursor is None

    seen = {entry.id for entry in first_page} | {entry.id for entry in second_page}
    assert len(seen) == 3


def test_cursor_round_trip() -> None:
    from datetime import datetime, timezone
    from uuid import uuid4

    stamp = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    identifier = uuid4()

    assert decode_time_uuid_cursor(encode_time_uuid_cursor(stamp, identifier)) == (stamp, identifier)


@pytest.mark.asyncio
async def test_balance_events_publish_after_commit_only(session_factory, create_member) -> None:
    member_id = await create_member(balance=5)
    received = []

    async def _listener(event) -> None:
        received.append(event)

    unsubscribe = get_event_bus().subscribe(_listener)
    async with session_factory() as session:
        ledger = ClaimsLedger(session)
        await ledger.apply_entry(member_id, 20, LedgerReason.PURCHASE, "checkout-evt")
        await ledger.apply_entry(member_id, -500, LedgerReason.REDEMPTION_DEBIT, "too-much")
    unsubscribe()

    assert len(received) == 1
    assert received[0].balance == 25
    assert received[0].reason is LedgerReason.PURCHASE


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_the_write(session_factory, create_member) -> None:
    member_id = await create_member()

    def _boom(event) -> None:
        raise RuntimeError("listener down")

    get_event_bus().subscribe(_boom)
    async with session_factory() as session:
        result = await ClaimsLedger(session).apply_entry(member_id, 3, LedgerReason.PURCHASE, "checkout-boom")

    assert result.ok


@pytest.mark.asyncio
async def test_held_member_lock_yields_retryable_contention(session_factory, create_member, monkeypatch) -> None:
    member_id = await create_member()
    monkeypatch.setattr(settings, "lock_timeout_seconds", 0.05)

    async with get_lock_registry().hold(member_key(member_id)):
        async with session_factory() as session:
            result = await ClaimsLedger(session).apply_entry(member_id, 5, LedgerReason.PURCHASE, "checkout-busy")

    assert result.code is FailureCode.TRANSIENT_LOCK_CONTENTION
    assert result.retryable
    assert get_engine_store().snapshot().totals["contention"] == 1


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_factory, create_member) -> None:
    member_id = await create_member(balance=30)

    async def _debit(index: int):
        async with session_factory() as session:
            return await ClaimsLedger(session).apply_entry(
                member_id, -20, LedgerReason.REDEMPTION_DEBIT, f"claim-{index}"
            )

    results = await asyncio.gather(*(_debit(index) for index in range(3)))

    assert sum(1 for result in results if result.ok) == 1
    assert all(result.code is FailureCode.INSUFFICIENT_BALANCE for result in results if not result.ok)
    async with session_factory() as session:
        assert await ClaimsLedger(session).verify_balance(member_id) == 10


def test_contention_classification() -> None:
    assert is_contention_error(OperationalError("UPDATE members", {}, Exception("database is locked")))
    assert is_contention_error(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed: ledger_entries")))
    assert is_contention_error(StaleDataError("row changed"))
    assert not is_contention_error(OperationalError("SELECT 1", {}, Exception("disk I/O error")))
    assert not is_contention_error(ValueError("nope"))
