"""Slot-based reward programs: selection, swaps and cadence-gated redemption."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.core.clock import as_utc, utcnow
from claims_engine.core.settings import settings
from claims_engine.domain.cadence import coerce_cadence, is_redeemable, next_window_opens_at, period_label
from claims_engine.domain.pricing import RewardPricingResolver, RewardTerms
from claims_engine.domain.results import FailureCode, Result, Success, fail
from claims_engine.domain.tiers import TierLadder, load_ladder, resolve_tier
from claims_engine.models.ledger import LedgerReason
from claims_engine.models.member import Member
from claims_engine.models.reward import Reward, RewardCadence
from claims_engine.models.selection import RewardSelection, SelectionProgram, SelectionRedemption
from claims_engine.observability.tracing import get_tracer
from claims_engine.services.ledger import ClaimsLedger
from claims_engine.services.locking import lock_rows, member_key, reward_key, run_unit_of_work
from claims_engine.services.members import MemberService
from claims_engine.services.rewards import take_reward_stock


class SelectionState(str, Enum):
    """How a reward looks to a member browsing a program."""

    SELECTED = "selected"
    GIVEBACK = "giveback"
    LOCKED = "locked"
    NO_SLOTS = "no_slots"
    AVAILABLE = "available"


@dataclass(frozen=True, slots=True)
class SlotSummary:
    program_id: UUID
    program: str
    total_slots: int
    bonus_slots: int
    used_slots: int
    free_swaps_remaining: int
    locked_amount: Decimal
    tier_name: str

    @property
    def capacity(self) -> int:
        return self.total_slots + self.bonus_slots

    @property
    def available_slots(self) -> int:
        return max(0, self.capacity - self.used_slots)


@dataclass(frozen=True, slots=True)
class SelectionReceipt:
    selection_id: UUID
    reward_id: UUID
    is_giveback: bool
    used_slots: int
    capacity: int


@dataclass(frozen=True, slots=True)
class SwapReceipt:
    selection_id: UUID
    replacement_selection_id: UUID | None
    claims_charged: int
    used_free_swap: bool
    free_swaps_remaining: int
    balance: int | None


@dataclass(frozen=True, slots=True)
class RedemptionReceipt:
    selection_id: UUID
    redemption_id: UUID
    period: str
    redemption_count: int
    remaining_stock: int | None
    next_window_opens_at: datetime | None


@dataclass(frozen=True, slots=True)
class RedemptionStatus:
    selection_id: UUID
    cadence: RewardCadence
    can_redeem: bool
    next_window_opens_at: datetime | None
    redemption_count: int
    last_redeemed_at: datetime | None


@dataclass(frozen=True, slots=True)
class BonusSlotReceipt:
    program_id: UUID
    bonus_slots: int
    capacity: int
    balance: int
    replayed: bool = False


class SelectionManager:
    """Enforce slot capacity, the swap economy and redemption windows."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        ladder: TierLadder | None = None,
        ledger: ClaimsLedger | None = None,
    ) -> None:
        self._session = session
        self._ladder = ladder
        self._ledger = ledger or ClaimsLedger(session)
        self._tracer = get_tracer()

    async def _get_ladder(self) -> TierLadder:
        if self._ladder is None:
            self._ladder = await load_ladder(self._session)
        return self._ladder

    @staticmethod
    def _program_name(program: str | None) -> str:
        return (program or settings.default_selection_program).upper()

    async def _find_program(self, member_id: UUID, program: str) -> SelectionProgram | None:
        stmt = select(SelectionProgram).where(
            SelectionProgram.member_id == member_id,
            SelectionProgram.program == program,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _ensure_program(self, member_id: UUID, program: str) -> SelectionProgram:
        record = await self._find_program(member_id, program)
        if record is not None:
            return record
        record = SelectionProgram(
            member_id=member_id,
            program=program,
            total_slots=settings.default_selection_slots,
            bonus_slots=0,
            free_swaps_remaining=settings.default_free_swaps,
            locked_amount=Decimal("0"),
        )
        self._session.add(record)
        await self._session.flush()
        logger.info("Opened selection program", member_id=str(member_id), program=program)
        return record

    async def _used_slots(self, program_id: UUID) -> int:
        stmt = select(func.count(RewardSelection.id)).where(
            RewardSelection.program_id == program_id,
            RewardSelection.is_active.is_(True),
            RewardSelection.is_giveback.is_(False),
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def _take_free_swap(self, program: SelectionProgram) -> bool:
        stmt = (
            update(SelectionProgram)
            .where(SelectionProgram.id == program.id, SelectionProgram.free_swaps_remaining > 0)
            .values(free_swaps_remaining=SelectionProgram.free_swaps_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.refresh(program)
        return result.rowcount == 1

    async def _retire(self, selection: RewardSelection, when: datetime) -> bool:
        stmt = (
            update(RewardSelection)
            .where(RewardSelection.id == selection.id, RewardSelection.is_active.is_(True))
            .values(is_active=False, deactivated_at=when)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.refresh(selection)
        return result.rowcount == 1

    async def _active_selection_for(self, member_id: UUID, reward_id: UUID) -> RewardSelection | None:
        stmt = select(RewardSelection).where(
            RewardSelection.member_id == member_id,
            RewardSelection.reward_id == reward_id,
            RewardSelection.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def _program_tier_name(self, program: SelectionProgram) -> str:
        return resolve_tier(Decimal(program.locked_amount or 0), await self._get_ladder()).tier.name

    async def _meets_status(self, program: SelectionProgram, reward: Reward) -> bool:
        resolver = RewardPricingResolver(await self._get_ladder())
        return resolver.is_eligible(RewardTerms.from_model(reward), await self._program_tier_name(program))

    async def _summary(self, program: SelectionProgram) -> SlotSummary:
        return SlotSummary(
            program_id=program.id,
            program=program.program,
            total_slots=program.total_slots,
            bonus_slots=program.bonus_slots,
            used_slots=await self._used_slots(program.id),
            free_swaps_remaining=program.free_swaps_remaining,
            locked_amount=Decimal(program.locked_amount or 0),
            tier_name=await self._program_tier_name(program),
        )

    async def _check_selectable(
        self,
        member_id: UUID,
        program: SelectionProgram,
        reward: Reward | None,
        *,
        freed_slots: int = 0,
    ) -> Result[None]:
        if reward is None:
            return fail(FailureCode.NOT_FOUND, "Reward not found")
        if not reward.is_active:
            return fail(FailureCode.INVALID_STATE, "This reward is no longer available", reward_id=str(reward.id))
        if await self._active_selection_for(member_id, reward.id) is not None:
            return fail(FailureCode.INVALID_STATE, "Reward already selected", reward_id=str(reward.id))
        if not reward.is_giveback:
            used = await self._used_slots(program.id) - freed_slots
            capacity = program.total_slots + program.bonus_slots
            if used >= capacity:
                return fail(FailureCode.NO_SLOTS_AVAILABLE, "No selection slots available", used=used, capacity=capacity)
        if not await self._meets_status(program, reward):
            return fail(
                FailureCode.INELIGIBLE,
                f"Requires {reward.min_status_tier} status",
                required_tier=reward.min_status_tier,
            )
        return Success(None)

    async def ensure_program(self, member_id: UUID, program: str | None = None) -> Result[SlotSummary]:
        name = self._program_name(program)

        async def _operation() -> Result[SlotSummary]:
            if await self._session.get(Member, member_id) is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))
            record = await self._ensure_program(member_id, name)
            return Success(await self._summary(record))

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="selections.ensure_program")

    async def program_summary(self, member_id: UUID, program: str | None = None) -> SlotSummary | None:
        record = await self._find_program(member_id, self._program_name(program))
        return await self._summary(record) if record else None

    async def select(self, member_id: UUID, reward_id: UUID) -> Result[SelectionReceipt]:
        """Bind a reward to one of the member's slots; give-back rewards take none."""

        async def _operation() -> Result[SelectionReceipt]:
            if await self._session.get(Member, member_id) is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))
            await lock_rows(self._session, Member, [member_id])
            reward = await self._session.get(Reward, reward_id)
            program = await self._ensure_program(member_id, self._program_name(reward.program if reward else None))
            await self._session.refresh(program)
            check = await self._check_selectable(member_id, program, reward)
            if not check.ok:
                return check

            selection = RewardSelection(
                member_id=member_id,
                program_id=program.id,
                reward_id=reward_id,
                is_giveback=bool(reward.is_giveback),
                is_active=True,
                redemption_count=0,
                selected_at=utcnow(),
            )
            self._session.add(selection)
            await self._session.flush()
            used = await self._used_slots(program.id)
            capacity = program.total_slots + program.bonus_slots
            if not selection.is_giveback and used > capacity:
                # another writer filled the last slot between the check and the insert
                return fail(FailureCode.NO_SLOTS_AVAILABLE, "No selection slots available", used=used, capacity=capacity)
            logger.info(
                "Selected reward",
                member_id=str(member_id),
                reward_id=str(reward_id),
                program=program.program,
                giveback=selection.is_giveback,
            )
            return Success(
                SelectionReceipt(
                    selection_id=selection.id,
                    reward_id=reward_id,
                    is_giveback=selection.is_giveback,
                    used_slots=used,
                    capacity=capacity,
                )
            )

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="selections.select")

    async def swap(
        self,
        selection_id: UUID,
        use_free_swap: bool,
        replacement_reward_id: UUID | None = None,
    ) -> Result[SwapReceipt]:
        """Retire a selection, optionally replacing it in the same slot.

        Give-back selections swap for free. Otherwise a free swap is used when
        requested and available, and the configured swap cost is charged when not.
        """

        selection = await self._session.get(RewardSelection, selection_id)
        if selection is None:
            return fail(FailureCode.NOT_FOUND, "Selection not found", selection_id=str(selection_id))
        member_id = selection.member_id

        async def _operation() -> Result[SwapReceipt]:
            await lock_rows(self._session, Member, [member_id])
            await self._session.refresh(selection)
            if not selection.is_active:
                return fail(FailureCode.INVALID_STATE, "Selection is no longer active", selection_id=str(selection_id))
            program = await self._session.get(SelectionProgram, selection.program_id)
            await self._session.refresh(program)

            if replacement_reward_id is not None:
                replacement = await self._session.get(Reward, replacement_reward_id)
                freed = 0 if selection.is_giveback else 1
                check = await self._check_selectable(member_id, program, replacement, freed_slots=freed)
                if not check.ok:
                    return check

            charged = 0
            used_free_swap = False
            balance = None
            if not selection.is_giveback:
                if use_free_swap and await self._take_free_swap(program):
                    used_free_swap = True
                elif settings.selection_swap_cost > 0:
                    debit = await self._ledger.record_entry(
                        member_id,
                        -settings.selection_swap_cost,
                        LedgerReason.SELECTION_SWAP_DEBIT,
                        str(selection_id),
                        description="Reward selection swap",
                    )
                    if not debit.ok:
                        return debit
                    charged = settings.selection_swap_cost
                    balance = debit.value.balance

            now = utcnow()
            if not await self._retire(selection, now):
                return fail(FailureCode.INVALID_STATE, "Selection is no longer active", selection_id=str(selection_id))
            replacement_id = None
            if replacement_reward_id is not None:
                successor = RewardSelection(
                    member_id=member_id,
                    program_id=program.id,
                    reward_id=replacement_reward_id,
                    is_giveback=bool(replacement.is_giveback),
                    is_active=True,
                    redemption_count=0,
                    selected_at=now,
                )
                self._session.add(successor)
                await self._session.flush()
                selection.replaced_by_id = successor.id
                replacement_id = successor.id
            await self._session.flush()

            logger.info(
                "Swapped reward selection",
                member_id=str(member_id),
                selection_id=str(selection_id),
                replacement_selection_id=str(replacement_id) if replacement_id else None,
                claims_charged=charged,
                used_free_swap=used_free_swap,
            )
            return Success(
                SwapReceipt(
                    selection_id=selection_id,
                    replacement_selection_id=replacement_id,
                    claims_charged=charged,
                    used_free_swap=used_free_swap,
                    free_swaps_remaining=program.free_swaps_remaining,
                    balance=balance,
                )
            )

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="selections.swap")

    async def redeem(
        self,
        selection_id: UUID,
        *,
        now: datetime | None = None,
        notes: str | None = None,
    ) -> Result[RedemptionReceipt]:
        """Redeem a selection once per cadence window, taking one unit of stock."""

        selection = await self._session.get(RewardSelection, selection_id)
        if selection is None:
            return fail(FailureCode.NOT_FOUND, "Selection not found", selection_id=str(selection_id))
        member_id = selection.member_id
        reward_id = selection.reward_id

        async def _operation() -> Result[RedemptionReceipt]:
            moment = as_utc(now) if now else utcnow()
            await self._session.refresh(selection)
            if not selection.is_active:
                return fail(FailureCode.INVALID_STATE, "Selection is no longer active", selection_id=str(selection_id))
            reward = await self._session.get(Reward, reward_id)
            await self._session.refresh(reward)
            cadence = coerce_cadence(reward.cadence)

            with self._tracer.start_as_current_span("selections.redeem") as span:
                span.set_attribute("claims.cadence", cadence.value)
                last = as_utc(selection.last_redeemed_at)
                count = selection.redemption_count or 0
                if not is_redeemable(cadence, last_redeemed_at=last, redemption_count=count, now=moment):
                    opens_at = next_window_opens_at(cadence, last_redeemed_at=last, redemption_count=count, now=moment)
                    return fail(
                        FailureCode.INVALID_STATE,
                        "Already redeemed for this period" if opens_at else "This reward has already been redeemed",
                        cadence=cadence.value,
                        next_window_opens_at=opens_at,
                    )

                remaining = None
                if reward.stock_quantity is not None:
                    remaining = await take_reward_stock(self._session, reward_id)
                    if remaining is None:
                        span.set_attribute("claims.out_of_stock", True)
                        return fail(FailureCode.OUT_OF_STOCK, "Out of stock", reward_id=str(reward_id))

                label = period_label(cadence, moment)
                selection.last_redeemed_at = moment
                selection.redemption_count = count + 1
                redemption = SelectionRedemption(
                    selection_id=selection_id,
                    member_id=member_id,
                    reward_id=reward_id,
                    period=label,
                    notes=notes,
                    redeemed_at=moment,
                )
                self._session.add(redemption)
                await self._session.flush()

            logger.info(
                "Redeemed reward selection",
                member_id=str(member_id),
                selection_id=str(selection_id),
                period=label,
                remaining_stock=remaining,
            )
            return Success(
                RedemptionReceipt(
                    selection_id=selection_id,
                    redemption_id=redemption.id,
                    period=label,
                    redemption_count=count + 1,
                    remaining_stock=remaining,
                    next_window_opens_at=next_window_opens_at(
                        cadence,
                        last_redeemed_at=moment,
                        redemption_count=count + 1,
                        now=moment,
                    ),
                )
            )

        return await run_unit_of_work(
            self._session,
            [member_key(member_id), reward_key(reward_id)],
            _operation,
            name="selections.redeem",
        )

    async def purchase_bonus_slot(
        self,
        member_id: UUID,
        correlation_id: str,
        program: str | None = None,
    ) -> Result[BonusSlotReceipt]:
        name = self._program_name(program)

        async def _operation() -> Result[BonusSlotReceipt]:
            if await self._session.get(Member, member_id) is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))
            await lock_rows(self._session, Member, [member_id])
            record = await self._ensure_program(member_id, name)
            await self._session.refresh(record)
            debit = await self._ledger.record_entry(
                member_id,
                -settings.bonus_slot_cost,
                LedgerReason.BONUS_SLOT_DEBIT,
                correlation_id,
                description=f"Bonus {name} selection slot",
            )
            if not debit.ok:
                return debit
            if not debit.value.replayed:
                record.bonus_slots += 1
                await self._session.flush()
                logger.info("Purchased bonus slot", member_id=str(member_id), program=name, bonus_slots=record.bonus_slots)
            return Success(
                BonusSlotReceipt(
                    program_id=record.id,
                    bonus_slots=record.bonus_slots,
                    capacity=record.total_slots + record.bonus_slots,
                    balance=debit.value.balance,
                    replayed=debit.value.replayed,
                )
            )

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="selections.bonus_slot")

    async def sync_locked_amount(self, member_id: UUID, program: str | None = None) -> Result[SlotSummary]:
        """Copy the member's current locked position onto the program."""

        name = self._program_name(program)
        members = MemberService(self._session, ladder=self._ladder)

        async def _operation() -> Result[SlotSummary]:
            if await self._session.get(Member, member_id) is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(member_id))
            record = await self._ensure_program(member_id, name)
            record.locked_amount = await members.total_locked(member_id)
            await self._session.flush()
            return Success(await self._summary(record))

        return await run_unit_of_work(self._session, [member_key(member_id)], _operation, name="selections.sync_locked")

    async def list_selections(
        self,
        member_id: UUID,
        program: str | None = None,
        *,
        active_only: bool = True,
    ) -> list[RewardSelection]:
        stmt = (
            select(RewardSelection)
            .join(SelectionProgram, SelectionProgram.id == RewardSelection.program_id)
            .where(
                RewardSelection.member_id == member_id,
                SelectionProgram.program == self._program_name(program),
            )
            .order_by(RewardSelection.selected_at.asc())
        )
        if active_only:
            stmt = stmt.where(RewardSelection.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def selection_state(self, member_id: UUID, reward_id: UUID) -> SelectionState | None:
        reward = await self._session.get(Reward, reward_id)
        if reward is None:
            return None
        if await self._active_selection_for(member_id, reward_id) is not None:
            return SelectionState.SELECTED

        name = self._program_name(reward.program)
        program = await self._find_program(member_id, name)
        if program is None:
            program = SelectionProgram(
                member_id=member_id,
                program=name,
                total_slots=settings.default_selection_slots,
                bonus_slots=0,
                free_swaps_remaining=settings.default_free_swaps,
                locked_amount=Decimal("0"),
            )
            used = 0
        else:
            used = await self._used_slots(program.id)

        meets_status = await self._meets_status(program, reward)
        if reward.is_giveback and meets_status:
            return SelectionState.GIVEBACK
        if not meets_status:
            return SelectionState.LOCKED
        if used >= program.total_slots + program.bonus_slots:
            return SelectionState.NO_SLOTS
        return SelectionState.AVAILABLE

    async def redemption_status(self, selection_id: UUID, *, now: datetime | None = None) -> RedemptionStatus | None:
        selection = await self._session.get(RewardSelection, selection_id)
        if selection is None:
            return None
        reward = await self._session.get(Reward, selection.reward_id)
        cadence = coerce_cadence(reward.cadence if reward else None)
        moment = as_utc(now) if now else utcnow()
        last = as_utc(selection.last_redeemed_at)
        count = selection.redemption_count or 0
        can_redeem = bool(selection.is_active) and is_redeemable(
            cadence, last_redeemed_at=last, redemption_count=count, now=moment
        )
        return RedemptionStatus(
            selection_id=selection_id,
            cadence=cadence,
            can_redeem=can_redeem,
            next_window_opens_at=next_window_opens_at(cadence, last_redeemed_at=last, redemption_count=count, now=moment)
            if selection.is_active
            else None,
            redemption_count=count,
            last_redeemed_at=last,
        )


__all__ = [
    "BonusSlotReceipt",
    "RedemptionReceipt",
    "RedemptionStatus",
    "SelectionManager",
    "SelectionReceipt",
    "SelectionState",
    "SlotSummary",
    "SwapReceipt",
]
