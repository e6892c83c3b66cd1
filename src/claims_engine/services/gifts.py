"""Peer-to-peer and treasury Claims gifts.

A member gift debits the sender when it is created and is settled by exactly
one later credit: a cancel refund to the sender, a claim credit to the
recipient, or an expiry refund from the housekeeping job. Status moves out of
``pending`` through a conditional update, so two racing settlements cannot
both win.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from loguru import logger
from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.core.clock import as_utc, utcnow
from claims_engine.core.settings import settings
from claims_engine.domain.results import FailureCode, Result, Success, fail
from claims_engine.models.gift import Gift, GiftStatus
from claims_engine.models.ledger import LedgerReason
from claims_engine.models.member import Member
from claims_engine.services.ledger import ClaimsLedger
from claims_engine.services.locking import member_key, run_unit_of_work

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_GROUPS = 3
CODE_GROUP_LENGTH = 4

_EMAIL_ADAPTER = TypeAdapter(EmailStr)


def generate_gift_code() -> str:
    """Return a code like ``K7QM-2ZPA-W9XC`` without look-alike characters."""

    groups = (
        "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_GROUP_LENGTH))
        for _ in range(CODE_GROUPS)
    )
    return "-".join(groups)


def normalize_gift_code(code: str) -> str:
    return code.strip().upper()


def normalize_email(value: str | None) -> str | None:
    """Return the lower-cased address, or ``None`` when it is not a valid email."""

    if not value or not isinstance(value, str):
        return None
    try:
        return _EMAIL_ADAPTER.validate_python(value.strip()).lower()
    except ValidationError:
        return None


def _is_claims_amount(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True, slots=True)
class GiftReceipt:
    gift_id: UUID
    code: str
    status: GiftStatus
    amount: int
    expires_at: datetime
    balance: int | None = None
    replayed: bool = False


@dataclass(frozen=True, slots=True)
class GiftStatistics:
    total_gifts: int
    total_claims_gifted: int
    pending_gifts: int
    claimed_gifts: int
    expired_gifts: int
    cancelled_gifts: int
    admin_gifts: int
    user_gifts: int
    admin_claims_gifted: int
    user_claims_gifted: int


def _receipt(gift: Gift, *, balance: int | None = None, replayed: bool = False) -> GiftReceipt:
    return GiftReceipt(
        gift_id=gift.id,
        code=gift.code,
        status=GiftStatus(gift.status),
        amount=gift.amount,
        expires_at=as_utc(gift.expires_at),
        balance=balance,
        replayed=replayed,
    )


class GiftWorkflow:
    """Send, cancel, claim and settle Claims gifts."""

    def __init__(self, session: AsyncSession, *, ledger: ClaimsLedger | None = None) -> None:
        self._session = session
        self._ledger = ledger or ClaimsLedger(session)

    async def send_gift(
        self,
        sender_id: UUID,
        recipient_email: str,
        amount: int,
        message: str | None = None,
        *,
        client_reference: str | None = None,
    ) -> Result[GiftReceipt]:
        """Hold ``amount`` from the sender and issue a shareable gift code."""

        if not _is_claims_amount(amount) or amount <= 0:
            return fail(FailureCode.INVALID_AMOUNT, "Gift amount must be a positive whole number", amount=amount)
        email = normalize_email(recipient_email)
        if email is None:
            return fail(FailureCode.INVALID_RECIPIENT, "Enter a valid recipient email address")

        async def _operation() -> Result[GiftReceipt]:
            sender = await self._session.get(Member, sender_id)
            if sender is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(sender_id))
            if sender.email and sender.email.lower() == email:
                return fail(FailureCode.INVALID_RECIPIENT, "You cannot send a gift to yourself")

            if client_reference:
                previous = await self._find_by_reference(sender_id, client_reference)
                if previous is not None:
                    if previous.amount != amount or previous.recipient_email != email:
                        return fail(
                            FailureCode.INVALID_STATE,
                            "This request id was already used for a different gift",
                            client_reference=client_reference,
                        )
                    balance = await self._ledger.get_balance(sender_id)
                    return Success(_receipt(previous, balance=balance, replayed=True))

            now = utcnow()
            gift_id = uuid4()
            code = await self._generate_unique_code()
            debit = await self._ledger.record_entry(
                sender_id,
                -amount,
                LedgerReason.GIFT_SEND_HOLD,
                str(gift_id),
                description=f"Gift to {email}",
                metadata={"gift_code": code},
            )
            if not debit.ok:
                return debit

            gift = Gift(
                id=gift_id,
                sender_id=sender_id,
                recipient_email=email,
                amount=amount,
                message=message,
                code=code,
                status=GiftStatus.PENDING,
                client_reference=client_reference,
                created_at=now,
                expires_at=now + timedelta(days=settings.gift_expiry_days),
            )
            self._session.add(gift)
            await self._session.flush()
            logger.info(
                "Sent claims gift",
                gift_id=str(gift_id),
                sender_id=str(sender_id),
                amount=amount,
            )
            return Success(_receipt(gift, balance=debit.value.balance))

        return await run_unit_of_work(self._session, [member_key(sender_id)], _operation, name="gifts.send")

    async def cancel_gift(self, gift_id: UUID, actor_id: UUID) -> Result[GiftReceipt]:
        """Withdraw a pending gift and refund its sender."""

        gift = await self._session.get(Gift, gift_id)
        if gift is None:
            return fail(FailureCode.NOT_FOUND, "Gift not found", gift_id=str(gift_id))
        if gift.is_admin_gift or gift.sender_id != actor_id:
            return fail(FailureCode.FORBIDDEN, "Only the sender can cancel this gift")
        sender_id = gift.sender_id

        async def _operation() -> Result[GiftReceipt]:
            now = utcnow()
            if not await self._transition(gift_id, GiftStatus.CANCELLED, cancelled_at=now):
                return fail(FailureCode.INVALID_STATE, "Only pending gifts can be cancelled", gift_id=str(gift_id))
            await self._session.refresh(gift)
            refund = await self._ledger.record_entry(
                sender_id,
                gift.amount,
                LedgerReason.GIFT_CANCEL_REFUND,
                str(gift_id),
                description="Gift cancelled",
            )
            if not refund.ok:
                return refund
            logger.info("Cancelled claims gift", gift_id=str(gift_id), sender_id=str(sender_id))
            return Success(_receipt(gift, balance=refund.value.balance))

        return await run_unit_of_work(self._session, [member_key(sender_id)], _operation, name="gifts.cancel")

    async def claim_gift(
        self,
        code: str,
        claimant_id: UUID,
        *,
        now: datetime | None = None,
    ) -> Result[GiftReceipt]:
        """Credit a pending, unexpired gift to the claiming member.

        An expired gift is moved to ``expired`` and reported as such; the
        sender's refund is left to the expiry job.
        """

        gift = await self.get_gift_by_code(code)
        if gift is None:
            return fail(FailureCode.NOT_FOUND, "Gift code not found")
        if gift.sender_id is not None and gift.sender_id == claimant_id:
            return fail(FailureCode.INVALID_RECIPIENT, "You cannot claim your own gift")
        gift_id = gift.id

        async def _operation() -> Result[GiftReceipt]:
            moment = as_utc(now) if now else utcnow()
            await self._session.refresh(gift)
            status = GiftStatus(gift.status)
            if status is GiftStatus.EXPIRED:
                return fail(FailureCode.GIFT_EXPIRED, "This gift has expired", expires_at=as_utc(gift.expires_at))
            if status is not GiftStatus.PENDING:
                return fail(FailureCode.INVALID_STATE, f"This gift was already {status.value}", status=status.value)

            claimant = await self._session.get(Member, claimant_id)
            if claimant is None:
                return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(claimant_id))
            if settings.gift_claim_requires_email_match and (claimant.email or "").lower() != gift.recipient_email:
                return fail(FailureCode.INVALID_RECIPIENT, "This gift was sent to a different email address")

            if moment >= as_utc(gift.expires_at):
                if await self._transition(gift_id, GiftStatus.EXPIRED, expired_at=moment):
                    await self._session.commit()
                    logger.info("Gift expired on claim attempt", gift_id=str(gift_id))
                return fail(FailureCode.GIFT_EXPIRED, "This gift has expired", expires_at=as_utc(gift.expires_at))

            if not await self._transition(
                gift_id,
                GiftStatus.CLAIMED,
                claimed_at=moment,
                recipient_id=claimant_id,
            ):
                return fail(FailureCode.INVALID_STATE, "This gift is no longer pending")
            await self._session.refresh(gift)
            credit = await self._ledger.record_entry(
                claimant_id,
                gift.amount,
                LedgerReason.GIFT_CLAIM_CREDIT,
                str(gift_id),
                description="Gift claimed",
            )
            if not credit.ok:
                return credit
            logger.info(
                "Claimed claims gift",
                gift_id=str(gift_id),
                recipient_id=str(claimant_id),
                amount=gift.amount,
            )
            return Success(_receipt(gift, balance=credit.value.balance))

        return await run_unit_of_work(self._session, [member_key(claimant_id)], _operation, name="gifts.claim")

    async def send_admin_gift(
        self,
        amount: int,
        *,
        recipient_email: str | None = None,
        recipient_id: UUID | None = None,
        message: str | None = None,
        admin_notes: str | None = None,
        instant_credit: bool = False,
    ) -> Result[GiftReceipt]:
        """Issue a treasury gift; nothing is debited from any member."""

        if not _is_claims_amount(amount) or amount <= 0:
            return fail(FailureCode.INVALID_AMOUNT, "Gift amount must be a positive whole number", amount=amount)
        if instant_credit and recipient_id is None:
            return fail(FailureCode.INVALID_RECIPIENT, "Instant credit needs a recipient member")

        async def _operation() -> Result[GiftReceipt]:
            email = normalize_email(recipient_email)
            if recipient_id is not None:
                recipient = await self._session.get(Member, recipient_id)
                if recipient is None:
                    return fail(FailureCode.NOT_FOUND, "Member not found", member_id=str(recipient_id))
                email = email or normalize_email(recipient.email)
            if email is None:
                return fail(FailureCode.INVALID_RECIPIENT, "Enter a valid recipient email address")

            now = utcnow()
            gift = Gift(
                id=uuid4(),
                sender_id=None,
                recipient_email=email,
                amount=amount,
                message=message,
                code=await self._generate_unique_code(),
                status=GiftStatus.PENDING,
                is_admin_gift=True,
                admin_notes=admin_notes,
                created_at=now,
                expires_at=now + timedelta(days=settings.gift_expiry_days),
            )
            balance = None
            if instant_credit:
                gift.status = GiftStatus.CLAIMED
                gift.recipient_id = recipient_id
                gift.claimed_at = now
                credit = await self._ledger.record_entry(
                    recipient_id,
                    amount,
                    LedgerReason.GIFT_CLAIM_CREDIT,
                    str(gift.id),
                    description="Gift from the team",
                )
                if not credit.ok:
                    return credit
                balance = credit.value.balance
            self._session.add(gift)
            await self._session.flush()
            logger.info(
                "Issued admin claims gift",
                gift_id=str(gift.id),
                amount=amount,
                instant_credit=instant_credit,
            )
            return Success(_receipt(gift, balance=balance))

        keys = [member_key(recipient_id)] if instant_credit and recipient_id else []
        return await run_unit_of_work(self._session, keys, _operation, name="gifts.send_admin")

    async def cancel_admin_gift(self, gift_id: UUID) -> Result[GiftReceipt]:
        gift = await self._session.get(Gift, gift_id)
        if gift is None:
            return fail(FailureCode.NOT_FOUND, "Gift not found", gift_id=str(gift_id))
        if not gift.is_admin_gift:
            return fail(FailureCode.FORBIDDEN, "Member gifts can only be cancelled by their sender")

        async def _operation() -> Result[GiftReceipt]:
            if not await self._transition(gift_id, GiftStatus.CANCELLED, cancelled_at=utcnow()):
                return fail(FailureCode.INVALID_STATE, "Only pending gifts can be cancelled", gift_id=str(gift_id))
            await self._session.refresh(gift)
            logger.info("Cancelled admin claims gift", gift_id=str(gift_id))
            return Success(_receipt(gift))

        return await run_unit_of_work(self._session, [], _operation, name="gifts.cancel_admin")

    async def settle_expired_gift(self, gift_id: UUID, *, now: datetime | None = None) -> Result[GiftReceipt]:
        """Expire an overdue pending gift and refund a member sender once."""

        gift = await self._session.get(Gift, gift_id)
        if gift is None:
            return fail(FailureCode.NOT_FOUND, "Gift not found", gift_id=str(gift_id))
        keys = [member_key(gift.sender_id)] if gift.sender_id else []

        async def _operation() -> Result[GiftReceipt]:
            moment = as_utc(now) if now else utcnow()
            await self._session.refresh(gift)
            status = GiftStatus(gift.status)
            if status is GiftStatus.PENDING:
                if moment < as_utc(gift.expires_at):
                    return fail(FailureCode.INVALID_STATE, "Gift has not expired yet", gift_id=str(gift_id))
                if not await self._transition(gift_id, GiftStatus.EXPIRED, expired_at=moment):
                    return fail(FailureCode.INVALID_STATE, "Gift is no longer pending", gift_id=str(gift_id))
                await self._session.refresh(gift)
            elif status is not GiftStatus.EXPIRED:
                return fail(FailureCode.INVALID_STATE, f"Gift is {status.value}", gift_id=str(gift_id))

            balance = None
            if gift.sender_id is not None and gift.refunded_at is None and settings.gift_expiry_refund_enabled:
                refund = await self._ledger.record_entry(
                    gift.sender_id,
                    gift.amount,
                    LedgerReason.GIFT_EXPIRY_REFUND,
                    str(gift_id),
                    description="Unclaimed gift expired",
                )
                if not refund.ok:
                    return refund
                gift.refunded_at = moment
                await self._session.flush()
                balance = refund.value.balance
                logger.info(
                    "Refunded expired claims gift",
                    gift_id=str(gift_id),
                    sender_id=str(gift.sender_id),
                    amount=gift.amount,
                )
            return Success(_receipt(gift, balance=balance))

        return await run_unit_of_work(self._session, keys, _operation, name="gifts.settle_expired")

    async def get_gift_by_code(self, code: str) -> Gift | None:
        stmt = select(Gift).where(Gift.code == normalize_gift_code(code))
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_sent_gifts(self, member_id: UUID) -> list[Gift]:
        stmt = select(Gift).where(Gift.sender_id == member_id).order_by(Gift.created_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_received_gifts(self, member_id: UUID) -> list[Gift]:
        stmt = select(Gift).where(Gift.recipient_id == member_id).order_by(Gift.claimed_at.desc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_pending_gifts(self, member_id: UUID, *, now: datetime | None = None) -> list[Gift]:
        """Unexpired pending gifts addressed to the member's email."""

        member = await self._session.get(Member, member_id)
        if member is None or not member.email:
            return []
        stmt = (
            select(Gift)
            .where(
                Gift.recipient_email == member.email.lower(),
                Gift.status == GiftStatus.PENDING,
                Gift.expires_at > (now or utcnow()),
            )
            .order_by(Gift.created_at.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_settleable_gift_ids(self, *, now: datetime | None = None, limit: int = 500) -> list[UUID]:
        """Overdue pending gifts plus expired member gifts still awaiting a refund."""

        moment = now or utcnow()
        overdue = and_(Gift.status == GiftStatus.PENDING, Gift.expires_at <= moment)
        condition = overdue
        if settings.gift_expiry_refund_enabled:
            condition = or_(
                overdue,
                and_(
                    Gift.status == GiftStatus.EXPIRED,
                    Gift.refunded_at.is_(None),
                    Gift.sender_id.is_not(None),
                ),
            )
        stmt = select(Gift.id).where(condition).order_by(Gift.expires_at.asc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def gift_statistics(self) -> GiftStatistics:
        stmt = select(Gift.status, Gift.is_admin_gift, func.count(Gift.id), func.coalesce(func.sum(Gift.amount), 0)).group_by(
            Gift.status, Gift.is_admin_gift
        )
        result = await self._session.execute(stmt)
        by_status: dict[GiftStatus, int] = {status: 0 for status in GiftStatus}
        admin_count = user_count = admin_claims = user_claims = 0
        for status, is_admin, count, total in result.all():
            by_status[GiftStatus(status)] += count
            if is_admin:
                admin_count += count
                admin_claims += int(total)
            else:
                user_count += count
                user_claims += int(total)
        return GiftStatistics(
            total_gifts=admin_count + user_count,
            total_claims_gifted=admin_claims + user_claims,
            pending_gifts=by_status[GiftStatus.PENDING],
            claimed_gifts=by_status[GiftStatus.CLAIMED],
            expired_gifts=by_status[GiftStatus.EXPIRED],
            cancelled_gifts=by_status[GiftStatus.CANCELLED],
            admin_gifts=admin_count,
            user_gifts=user_count,
            admin_claims_gifted=admin_claims,
            user_claims_gifted=user_claims,
        )

    async def _transition(self, gift_id: UUID, target: GiftStatus, **values: Any) -> bool:
        stmt = (
            update(Gift)
            .where(Gift.id == gift_id, Gift.status == GiftStatus.PENDING)
            .values(status=target, **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def _find_by_reference(self, sender_id: UUID, client_reference: str) -> Gift | None:
        stmt = select(Gift).where(Gift.sender_id == sender_id, Gift.client_reference == client_reference)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def _generate_unique_code(self) -> str:
        candidate = generate_gift_code()
        result = await self._session.execute(select(Gift.id).where(Gift.code == candidate))
        if result.scalar_one_or_none():
            return await self._generate_unique_code()
        return candidate


__all__ = [
    "GiftReceipt",
    "GiftStatistics",
    "GiftWorkflow",
    "generate_gift_code",
    "normalize_email",
    "normalize_gift_code",
]
