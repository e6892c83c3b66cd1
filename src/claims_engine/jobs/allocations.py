"""Monthly Claims allowance credited to members by status tier."""

# meta: job: tier-allocation

from __future__ import annotations

import datetime as dt
from typing import Any, Dict

from loguru import logger
from sqlalchemy import select

from claims_engine.core.clock import as_utc, utcnow
from claims_engine.domain.cadence import period_label
from claims_engine.domain.tiers import resolve_tier
from claims_engine.models.ledger import LedgerReason
from claims_engine.models.member import Member
from claims_engine.models.reward import RewardCadence
from claims_engine.services.ledger import ClaimsLedger
from claims_engine.services.members import MemberService

from ._session import SessionFactory, open_session


def allocation_reference(member_id: Any, month: str) -> str:
    return f"allocation:{member_id}:{month}"


async def distribute_monthly_tier_claims(
    *,
    session_factory: SessionFactory,
    now: dt.datetime | None = None,
    batch_size: int = 200,
) -> Dict[str, Any]:
    """Credit each member's tier ``claims_per_month`` once per calendar month.

    The correlation id embeds the month, so a second run inside the same month
    replays every credit instead of paying it again.
    """

    moment = as_utc(now) if now else utcnow()
    month = period_label(RewardCadence.MONTHLY, moment)
    session = await open_session(session_factory)

    async with session as managed_session:
        members = MemberService(managed_session)
        ledger = ClaimsLedger(managed_session)
        ladder = await members.ladder()

        credited = 0
        replayed = 0
        skipped = 0
        claims_granted = 0
        failures: list[dict[str, str]] = []
        offset = 0
        while True:
            stmt = select(Member.id).order_by(Member.created_at.asc(), Member.id.asc()).offset(offset).limit(batch_size)
            result = await managed_session.execute(stmt)
            member_ids = list(result.scalars().all())
            if not member_ids:
                break
            offset += len(member_ids)

            for member_id in member_ids:
                tier = resolve_tier(await members.total_locked(member_id), ladder).tier
                if tier.claims_per_month <= 0:
                    skipped += 1
                    continue
                outcome = await ledger.apply_entry(
                    member_id,
                    tier.claims_per_month,
                    LedgerReason.TIER_ALLOCATION_CREDIT,
                    allocation_reference(member_id, month),
                    description=f"{tier.display_name} monthly allowance",
                    metadata={"tier": tier.name, "month": month},
                )
                if not outcome.ok:
                    failures.append({"member_id": str(member_id), "code": outcome.code.value})
                elif outcome.value.replayed:
                    replayed += 1
                else:
                    credited += 1
                    claims_granted += tier.claims_per_month

        summary = {
            "month": month,
            "credited": credited,
            "replayed": replayed,
            "skipped": skipped,
            "claims_granted": claims_granted,
            "failed": len(failures),
        }
        logger.bind(summary=summary, failures=failures).info("Monthly tier allocation completed")
        return summary


__all__ = ["allocation_reference", "distribute_monthly_tier_claims"]
