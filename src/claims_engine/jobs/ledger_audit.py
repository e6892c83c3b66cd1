"""Recompute member balances from the ledger and report drift."""

# meta: job: ledger-audit

from __future__ import annotations

from typing import Any, Dict

from loguru import logger
from sqlalchemy import select

from claims_engine.exceptions import LedgerIntegrityError
from claims_engine.models.member import Member
from claims_engine.services.ledger import ClaimsLedger

from ._session import SessionFactory, open_session


async def audit_ledger_balances(*, session_factory: SessionFactory) -> Dict[str, Any]:
    session = await open_session(session_factory)
    async with session as managed_session:
        ledger = ClaimsLedger(managed_session)
        result = await managed_session.execute(select(Member.id).order_by(Member.id.asc()))
        member_ids = list(result.scalars().all())

        mismatched: list[str] = []
        for member_id in member_ids:
            try:
                await ledger.verify_balance(member_id)
            except LedgerIntegrityError:
                mismatched.append(str(member_id))

        summary = {"members_checked": len(member_ids), "mismatches": len(mismatched)}
        bound = logger.bind(summary=summary, mismatched=mismatched)
        if mismatched:
            bound.error("Ledger audit found balance drift")
        else:
            bound.info("Ledger audit completed")
        return summary


__all__ = ["audit_ledger_balances"]
