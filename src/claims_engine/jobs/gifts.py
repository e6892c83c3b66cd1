"""Sweep overdue pending gifts back to their senders."""

# meta: job: gift-expiry

from __future__ import annotations

import datetime as dt
from typing import Any, Dict

from loguru import logger

from claims_engine.core.clock import as_utc, utcnow
from claims_engine.services.gifts import GiftWorkflow

from ._session import SessionFactory, open_session


async def expire_pending_gifts(
    *,
    session_factory: SessionFactory,
    limit: int = 500,
    now: dt.datetime | None = None,
) -> Dict[str, Any]:
    """Expire overdue gifts and refund member senders; safe to re-run."""

    moment = as_utc(now) if now else utcnow()
    session = await open_session(session_factory)
    async with session as managed_session:
        workflow = GiftWorkflow(managed_session)
        gift_ids = await workflow.list_settleable_gift_ids(now=moment, limit=limit)

        settled = 0
        refunded = 0
        refunded_claims = 0
        failures: list[dict[str, str]] = []
        for gift_id in gift_ids:
            result = await workflow.settle_expired_gift(gift_id, now=moment)
            if not result.ok:
                failures.append({"gift_id": str(gift_id), "code": result.code.value})
                continue
            settled += 1
            if result.value.balance is not None:
                refunded += 1
                refunded_claims += result.value.amount

        summary = {
            "candidates": len(gift_ids),
            "settled": settled,
            "refunded": refunded,
            "refunded_claims": refunded_claims,
            "failed": len(failures),
        }
        logger.bind(summary=summary, failures=failures).info("Gift expiry sweep completed")
        return summary


__all__ = ["expire_pending_gifts"]
