"""Crediting Claims packages after an external checkout settles."""

from __future__ import annotations

from uuid import UUID

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from claims_engine.domain.results import FailureCode, Result, fail
from claims_engine.models.ledger import LedgerReason
from claims_engine.models.reward import ClaimPackage
from claims_engine.services.ledger import ClaimsLedger, LedgerReceipt


class PurchaseService:
    """Turn a settled checkout into a ``purchase`` ledger credit.

    The checkout reference is the idempotency key, so webhook redeliveries
    replay rather than credit twice.
    """

    def __init__(self, session: AsyncSession, *, ledger: ClaimsLedger | None = None) -> None:
        self._session = session
        self._ledger = ledger or ClaimsLedger(session)

    async def list_packages(self, *, include_inactive: bool = False) -> list[ClaimPackage]:
        stmt = select(ClaimPackage).order_by(ClaimPackage.sort_order.asc(), ClaimPackage.claims_amount.asc())
        if not include_inactive:
            stmt = stmt.where(ClaimPackage.is_active.is_(True))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def credit_purchase(
        self,
        member_id: UUID,
        package_id: UUID,
        checkout_reference: str,
    ) -> Result[LedgerReceipt]:
        if not checkout_reference:
            raise ValueError("Purchases require the checkout reference")

        package = await self._session.get(ClaimPackage, package_id)
        if package is None:
            return fail(FailureCode.NOT_FOUND, "Package not found", package_id=str(package_id))
        if not package.is_active:
            return fail(FailureCode.INVALID_STATE, "This package is no longer on sale", package_id=str(package_id))
        if package.claims_amount <= 0:
            return fail(FailureCode.INVALID_AMOUNT, "Package grants no Claims", package_id=str(package_id))

        result = await self._ledger.apply_entry(
            member_id,
            package.claims_amount,
            LedgerReason.PURCHASE,
            checkout_reference,
            description=f"Purchased {package.name}",
            metadata={"package_id": str(package_id), "price_cents": package.price_cents},
        )
        if result.ok:
            logger.info(
                "Credited claims purchase",
                member_id=str(member_id),
                package_id=str(package_id),
                claims=package.claims_amount,
                replayed=result.value.replayed,
            )
        return result


__all__ = ["PurchaseService"]
