"""Append-only Claims ledger."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from claims_engine.core.clock import utcnow
from claims_engine.db.base import Base


class LedgerReason(str, Enum):
    """Reason codes for balance-changing ledger entries."""

    PURCHASE = "purchase"
    GIFT_SEND_HOLD = "gift_send_hold"
    GIFT_CANCEL_REFUND = "gift_cancel_refund"
    GIFT_CLAIM_CREDIT = "gift_claim_credit"
    GIFT_EXPIRY_REFUND = "gift_expiry_refund"
    REDEMPTION_DEBIT = "redemption_debit"
    SELECTION_SWAP_DEBIT = "selection_swap_debit"
    BONUS_SLOT_DEBIT = "bonus_slot_debit"
    ADMIN_CREDIT = "admin_credit"
    TIER_ALLOCATION_CREDIT = "tier_allocation_credit"


class LedgerEntry(Base):
    """Immutable balance adjustment; reversals are new offsetting entries."""

    __tablename__ = "ledger_entries"
    __table_args__ = (
        UniqueConstraint("correlation_id", "reason", name="uq_ledger_entries_correlation_reason"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=False, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(
        SqlEnum(LedgerReason, name="ledger_reason", values_callable=lambda enum: [m.value for m in enum]),
        nullable=False,
    )
    correlation_id = Column(String, nullable=False, index=True)
    balance_after = Column(Integer, nullable=False)
    description = Column(String, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    member = relationship("Member", back_populates="ledger_entries")
