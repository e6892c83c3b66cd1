"""Peer-to-peer and treasury Claims gifts."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from claims_engine.core.clock import utcnow
from claims_engine.db.base import Base


class GiftStatus(str, Enum):
    """One-directional gift lifecycle; every state but PENDING is terminal."""

    PENDING = "pending"
    CLAIMED = "claimed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Gift(Base):
    """Claims held from a sender until claimed, cancelled or expired."""

    __tablename__ = "gifts"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_gifts_amount_positive"),
        UniqueConstraint("sender_id", "client_reference", name="uq_gifts_sender_client_reference"),
        Index("ix_gifts_status_expires_at", "status", "expires_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    sender_id = Column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=True, index=True)
    recipient_email = Column(String, nullable=False, index=True)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("members.id"), nullable=True)
    amount = Column(Integer, nullable=False)
    message = Column(Text, nullable=True)
    code = Column(String, nullable=False, unique=True, index=True)
    status = Column(
        SqlEnum(GiftStatus, name="gift_status", values_callable=lambda enum: [m.value for m in enum]),
        nullable=False,
        default=GiftStatus.PENDING,
        server_default=GiftStatus.PENDING.value,
    )
    is_admin_gift = Column(Boolean, nullable=False, default=False, server_default="false")
    admin_notes = Column(Text, nullable=True)
    client_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    expired_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    sender = relationship("Member", foreign_keys=[sender_id])
    recipient = relationship("Member", foreign_keys=[recipient_id])
