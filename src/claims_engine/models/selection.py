"""Slot-based reward programs and cadence-gated selections."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from claims_engine.core.clock import utcnow
from claims_engine.db.base import Base


class SelectionProgram(Base):
    """Per-member slot allocation for one reward program (e.g. GROUNDBALL)."""

    __tablename__ = "selection_programs"
    __table_args__ = (
        UniqueConstraint("member_id", "program", name="uq_selection_programs_member_program"),
        CheckConstraint("free_swaps_remaining >= 0", name="ck_selection_programs_free_swaps"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    program = Column(String, nullable=False)
    total_slots = Column(Integer, nullable=False, default=0, server_default="0")
    bonus_slots = Column(Integer, nullable=False, default=0, server_default="0")
    free_swaps_remaining = Column(Integer, nullable=False, default=0, server_default="0")
    locked_amount = Column(Numeric(18, 2), nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    member = relationship("Member", back_populates="selection_programs")
    selections = relationship("RewardSelection", back_populates="program")


class RewardSelection(Base):
    """A member's binding to a shared reward within a program."""

    __tablename__ = "reward_selections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    program_id = Column(UUID(as_uuid=True), ForeignKey("selection_programs.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=False)
    is_giveback = Column(Boolean, nullable=False, default=False, server_default="false")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    redemption_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_redeemed_at = Column(DateTime(timezone=True), nullable=True)
    selected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    replaced_by_id = Column(UUID(as_uuid=True), ForeignKey("reward_selections.id"), nullable=True)

    program = relationship("SelectionProgram", back_populates="selections")
    reward = relationship("Reward")
    redemptions = relationship("SelectionRedemption", back_populates="selection")


class SelectionRedemption(Base):
    """One redemption of a selection inside a cadence window."""

    __tablename__ = "selection_redemptions"
    __table_args__ = (
        UniqueConstraint("selection_id", "period", name="uq_selection_redemptions_selection_period"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    selection_id = Column(
        UUID(as_uuid=True), ForeignKey("reward_selections.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=False)
    period = Column(String, nullable=False)
    notes = Column(Text, nullable=True)
    redeemed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    selection = relationship("RewardSelection", back_populates="redemptions")
