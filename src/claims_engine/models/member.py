"""Member balance and locked-token position models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from claims_engine.core.clock import utcnow
from claims_engine.db.base import Base


class Member(Base):
    """Engine-side member record owning the materialized Claims balance."""

    __tablename__ = "members"
    __table_args__ = (
        CheckConstraint("claims_balance >= 0", name="ck_members_claims_balance_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    external_user_id = Column(String, nullable=False, unique=True, index=True)
    email = Column(String, nullable=True, index=True)
    claims_balance = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
    )

    token_locks = relationship("TokenLock", back_populates="member", cascade="all, delete-orphan")
    ledger_entries = relationship("LedgerEntry", back_populates="member")
    selection_programs = relationship(
        "SelectionProgram", back_populates="member", cascade="all, delete-orphan"
    )


class TokenLock(Base):
    """Tokens committed to status (e.g. a 360LOCK position on one wallet)."""

    __tablename__ = "token_locks"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String, nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    locked_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())
    released_at = Column(DateTime(timezone=True), nullable=True)

    member = relationship("Member", back_populates="token_locks")
