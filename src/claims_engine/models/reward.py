"""Reward catalog, catalog claims and purchasable Claims packages."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
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


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class RewardCadence(str, Enum):
    """How often a slotted reward may be redeemed."""

    DAILY = "daily"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    ONE_TIME = "one_time"


class Reward(Base):
    """Reward supplied by a sponsor, the treasury or a member."""

    __tablename__ = "rewards"
    __table_args__ = (
        CheckConstraint(
            "stock_quantity IS NULL OR stock_quantity >= 0",
            name="ck_rewards_stock_non_negative",
        ),
        CheckConstraint("cost >= 0", name="ck_rewards_cost_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String, nullable=False, unique=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sponsor = Column(String, nullable=True)
    cost = Column(Integer, nullable=False)
    min_status_tier = Column(String, nullable=True)
    # Versioned TierPriceTable document, see claims_engine.domain.pricing
    tier_price_overrides = Column(JSON, nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    program = Column(String, nullable=True, index=True)
    cadence = Column(
        SqlEnum(RewardCadence, name="reward_cadence", values_callable=_enum_values),
        nullable=True,
    )
    is_giveback = Column(Boolean, nullable=False, default=False, server_default="false")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    claims = relationship("RewardClaim", back_populates="reward")


class RewardClaimStatus(str, Enum):
    """Lifecycle of a catalog reward claim."""

    CLAIMED = "claimed"
    DELIVERED = "delivered"


class RewardClaim(Base):
    """A member's Claims-funded redemption of a catalog reward."""

    __tablename__ = "reward_claims"
    __table_args__ = (
        UniqueConstraint("member_id", "correlation_id", name="uq_reward_claims_member_correlation"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    member_id = Column(UUID(as_uuid=True), ForeignKey("members.id", ondelete="CASCADE"), nullable=False, index=True)
    reward_id = Column(UUID(as_uuid=True), ForeignKey("rewards.id"), nullable=False)
    price_paid = Column(Integer, nullable=False)
    tier_name = Column(String, nullable=False)
    correlation_id = Column(String, nullable=False)
    status = Column(
        SqlEnum(RewardClaimStatus, name="reward_claim_status", values_callable=_enum_values),
        nullable=False,
        default=RewardClaimStatus.CLAIMED,
        server_default=RewardClaimStatus.CLAIMED.value,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    reward = relationship("Reward", back_populates="claims")


class ClaimPackage(Base):
    """Purchasable bundle of Claims settled by an external checkout."""

    __tablename__ = "claim_packages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False)
    claims_amount = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
