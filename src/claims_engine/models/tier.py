"""Status tier configuration."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID

from claims_engine.db.base import Base


class StatusTier(Base):
    """Admin-configured status tier keyed by a locked-token threshold."""

    __tablename__ = "status_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String, nullable=False, unique=True, index=True)
    display_name = Column(String, nullable=False)
    badge_emoji = Column(String, nullable=True)
    min_locked = Column(Numeric(18, 2), nullable=False)
    sort_order = Column(Integer, nullable=False)
    benefits = Column(JSON, nullable=False, default=list)
    claims_per_month = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
