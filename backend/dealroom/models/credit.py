"""
Credit tiers: contribution (upfront), usage (ongoing), value (verified outcome)
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid


class CreditTier(str, Enum):
    CONTRIBUTION = "contribution"
    USAGE = "usage"
    VALUE = "value"


class CreditContribution(Base):
    """Upfront contribution credit"""
    __tablename__ = "credit_contributions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=True)
    amount = Column(Numeric(18, 4), nullable=False)
    classification = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    recorded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('idx_credit_contributions_participant', 'deal_id', 'participant_id'),
    )


class CreditUsage(Base):
    """Ongoing consumption credit"""
    __tablename__ = "credit_usage"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=True)
    usage_type = Column(String(100), nullable=False)
    usage_count = Column(Integer, nullable=False, default=1)
    amount = Column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    classification = Column(String(100), nullable=True)
    recorded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('idx_credit_usage_participant', 'deal_id', 'participant_id'),
    )


class CreditValue(Base):
    """Outcome credit; only counts once verified"""
    __tablename__ = "credit_values"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    amount = Column(Numeric(18, 4), nullable=False)
    classification = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verified_by = Column(String(255), nullable=True)
    recorded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('idx_credit_values_participant', 'deal_id', 'participant_id'),
    )

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None
