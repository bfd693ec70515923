"""
Attribution rules and payout calculation records
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import (Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index,
                        Numeric, String, Uuid)


class CreditType(str, Enum):
    """Credit tier a rule converts into a payout percentage"""
    CONTRIBUTION = "contribution"
    USAGE = "usage"
    VALUE = "value"


class CalculationStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"
    SUPERSEDED = "superseded"


class AttributionRule(Base):
    """
    Maps a participant and credit type to a share of a value pool.

    Several rules may target one participant; their percentages are summed
    and all of their bounds apply.
    """
    __tablename__ = "attribution_rules"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    formulation_id = Column(Uuid, ForeignKey("formulations.id"), nullable=True)
    participant_id = Column(String(255), nullable=False)
    credit_type = Column(String(20), nullable=False)
    payout_percentage = Column(Numeric(7, 4), nullable=False)
    min_payout = Column(Numeric(18, 2), nullable=True)
    max_payout = Column(Numeric(18, 2), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_attribution_rules_deal_active', 'deal_id', 'is_active'),
        CheckConstraint(
            "payout_percentage >= 0 AND payout_percentage <= 100",
            name='attribution_rules_percentage_check'
        ),
    )

    def __repr__(self):
        return f"<AttributionRule(id={self.id}, participant_id={self.participant_id}, pct={self.payout_percentage})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "deal_id": str(self.deal_id),
            "formulation_id": str(self.formulation_id) if self.formulation_id else None,
            "participant_id": self.participant_id,
            "credit_type": self.credit_type,
            "payout_percentage": str(self.payout_percentage),
            "min_payout": str(self.min_payout) if self.min_payout is not None else None,
            "max_payout": str(self.max_payout) if self.max_payout is not None else None,
            "is_active": bool(self.is_active),
        }


class PayoutCalculation(Base):
    """Per-participant result of one payout calculation run"""
    __tablename__ = "payout_calculations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    batch_id = Column(Uuid, nullable=False, index=True)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    pool_value = Column(Numeric(18, 2), nullable=False)
    attribution_percentage = Column(Numeric(7, 4), nullable=False)
    calculated_payout = Column(Numeric(18, 2), nullable=False)
    min_applied = Column(Boolean, nullable=False, default=False)
    max_applied = Column(Boolean, nullable=False, default=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=CalculationStatus.PENDING.value)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    def __repr__(self):
        return f"<PayoutCalculation(participant_id={self.participant_id}, payout={self.calculated_payout})>"
