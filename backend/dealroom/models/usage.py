"""
Usage ledger models: append-only events and their running summaries
"""
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Uuid


class UsageEvent(Base):
    """
    One consumption event. Rows are never updated or deleted.

    ``event_key`` is the producer's idempotency key; redelivery of the same
    key is recognised and ignored.
    ``sequence`` numbers events per deal in ingestion order and is the
    replay cursor; ``recorded_at`` is producer time and may be backdated.
    """
    __tablename__ = "usage_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    usage_type = Column(String(100), nullable=False)
    quantity = Column(Numeric(18, 4), nullable=False)
    cost_incurred = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    event_key = Column(String(255), nullable=False, unique=True)
    recorded_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    sequence = Column(Integer, nullable=False)
    ingested_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    __table_args__ = (
        Index('idx_usage_events_deal_recorded', 'deal_id', 'recorded_at'),
        Index('idx_usage_events_deal_sequence', 'deal_id', 'sequence', unique=True),
    )

    def __repr__(self):
        return f"<UsageEvent(id={self.id}, type={self.usage_type}, quantity={self.quantity})>"


class UsageSummary(Base):
    """Running totals per deal, ingredient and usage type"""
    __tablename__ = "usage_summaries"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=False)
    usage_type = Column(String(100), nullable=False)
    total_quantity = Column(Numeric(18, 4), nullable=False, default=Decimal("0"))
    total_cost = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    event_count = Column(Integer, nullable=False, default=0)
    last_recorded_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index('idx_usage_summary_key', 'deal_id', 'ingredient_id', 'usage_type', unique=True),
    )

    def __repr__(self):
        return f"<UsageSummary(ingredient_id={self.ingredient_id}, type={self.usage_type}, total={self.total_quantity})>"
