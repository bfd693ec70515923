"""
Domain event outbox model
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Uuid


class EventType(str, Enum):
    """Domain events emitted for the notification subsystem and in-process consumers"""
    FORMULATION_CREATED = "formulation.created"
    FORMULATION_SUBMITTED = "formulation.submitted"
    FORMULATION_ACTIVATED = "formulation.activated"
    FORMULATION_ARCHIVED = "formulation.archived"
    FORMULATION_REFRESHED = "formulation.refreshed"
    PROPOSAL_CREATED = "proposal.created"
    PROPOSAL_VOTED = "proposal.voted"
    PROPOSAL_RESOLVED = "proposal.resolved"
    INGREDIENT_CHANGED = "ingredient.changed"
    USAGE_RECORDED = "usage.recorded"
    EXECUTION_COMPLETED = "execution.completed"
    EXECUTION_FAILED = "execution.failed"


class DomainEvent(Base):
    """
    Persistent domain event.

    Written in the same transaction as the change it describes;
    ``delivered_at`` is set by the external dispatcher once fanned out.
    ``processed_at`` is set once every in-process subscriber handled it;
    failed attempts leave it empty and record the error for replay.
    """
    __tablename__ = "domain_events"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, nullable=True)
    event_type = Column(String(50), nullable=False)
    aggregate_type = Column(String(50), nullable=False)
    aggregate_id = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_attempts = Column(Integer, nullable=False, default=0)
    processing_error = Column(JSON, nullable=True)

    __table_args__ = (
        Index('idx_domain_events_undelivered', 'delivered_at', 'created_at'),
        Index('idx_domain_events_deal_type', 'deal_id', 'event_type'),
        Index('idx_domain_events_unprocessed', 'processed_at', 'created_at'),
    )

    def __repr__(self):
        return f"<DomainEvent(id={self.id}, type={self.event_type}, aggregate={self.aggregate_type}:{self.aggregate_id})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "deal_id": str(self.deal_id) if self.deal_id else None,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "processing_attempts": self.processing_attempts,
            "processing_error": self.processing_error,
        }
