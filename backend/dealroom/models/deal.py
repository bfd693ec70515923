"""
Deal context and its participant roster
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import relationship


class ParticipantRole(str, Enum):
    """Participant role enumeration"""
    ADMIN = "admin"
    MEMBER = "member"


class Deal(Base):
    """Joint venture owning formulations, rules and settlement contracts"""
    __tablename__ = "deals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    participants = relationship("DealParticipant", back_populates="deal", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Deal(id={self.id}, name={self.name})>"


class DealParticipant(Base):
    """
    Membership of an externally identified participant in a deal.

    Only the opaque participant id is stored; names live in the
    participant directory.
    """
    __tablename__ = "deal_participants"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default=ParticipantRole.MEMBER.value)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    left_at = Column(DateTime(timezone=True), nullable=True)

    deal = relationship("Deal", back_populates="participants")

    __table_args__ = (
        Index('idx_deal_participant', 'deal_id', 'participant_id', unique=True),
    )

    def __repr__(self):
        return f"<DealParticipant(deal_id={self.deal_id}, participant_id={self.participant_id}, role={self.role})>"
