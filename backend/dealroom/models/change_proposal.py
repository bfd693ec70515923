"""
Change proposal model for unanimous ingredient changes
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid


class ChangeType(str, Enum):
    """Kind of change requested against the ingredient registry"""
    MODIFY = "modify"
    REMOVE = "remove"
    ADD = "add"


class ProposalStatus(str, Enum):
    """Proposal status enumeration"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class VoteState(str, Enum):
    """One participant's entry in the approvals map"""
    UNSET = "unset"
    APPROVED = "approved"
    REJECTED = "rejected"


class ChangeProposal(Base):
    """
    Votable request to add, modify or remove an ingredient.

    ``approvals`` maps every participant of the deal at creation time to a
    VoteState value.
    """
    __tablename__ = "change_proposals"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=True)
    proposed_by = Column(String(255), nullable=False)
    change_type = Column(String(20), nullable=False)
    proposed_changes = Column(JSON, nullable=False)
    justification = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=ProposalStatus.PENDING.value)
    approvals = Column(JSON, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    applied_ingredient_id = Column(Uuid, nullable=True)

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index('idx_change_proposals_deal_status', 'deal_id', 'status'),
    )

    @property
    def is_resolved(self) -> bool:
        return self.status != ProposalStatus.PENDING.value

    def vote_map(self) -> Dict[str, VoteState]:
        return {pid: VoteState(state) for pid, state in (self.approvals or {}).items()}

    def __repr__(self):
        return f"<ChangeProposal(id={self.id}, type={self.change_type}, status={self.status})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "deal_id": str(self.deal_id),
            "ingredient_id": str(self.ingredient_id) if self.ingredient_id else None,
            "proposed_by": self.proposed_by,
            "change_type": self.change_type,
            "proposed_changes": self.proposed_changes,
            "justification": self.justification,
            "status": self.status,
            "approvals": dict(self.approvals or {}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "applied_ingredient_id": str(self.applied_ingredient_id) if self.applied_ingredient_id else None,
        }
