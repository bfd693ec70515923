"""
Formulation models: versioned attribution agreements and their composition
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import (JSON, CheckConstraint, Column, DateTime, ForeignKey, Index,
                        Integer, Numeric, String, Text, Uuid)
from sqlalchemy.orm import relationship


class FormulationStatus(str, Enum):
    """Formulation status enumeration"""
    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    ARCHIVED = "archived"


class ContributorType(str, Enum):
    """Kind of contributor credited by a composition line without an ingredient"""
    HUMAN = "human"
    AGENT = "agent"


class ReviewStatus(str, Enum):
    """Participant review of a formulation submitted for review"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


class Formulation(Base):
    """
    Versioned, lockable agreement combining ingredients with ownership terms.

    Once ``status`` is active the composition is immutable; changes go
    through change proposals or a new revision.
    """
    __tablename__ = "formulations"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=FormulationStatus.DRAFT.value)
    parent_formulation_id = Column(Uuid, ForeignKey("formulations.id"), nullable=True)

    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    activated_by = Column(String(255), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    archived_by = Column(String(255), nullable=True)
    # Touched by every composition and bound-rule write
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=True)

    # Derived from the composition at activation and refreshed after approved changes
    composition_snapshot = Column(JSON, nullable=True)
    snapshot_revision = Column(Integer, nullable=False, default=0)

    version_id = Column(Integer, nullable=False)

    ingredients = relationship(
        "FormulationIngredient",
        back_populates="formulation",
        cascade="all, delete-orphan",
        order_by="FormulationIngredient.created_at",
    )
    reviews = relationship("FormulationReview", back_populates="formulation", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index('idx_formulations_deal_status', 'deal_id', 'status'),
        CheckConstraint(
            "status IN ('draft', 'pending_review', 'active', 'archived')",
            name='formulations_status_check'
        ),
    )

    @property
    def is_locked(self) -> bool:
        return self.status == FormulationStatus.ACTIVE.value

    def __repr__(self):
        return f"<Formulation(id={self.id}, version={self.version}, status={self.status})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "deal_id": str(self.deal_id),
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "status": self.status,
            "parent_formulation_id": str(self.parent_formulation_id) if self.parent_formulation_id else None,
            "created_by": self.created_by,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "activated_by": self.activated_by,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "snapshot_revision": self.snapshot_revision,
        }


class FormulationIngredient(Base):
    """Composition edge: one ingredient or contributor and its terms"""
    __tablename__ = "formulation_ingredients"

    id = Column(Uuid, primary_key=True, default=uuid4)
    formulation_id = Column(Uuid, ForeignKey("formulations.id", ondelete="CASCADE"), nullable=False)
    ingredient_id = Column(Uuid, ForeignKey("ingredients.id"), nullable=True)
    contributor_id = Column(String(255), nullable=True)
    contributor_type = Column(String(20), nullable=True)
    label = Column(String(255), nullable=True)

    ownership_percent = Column(Numeric(7, 4), nullable=False, default=Decimal("0"))
    value_weight = Column(Numeric(10, 4), nullable=False, default=Decimal("1"))
    credit_multiplier = Column(Numeric(10, 4), nullable=False, default=Decimal("1"))

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    formulation = relationship("Formulation", back_populates="ingredients")
    ingredient = relationship("Ingredient")

    __table_args__ = (
        Index('idx_formulation_ingredients_formulation', 'formulation_id'),
        CheckConstraint(
            "ingredient_id IS NOT NULL OR contributor_id IS NOT NULL",
            name='formulation_ingredients_target_check'
        ),
    )

    def __repr__(self):
        target = self.ingredient_id or self.contributor_id
        return f"<FormulationIngredient(formulation_id={self.formulation_id}, target={target}, ownership={self.ownership_percent})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "formulation_id": str(self.formulation_id),
            "ingredient_id": str(self.ingredient_id) if self.ingredient_id else None,
            "contributor_id": self.contributor_id,
            "contributor_type": self.contributor_type,
            "label": self.label,
            "ownership_percent": str(self.ownership_percent),
            "value_weight": str(self.value_weight),
            "credit_multiplier": str(self.credit_multiplier),
        }


class FormulationReview(Base):
    """One participant's review of a formulation in pending_review"""
    __tablename__ = "formulation_reviews"

    id = Column(Uuid, primary_key=True, default=uuid4)
    formulation_id = Column(Uuid, ForeignKey("formulations.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    status = Column(String(30), nullable=False, default=ReviewStatus.PENDING.value)
    notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    formulation = relationship("Formulation", back_populates="reviews")

    __table_args__ = (
        Index('idx_formulation_review_participant', 'formulation_id', 'participant_id', unique=True),
    )

    def __repr__(self):
        return f"<FormulationReview(formulation_id={self.formulation_id}, participant_id={self.participant_id}, status={self.status})>"
