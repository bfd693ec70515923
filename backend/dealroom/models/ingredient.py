"""
Ingredient registry model
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid


class IngredientType(str, Enum):
    """Category of a contributable asset"""
    SOFTWARE_MODULE = "software_module"
    AI_AGENT = "ai_agent"
    SECURITY_FRAMEWORK = "security_framework"
    INDUSTRY_KNOWLEDGE = "industry_knowledge"
    CAPITAL = "capital"
    CUSTOMER_RELATIONSHIPS = "customer_relationships"
    EXECUTION_RESOURCES = "execution_resources"
    BRAND_TRADEMARK = "brand_trademark"
    DATA_PIPELINE = "data_pipeline"
    GOVERNANCE_FRAMEWORK = "governance_framework"
    VISUALIZATION_SYSTEM = "visualization_system"
    HUMAN_CONTRIBUTION = "human_contribution"
    AGENT_CONTRIBUTION = "agent_contribution"
    IP_ASSET = "ip_asset"
    RELATIONSHIP = "relationship"
    INFRASTRUCTURE = "infrastructure"
    OTHER = "other"


class OwnershipStatus(str, Enum):
    """How the contributing party holds the asset"""
    SOLE = "sole"
    SHARED = "shared"
    LICENSED = "licensed"
    CONTRIBUTED = "contributed"


# Fields a change proposal (or a direct edit of an unlocked ingredient) may touch
MUTABLE_INGREDIENT_FIELDS = frozenset([
    "name",
    "description",
    "ingredient_type",
    "ownership_status",
    "value_category",
    "contribution_weight",
    "credit_multiplier",
])


class Ingredient(Base):
    """Contributable asset registered against a deal"""
    __tablename__ = "ingredients"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    ingredient_type = Column(String(50), nullable=False, default=IngredientType.OTHER.value)
    ownership_status = Column(String(20), nullable=False, default=OwnershipStatus.SOLE.value)

    # Classification
    value_category = Column(String(100), nullable=True)
    contribution_weight = Column(Numeric(10, 4), nullable=False, default=Decimal("1"))
    credit_multiplier = Column(Numeric(10, 4), nullable=False, default=Decimal("1"))

    contributed_by = Column(String(255), nullable=True)
    is_retired = Column(Boolean, nullable=False, default=False)
    retired_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    version_id = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index('idx_ingredients_deal', 'deal_id'),
    )

    def __repr__(self):
        return f"<Ingredient(id={self.id}, name={self.name}, type={self.ingredient_type})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "deal_id": str(self.deal_id),
            "name": self.name,
            "description": self.description,
            "ingredient_type": self.ingredient_type,
            "ownership_status": self.ownership_status,
            "value_category": self.value_category,
            "contribution_weight": str(self.contribution_weight) if self.contribution_weight is not None else None,
            "credit_multiplier": str(self.credit_multiplier) if self.credit_multiplier is not None else None,
            "contributed_by": self.contributed_by,
            "is_retired": bool(self.is_retired),
        }
