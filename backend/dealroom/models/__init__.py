"""
SQLAlchemy models
"""
from dealroom.core.database import Base
from dealroom.models.attribution import (AttributionRule,  # noqa: F401
                                         CalculationStatus, CreditType,
                                         PayoutCalculation)
from dealroom.models.change_proposal import (ChangeProposal,  # noqa: F401
                                             ChangeType, ProposalStatus,
                                             VoteState)
from dealroom.models.credit import (CreditContribution, CreditTier,  # noqa: F401
                                    CreditUsage, CreditValue)
# Import all models here so Alembic can detect them
from dealroom.models.deal import Deal, DealParticipant, ParticipantRole  # noqa: F401
from dealroom.models.domain_event import DomainEvent, EventType  # noqa: F401
from dealroom.models.formulation import (ContributorType,  # noqa: F401
                                         Formulation, FormulationIngredient,
                                         FormulationReview, FormulationStatus,
                                         ReviewStatus)
from dealroom.models.ingredient import (MUTABLE_INGREDIENT_FIELDS,  # noqa: F401
                                        Ingredient, IngredientType,
                                        OwnershipStatus)
from dealroom.models.settlement import (DistributionType,  # noqa: F401
                                        ExecutionStatus, PayoutStatus,
                                        SettlementContract,
                                        SettlementExecution,
                                        SettlementPayout, TriggerType)
from dealroom.models.usage import UsageEvent, UsageSummary  # noqa: F401

__all__ = [
    "Base",
    # Deals
    "Deal",
    "DealParticipant",
    "ParticipantRole",
    # Ingredients
    "Ingredient",
    "IngredientType",
    "OwnershipStatus",
    "MUTABLE_INGREDIENT_FIELDS",
    # Formulations
    "Formulation",
    "FormulationIngredient",
    "FormulationReview",
    "FormulationStatus",
    "ContributorType",
    "ReviewStatus",
    # Attribution
    "AttributionRule",
    "CreditType",
    "PayoutCalculation",
    "CalculationStatus",
    # Change proposals
    "ChangeProposal",
    "ChangeType",
    "ProposalStatus",
    "VoteState",
    # Ledger
    "UsageEvent",
    "UsageSummary",
    "CreditContribution",
    "CreditUsage",
    "CreditValue",
    "CreditTier",
    # Settlement
    "SettlementContract",
    "SettlementExecution",
    "SettlementPayout",
    "TriggerType",
    "DistributionType",
    "ExecutionStatus",
    "PayoutStatus",
    # Events
    "DomainEvent",
    "EventType",
]
