"""
Ingredient registry: the catalog of contributable assets per deal
"""
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from dealroom.core.concurrency import aggregate_lock, load_for_update, run_with_retry
from dealroom.core.errors import (DealRoomError, LockedError, NotFoundError, StateError,
                                  ValidationError)
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.utils import to_decimal, utc_now
from dealroom.models.change_proposal import ChangeProposal, ChangeType
from dealroom.models.deal import Deal
from dealroom.models.domain_event import EventType
from dealroom.models.formulation import Formulation, FormulationIngredient, FormulationStatus
from dealroom.models.ingredient import (MUTABLE_INGREDIENT_FIELDS, Ingredient,
                                        IngredientType, OwnershipStatus)
from dealroom.services.event_service import EventService

logger = LoggingConfig.get_logger(__name__)


def validate_ingredient_fields(changes: Dict[str, Any]) -> Dict[str, Any]:
    """
    Check and normalize a set of ingredient field values.

    Args:
        changes: field name -> new value; only MUTABLE_INGREDIENT_FIELDS are accepted

    Returns:
        Normalized values (enums as strings, weights as Decimal)

    Raises:
        ValidationError: unknown field, empty name, unknown enum value, non-positive weight
    """
    unknown = sorted(set(changes) - MUTABLE_INGREDIENT_FIELDS)
    if unknown:
        raise ValidationError(
            f"Fields not changeable: {', '.join(unknown)}",
            reason="immutable_field",
            details={"fields": unknown, "allowed": sorted(MUTABLE_INGREDIENT_FIELDS)}
        )

    cleaned: Dict[str, Any] = {}
    for field, value in changes.items():
        if field == "name":
            if not value or not str(value).strip():
                raise ValidationError("Ingredient name is required", reason="empty_name", details={"field": "name"})
            cleaned[field] = str(value).strip()
        elif field == "ingredient_type":
            try:
                cleaned[field] = IngredientType(value).value
            except ValueError:
                raise ValidationError(
                    f"Unknown ingredient type {value!r}",
                    reason="invalid_ingredient_type",
                    details={"field": field, "allowed": [t.value for t in IngredientType]}
                )
        elif field == "ownership_status":
            try:
                cleaned[field] = OwnershipStatus(value).value
            except ValueError:
                raise ValidationError(
                    f"Unknown ownership status {value!r}",
                    reason="invalid_ownership_status",
                    details={"field": field, "allowed": [s.value for s in OwnershipStatus]}
                )
        elif field in ("contribution_weight", "credit_multiplier"):
            number = to_decimal(value, field)
            if number <= 0:
                raise ValidationError(
                    f"{field} must be positive",
                    reason="non_positive",
                    details={"field": field, "value": str(number)}
                )
            cleaned[field] = number
        else:
            cleaned[field] = value
    return cleaned


class IngredientService:
    """Service for registering and maintaining ingredients"""

    def __init__(self, db: Session, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)

    def register_ingredient(
        self,
        deal_id: UUID,
        name: str,
        ingredient_type: str = IngredientType.OTHER.value,
        contributed_by: Optional[str] = None,
        description: Optional[str] = None,
        ownership_status: str = OwnershipStatus.SOLE.value,
        value_category: Optional[str] = None,
        contribution_weight: Any = Decimal("1"),
        credit_multiplier: Any = Decimal("1")
    ) -> Ingredient:
        """Register a new ingredient against a deal"""
        if not self.db.get(Deal, deal_id):
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})

        fields = validate_ingredient_fields({
            "name": name,
            "description": description,
            "ingredient_type": ingredient_type,
            "ownership_status": ownership_status,
            "value_category": value_category,
            "contribution_weight": contribution_weight,
            "credit_multiplier": credit_multiplier,
        })
        ingredient = Ingredient(deal_id=deal_id, contributed_by=contributed_by, **fields)
        self.db.add(ingredient)
        self.db.commit()
        self.db.refresh(ingredient)

        logger.info(
            f"Registered ingredient {ingredient.id} ({ingredient.ingredient_type})",
            extra={"deal_id": str(deal_id), "ingredient_id": str(ingredient.id)}
        )
        return ingredient

    def get_ingredient(self, ingredient_id: UUID) -> Ingredient:
        ingredient = self.db.get(Ingredient, ingredient_id)
        if not ingredient:
            raise NotFoundError(f"Ingredient {ingredient_id} not found", details={"ingredient_id": ingredient_id})
        return ingredient

    def list_ingredients(self, deal_id: UUID, include_retired: bool = False) -> List[Ingredient]:
        query = self.db.query(Ingredient).filter(Ingredient.deal_id == deal_id)
        if not include_retired:
            query = query.filter(Ingredient.is_retired.is_(False))
        return query.order_by(Ingredient.created_at).all()

    def active_references(self, ingredient_id: UUID) -> List[Formulation]:
        """Active formulations whose composition includes the ingredient"""
        return self.db.query(Formulation).join(
            FormulationIngredient, FormulationIngredient.formulation_id == Formulation.id
        ).filter(
            FormulationIngredient.ingredient_id == ingredient_id,
            Formulation.status == FormulationStatus.ACTIVE.value
        ).distinct().all()

    def is_locked(self, ingredient_id: UUID) -> bool:
        return bool(self.active_references(ingredient_id))

    def update_ingredient(self, ingredient_id: UUID, changes: Dict[str, Any]) -> Ingredient:
        """
        Directly edit an ingredient that no active formulation references.

        Raises:
            LockedError: referenced by an active formulation; use a change proposal
            StateError: ingredient is retired
            ValidationError: field not changeable or value invalid
        """
        def _update(ingredient: Ingredient):
            if ingredient.is_retired:
                raise StateError(
                    f"Ingredient {ingredient_id} is retired",
                    reason="ingredient_retired",
                    details={"ingredient_id": ingredient_id}
                )
            fields = validate_ingredient_fields(changes)
            for field, value in fields.items():
                setattr(ingredient, field, value)
            ingredient.updated_at = utc_now()
            return fields

        ingredient, fields = self._write_unlocked(ingredient_id, _update)
        logger.info(
            f"Updated ingredient {ingredient_id}: {sorted(fields)}",
            extra={"ingredient_id": str(ingredient_id), "fields": sorted(fields)}
        )
        return ingredient

    def retire_ingredient(self, ingredient_id: UUID) -> Ingredient:
        """Soft delete; composition rows referencing the ingredient are kept"""
        def _retire(ingredient: Ingredient):
            if ingredient.is_retired:
                return False
            ingredient.is_retired = True
            ingredient.retired_at = utc_now()
            ingredient.updated_at = ingredient.retired_at
            return True

        ingredient, retired = self._write_unlocked(ingredient_id, _retire)
        if retired:
            logger.info(f"Retired ingredient {ingredient_id}", extra={"ingredient_id": str(ingredient_id)})
        return ingredient

    def apply_approved_change(self, proposal: ChangeProposal) -> Ingredient:
        """
        Apply an approved change proposal to the registry.

        Bypasses the active-formulation lock: unanimous approval is the only
        path that may change a locked ingredient. Does not commit; the caller
        resolves the proposal in the same transaction.
        """
        change_type = ChangeType(proposal.change_type)
        fields = validate_ingredient_fields(dict(proposal.proposed_changes or {}))

        if change_type == ChangeType.ADD:
            fields.setdefault("ingredient_type", IngredientType.OTHER.value)
            ingredient = Ingredient(deal_id=proposal.deal_id, contributed_by=proposal.proposed_by, **fields)
            self.db.add(ingredient)
            self.db.flush()
        else:
            ingredient = self.get_ingredient(proposal.ingredient_id)
            if change_type == ChangeType.MODIFY:
                for field, value in fields.items():
                    setattr(ingredient, field, value)
            else:
                ingredient.is_retired = True
                ingredient.retired_at = utc_now()
            ingredient.updated_at = utc_now()

        proposal.applied_ingredient_id = ingredient.id
        self.events.emit(
            EventType.INGREDIENT_CHANGED,
            "ingredient",
            ingredient.id,
            {
                "change_type": change_type.value,
                "proposal_id": proposal.id,
                "fields": sorted(fields),
            },
            deal_id=proposal.deal_id,
        )
        logger.info(
            f"Applied {change_type.value} from proposal {proposal.id} to ingredient {ingredient.id}",
            extra={"proposal_id": str(proposal.id), "ingredient_id": str(ingredient.id)}
        )
        return ingredient

    def _ensure_unlocked(self, ingredient: Ingredient):
        references = self.active_references(ingredient.id)
        if references:
            formulation = references[0]
            logger.warning(
                f"Rejected direct edit of ingredient {ingredient.id}: locked by formulation {formulation.id}",
                extra={"ingredient_id": str(ingredient.id), "formulation_id": str(formulation.id)}
            )
            raise LockedError(
                f"Ingredient {ingredient.id} is part of active formulation {formulation.id}; "
                f"submit a change proposal instead",
                details={"ingredient_id": ingredient.id, "formulation_id": formulation.id}
            )

    def _write_unlocked(self, ingredient_id: UUID, change: Callable[[Ingredient], Any]) -> Tuple[Ingredient, Any]:
        """
        Apply a direct edit under the deal's activation lock.

        The row is re-read on every attempt; an activation committed by
        another process bumps the ingredient version, so the stale write is
        retried and then rejected by the lock check.
        """
        deal_id = self.get_ingredient(ingredient_id).deal_id

        def _write():
            ingredient = load_for_update(self.db, Ingredient, ingredient_id)
            if ingredient is None:
                raise NotFoundError(f"Ingredient {ingredient_id} not found", details={"ingredient_id": ingredient_id})
            self._ensure_unlocked(ingredient)
            result = change(ingredient)
            self.db.commit()
            return ingredient, result

        try:
            with aggregate_lock("deal_formulations", deal_id):
                ingredient, result = run_with_retry(self.db, _write, "ingredient", ingredient_id)
        except DealRoomError:
            self.db.rollback()
            raise
        self.db.refresh(ingredient)
        return ingredient, result
