"""
Attribution rule engine
"""
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dealroom.core.concurrency import load_for_update, run_with_retry
from dealroom.core.errors import (DealRoomError, LockedError, NotFoundError, StateError,
                                  ValidationError)
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.utils import optional_decimal, quantize_money, quantize_percentage, to_decimal, utc_now
from dealroom.models.attribution import AttributionRule, CreditType
from dealroom.models.deal import Deal
from dealroom.models.formulation import Formulation, FormulationStatus
from dealroom.services.participant_service import ParticipantService

logger = LoggingConfig.get_logger(__name__)

HUNDRED = Decimal("100")


class AttributionService:
    """
    Service for attribution rules.

    The sum of active percentages across participants is a soft constraint:
    writes are accepted and the allocation status is reported; the payout
    calculator enforces the hard limit.
    """

    def __init__(self, db: Session):
        self.db = db
        self.participants = ParticipantService(db)

    def create_rule(
        self,
        deal_id: UUID,
        participant_id: str,
        credit_type: str,
        percentage: Any,
        min_payout: Any = None,
        max_payout: Any = None,
        formulation_id: Optional[UUID] = None,
        created_by: Optional[str] = None
    ) -> AttributionRule:
        """
        Create an attribution rule.

        Args:
            deal_id: Deal the rule belongs to
            participant_id: Participant receiving the share
            credit_type: contribution, usage or value
            percentage: Share of the pool in [0, 100]
            min_payout: Optional floor for the participant's payout
            max_payout: Optional cap for the participant's payout
            formulation_id: Bind the rule to a formulation's lifetime

        Returns:
            Created AttributionRule

        Raises:
            ValidationError: invalid type, percentage or bounds
            LockedError: formulation is active
        """
        if not self.db.get(Deal, deal_id):
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})
        self.participants.require_member(deal_id, participant_id)

        try:
            credit_type = CreditType(credit_type).value
        except ValueError:
            raise ValidationError(
                f"Unknown credit type {credit_type!r}",
                reason="invalid_credit_type",
                details={"field": "credit_type", "allowed": [t.value for t in CreditType]}
            )

        percentage = to_decimal(percentage, "percentage")
        if percentage < 0 or percentage > HUNDRED:
            raise ValidationError(
                f"percentage must be between 0 and 100, got {percentage}",
                reason="percentage_out_of_range",
                details={"field": "percentage", "value": str(percentage)}
            )

        bounds = {}
        for field, raw in (("min_payout", min_payout), ("max_payout", max_payout)):
            value = optional_decimal(raw, field)
            if value is not None and value < 0:
                raise ValidationError(
                    f"{field} must not be negative",
                    reason="negative_bound",
                    details={"field": field, "value": str(value)}
                )
            bounds[field] = quantize_money(value) if value is not None else None
        if bounds["min_payout"] is not None and bounds["max_payout"] is not None \
                and bounds["min_payout"] > bounds["max_payout"]:
            raise ValidationError(
                "min_payout exceeds max_payout",
                reason="inverted_bounds",
                details={"min_payout": str(bounds["min_payout"]), "max_payout": str(bounds["max_payout"])}
            )

        values = dict(
            deal_id=deal_id,
            formulation_id=formulation_id,
            participant_id=participant_id,
            credit_type=credit_type,
            payout_percentage=quantize_percentage(percentage),
            created_by=created_by,
            **bounds
        )

        def _create() -> AttributionRule:
            rule = AttributionRule(created_at=utc_now(), **values)
            self.db.add(rule)
            return rule

        if formulation_id is not None:
            rule = self._write_bound(formulation_id, _create, deal_id=deal_id)
        else:
            rule = _create()
            self.db.commit()
        self.db.refresh(rule)

        status = self.allocation_status(deal_id)
        logger.info(
            f"Created {credit_type} rule {rule.id} for {participant_id}: {rule.payout_percentage}%",
            extra={"deal_id": str(deal_id), "rule_id": str(rule.id), "participant_id": participant_id}
        )
        if status["status"] == "over":
            logger.warning(
                f"Active rules for deal {deal_id} total {status['total_percentage']}%",
                extra={"deal_id": str(deal_id), "total_percentage": str(status["total_percentage"])}
            )
        return rule

    def get_rule(self, rule_id: UUID) -> AttributionRule:
        rule = self.db.get(AttributionRule, rule_id)
        if not rule:
            raise NotFoundError(f"Attribution rule {rule_id} not found", details={"rule_id": rule_id})
        return rule

    def deactivate_rule(self, rule_id: UUID) -> AttributionRule:
        """Soft delete; rules bound to an active formulation are locked"""
        rule = self.get_rule(rule_id)

        def _deactivate() -> bool:
            current = load_for_update(self.db, AttributionRule, rule_id)
            if not current.is_active:
                return False
            current.is_active = False
            current.deactivated_at = utc_now()
            return True

        if rule.formulation_id is not None:
            changed = self._write_bound(rule.formulation_id, _deactivate)
        else:
            changed = _deactivate()
            if changed:
                self.db.commit()
        self.db.refresh(rule)
        if changed:
            logger.info(f"Deactivated rule {rule_id}", extra={"rule_id": str(rule_id), "deal_id": str(rule.deal_id)})
        return rule

    def list_rules(self, deal_id: UUID, active_only: bool = True) -> List[AttributionRule]:
        query = self.db.query(AttributionRule).filter(AttributionRule.deal_id == deal_id)
        if active_only:
            query = query.filter(AttributionRule.is_active.is_(True))
        return query.order_by(AttributionRule.created_at).all()

    def active_rules_for_deal(self, deal_id: UUID) -> List[AttributionRule]:
        """
        Rules in force for the deal, in creation order: active rules that are
        unbound or bound to the deal's active formulation.
        """
        active = self.db.query(Formulation.id).filter(
            Formulation.deal_id == deal_id,
            Formulation.status == FormulationStatus.ACTIVE.value
        ).scalar()
        scope = AttributionRule.formulation_id.is_(None)
        if active is not None:
            scope = or_(scope, AttributionRule.formulation_id == active)
        return self.db.query(AttributionRule).filter(
            AttributionRule.deal_id == deal_id,
            AttributionRule.is_active.is_(True),
            scope
        ).order_by(AttributionRule.created_at).all()

    def total_active_percentage(self, deal_id: UUID) -> Decimal:
        return sum(
            (rule.payout_percentage for rule in self.active_rules_for_deal(deal_id)),
            Decimal("0")
        )

    def allocation_status(self, deal_id: UUID) -> Dict[str, Any]:
        total = quantize_percentage(self.total_active_percentage(deal_id))
        if total > HUNDRED:
            status = "over"
        elif total == HUNDRED:
            status = "balanced"
        else:
            status = "under"
        return {
            "deal_id": deal_id,
            "total_percentage": total,
            "remaining_percentage": HUNDRED - total,
            "status": status,
        }

    def _write_bound(self, formulation_id: UUID, write: Callable[[], Any], deal_id: Optional[UUID] = None) -> Any:
        """
        Run a rule write under the bound formulation's row lock and commit.

        The formulation version is bumped with the write, so an activation
        committed meanwhile makes it stale and the retry sees the lock.
        """
        def _op():
            formulation = load_for_update(self.db, Formulation, formulation_id)
            if deal_id is not None:
                self._check_bindable(deal_id, formulation_id, formulation)
            self._ensure_unlocked(formulation)
            result = write()
            if formulation is not None:
                formulation.updated_at = utc_now()
            self.db.commit()
            return result

        try:
            return run_with_retry(self.db, _op, "formulation", formulation_id)
        except DealRoomError:
            self.db.rollback()
            raise

    def _check_bindable(self, deal_id: UUID, formulation_id: UUID, formulation: Optional[Formulation]):
        if not formulation or formulation.deal_id != deal_id:
            raise NotFoundError(
                f"Formulation {formulation_id} not found in deal {deal_id}",
                details={"formulation_id": formulation_id}
            )
        if formulation.status == FormulationStatus.ARCHIVED.value:
            raise StateError(
                f"Formulation {formulation_id} is archived",
                reason="formulation_archived",
                details={"formulation_id": formulation_id}
            )

    def _ensure_unlocked(self, formulation: Optional[Formulation]):
        if formulation is not None and formulation.is_locked:
            logger.warning(
                f"Rejected rule change bound to active formulation {formulation.id}",
                extra={"formulation_id": str(formulation.id)}
            )
            raise LockedError(
                f"Rules bound to active formulation {formulation.id} are locked",
                details={"formulation_id": formulation.id}
            )
