"""
Credit ledger for the three credit tiers
"""
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from dealroom.core.errors import NotFoundError, ValidationError
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.utils import to_decimal, utc_now
from dealroom.models.credit import CreditContribution, CreditTier, CreditUsage, CreditValue
from dealroom.services.participant_service import ParticipantService

logger = LoggingConfig.get_logger(__name__)


def _positive(value: Any, field: str) -> Decimal:
    amount = to_decimal(value, field)
    if amount <= 0:
        raise ValidationError(
            f"{field} must be positive, got {amount}",
            reason="non_positive",
            details={"field": field, "value": str(amount)}
        )
    return amount


class CreditLedgerService:
    """Contribution (upfront), usage (ongoing) and value (verified outcome) credits"""

    def __init__(self, db: Session):
        self.db = db
        self.participants = ParticipantService(db)

    def record_contribution_credit(
        self,
        deal_id: UUID,
        participant_id: str,
        amount: Any,
        ingredient_id: Optional[UUID] = None,
        classification: Optional[str] = None,
        description: Optional[str] = None
    ) -> CreditContribution:
        self.participants.require_member(deal_id, participant_id)
        credit = CreditContribution(
            deal_id=deal_id,
            participant_id=participant_id,
            ingredient_id=ingredient_id,
            amount=_positive(amount, "amount"),
            classification=classification,
            description=description,
            recorded_at=utc_now(),
        )
        return self._save(credit, CreditTier.CONTRIBUTION)

    def record_usage_credit(
        self,
        deal_id: UUID,
        participant_id: str,
        usage_type: str,
        usage_count: int = 1,
        amount: Any = Decimal("0"),
        ingredient_id: Optional[UUID] = None,
        classification: Optional[str] = None
    ) -> CreditUsage:
        self.participants.require_member(deal_id, participant_id)
        if not usage_type:
            raise ValidationError("usage_type is required", reason="empty_usage_type", details={"field": "usage_type"})
        if isinstance(usage_count, bool) or not isinstance(usage_count, int) or usage_count < 1:
            raise ValidationError(
                f"usage_count must be a positive integer, got {usage_count!r}",
                reason="non_positive",
                details={"field": "usage_count"}
            )
        value = to_decimal(amount, "amount")
        if value < 0:
            raise ValidationError("amount must not be negative", reason="negative_amount", details={"field": "amount"})

        credit = CreditUsage(
            deal_id=deal_id,
            participant_id=participant_id,
            ingredient_id=ingredient_id,
            usage_type=usage_type,
            usage_count=usage_count,
            amount=value,
            classification=classification,
            recorded_at=utc_now(),
        )
        return self._save(credit, CreditTier.USAGE)

    def record_value_credit(
        self,
        deal_id: UUID,
        participant_id: str,
        amount: Any,
        classification: Optional[str] = None,
        description: Optional[str] = None
    ) -> CreditValue:
        """Record an outcome credit; it counts toward balances once verified"""
        self.participants.require_member(deal_id, participant_id)
        credit = CreditValue(
            deal_id=deal_id,
            participant_id=participant_id,
            amount=_positive(amount, "amount"),
            classification=classification,
            description=description,
            recorded_at=utc_now(),
        )
        return self._save(credit, CreditTier.VALUE)

    def get_value_credit(self, credit_id: UUID) -> CreditValue:
        credit = self.db.get(CreditValue, credit_id)
        if not credit:
            raise NotFoundError(f"Value credit {credit_id} not found", details={"credit_id": credit_id})
        return credit

    def verify_value_credit(self, credit_id: UUID, verified_by: str) -> CreditValue:
        credit = self.get_value_credit(credit_id)
        if not verified_by:
            raise ValidationError("verified_by is required", reason="empty_verifier", details={"field": "verified_by"})
        if credit.is_verified:
            return credit

        credit.verified_at = utc_now()
        credit.verified_by = verified_by
        self.db.commit()
        self.db.refresh(credit)
        logger.info(
            f"Value credit {credit_id} verified by {verified_by}",
            extra={"credit_id": str(credit_id), "deal_id": str(credit.deal_id)}
        )
        return credit

    def participant_balance(self, deal_id: UUID, participant_id: str) -> Dict[str, Any]:
        contribution = self._sum(CreditContribution, deal_id, participant_id)
        usage = self._sum(CreditUsage, deal_id, participant_id)
        values = self.db.query(CreditValue).filter(
            CreditValue.deal_id == deal_id,
            CreditValue.participant_id == participant_id
        ).all()
        verified = sum((Decimal(v.amount) for v in values if v.is_verified), Decimal("0"))
        unverified = sum((Decimal(v.amount) for v in values if not v.is_verified), Decimal("0"))
        return {
            "participant_id": participant_id,
            CreditTier.CONTRIBUTION.value: contribution,
            CreditTier.USAGE.value: usage,
            CreditTier.VALUE.value: verified,
            "unverified_value": unverified,
            "total": contribution + usage + verified,
        }

    def deal_credit_summary(self, deal_id: UUID) -> Dict[str, Dict[str, Any]]:
        participant_ids = set()
        for model in (CreditContribution, CreditUsage, CreditValue):
            participant_ids.update(
                row.participant_id
                for row in self.db.query(model.participant_id).filter(model.deal_id == deal_id).distinct()
            )
        return {pid: self.participant_balance(deal_id, pid) for pid in sorted(participant_ids)}

    def _sum(self, model, deal_id: UUID, participant_id: str) -> Decimal:
        rows = self.db.query(model.amount).filter(
            model.deal_id == deal_id,
            model.participant_id == participant_id
        ).all()
        return sum((Decimal(row.amount) for row in rows), Decimal("0"))

    def _save(self, credit, tier: CreditTier):
        self.db.add(credit)
        self.db.commit()
        self.db.refresh(credit)
        logger.info(
            f"Recorded {tier.value} credit {credit.amount} for {credit.participant_id}",
            extra={"deal_id": str(credit.deal_id), "participant_id": credit.participant_id, "tier": tier.value}
        )
        return credit
