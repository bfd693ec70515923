"""
Payout calculator.

``calculate_payouts`` is a pure function over immutable rule snapshots so
the same arithmetic runs for previews, persisted calculations and
settlement executions.
"""
import time
from collections import OrderedDict
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, NamedTuple, Optional
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from dealroom.core.config import get_settings
from dealroom.core.errors import CalculationError, NotFoundError, ValidationError
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import payout_calculation_duration_seconds
from dealroom.core.utils import quantize_money, to_decimal, utc_now
from dealroom.models.attribution import AttributionRule, CalculationStatus, PayoutCalculation
from dealroom.models.deal import Deal
from dealroom.services.attribution_service import AttributionService

logger = LoggingConfig.get_logger(__name__)

HUNDRED = Decimal("100")


class RuleSnapshot(NamedTuple):
    """Immutable view of one active attribution rule"""
    rule_id: Any
    participant_id: str
    percentage: Decimal
    min_payout: Optional[Decimal] = None
    max_payout: Optional[Decimal] = None

    @classmethod
    def from_rule(cls, rule: AttributionRule) -> "RuleSnapshot":
        return cls(
            rule_id=rule.id,
            participant_id=rule.participant_id,
            percentage=Decimal(rule.payout_percentage),
            min_payout=Decimal(rule.min_payout) if rule.min_payout is not None else None,
            max_payout=Decimal(rule.max_payout) if rule.max_payout is not None else None,
        )


@dataclass(frozen=True)
class PayoutLine:
    """Calculated payout for one participant"""
    participant_id: str
    attribution_percentage: Decimal
    raw_payout: Decimal
    calculated_payout: Decimal
    min_applied: bool = False
    max_applied: bool = False


@dataclass(frozen=True)
class CalculationResult:
    batch_id: UUID
    deal_id: UUID
    pool_value: Decimal
    currency: str
    lines: List[PayoutLine]

    @property
    def total_payout(self) -> Decimal:
        return sum((line.calculated_payout for line in self.lines), Decimal("0"))


def calculate_payouts(
    pool_value: Any,
    rules: Iterable[RuleSnapshot],
    places: Optional[int] = None,
    reject_over_allocation: Optional[bool] = None
) -> List[PayoutLine]:
    """
    Split a pool across participants.

    Rules are grouped by participant in first-appearance order and their
    percentages summed. Each participant's raw payout is clamped up by every
    min_payout, then down by every max_payout, in rule order; a cap
    therefore wins over a conflicting floor. Amounts are rounded half-up to
    ``places``.

    Floors are never scaled down to fit: if raising participants to their
    min_payout pushes the total above the pool, the whole calculation fails
    with ``payouts_exceed_pool``. A pool of 1000 with rules of 30% (min 500)
    and 70% gives 500 + 700 = 1200 and is rejected.

    Raises:
        CalculationError: non-numeric or negative pool, no rules, total over
            100% (when rejected), or clamped payouts exceeding the pool
    """
    try:
        pool = to_decimal(pool_value, "pool_value")
    except ValidationError as e:
        raise CalculationError(e.message, reason="invalid_pool", details=e.details)
    if pool < 0:
        raise CalculationError(
            f"Pool value must not be negative, got {pool}",
            reason="negative_pool",
            details={"pool_value": str(pool)}
        )

    grouped: "OrderedDict[str, List[RuleSnapshot]]" = OrderedDict()
    for rule in rules:
        grouped.setdefault(rule.participant_id, []).append(rule)
    if not grouped:
        raise CalculationError("No active attribution rules", reason="no_active_rules")

    if reject_over_allocation is None:
        reject_over_allocation = get_settings().reject_over_allocation
    total_percentage = sum((r.percentage for group in grouped.values() for r in group), Decimal("0"))
    if reject_over_allocation and total_percentage > HUNDRED:
        raise CalculationError(
            f"Active rules allocate {total_percentage}% of the pool",
            reason="over_allocated",
            details={"total_percentage": str(total_percentage)}
        )

    lines = []
    for participant_id, participant_rules in grouped.items():
        percentage = sum((r.percentage for r in participant_rules), Decimal("0"))
        raw = pool * percentage / HUNDRED
        payout = raw
        min_applied = max_applied = False

        for rule in participant_rules:
            if rule.min_payout is not None and payout < rule.min_payout:
                payout = rule.min_payout
                min_applied = True
        for rule in participant_rules:
            if rule.max_payout is not None and payout > rule.max_payout:
                payout = rule.max_payout
                max_applied = True

        lines.append(PayoutLine(
            participant_id=participant_id,
            attribution_percentage=percentage,
            raw_payout=raw,
            calculated_payout=quantize_money(payout, places),
            min_applied=min_applied,
            max_applied=max_applied,
        ))

    distributed = sum((line.calculated_payout for line in lines), Decimal("0"))
    if distributed > quantize_money(pool, places):
        raise CalculationError(
            f"Clamped payouts {distributed} exceed the pool {pool}",
            reason="payouts_exceed_pool",
            details={"pool_value": str(pool), "distributed": str(distributed)}
        )
    return lines


class PayoutCalculatorService:
    """Runs the calculator against a deal's active rules"""

    def __init__(self, db: Session):
        self.db = db

    def rule_snapshots(self, deal_id: UUID) -> List[RuleSnapshot]:
        return [RuleSnapshot.from_rule(rule) for rule in AttributionService(self.db).active_rules_for_deal(deal_id)]

    def calculate(self, deal_id: UUID, pool_value: Any, persist: bool = True) -> CalculationResult:
        """
        Calculate payouts for a deal's pool.

        With ``persist`` one PayoutCalculation row per participant is
        committed under a shared batch id; without it nothing is written and
        the caller owns the transaction.

        Raises:
            NotFoundError: unknown deal
            CalculationError: see calculate_payouts; in particular
                ``payouts_exceed_pool`` when min_payout floors lift the total
                above the pool, e.g. 1000 split 30% (min 500) and 70%
        """
        deal = self.db.get(Deal, deal_id)
        if not deal:
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})

        start = time.time()
        lines = calculate_payouts(pool_value, self.rule_snapshots(deal_id))
        payout_calculation_duration_seconds.observe(time.time() - start)

        result = CalculationResult(
            batch_id=uuid4(),
            deal_id=deal_id,
            pool_value=quantize_money(to_decimal(pool_value, "pool_value")),
            currency=deal.currency,
            lines=lines,
        )

        if persist:
            now = utc_now()
            for line in lines:
                self.db.add(PayoutCalculation(
                    batch_id=result.batch_id,
                    deal_id=deal_id,
                    participant_id=line.participant_id,
                    pool_value=result.pool_value,
                    attribution_percentage=line.attribution_percentage,
                    calculated_payout=line.calculated_payout,
                    min_applied=line.min_applied,
                    max_applied=line.max_applied,
                    currency=deal.currency,
                    status=CalculationStatus.PENDING.value,
                    created_at=now,
                ))
            self.db.commit()

        logger.info(
            f"Calculated payouts for deal {deal_id}: {len(lines)} participants, total {result.total_payout}",
            extra={"deal_id": str(deal_id), "batch_id": str(result.batch_id), "persisted": persist}
        )
        return result

    def list_calculations(self, batch_id: UUID, deal_id: Optional[UUID] = None) -> List[PayoutCalculation]:
        query = self.db.query(PayoutCalculation).filter(PayoutCalculation.batch_id == batch_id)
        if deal_id is not None:
            query = query.filter(PayoutCalculation.deal_id == deal_id)
        return query.order_by(PayoutCalculation.participant_id).all()
