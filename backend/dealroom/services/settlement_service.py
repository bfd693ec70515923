"""
Settlement contract executor
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, NamedTuple, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from dealroom.core.concurrency import aggregate_lock, load_for_update
from dealroom.core.errors import (DealRoomError, ExecutionFailure, NotFoundError, StateError,
                                  ValidationError)
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import settlement_distributed_amount_total, settlement_executions_total
from dealroom.core.utils import (as_utc, normalize_currency, optional_decimal, quantize_money,
                                 to_decimal, utc_now)
from dealroom.lifecycle.settlement import validate_transition
from dealroom.models.deal import Deal
from dealroom.models.domain_event import EventType
from dealroom.models.settlement import (DistributionType, ExecutionStatus, PayoutStatus,
                                        SettlementContract, SettlementExecution,
                                        SettlementPayout, TriggerType)
from dealroom.services.event_service import EventService, json_safe
from dealroom.services.participant_service import ParticipantService
from dealroom.services.payout_calculator import PayoutCalculatorService

logger = LoggingConfig.get_logger(__name__)

HUNDRED = Decimal("100")

SCHEDULE_WINDOWS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
    "quarterly": timedelta(days=90),
}

AMOUNT_TRIGGERS = {
    TriggerType.REVENUE_RECEIVED.value,
    TriggerType.INVOICE_PAID.value,
    TriggerType.SAVINGS_VERIFIED.value,
}


class TriggerDecision(NamedTuple):
    matched: bool
    reason: Optional[str] = None


def _parse_time(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError:
        raise ValidationError(f"Invalid timestamp {value!r}", reason="invalid_timestamp", details={"field": "now"})


def _min_amount(conditions: Dict[str, Any]) -> Decimal:
    raw = conditions.get("min_amount", conditions.get("minimum_amount"))
    return optional_decimal(raw, "min_amount") or Decimal("0")


def evaluate_trigger(
    trigger_type: str,
    conditions: Dict[str, Any],
    event: Dict[str, Any],
    last_triggered_at: Optional[datetime] = None
) -> TriggerDecision:
    """
    Decide whether an event satisfies a contract's trigger conditions.

    Pure; the manual-approval admin check needs the roster and is done by
    SettlementService.matches_trigger.

    A usage threshold fires on the event whose cumulative total first
    reaches it, and only once per contract.
    """
    conditions = conditions or {}

    if trigger_type in AMOUNT_TRIGGERS:
        amount = optional_decimal(event.get("amount"), "amount")
        if amount is None:
            return TriggerDecision(False, "missing_amount")
        threshold = _min_amount(conditions)
        if amount < threshold:
            return TriggerDecision(False, f"below_min_amount:{amount}<{threshold}")
        return TriggerDecision(True)

    if trigger_type == TriggerType.USAGE_THRESHOLD.value:
        if last_triggered_at is not None:
            return TriggerDecision(False, "already_triggered")
        threshold = to_decimal(conditions.get("threshold"), "threshold")
        usage_type = conditions.get("usage_type")
        if usage_type:
            if event.get("usage_type") != usage_type:
                return TriggerDecision(False, "usage_type_mismatch")
            previous, current = event.get("previous_type_total"), event.get("new_type_total")
        else:
            previous, current = event.get("previous_total"), event.get("new_total")
        if current is None:
            return TriggerDecision(False, "missing_cumulative_usage")
        previous = optional_decimal(previous, "previous_total") or Decimal("0")
        current = to_decimal(current, "new_total")
        if previous < threshold <= current:
            return TriggerDecision(True)
        return TriggerDecision(False, "threshold_not_crossed")

    if trigger_type == TriggerType.TIME_BASED.value:
        if last_triggered_at is None:
            return TriggerDecision(True)
        now = _parse_time(event.get("now")) or utc_now()
        if "interval_days" in conditions:
            window = timedelta(days=int(conditions["interval_days"]))
        else:
            window = SCHEDULE_WINDOWS[conditions.get("schedule", "monthly")]
        if now - as_utc(last_triggered_at) >= window:
            return TriggerDecision(True)
        return TriggerDecision(False, "window_not_elapsed")

    if trigger_type == TriggerType.MILESTONE_HIT.value:
        expected = conditions.get("milestone")
        if expected and event.get("milestone") != expected:
            return TriggerDecision(False, "milestone_mismatch")
        return TriggerDecision(True)

    if trigger_type == TriggerType.MANUAL_APPROVAL.value:
        if not event.get("approved_by"):
            return TriggerDecision(False, "missing_approver")
        return TriggerDecision(True)

    return TriggerDecision(False, f"unknown_trigger_type:{trigger_type}")


def validate_contract_terms(
    trigger_type: str,
    trigger_conditions: Dict[str, Any],
    distribution_logic: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Check trigger conditions and distribution logic for a trigger type.

    Returns:
        Normalized {"trigger_type", "trigger_conditions", "distribution_logic"}
    """
    try:
        trigger = TriggerType(trigger_type)
    except ValueError:
        raise ValidationError(
            f"Unknown trigger type {trigger_type!r}",
            reason="invalid_trigger_type",
            details={"field": "trigger_type", "allowed": [t.value for t in TriggerType]}
        )
    conditions = dict(trigger_conditions or {})
    logic = dict(distribution_logic or {})

    if trigger.value in AMOUNT_TRIGGERS:
        if _min_amount(conditions) < 0:
            raise ValidationError(
                "min_amount must not be negative",
                reason="negative_min_amount",
                details={"field": "trigger_conditions.min_amount"}
            )
    elif trigger == TriggerType.USAGE_THRESHOLD:
        threshold = optional_decimal(conditions.get("threshold"), "threshold")
        if threshold is None or threshold <= 0:
            raise ValidationError(
                "usage_threshold contracts need a positive threshold",
                reason="invalid_threshold",
                details={"field": "trigger_conditions.threshold"}
            )
    elif trigger == TriggerType.TIME_BASED:
        if "interval_days" in conditions:
            days = conditions["interval_days"]
            if isinstance(days, bool) or not isinstance(days, int) or days < 1:
                raise ValidationError(
                    "interval_days must be a positive integer",
                    reason="invalid_interval",
                    details={"field": "trigger_conditions.interval_days"}
                )
        elif conditions.get("schedule") not in SCHEDULE_WINDOWS:
            raise ValidationError(
                f"schedule must be one of {sorted(SCHEDULE_WINDOWS)}",
                reason="invalid_schedule",
                details={"field": "trigger_conditions.schedule", "allowed": sorted(SCHEDULE_WINDOWS)}
            )

    try:
        distribution = DistributionType(logic.get("type", DistributionType.PROPORTIONAL.value))
    except ValueError:
        raise ValidationError(
            f"Unknown distribution type {logic.get('type')!r}",
            reason="invalid_distribution_type",
            details={"field": "distribution_logic.type", "allowed": [t.value for t in DistributionType]}
        )
    logic["type"] = distribution.value
    if distribution == DistributionType.FIXED:
        amount = optional_decimal(logic.get("amount"), "amount")
        if amount is None or amount <= 0:
            raise ValidationError(
                "fixed distribution needs a positive amount",
                reason="invalid_fixed_amount",
                details={"field": "distribution_logic.amount"}
            )
    else:
        if trigger == TriggerType.USAGE_THRESHOLD:
            # Usage events carry quantities, not money
            raise ValidationError(
                "usage_threshold contracts need a fixed distribution amount",
                reason="fixed_distribution_required",
                details={"field": "distribution_logic.type"}
            )
        share = optional_decimal(logic.get("share_percentage"), "share_percentage")
        if share is not None and (share <= 0 or share > HUNDRED):
            raise ValidationError(
                "share_percentage must be in (0, 100]",
                reason="share_out_of_range",
                details={"field": "distribution_logic.share_percentage"}
            )

    return {
        "trigger_type": trigger.value,
        "trigger_conditions": json_safe(conditions),
        "distribution_logic": json_safe(logic),
    }


class SettlementService:
    """Service for settlement contracts and their executions"""

    def __init__(self, db: Session, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)
        self.participants = ParticipantService(db)
        self.calculator = PayoutCalculatorService(db)

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    def create_contract(
        self,
        deal_id: UUID,
        name: str,
        trigger_type: str,
        trigger_conditions: Dict[str, Any],
        distribution_logic: Dict[str, Any],
        currency: Optional[str] = None,
        description: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> SettlementContract:
        deal = self.db.get(Deal, deal_id)
        if not deal:
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})
        if not name or not name.strip():
            raise ValidationError("Contract name is required", reason="empty_name", details={"field": "name"})
        terms = validate_contract_terms(trigger_type, trigger_conditions, distribution_logic)

        contract = SettlementContract(
            deal_id=deal_id,
            name=name.strip(),
            description=description,
            currency=normalize_currency(currency or deal.currency),
            total_distributed=Decimal("0"),
            is_active=True,
            created_by=created_by,
            created_at=utc_now(),
            **terms
        )
        self.db.add(contract)
        self.db.commit()
        self.db.refresh(contract)

        logger.info(
            f"Created {contract.trigger_type} settlement contract {contract.id}",
            extra={"deal_id": str(deal_id), "contract_id": str(contract.id)}
        )
        return contract

    def get_contract(self, contract_id: UUID) -> SettlementContract:
        contract = self.db.get(SettlementContract, contract_id)
        if not contract:
            raise NotFoundError(f"Settlement contract {contract_id} not found", details={"contract_id": contract_id})
        return contract

    def deactivate_contract(self, contract_id: UUID) -> SettlementContract:
        with aggregate_lock("settlement_contract", contract_id):
            contract = load_for_update(self.db, SettlementContract, contract_id)
            if contract is None:
                raise NotFoundError(f"Settlement contract {contract_id} not found", details={"contract_id": contract_id})
            if contract.is_active:
                contract.is_active = False
                self.db.commit()
                logger.info(f"Deactivated settlement contract {contract_id}", extra={"contract_id": str(contract_id)})
        self.db.refresh(contract)
        return contract

    def list_contracts(self, deal_id: UUID, active_only: bool = False) -> List[SettlementContract]:
        query = self.db.query(SettlementContract).filter(SettlementContract.deal_id == deal_id)
        if active_only:
            query = query.filter(SettlementContract.is_active.is_(True))
        return query.order_by(SettlementContract.created_at).all()

    def get_execution(self, execution_id: UUID) -> SettlementExecution:
        execution = self.db.get(SettlementExecution, execution_id)
        if not execution:
            raise NotFoundError(f"Settlement execution {execution_id} not found", details={"execution_id": execution_id})
        return execution

    def get_payout(self, payout_id: UUID) -> SettlementPayout:
        payout = self.db.get(SettlementPayout, payout_id)
        if not payout:
            raise NotFoundError(f"Payout {payout_id} not found", details={"payout_id": payout_id})
        return payout

    def list_executions(self, contract_id: UUID) -> List[SettlementExecution]:
        return self.db.query(SettlementExecution).filter(
            SettlementExecution.contract_id == contract_id
        ).order_by(SettlementExecution.created_at).all()

    def list_payouts(self, execution_id: UUID) -> List[SettlementPayout]:
        return self.db.query(SettlementPayout).filter(
            SettlementPayout.execution_id == execution_id
        ).order_by(SettlementPayout.participant_id).all()

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def matches_trigger(self, contract: SettlementContract, event: Dict[str, Any]) -> bool:
        decision = evaluate_trigger(
            contract.trigger_type,
            contract.trigger_conditions,
            event,
            last_triggered_at=contract.last_triggered_at,
        )
        if decision.matched and contract.trigger_type == TriggerType.MANUAL_APPROVAL.value:
            if not self.participants.is_admin(contract.deal_id, event.get("approved_by")):
                decision = TriggerDecision(False, "approver_not_admin")
        if not decision.matched:
            logger.debug(
                f"Contract {contract.id} not triggered: {decision.reason}",
                extra={"contract_id": str(contract.id), "reason": decision.reason}
            )
        return decision.matched

    def handle_trigger(self, contract_id: UUID, event: Dict[str, Any]) -> Optional[SettlementExecution]:
        """
        Run a contract for a trigger event.

        The contract is re-read and matched under its lock, so a replayed or
        concurrent event cannot run a one-shot contract twice. The execution
        is committed as pending, then processing; payouts, completion and the
        contract's running totals are written in one transaction. On any
        failure that transaction is rolled back, so no payout persists, and
        the execution is marked failed with the error.

        Returns:
            The completed execution, or None when the event does not match

        Raises:
            StateError: contract is inactive
            ValidationError: the pool amount cannot be determined
            ExecutionFailure: the execution was created but failed
        """
        with aggregate_lock("settlement_contract", contract_id):
            try:
                contract = load_for_update(self.db, SettlementContract, contract_id)
                if contract is None:
                    raise NotFoundError(f"Settlement contract {contract_id} not found", details={"contract_id": contract_id})
                if not contract.is_active:
                    raise StateError(
                        f"Settlement contract {contract_id} is inactive",
                        reason="contract_inactive",
                        details={"contract_id": contract_id}
                    )
                if not self.matches_trigger(contract, event):
                    self.db.rollback()
                    return None
                total_amount = self._pool_amount(contract, event)
            except DealRoomError:
                self.db.rollback()
                raise

            execution = SettlementExecution(
                contract_id=contract.id,
                trigger_event=json_safe(event),
                total_amount=total_amount,
                currency=contract.currency,
                status=ExecutionStatus.PENDING.value,
                created_at=utc_now(),
            )
            self.db.add(execution)
            self.db.commit()
            execution_id = execution.id
            trigger_type = contract.trigger_type

            try:
                self._transition(execution, ExecutionStatus.PROCESSING)
                self.db.commit()
                execution = self._distribute(execution_id, contract_id, total_amount)
            except Exception as e:
                self.db.rollback()
                self.events.discard_pending()
                self._mark_failed(execution_id, trigger_type, e)
                raise ExecutionFailure(
                    f"Settlement execution {execution_id} failed: {e}",
                    execution_id=execution_id,
                    details={"contract_id": contract_id, "error": e.__class__.__name__}
                ) from e

        self.db.refresh(execution)
        self.events.publish_pending()
        settlement_executions_total.labels(trigger_type=trigger_type, status=execution.status).inc()
        settlement_distributed_amount_total.labels(currency=execution.currency).inc(float(execution.distributed_amount))
        logger.info(
            f"Settlement execution {execution_id} completed: {execution.distributed_amount} {execution.currency}",
            extra={
                "execution_id": str(execution_id),
                "contract_id": str(contract_id),
                "payout_count": len(execution.payouts),
            }
        )
        return execution

    def dispatch_event(self, deal_id: UUID, trigger_type: str, event: Dict[str, Any]) -> List[SettlementExecution]:
        """
        Offer an event to every active contract of the trigger type in a deal.

        Returns the executions started, failed ones included. Contracts that
        reject the event before an execution exists are logged and skipped.
        """
        try:
            trigger_type = TriggerType(trigger_type).value
        except ValueError:
            raise ValidationError(
                f"Unknown trigger type {trigger_type!r}",
                reason="invalid_trigger_type",
                details={"field": "trigger_type", "allowed": [t.value for t in TriggerType]}
            )

        contracts = self.db.query(SettlementContract).filter(
            SettlementContract.deal_id == deal_id,
            SettlementContract.trigger_type == trigger_type,
            SettlementContract.is_active.is_(True)
        ).order_by(SettlementContract.created_at).all()

        executions = []
        for contract in contracts:
            try:
                execution = self.handle_trigger(contract.id, event)
            except ExecutionFailure as e:
                executions.append(self.get_execution(e.execution_id))
                continue
            except DealRoomError as e:
                logger.warning(
                    f"Contract {contract.id} skipped: {e.reason}",
                    extra={"contract_id": str(contract.id), "reason": e.reason}
                )
                continue
            if execution is not None:
                executions.append(execution)
        return executions

    def mark_payout_paid(self, payout_id: UUID, payment_reference: str, actor: Optional[str] = None) -> SettlementPayout:
        """
        Record the external payment reference; repeating the same reference is a no-op.

        ``actor`` must be an active participant of the payout's deal when given.
        """
        payout = self.get_payout(payout_id)
        if actor is not None:
            self.participants.require_member(payout.execution.contract.deal_id, actor, field="actor")
        if not payment_reference:
            raise ValidationError(
                "payment_reference is required",
                reason="empty_payment_reference",
                details={"field": "payment_reference"}
            )
        if payout.status == PayoutStatus.PAID.value:
            if payout.payment_reference == payment_reference:
                return payout
            raise StateError(
                f"Payout {payout_id} is already paid under another reference",
                reason="already_paid",
                details={"payout_id": payout_id}
            )

        payout.status = PayoutStatus.PAID.value
        payout.paid_at = utc_now()
        payout.payment_reference = payment_reference
        payout.paid_by = actor
        self.db.commit()
        self.db.refresh(payout)
        logger.info(
            f"Payout {payout_id} marked paid by {actor or 'system'}",
            extra={"payout_id": str(payout_id), "payment_reference": payment_reference}
        )
        return payout

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _pool_amount(self, contract: SettlementContract, event: Dict[str, Any]) -> Decimal:
        logic = contract.distribution_logic or {}
        if logic.get("type") == DistributionType.FIXED.value:
            return quantize_money(to_decimal(logic.get("amount"), "amount"))

        amount = optional_decimal(event.get("amount"), "amount")
        if amount is None:
            raise ValidationError(
                f"Trigger event for contract {contract.id} carries no amount",
                reason="missing_pool_amount",
                details={"contract_id": contract.id, "field": "amount"}
            )
        if amount < 0:
            raise ValidationError(
                "Trigger amount must not be negative",
                reason="negative_amount",
                details={"contract_id": contract.id, "field": "amount"}
            )
        share = optional_decimal(logic.get("share_percentage"), "share_percentage") or HUNDRED
        return quantize_money(amount * share / HUNDRED)

    def _distribute(self, execution_id: UUID, contract_id: UUID, total_amount: Decimal) -> SettlementExecution:
        execution = self.db.get(SettlementExecution, execution_id)
        contract = load_for_update(self.db, SettlementContract, contract_id)

        result = self.calculator.calculate(contract.deal_id, total_amount, persist=False)
        distributed = Decimal("0")
        for line in result.lines:
            if line.calculated_payout <= 0:
                continue
            self.db.add(SettlementPayout(
                execution_id=execution.id,
                participant_id=line.participant_id,
                amount=line.calculated_payout,
                attribution_percentage=line.attribution_percentage,
                currency=execution.currency,
                status=PayoutStatus.PENDING.value,
            ))
            distributed += line.calculated_payout
        self.db.flush()

        now = utc_now()
        self._transition(execution, ExecutionStatus.COMPLETED)
        execution.executed_at = now
        execution.distributed_amount = distributed
        contract.total_distributed = quantize_money(Decimal(contract.total_distributed or 0) + distributed)
        contract.last_triggered_at = now
        self.events.emit(
            EventType.EXECUTION_COMPLETED, "settlement_execution", execution.id,
            {
                "contract_id": contract.id,
                "total_amount": execution.total_amount,
                "distributed_amount": distributed,
                "currency": execution.currency,
                "payouts": {line.participant_id: line.calculated_payout for line in result.lines},
            },
            deal_id=contract.deal_id,
        )
        self.db.commit()
        return execution

    def _mark_failed(self, execution_id: UUID, trigger_type: str, error: Exception):
        execution = self.db.get(SettlementExecution, execution_id)
        self._transition(execution, ExecutionStatus.FAILED)
        execution.executed_at = utc_now()
        execution.error_details = json_safe({
            "error": error.__class__.__name__,
            "reason": getattr(error, "reason", None),
            "message": str(error),
            "details": getattr(error, "details", {}),
        })
        self.events.emit(
            EventType.EXECUTION_FAILED, "settlement_execution", execution.id,
            {"contract_id": execution.contract_id, "error": execution.error_details},
            deal_id=execution.contract.deal_id,
        )
        self.db.commit()
        self.events.publish_pending()
        settlement_executions_total.labels(trigger_type=trigger_type, status=ExecutionStatus.FAILED.value).inc()
        logger.error(
            f"Settlement execution {execution_id} failed: {error}",
            exc_info=error,
            extra={"execution_id": str(execution_id), "contract_id": str(execution.contract_id)}
        )

    def _transition(self, execution: SettlementExecution, target: ExecutionStatus):
        result = validate_transition(execution.status, target.value)
        if not result.allowed:
            raise StateError(
                f"Execution {execution.id} cannot move from {execution.status} to {target.value}",
                details={"execution_id": execution.id, "transition": result.reason}
            )
        execution.status = target.value


def on_usage_recorded(db: Session, event: Dict[str, Any]):
    """Bus subscriber: evaluate usage-threshold contracts after a usage event"""
    deal_id = event.get("deal_id")
    if deal_id is None:
        return
    if not isinstance(deal_id, UUID):
        deal_id = UUID(str(deal_id))
    executions = SettlementService(db).dispatch_event(deal_id, TriggerType.USAGE_THRESHOLD.value, event["payload"])
    for execution in executions:
        logger.info(
            f"Usage threshold execution {execution.id} finished {execution.status}",
            extra={"execution_id": str(execution.id), "deal_id": str(deal_id)}
        )
