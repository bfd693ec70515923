"""
Tests for settlement contracts, trigger evaluation and execution atomicity
"""
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from dealroom.core.errors import ExecutionFailure, NotFoundError, StateError, ValidationError
from dealroom.core.utils import utc_now
from dealroom.models.domain_event import DomainEvent
from dealroom.models.settlement import SettlementPayout
from dealroom.services.attribution_service import AttributionService
from dealroom.services.settlement_service import SettlementService, evaluate_trigger, validate_contract_terms
from dealroom.services.usage_ledger_service import UsageLedgerService


@pytest.fixture
def service(db):
    return SettlementService(db)


@pytest.fixture
def split_rules(db, deal):
    rules = AttributionService(db)
    rules.create_rule(deal.id, "p1", "contribution", "60")
    rules.create_rule(deal.id, "p2", "usage", "40")


@pytest.fixture
def revenue_contract(service, deal):
    return service.create_contract(
        deal.id, "Revenue share", "revenue_received",
        {"min_amount": "100"}, {"type": "proportional"},
        created_by="p1"
    )


class TestEvaluateTrigger:

    def test_amount_triggers(self):
        assert evaluate_trigger("revenue_received", {"min_amount": "100"}, {"amount": "100"}).matched
        decision = evaluate_trigger("invoice_paid", {"min_amount": "100"}, {"amount": "99.99"})
        assert not decision.matched
        assert decision.reason.startswith("below_min_amount")
        assert evaluate_trigger("savings_verified", {}, {}).reason == "missing_amount"

    def test_usage_threshold_fires_once_on_crossing(self):
        conditions = {"threshold": "1000"}
        assert evaluate_trigger("usage_threshold", conditions, {"previous_total": "900", "new_total": "1000"}).matched
        assert not evaluate_trigger("usage_threshold", conditions, {"previous_total": "1000", "new_total": "1200"}).matched
        assert not evaluate_trigger("usage_threshold", conditions, {"previous_total": "10", "new_total": "20"}).matched

    def test_usage_threshold_per_type(self):
        conditions = {"threshold": "50", "usage_type": "seat"}
        event = {"usage_type": "api_call", "previous_type_total": "0", "new_type_total": "60"}
        assert evaluate_trigger("usage_threshold", conditions, event).reason == "usage_type_mismatch"
        event["usage_type"] = "seat"
        assert evaluate_trigger("usage_threshold", conditions, event).matched

    def test_time_based_windows(self):
        now = utc_now()
        last = now - timedelta(days=10)
        event = {"now": now.isoformat()}
        assert evaluate_trigger("time_based", {"schedule": "weekly"}, event).matched
        assert evaluate_trigger("time_based", {"schedule": "weekly"}, event, last_triggered_at=last).matched
        assert not evaluate_trigger("time_based", {"schedule": "monthly"}, event, last_triggered_at=last).matched
        assert evaluate_trigger("time_based", {"interval_days": 10}, event, last_triggered_at=last).matched

    def test_milestone_and_manual(self):
        assert evaluate_trigger("milestone_hit", {"milestone": "beta"}, {"milestone": "beta"}).matched
        assert not evaluate_trigger("milestone_hit", {"milestone": "beta"}, {"milestone": "ga"}).matched
        assert evaluate_trigger("manual_approval", {}, {}).reason == "missing_approver"


@pytest.mark.parametrize("trigger_type,conditions,logic,reason", [
    ("whenever", {}, {}, "invalid_trigger_type"),
    ("revenue_received", {"min_amount": "-1"}, {}, "negative_min_amount"),
    ("usage_threshold", {}, {"type": "fixed", "amount": "10"}, "invalid_threshold"),
    ("usage_threshold", {"threshold": "5"}, {"type": "proportional"}, "fixed_distribution_required"),
    ("time_based", {"schedule": "hourly"}, {}, "invalid_schedule"),
    ("time_based", {"interval_days": 0}, {}, "invalid_interval"),
    ("revenue_received", {}, {"type": "lottery"}, "invalid_distribution_type"),
    ("revenue_received", {}, {"type": "fixed"}, "invalid_fixed_amount"),
    ("revenue_received", {}, {"type": "proportional", "share_percentage": "120"}, "share_out_of_range"),
])
def test_contract_terms_validation(trigger_type, conditions, logic, reason):
    with pytest.raises(ValidationError) as exc:
        validate_contract_terms(trigger_type, conditions, logic)
    assert exc.value.reason == reason


def test_contract_terms_default_to_proportional():
    terms = validate_contract_terms("milestone_hit", {"milestone": "launch"}, {})
    assert terms["distribution_logic"] == {"type": "proportional"}


class TestExecution:

    def test_revenue_split(self, service, deal, split_rules, revenue_contract):
        execution = service.handle_trigger(revenue_contract.id, {"amount": "1000.00", "source": "invoice-17"})

        assert execution.status == "completed"
        assert execution.total_amount == Decimal("1000.00")
        assert execution.distributed_amount == Decimal("1000.00")
        payouts = service.list_payouts(execution.id)
        assert [(p.participant_id, p.amount, p.status) for p in payouts] == [
            ("p1", Decimal("600.00"), "pending"),
            ("p2", Decimal("400.00"), "pending"),
        ]
        contract = service.get_contract(revenue_contract.id)
        assert contract.total_distributed == Decimal("1000.00")
        assert contract.last_triggered_at is not None

    def test_event_below_minimum_is_ignored(self, service, split_rules, revenue_contract):
        assert service.handle_trigger(revenue_contract.id, {"amount": "50"}) is None
        assert service.list_executions(revenue_contract.id) == []

    def test_share_percentage_scales_the_pool(self, service, deal, split_rules):
        contract = service.create_contract(
            deal.id, "Ten percent", "invoice_paid", {}, {"type": "proportional", "share_percentage": "10"}
        )
        execution = service.handle_trigger(contract.id, {"amount": "1000"})
        assert execution.total_amount == Decimal("100.00")
        assert sorted(p.amount for p in execution.payouts) == [Decimal("40.00"), Decimal("60.00")]

    def test_failure_leaves_no_payouts(self, service, monkeypatch, split_rules, revenue_contract):
        built = []

        def flaky_payout(**kwargs):
            built.append(kwargs["participant_id"])
            if len(built) == 2:
                raise RuntimeError("payment rail unavailable")
            return SettlementPayout(**kwargs)

        monkeypatch.setattr("dealroom.services.settlement_service.SettlementPayout", flaky_payout)

        with pytest.raises(ExecutionFailure) as exc:
            service.handle_trigger(revenue_contract.id, {"amount": "1000"})

        execution = service.get_execution(exc.value.execution_id)
        assert execution.status == "failed"
        assert execution.error_details["error"] == "RuntimeError"
        assert execution.executed_at is not None
        assert service.list_payouts(execution.id) == []
        assert service.get_contract(revenue_contract.id).total_distributed == Decimal("0")

    def test_no_rules_fails_execution(self, service, revenue_contract):
        with pytest.raises(ExecutionFailure) as exc:
            service.handle_trigger(revenue_contract.id, {"amount": "500"})
        execution = service.get_execution(exc.value.execution_id)
        assert execution.status == "failed"
        assert execution.error_details["reason"] == "no_active_rules"

    def test_inactive_contract(self, service, split_rules, revenue_contract):
        service.deactivate_contract(revenue_contract.id)
        with pytest.raises(StateError) as exc:
            service.handle_trigger(revenue_contract.id, {"amount": "500"})
        assert exc.value.reason == "contract_inactive"

    def test_manual_approval_needs_admin(self, service, deal, split_rules):
        contract = service.create_contract(deal.id, "Bonus", "manual_approval", {}, {"type": "fixed", "amount": "200"})
        assert service.handle_trigger(contract.id, {"approved_by": "p2"}) is None

        execution = service.handle_trigger(contract.id, {"approved_by": "p1"})
        assert execution.total_amount == Decimal("200.00")
        assert execution.distributed_amount == Decimal("200.00")

    def test_dispatch_runs_matching_active_contracts(self, service, deal, split_rules, revenue_contract):
        retired = service.create_contract(deal.id, "Old share", "revenue_received", {}, {})
        service.deactivate_contract(retired.id)
        service.create_contract(deal.id, "Invoices", "invoice_paid", {}, {})

        executions = service.dispatch_event(deal.id, "revenue_received", {"amount": "300"})
        assert [e.contract_id for e in executions] == [revenue_contract.id]

        with pytest.raises(ValidationError):
            service.dispatch_event(deal.id, "gossip", {})


def test_usage_threshold_contract_fires_from_ledger(db, service, deal, ingredient):
    AttributionService(db).create_rule(deal.id, "p3", "usage", "100")
    contract = service.create_contract(
        deal.id, "Adoption bonus", "usage_threshold",
        {"threshold": "1000"}, {"type": "fixed", "amount": "500"}
    )
    ledger = UsageLedgerService(db)

    ledger.record_usage(deal.id, ingredient.id, "api_call", 600)
    assert service.list_executions(contract.id) == []

    ledger.record_usage(deal.id, ingredient.id, "api_call", 500)
    executions = service.list_executions(contract.id)
    assert len(executions) == 1
    assert executions[0].status == "completed"
    assert [(p.participant_id, p.amount) for p in executions[0].payouts] == [("p3", Decimal("500.00"))]

    ledger.record_usage(deal.id, ingredient.id, "api_call", 500)
    assert len(service.list_executions(contract.id)) == 1


def test_usage_reaching_threshold_exactly_fires_once(db, service, deal, ingredient):
    AttributionService(db).create_rule(deal.id, "p3", "usage", "100")
    contract = service.create_contract(
        deal.id, "Adoption bonus", "usage_threshold",
        {"threshold": "1000"}, {"type": "fixed", "amount": "500"}
    )
    ledger = UsageLedgerService(db)

    ledger.record_usage(deal.id, ingredient.id, "api_call", 400)
    ledger.record_usage(deal.id, ingredient.id, "api_call", 600)
    executions = service.list_executions(contract.id)
    assert len(executions) == 1
    assert Decimal(executions[0].trigger_event["new_total"]) == Decimal("1000")

    ledger.record_usage(deal.id, ingredient.id, "api_call", 1)
    assert len(service.list_executions(contract.id)) == 1
    assert service.get_contract(contract.id).total_distributed == Decimal("500.00")


def test_failed_threshold_settlement_is_replayed(db, service, deal, ingredient, monkeypatch):
    AttributionService(db).create_rule(deal.id, "p3", "usage", "100")
    contract = service.create_contract(
        deal.id, "Adoption bonus", "usage_threshold",
        {"threshold": "1000"}, {"type": "fixed", "amount": "500"}
    )
    dispatch = SettlementService.dispatch_event
    outages = []

    def dispatch_with_outage(self, deal_id, trigger_type, event):
        if Decimal(event["new_total"]) >= 1000 and not outages:
            outages.append(event["event_key"])
            raise RuntimeError("settlement store unavailable")
        return dispatch(self, deal_id, trigger_type, event)

    monkeypatch.setattr(SettlementService, "dispatch_event", dispatch_with_outage)
    ledger = UsageLedgerService(db)

    ledger.record_usage(deal.id, ingredient.id, "api_call", 600, event_key="u-1")
    ledger.record_usage(deal.id, ingredient.id, "api_call", 500, event_key="u-2")
    assert outages == ["u-2"]
    assert service.list_executions(contract.id) == []

    crossing = db.query(DomainEvent).filter(
        DomainEvent.event_type == "usage.recorded",
        DomainEvent.processed_at.is_(None)
    ).one()
    assert crossing.processing_attempts == 1
    assert crossing.processing_error[0]["error"] == "RuntimeError"

    # Producer redelivers after seeing the failure
    assert ledger.record_usage(deal.id, ingredient.id, "api_call", 500, event_key="u-2").duplicate
    ledger.record_usage(deal.id, ingredient.id, "api_call", 100, event_key="u-3")

    executions = service.list_executions(contract.id)
    assert [e.status for e in executions] == ["completed"]
    assert [(p.participant_id, p.amount) for p in executions[0].payouts] == [("p3", Decimal("500.00"))]
    db.refresh(crossing)
    assert crossing.processed_at is not None
    assert crossing.processing_attempts == 2
    assert crossing.processing_error is None
    assert ledger.cumulative_usage(deal.id) == Decimal("1200")


def test_threshold_contract_ignores_replayed_crossing(db, service, deal):
    AttributionService(db).create_rule(deal.id, "p3", "usage", "100")
    contract = service.create_contract(
        deal.id, "Adoption bonus", "usage_threshold",
        {"threshold": "1000"}, {"type": "fixed", "amount": "500"}
    )
    crossing = {"previous_total": "900", "new_total": "1100"}

    assert service.handle_trigger(contract.id, crossing) is not None
    assert service.handle_trigger(contract.id, crossing) is None
    assert len(service.list_executions(contract.id)) == 1


class TestMarkPaid:

    def test_idempotent_with_same_reference(self, service, split_rules, revenue_contract):
        execution = service.handle_trigger(revenue_contract.id, {"amount": "1000"})
        payout = service.list_payouts(execution.id)[0]

        paid = service.mark_payout_paid(payout.id, "wire-001")
        assert paid.status == "paid"
        paid_at = paid.paid_at
        assert service.mark_payout_paid(payout.id, "wire-001").paid_at == paid_at

        with pytest.raises(StateError) as exc:
            service.mark_payout_paid(payout.id, "wire-002")
        assert exc.value.reason == "already_paid"

    def test_actor_is_recorded_and_must_be_a_participant(self, service, split_rules, revenue_contract):
        execution = service.handle_trigger(revenue_contract.id, {"amount": "1000"})
        payout = service.list_payouts(execution.id)[0]

        with pytest.raises(ValidationError) as exc:
            service.mark_payout_paid(payout.id, "wire-003", actor="mallory")
        assert exc.value.reason == "not_a_participant"

        paid = service.mark_payout_paid(payout.id, "wire-003", actor="p1")
        assert paid.paid_by == "p1"

    def test_unknown_payout(self, service):
        with pytest.raises(NotFoundError):
            service.get_payout(uuid4())
