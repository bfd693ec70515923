"""
Tests for the payout calculator
"""
from decimal import Decimal

import pytest

from dealroom.core.errors import CalculationError
from dealroom.models.attribution import PayoutCalculation
from dealroom.services.attribution_service import AttributionService
from dealroom.services.payout_calculator import PayoutCalculatorService, RuleSnapshot, calculate_payouts


def _rule(participant_id, percentage, min_payout=None, max_payout=None):
    return RuleSnapshot(
        rule_id=None,
        participant_id=participant_id,
        percentage=Decimal(percentage),
        min_payout=Decimal(min_payout) if min_payout is not None else None,
        max_payout=Decimal(max_payout) if max_payout is not None else None,
    )


def _by_participant(lines):
    return {line.participant_id: line.calculated_payout for line in lines}


class TestCalculatePayouts:

    def test_proportional_split(self):
        lines = calculate_payouts("1000", [_rule("a", "60"), _rule("b", "40")])
        assert _by_participant(lines) == {"a": Decimal("600.00"), "b": Decimal("400.00")}

    def test_rounds_half_up(self):
        lines = calculate_payouts("100", [_rule("a", "33.3333"), _rule("b", "33.3333"), _rule("c", "33.3334")])
        assert _by_participant(lines) == {"a": Decimal("33.33"), "b": Decimal("33.33"), "c": Decimal("33.33")}

        lines = calculate_payouts("0.05", [_rule("a", "50")])
        assert lines[0].calculated_payout == Decimal("0.03")

    def test_rules_grouped_per_participant_in_order(self):
        lines = calculate_payouts("200", [_rule("b", "10"), _rule("a", "20"), _rule("b", "15")])
        assert [line.participant_id for line in lines] == ["b", "a"]
        assert lines[0].attribution_percentage == Decimal("25")
        assert lines[0].calculated_payout == Decimal("50.00")

    def test_min_clamp(self):
        lines = calculate_payouts("100", [_rule("a", "10", min_payout="25"), _rule("b", "50")])
        first = lines[0]
        assert first.calculated_payout == Decimal("25.00")
        assert first.raw_payout == Decimal("10")
        assert first.min_applied and not first.max_applied

    def test_max_clamp_wins_over_min(self):
        lines = calculate_payouts("1000", [_rule("a", "50", min_payout="600", max_payout="700"),
                                           _rule("a", "0", max_payout="550")])
        assert lines[0].calculated_payout == Decimal("550.00")
        assert lines[0].min_applied and lines[0].max_applied

    def test_zero_pool(self):
        lines = calculate_payouts(0, [_rule("a", "100")])
        assert lines[0].calculated_payout == Decimal("0.00")

    def test_under_allocation_keeps_remainder(self):
        lines = calculate_payouts("1000", [_rule("a", "30")])
        assert sum(line.calculated_payout for line in lines) == Decimal("300.00")

    @pytest.mark.parametrize("pool,rules,reason", [
        ("lots", [_rule("a", "10")], "invalid_pool"),
        ("-1", [_rule("a", "10")], "negative_pool"),
        ("100", [], "no_active_rules"),
        ("100", [_rule("a", "70"), _rule("b", "40")], "over_allocated"),
        ("100", [_rule("a", "90"), _rule("b", "10", min_payout="50")], "payouts_exceed_pool"),
        ("1000", [_rule("a", "30", min_payout="500"), _rule("b", "70")], "payouts_exceed_pool"),
    ])
    def test_calculation_errors(self, pool, rules, reason):
        with pytest.raises(CalculationError) as exc:
            calculate_payouts(pool, rules, reject_over_allocation=True)
        assert exc.value.reason == reason

    def test_over_allocation_tolerated_when_allowed(self):
        with pytest.raises(CalculationError) as exc:
            calculate_payouts("100", [_rule("a", "70"), _rule("b", "40")], reject_over_allocation=False)
        assert exc.value.reason == "payouts_exceed_pool"

    def test_places_override(self):
        lines = calculate_payouts("10", [_rule("a", "33.3333")], places=0)
        assert lines[0].calculated_payout == Decimal("3")


class TestPayoutCalculatorService:

    def test_persisted_batch(self, db, deal):
        rules = AttributionService(db)
        rules.create_rule(deal.id, "p1", "contribution", "60")
        rules.create_rule(deal.id, "p2", "usage", "40", max_payout="300")

        result = PayoutCalculatorService(db).calculate(deal.id, "1000.00")
        assert result.currency == "USD"
        assert result.total_payout == Decimal("900.00")

        rows = PayoutCalculatorService(db).list_calculations(result.batch_id)
        assert [(r.participant_id, r.calculated_payout, r.max_applied) for r in rows] == [
            ("p1", Decimal("600.00"), False),
            ("p2", Decimal("300.00"), True),
        ]
        assert all(r.status == "pending" for r in rows)

    def test_preview_writes_nothing(self, db, deal):
        AttributionService(db).create_rule(deal.id, "p1", "contribution", "100")
        result = PayoutCalculatorService(db).calculate(deal.id, "50", persist=False)
        assert result.lines[0].calculated_payout == Decimal("50.00")
        assert db.query(PayoutCalculation).count() == 0

    def test_deal_without_rules(self, db, deal):
        with pytest.raises(CalculationError) as exc:
            PayoutCalculatorService(db).calculate(deal.id, "50")
        assert exc.value.reason == "no_active_rules"
