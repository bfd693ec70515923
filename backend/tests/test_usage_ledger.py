"""
Tests for the usage ledger
"""
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from dealroom.core.errors import NotFoundError, ValidationError
from dealroom.core.utils import utc_now
from dealroom.models.domain_event import DomainEvent
from dealroom.models.usage import UsageEvent
from dealroom.services.ingredient_service import IngredientService
from dealroom.services.participant_service import ParticipantService
from dealroom.services.usage_ledger_service import UsageLedgerService


@pytest.fixture
def ledger(db):
    return UsageLedgerService(db)


def test_summary_accumulates_per_usage_type(ledger, deal, ingredient):
    ledger.record_usage(deal.id, ingredient.id, "api_call", 100, cost_incurred="1.50")
    ledger.record_usage(deal.id, ingredient.id, "api_call", "250.5", cost_incurred="0.25")
    ledger.record_usage(deal.id, ingredient.id, "seat", 3)

    summaries = {s.usage_type: s for s in ledger.usage_summary(deal.id)}
    assert summaries["api_call"].total_quantity == Decimal("350.5")
    assert summaries["api_call"].total_cost == Decimal("1.75")
    assert summaries["api_call"].event_count == 2
    assert summaries["seat"].event_count == 1

    assert ledger.cumulative_usage(deal.id) == Decimal("353.5")
    assert ledger.cumulative_usage(deal.id, "seat") == Decimal("3")


def test_duplicate_event_key_is_ignored(db, ledger, deal, ingredient):
    first = ledger.record_usage(deal.id, ingredient.id, "api_call", 10, event_key="evt-1")
    again = ledger.record_usage(deal.id, ingredient.id, "api_call", 10, event_key="evt-1")

    assert first.duplicate is False
    assert again.duplicate is True
    assert again.event.id == first.event.id
    assert ledger.cumulative_usage(deal.id) == Decimal("10")
    assert db.query(UsageEvent).count() == 1


def test_recording_emits_event_with_running_totals(db, ledger, deal, ingredient):
    ledger.record_usage(deal.id, ingredient.id, "api_call", 40)
    ledger.record_usage(deal.id, ingredient.id, "api_call", 60)

    events = db.query(DomainEvent).filter(DomainEvent.event_type == "usage.recorded").all()
    totals = sorted((Decimal(e.payload["previous_total"]), Decimal(e.payload["new_total"])) for e in events)
    assert totals == [(Decimal("0"), Decimal("40")), (Decimal("40"), Decimal("100"))]


@pytest.mark.parametrize("usage_type,quantity,cost,reason", [
    (" ", 1, 0, "empty_usage_type"),
    ("api_call", 0, 0, "non_positive"),
    ("api_call", "-3", 0, "non_positive"),
    ("api_call", 1, "-0.01", "negative_cost"),
    ("api_call", "many", 0, "not_numeric"),
])
def test_rejects_invalid_usage(ledger, deal, ingredient, usage_type, quantity, cost, reason):
    with pytest.raises(ValidationError) as exc:
        ledger.record_usage(deal.id, ingredient.id, usage_type, quantity, cost_incurred=cost)
    assert exc.value.reason == reason


def test_ingredient_must_belong_to_deal(db, ledger, deal):
    other = ParticipantService(db).create_deal("Other deal", admin_id="p9")
    foreign = IngredientService(db).register_ingredient(other.id, "Foreign asset")
    with pytest.raises(NotFoundError):
        ledger.record_usage(deal.id, foreign.id, "api_call", 1)
    with pytest.raises(NotFoundError):
        ledger.record_usage(deal.id, uuid4(), "api_call", 1)


def test_list_events_in_ingestion_order(ledger, deal, ingredient):
    start = utc_now()
    ledger.record_usage(deal.id, ingredient.id, "api_call", 1, recorded_at=start - timedelta(hours=2))
    ledger.record_usage(deal.id, ingredient.id, "api_call", 2, recorded_at=start)

    seen = ledger.list_events(deal.id)
    assert [(e.sequence, e.quantity) for e in seen] == [(1, Decimal("1")), (2, Decimal("2"))]
    cursor = seen[-1].sequence

    # Producer time older than everything already consumed
    ledger.record_usage(deal.id, ingredient.id, "api_call", 3, recorded_at=start - timedelta(days=1))
    resumed = ledger.list_events(deal.id, after_sequence=cursor)
    assert [(e.sequence, e.quantity) for e in resumed] == [(3, Decimal("3"))]

    assert len(ledger.list_events(deal.id, since=start - timedelta(hours=1))) == 3
    assert len(ledger.list_events(deal.id, limit=1)) == 1


def test_sequence_is_per_deal(db, ledger, deal, ingredient):
    other = ParticipantService(db).create_deal("Other deal", admin_id="p9")
    foreign = IngredientService(db).register_ingredient(other.id, "Foreign asset")
    ledger.record_usage(deal.id, ingredient.id, "api_call", 1)
    ledger.record_usage(deal.id, ingredient.id, "api_call", 1)

    assert ledger.record_usage(other.id, foreign.id, "api_call", 1).event.sequence == 1
