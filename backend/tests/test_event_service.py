"""
Tests for the domain event outbox and in-process bus
"""
from decimal import Decimal
from uuid import uuid4

from dealroom.core.events import EventBus
from dealroom.models.domain_event import DomainEvent, EventType
from dealroom.services.event_service import EventService, json_safe
from dealroom.services.formulation_service import FormulationService


def test_json_safe_converts_nested_values():
    ident = uuid4()
    value = json_safe({"amount": Decimal("1.50"), "ids": (ident,), "type": EventType.USAGE_RECORDED})
    assert value == {"amount": "1.50", "ids": [str(ident)], "type": "usage.recorded"}


def test_events_publish_only_after_commit(db, deal):
    received = []
    bus = EventBus()
    bus.subscribe("formulation.created", lambda session, event: received.append(event))
    events = EventService(db, bus=bus)

    events.emit(EventType.FORMULATION_CREATED, "formulation", "f-1", {"version": 1}, deal_id=deal.id)
    db.commit()
    assert events.publish_pending() == 1
    assert received[0]["aggregate_id"] == "f-1"
    assert received[0]["payload"] == {"version": 1}
    assert events.publish_pending() == 0


def test_rolled_back_events_are_not_published(db, deal):
    received = []
    bus = EventBus()
    bus.subscribe("formulation.created", lambda session, event: received.append(event))
    events = EventService(db, bus=bus)

    events.emit(EventType.FORMULATION_CREATED, "formulation", "f-2", {}, deal_id=deal.id)
    db.rollback()
    assert events.publish_pending() == 0
    assert received == []
    assert db.query(DomainEvent).count() == 0


def test_failing_subscriber_does_not_block_others(db):
    calls = []

    def broken(session, event):
        raise RuntimeError("boom")

    bus = EventBus()
    bus.subscribe("usage.recorded", broken)
    bus.subscribe("usage.recorded", lambda session, event: calls.append(event["id"]))
    bus.subscribe("usage.recorded", broken)

    failures = bus.publish(db, {"id": "e-1", "event_type": "usage.recorded"})
    assert calls == ["e-1"]
    assert [f["error"] for f in failures] == ["RuntimeError", "RuntimeError"]
    assert failures[0]["message"] == "boom"
    assert len(bus.handlers_for("usage.recorded")) == 2

    bus.unsubscribe("usage.recorded", broken)
    assert len(bus.handlers_for("usage.recorded")) == 1


def test_outbox_delivery_acknowledgement(db, deal):
    FormulationService(db).create(deal.id, "Terms")
    events = EventService(db)

    undelivered = events.list_undelivered(deal_id=deal.id)
    assert [e.event_type for e in undelivered] == ["formulation.created"]

    assert events.mark_delivered([e.id for e in undelivered]) == 1
    assert events.mark_delivered([e.id for e in undelivered]) == 0
    assert events.list_undelivered(deal_id=deal.id) == []
    assert len(events.list_events(deal.id, event_type="formulation.created")) == 1
    assert events.mark_delivered([]) == 0


def test_failed_subscriber_is_recorded_and_replayed(db, deal):
    attempts = []

    def flaky(session, event):
        attempts.append(event["id"])
        if len(attempts) == 1:
            raise RuntimeError("downstream unavailable")

    bus = EventBus()
    bus.subscribe("formulation.created", flaky)
    events = EventService(db, bus=bus)
    emitted = events.emit(EventType.FORMULATION_CREATED, "formulation", "f-3", {}, deal_id=deal.id)
    db.commit()
    events.publish_pending()

    row = db.get(DomainEvent, emitted.id)
    assert row.processed_at is None
    assert row.processing_attempts == 1
    assert row.processing_error[0]["message"] == "downstream unavailable"

    assert events.replay_unprocessed(event_type="formulation.created") == {"attempted": 1, "processed": 1, "failed": 0}
    db.refresh(row)
    assert row.processed_at is not None
    assert row.processing_attempts == 2
    assert row.processing_error is None
    assert attempts == [emitted.id, emitted.id]
    assert events.replay_unprocessed()["attempted"] == 0


def test_replay_gives_up_after_max_attempts(db, deal):
    def broken(session, event):
        raise RuntimeError("always down")

    bus = EventBus()
    bus.subscribe("formulation.created", broken)
    events = EventService(db, bus=bus)
    emitted = events.emit(EventType.FORMULATION_CREATED, "formulation", "f-4", {}, deal_id=deal.id)
    db.commit()
    events.publish_pending()

    assert events.replay_unprocessed(max_attempts=2) == {"attempted": 1, "processed": 0, "failed": 1}
    assert events.replay_unprocessed(max_attempts=2)["attempted"] == 0
    assert db.get(DomainEvent, emitted.id).processing_attempts == 2


def test_unpublished_events_wait_for_grace_period(db, deal, settings):
    received = []
    bus = EventBus()
    bus.subscribe("formulation.created", lambda session, event: received.append(event["id"]))
    events = EventService(db, bus=bus)
    # Committed but never published, as when the publisher dies after commit
    emitted = events.emit(EventType.FORMULATION_CREATED, "formulation", "f-5", {}, deal_id=deal.id)
    db.commit()
    events.discard_pending()

    assert events.replay_unprocessed(deal_id=deal.id)["attempted"] == 0
    settings.set(event_replay_grace_seconds=0)
    assert events.replay_unprocessed(deal_id=deal.id)["processed"] == 1
    assert received == [emitted.id]
