"""
Usage ledger: append-only consumption events with idempotent ingestion
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from dealroom.core.concurrency import aggregate_lock
from dealroom.core.errors import ConcurrencyError, NotFoundError, ValidationError
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import usage_events_total
from dealroom.core.utils import quantize_money, to_decimal, utc_now
from dealroom.models.domain_event import EventType
from dealroom.models.ingredient import Ingredient
from dealroom.models.usage import UsageEvent, UsageSummary
from dealroom.services.event_service import EventService

logger = LoggingConfig.get_logger(__name__)


@dataclass
class RecordedUsage:
    """Outcome of one ingestion; ``duplicate`` marks a redelivered event key"""
    event: UsageEvent
    duplicate: bool = False


class UsageLedgerService:
    """
    Service for the usage ledger.

    Producers deliver at least once; ``event_key`` makes redelivery a no-op
    so running summaries never double count.
    """

    def __init__(self, db: Session, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)

    def record_usage(
        self,
        deal_id: UUID,
        ingredient_id: UUID,
        usage_type: str,
        quantity: Any,
        cost_incurred: Any = Decimal("0"),
        event_key: Optional[str] = None,
        recorded_at: Optional[datetime] = None
    ) -> RecordedUsage:
        """
        Append a usage event and update the running summary.

        Args:
            deal_id: Deal the usage belongs to
            ingredient_id: Consumed ingredient
            usage_type: Producer-defined usage category (api_call, seat, ...)
            quantity: Positive amount consumed
            cost_incurred: Non-negative cost attached to the usage
            event_key: Idempotency key; generated when omitted
            recorded_at: Event time; defaults to now

        Returns:
            RecordedUsage with the stored (or previously stored) event

        Raises:
            ValidationError: bad quantity, cost or usage type
            NotFoundError: ingredient not in the deal
        """
        if event_key:
            existing = self._by_key(event_key)
            if existing is not None:
                return self._duplicate(existing)

        if not usage_type or not str(usage_type).strip():
            raise ValidationError("usage_type is required", reason="empty_usage_type", details={"field": "usage_type"})
        quantity = to_decimal(quantity, "quantity")
        if quantity <= 0:
            raise ValidationError(
                f"quantity must be positive, got {quantity}",
                reason="non_positive",
                details={"field": "quantity", "value": str(quantity)}
            )
        cost = to_decimal(cost_incurred if cost_incurred is not None else 0, "cost_incurred")
        if cost < 0:
            raise ValidationError(
                f"cost_incurred must not be negative, got {cost}",
                reason="negative_cost",
                details={"field": "cost_incurred", "value": str(cost)}
            )
        ingredient = self.db.get(Ingredient, ingredient_id)
        if not ingredient or ingredient.deal_id != deal_id:
            raise NotFoundError(
                f"Ingredient {ingredient_id} not found in deal {deal_id}",
                details={"ingredient_id": ingredient_id, "deal_id": deal_id}
            )

        usage_type = str(usage_type).strip()
        event_key = event_key or str(uuid4())
        recorded_at = recorded_at or utc_now()

        with aggregate_lock("usage_ledger", deal_id):
            previous_total = self.cumulative_usage(deal_id)
            previous_type_total = self.cumulative_usage(deal_id, usage_type)
            sequence = self._next_sequence(deal_id)

            event = UsageEvent(
                deal_id=deal_id,
                ingredient_id=ingredient_id,
                usage_type=usage_type,
                quantity=quantity,
                cost_incurred=quantize_money(cost),
                event_key=event_key,
                recorded_at=recorded_at,
                sequence=sequence,
                ingested_at=utc_now(),
            )
            self.db.add(event)
            summary = self._summary_row(deal_id, ingredient_id, usage_type)
            summary.total_quantity = (summary.total_quantity or Decimal("0")) + quantity
            summary.total_cost = (summary.total_cost or Decimal("0")) + quantize_money(cost)
            summary.event_count = (summary.event_count or 0) + 1
            summary.last_recorded_at = recorded_at

            try:
                self.db.flush()
                self.events.emit(
                    EventType.USAGE_RECORDED, "usage_event", event.id,
                    {
                        "deal_id": deal_id,
                        "ingredient_id": ingredient_id,
                        "usage_type": usage_type,
                        "quantity": quantity,
                        "cost_incurred": cost,
                        "event_key": event_key,
                        "sequence": sequence,
                        "previous_total": previous_total,
                        "new_total": previous_total + quantity,
                        "previous_type_total": previous_type_total,
                        "new_type_total": previous_type_total + quantity,
                    },
                    deal_id=deal_id,
                )
                self.db.commit()
            except (IntegrityError, StaleDataError):
                self.db.rollback()
                self.events.discard_pending()
                existing = self._by_key(event_key)
                if existing is not None:
                    return self._duplicate(existing)
                raise ConcurrencyError(
                    f"Usage ledger for deal {deal_id} was written concurrently",
                    details={"deal_id": deal_id, "usage_type": usage_type}
                )

        self.db.refresh(event)
        usage_events_total.labels(result="recorded").inc()
        logger.info(
            f"Recorded {quantity} {usage_type} on ingredient {ingredient_id}",
            extra={"deal_id": str(deal_id), "usage_event_id": str(event.id), "event_key": event_key}
        )
        self._catch_up(deal_id)
        self.events.publish_pending()
        return RecordedUsage(event=event)

    def usage_summary(self, deal_id: UUID, ingredient_id: Optional[UUID] = None) -> List[UsageSummary]:
        query = self.db.query(UsageSummary).filter(UsageSummary.deal_id == deal_id)
        if ingredient_id is not None:
            query = query.filter(UsageSummary.ingredient_id == ingredient_id)
        return query.order_by(UsageSummary.usage_type).all()

    def cumulative_usage(self, deal_id: UUID, usage_type: Optional[str] = None) -> Decimal:
        # Summed in Python: SQLite aggregates Numeric columns as floats
        query = self.db.query(UsageSummary.total_quantity).filter(UsageSummary.deal_id == deal_id)
        if usage_type:
            query = query.filter(UsageSummary.usage_type == usage_type)
        return sum((Decimal(row.total_quantity) for row in query.all()), Decimal("0"))

    def list_events(
        self,
        deal_id: UUID,
        after_sequence: Optional[int] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[UsageEvent]:
        """
        Events in ingestion order, for consumers replaying the stream.

        Resume with the ``sequence`` of the last event seen; a backdated
        ``recorded_at`` never hides an event from the cursor. ``since``
        filters on ingestion time.
        """
        query = self.db.query(UsageEvent).filter(UsageEvent.deal_id == deal_id)
        if after_sequence is not None:
            query = query.filter(UsageEvent.sequence > after_sequence)
        if since is not None:
            query = query.filter(UsageEvent.ingested_at > since)
        query = query.order_by(UsageEvent.sequence)
        if limit:
            query = query.limit(limit)
        return query.all()

    def _next_sequence(self, deal_id: UUID) -> int:
        latest = self.db.query(func.max(UsageEvent.sequence)).filter(UsageEvent.deal_id == deal_id).scalar()
        return (latest or 0) + 1

    def _catch_up(self, deal_id: UUID):
        """Replay usage events of the deal whose subscribers failed earlier"""
        self.events.replay_unprocessed(event_type=EventType.USAGE_RECORDED.value, deal_id=deal_id)

    def _by_key(self, event_key: str) -> Optional[UsageEvent]:
        return self.db.query(UsageEvent).filter(UsageEvent.event_key == event_key).first()

    def _duplicate(self, event: UsageEvent) -> RecordedUsage:
        usage_events_total.labels(result="duplicate").inc()
        logger.info(
            f"Ignored duplicate usage event {event.event_key}",
            extra={"usage_event_id": str(event.id), "event_key": event.event_key}
        )
        # Redelivery retries subscribers that failed on the first delivery
        self._catch_up(event.deal_id)
        return RecordedUsage(event=event, duplicate=True)

    def _summary_row(self, deal_id: UUID, ingredient_id: UUID, usage_type: str) -> UsageSummary:
        summary = self.db.query(UsageSummary).filter(
            UsageSummary.deal_id == deal_id,
            UsageSummary.ingredient_id == ingredient_id,
            UsageSummary.usage_type == usage_type
        ).populate_existing().first()
        if summary is None:
            summary = UsageSummary(
                deal_id=deal_id,
                ingredient_id=ingredient_id,
                usage_type=usage_type,
                total_quantity=Decimal("0"),
                total_cost=Decimal("0"),
                event_count=0,
            )
            self.db.add(summary)
        return summary
