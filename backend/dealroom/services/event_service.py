"""
Domain event outbox: persist with the change, publish after commit
"""
from datetime import date, datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from dealroom.core.config import get_settings
from dealroom.core.events import EventBus, get_event_bus
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.utils import utc_now
from dealroom.models.domain_event import DomainEvent, EventType

logger = LoggingConfig.get_logger(__name__)


def json_safe(value: Any) -> Any:
    """Convert Decimals, UUIDs, enums and datetimes so a value fits a JSON column"""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class EventService:
    """
    Service for emitting domain events.

    ``emit`` adds an outbox row to the caller's session; nothing is written
    until the caller commits. ``publish_pending`` must be called after that
    commit to fan the events out to in-process subscribers.
    """

    def __init__(self, db: Session, bus: Optional[EventBus] = None):
        self.db = db
        self._bus = bus
        self._pending: List[DomainEvent] = []

    @property
    def bus(self) -> EventBus:
        if self._bus is None:
            self._bus = get_event_bus()
        return self._bus

    def emit(
        self,
        event_type: EventType,
        aggregate_type: str,
        aggregate_id: Any,
        payload: Dict[str, Any],
        deal_id: Optional[UUID] = None
    ) -> DomainEvent:
        event = DomainEvent(
            deal_id=deal_id,
            event_type=event_type.value if isinstance(event_type, EventType) else str(event_type),
            aggregate_type=aggregate_type,
            aggregate_id=str(aggregate_id),
            payload=json_safe(payload),
            created_at=utc_now(),
        )
        self.db.add(event)
        self._pending.append(event)
        return event

    def discard_pending(self):
        """Forget events of a rolled-back attempt"""
        self._pending = []

    def publish_pending(self) -> int:
        """Publish events emitted since the last publish; call only after commit"""
        pending, self._pending = self._pending, []
        published = 0
        for event in pending:
            # Rows of a rolled-back transaction are transient again
            if event.id is None or self.db.get(DomainEvent, event.id) is None:
                continue
            self._deliver(event)
            published += 1
        return published

    def replay_unprocessed(
        self,
        event_type: Optional[str] = None,
        deal_id: Optional[UUID] = None,
        limit: int = 100,
        max_attempts: Optional[int] = None
    ) -> Dict[str, int]:
        """
        Re-publish events that no attempt has processed yet.

        Picks events whose last attempt failed, and events never attempted
        that are older than the replay grace period (their publisher died
        between commit and publish). Events out of attempts stay for an
        operator.

        Returns:
            {"attempted": n, "processed": n, "failed": n}
        """
        settings = get_settings()
        if max_attempts is None:
            max_attempts = settings.event_max_replay_attempts
        cutoff = utc_now() - timedelta(seconds=settings.event_replay_grace_seconds)

        query = self.db.query(DomainEvent).filter(
            DomainEvent.processed_at.is_(None),
            DomainEvent.processing_attempts < max_attempts,
            or_(DomainEvent.processing_attempts > 0, DomainEvent.created_at < cutoff),
        )
        if event_type:
            query = query.filter(DomainEvent.event_type == event_type)
        if deal_id is not None:
            query = query.filter(DomainEvent.deal_id == deal_id)
        event_ids = [row.id for row in query.order_by(DomainEvent.created_at).limit(limit).all()]

        processed = 0
        for event_id in event_ids:
            if self._deliver(self.db.get(DomainEvent, event_id)):
                processed += 1
        if event_ids:
            logger.info(
                f"Replayed {len(event_ids)} domain events, {processed} processed",
                extra={"event_type": event_type, "deal_id": str(deal_id) if deal_id else None}
            )
        return {"attempted": len(event_ids), "processed": processed, "failed": len(event_ids) - processed}

    def list_undelivered(self, limit: int = 100, deal_id: Optional[UUID] = None) -> List[DomainEvent]:
        query = self.db.query(DomainEvent).filter(DomainEvent.delivered_at.is_(None))
        if deal_id is not None:
            query = query.filter(DomainEvent.deal_id == deal_id)
        return query.order_by(DomainEvent.created_at).limit(limit).all()

    def list_events(
        self,
        deal_id: UUID,
        event_type: Optional[str] = None,
        limit: int = 100
    ) -> List[DomainEvent]:
        query = self.db.query(DomainEvent).filter(DomainEvent.deal_id == deal_id)
        if event_type:
            query = query.filter(DomainEvent.event_type == event_type)
        return query.order_by(DomainEvent.created_at).limit(limit).all()

    def mark_delivered(self, event_ids: Iterable[UUID]) -> int:
        """Acknowledge delivery by the notification dispatcher; already delivered ids are skipped"""
        ids = list(event_ids)
        if not ids:
            return 0
        now = utc_now()
        events = self.db.query(DomainEvent).filter(
            DomainEvent.id.in_(ids),
            DomainEvent.delivered_at.is_(None)
        ).all()
        for event in events:
            event.delivered_at = now
        self.db.commit()
        logger.debug(f"Marked {len(events)} domain events delivered", extra={"count": len(events)})
        return len(events)

    def _deliver(self, event: DomainEvent) -> bool:
        """Publish one committed event and record the outcome on its row"""
        event_id = event.id
        failures = self.bus.publish(self.db, self._as_message(event))

        event = self.db.get(DomainEvent, event_id)
        event.processing_attempts = (event.processing_attempts or 0) + 1
        if failures:
            event.processing_error = json_safe(failures)
            logger.warning(
                f"Domain event {event_id} failed processing (attempt {event.processing_attempts})",
                extra={"event_id": str(event_id), "event_type": event.event_type}
            )
        else:
            event.processed_at = utc_now()
            event.processing_error = None
        self.db.commit()
        return not failures

    @staticmethod
    def _as_message(event: DomainEvent) -> Dict[str, Any]:
        return {
            "id": event.id,
            "event_type": event.event_type,
            "deal_id": event.deal_id,
            "aggregate_type": event.aggregate_type,
            "aggregate_id": event.aggregate_id,
            "payload": event.payload,
            "created_at": event.created_at,
        }
