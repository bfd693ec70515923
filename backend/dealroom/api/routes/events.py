"""
API routes for the domain event outbox
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.core.database import get_db
from dealroom.services.event_service import EventService

router = APIRouter(prefix="/api/events", tags=["events"])


class DomainEventResponse(BaseModel):
    id: UUID
    deal_id: Optional[UUID] = None
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any]
    created_at: datetime
    delivered_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processing_attempts: int = 0
    processing_error: Optional[List[Dict[str, Any]]] = None

    class Config:
        from_attributes = True


class DeliveryAck(BaseModel):
    event_ids: List[UUID] = Field(..., description="Events handed to the notification dispatcher")


class ReplayRequest(BaseModel):
    event_type: Optional[str] = None
    deal_id: Optional[UUID] = None
    limit: int = Field(default=100, ge=1, le=1000)


@router.get("/undelivered", response_model=List[DomainEventResponse])
async def list_undelivered(deal_id: Optional[UUID] = None, limit: int = 100, db: Session = Depends(get_db)):
    """Outbox rows not yet acknowledged, oldest first"""
    return EventService(db).list_undelivered(limit=limit, deal_id=deal_id)


@router.post("/delivered")
async def mark_delivered(body: DeliveryAck, db: Session = Depends(get_db)):
    return {"marked": EventService(db).mark_delivered(body.event_ids)}


@router.get("/deals/{deal_id}", response_model=List[DomainEventResponse])
async def list_deal_events(
    deal_id: UUID,
    event_type: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db)
):
    return EventService(db).list_events(deal_id, event_type=event_type, limit=limit)


@router.post("/replay")
async def replay_unprocessed(body: ReplayRequest, db: Session = Depends(get_db)):
    """Re-publish events whose in-process subscribers failed or never ran"""
    return EventService(db).replay_unprocessed(event_type=body.event_type, deal_id=body.deal_id, limit=body.limit)
