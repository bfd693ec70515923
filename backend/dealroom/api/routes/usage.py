"""
API routes for the usage ledger
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.core.database import get_db
from dealroom.services.usage_ledger_service import UsageLedgerService

router = APIRouter(prefix="/api/deals/{deal_id}/usage", tags=["usage"])


class UsageRecord(BaseModel):
    ingredient_id: UUID
    usage_type: str
    quantity: Decimal
    cost_incurred: Decimal = Decimal("0")
    event_key: Optional[str] = Field(default=None, description="Idempotency key; redelivery returns the original event")
    recorded_at: Optional[datetime] = None


class UsageEventResponse(BaseModel):
    id: UUID
    deal_id: UUID
    ingredient_id: UUID
    usage_type: str
    quantity: Decimal
    cost_incurred: Decimal
    event_key: str
    recorded_at: datetime
    sequence: int
    ingested_at: datetime

    class Config:
        from_attributes = True


class RecordedUsageResponse(BaseModel):
    event: UsageEventResponse
    duplicate: bool


class UsageSummaryResponse(BaseModel):
    ingredient_id: UUID
    usage_type: str
    total_quantity: Decimal
    total_cost: Decimal
    event_count: int
    last_recorded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.post("/", response_model=RecordedUsageResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(deal_id: UUID, body: UsageRecord, response: Response, db: Session = Depends(get_db)):
    result = UsageLedgerService(db).record_usage(
        deal_id,
        body.ingredient_id,
        body.usage_type,
        body.quantity,
        cost_incurred=body.cost_incurred,
        event_key=body.event_key,
        recorded_at=body.recorded_at,
    )
    if result.duplicate:
        response.status_code = status.HTTP_200_OK
    return RecordedUsageResponse(event=UsageEventResponse.model_validate(result.event), duplicate=result.duplicate)


@router.get("/summary", response_model=List[UsageSummaryResponse])
async def get_usage_summary(deal_id: UUID, ingredient_id: Optional[UUID] = None, db: Session = Depends(get_db)):
    return UsageLedgerService(db).usage_summary(deal_id, ingredient_id=ingredient_id)


@router.get("/total")
async def get_cumulative_usage(deal_id: UUID, usage_type: Optional[str] = None, db: Session = Depends(get_db)):
    total = UsageLedgerService(db).cumulative_usage(deal_id, usage_type=usage_type)
    return {"deal_id": deal_id, "usage_type": usage_type, "total_quantity": total}


@router.get("/events", response_model=List[UsageEventResponse])
async def list_usage_events(
    deal_id: UUID,
    after_sequence: Optional[int] = None,
    since: Optional[datetime] = None,
    limit: Optional[int] = None,
    db: Session = Depends(get_db)
):
    """Ingestion-ordered events; pass the last ``sequence`` seen as ``after_sequence`` to resume"""
    return UsageLedgerService(db).list_events(deal_id, after_sequence=after_sequence, since=since, limit=limit)
