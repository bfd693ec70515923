"""
API routes for attribution rules and payout calculations
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.api.dependencies import get_actor
from dealroom.core.database import get_db
from dealroom.services.attribution_service import AttributionService
from dealroom.services.payout_calculator import PayoutCalculatorService

router = APIRouter(prefix="/api/deals/{deal_id}/attribution", tags=["attribution"])


class RuleCreate(BaseModel):
    participant_id: str
    credit_type: str = Field(..., description="contribution, usage or value")
    percentage: Decimal = Field(..., description="Share of the pool, 0-100")
    min_payout: Optional[Decimal] = None
    max_payout: Optional[Decimal] = None
    formulation_id: Optional[UUID] = None


class RuleResponse(BaseModel):
    id: UUID
    deal_id: UUID
    formulation_id: Optional[UUID] = None
    participant_id: str
    credit_type: str
    payout_percentage: Decimal
    min_payout: Optional[Decimal] = None
    max_payout: Optional[Decimal] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    deactivated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AllocationStatusResponse(BaseModel):
    deal_id: UUID
    total_percentage: Decimal
    remaining_percentage: Decimal
    status: str


class CalculationRequest(BaseModel):
    pool_value: Decimal
    persist: bool = True


class PayoutLineResponse(BaseModel):
    participant_id: str
    attribution_percentage: Decimal
    raw_payout: Decimal
    calculated_payout: Decimal
    min_applied: bool
    max_applied: bool

    class Config:
        from_attributes = True


class CalculationResponse(BaseModel):
    """Result of one payout calculation run"""
    batch_id: UUID
    deal_id: UUID
    pool_value: Decimal
    currency: str
    total_payout: Decimal
    lines: List[PayoutLineResponse]

    class Config:
        from_attributes = True


class StoredCalculationResponse(BaseModel):
    id: UUID
    batch_id: UUID
    participant_id: str
    pool_value: Decimal
    attribution_percentage: Decimal
    calculated_payout: Decimal
    min_applied: bool
    max_applied: bool
    currency: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


def _rule_in_deal(service: AttributionService, deal_id: UUID, rule_id: UUID):
    rule = service.get_rule(rule_id)
    if rule.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Attribution rule {rule_id} not found")
    return rule


@router.post("/rules", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(
    deal_id: UUID,
    body: RuleCreate,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    return AttributionService(db).create_rule(
        deal_id,
        body.participant_id,
        body.credit_type,
        body.percentage,
        min_payout=body.min_payout,
        max_payout=body.max_payout,
        formulation_id=body.formulation_id,
        created_by=actor,
    )


@router.get("/rules", response_model=List[RuleResponse])
async def list_rules(deal_id: UUID, active_only: bool = True, db: Session = Depends(get_db)):
    return AttributionService(db).list_rules(deal_id, active_only=active_only)


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(deal_id: UUID, rule_id: UUID, db: Session = Depends(get_db)):
    return _rule_in_deal(AttributionService(db), deal_id, rule_id)


@router.delete("/rules/{rule_id}", response_model=RuleResponse)
async def deactivate_rule(deal_id: UUID, rule_id: UUID, db: Session = Depends(get_db)):
    service = AttributionService(db)
    _rule_in_deal(service, deal_id, rule_id)
    return service.deactivate_rule(rule_id)


@router.get("/allocation", response_model=AllocationStatusResponse)
async def get_allocation_status(deal_id: UUID, db: Session = Depends(get_db)):
    """Sum of active percentages and whether it is under, at or over 100"""
    return AttributionService(db).allocation_status(deal_id)


@router.post("/calculations", response_model=CalculationResponse)
async def calculate_payouts(deal_id: UUID, body: CalculationRequest, db: Session = Depends(get_db)):
    return PayoutCalculatorService(db).calculate(deal_id, body.pool_value, persist=body.persist)


@router.get("/calculations/{batch_id}", response_model=List[StoredCalculationResponse])
async def get_calculation_batch(deal_id: UUID, batch_id: UUID, db: Session = Depends(get_db)):
    return PayoutCalculatorService(db).list_calculations(batch_id, deal_id=deal_id)
