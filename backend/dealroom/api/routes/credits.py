"""
API routes for the three-tier credit ledger
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from dealroom.api.dependencies import require_actor
from dealroom.core.database import get_db
from dealroom.services.credit_service import CreditLedgerService

router = APIRouter(prefix="/api/deals/{deal_id}/credits", tags=["credits"])


class ContributionCreditCreate(BaseModel):
    participant_id: str
    amount: Decimal
    ingredient_id: Optional[UUID] = None
    classification: Optional[str] = None
    description: Optional[str] = None


class UsageCreditCreate(BaseModel):
    participant_id: str
    usage_type: str
    usage_count: int = 1
    amount: Decimal = Decimal("0")
    ingredient_id: Optional[UUID] = None
    classification: Optional[str] = None


class ValueCreditCreate(BaseModel):
    participant_id: str
    amount: Decimal
    classification: Optional[str] = None
    description: Optional[str] = None


class CreditResponse(BaseModel):
    id: UUID
    deal_id: UUID
    participant_id: str
    amount: Decimal
    classification: Optional[str] = None
    recorded_at: datetime

    class Config:
        from_attributes = True


class ValueCreditResponse(CreditResponse):
    verified_at: Optional[datetime] = None
    verified_by: Optional[str] = None
    is_verified: bool


@router.post("/contribution", response_model=CreditResponse, status_code=status.HTTP_201_CREATED)
async def record_contribution_credit(deal_id: UUID, body: ContributionCreditCreate, db: Session = Depends(get_db)):
    return CreditLedgerService(db).record_contribution_credit(
        deal_id,
        body.participant_id,
        body.amount,
        ingredient_id=body.ingredient_id,
        classification=body.classification,
        description=body.description,
    )


@router.post("/usage", response_model=CreditResponse, status_code=status.HTTP_201_CREATED)
async def record_usage_credit(deal_id: UUID, body: UsageCreditCreate, db: Session = Depends(get_db)):
    return CreditLedgerService(db).record_usage_credit(
        deal_id,
        body.participant_id,
        body.usage_type,
        usage_count=body.usage_count,
        amount=body.amount,
        ingredient_id=body.ingredient_id,
        classification=body.classification,
    )


@router.post("/value", response_model=ValueCreditResponse, status_code=status.HTTP_201_CREATED)
async def record_value_credit(deal_id: UUID, body: ValueCreditCreate, db: Session = Depends(get_db)):
    return CreditLedgerService(db).record_value_credit(
        deal_id,
        body.participant_id,
        body.amount,
        classification=body.classification,
        description=body.description,
    )


@router.post("/value/{credit_id}/verify", response_model=ValueCreditResponse)
async def verify_value_credit(
    deal_id: UUID,
    credit_id: UUID,
    actor: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Value credits count toward balances only once verified"""
    service = CreditLedgerService(db)
    if service.get_value_credit(credit_id).deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Value credit {credit_id} not found")
    return service.verify_value_credit(credit_id, actor)


@router.get("/balances/{participant_id}")
async def get_participant_balance(deal_id: UUID, participant_id: str, db: Session = Depends(get_db)) -> Dict[str, Any]:
    return CreditLedgerService(db).participant_balance(deal_id, participant_id)


@router.get("/summary")
async def get_credit_summary(deal_id: UUID, db: Session = Depends(get_db)) -> Dict[str, Dict[str, Any]]:
    return CreditLedgerService(db).deal_credit_summary(deal_id)
