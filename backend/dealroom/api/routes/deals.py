"""
API routes for deals and their participants
"""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.api.dependencies import get_actor
from dealroom.core.database import get_db
from dealroom.services.participant_service import ParticipantService

router = APIRouter(prefix="/api/deals", tags=["deals"])


class DealCreate(BaseModel):
    name: str = Field(..., description="Deal name")
    currency: Optional[str] = Field(default=None, description="ISO currency code; defaults to the configured currency")
    admin_id: Optional[str] = Field(default=None, description="First admin; defaults to the acting participant")


class DealResponse(BaseModel):
    """Deal response model"""
    id: UUID
    name: str
    currency: str
    created_at: datetime

    class Config:
        from_attributes = True


class ParticipantCreate(BaseModel):
    participant_id: str
    role: str = "member"


class ParticipantResponse(BaseModel):
    participant_id: str
    role: str
    is_active: bool
    joined_at: datetime
    left_at: Optional[datetime] = None

    class Config:
        from_attributes = True


@router.post("/", response_model=DealResponse, status_code=status.HTTP_201_CREATED)
async def create_deal(
    body: DealCreate,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    """Create a deal"""
    return ParticipantService(db).create_deal(body.name, currency=body.currency, admin_id=body.admin_id or actor)


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(deal_id: UUID, db: Session = Depends(get_db)):
    return ParticipantService(db).get_deal(deal_id)


@router.get("/{deal_id}/participants", response_model=List[ParticipantResponse])
async def list_participants(
    deal_id: UUID,
    include_inactive: bool = False,
    db: Session = Depends(get_db)
):
    service = ParticipantService(db)
    service.get_deal(deal_id)
    return service.list_participants(deal_id, include_inactive=include_inactive)


@router.post("/{deal_id}/participants", response_model=ParticipantResponse, status_code=status.HTTP_201_CREATED)
async def add_participant(deal_id: UUID, body: ParticipantCreate, db: Session = Depends(get_db)):
    return ParticipantService(db).add_participant(deal_id, body.participant_id, role=body.role)


@router.delete("/{deal_id}/participants/{participant_id}", response_model=ParticipantResponse)
async def remove_participant(deal_id: UUID, participant_id: str, db: Session = Depends(get_db)):
    return ParticipantService(db).remove_participant(deal_id, participant_id)
