"""
API routes for ingredient change proposals
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.api.dependencies import require_actor
from dealroom.core.database import get_db
from dealroom.services.change_proposal_service import ChangeProposalService

router = APIRouter(prefix="/api/deals/{deal_id}/proposals", tags=["proposals"])


class ProposalCreate(BaseModel):
    change_type: str = Field(..., description="add, modify or remove")
    proposed_changes: Dict[str, Any] = Field(default_factory=dict)
    ingredient_id: Optional[UUID] = None
    justification: Optional[str] = None


class VoteRequest(BaseModel):
    approve: bool


class ProposalResponse(BaseModel):
    """Change proposal response model"""
    id: UUID
    deal_id: UUID
    ingredient_id: Optional[UUID] = None
    proposed_by: str
    change_type: str
    proposed_changes: Dict[str, Any]
    justification: Optional[str] = None
    status: str
    approvals: Dict[str, str]
    created_at: datetime
    resolved_at: Optional[datetime] = None
    applied_ingredient_id: Optional[UUID] = None

    class Config:
        from_attributes = True


def _proposal_in_deal(service: ChangeProposalService, deal_id: UUID, proposal_id: UUID):
    proposal = service.get_proposal(proposal_id)
    if proposal.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Proposal {proposal_id} not found")
    return proposal


@router.post("/", response_model=ProposalResponse, status_code=status.HTTP_201_CREATED)
async def create_proposal(
    deal_id: UUID,
    body: ProposalCreate,
    actor: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    return ChangeProposalService(db).create_proposal(
        deal_id,
        actor,
        body.change_type,
        body.proposed_changes,
        ingredient_id=body.ingredient_id,
        justification=body.justification,
    )


@router.get("/", response_model=List[ProposalResponse])
async def list_proposals(deal_id: UUID, status_filter: Optional[str] = None, db: Session = Depends(get_db)):
    return ChangeProposalService(db).list_proposals(deal_id, status=status_filter)


@router.get("/{proposal_id}", response_model=ProposalResponse)
async def get_proposal(deal_id: UUID, proposal_id: UUID, db: Session = Depends(get_db)):
    return _proposal_in_deal(ChangeProposalService(db), deal_id, proposal_id)


@router.get("/{proposal_id}/pending-voters", response_model=List[str])
async def get_pending_voters(deal_id: UUID, proposal_id: UUID, db: Session = Depends(get_db)):
    service = ChangeProposalService(db)
    _proposal_in_deal(service, deal_id, proposal_id)
    return service.pending_voters(proposal_id)


@router.post("/{proposal_id}/votes", response_model=ProposalResponse)
async def vote(
    deal_id: UUID,
    proposal_id: UUID,
    body: VoteRequest,
    actor: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    """Cast or revise the acting participant's vote"""
    service = ChangeProposalService(db)
    _proposal_in_deal(service, deal_id, proposal_id)
    return service.vote(proposal_id, actor, body.approve)
