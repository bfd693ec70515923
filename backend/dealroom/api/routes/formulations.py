"""
API routes for formulations
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.api.dependencies import get_actor, require_actor
from dealroom.core.database import get_db
from dealroom.lifecycle.formulation import allowed_targets
from dealroom.services.formulation_service import FormulationService

router = APIRouter(prefix="/api/deals/{deal_id}/formulations", tags=["formulations"])


class FormulationCreate(BaseModel):
    name: str
    description: Optional[str] = None


class CompositionLineResponse(BaseModel):
    id: UUID
    ingredient_id: Optional[UUID] = None
    contributor_id: Optional[str] = None
    contributor_type: Optional[str] = None
    label: Optional[str] = None
    ownership_percent: Decimal
    value_weight: Decimal
    credit_multiplier: Decimal

    class Config:
        from_attributes = True


class FormulationResponse(BaseModel):
    """Formulation response model"""
    id: UUID
    deal_id: UUID
    name: str
    description: Optional[str] = None
    version: int
    status: str
    parent_formulation_id: Optional[UUID] = None
    created_by: Optional[str] = None
    created_at: datetime
    submitted_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    activated_by: Optional[str] = None
    archived_at: Optional[datetime] = None
    archived_by: Optional[str] = None
    snapshot_revision: int
    ingredients: List[CompositionLineResponse] = []

    class Config:
        from_attributes = True


class CompositionLineCreate(BaseModel):
    ingredient_id: Optional[UUID] = None
    contributor_id: Optional[str] = None
    contributor_type: Optional[str] = None
    label: Optional[str] = None
    ownership_percent: Decimal = Decimal("0")
    value_weight: Decimal = Decimal("1")
    credit_multiplier: Decimal = Decimal("1")


class CompositionLineUpdate(BaseModel):
    ownership_percent: Optional[Decimal] = None
    value_weight: Optional[Decimal] = None
    credit_multiplier: Optional[Decimal] = None


class ReviewCreate(BaseModel):
    status: str = Field(..., description="approved, rejected or changes_requested")
    notes: Optional[str] = None


class ActivateRequest(BaseModel):
    admin_override: bool = False


class ArchiveRequest(BaseModel):
    admin: bool = False


def _in_deal(service: FormulationService, deal_id: UUID, formulation_id: UUID):
    formulation = service.get_formulation(formulation_id)
    if formulation.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Formulation {formulation_id} not found")
    return formulation


@router.post("/", response_model=FormulationResponse, status_code=status.HTTP_201_CREATED)
async def create_formulation(
    deal_id: UUID,
    body: FormulationCreate,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    return FormulationService(db).create(deal_id, body.name, description=body.description, created_by=actor)


@router.get("/", response_model=List[FormulationResponse])
async def list_formulations(deal_id: UUID, status_filter: Optional[str] = None, db: Session = Depends(get_db)):
    return FormulationService(db).list_formulations(deal_id, status=status_filter)


@router.get("/active", response_model=Optional[FormulationResponse])
async def get_active_formulation(deal_id: UUID, db: Session = Depends(get_db)):
    return FormulationService(db).get_active_formulation(deal_id)


@router.get("/{formulation_id}", response_model=FormulationResponse)
async def get_formulation(deal_id: UUID, formulation_id: UUID, db: Session = Depends(get_db)):
    return _in_deal(FormulationService(db), deal_id, formulation_id)


@router.get("/{formulation_id}/transitions")
async def get_allowed_transitions(deal_id: UUID, formulation_id: UUID, db: Session = Depends(get_db)) -> Dict[str, Any]:
    formulation = _in_deal(FormulationService(db), deal_id, formulation_id)
    return {
        "status": formulation.status,
        "allowed": allowed_targets(formulation.status),
        "allowed_with_override": allowed_targets(formulation.status, override=True),
    }


@router.get("/{formulation_id}/ownership")
async def get_ownership_report(deal_id: UUID, formulation_id: UUID, db: Session = Depends(get_db)) -> Dict[str, Any]:
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    return service.ownership_report(formulation_id)


@router.get("/{formulation_id}/snapshot")
async def get_composition_snapshot(deal_id: UUID, formulation_id: UUID, db: Session = Depends(get_db)) -> Dict[str, Any]:
    formulation = _in_deal(FormulationService(db), deal_id, formulation_id)
    return {
        "formulation_id": formulation.id,
        "snapshot_revision": formulation.snapshot_revision,
        "snapshot": formulation.composition_snapshot,
    }


@router.post("/{formulation_id}/ingredients", response_model=CompositionLineResponse, status_code=status.HTTP_201_CREATED)
async def add_composition_line(
    deal_id: UUID,
    formulation_id: UUID,
    body: CompositionLineCreate,
    db: Session = Depends(get_db)
):
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    return service.add_ingredient(formulation_id, **body.model_dump())


@router.patch("/{formulation_id}/ingredients/{line_id}", response_model=CompositionLineResponse)
async def update_composition_line(
    deal_id: UUID,
    formulation_id: UUID,
    line_id: UUID,
    body: CompositionLineUpdate,
    db: Session = Depends(get_db)
):
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    return service.update_ingredient_terms(formulation_id, line_id, **body.model_dump())


@router.delete("/{formulation_id}/ingredients/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_composition_line(deal_id: UUID, formulation_id: UUID, line_id: UUID, db: Session = Depends(get_db)):
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    service.remove_ingredient(formulation_id, line_id)


@router.post("/{formulation_id}/submit", response_model=FormulationResponse)
async def submit_for_review(
    deal_id: UUID,
    formulation_id: UUID,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    return service.submit_for_review(formulation_id, actor)


@router.post("/{formulation_id}/reviews")
async def submit_review(
    deal_id: UUID,
    formulation_id: UUID,
    body: ReviewCreate,
    actor: str = Depends(require_actor),
    db: Session = Depends(get_db)
) -> Dict[str, Any]:
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    service.submit_review(formulation_id, actor, body.status, notes=body.notes)
    return service.review_summary(formulation_id)


@router.get("/{formulation_id}/reviews")
async def get_review_summary(deal_id: UUID, formulation_id: UUID, db: Session = Depends(get_db)) -> Dict[str, Any]:
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    return service.review_summary(formulation_id)


@router.post("/{formulation_id}/activate", response_model=FormulationResponse)
async def activate_formulation(
    deal_id: UUID,
    formulation_id: UUID,
    body: Optional[ActivateRequest] = None,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    override = body.admin_override if body else False
    return service.activate(formulation_id, actor, admin_override=override)


@router.post("/{formulation_id}/archive", response_model=FormulationResponse)
async def archive_formulation(
    deal_id: UUID,
    formulation_id: UUID,
    body: Optional[ArchiveRequest] = None,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    """Archive; an active formulation needs ``admin`` and an admin actor"""
    service = FormulationService(db)
    formulation = _in_deal(service, deal_id, formulation_id)
    admin = bool(body and body.admin) and service.participants.is_admin(formulation.deal_id, actor)
    return service.archive(formulation_id, actor, admin=admin)


@router.post("/{formulation_id}/revisions", response_model=FormulationResponse, status_code=status.HTTP_201_CREATED)
async def create_revision(
    deal_id: UUID,
    formulation_id: UUID,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    service = FormulationService(db)
    _in_deal(service, deal_id, formulation_id)
    return service.create_revision(formulation_id, actor)
