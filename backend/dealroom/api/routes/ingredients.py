"""
API routes for the ingredient registry
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.api.dependencies import get_actor
from dealroom.core.database import get_db
from dealroom.models.ingredient import IngredientType, OwnershipStatus
from dealroom.services.ingredient_service import IngredientService

router = APIRouter(prefix="/api/deals/{deal_id}/ingredients", tags=["ingredients"])


class IngredientCreate(BaseModel):
    name: str
    ingredient_type: str = IngredientType.OTHER.value
    description: Optional[str] = None
    ownership_status: str = OwnershipStatus.SOLE.value
    value_category: Optional[str] = None
    contribution_weight: Decimal = Decimal("1")
    credit_multiplier: Decimal = Decimal("1")


class IngredientUpdate(BaseModel):
    changes: Dict[str, Any] = Field(..., description="Field name -> new value")


class IngredientResponse(BaseModel):
    """Ingredient response model"""
    id: UUID
    deal_id: UUID
    name: str
    description: Optional[str] = None
    ingredient_type: str
    ownership_status: str
    value_category: Optional[str] = None
    contribution_weight: Decimal
    credit_multiplier: Decimal
    contributed_by: Optional[str] = None
    is_retired: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LockStatusResponse(BaseModel):
    ingredient_id: UUID
    locked: bool
    formulation_ids: List[UUID]


def _ingredient_in_deal(service: IngredientService, deal_id: UUID, ingredient_id: UUID):
    ingredient = service.get_ingredient(ingredient_id)
    if ingredient.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Ingredient {ingredient_id} not found")
    return ingredient


@router.post("/", response_model=IngredientResponse, status_code=status.HTTP_201_CREATED)
async def register_ingredient(
    deal_id: UUID,
    body: IngredientCreate,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    return IngredientService(db).register_ingredient(
        deal_id,
        body.name,
        ingredient_type=body.ingredient_type,
        contributed_by=actor,
        description=body.description,
        ownership_status=body.ownership_status,
        value_category=body.value_category,
        contribution_weight=body.contribution_weight,
        credit_multiplier=body.credit_multiplier,
    )


@router.get("/", response_model=List[IngredientResponse])
async def list_ingredients(deal_id: UUID, include_retired: bool = False, db: Session = Depends(get_db)):
    return IngredientService(db).list_ingredients(deal_id, include_retired=include_retired)


@router.get("/{ingredient_id}", response_model=IngredientResponse)
async def get_ingredient(deal_id: UUID, ingredient_id: UUID, db: Session = Depends(get_db)):
    return _ingredient_in_deal(IngredientService(db), deal_id, ingredient_id)


@router.get("/{ingredient_id}/lock", response_model=LockStatusResponse)
async def get_lock_status(deal_id: UUID, ingredient_id: UUID, db: Session = Depends(get_db)):
    service = IngredientService(db)
    _ingredient_in_deal(service, deal_id, ingredient_id)
    references = service.active_references(ingredient_id)
    return LockStatusResponse(
        ingredient_id=ingredient_id,
        locked=bool(references),
        formulation_ids=[f.id for f in references],
    )


@router.patch("/{ingredient_id}", response_model=IngredientResponse)
async def update_ingredient(
    deal_id: UUID,
    ingredient_id: UUID,
    body: IngredientUpdate,
    db: Session = Depends(get_db)
):
    """Direct edit; locked ingredients must go through a change proposal"""
    service = IngredientService(db)
    _ingredient_in_deal(service, deal_id, ingredient_id)
    return service.update_ingredient(ingredient_id, body.changes)


@router.delete("/{ingredient_id}", response_model=IngredientResponse)
async def retire_ingredient(deal_id: UUID, ingredient_id: UUID, db: Session = Depends(get_db)):
    service = IngredientService(db)
    _ingredient_in_deal(service, deal_id, ingredient_id)
    return service.retire_ingredient(ingredient_id)
