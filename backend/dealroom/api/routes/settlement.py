"""
API routes for settlement contracts, executions and payouts
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from dealroom.api.dependencies import get_actor, require_actor
from dealroom.core.database import get_db
from dealroom.services.settlement_service import SettlementService

router = APIRouter(prefix="/api/deals/{deal_id}/settlement", tags=["settlement"])


class ContractCreate(BaseModel):
    name: str
    trigger_type: str = Field(..., description="revenue_received, invoice_paid, usage_threshold, time_based, ...")
    trigger_conditions: Dict[str, Any] = Field(default_factory=dict)
    distribution_logic: Dict[str, Any] = Field(default_factory=dict)
    currency: Optional[str] = None
    description: Optional[str] = None


class ContractResponse(BaseModel):
    """Settlement contract response model"""
    id: UUID
    deal_id: UUID
    name: str
    description: Optional[str] = None
    trigger_type: str
    trigger_conditions: Dict[str, Any]
    distribution_logic: Dict[str, Any]
    currency: str
    is_active: bool
    total_distributed: Decimal
    last_triggered_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PayoutResponse(BaseModel):
    id: UUID
    execution_id: UUID
    participant_id: str
    amount: Decimal
    attribution_percentage: Optional[Decimal] = None
    currency: str
    status: str
    paid_at: Optional[datetime] = None
    payment_reference: Optional[str] = None
    paid_by: Optional[str] = None

    class Config:
        from_attributes = True


class ExecutionResponse(BaseModel):
    id: UUID
    contract_id: UUID
    trigger_event: Dict[str, Any]
    total_amount: Decimal
    distributed_amount: Optional[Decimal] = None
    currency: str
    status: str
    error_details: Optional[Dict[str, Any]] = None
    created_at: datetime
    executed_at: Optional[datetime] = None
    payouts: List[PayoutResponse] = []

    class Config:
        from_attributes = True


class TriggerRequest(BaseModel):
    event: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload, e.g. {\"amount\": \"1000.00\"}")


class DispatchRequest(TriggerRequest):
    trigger_type: str


class MarkPaidRequest(BaseModel):
    payment_reference: str


def _contract_in_deal(service: SettlementService, deal_id: UUID, contract_id: UUID):
    contract = service.get_contract(contract_id)
    if contract.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Settlement contract {contract_id} not found")
    return contract


def _execution_in_deal(service: SettlementService, deal_id: UUID, execution_id: UUID):
    execution = service.get_execution(execution_id)
    if execution.contract.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Settlement execution {execution_id} not found")
    return execution


def _payout_in_deal(service: SettlementService, deal_id: UUID, payout_id: UUID):
    payout = service.get_payout(payout_id)
    if payout.execution.contract.deal_id != deal_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Payout {payout_id} not found")
    return payout


@router.post("/contracts", response_model=ContractResponse, status_code=status.HTTP_201_CREATED)
async def create_contract(
    deal_id: UUID,
    body: ContractCreate,
    actor: Optional[str] = Depends(get_actor),
    db: Session = Depends(get_db)
):
    return SettlementService(db).create_contract(
        deal_id,
        body.name,
        body.trigger_type,
        body.trigger_conditions,
        body.distribution_logic,
        currency=body.currency,
        description=body.description,
        created_by=actor,
    )


@router.get("/contracts", response_model=List[ContractResponse])
async def list_contracts(deal_id: UUID, active_only: bool = False, db: Session = Depends(get_db)):
    return SettlementService(db).list_contracts(deal_id, active_only=active_only)


@router.get("/contracts/{contract_id}", response_model=ContractResponse)
async def get_contract(deal_id: UUID, contract_id: UUID, db: Session = Depends(get_db)):
    return _contract_in_deal(SettlementService(db), deal_id, contract_id)


@router.delete("/contracts/{contract_id}", response_model=ContractResponse)
async def deactivate_contract(deal_id: UUID, contract_id: UUID, db: Session = Depends(get_db)):
    service = SettlementService(db)
    _contract_in_deal(service, deal_id, contract_id)
    return service.deactivate_contract(contract_id)


@router.post("/contracts/{contract_id}/trigger", response_model=Optional[ExecutionResponse])
async def trigger_contract(
    deal_id: UUID,
    contract_id: UUID,
    body: TriggerRequest,
    db: Session = Depends(get_db)
):
    """
    Offer an event to one contract.

    Returns the completed execution, or 204 with no body when the event
    does not satisfy the contract's trigger conditions.
    """
    service = SettlementService(db)
    _contract_in_deal(service, deal_id, contract_id)
    execution = service.handle_trigger(contract_id, body.event)
    if execution is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return execution


@router.post("/dispatch", response_model=List[ExecutionResponse])
async def dispatch_event(deal_id: UUID, body: DispatchRequest, db: Session = Depends(get_db)):
    return SettlementService(db).dispatch_event(deal_id, body.trigger_type, body.event)


@router.get("/contracts/{contract_id}/executions", response_model=List[ExecutionResponse])
async def list_executions(deal_id: UUID, contract_id: UUID, db: Session = Depends(get_db)):
    service = SettlementService(db)
    _contract_in_deal(service, deal_id, contract_id)
    return service.list_executions(contract_id)


@router.get("/executions/{execution_id}", response_model=ExecutionResponse)
async def get_execution(deal_id: UUID, execution_id: UUID, db: Session = Depends(get_db)):
    return _execution_in_deal(SettlementService(db), deal_id, execution_id)


@router.get("/executions/{execution_id}/payouts", response_model=List[PayoutResponse])
async def list_payouts(deal_id: UUID, execution_id: UUID, db: Session = Depends(get_db)):
    service = SettlementService(db)
    _execution_in_deal(service, deal_id, execution_id)
    return service.list_payouts(execution_id)


@router.post("/payouts/{payout_id}/paid", response_model=PayoutResponse)
async def mark_payout_paid(
    deal_id: UUID,
    payout_id: UUID,
    body: MarkPaidRequest,
    actor: str = Depends(require_actor),
    db: Session = Depends(get_db)
):
    service = SettlementService(db)
    _payout_in_deal(service, deal_id, payout_id)
    return service.mark_payout_paid(payout_id, body.payment_reference, actor=actor)
