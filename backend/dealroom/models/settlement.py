"""
Settlement contracts, their executions and per-participant payouts
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict
from uuid import uuid4

from dealroom.core.database import Base
from sqlalchemy import (JSON, Boolean, CheckConstraint, Column, DateTime, ForeignKey,
                        Index, Integer, Numeric, String, Text, Uuid)
from sqlalchemy.orm import relationship


class TriggerType(str, Enum):
    """Condition family that starts a settlement"""
    REVENUE_RECEIVED = "revenue_received"
    INVOICE_PAID = "invoice_paid"
    SAVINGS_VERIFIED = "savings_verified"
    MILESTONE_HIT = "milestone_hit"
    USAGE_THRESHOLD = "usage_threshold"
    TIME_BASED = "time_based"
    MANUAL_APPROVAL = "manual_approval"


class DistributionType(str, Enum):
    PROPORTIONAL = "proportional"
    FIXED = "fixed"


class ExecutionStatus(str, Enum):
    """Execution status enumeration"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class SettlementContract(Base):
    """Standing rule that distributes a pool when its trigger condition is met"""
    __tablename__ = "settlement_contracts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    deal_id = Column(Uuid, ForeignKey("deals.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    trigger_type = Column(String(30), nullable=False)
    trigger_conditions = Column(JSON, nullable=False)
    distribution_logic = Column(JSON, nullable=False)
    currency = Column(String(3), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    total_distributed = Column(Numeric(18, 2), nullable=False, default=Decimal("0"))
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    version_id = Column(Integer, nullable=False)

    executions = relationship("SettlementExecution", back_populates="contract", order_by="SettlementExecution.created_at")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        Index('idx_settlement_contracts_deal_trigger', 'deal_id', 'trigger_type', 'is_active'),
    )

    def __repr__(self):
        return f"<SettlementContract(id={self.id}, trigger={self.trigger_type}, active={self.is_active})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "deal_id": str(self.deal_id),
            "name": self.name,
            "trigger_type": self.trigger_type,
            "trigger_conditions": self.trigger_conditions,
            "distribution_logic": self.distribution_logic,
            "currency": self.currency,
            "is_active": bool(self.is_active),
            "total_distributed": str(self.total_distributed),
            "last_triggered_at": self.last_triggered_at.isoformat() if self.last_triggered_at else None,
        }


class SettlementExecution(Base):
    """One triggered run of a settlement contract"""
    __tablename__ = "settlement_executions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    contract_id = Column(Uuid, ForeignKey("settlement_contracts.id", ondelete="CASCADE"), nullable=False)
    trigger_event = Column(JSON, nullable=False)
    total_amount = Column(Numeric(18, 2), nullable=False)
    distributed_amount = Column(Numeric(18, 2), nullable=True)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=ExecutionStatus.PENDING.value)
    error_details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    executed_at = Column(DateTime(timezone=True), nullable=True)

    version_id = Column(Integer, nullable=False)

    contract = relationship("SettlementContract", back_populates="executions")
    payouts = relationship("SettlementPayout", back_populates="execution", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version_id}

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='settlement_executions_status_check'
        ),
    )

    def __repr__(self):
        return f"<SettlementExecution(id={self.id}, status={self.status}, total={self.total_amount})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "contract_id": str(self.contract_id),
            "trigger_event": self.trigger_event,
            "total_amount": str(self.total_amount),
            "distributed_amount": str(self.distributed_amount) if self.distributed_amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "error_details": self.error_details,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
        }


class SettlementPayout(Base):
    """Amount owed to one participant by one execution"""
    __tablename__ = "settlement_payouts"

    id = Column(Uuid, primary_key=True, default=uuid4)
    execution_id = Column(Uuid, ForeignKey("settlement_executions.id", ondelete="CASCADE"), nullable=False)
    participant_id = Column(String(255), nullable=False)
    amount = Column(Numeric(18, 2), nullable=False)
    attribution_percentage = Column(Numeric(7, 4), nullable=True)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    payment_reference = Column(String(255), nullable=True)
    paid_by = Column(String(255), nullable=True)

    execution = relationship("SettlementExecution", back_populates="payouts")

    __table_args__ = (
        Index('idx_settlement_payouts_execution', 'execution_id'),
        Index('idx_settlement_payouts_participant', 'participant_id'),
    )

    def __repr__(self):
        return f"<SettlementPayout(participant_id={self.participant_id}, amount={self.amount}, status={self.status})>"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "execution_id": str(self.execution_id),
            "participant_id": self.participant_id,
            "amount": str(self.amount),
            "attribution_percentage": str(self.attribution_percentage) if self.attribution_percentage is not None else None,
            "currency": self.currency,
            "status": self.status,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "payment_reference": self.payment_reference,
            "paid_by": self.paid_by,
        }
