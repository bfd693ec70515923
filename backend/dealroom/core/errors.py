"""
Error taxonomy for the attribution and settlement engine
"""
from typing import Any, Dict, Optional
from uuid import UUID


class DealRoomError(Exception):
    """
    Base class for every rejection the engine reports.

    ``reason`` is a short machine-readable code naming the rule, field or
    transition that failed; ``details`` carries the identifiers involved.
    """

    reason: str = "error"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "reason": self.reason,
            "message": self.message,
            "details": {k: str(v) if isinstance(v, UUID) else v for k, v in self.details.items()},
        }


class ValidationError(DealRoomError):
    """Bad input: out-of-range percentage, empty name, missing ingredients"""
    reason = "invalid_input"


class NotFoundError(DealRoomError):
    """Referenced record does not exist"""
    reason = "not_found"


class StateError(DealRoomError):
    """Illegal lifecycle transition"""
    reason = "illegal_transition"


class LockedError(DealRoomError):
    """Mutation attempted on composition locked by an active formulation"""
    reason = "locked"


class ConsensusError(DealRoomError):
    """Voting protocol violation"""
    reason = "consensus_violation"


class AlreadyVotedError(ConsensusError):
    """Participant already voted and vote revision is disabled"""
    reason = "already_voted"


class CalculationError(DealRoomError):
    """Pool or rule data insufficient or inconsistent"""
    reason = "calculation_failed"


class ExecutionFailure(DealRoomError):
    """Settlement execution could not complete; the execution is marked failed"""
    reason = "execution_failed"

    def __init__(
        self,
        message: str,
        execution_id: Optional[UUID] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if execution_id is not None:
            details.setdefault("execution_id", execution_id)
        super().__init__(message, reason=reason, details=details)
        self.execution_id = execution_id


class ConcurrencyError(DealRoomError):
    """Aggregate changed underneath the writer and retries were exhausted"""
    reason = "concurrent_modification"
