"""
Change proposal and voting subsystem
"""
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from dealroom.core.concurrency import load_for_update, run_with_retry
from dealroom.core.config import get_settings
from dealroom.core.errors import (AlreadyVotedError, ConsensusError, DealRoomError,
                                  NotFoundError, ValidationError)
from dealroom.core.logging_config import LoggingConfig
from dealroom.core.metrics import proposal_votes_total, proposals_resolved_total
from dealroom.core.utils import utc_now
from dealroom.models.change_proposal import ChangeProposal, ChangeType, ProposalStatus, VoteState
from dealroom.models.deal import Deal
from dealroom.models.domain_event import EventType
from dealroom.models.ingredient import Ingredient
from dealroom.services.event_service import EventService, json_safe
from dealroom.services.formulation_service import FormulationService
from dealroom.services.ingredient_service import IngredientService, validate_ingredient_fields
from dealroom.services.participant_service import ParticipantService

logger = LoggingConfig.get_logger(__name__)


def resolve(approvals: Mapping[str, VoteState]) -> ProposalStatus:
    """
    Unanimity rule over a complete approvals map.

    Any rejection rejects; approval needs every entry approved; anything
    else stays pending.
    """
    states = [VoteState(state) for state in approvals.values()]
    if any(state == VoteState.REJECTED for state in states):
        return ProposalStatus.REJECTED
    if states and all(state == VoteState.APPROVED for state in states):
        return ProposalStatus.APPROVED
    return ProposalStatus.PENDING


class ChangeProposalService:
    """Service for proposing and voting on ingredient changes"""

    def __init__(self, db: Session, events: Optional[EventService] = None):
        self.db = db
        self.events = events or EventService(db)
        self.participants = ParticipantService(db)
        self.ingredients = IngredientService(db, self.events)
        self.formulations = FormulationService(db, self.events)

    def create_proposal(
        self,
        deal_id: UUID,
        proposed_by: str,
        change_type: str,
        proposed_changes: Dict[str, Any],
        ingredient_id: Optional[UUID] = None,
        justification: Optional[str] = None
    ) -> ChangeProposal:
        """
        Open a proposal; every active participant must approve it.

        The approvals map is a snapshot of the roster at creation, with the
        proposer's vote already approved.

        Raises:
            ConsensusError: proposer is not an active participant
            ValidationError: change type, target or changed fields are invalid
        """
        if not self.db.get(Deal, deal_id):
            raise NotFoundError(f"Deal {deal_id} not found", details={"deal_id": deal_id})
        if not self.participants.is_member(deal_id, proposed_by):
            raise ConsensusError(
                f"{proposed_by!r} is not an active participant of deal {deal_id}",
                reason="not_a_participant",
                details={"deal_id": deal_id, "participant_id": proposed_by}
            )

        try:
            change = ChangeType(change_type)
        except ValueError:
            raise ValidationError(
                f"Unknown change type {change_type!r}",
                reason="invalid_change_type",
                details={"field": "change_type", "allowed": [t.value for t in ChangeType]}
            )
        proposed_changes = dict(proposed_changes or {})
        self._validate_target(deal_id, change, ingredient_id, proposed_changes)
        validate_ingredient_fields(proposed_changes)

        approvals = {pid: VoteState.UNSET.value for pid in self.participants.list_participant_ids(deal_id)}
        approvals[proposed_by] = VoteState.APPROVED.value

        proposal = ChangeProposal(
            deal_id=deal_id,
            ingredient_id=ingredient_id,
            proposed_by=proposed_by,
            change_type=change.value,
            proposed_changes=json_safe(proposed_changes),
            justification=justification,
            status=ProposalStatus.PENDING.value,
            approvals=approvals,
            created_at=utc_now(),
        )
        self.db.add(proposal)
        self.db.flush()
        self.events.emit(
            EventType.PROPOSAL_CREATED, "change_proposal", proposal.id,
            {"proposed_by": proposed_by, "change_type": change.value, "ingredient_id": ingredient_id},
            deal_id=deal_id,
        )

        try:
            # A sole participant's own approval is already unanimous
            self._apply_resolution(proposal, approvals)
            self.db.commit()
        except DealRoomError:
            self.db.rollback()
            self.events.discard_pending()
            raise
        self.db.refresh(proposal)
        self.events.publish_pending()

        logger.info(
            f"Proposal {proposal.id} ({change.value}) opened by {proposed_by} with {len(approvals)} voters",
            extra={"proposal_id": str(proposal.id), "deal_id": str(deal_id), "status": proposal.status}
        )
        self._record_resolution(proposal)
        return proposal

    def vote(self, proposal_id: UUID, participant_id: str, approve: bool) -> ChangeProposal:
        """
        Record a vote and resolve the proposal when the outcome is decided.

        Runs under the proposal's lock with an optimistic version check, so
        concurrent votes are applied one after another against fresh state.

        Raises:
            ConsensusError: proposal resolved or voter not in the approvals snapshot
            AlreadyVotedError: voter already voted and revision is disabled
        """
        vote_state = VoteState.APPROVED if approve else VoteState.REJECTED

        def _vote():
            self.events.discard_pending()
            proposal = load_for_update(self.db, ChangeProposal, proposal_id)
            if proposal is None:
                raise NotFoundError(f"Proposal {proposal_id} not found", details={"proposal_id": proposal_id})
            if proposal.is_resolved:
                raise ConsensusError(
                    f"Proposal {proposal_id} is already {proposal.status}",
                    reason="proposal_resolved",
                    details={"proposal_id": proposal_id, "status": proposal.status}
                )

            approvals = proposal.vote_map()
            if participant_id not in approvals:
                raise ConsensusError(
                    f"{participant_id!r} is not a voter on proposal {proposal_id}",
                    reason="not_a_voter",
                    details={"proposal_id": proposal_id, "participant_id": participant_id}
                )
            current = approvals[participant_id]
            if current != VoteState.UNSET and not get_settings().allow_vote_revision:
                raise AlreadyVotedError(
                    f"{participant_id!r} already voted {current.value} on proposal {proposal_id}",
                    details={"proposal_id": proposal_id, "participant_id": participant_id, "vote": current.value}
                )

            approvals[participant_id] = vote_state
            proposal.approvals = {pid: state.value for pid, state in approvals.items()}
            self.events.emit(
                EventType.PROPOSAL_VOTED, "change_proposal", proposal.id,
                {"participant_id": participant_id, "vote": vote_state.value, "revised": current != VoteState.UNSET},
                deal_id=proposal.deal_id,
            )
            self._apply_resolution(proposal, approvals)
            self.db.commit()
            return proposal

        try:
            proposal = run_with_retry(self.db, _vote, "change_proposal", proposal_id)
        except DealRoomError as e:
            self.db.rollback()
            self.events.discard_pending()
            logger.warning(
                f"Vote by {participant_id} on proposal {proposal_id} rejected: {e.reason}",
                extra={"proposal_id": str(proposal_id), "participant_id": participant_id, "reason": e.reason}
            )
            raise

        self.db.refresh(proposal)
        self.events.publish_pending()
        proposal_votes_total.labels(vote=vote_state.value).inc()
        logger.info(
            f"{participant_id} voted {vote_state.value} on proposal {proposal_id}; status {proposal.status}",
            extra={"proposal_id": str(proposal_id), "participant_id": participant_id, "status": proposal.status}
        )
        self._record_resolution(proposal)
        return proposal

    def get_proposal(self, proposal_id: UUID) -> ChangeProposal:
        proposal = self.db.get(ChangeProposal, proposal_id)
        if not proposal:
            raise NotFoundError(f"Proposal {proposal_id} not found", details={"proposal_id": proposal_id})
        return proposal

    def list_proposals(self, deal_id: UUID, status: Optional[str] = None) -> List[ChangeProposal]:
        query = self.db.query(ChangeProposal).filter(ChangeProposal.deal_id == deal_id)
        if status:
            query = query.filter(ChangeProposal.status == status)
        return query.order_by(ChangeProposal.created_at.desc()).all()

    def pending_voters(self, proposal_id: UUID) -> List[str]:
        proposal = self.get_proposal(proposal_id)
        if proposal.is_resolved:
            return []
        return sorted(pid for pid, state in proposal.vote_map().items() if state == VoteState.UNSET)

    def _validate_target(
        self,
        deal_id: UUID,
        change: ChangeType,
        ingredient_id: Optional[UUID],
        proposed_changes: Dict[str, Any]
    ):
        if change == ChangeType.ADD:
            if ingredient_id is not None:
                raise ValidationError(
                    "An add proposal must not reference an existing ingredient",
                    reason="unexpected_ingredient",
                    details={"ingredient_id": ingredient_id}
                )
            if not proposed_changes.get("name"):
                raise ValidationError(
                    "An add proposal needs a name",
                    reason="empty_name",
                    details={"field": "name"}
                )
            return

        if ingredient_id is None:
            raise ValidationError(
                f"A {change.value} proposal needs an ingredient_id",
                reason="missing_ingredient",
                details={"field": "ingredient_id"}
            )
        ingredient = self.db.get(Ingredient, ingredient_id)
        if not ingredient or ingredient.deal_id != deal_id:
            raise NotFoundError(
                f"Ingredient {ingredient_id} not found in deal {deal_id}",
                details={"ingredient_id": ingredient_id}
            )
        if ingredient.is_retired:
            raise ValidationError(
                f"Ingredient {ingredient_id} is retired",
                reason="ingredient_retired",
                details={"ingredient_id": ingredient_id}
            )
        if change == ChangeType.MODIFY and not proposed_changes:
            raise ValidationError(
                "A modify proposal needs at least one changed field",
                reason="empty_change",
                details={"field": "proposed_changes"}
            )

    def _apply_resolution(self, proposal: ChangeProposal, approvals: Mapping[str, VoteState]):
        status = resolve(approvals)
        if status == ProposalStatus.PENDING:
            return

        proposal.status = status.value
        proposal.resolved_at = utc_now()
        if status == ProposalStatus.APPROVED:
            ingredient = self.ingredients.apply_approved_change(proposal)
            self.formulations.refresh_derived_state(proposal.deal_id, ingredient.id)
        self.events.emit(
            EventType.PROPOSAL_RESOLVED, "change_proposal", proposal.id,
            {
                "status": status.value,
                "change_type": proposal.change_type,
                "applied_ingredient_id": proposal.applied_ingredient_id,
            },
            deal_id=proposal.deal_id,
        )

    def _record_resolution(self, proposal: ChangeProposal):
        if not proposal.is_resolved:
            return
        proposals_resolved_total.labels(status=proposal.status, change_type=proposal.change_type).inc()
        logger.info(
            f"Proposal {proposal.id} resolved {proposal.status}",
            extra={"proposal_id": str(proposal.id), "deal_id": str(proposal.deal_id), "status": proposal.status}
        )
