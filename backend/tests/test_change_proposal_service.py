"""
Tests for change proposals and unanimous voting
"""
import pytest

from dealroom.core.errors import AlreadyVotedError, ConsensusError, ValidationError
from dealroom.models.change_proposal import ProposalStatus, VoteState
from dealroom.models.domain_event import DomainEvent
from dealroom.services.change_proposal_service import ChangeProposalService, resolve
from dealroom.services.formulation_service import FormulationService
from dealroom.services.ingredient_service import IngredientService
from dealroom.services.participant_service import ParticipantService


@pytest.fixture
def service(db):
    return ChangeProposalService(db)


def test_resolve_unanimity():
    assert resolve({"a": VoteState.APPROVED, "b": VoteState.APPROVED}) == ProposalStatus.APPROVED
    assert resolve({"a": VoteState.APPROVED, "b": VoteState.UNSET}) == ProposalStatus.PENDING
    assert resolve({"a": VoteState.APPROVED, "b": VoteState.REJECTED, "c": VoteState.UNSET}) == ProposalStatus.REJECTED
    assert resolve({}) == ProposalStatus.PENDING
    assert resolve({"a": "approved"}) == ProposalStatus.APPROVED


class TestCreateProposal:

    def test_proposer_vote_is_preset(self, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p2", "modify", {"name": "Router"}, ingredient_id=ingredient.id)
        assert proposal.status == "pending"
        assert proposal.approvals == {"p1": "unset", "p2": "approved", "p3": "unset"}
        assert service.pending_voters(proposal.id) == ["p1", "p3"]

    def test_outsider_cannot_propose(self, service, deal, ingredient):
        with pytest.raises(ConsensusError) as exc:
            service.create_proposal(deal.id, "mallory", "modify", {"name": "x"}, ingredient_id=ingredient.id)
        assert exc.value.reason == "not_a_participant"

    @pytest.mark.parametrize("change_type,changes,with_ingredient,reason", [
        ("rename", {"name": "x"}, True, "invalid_change_type"),
        ("add", {"name": "x"}, True, "unexpected_ingredient"),
        ("add", {"description": "no name"}, False, "empty_name"),
        ("modify", {"name": "x"}, False, "missing_ingredient"),
        ("modify", {}, True, "empty_change"),
        ("modify", {"deal_id": "elsewhere"}, True, "immutable_field"),
    ])
    def test_invalid_proposals(self, service, deal, ingredient, change_type, changes, with_ingredient, reason):
        with pytest.raises(ValidationError) as exc:
            service.create_proposal(
                deal.id, "p1", change_type, changes,
                ingredient_id=ingredient.id if with_ingredient else None
            )
        assert exc.value.reason == reason

    def test_retired_ingredient(self, db, service, deal, ingredient):
        IngredientService(db).retire_ingredient(ingredient.id)
        with pytest.raises(ValidationError) as exc:
            service.create_proposal(deal.id, "p1", "remove", {}, ingredient_id=ingredient.id)
        assert exc.value.reason == "ingredient_retired"

    def test_sole_participant_resolves_immediately(self, db, service):
        deal = ParticipantService(db).create_deal("Solo", admin_id="only")
        proposal = service.create_proposal(deal.id, "only", "add", {"name": "Brand", "ingredient_type": "brand_trademark"})
        assert proposal.status == "approved"
        assert proposal.applied_ingredient_id is not None
        assert IngredientService(db).get_ingredient(proposal.applied_ingredient_id).name == "Brand"


class TestVoting:

    def test_unanimous_approval_changes_locked_ingredient(self, db, service, deal, ingredient, active_formulation):
        proposal = service.create_proposal(
            deal.id, "p1", "modify", {"name": "Routing engine v2", "contribution_weight": "2"},
            ingredient_id=ingredient.id, justification="shipped v2"
        )
        service.vote(proposal.id, "p2", True)
        assert service.get_proposal(proposal.id).status == "pending"

        resolved = service.vote(proposal.id, "p3", True)
        assert resolved.status == "approved"
        assert resolved.resolved_at is not None
        assert resolved.applied_ingredient_id == ingredient.id

        assert IngredientService(db).get_ingredient(ingredient.id).name == "Routing engine v2"
        formulation = FormulationService(db).get_formulation(active_formulation.id)
        assert formulation.status == "active"
        assert formulation.snapshot_revision == 2
        assert formulation.composition_snapshot["lines"][0]["ingredient"]["name"] == "Routing engine v2"

        event_types = {e.event_type for e in db.query(DomainEvent)}
        assert {"proposal.resolved", "ingredient.changed", "formulation.refreshed"} <= event_types

    def test_single_rejection_rejects(self, db, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "remove", {}, ingredient_id=ingredient.id)
        rejected = service.vote(proposal.id, "p3", False)
        assert rejected.status == "rejected"
        assert rejected.applied_ingredient_id is None
        assert IngredientService(db).get_ingredient(ingredient.id).is_retired is False
        assert service.pending_voters(proposal.id) == []

    def test_approved_remove_retires_ingredient(self, db, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "remove", {}, ingredient_id=ingredient.id)
        service.vote(proposal.id, "p2", True)
        service.vote(proposal.id, "p3", True)
        assert IngredientService(db).get_ingredient(ingredient.id).is_retired is True

    def test_approved_add_registers_ingredient(self, db, service, deal):
        proposal = service.create_proposal(deal.id, "p3", "add", {"name": "Pricing model", "ingredient_type": "ip_asset"})
        service.vote(proposal.id, "p1", True)
        approved = service.vote(proposal.id, "p2", True)
        created = IngredientService(db).get_ingredient(approved.applied_ingredient_id)
        assert created.contributed_by == "p3"
        assert created.ingredient_type == "ip_asset"

    def test_resolved_proposal_refuses_votes(self, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "remove", {}, ingredient_id=ingredient.id)
        service.vote(proposal.id, "p2", False)
        with pytest.raises(ConsensusError) as exc:
            service.vote(proposal.id, "p3", True)
        assert exc.value.reason == "proposal_resolved"

    def test_late_rejection_after_approval_rejects(self, db, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "modify", {"name": "Router v2"}, ingredient_id=ingredient.id)
        assert service.vote(proposal.id, "p2", True).status == "pending"

        rejected = service.vote(proposal.id, "p3", False)
        assert rejected.status == "rejected"
        assert rejected.approvals == {"p1": "approved", "p2": "approved", "p3": "rejected"}
        assert rejected.resolved_at is not None
        assert IngredientService(db).get_ingredient(ingredient.id).name == "Routing engine"

    def test_early_rejection_closes_voting(self, db, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "modify", {"name": "Router v2"}, ingredient_id=ingredient.id)
        assert service.vote(proposal.id, "p3", False).status == "rejected"

        with pytest.raises(ConsensusError) as exc:
            service.vote(proposal.id, "p2", True)
        assert exc.value.reason == "proposal_resolved"
        assert service.get_proposal(proposal.id).approvals == {"p1": "approved", "p2": "unset", "p3": "rejected"}
        assert IngredientService(db).get_ingredient(ingredient.id).name == "Routing engine"

    def test_voter_must_be_in_snapshot(self, db, service, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "remove", {}, ingredient_id=ingredient.id)
        ParticipantService(db).add_participant(deal.id, "late-joiner")
        with pytest.raises(ConsensusError) as exc:
            service.vote(proposal.id, "late-joiner", True)
        assert exc.value.reason == "not_a_voter"

    def test_vote_revision_policy(self, service, settings, deal, ingredient):
        proposal = service.create_proposal(deal.id, "p1", "modify", {"name": "Router"}, ingredient_id=ingredient.id)

        service.vote(proposal.id, "p2", True)
        settings.set(allow_vote_revision=False)
        with pytest.raises(AlreadyVotedError):
            service.vote(proposal.id, "p2", False)

        settings.set(allow_vote_revision=True)
        revised = service.vote(proposal.id, "p2", False)
        assert revised.status == "rejected"

    def test_list_proposals_by_status(self, service, deal, ingredient):
        first = service.create_proposal(deal.id, "p1", "modify", {"name": "A"}, ingredient_id=ingredient.id)
        service.create_proposal(deal.id, "p2", "modify", {"name": "B"}, ingredient_id=ingredient.id)
        service.vote(first.id, "p3", False)

        assert len(service.list_proposals(deal.id)) == 2
        assert [p.id for p in service.list_proposals(deal.id, status="rejected")] == [first.id]
