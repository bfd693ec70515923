"""
Tests for optimistic versioning and the retry helper
"""
import pytest
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from dealroom.core.concurrency import aggregate_lock, run_with_retry, tracked_lock_count
from dealroom.core.database import Base, build_engine
from dealroom.core.errors import ConcurrencyError, LockedError, StateError
from dealroom.models.formulation import Formulation
from dealroom.models.ingredient import Ingredient
from dealroom.services import formulation_service, ingredient_service
from dealroom.services.change_proposal_service import ChangeProposalService
from dealroom.services.formulation_service import FormulationService
from dealroom.services.ingredient_service import IngredientService
from dealroom.services.participant_service import ParticipantService


@pytest.fixture
def session_factory(tmp_path):
    """Two sessions need separate connections, so use a file database"""
    engine = build_engine(f"sqlite:///{tmp_path / 'dealroom.db'}")
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def test_retry_recovers_from_one_conflict(db):
    calls = []

    def operation():
        calls.append(1)
        if len(calls) == 1:
            raise StaleDataError("row changed")
        return "done"

    assert run_with_retry(db, operation, "formulation", "f-1", attempts=3) == "done"
    assert len(calls) == 2


def test_retry_gives_up(db):
    def operation():
        raise StaleDataError("row changed")

    with pytest.raises(ConcurrencyError) as exc:
        run_with_retry(db, operation, "change_proposal", "cp-1", attempts=2)
    assert exc.value.details["attempts"] == 2


def test_domain_errors_are_not_retried(db):
    calls = []

    def operation():
        calls.append(1)
        raise StateError("nope", reason="illegal_transition")

    with pytest.raises(StateError):
        run_with_retry(db, operation, "formulation", "f-2", attempts=5)
    assert len(calls) == 1


def test_aggregate_lock_is_reentrant():
    with aggregate_lock("deal", "d-1"):
        with aggregate_lock("deal", "d-1"):
            pass


def test_lock_entries_are_released():
    baseline = tracked_lock_count()
    with pytest.raises(RuntimeError):
        with aggregate_lock("deal", "d-2"):
            with aggregate_lock("deal", "d-2"):
                assert tracked_lock_count() == baseline + 1
                raise RuntimeError("boom")
    assert tracked_lock_count() == baseline

    for n in range(50):
        with aggregate_lock("formulation", f"f-{n}"):
            pass
    assert tracked_lock_count() == baseline


def test_stale_write_is_detected(session_factory):
    setup = session_factory()
    deal = ParticipantService(setup).create_deal("Race", admin_id="p1")
    formulation = Formulation(deal_id=deal.id, name="Terms", version=1, status="draft")
    setup.add(formulation)
    setup.commit()
    formulation_id = formulation.id
    setup.close()

    first, second = session_factory(), session_factory()
    stale = first.get(Formulation, formulation_id)
    fresh = second.get(Formulation, formulation_id)

    fresh.description = "edited elsewhere"
    second.commit()

    stale.description = "edited here"
    with pytest.raises(StaleDataError):
        first.commit()
    first.rollback()
    first.close()
    second.close()


def test_votes_from_two_sessions_are_both_counted(session_factory):
    setup = session_factory()
    participants = ParticipantService(setup)
    deal = participants.create_deal("Race", admin_id="p1")
    participants.add_participant(deal.id, "p2")
    participants.add_participant(deal.id, "p3")
    ingredient = IngredientService(setup).register_ingredient(deal.id, "Dataset")
    proposal = ChangeProposalService(setup).create_proposal(
        deal.id, "p1", "modify", {"name": "Dataset v2"}, ingredient_id=ingredient.id
    )
    proposal_id = proposal.id
    setup.close()

    first, second = session_factory(), session_factory()
    first_service = ChangeProposalService(first)
    # Loaded before the other session votes
    first_service.get_proposal(proposal_id)

    ChangeProposalService(second).vote(proposal_id, "p2", True)
    resolved = first_service.vote(proposal_id, "p3", True)

    assert resolved.status == "approved"
    assert resolved.approvals == {"p1": "approved", "p2": "approved", "p3": "approved"}
    first.close()
    second.close()


def _draft_with_line(session_factory):
    setup = session_factory()
    deal = ParticipantService(setup).create_deal("Race", admin_id="p1")
    ingredient = IngredientService(setup).register_ingredient(deal.id, "Dataset")
    service = FormulationService(setup)
    formulation = service.create(deal.id, "Terms", created_by="p1")
    service.add_ingredient(formulation.id, ingredient_id=ingredient.id, ownership_percent="100")
    ids = (ingredient.id, formulation.id)
    setup.close()
    return ids


def test_activation_during_composition_write_rejects_the_write(session_factory, monkeypatch):
    _, formulation_id = _draft_with_line(session_factory)
    writer, activator = session_factory(), session_factory()
    validate = formulation_service._validate_terms
    activated = []

    def activate_before_validating(*args, **kwargs):
        # The other session commits after the writer passed its editable check
        if not activated:
            activated.append(FormulationService(activator).activate(formulation_id, "p1", admin_override=True))
        return validate(*args, **kwargs)

    monkeypatch.setattr(formulation_service, "_validate_terms", activate_before_validating)
    with pytest.raises(LockedError):
        FormulationService(writer).add_ingredient(formulation_id, contributor_id="p2", ownership_percent="10")

    check = session_factory()
    formulation = check.get(Formulation, formulation_id)
    assert formulation.status == "active"
    assert len(formulation.ingredients) == 1
    assert len(formulation.composition_snapshot["lines"]) == 1
    for session in (writer, activator, check):
        session.close()


def test_activation_during_direct_ingredient_edit_rejects_the_edit(session_factory, monkeypatch):
    ingredient_id, formulation_id = _draft_with_line(session_factory)
    writer, activator = session_factory(), session_factory()
    validate = ingredient_service.validate_ingredient_fields
    activated = []

    def activate_before_validating(changes):
        if not activated:
            activated.append(FormulationService(activator).activate(formulation_id, "p1", admin_override=True))
        return validate(changes)

    monkeypatch.setattr(ingredient_service, "validate_ingredient_fields", activate_before_validating)
    with pytest.raises(LockedError):
        IngredientService(writer).update_ingredient(ingredient_id, {"name": "Renamed"})

    check = session_factory()
    assert check.get(Ingredient, ingredient_id).name == "Dataset"
    assert check.get(Formulation, formulation_id).status == "active"
    for session in (writer, activator, check):
        session.close()
