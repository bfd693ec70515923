"""
Tests for deal and participant roster management
"""
import pytest

from dealroom.core.errors import NotFoundError, ValidationError
from dealroom.services.participant_service import ParticipantService


@pytest.fixture
def service(db):
    return ParticipantService(db)


def test_create_deal_seeds_admin(service):
    deal = service.create_deal("  Joint venture ", currency="eur", admin_id="p1")
    assert deal.name == "Joint venture"
    assert deal.currency == "EUR"
    assert service.is_admin(deal.id, "p1")
    assert service.list_participant_ids(deal.id) == ["p1"]


@pytest.mark.parametrize("name,currency,reason", [
    ("", "USD", "empty_name"),
    ("Deal", "dollars", "invalid_currency"),
])
def test_create_deal_validation(service, name, currency, reason):
    with pytest.raises(ValidationError) as exc:
        service.create_deal(name, currency=currency)
    assert exc.value.reason == reason


def test_roles_and_membership(service, deal):
    assert service.is_member(deal.id, "p2")
    assert not service.is_admin(deal.id, "p2")
    assert not service.is_member(deal.id, None)

    with pytest.raises(ValidationError) as exc:
        service.add_participant(deal.id, "p4", role="owner")
    assert exc.value.reason == "invalid_role"

    with pytest.raises(ValidationError) as exc:
        service.require_member(deal.id, "p9")
    assert exc.value.reason == "not_a_participant"


def test_remove_is_soft_and_rejoin_reactivates(service, deal):
    removed = service.remove_participant(deal.id, "p3")
    assert removed.is_active is False
    assert removed.left_at is not None
    assert sorted(service.list_participant_ids(deal.id)) == ["p1", "p2"]
    assert len(service.list_participants(deal.id, include_inactive=True)) == 3

    with pytest.raises(NotFoundError):
        service.remove_participant(deal.id, "p3")

    rejoined = service.add_participant(deal.id, "p3", role="admin")
    assert rejoined.is_active is True
    assert rejoined.left_at is None
    assert service.is_admin(deal.id, "p3")
