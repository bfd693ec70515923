"""
Tests for the ingredient registry
"""
from decimal import Decimal
from uuid import uuid4

import pytest

from dealroom.core.errors import LockedError, NotFoundError, StateError, ValidationError
from dealroom.services.ingredient_service import IngredientService, validate_ingredient_fields


@pytest.fixture
def service(db):
    return IngredientService(db)


def test_register_defaults(service, deal):
    ingredient = service.register_ingredient(deal.id, "Customer list", ingredient_type="customer_relationships")
    assert ingredient.ownership_status == "sole"
    assert ingredient.contribution_weight == Decimal("1")
    assert ingredient.is_retired is False
    assert not service.is_locked(ingredient.id)


def test_register_unknown_deal(service):
    with pytest.raises(NotFoundError):
        service.register_ingredient(uuid4(), "Orphan")


@pytest.mark.parametrize("changes,reason", [
    ({"name": "  "}, "empty_name"),
    ({"ingredient_type": "vibes"}, "invalid_ingredient_type"),
    ({"ownership_status": "borrowed"}, "invalid_ownership_status"),
    ({"contribution_weight": "0"}, "non_positive"),
    ({"deal_id": "x"}, "immutable_field"),
])
def test_field_validation(changes, reason):
    with pytest.raises(ValidationError) as exc:
        validate_ingredient_fields(changes)
    assert exc.value.reason == reason


def test_update_unlocked_ingredient(service, ingredient):
    updated = service.update_ingredient(ingredient.id, {"name": "Routing engine v2", "credit_multiplier": "1.5"})
    assert updated.name == "Routing engine v2"
    assert updated.credit_multiplier == Decimal("1.5")
    assert updated.updated_at is not None


def test_active_formulation_locks_ingredient(service, ingredient, active_formulation):
    assert service.is_locked(ingredient.id)
    assert [f.id for f in service.active_references(ingredient.id)] == [active_formulation.id]

    with pytest.raises(LockedError):
        service.update_ingredient(ingredient.id, {"name": "Sneaky rename"})
    with pytest.raises(LockedError):
        service.retire_ingredient(ingredient.id)
    assert service.get_ingredient(ingredient.id).name == "Routing engine"


def test_retire_is_idempotent(service, ingredient):
    retired = service.retire_ingredient(ingredient.id)
    retired_at = retired.retired_at
    assert retired.is_retired

    again = service.retire_ingredient(ingredient.id)
    assert again.retired_at == retired_at
    assert service.list_ingredients(ingredient.deal_id) == []
    assert len(service.list_ingredients(ingredient.deal_id, include_retired=True)) == 1


def test_retired_ingredient_cannot_be_edited(service, ingredient):
    service.retire_ingredient(ingredient.id)
    with pytest.raises(StateError) as exc:
        service.update_ingredient(ingredient.id, {"name": "Back from the dead"})
    assert exc.value.reason == "ingredient_retired"
