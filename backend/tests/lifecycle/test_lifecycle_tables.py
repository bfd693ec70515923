from dealroom.lifecycle import formulation as formulation_lifecycle
from dealroom.lifecycle import settlement as execution_lifecycle


def test_formulation_validate_transition():
    from dealroom.lifecycle.formulation import allowed_targets, validate_transition

    assert validate_transition("draft", "pending_review").allowed
    assert validate_transition("pending_review", "active").allowed
    assert not validate_transition("archived", "draft").allowed
    assert "pending_review" in allowed_targets("draft")


def test_formulation_override_transitions():
    result = formulation_lifecycle.validate_transition("draft", "active")
    assert not result.allowed
    assert result.reason == "override_required:draft->active"

    assert formulation_lifecycle.validate_transition("draft", "active", override=True).allowed
    assert not formulation_lifecycle.validate_transition("active", "archived").allowed
    assert formulation_lifecycle.validate_transition("active", "archived", override=True).allowed


def test_formulation_no_op_and_unknown_states():
    same = formulation_lifecycle.validate_transition("active", "active")
    assert same.allowed and same.is_no_op

    assert formulation_lifecycle.validate_transition("bogus", "active").reason == "unknown_current_state:bogus"
    assert formulation_lifecycle.validate_transition("draft", "bogus").reason == "unknown_target_state:bogus"
    assert not formulation_lifecycle.validate_transition("active", "draft").allowed


def test_formulation_allowed_targets_respect_override():
    assert formulation_lifecycle.allowed_targets("draft") == ["archived", "pending_review"]
    assert formulation_lifecycle.allowed_targets("draft", override=True) == ["active", "archived", "pending_review"]
    assert formulation_lifecycle.allowed_targets("active") == []
    assert formulation_lifecycle.is_terminal("archived")
    assert not formulation_lifecycle.is_terminal("draft")


def test_execution_transitions():
    assert execution_lifecycle.validate_transition("pending", "processing").allowed
    assert execution_lifecycle.validate_transition("processing", "completed").allowed
    assert execution_lifecycle.validate_transition("pending", "failed").allowed
    assert not execution_lifecycle.validate_transition("pending", "completed").allowed
    assert not execution_lifecycle.validate_transition("completed", "failed").allowed
    assert not execution_lifecycle.validate_transition("failed", "processing").allowed
    assert execution_lifecycle.allowed_targets("completed") == []
