"""
ExecutionLifecycle: settlement execution state machine.

Executions only end by reaching a terminal state through these transitions;
there is no external abort.
"""

from __future__ import annotations

from typing import Dict, List, Set

from dealroom.lifecycle.formulation import TransitionResult

EXECUTION_STATES: Set[str] = {"pending", "processing", "completed", "failed"}


ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    "pending": {"processing", "failed"},
    "processing": {"completed", "failed"},
    # terminal
    "completed": set(),
    "failed": set(),
}


def validate_transition(current: str, target: str) -> TransitionResult:
    current = (current or "").lower()
    target = (target or "").lower()

    if current not in EXECUTION_STATES:
        return TransitionResult(False, f"unknown_current_state:{current}")
    if target not in EXECUTION_STATES:
        return TransitionResult(False, f"unknown_target_state:{target}")
    if target == current:
        return TransitionResult(True, "no_op")
    if target in ALLOWED_TRANSITIONS.get(current, set()):
        return TransitionResult(True)
    return TransitionResult(False, f"disallowed_transition:{current}->{target}")


def allowed_targets(current: str) -> List[str]:
    current = (current or "").lower()
    return sorted(ALLOWED_TRANSITIONS.get(current, set()))
