"""
FormulationLifecycle: explicit formulation state machine.

Single source of truth for allowed transitions of `Formulation.status`.
Statuses are stored as lowercase strings (see `dealroom.models.formulation`).

Policy checks that depend on who is acting (admin override of review,
admin-only archival of an active formulation) live in FormulationService;
this table only answers whether a transition exists at all.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Set


@dataclass(frozen=True)
class TransitionResult:
    allowed: bool
    reason: Optional[str] = None

    @property
    def is_no_op(self) -> bool:
        return self.allowed and self.reason == "no_op"


FORMULATION_STATES: Set[str] = {"draft", "pending_review", "active", "archived"}


ALLOWED_TRANSITIONS: Dict[str, Set[str]] = {
    # draft -> active is reachable only through an admin override of review
    "draft": {"pending_review", "active", "archived"},
    "pending_review": {"active", "archived"},
    "active": {"archived"},
    # terminal
    "archived": set(),
}

# Transitions that exist in the table but need an explicit override
OVERRIDE_TRANSITIONS: Set[tuple] = {
    ("draft", "active"),
    ("active", "archived"),
}


def validate_transition(current: str, target: str, override: bool = False) -> TransitionResult:
    current = (current or "").lower()
    target = (target or "").lower()

    if current not in FORMULATION_STATES:
        return TransitionResult(False, f"unknown_current_state:{current}")
    if target not in FORMULATION_STATES:
        return TransitionResult(False, f"unknown_target_state:{target}")
    if target == current:
        return TransitionResult(True, "no_op")
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        return TransitionResult(False, f"disallowed_transition:{current}->{target}")
    if (current, target) in OVERRIDE_TRANSITIONS and not override:
        return TransitionResult(False, f"override_required:{current}->{target}")
    return TransitionResult(True)


def allowed_targets(current: str, override: bool = False) -> List[str]:
    current = (current or "").lower()
    return sorted(
        target for target in ALLOWED_TRANSITIONS.get(current, set())
        if override or (current, target) not in OVERRIDE_TRANSITIONS
    )


def is_terminal(status: str) -> bool:
    return not ALLOWED_TRANSITIONS.get((status or "").lower(), set())
