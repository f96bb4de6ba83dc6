from __future__ import annotations

from devloop.models import Phase

ACTIVE_PHASES = (
    Phase.PRE_WORK,
    Phase.PLANNING,
    Phase.IMPLEMENTATION,
    Phase.VALIDATION,
    Phase.CODE_REVIEW,
    Phase.REFLECTION,
)

# Every active phase may also escalate to BLOCKED when its budget runs out.
TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.PRE_WORK: frozenset({Phase.PLANNING, Phase.BLOCKED}),
    Phase.PLANNING: frozenset({Phase.IMPLEMENTATION, Phase.BLOCKED}),
    Phase.IMPLEMENTATION: frozenset({Phase.VALIDATION, Phase.BLOCKED}),
    Phase.VALIDATION: frozenset({Phase.CODE_REVIEW, Phase.IMPLEMENTATION, Phase.BLOCKED}),
    Phase.CODE_REVIEW: frozenset({Phase.REFLECTION, Phase.IMPLEMENTATION, Phase.BLOCKED}),
    Phase.REFLECTION: frozenset({Phase.COMPLETE, Phase.BLOCKED}),
    Phase.COMPLETE: frozenset(),
    Phase.BLOCKED: frozenset(),
}


class TransitionError(RuntimeError):
    """Raised when a phase change does not follow a permitted edge."""


def can_transition(current: Phase, target: Phase) -> bool:
    return target in TRANSITIONS[current]


def assert_transition(current: Phase, target: Phase) -> None:
    if not can_transition(current, target):
        raise TransitionError(f"Illegal phase transition: {current.value} -> {target.value}")
