"""Static phase transition table for the specification workflow."""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Optional

from .models import Phase


TRANSITIONS: Dict[Phase, FrozenSet[Phase]] = {
    Phase.INIT: frozenset({Phase.REQUIREMENTS}),
    Phase.REQUIREMENTS: frozenset({Phase.DESIGN}),
    Phase.DESIGN: frozenset({Phase.TASKS}),
    Phase.TASKS: frozenset({Phase.COMPLETE}),
    Phase.COMPLETE: frozenset(),
}

# Entering requirements from init is not gated unless configured.
DEFAULT_APPROVAL_PHASES: FrozenSet[Phase] = frozenset({Phase.DESIGN, Phase.TASKS})


class PhaseGraph:
    """Pure lookup of legal transitions and approval gates.

    Instances are immutable and safe to share between threads.
    """

    __slots__ = ("_approval_phases",)

    def __init__(self, approval_phases: Optional[Iterable[Phase]] = None):
        phases = DEFAULT_APPROVAL_PHASES if approval_phases is None else frozenset(approval_phases)
        for phase in phases:
            if not isinstance(phase, Phase):
                raise TypeError(f"Approval phase must be a Phase, got {phase!r}")
        object.__setattr__(self, "_approval_phases", frozenset(phases))

    def __setattr__(self, name, value):
        raise AttributeError("PhaseGraph is immutable")

    @property
    def approval_phases(self) -> FrozenSet[Phase]:
        return self._approval_phases

    def allowed_next(self, phase: Phase) -> FrozenSet[Phase]:
        """Return the phases directly reachable from ``phase``."""
        return TRANSITIONS[Phase(phase)]

    def requires_approval(self, phase: Phase) -> bool:
        """Return True if entering ``phase`` needs an approved decision."""
        return Phase(phase) in self._approval_phases

    def next_phase(self, phase: Phase) -> Optional[Phase]:
        successors = self.allowed_next(phase)
        if not successors:
            return None
        # Single-successor table
        return next(iter(successors))

    def is_terminal(self, phase: Phase) -> bool:
        return not self.allowed_next(phase)

    def __repr__(self) -> str:
        gated = ", ".join(sorted(p.value for p in self._approval_phases))
        return f"PhaseGraph(approval_phases={{{gated}}})"

