"""Per-phase time and round budgets.

A single ``Budget`` value replaces the escalation thresholds that were scattered across
protocol documents. It is built from ``[budget]`` in ``devloop.toml`` and injected into the
state machine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from devloop.config import BudgetConfig
from devloop.models import Phase, Run


@dataclass(slots=True, frozen=True)
class PhaseBudget:
    timeout_seconds: float | None = None
    max_rounds: int | None = None


@dataclass(slots=True)
class Budget:
    phases: dict[Phase, PhaseBudget] = field(default_factory=dict)
    run_timeout_seconds: float | None = None

    @classmethod
    def from_config(cls, config: BudgetConfig) -> Budget:
        return cls(
            phases={
                Phase.PLANNING: PhaseBudget(
                    timeout_seconds=config.planning_timeout_seconds,
                    max_rounds=config.planning_max_rounds,
                ),
                Phase.IMPLEMENTATION: PhaseBudget(
                    timeout_seconds=config.implementation_timeout_seconds,
                    max_rounds=config.implementation_max_attempts,
                ),
                Phase.VALIDATION: PhaseBudget(
                    timeout_seconds=config.validation_timeout_seconds,
                    max_rounds=config.validation_max_rounds,
                ),
                Phase.CODE_REVIEW: PhaseBudget(timeout_seconds=config.code_review_timeout_seconds),
                Phase.REFLECTION: PhaseBudget(timeout_seconds=config.reflection_timeout_seconds),
            },
            run_timeout_seconds=config.run_timeout_seconds,
        )

    def for_phase(self, phase: Phase) -> PhaseBudget:
        return self.phases.get(phase, PhaseBudget())

    def max_rounds(self, phase: Phase) -> int | None:
        return self.for_phase(phase).max_rounds

    def run_elapsed_seconds(self, run: Run, *, now: datetime) -> float:
        return (now - datetime.fromisoformat(run.run_started_at)).total_seconds()

    def run_exhausted(self, run: Run, *, now: datetime) -> str | None:
        if self.run_timeout_seconds is None or self.run_timeout_seconds <= 0:
            return None
        elapsed = self.run_elapsed_seconds(run, now=now)
        if elapsed >= self.run_timeout_seconds:
            return (
                f"Run wall-clock budget exhausted: {elapsed:.0f}s elapsed "
                f"(limit {self.run_timeout_seconds:.0f}s)."
            )
        return None

    def phase_timeout(self, run: Run, phase: Phase, *, now: datetime) -> float | None:
        """Seconds the next phase step may take, bounded by both phase and run budgets."""
        candidates: list[float] = []
        phase_limit = self.for_phase(phase).timeout_seconds
        if phase_limit is not None and phase_limit > 0:
            candidates.append(phase_limit)
        if self.run_timeout_seconds is not None and self.run_timeout_seconds > 0:
            remaining = self.run_timeout_seconds - self.run_elapsed_seconds(run, now=now)
            candidates.append(max(0.0, remaining))
        if not candidates:
            return None
        return min(candidates)
