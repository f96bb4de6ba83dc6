from __future__ import annotations

from devloop.backends.resilient import ResilientBackend
from devloop.specialists.base import SpecialistAgent


class ReviewerAgent(SpecialistAgent):
    """A reviewer whose role name comes from configuration."""

    prompt_file = "reviewer.md"
    fallback_prompt = """
You are the {role} specialist.
Review changes against your checklist and report findings as BLOCKER, CRITICAL, MAJOR,
MINOR, TECH_DEBT, or SUGGESTION with an explicit verdict.
""".strip()

    def __init__(
        self,
        backend: ResilientBackend,
        *,
        role: str,
        model: str | None = None,
    ) -> None:
        self.role = role
        super().__init__(backend, model=model)
