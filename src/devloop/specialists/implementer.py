from __future__ import annotations

from devloop.specialists.base import SpecialistAgent


class ImplementerAgent(SpecialistAgent):
    role = "implementer"
    prompt_file = "implementer.md"
    fallback_prompt = """
You are the Implementer specialist.
Propose a plan, then implement it with tests, and fix whatever verification or review reports.
Keep your checkpoint file current and finish every turn with a result block.
""".strip()
