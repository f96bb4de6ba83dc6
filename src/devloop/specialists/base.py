from __future__ import annotations

from dataclasses import dataclass, field
from importlib import resources
from typing import Any

from devloop.backends.resilient import ResilientBackend


@dataclass(slots=True)
class SpecialistResponse:
    role: str
    content: str
    session_id: str | None
    backend: str
    metadata: dict[str, Any] = field(default_factory=dict)


class SpecialistAgent:
    role: str = "specialist"
    prompt_file: str | None = None
    fallback_prompt: str = "You are a software specialist."

    def __init__(self, backend: ResilientBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model
        self.system_prompt = self._load_system_prompt()

    def _load_system_prompt(self) -> str:
        if not self.prompt_file:
            return self.fallback_prompt.strip()
        try:
            prompt_path = resources.files("devloop.prompts").joinpath(self.prompt_file)
            template = prompt_path.read_text(encoding="utf-8").strip()
        except (FileNotFoundError, ModuleNotFoundError):
            template = self.fallback_prompt.strip()
        return template.replace("{role}", self.role)

    async def run(
        self,
        instruction: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
        backend_name: str | None = None,
    ) -> SpecialistResponse:
        run_context = dict(context)
        if self.model:
            run_context["model"] = self.model
        output = await self.backend.execute(
            system_prompt=self.system_prompt,
            user_prompt=instruction,
            context=run_context,
            session_id=session_id,
            backend_name=backend_name,
        )
        return SpecialistResponse(
            role=self.role,
            content=output.content,
            session_id=output.session_id,
            backend=output.backend,
            metadata={"instruction": instruction, "resumed": bool(session_id)},
        )
