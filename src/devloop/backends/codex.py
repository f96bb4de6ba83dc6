from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from pathlib import Path
from typing import Any

from devloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    SessionOutput,
    extract_content,
    iter_json_events,
    render_user_prompt,
)

SESSION_KEYS = ("thread_id", "session_id", "conversation_id")


class CodexBackend(AgentBackend):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        working_directory: Path | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.binary = binary
        self.working_directory = working_directory
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        session_id: str | None = None,
    ) -> list[str]:
        rendered_prompt = render_user_prompt(user_prompt, context)
        requested_model = context.get("model")
        command = [self.binary, "exec", "--json"]
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["-m", requested_model.strip()])
        if session_id:
            command.extend(["resume", session_id, rendered_prompt])
            return command
        command.extend(
            ["-c", f"instructions={json.dumps(system_prompt, ensure_ascii=False)}", rendered_prompt]
        )
        return command

    @staticmethod
    def _session_from_event(event: dict[str, Any]) -> str | None:
        for key in SESSION_KEYS:
            value = event.get(key)
            if isinstance(value, str) and value:
                return value
        return None

    @staticmethod
    def _event_text(event: dict[str, Any]) -> str:
        item = event.get("item")
        if isinstance(item, dict):
            if item.get("type") not in {"agent_message", "assistant_message"}:
                return ""
            text = item.get("text")
            return text if isinstance(text, str) else ""
        return extract_content(event)

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
    ) -> SessionOutput:
        command = self.build_command(system_prompt, user_prompt, context, session_id)
        self._emit(
            {
                "event": "codex_cli_start",
                "command": command[:3],
                "resume": bool(session_id),
                "model": context.get("model"),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Codex binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Codex backend did not expose stdout.", backend=self.name, retriable=False
            )

        chunks: list[str] = []
        observed_session: str | None = None
        try:
            async for event in iter_json_events(process.stdout):
                if isinstance(event, str):
                    self._emit({"event": "codex_json_parse_fallback", "line": event[:200]})
                    continue
                observed_session = self._session_from_event(event) or observed_session
                content = self._event_text(event)
                if content:
                    chunks.append(content)
        except asyncio.CancelledError:
            process.kill()
            raise

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "codex_cli_exit", "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"Codex backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        return SessionOutput(
            backend=self.name,
            content="\n".join(chunks).strip(),
            session_id=observed_session or session_id,
        )
