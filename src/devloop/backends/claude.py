from __future__ import annotations

import asyncio
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


class ClaudeCodeBackend(AgentBackend):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
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
        command = [
            self.binary,
            "-p",
            render_user_prompt(user_prompt, context),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if session_id:
            command.extend(["--resume", session_id])
        else:
            command.extend(["--append-system-prompt", system_prompt])
        requested_model = context.get("model")
        if isinstance(requested_model, str) and requested_model.strip():
            command.extend(["--model", requested_model.strip()])
        return command

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
    ) -> SessionOutput:
        command = self.build_command(system_prompt, user_prompt, context, session_id)
        self._emit({"event": "claude_cli_start", "resume": bool(session_id)})
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Claude binary not found: {self.binary}",
                backend=self.name,
                retriable=False,
            ) from exc

        if process.stdout is None:
            raise BackendProcessError(
                "Claude backend did not expose stdout.", backend=self.name, retriable=False
            )

        chunks: list[str] = []
        final_result: str | None = None
        observed_session: str | None = None
        try:
            async for event in iter_json_events(process.stdout):
                if isinstance(event, str):
                    chunks.append(event)
                    continue
                if isinstance(event.get("session_id"), str):
                    observed_session = event["session_id"]
                if event.get("type") == "result" and isinstance(event.get("result"), str):
                    final_result = event["result"]
                    continue
                content = extract_content(event)
                if content:
                    chunks.append(content)
        except asyncio.CancelledError:
            process.kill()
            raise

        return_code = await process.wait()
        stderr_output = ""
        if process.stderr is not None:
            stderr_output = (await process.stderr.read()).decode("utf-8", errors="replace").strip()
        self._emit({"event": "claude_cli_exit", "exit_code": return_code})
        if return_code != 0:
            raise BackendExecutionError(
                f"Claude backend failed with exit code {return_code}: {stderr_output[:400]}",
                backend=self.name,
                exit_code=return_code,
                retriable=True,
            )
        content = final_result if final_result is not None else "\n".join(chunks)
        return SessionOutput(
            backend=self.name,
            content=content.strip(),
            session_id=observed_session or session_id,
        )
