from __future__ import annotations

import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any


class BackendExecutionError(RuntimeError):
    """Raised when a backend process execution fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when backend execution exceeds configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when backend process lifecycle fails."""


@dataclass(slots=True)
class SessionOutput:
    backend: str
    content: str
    session_id: str | None


class AgentBackend(ABC):
    name: str = "backend"

    @abstractmethod
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
    ) -> SessionOutput:
        """Run one worker turn, in a new session or re-entering ``session_id``."""


def render_user_prompt(user_prompt: str, context: dict[str, Any]) -> str:
    public = {key: value for key, value in context.items() if not key.startswith("_")}
    if not public:
        return user_prompt
    return "\n\n".join(
        [user_prompt, "Context JSON:", json.dumps(public, ensure_ascii=False, indent=2)]
    )


def extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _join_text_parts(content)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        msg_content = message.get("content")
        if isinstance(msg_content, str):
            return msg_content
        if isinstance(msg_content, list):
            return _join_text_parts(msg_content)

    item = event.get("item")
    if isinstance(item, dict) and isinstance(item.get("text"), str):
        return item["text"]
    return ""


def _join_text_parts(parts: list[Any]) -> str:
    texts: list[str] = []
    for part in parts:
        if isinstance(part, dict):
            text = part.get("text")
            if isinstance(text, str):
                texts.append(text)
    return "".join(texts)


def appears_partial_json(raw: str) -> bool:
    return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")


async def iter_json_events(lines: AsyncIterator[bytes]) -> AsyncIterator[dict[str, Any] | str]:
    """Yield decoded JSON events, joining events split across lines; raw lines pass through."""
    parse_buffer = ""
    async for raw_line in lines:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if not line:
            continue
        candidate = f"{parse_buffer}{line}" if parse_buffer else line
        try:
            event = json.loads(candidate)
            parse_buffer = ""
        except json.JSONDecodeError:
            if appears_partial_json(candidate):
                parse_buffer = candidate
                continue
            parse_buffer = ""
            yield line
            continue
        if isinstance(event, dict):
            yield event
        else:
            yield candidate
    if parse_buffer:
        yield parse_buffer
