import asyncio
from pathlib import Path
from typing import Any

import pytest

from devloop.backends import RetryPolicy
from devloop.backends.base import AgentBackend, BackendExecutionError, SessionOutput
from devloop.backends.claude import ClaudeCodeBackend
from devloop.backends.codex import CodexBackend
from devloop.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self) -> None:
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
    ) -> SessionOutput:
        _ = system_prompt, user_prompt, context, session_id
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=True)


class SuccessBackend(AgentBackend):
    def __init__(self) -> None:
        self.sessions: list[str | None] = []

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
    ) -> SessionOutput:
        _ = system_prompt, user_prompt, context
        self.sessions.append(session_id)
        return SessionOutput(backend="fake", content="ok", session_id=session_id or "sess-new")


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr(stderr)
        self._return_code = return_code

    async def wait(self) -> int:
        return self._return_code

    def kill(self) -> None:
        pass


def _patch_subprocess(
    monkeypatch: pytest.MonkeyPatch, process: FakeProcess, captured: dict[str, Any]
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = list(args)
        captured["kwargs"] = kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)


def _resilient(
    primary: AgentBackend, fallback: AgentBackend, events: list[dict[str, Any]]
) -> ResilientBackend:
    return ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"run_id": "run-1", "model": "gpt-5-codex"},
    )

    assert command[0:3] == ["codex", "exec", "--json"]
    assert "-m" in command
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "resume" not in command
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]


def test_codex_resume_command_targets_session() -> None:
    backend = CodexBackend(binary="codex")
    command = backend.build_command("system", "fix it", {}, session_id="thread-42")

    index = command.index("resume")
    assert command[index + 1] == "thread-42"
    assert command[-1] == "fix it"
    assert not any(part.startswith("instructions=") for part in command)


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", {})

    assert command[0:2] == ["claude", "-p"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert "--append-system-prompt" in command
    assert "--resume" not in command


def test_claude_resume_command_targets_session() -> None:
    backend = ClaudeCodeBackend(binary="claude")
    command = backend.build_command("system", "fix it", {"model": "opus"}, session_id="abc")

    assert command[command.index("--resume") + 1] == "abc"
    assert command[command.index("--model") + 1] == "opus"
    assert "--append-system-prompt" not in command


def test_claude_backend_reads_result_and_session(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}
    process = FakeProcess(
        [
            b'{"type":"system","subtype":"init","session_id":"sess-9"}\n',
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"working"}]}}\n',
            b'{"type":"result","result":"final answer","session_id":"sess-9"}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process, captured)

    output = asyncio.run(ClaudeCodeBackend().execute("system", "user", {}))

    assert output.content == "final answer"
    assert output.session_id == "sess-9"
    assert captured["args"][0] == "claude"


def test_claude_backend_nonzero_exit_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess([], return_code=1, stderr=b"session not found")
    _patch_subprocess(monkeypatch, process, {})

    with pytest.raises(BackendExecutionError, match="session not found") as exc_info:
        asyncio.run(ClaudeCodeBackend().execute("system", "user", {}, session_id="gone"))

    assert exc_info.value.exit_code == 1


def test_codex_backend_emits_stream_telemetry(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[dict[str, Any]] = []
    process = FakeProcess(
        [
            b'{"type":"thread.started","thread_id":"thread-7"}\n',
            b'{"type":"item.completed","item":{"type":"reasoning","text":"thinking"}}\n',
            b"noise-before-json\n",
            b'{"type":"item.completed","item":{"type":"agent_message","text":"hello"}}\n',
            b'{"type":"turn.completed"}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process, {})

    backend = CodexBackend(event_hook=events.append)
    output = asyncio.run(backend.execute("system", "user", {}))

    assert output.content == "hello"
    assert output.session_id == "thread-7"
    event_names = [event.get("event") for event in events]
    assert "codex_cli_start" in event_names
    assert "codex_json_parse_fallback" in event_names
    assert "codex_cli_exit" in event_names


def test_codex_backend_joins_split_json_events(monkeypatch: pytest.MonkeyPatch) -> None:
    process = FakeProcess(
        [
            b'{"type":"item.completed","item":{"type":"agent_message",\n',
            b'"text":"joined"}}\n',
        ]
    )
    _patch_subprocess(monkeypatch, process, {})

    output = asyncio.run(CodexBackend().execute("system", "user", {}, session_id="thread-1"))

    assert output.content == "joined"
    assert output.session_id == "thread-1"


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = _resilient(primary, SuccessBackend(), events)

    output = asyncio.run(backend.execute("system", "user", context={}))

    assert output.content == "ok"
    assert output.backend == "fallback"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_resume_is_not_retried() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    fallback = SuccessBackend()
    backend = _resilient(primary, fallback, events)

    with pytest.raises(BackendExecutionError) as exc_info:
        asyncio.run(
            backend.execute(
                "system", "user", context={}, session_id="sess-1", backend_name="primary"
            )
        )

    assert primary.calls == 1
    assert fallback.sessions == []
    assert exc_info.value.retriable is False
    assert [event["call"] for event in events] == ["resume"]


def test_resilient_backend_resumes_on_owning_backend() -> None:
    fallback = SuccessBackend()
    backend = _resilient(AlwaysFailBackend(), fallback, [])

    output = asyncio.run(
        backend.execute("system", "user", context={}, session_id="sess-2", backend_name="fallback")
    )

    assert output.session_id == "sess-2"
    assert fallback.sessions == ["sess-2"]


def test_resilient_backend_reports_all_failures() -> None:
    events: list[dict[str, Any]] = []
    backend = _resilient(AlwaysFailBackend(), AlwaysFailBackend(), events)

    with pytest.raises(BackendExecutionError, match="All backend attempts failed for spawn"):
        asyncio.run(backend.execute("system", "user", context={}))

    failures = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert len(failures) == 4
