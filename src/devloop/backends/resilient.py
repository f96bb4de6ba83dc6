from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from devloop.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendTimeoutError,
    SessionOutput,
)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


class ResilientBackend(AgentBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    Only fresh sessions are retried or failed over. A resume goes to the backend that owns
    the session exactly once: replaying a turn into a live conversation could apply the same
    instruction twice, so resume failures surface to the caller instead.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name
        self.fallback_backend = fallback_backend
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _backend_named(self, backend_name: str | None) -> tuple[str, AgentBackend]:
        if backend_name in (None, self.primary_name):
            return self.primary_name, self.primary_backend
        if backend_name == self.fallback_name:
            return self.fallback_name, self.fallback_backend
        raise BackendExecutionError(
            f"Unknown backend for session: {backend_name}",
            backend=backend_name,
            retriable=False,
        )

    async def _call_with_timeout(
        self,
        backend_name: str,
        backend: AgentBackend,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        session_id: str | None,
    ) -> SessionOutput:
        try:
            return await asyncio.wait_for(
                backend.execute(system_prompt, user_prompt, context, session_id=session_id),
                timeout=self.retry_policy.timeout_seconds,
            )
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend_name,
                retriable=True,
            ) from exc

    async def _resume_once(
        self,
        backend_name: str | None,
        *,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        session_id: str,
    ) -> SessionOutput:
        name, backend = self._backend_named(backend_name)
        try:
            output = await self._call_with_timeout(
                name,
                backend,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                context=context,
                session_id=session_id,
            )
        except BackendExecutionError as exc:
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": name,
                    "attempt": 0,
                    "call": "resume",
                    "error": str(exc),
                    "retriable": False,
                }
            )
            raise BackendExecutionError(
                f"Resume of session {session_id} on {name} failed: {exc}",
                backend=name,
                exit_code=exc.exit_code,
                retriable=False,
            ) from exc
        output.backend = name
        return output

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        *,
        session_id: str | None = None,
        backend_name: str | None = None,
    ) -> SessionOutput:
        if session_id:
            return await self._resume_once(
                backend_name,
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                context=context,
                session_id=session_id,
            )

        attempts: list[tuple[str, AgentBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for name, backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "call": "spawn",
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    output = await self._call_with_timeout(
                        name,
                        backend,
                        system_prompt=system_prompt,
                        user_prompt=user_prompt,
                        context=context,
                        session_id=None,
                    )
                except BackendExecutionError as exc:
                    errors.append(f"{name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": name,
                            "attempt": attempt,
                            "call": "spawn",
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                if name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": name,
                            "attempt": attempt,
                            "call": "spawn",
                        }
                    )
                output.backend = name
                return output

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed for spawn. {summary}",
            retriable=False,
        )
