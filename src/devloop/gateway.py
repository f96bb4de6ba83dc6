from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

from devloop.backends.base import BackendExecutionError
from devloop.errors import GatewayError
from devloop.instructions import checkpoint_instruction, protocol_footer, recovery_instruction
from devloop.models import ParticipantHandle, Run, WorkerResult, utcnow_iso
from devloop.signals import parse_completion
from devloop.specialists.base import SpecialistAgent, SpecialistResponse
from devloop.state.run_store import RunStore

logger = logging.getLogger(__name__)

MAX_PERSISTED_EVENTS = 200

GatewayEventHook = Callable[[dict[str, Any]], None]

_serving_run: ContextVar[str | None] = ContextVar("devloop_serving_run", default=None)

T = TypeVar("T")


async def fan_out(calls: Iterable[Awaitable[T]]) -> list[T]:
    """Await ``calls`` concurrently. The first failure cancels the others and waits for them
    to unwind before it propagates, so no session outlives the phase that started it."""
    tasks = [asyncio.ensure_future(call) for call in calls]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass(slots=True)
class Invocation:
    handle: ParticipantHandle
    result: WorkerResult
    checkpoint_written: bool = True
    recovered: bool = False


class WorkerGateway:
    """Spawns and resumes worker sessions on behalf of runs.

    Resumes within one run pass through a per-run FIFO lock, so at most one resume is in
    flight per run no matter how many callers ask at once. A handle that is already being
    invoked cannot be invoked again until it returns.
    """

    def __init__(
        self,
        store: RunStore,
        specialists: Mapping[str, SpecialistAgent],
        checkpoint_root: Path,
        event_hook: GatewayEventHook | None = None,
    ) -> None:
        self.store = store
        self.specialists = dict(specialists)
        self.checkpoint_root = checkpoint_root
        self.event_hook = event_hook
        self._resume_locks: dict[str, asyncio.Lock] = {}
        self._in_flight: set[tuple[str, str]] = set()
        self._pending_events: dict[str, list[dict[str, Any]]] = {}

    def capture_event(self, event: dict[str, Any]) -> None:
        """Backend event hook: attributes the event to the run currently being served."""
        run_id = _serving_run.get()
        if run_id is None:
            logger.debug("Backend event outside any run: %s", event)
            return
        self._emit(run_id, event)

    def _emit(self, run_id: str, event: dict[str, Any]) -> None:
        payload = {"at": utcnow_iso(), **event}
        self._pending_events.setdefault(run_id, []).append(payload)
        logger.debug("Run %s event: %s", run_id, payload)
        if self.event_hook is not None:
            self.event_hook({"run_id": run_id, **payload})

    def checkpoint_path(self, run_id: str, role: str) -> Path:
        return self.checkpoint_root / run_id / f"{role}.md"

    def _resume_lock(self, run_id: str) -> asyncio.Lock:
        lock = self._resume_locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._resume_locks[run_id] = lock
        return lock

    @contextmanager
    def _claim(self, run_id: str, role: str) -> Iterator[None]:
        key = (run_id, role)
        if key in self._in_flight:
            raise GatewayError(
                f"Session for {role} in {run_id} is already in flight.", role=role
            )
        self._in_flight.add(key)
        try:
            yield
        finally:
            self._in_flight.discard(key)

    def _specialist(self, role: str) -> SpecialistAgent:
        specialist = self.specialists.get(role)
        if specialist is None:
            raise GatewayError(f"No specialist registered for role '{role}'.", role=role)
        return specialist

    @staticmethod
    def _read_checkpoint(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _stamp(self, path: Path) -> tuple[int, str] | None:
        content = self._read_checkpoint(path)
        if content is None:
            return None
        return path.stat().st_mtime_ns, content

    def _load_handle(self, run_id: str, role: str) -> tuple[Run, ParticipantHandle]:
        run = self.store.get(run_id)
        handle = run.participants.get(role) or ParticipantHandle(
            role=role, checkpoint_path=str(self.checkpoint_path(run_id, role))
        )
        return run, handle

    def _persist(self, run_id: str, handle: ParticipantHandle | None) -> None:
        events = self._pending_events.pop(run_id, [])
        if handle is None and not events:
            return

        def _mutate(run: Run) -> None:
            if handle is not None:
                run.participants[handle.role] = handle
            if events:
                run.events.extend(events)
                del run.events[:-MAX_PERSISTED_EVENTS]

        self.store.update(run_id, _mutate)

    async def _invoke(
        self,
        run_id: str,
        role: str,
        instructions: str,
        *,
        session_id: str | None,
        backend_name: str | None,
    ) -> tuple[SpecialistResponse, WorkerResult, bool]:
        specialist = self._specialist(role)
        path = self.checkpoint_path(run_id, role)
        path.parent.mkdir(parents=True, exist_ok=True)
        before = self._stamp(path)
        token = _serving_run.set(run_id)
        try:
            response = await specialist.run(
                f"{instructions}\n\n{protocol_footer(str(path))}",
                {"run_id": run_id, "role": role, "checkpoint_path": str(path)},
                session_id=session_id,
                backend_name=backend_name,
            )
        finally:
            _serving_run.reset(token)
        after = self._stamp(path)
        return response, parse_completion(response.content), after is not None and after != before

    def _record(
        self,
        run_id: str,
        handle: ParticipantHandle,
        response: SpecialistResponse,
        result: WorkerResult,
        checkpoint_written: bool,
    ) -> Invocation:
        path = self.checkpoint_path(run_id, handle.role)
        handle.session_id = response.session_id
        handle.backend = response.backend
        handle.checkpoint_path = str(path)
        handle.checkpoint = self._read_checkpoint(path) or handle.checkpoint
        handle.invocations += 1
        handle.last_status = result.status
        handle.last_summary = result.summary
        self._persist(run_id, handle)
        logger.info(
            "Run %s: %s returned %s (session %s)",
            run_id,
            handle.role,
            result.status,
            handle.session_id,
        )
        return Invocation(handle=handle, result=result, checkpoint_written=checkpoint_written)

    async def _spawn_session(self, run_id: str, role: str, instructions: str) -> Invocation:
        _, handle = self._load_handle(run_id, role)
        try:
            response, result, written = await self._invoke(
                run_id, role, instructions, session_id=None, backend_name=None
            )
        except BackendExecutionError as exc:
            self._emit(run_id, {"event": "spawn_failed", "role": role, "error": str(exc)})
            self._persist(run_id, None)
            raise GatewayError(f"Could not start a session for {role}: {exc}", role=role) from exc
        return self._record(run_id, handle, response, result, written)

    async def _recover(
        self, run_id: str, role: str, instructions: str, reason: str
    ) -> Invocation:
        # Seeded from the last committed run, never from in-memory state.
        run, handle = self._load_handle(run_id, role)
        checkpoint = self._read_checkpoint(self.checkpoint_path(run_id, role)) or handle.checkpoint
        self._emit(
            run_id,
            {
                "event": "resume_fallback",
                "role": role,
                "session_id": handle.session_id,
                "reason": reason,
            },
        )
        logger.warning("Run %s: resume of %s failed (%s); spawning fresh", run_id, role, reason)
        seed = recovery_instruction(
            role,
            run.task_description,
            checkpoint,
            run.open_findings,
            instructions,
        )
        invocation = await self._spawn_session(run_id, role, seed)
        invocation.recovered = True
        return invocation

    async def _resume_session(self, run_id: str, role: str, instructions: str) -> Invocation:
        _, handle = self._load_handle(run_id, role)
        if not handle.session_id:
            return await self._recover(run_id, role, instructions, "no session to resume")
        try:
            response, result, written = await self._invoke(
                run_id,
                role,
                instructions,
                session_id=handle.session_id,
                backend_name=handle.backend,
            )
        except BackendExecutionError as exc:
            return await self._recover(run_id, role, instructions, str(exc))
        if response.session_id is None:
            response.session_id = handle.session_id
        return self._record(run_id, handle, response, result, written)

    async def _ensure_checkpoint(
        self, run_id: str, role: str, invocation: Invocation
    ) -> Invocation:
        if not invocation.result.succeeded or invocation.checkpoint_written:
            return invocation
        path = self.checkpoint_path(run_id, role)
        self._emit(run_id, {"event": "checkpoint_missing", "role": role})
        fix = await self._resume_session(run_id, role, checkpoint_instruction(str(path)))
        if fix.checkpoint_written:
            return Invocation(
                handle=fix.handle,
                result=invocation.result,
                checkpoint_written=True,
                recovered=invocation.recovered or fix.recovered,
            )
        downgraded = dataclasses.replace(
            invocation.result,
            status="failure",
            error="Worker reported success without writing its checkpoint.",
        )
        fix.handle.last_status = downgraded.status
        self._emit(run_id, {"event": "checkpoint_downgrade", "role": role})
        self._persist(run_id, fix.handle)
        return Invocation(
            handle=fix.handle,
            result=downgraded,
            checkpoint_written=False,
            recovered=invocation.recovered or fix.recovered,
        )

    async def spawn(self, run_id: str, role: str, instructions: str) -> Invocation:
        """Start a fresh isolated session for ``role`` and wait for its completion block."""
        with self._claim(run_id, role):
            invocation = await self._spawn_session(run_id, role, instructions)
            if invocation.result.succeeded and not invocation.checkpoint_written:
                async with self._resume_lock(run_id):
                    invocation = await self._ensure_checkpoint(run_id, role, invocation)
            return invocation

    async def resume(self, run_id: str, role: str, instructions: str) -> Invocation:
        """Re-enter the session of ``role``; falls back to a seeded fresh session on failure."""
        with self._claim(run_id, role):
            async with self._resume_lock(run_id):
                invocation = await self._resume_session(run_id, role, instructions)
                return await self._ensure_checkpoint(run_id, role, invocation)
