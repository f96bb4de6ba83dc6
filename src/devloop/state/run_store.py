from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from devloop.errors import RunStateError
from devloop.models import Run, utcnow_iso

logger = logging.getLogger(__name__)

RunMutation = Callable[[Run], None]


class RunStore:
    """Durable per-run records with optimistic, revision-checked updates.

    Each run lives in its own JSON envelope (``schema_version``, ``revision``,
    ``updated_at``, ``data``). Terminal runs are moved into ``archive/`` and stay readable.
    """

    SCHEMA_VERSION = 1
    MAX_UPDATE_ATTEMPTS = 4

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.runs_dir = self.state_dir / "runs"
        self.archive_dir = self.state_dir / "archive"
        try:
            self.runs_dir.mkdir(parents=True, exist_ok=True)
            self.archive_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise RunStateError(f"State directory is not writable: {self.state_dir}") from exc

    @staticmethod
    def new_run_id() -> str:
        return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"

    def _active_file(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def _archived_file(self, run_id: str) -> Path:
        return self.archive_dir / f"{run_id}.json"

    def _locate(self, run_id: str) -> Path:
        if "/" in run_id or "\\" in run_id or run_id.startswith("."):
            raise RunStateError(f"Invalid run id: {run_id!r}")
        for candidate in (self._active_file(run_id), self._archived_file(run_id)):
            if candidate.exists():
                return candidate
        raise RunStateError(f"Run not found: {run_id}")

    def _lock_file(self, run_id: str) -> Path:
        return self.runs_dir / f".{run_id}.lock"

    @contextmanager
    def _run_lock(self, run_id: str, timeout_seconds: float = 3.0) -> Iterator[None]:
        lock_file = self._lock_file(run_id)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RunStateError(f"Timed out waiting for state lock of {run_id}.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, path: Path) -> dict[str, Any]:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise RunStateError(f"Run record disappeared: {path.name}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise RunStateError(f"Run record is unreadable: {path.name}: {exc}") from exc
        if not (
            isinstance(raw, dict)
            and "schema_version" in raw
            and "revision" in raw
            and isinstance(raw.get("data"), dict)
        ):
            raise RunStateError(f"Run record has no valid envelope: {path.name}")
        if int(raw["schema_version"]) > self.SCHEMA_VERSION:
            raise RunStateError(
                f"Run record {path.name} uses schema {raw['schema_version']}, "
                f"newer than supported {self.SCHEMA_VERSION}."
            )
        return raw

    @staticmethod
    def _decode(envelope: dict[str, Any], path: Path) -> Run:
        try:
            return Run.from_dict(envelope["data"])
        except (KeyError, TypeError, ValueError) as exc:
            # Refuse to resume from partial state rather than guessing defaults.
            raise RunStateError(
                f"Run record {path.name} is missing or has invalid required fields: {exc}"
            ) from exc

    def _write_envelope(self, path: Path, run: Run, revision: int) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": run.to_dict(),
        }
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        fd, temp_name = tempfile.mkstemp(prefix=f".{run.run_id}-", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_name, path)
        except OSError as exc:
            try:
                os.unlink(temp_name)
            except OSError:
                pass
            raise RunStateError(f"Failed to persist run {run.run_id}: {exc}") from exc

    def get_envelope(self, run_id: str) -> dict[str, Any]:
        return self._read_envelope(self._locate(run_id))

    def create(self, task: str) -> Run:
        if not task.strip():
            raise RunStateError("Task description must not be empty.")
        run = Run(run_id=self.new_run_id(), task_description=task)
        run.phase_history.append({"phase": run.phase.value, "at": run.created_at, "reason": ""})
        path = self._active_file(run.run_id)
        with self._run_lock(run.run_id):
            if path.exists():
                raise RunStateError(f"Run already exists: {run.run_id}")
            self._write_envelope(path, run, revision=1)
        logger.info("Created run %s", run.run_id)
        return run

    def get(self, run_id: str) -> Run:
        path = self._locate(run_id)
        return self._decode(self._read_envelope(path), path)

    def _set(self, run_id: str, run: Run, *, expected_revision: int) -> None:
        with self._run_lock(run_id):
            path = self._locate(run_id)
            current = self._read_envelope(path)
            current_revision = int(current.get("revision", 1))
            if expected_revision != current_revision:
                raise RunStateError(f"Concurrent state update detected for run '{run_id}'.")
            run.updated_at = utcnow_iso()
            self._write_envelope(path, run, revision=current_revision + 1)

    def update(self, run_id: str, mutation: RunMutation) -> Run:
        """Apply ``mutation`` to the latest committed run and persist it atomically."""
        last_error: RunStateError | None = None
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            path = self._locate(run_id)
            envelope = self._read_envelope(path)
            run = self._decode(envelope, path)
            if run.run_id != run_id:
                raise RunStateError(f"Run record {path.name} holds run {run.run_id}.")
            mutation(run)
            if run.run_id != run_id:
                raise RunStateError("A mutation may not change the run id.")
            try:
                self._set(run_id, run, expected_revision=int(envelope.get("revision", 1)))
                return run
            except RunStateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise RunStateError(str(last_error) if last_error else "State update failed.")

    def archive(self, run_id: str) -> Run:
        run = self.update(run_id, lambda item: setattr(item, "archived_at", utcnow_iso()))
        source = self._active_file(run_id)
        if source.exists():
            with self._run_lock(run_id):
                os.replace(source, self._archived_file(run_id))
            logger.info("Archived run %s in phase %s", run_id, run.phase.value)
        return run

    def _load_dir(self, directory: Path) -> list[Run]:
        runs: list[Run] = []
        for path in sorted(directory.glob("run-*.json")):
            runs.append(self._decode(self._read_envelope(path), path))
        return runs

    def list_runs(self) -> list[Run]:
        runs = self._load_dir(self.runs_dir) + self._load_dir(self.archive_dir)
        return sorted(runs, key=lambda run: (run.created_at, run.run_id))

    def list_incomplete(self) -> list[Run]:
        return [run for run in self._load_dir(self.runs_dir) if not run.phase.terminal]
