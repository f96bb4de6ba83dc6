import json
from pathlib import Path

import pytest

from devloop.errors import RunStateError
from devloop.models import Finding, ParticipantHandle, Phase, Severity
from devloop.state import RunStore


def test_run_store_roundtrip(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    run = store.create("add rate limiting to the login endpoint")

    def _mutate(item) -> None:
        item.participants["implementer"] = ParticipantHandle(
            role="implementer", session_id="sess-1", backend="claude"
        )
        item.findings_log.append(
            Finding(
                finding_id=item.next_finding_id(),
                source_role="security-reviewer",
                severity=Severity.MAJOR,
                description="Limiter keyed on a spoofable header",
            )
        )

    store.update(run.run_id, _mutate)
    loaded = store.get(run.run_id)

    assert loaded.task_description == "add rate limiting to the login endpoint"
    assert loaded.phase == Phase.PRE_WORK
    assert loaded.participants["implementer"].session_id == "sess-1"
    assert loaded.findings_log[0].finding_id == "F-001"
    assert loaded.findings_log[0].severity == Severity.MAJOR
    assert loaded.open_blocking_findings[0].source_role == "security-reviewer"


def test_update_increments_revision(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    run = store.create("task")
    first_revision = store.get_envelope(run.run_id)["revision"]

    store.update(run.run_id, lambda item: setattr(item, "iteration", 2))
    second_revision = store.get_envelope(run.run_id)["revision"]

    assert store.get(run.run_id).iteration == 2
    assert second_revision == first_revision + 1


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    run = store.create("task")
    stale = store.get(run.run_id)
    store.update(run.run_id, lambda item: setattr(item, "iteration", 2))

    with pytest.raises(RunStateError, match="Concurrent state update"):
        store._set(run.run_id, stale, expected_revision=1)


def test_missing_required_field_fails_closed(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    run = store.create("task")
    path = store.runs_dir / f"{run.run_id}.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    del envelope["data"]["findings_log"]
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(RunStateError, match="findings_log"):
        store.get(run.run_id)


def test_newer_schema_is_refused(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    run = store.create("task")
    path = store.runs_dir / f"{run.run_id}.json"
    envelope = json.loads(path.read_text(encoding="utf-8"))
    envelope["schema_version"] = RunStore.SCHEMA_VERSION + 1
    path.write_text(json.dumps(envelope), encoding="utf-8")

    with pytest.raises(RunStateError, match="newer than supported"):
        store.get(run.run_id)


def test_corrupt_record_is_refused(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    run = store.create("task")
    (store.runs_dir / f"{run.run_id}.json").write_text("{not json", encoding="utf-8")

    with pytest.raises(RunStateError, match="unreadable"):
        store.get(run.run_id)


def test_archive_keeps_run_readable(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")
    active = store.create("still going")
    finished = store.create("done")
    store.update(finished.run_id, lambda item: setattr(item, "phase", Phase.COMPLETE))

    archived = store.archive(finished.run_id)

    assert archived.archived_at is not None
    assert not (store.runs_dir / f"{finished.run_id}.json").exists()
    assert store.get(finished.run_id).phase == Phase.COMPLETE
    assert [run.run_id for run in store.list_incomplete()] == [active.run_id]
    assert {run.run_id for run in store.list_runs()} == {active.run_id, finished.run_id}


def test_invalid_and_unknown_run_ids(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")

    with pytest.raises(RunStateError, match="Invalid run id"):
        store.get("../escape")
    with pytest.raises(RunStateError, match="Run not found"):
        store.get("run-missing")


def test_empty_task_is_rejected(tmp_path: Path) -> None:
    store = RunStore(tmp_path / ".devloop")

    with pytest.raises(RunStateError, match="must not be empty"):
        store.create("   ")
