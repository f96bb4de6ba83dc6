import asyncio
from pathlib import Path

import pytest

from devloop.backends.base import BackendExecutionError
from devloop.errors import GatewayError
from devloop.models import (
    Finding,
    FindingStatus,
    ReportedFinding,
    Run,
    Severity,
    Verdict,
    WorkerResult,
)
from devloop.review import ReviewAction, similarity

from fakes import approve, build_harness, request_changes

REVIEWERS = ["security-reviewer", "test-reviewer"]


def _engine(tmp_path: Path, max_iterations: int = 5):
    return build_harness(tmp_path, reviewers=tuple(REVIEWERS), max_iterations=max_iterations).review


def _approve() -> WorkerResult:
    return WorkerResult(status="success", summary="ok", verdict=Verdict.APPROVE)


def _changes(*findings: tuple[Severity, str], summary: str = "fix please") -> WorkerResult:
    return WorkerResult(
        status="success",
        summary=summary,
        verdict=Verdict.REQUEST_CHANGES,
        findings=[
            ReportedFinding(severity=severity, description=text) for severity, text in findings
        ],
    )


def test_similarity_ignores_case_and_whitespace() -> None:
    assert similarity("SQL  injection in login", "sql injection in login") == 1.0
    assert similarity("SQL injection in login", "Missing docstring") < 0.5


def test_all_approvals_advance_and_defer_minor_findings(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    run = Run(run_id="run-1", task_description="task")

    decision = engine.apply(
        run,
        {
            "security-reviewer": _approve(),
            "test-reviewer": _changes((Severity.MINOR, "Test name is vague")),
        },
    )

    assert decision.action == ReviewAction.ADVANCE
    assert run.findings_log[0].status == FindingStatus.DEFERRED
    assert run.blocking_reviewers == []


def test_blocking_finding_iterates_with_only_its_reviewer(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    run = Run(run_id="run-1", task_description="task")

    decision = engine.apply(
        run,
        {
            "security-reviewer": _approve(),
            "test-reviewer": _changes((Severity.MAJOR, "No test covers the expired token path")),
        },
    )

    assert decision.action == ReviewAction.ITERATE
    assert decision.blocking_roles == ["test-reviewer"]
    assert run.blocking_reviewers == ["test-reviewer"]
    assert engine.roles_for(run) == ["test-reviewer"]
    assert run.findings_log[0].finding_id == "F-001"
    assert run.findings_log[0].iteration == 1


def test_rereported_finding_stays_open_and_dropped_one_is_fixed(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    run = Run(run_id="run-1", task_description="task", iteration=2)
    run.findings_log = [
        Finding("F-001", "test-reviewer", Severity.MAJOR, "No test covers the expired token path"),
        Finding("F-002", "test-reviewer", Severity.CRITICAL, "Fixture leaks a database handle"),
    ]
    run.blocking_reviewers = ["test-reviewer"]

    decision = engine.apply(
        run,
        {"test-reviewer": _changes((Severity.BLOCKER, "No test covers the expired-token path."))},
    )

    first, second = run.findings_log
    assert len(run.findings_log) == 2
    assert first.status == FindingStatus.OPEN
    assert first.severity == Severity.BLOCKER
    assert second.status == FindingStatus.FIXED
    assert decision.action == ReviewAction.ITERATE


def test_same_issue_from_two_reviewers_is_corroborated(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    run = Run(run_id="run-1", task_description="task")

    engine.apply(
        run,
        {
            "security-reviewer": _changes((Severity.MAJOR, "Password compared with ==")),
            "test-reviewer": _changes((Severity.MAJOR, "password compared with ==")),
        },
    )

    first, second = run.findings_log
    assert first.corroborated_by == ["test-reviewer"]
    assert second.corroborated_by == ["security-reviewer"]
    assert "corroborated by test-reviewer" in first.render()


def test_request_changes_without_findings_is_blocking(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    run = Run(run_id="run-1", task_description="task")

    decision = engine.apply(
        run,
        {"security-reviewer": _approve(), "test-reviewer": _changes(summary="not ready")},
    )

    assert decision.action == ReviewAction.ITERATE
    assert run.findings_log[0].severity == Severity.MAJOR
    assert "not ready" in run.findings_log[0].description


def test_silent_reviewer_escalates(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    run = Run(run_id="run-1", task_description="task")

    decision = engine.apply(
        run,
        {
            "security-reviewer": _approve(),
            "test-reviewer": WorkerResult(status="success", summary="hmm"),
        },
    )

    assert decision.action == ReviewAction.ESCALATE
    assert "test-reviewer" in decision.reason


def test_iteration_cap_escalates_citing_findings(tmp_path: Path) -> None:
    engine = _engine(tmp_path, max_iterations=3)
    run = Run(run_id="run-1", task_description="task", iteration=3)
    run.blocking_reviewers = ["security-reviewer"]

    decision = engine.apply(
        run, {"security-reviewer": _changes((Severity.CRITICAL, "Secrets logged at INFO"))}
    )

    assert decision.action == ReviewAction.ESCALATE
    assert "cap (3)" in decision.reason
    assert "Secrets logged at INFO" in decision.reason
    assert decision.blocking_roles == ["security-reviewer"]


def test_apply_is_deterministic(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    results = {
        "security-reviewer": _changes((Severity.MAJOR, "Token not rotated")),
        "test-reviewer": _approve(),
    }
    left = Run(run_id="run-1", task_description="task")
    right = Run(run_id="run-1", task_description="task")

    engine.apply(left, results)
    engine.apply(right, results)

    assert [item.to_dict() for item in left.findings_log] == [
        item.to_dict() for item in right.findings_log
    ]


def test_collect_spawns_everyone_then_resumes_only_blockers(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, reviewers=tuple(REVIEWERS))
    run = harness.store.create("task")
    harness.backend.script(
        "test-reviewer",
        request_changes(("major", "Missing regression test")),
        approve(),
    )

    async def _run():
        first = await harness.review.collect(harness.store.get(run.run_id))
        updated = harness.store.update(
            run.run_id, lambda item: harness.review.apply(item, first)
        )
        second = await harness.review.collect(updated)
        return first, second

    first, second = asyncio.run(_run())

    assert set(first) == set(REVIEWERS)
    assert list(second) == ["test-reviewer"]
    assert harness.backend.resumes_for("security-reviewer") == []
    resumed = harness.backend.resumes_for("test-reviewer")
    assert len(resumed) == 1
    assert "Missing regression test" in resumed[0]["prompt"]


def test_missing_verdict_gets_one_reminder(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, reviewers=("security-reviewer",))
    run = harness.store.create("task")
    harness.backend.script(
        "security-reviewer",
        {"status": "success", "summary": "reviewed"},
        approve(),
    )

    results = asyncio.run(harness.review.collect(harness.store.get(run.run_id)))

    assert results["security-reviewer"].verdict == Verdict.APPROVE
    reminder = harness.backend.resumes_for("security-reviewer")
    assert len(reminder) == 1
    assert "had no verdict" in reminder[0]["prompt"]


def test_collect_cancels_other_reviewers_when_one_fails(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, reviewers=tuple(REVIEWERS))
    run = harness.store.create("task")
    harness.backend.script(
        "security-reviewer", BackendExecutionError("no binary", retriable=False)
    )
    harness.backend.script("test-reviewer", {**approve(), "delay": 0.3})

    async def _run() -> None:
        with pytest.raises(GatewayError):
            await harness.review.collect(harness.store.get(run.run_id))
        await asyncio.sleep(0.5)

    asyncio.run(_run())

    assert harness.backend.in_flight == 0
    assert harness.store.get(run.run_id).participants == {}


def test_checklist_reaches_the_reviewer_in_its_instruction(tmp_path: Path) -> None:
    harness = build_harness(tmp_path, reviewers=("security-reviewer",))
    harness.review.checklists["security-reviewer"] = "- Queries use bound parameters"
    run = harness.store.create("task")

    asyncio.run(harness.review.collect(harness.store.get(run.run_id)))

    prompt = harness.backend.calls_for("security-reviewer")[0]["prompt"]
    assert "- Queries use bound parameters" in prompt
