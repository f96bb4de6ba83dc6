"""Instruction text delivered to workers.

Every builder returns plain text. The gateway appends the protocol footer, so builders never
mention the checkpoint path or the result block format themselves.
"""
from __future__ import annotations

from collections.abc import Iterable

from devloop.knowledge import CURATION_POLICY
from devloop.models import Finding, VerificationReport, WorkerResult
from devloop.signals import RESULT_BLOCK_EXAMPLE

REVIEWER_RESULT_FIELDS = (
    'Reviewers add "verdict" ("approve" or "request_changes") and "findings": '
    '[{"severity": "blocker|critical|major|minor|tech_debt|suggestion", '
    '"description": "..."}].'
)


def _section(title: str, body: str) -> str:
    return f"## {title}\n{body.strip()}" if body.strip() else ""


def _join(*parts: str) -> str:
    return "\n\n".join(part for part in parts if part)


def render_findings(findings: Iterable[Finding]) -> str:
    rendered = [finding.render() for finding in findings]
    return "\n".join(rendered) if rendered else "(none)"


def protocol_footer(checkpoint_path: str) -> str:
    return _join(
        "---",
        _section(
            "Checkpoint",
            f"Before you finish, write your working notes to `{checkpoint_path}`: patterns "
            "discovered, decisions made, and current status. Overwrite it every turn.",
        ),
        _section(
            "Completion signal",
            "End your reply with exactly one block of this form. Output without it counts as "
            f"a failure.\n\n{RESULT_BLOCK_EXAMPLE}\n\n{REVIEWER_RESULT_FIELDS}",
        ),
    )


def planning_instruction(task: str, knowledge: str) -> str:
    return _join(
        _section("Task", task),
        _section(
            "Planning",
            "Propose a technical plan for this task: approach, files to touch, tests to add, "
            "and risks. Do not write code yet. Put the plan in the summary field. If the task "
            "cannot be done without an architectural decision you are not allowed to make, "
            'set "architectural_gap" to a description of it.',
        ),
        _section("Knowledge", knowledge),
    )


def plan_review_instruction(
    task: str,
    plan: str,
    role: str,
    checklist: str,
    knowledge: str,
) -> str:
    return _join(
        _section("Task", task),
        _section("Proposed plan", plan),
        _section(
            "Plan review",
            f"As {role}, either confirm the plan, contribute requirements from your area, or "
            "state that the task is not applicable to your area. Use verdict \"approve\" to "
            'confirm or mark not applicable, "request_changes" to require plan changes. If '
            'the plan exposes an architectural gap, set "architectural_gap".',
        ),
        _section("Checklist", checklist),
        _section("Knowledge", knowledge),
    )


def plan_revision_instruction(feedback: dict[str, str]) -> str:
    items = "\n".join(f"- {role}: {text}" for role, text in feedback.items())
    return _join(
        _section("Plan feedback", items),
        "Revise the plan to address this feedback. Put the full revised plan in the summary.",
    )


def plan_confirmation_instruction(plan: str) -> str:
    return _join(
        _section("Revised plan", plan),
        "Confirm the revised plan, or request further changes, as before.",
    )


def implementation_instruction(task: str, plan: str) -> str:
    return _join(
        _section("Task", task),
        _section("Agreed plan", plan),
        "Implement the plan now, with tests. List every file you changed in files_modified.",
    )


def verification_fix_instruction(report: VerificationReport) -> str:
    failing = [
        f"- {layer.name}: {layer.verdict.value}. {layer.detail}".rstrip()
        for layer in report.layers
        if layer.verdict.value in {"fail", "unclear"}
    ]
    return _join(
        _section(
            "Verification failed",
            f"Outcome: {report.outcome.value} (exit code {report.exit_code}).",
        ),
        _section("Layers to fix", "\n".join(failing)),
        "Fix every listed layer in this turn, then report the files you changed.",
    )


def findings_fix_instruction(findings: Iterable[Finding]) -> str:
    return _join(
        _section("Review findings", render_findings(findings)),
        "Fix every finding listed above in this turn, then report the files you changed.",
    )


def worker_failure_instruction(result: WorkerResult) -> str:
    return _join(
        _section("Previous attempt", f"You reported failure: {result.error}"),
        _section("Summary you gave", result.summary),
        "Resolve the problem and finish the work, then report the files you changed.",
    )


def review_instruction(
    task: str,
    plan: str,
    changed_files: list[str],
    role: str,
    checklist: str,
    knowledge: str,
) -> str:
    files = "\n".join(f"- {path}" for path in changed_files) or "(not reported)"
    return _join(
        _section("Task", task),
        _section("Plan", plan),
        _section("Changed files", files),
        _section(
            "Review",
            f"Review the change as {role} using the checklist below. Give a verdict and list "
            "every finding with its severity.",
        ),
        _section("Checklist", checklist),
        _section("Knowledge", knowledge),
    )


def re_review_instruction(
    previous: Iterable[Finding],
    changed_files: list[str],
    summary: str,
) -> str:
    files = "\n".join(f"- {path}" for path in changed_files) or "(not reported)"
    return _join(
        _section("Your open findings", render_findings(previous)),
        _section("Implementer's fix", summary),
        _section("Changed files", files),
        "Re-review the fix. Report again every finding that is still present, word it as "
        "before, and add any new issue the fix introduced. Give a verdict.",
    )


def acknowledgment_instruction(role: str) -> str:
    return (
        f"Your last reply as {role} had no verdict. Reply with a result block whose verdict "
        'is "approve" or "request_changes". If the change is outside your area, approve and '
        "say it is not applicable."
    )


def checkpoint_instruction(checkpoint_path: str) -> str:
    return (
        f"You reported success but did not write your checkpoint to `{checkpoint_path}`. "
        "Write it now, then repeat your result block."
    )


def reflection_instruction(role: str, knowledge_dir: str) -> str:
    return _join(
        _section(
            "Reflection",
            f"The task is complete. As {role}, review your knowledge files in "
            f"`{knowledge_dir}` and add, update, or prune entries based on this task.",
        ),
        CURATION_POLICY,
        'Report "knowledge_changes": {"added": [...], "updated": [...], "pruned": [...]} '
        "with entry titles.",
    )


def recovery_instruction(
    role: str,
    task: str,
    checkpoint: str,
    outstanding: Iterable[Finding],
    pending: str,
) -> str:
    """Seed for a fresh session that replaces one which could not be resumed."""
    return _join(
        _section(
            "Session recovery",
            f"You are taking over as {role} from a session that can no longer be resumed. "
            "Your previous notes and the current state of the task follow.",
        ),
        _section("Task", task),
        _section("Your checkpoint", checkpoint or "(no checkpoint was written)"),
        _section("Outstanding findings", render_findings(outstanding)),
        _section("Instruction being delivered", pending),
    )
