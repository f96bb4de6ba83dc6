"""Human-readable run record, rewritten after every committed transition."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from devloop.models import Run

logger = logging.getLogger(__name__)


def _cell(value: object) -> str:
    return str(value).replace("|", "\\|").replace("\n", " ")


def render_record(run: Run) -> str:
    implementer = run.participants.get("implementer")
    agent = (implementer.session_id if implementer else None) or "pending"
    lines = [
        f"# Dev loop {run.run_id}",
        "",
        "## Loop State",
        "",
        "| Field | Value |",
        "|-------|-------|",
        f"| Current Step | `{run.phase.value}` |",
        "| Implementing Specialist | `implementer` |",
        f"| Iteration | `{run.iteration}` |",
        f"| Implementing Agent | `{agent}` |",
        f"| Planning Round | `{run.planning_round}` |",
        f"| Validation Rounds | `{run.validation_rounds}` |",
        f"| Updated | `{run.updated_at}` |",
        "",
        f"**Task**: {run.task_description.splitlines()[0] if run.task_description else ''}",
        "",
        "## Task Overview",
        "",
        run.task_description,
        "",
        "## Phase History",
        "",
    ]
    for entry in run.phase_history:
        reason = f" ({entry['reason']})" if entry.get("reason") else ""
        lines.append(f"- {entry.get('at', '')}: {entry.get('phase', '')}{reason}")

    lines.extend(["", "## Participants", "", "| Role | Session | Backend | Invocations | Last |"])
    lines.append("|------|---------|---------|-------------|------|")
    for role, handle in run.participants.items():
        lines.append(
            f"| {_cell(role)} | {_cell(handle.session_id or '-')} | {_cell(handle.backend or '-')} "
            f"| {handle.invocations} | {_cell(handle.last_status or '-')} |"
        )

    lines.extend(["", "## Findings", ""])
    if not run.findings_log:
        lines.append("None.")
    for finding in run.findings_log:
        lines.append(
            f"- {finding.render()} [{finding.status.value}, iteration {finding.iteration}]"
        )

    if run.verification_notes:
        lines.extend(["", "## Unclear Verification Layers", ""])
        for note in run.verification_notes:
            detail = note.get("detail") or "-"
            lines.append(f"- iteration {note.get('iteration')}: {note.get('name')}: {detail}")

    if run.knowledge_updates:
        lines.extend(["", "## Knowledge Updates", ""])
        for update in run.knowledge_updates:
            detail = update.get("error") or update.get("summary") or ""
            lines.append(f"- {update.get('role')}: {update.get('outcome')} {detail}".rstrip())

    if run.escalation is not None:
        escalation = run.escalation
        lines.extend(
            [
                "",
                "## Escalation",
                "",
                f"- Phase: {escalation.phase}",
                f"- Iteration: {escalation.iteration}",
                f"- Reason: {escalation.reason}",
            ]
        )
        if escalation.detail:
            lines.append(f"- Detail: {escalation.detail}")
        for item in escalation.open_findings:
            lines.append(f"  - {item}")
    return "\n".join(lines).rstrip() + "\n"


class RecordWriter:
    def __init__(self, records_dir: Path) -> None:
        self.records_dir = records_dir

    def path_for(self, run_id: str) -> Path:
        return self.records_dir / f"{run_id}.md"

    def write(self, run: Run) -> Path:
        self.records_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(run.run_id)
        fd, temp_name = tempfile.mkstemp(prefix=f".{run.run_id}-", dir=self.records_dir)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(render_record(run))
        os.replace(temp_name, path)
        logger.debug("Wrote run record %s", path)
        return path
