from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class Phase(StrEnum):
    PRE_WORK = "pre_work"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"
    VALIDATION = "validation"
    CODE_REVIEW = "code_review"
    REFLECTION = "reflection"
    COMPLETE = "complete"
    BLOCKED = "blocked"

    @property
    def terminal(self) -> bool:
        return self in {Phase.COMPLETE, Phase.BLOCKED}


class Severity(StrEnum):
    BLOCKER = "blocker"
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    TECH_DEBT = "tech_debt"
    SUGGESTION = "suggestion"

    @property
    def blocking(self) -> bool:
        return self in BLOCKING_SEVERITIES


BLOCKING_SEVERITIES = frozenset({Severity.BLOCKER, Severity.CRITICAL, Severity.MAJOR})


class FindingStatus(StrEnum):
    OPEN = "open"
    FIXED = "fixed"
    DEFERRED = "deferred"


class Verdict(StrEnum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"


class LayerVerdict(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    SKIP = "skip"
    UNCLEAR = "unclear"


class GateOutcome(StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"
    UNCLEAR = "UNCLEAR"


@dataclass(slots=True)
class Finding:
    finding_id: str
    source_role: str
    severity: Severity
    description: str
    status: FindingStatus = FindingStatus.OPEN
    iteration: int = 1
    corroborated_by: list[str] = field(default_factory=list)

    @property
    def blocking_open(self) -> bool:
        return self.status == FindingStatus.OPEN and self.severity.blocking

    def render(self) -> str:
        line = (
            f"[{self.finding_id}] {self.severity.value.upper()} ({self.source_role}): "
            f"{self.description}"
        )
        if self.corroborated_by:
            line += f" (corroborated by {', '.join(self.corroborated_by)})"
        return line

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["severity"] = self.severity.value
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Finding:
        return cls(
            finding_id=str(payload["finding_id"]),
            source_role=str(payload["source_role"]),
            severity=Severity(payload["severity"]),
            description=str(payload["description"]),
            status=FindingStatus(payload.get("status", FindingStatus.OPEN)),
            iteration=int(payload.get("iteration", 1)),
            corroborated_by=[str(role) for role in payload.get("corroborated_by", [])],
        )


@dataclass(slots=True)
class ParticipantHandle:
    role: str
    session_id: str | None = None
    backend: str | None = None
    checkpoint: str = ""
    checkpoint_path: str | None = None
    invocations: int = 0
    last_status: str | None = None
    last_summary: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ParticipantHandle:
        return cls(
            role=str(payload["role"]),
            session_id=payload.get("session_id"),
            backend=payload.get("backend"),
            checkpoint=str(payload.get("checkpoint", "")),
            checkpoint_path=payload.get("checkpoint_path"),
            invocations=int(payload.get("invocations", 0)),
            last_status=payload.get("last_status"),
            last_summary=str(payload.get("last_summary", "")),
        )


@dataclass(slots=True)
class LayerResult:
    name: str
    verdict: LayerVerdict
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "verdict": self.verdict.value, "detail": self.detail}


@dataclass(slots=True)
class VerificationReport:
    layers: list[LayerResult]
    outcome: GateOutcome
    exit_code: int | None = None
    duration_seconds: float = 0.0
    checked_at: str = field(default_factory=utcnow_iso)

    @property
    def failing_layers(self) -> list[LayerResult]:
        return [layer for layer in self.layers if layer.verdict == LayerVerdict.FAIL]

    @property
    def unclear_layers(self) -> list[LayerResult]:
        return [layer for layer in self.layers if layer.verdict == LayerVerdict.UNCLEAR]

    def to_dict(self) -> dict[str, Any]:
        return {
            "layers": [layer.to_dict() for layer in self.layers],
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "duration_seconds": self.duration_seconds,
            "checked_at": self.checked_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> VerificationReport:
        return cls(
            layers=[
                LayerResult(
                    name=str(item["name"]),
                    verdict=LayerVerdict(item["verdict"]),
                    detail=str(item.get("detail", "")),
                )
                for item in payload.get("layers", [])
            ],
            outcome=GateOutcome(payload["outcome"]),
            exit_code=payload.get("exit_code"),
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            checked_at=str(payload.get("checked_at") or utcnow_iso()),
        )


@dataclass(slots=True)
class KnowledgeEntry:
    title: str
    added_date: str
    related_context: str
    body: str


@dataclass(slots=True)
class ReportedFinding:
    """A finding as a reviewer reported it, before it is logged on the run."""

    severity: Severity
    description: str


@dataclass(slots=True)
class WorkerResult:
    status: str
    summary: str
    files_modified: list[str] = field(default_factory=list)
    error: str = "none"
    verdict: Verdict | None = None
    findings: list[ReportedFinding] = field(default_factory=list)
    architectural_gap: str | None = None
    knowledge_changes: dict[str, Any] = field(default_factory=dict)
    raw: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(slots=True)
class EscalationReport:
    reason: str
    phase: str
    iteration: int
    open_findings: list[str] = field(default_factory=list)
    detail: str = ""
    at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> EscalationReport:
        return cls(
            reason=str(payload["reason"]),
            phase=str(payload["phase"]),
            iteration=int(payload["iteration"]),
            open_findings=[str(item) for item in payload.get("open_findings", [])],
            detail=str(payload.get("detail", "")),
            at=str(payload.get("at") or utcnow_iso()),
        )


REQUIRED_RUN_FIELDS = (
    "run_id",
    "task_description",
    "phase",
    "iteration",
    "participants",
    "findings_log",
)


@dataclass(slots=True)
class Run:
    run_id: str
    task_description: str
    phase: Phase = Phase.PRE_WORK
    iteration: int = 1
    participants: dict[str, ParticipantHandle] = field(default_factory=dict)
    findings_log: list[Finding] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    run_started_at: str = field(default_factory=utcnow_iso)
    phase_started_at: str = field(default_factory=utcnow_iso)
    phase_history: list[dict[str, Any]] = field(default_factory=list)
    plan_summary: str = ""
    planning_round: int = 0
    implementation_attempts: int = 0
    validation_rounds: int = 0
    pending_instruction: str | None = None
    changed_files: list[str] = field(default_factory=list)
    blocking_reviewers: list[str] = field(default_factory=list)
    last_verification: dict[str, Any] | None = None
    verification_notes: list[dict[str, Any]] = field(default_factory=list)
    knowledge_updates: list[dict[str, Any]] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    escalation: EscalationReport | None = None
    archived_at: str | None = None

    @property
    def open_blocking_findings(self) -> list[Finding]:
        return [finding for finding in self.findings_log if finding.blocking_open]

    @property
    def open_findings(self) -> list[Finding]:
        return [item for item in self.findings_log if item.status == FindingStatus.OPEN]

    def next_finding_id(self) -> str:
        return f"F-{len(self.findings_log) + 1:03d}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task_description": self.task_description,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "participants": {
                role: handle.to_dict() for role, handle in self.participants.items()
            },
            "findings_log": [finding.to_dict() for finding in self.findings_log],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "run_started_at": self.run_started_at,
            "phase_started_at": self.phase_started_at,
            "phase_history": list(self.phase_history),
            "plan_summary": self.plan_summary,
            "planning_round": self.planning_round,
            "implementation_attempts": self.implementation_attempts,
            "validation_rounds": self.validation_rounds,
            "pending_instruction": self.pending_instruction,
            "changed_files": list(self.changed_files),
            "blocking_reviewers": list(self.blocking_reviewers),
            "last_verification": self.last_verification,
            "verification_notes": list(self.verification_notes),
            "knowledge_updates": list(self.knowledge_updates),
            "events": list(self.events),
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "archived_at": self.archived_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Run:
        """Build a run from persisted data.

        Raises KeyError/ValueError/TypeError on missing or malformed fields; the store
        translates those into a fail-closed RunStateError.
        """
        missing = [name for name in REQUIRED_RUN_FIELDS if name not in payload]
        if missing:
            raise KeyError(", ".join(missing))
        participants = payload["participants"]
        findings = payload["findings_log"]
        if not isinstance(participants, dict) or not isinstance(findings, list):
            raise TypeError("participants must be a mapping and findings_log a list")
        iteration = int(payload["iteration"])
        if iteration < 1:
            raise ValueError(f"iteration must be >= 1, got {iteration}")
        escalation = payload.get("escalation")
        return cls(
            run_id=str(payload["run_id"]),
            task_description=str(payload["task_description"]),
            phase=Phase(payload["phase"]),
            iteration=iteration,
            participants={
                str(role): ParticipantHandle.from_dict(item)
                for role, item in participants.items()
            },
            findings_log=[Finding.from_dict(item) for item in findings],
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=str(payload.get("updated_at") or utcnow_iso()),
            run_started_at=str(payload.get("run_started_at") or utcnow_iso()),
            phase_started_at=str(payload.get("phase_started_at") or utcnow_iso()),
            phase_history=list(payload.get("phase_history", [])),
            plan_summary=str(payload.get("plan_summary", "")),
            planning_round=int(payload.get("planning_round", 0)),
            implementation_attempts=int(payload.get("implementation_attempts", 0)),
            validation_rounds=int(payload.get("validation_rounds", 0)),
            pending_instruction=payload.get("pending_instruction"),
            changed_files=[str(path) for path in payload.get("changed_files", [])],
            blocking_reviewers=[str(role) for role in payload.get("blocking_reviewers", [])],
            last_verification=payload.get("last_verification"),
            verification_notes=list(payload.get("verification_notes", [])),
            knowledge_updates=list(payload.get("knowledge_updates", [])),
            events=list(payload.get("events", [])),
            escalation=EscalationReport.from_dict(escalation) if escalation else None,
            archived_at=payload.get("archived_at"),
        )
