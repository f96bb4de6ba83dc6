"""Review convergence: fan out to reviewers, merge their findings, decide what happens next."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import StrEnum

from devloop.gateway import Invocation, WorkerGateway, fan_out
from devloop.instructions import (
    acknowledgment_instruction,
    re_review_instruction,
    review_instruction,
)
from devloop.knowledge import KnowledgeBase
from devloop.models import (
    Finding,
    FindingStatus,
    ReportedFinding,
    Run,
    Severity,
    Verdict,
    WorkerResult,
)

logger = logging.getLogger(__name__)


class ReviewAction(StrEnum):
    ADVANCE = "advance"
    ITERATE = "iterate"
    ESCALATE = "escalate"


@dataclass(slots=True)
class ReviewDecision:
    action: ReviewAction
    blocking: list[Finding] = field(default_factory=list)
    blocking_roles: list[str] = field(default_factory=list)
    reason: str = ""


def similarity(left: str, right: str) -> float:
    normalized_left = " ".join(left.lower().split())
    normalized_right = " ".join(right.lower().split())
    return SequenceMatcher(None, normalized_left, normalized_right).ratio()


class ReviewConvergenceEngine:
    def __init__(
        self,
        gateway: WorkerGateway,
        reviewers: list[str],
        checklists: Mapping[str, str],
        *,
        knowledge: KnowledgeBase | None = None,
        max_iterations: int = 5,
        similarity_threshold: float = 0.85,
    ) -> None:
        self.gateway = gateway
        self.reviewers = list(reviewers)
        self.checklists = dict(checklists)
        self.knowledge = knowledge
        self.max_iterations = max_iterations
        self.similarity_threshold = similarity_threshold

    def roles_for(self, run: Run) -> list[str]:
        """Reviewers to invoke now: everyone on a first pass, else only the blocking ones."""
        if not run.blocking_reviewers:
            return list(self.reviewers)
        return [role for role in self.reviewers if role in run.blocking_reviewers]

    def _review_instruction(self, run: Run, role: str) -> str:
        return review_instruction(
            run.task_description,
            run.plan_summary,
            run.changed_files,
            role,
            self.checklists.get(role, ""),
            self.knowledge.render(role) if self.knowledge else "",
        )

    def _re_review_instruction(self, run: Run, role: str) -> str:
        implementer = run.participants.get("implementer")
        previous = [item for item in run.open_findings if item.source_role == role]
        return re_review_instruction(
            previous,
            run.changed_files,
            implementer.last_summary if implementer else "",
        )

    async def _acknowledged(self, run_id: str, role: str, invocation: Invocation) -> WorkerResult:
        if invocation.result.verdict is not None:
            return invocation.result
        logger.info("Run %s: %s gave no verdict; asking once more", run_id, role)
        retry = await self.gateway.resume(run_id, role, acknowledgment_instruction(role))
        return retry.result

    async def _spawn(self, run: Run, role: str) -> WorkerResult:
        invocation = await self.gateway.spawn(run.run_id, role, self._review_instruction(run, role))
        return await self._acknowledged(run.run_id, role, invocation)

    async def _resume(self, run: Run, role: str) -> WorkerResult:
        invocation = await self.gateway.resume(
            run.run_id, role, self._re_review_instruction(run, role)
        )
        return await self._acknowledged(run.run_id, role, invocation)

    async def collect(self, run: Run) -> dict[str, WorkerResult]:
        """Invoke the reviewers due for ``run`` and return their acknowledged results."""
        roles = self.roles_for(run)
        first_pass = not run.blocking_reviewers
        call = self._spawn if first_pass else self._resume
        results = await fan_out(call(run, role) for role in roles)
        return dict(zip(roles, results, strict=True))

    def _match(self, reported: ReportedFinding, candidates: list[Finding]) -> Finding | None:
        best: Finding | None = None
        best_score = 0.0
        for candidate in candidates:
            score = similarity(reported.description, candidate.description)
            if score >= self.similarity_threshold and score > best_score:
                best, best_score = candidate, score
        return best

    def _corroborate(self, run: Run, finding: Finding) -> None:
        for other in run.open_findings:
            if other.source_role == finding.source_role:
                continue
            if similarity(other.description, finding.description) < self.similarity_threshold:
                continue
            if other.source_role not in finding.corroborated_by:
                finding.corroborated_by.append(other.source_role)
            if finding.source_role not in other.corroborated_by:
                other.corroborated_by.append(finding.source_role)

    def _merge_role(self, run: Run, role: str, result: WorkerResult) -> None:
        previous = [item for item in run.open_findings if item.source_role == role]
        reported = list(result.findings)
        if not reported and result.verdict == Verdict.REQUEST_CHANGES:
            reported.append(
                ReportedFinding(
                    severity=Severity.MAJOR,
                    description=f"Changes requested without itemized findings: {result.summary}",
                )
            )
        for item in reported:
            match = self._match(item, previous)
            if match is not None:
                previous.remove(match)
                match.severity = item.severity
                continue
            finding = Finding(
                finding_id=run.next_finding_id(),
                source_role=role,
                severity=item.severity,
                description=item.description,
                iteration=run.iteration,
            )
            self._corroborate(run, finding)
            run.findings_log.append(finding)
        for resolved in previous:
            resolved.status = FindingStatus.FIXED

    def apply(self, run: Run, results: Mapping[str, WorkerResult]) -> ReviewDecision:
        """Merge ``results`` into ``run`` and decide. Deterministic for a given run and results."""
        silent = [
            role for role in self.reviewers if role in results and results[role].verdict is None
        ]
        for role in self.reviewers:
            if role in results and role not in silent:
                self._merge_role(run, role, results[role])

        if silent:
            return ReviewDecision(
                action=ReviewAction.ESCALATE,
                blocking=run.open_blocking_findings,
                reason="No verdict from reviewer(s) after a reminder: " + ", ".join(silent),
            )

        blocking = run.open_blocking_findings
        if not blocking:
            for finding in run.open_findings:
                finding.status = FindingStatus.DEFERRED
            run.blocking_reviewers = []
            return ReviewDecision(action=ReviewAction.ADVANCE)

        roles = [role for role in self.reviewers if any(f.source_role == role for f in blocking)]
        if run.iteration >= self.max_iterations:
            cited = "; ".join(finding.render() for finding in blocking)
            return ReviewDecision(
                action=ReviewAction.ESCALATE,
                blocking=blocking,
                blocking_roles=roles,
                reason=(
                    f"Review iteration cap ({self.max_iterations}) reached with open blocking "
                    f"findings: {cited}"
                ),
            )
        run.blocking_reviewers = roles
        return ReviewDecision(action=ReviewAction.ITERATE, blocking=blocking, blocking_roles=roles)
