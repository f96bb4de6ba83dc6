from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from devloop.budget import Budget
from devloop.errors import GatewayError, VerificationError
from devloop.gateway import Invocation, WorkerGateway, fan_out
from devloop.instructions import (
    acknowledgment_instruction,
    findings_fix_instruction,
    implementation_instruction,
    plan_confirmation_instruction,
    plan_review_instruction,
    plan_revision_instruction,
    planning_instruction,
    verification_fix_instruction,
    worker_failure_instruction,
)
from devloop.knowledge import KnowledgeBase
from devloop.models import (
    EscalationReport,
    GateOutcome,
    LayerVerdict,
    Phase,
    Run,
    Verdict,
    VerificationReport,
    WorkerResult,
    utcnow_iso,
)
from devloop.phases import TransitionError, assert_transition
from devloop.record import RecordWriter
from devloop.reflection import ReflectionConsolidator
from devloop.review import ReviewAction, ReviewConvergenceEngine
from devloop.state.run_store import RunMutation, RunStore
from devloop.verification import VerificationGate

logger = logging.getLogger(__name__)

IMPLEMENTER = "implementer"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def summarize_runs(
    runs: list[Run],
    *,
    active_only: bool = False,
    complete_only: bool = False,
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for run in runs:
        if active_only and run.phase.terminal:
            continue
        if complete_only and run.phase != Phase.COMPLETE:
            continue
        implementer = run.participants.get(IMPLEMENTER)
        rows.append(
            {
                "run_id": run.run_id,
                "phase": run.phase.value,
                "iteration": run.iteration,
                "agent": (implementer.session_id if implementer else None) or "pending",
                "open_blocking": len(run.open_blocking_findings),
                "task": run.task_description,
                "updated_at": run.updated_at,
                "escalation": run.escalation.reason if run.escalation else None,
            }
        )
    return rows


class PhaseStateMachine:
    """Drives one run through its phases, committing every transition before acting on it."""

    def __init__(
        self,
        store: RunStore,
        gateway: WorkerGateway,
        gate: VerificationGate,
        review: ReviewConvergenceEngine,
        reflection: ReflectionConsolidator,
        budget: Budget,
        knowledge: KnowledgeBase,
        *,
        reviewers: list[str],
        checklists: Mapping[str, str] | None = None,
        require_checklists: bool = False,
        record_writer: RecordWriter | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.gate = gate
        self.review = review
        self.reflection = reflection
        self.budget = budget
        self.knowledge = knowledge
        self.reviewers = list(reviewers)
        self.checklists = dict(checklists or {})
        self.require_checklists = require_checklists
        self.record_writer = record_writer
        self.clock = clock
        self._handlers: dict[Phase, Callable[[Run], Awaitable[Run]]] = {
            Phase.PRE_WORK: self._pre_work,
            Phase.PLANNING: self._planning,
            Phase.IMPLEMENTATION: self._implementation,
            Phase.VALIDATION: self._validation,
            Phase.CODE_REVIEW: self._code_review,
            Phase.REFLECTION: self._reflection,
        }

    # -- persistence ---------------------------------------------------------------------

    def _write_record(self, run: Run) -> None:
        if self.record_writer is not None:
            self.record_writer.write(run)

    def _transition(
        self,
        run_id: str,
        target: Phase,
        reason: str,
        mutate: RunMutation | None = None,
    ) -> Run:
        def _apply(item: Run) -> None:
            assert_transition(item.phase, target)
            if mutate is not None:
                mutate(item)
            if target == Phase.COMPLETE and item.open_blocking_findings:
                raise TransitionError(
                    "Cannot complete with open blocking findings: "
                    + ", ".join(finding.finding_id for finding in item.open_blocking_findings)
                )
            now = utcnow_iso()
            item.phase = target
            item.phase_started_at = now
            item.phase_history.append({"phase": target.value, "at": now, "reason": reason})

        run = self.store.update(run_id, _apply)
        logger.info("Run %s -> %s: %s", run_id, target.value, reason)
        if target.terminal:
            run = self.store.archive(run_id)
        self._write_record(run)
        return run

    def _escalate(
        self,
        run_id: str,
        reason: str,
        *,
        detail: str = "",
        mutate: RunMutation | None = None,
    ) -> Run:
        def _apply(item: Run) -> None:
            if mutate is not None:
                mutate(item)
            item.escalation = EscalationReport(
                reason=reason,
                phase=item.phase.value,
                iteration=item.iteration,
                open_findings=[finding.render() for finding in item.open_blocking_findings],
                detail=detail,
            )

        logger.warning("Run %s blocked: %s", run_id, reason)
        return self._transition(run_id, Phase.BLOCKED, reason, _apply)

    def _bump(self, run_id: str, counter: str) -> Run:
        return self.store.update(
            run_id, lambda item: setattr(item, counter, getattr(item, counter) + 1)
        )

    # -- driving -------------------------------------------------------------------------

    async def start(self, task: str) -> Run:
        run = self.store.create(task)
        self._write_record(run)
        return await self.drive(run.run_id)

    async def step(self, run_id: str) -> Run:
        """Run the handler of the last committed phase once, bounded by its budget."""
        run = self.store.get(run_id)
        if run.phase.terminal:
            return run
        now = self.clock()
        exhausted = self.budget.run_exhausted(run, now=now)
        if exhausted:
            return self._escalate(run_id, exhausted)
        phase = run.phase
        timeout = self.budget.phase_timeout(run, phase, now=now)
        handler = self._handlers[phase]
        try:
            if timeout is None:
                return await handler(run)
            return await asyncio.wait_for(handler(run), timeout=timeout)
        except TimeoutError:
            return self._escalate(
                run_id,
                f"Budget exhausted: {phase.value} phase exceeded {timeout:.0f}s.",
                detail="Limited by the phase timeout or the remaining run budget.",
            )
        except GatewayError as exc:
            return self._escalate(
                run_id,
                f"Worker invocation failed in {phase.value}: {exc}",
                detail=f"role={exc.role}" if exc.role else "",
            )
        except VerificationError as exc:
            return self._escalate(run_id, f"Verification pipeline unusable: {exc}")

    async def drive(self, run_id: str) -> Run:
        """Continue ``run_id`` from its last committed phase until it is terminal."""
        run = self.store.get(run_id)
        while not run.phase.terminal:
            run = await self.step(run_id)
        return run

    async def recover(self) -> list[Run]:
        """Drive every run left unfinished by an earlier process."""
        finished: list[Run] = []
        for run in self.store.list_incomplete():
            logger.info("Recovering run %s at %s", run.run_id, run.phase.value)
            finished.append(await self.drive(run.run_id))
        return finished

    def status(
        self, *, active_only: bool = False, complete_only: bool = False
    ) -> list[dict[str, Any]]:
        return summarize_runs(
            self.store.list_runs(), active_only=active_only, complete_only=complete_only
        )

    # -- phases --------------------------------------------------------------------------

    async def _pre_work(self, run: Run) -> Run:
        problems: list[str] = []
        for role in (IMPLEMENTER, *self.reviewers):
            if role not in self.gateway.specialists:
                problems.append(f"no specialist for role {role}")
        if self.require_checklists:
            for role in self.reviewers:
                if not self.checklists.get(role, "").strip():
                    problems.append(f"missing checklist for {role}")
        if problems:
            return self._escalate(run.run_id, "Pre-work checks failed: " + "; ".join(problems))
        entries = sum(len(self.knowledge.load(role)) for role in (IMPLEMENTER, *self.reviewers))
        return self._transition(
            run.run_id,
            Phase.PLANNING,
            f"pre-work checks passed; {entries} knowledge entries available",
        )

    async def _acknowledged(self, run_id: str, role: str, invocation: Invocation) -> WorkerResult:
        if invocation.result.verdict is not None:
            return invocation.result
        retry = await self.gateway.resume(run_id, role, acknowledgment_instruction(role))
        return retry.result

    async def _plan_reviews(
        self, run: Run, plan: str, *, first_round: bool
    ) -> dict[str, WorkerResult]:
        async def _one(role: str) -> WorkerResult:
            if first_round:
                instruction = plan_review_instruction(
                    run.task_description,
                    plan,
                    role,
                    self.checklists.get(role, ""),
                    self.knowledge.render(role),
                )
                invocation = await self.gateway.spawn(run.run_id, role, instruction)
            else:
                invocation = await self.gateway.resume(
                    run.run_id, role, plan_confirmation_instruction(plan)
                )
            return await self._acknowledged(run.run_id, role, invocation)

        results = await fan_out(_one(role) for role in self.reviewers)
        return dict(zip(self.reviewers, results, strict=True))

    @staticmethod
    def _plan_feedback(results: Mapping[str, WorkerResult]) -> dict[str, str]:
        feedback: dict[str, str] = {}
        for role, result in results.items():
            if result.verdict != Verdict.REQUEST_CHANGES:
                continue
            items = [f"{item.severity.value}: {item.description}" for item in result.findings]
            feedback[role] = "; ".join([result.summary, *items]).strip("; ")
        return feedback

    async def _planning(self, run: Run) -> Run:
        run_id = run.run_id
        max_rounds = self.budget.max_rounds(Phase.PLANNING) or 1
        feedback: dict[str, str] = {}
        invocation = await self.gateway.spawn(
            run_id,
            IMPLEMENTER,
            planning_instruction(run.task_description, self.knowledge.render(IMPLEMENTER)),
        )
        for round_number in range(1, max_rounds + 1):
            self.store.update(
                run_id, lambda item, n=round_number: setattr(item, "planning_round", n)
            )
            plan = invocation.result
            if plan.architectural_gap:
                return self._escalate(
                    run_id, f"Architectural gap reported by implementer: {plan.architectural_gap}"
                )
            if not plan.succeeded:
                return self._escalate(run_id, f"Implementer could not produce a plan: {plan.error}")

            reviews = await self._plan_reviews(run, plan.summary, first_round=round_number == 1)
            silent = [role for role, result in reviews.items() if result.verdict is None]
            if silent:
                return self._escalate(
                    run_id, "No plan confirmation from reviewer(s): " + ", ".join(silent)
                )
            gaps = {role: r.architectural_gap for role, r in reviews.items() if r.architectural_gap}
            if gaps:
                cited = "; ".join(f"{role}: {gap}" for role, gap in gaps.items())
                return self._escalate(
                    run_id, f"Architectural gap reported during planning: {cited}"
                )

            feedback = self._plan_feedback(reviews)
            if not feedback:
                return self._transition(
                    run_id,
                    Phase.IMPLEMENTATION,
                    f"plan confirmed in round {round_number}",
                    lambda item, summary=plan.summary: setattr(item, "plan_summary", summary),
                )
            if round_number == max_rounds:
                break
            invocation = await self.gateway.resume(
                run_id, IMPLEMENTER, plan_revision_instruction(feedback)
            )
        return self._escalate(
            run_id,
            f"Budget exhausted: planning did not converge within {max_rounds} round(s).",
            detail="; ".join(f"{role}: {text}" for role, text in feedback.items()),
        )

    async def _implementation(self, run: Run) -> Run:
        run_id = run.run_id
        max_attempts = self.budget.max_rounds(Phase.IMPLEMENTATION) or 1
        instruction = run.pending_instruction or implementation_instruction(
            run.task_description, run.plan_summary
        )
        while True:
            current = self._bump(run_id, "implementation_attempts")
            handle = current.participants.get(IMPLEMENTER)
            if handle is not None and handle.session_id:
                invocation = await self.gateway.resume(run_id, IMPLEMENTER, instruction)
            else:
                invocation = await self.gateway.spawn(run_id, IMPLEMENTER, instruction)
            result = invocation.result
            if result.succeeded:

                def _advance(item: Run, files: list[str] = result.files_modified) -> None:
                    item.changed_files = list(dict.fromkeys([*item.changed_files, *files]))
                    item.pending_instruction = None
                    item.implementation_attempts = 0

                return self._transition(
                    run_id, Phase.VALIDATION, "implementer reported success", _advance
                )
            if current.implementation_attempts >= max_attempts:
                return self._escalate(
                    run_id,
                    f"Budget exhausted: implementer failed {max_attempts} attempt(s): "
                    f"{result.error}",
                )
            logger.info("Run %s: implementer failed (%s); sending fix", run_id, result.error)
            instruction = worker_failure_instruction(result)

    async def _validation(self, run: Run) -> Run:
        report = await self.gate.verify(run)
        return self.apply_verification(run.run_id, report)

    def apply_verification(self, run_id: str, report: VerificationReport) -> Run:
        """Commit the transition that ``report`` implies for a run in validation."""
        max_rounds = self.budget.max_rounds(Phase.VALIDATION)

        def _record(item: Run) -> None:
            item.last_verification = report.to_dict()
            for layer in report.unclear_layers:
                item.verification_notes.append(
                    {
                        "iteration": item.iteration,
                        "name": layer.name,
                        "detail": layer.detail,
                        "at": report.checked_at,
                    }
                )

        if report.outcome == GateOutcome.PASS:

            def _passed(item: Run) -> None:
                _record(item)
                item.validation_rounds = 0

            return self._transition(run_id, Phase.CODE_REVIEW, "verification passed", _passed)

        run = self.store.get(run_id)
        if max_rounds is not None and run.validation_rounds + 1 >= max_rounds:

            def _exhausted(item: Run) -> None:
                _record(item)
                item.validation_rounds += 1

            failing = ", ".join(
                layer.name
                for layer in report.layers
                if layer.verdict in {LayerVerdict.FAIL, LayerVerdict.UNCLEAR}
            )
            return self._escalate(
                run_id,
                f"Budget exhausted: verification {report.outcome.value} in {max_rounds} "
                f"consecutive round(s); last failing layers: {failing}",
                mutate=_exhausted,
            )

        def _retry(item: Run) -> None:
            _record(item)
            item.validation_rounds += 1
            item.pending_instruction = verification_fix_instruction(report)
            item.implementation_attempts = 0

        return self._transition(
            run_id, Phase.IMPLEMENTATION, f"verification {report.outcome.value}", _retry
        )

    async def _code_review(self, run: Run) -> Run:
        run_id = run.run_id
        results = await self.review.collect(run)
        preview = self.review.apply(self.store.get(run_id), results)

        def _merge(item: Run) -> None:
            self.review.apply(item, results)

        if preview.action == ReviewAction.ADVANCE:
            return self._transition(run_id, Phase.REFLECTION, "all reviewers approved", _merge)
        if preview.action == ReviewAction.ESCALATE:
            return self._escalate(run_id, preview.reason, mutate=_merge)

        def _iterate(item: Run) -> None:
            self.review.apply(item, results)
            item.iteration += 1
            item.pending_instruction = findings_fix_instruction(item.open_blocking_findings)
            item.implementation_attempts = 0

        cited = ", ".join(finding.finding_id for finding in preview.blocking)
        return self._transition(
            run_id, Phase.IMPLEMENTATION, f"blocking findings {cited}", _iterate
        )

    async def _reflection(self, run: Run) -> Run:
        run_id = run.run_id
        done = {str(update.get("role")) for update in run.knowledge_updates}

        def _persist(update: dict[str, Any]) -> None:
            self.store.update(run_id, lambda item: item.knowledge_updates.append(update))

        await self.reflection.consolidate(self.store.get(run_id), skip=done, on_update=_persist)
        return self._transition(run_id, Phase.COMPLETE, "reflection finished")
