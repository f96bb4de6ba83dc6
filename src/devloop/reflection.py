from __future__ import annotations

import logging
from collections.abc import Callable, Collection
from typing import Any

from devloop.errors import GatewayError
from devloop.gateway import WorkerGateway
from devloop.instructions import reflection_instruction
from devloop.knowledge import KnowledgeBase
from devloop.models import Run, utcnow_iso

logger = logging.getLogger(__name__)

CHANGE_KINDS = ("added", "updated", "pruned")


def _normalize_changes(raw: dict[str, Any]) -> dict[str, list[str]]:
    changes: dict[str, list[str]] = {}
    for kind in CHANGE_KINDS:
        value = raw.get(kind, [])
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            value = []
        changes[kind] = [str(item) for item in value if str(item).strip()]
    return changes


class ReflectionConsolidator:
    """Resumes every participant, one at a time, so it can curate its own knowledge."""

    def __init__(
        self,
        gateway: WorkerGateway,
        knowledge: KnowledgeBase,
        reviewers: list[str],
    ) -> None:
        self.gateway = gateway
        self.knowledge = knowledge
        self.reviewers = list(reviewers)

    def order(self, run: Run) -> list[str]:
        roles = ["implementer", *self.reviewers]
        return [role for role in roles if role in run.participants]

    async def reflect_one(self, run: Run, role: str) -> dict[str, Any]:
        entries_before = len(self.knowledge.load(role))
        instruction = reflection_instruction(role, str(self.knowledge.role_dir(role)))
        update: dict[str, Any] = {
            "role": role,
            "at": utcnow_iso(),
            "entries_before": entries_before,
        }
        try:
            invocation = await self.gateway.resume(run.run_id, role, instruction)
        except GatewayError as exc:
            logger.warning("Run %s: reflection for %s failed: %s", run.run_id, role, exc)
            update.update({"outcome": "failed", "error": str(exc)})
            return update

        result = invocation.result
        update["entries_after"] = len(self.knowledge.load(role))
        if not result.succeeded:
            update.update({"outcome": "failed", "error": result.error, "summary": result.summary})
            return update
        changes = _normalize_changes(result.knowledge_changes)
        changed = any(changes[kind] for kind in CHANGE_KINDS)
        update.update(
            {
                "outcome": "updated" if changed else "no_changes",
                "changes": changes,
                "summary": result.summary,
            }
        )
        logger.info("Run %s: reflection for %s: %s", run.run_id, role, update["outcome"])
        return update

    async def consolidate(
        self,
        run: Run,
        *,
        skip: Collection[str] = (),
        on_update: Callable[[dict[str, Any]], None] | None = None,
    ) -> list[dict[str, Any]]:
        """Reflect every participant in fixed order, strictly one after another.

        Roles in ``skip`` already reflected in an earlier, interrupted attempt.
        """
        updates: list[dict[str, Any]] = []
        for role in self.order(run):
            if role in skip:
                continue
            update = await self.reflect_one(run, role)
            if on_update is not None:
                on_update(update)
            updates.append(update)
        return updates
