"""Parsing of the structured completion block every worker must emit.

Only the block is trusted. Free prose around it is never interpreted, and output without a
well-formed block is a failure.
"""
from __future__ import annotations

import json
import re
from typing import Any

from devloop.models import ReportedFinding, Severity, Verdict, WorkerResult

RESULT_BLOCK_PATTERN = re.compile(r"```(?:result|json)[ \t]*\n(.*?)```", re.DOTALL)

RESULT_BLOCK_EXAMPLE = """```result
{"status": "success", "summary": "<one paragraph>", "files_modified": ["path"], "error": "none"}
```"""

_SEVERITY_ALIASES = {
    "tech-debt": Severity.TECH_DEBT,
    "techdebt": Severity.TECH_DEBT,
    "debt": Severity.TECH_DEBT,
}


def _candidate_payloads(content: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for match in RESULT_BLOCK_PATTERN.finditer(content):
        try:
            parsed = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    if payloads:
        return payloads
    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def parse_severity(raw: object) -> Severity | None:
    normalized = str(raw or "").strip().lower().replace(" ", "_")
    if normalized in _SEVERITY_ALIASES:
        return _SEVERITY_ALIASES[normalized]
    try:
        return Severity(normalized)
    except ValueError:
        return None


def _parse_findings(raw: object) -> list[ReportedFinding]:
    if not isinstance(raw, list):
        return []
    findings: list[ReportedFinding] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        description = str(item.get("description") or "").strip()
        severity = parse_severity(item.get("severity"))
        if not description:
            continue
        # An unlabelled finding is treated as the most severe label, never silently ignored.
        findings.append(
            ReportedFinding(severity=severity or Severity.BLOCKER, description=description)
        )
    return findings


def _parse_verdict(raw: object) -> Verdict | None:
    normalized = str(raw or "").strip().lower().replace("-", "_").replace(" ", "_")
    if normalized in {"approve", "approved"}:
        return Verdict.APPROVE
    if normalized in {"request_changes", "changes_requested", "reject"}:
        return Verdict.REQUEST_CHANGES
    return None


def missing_signal(content: str, reason: str) -> WorkerResult:
    return WorkerResult(status="failure", summary="", error=reason, raw=content)


def parse_completion(content: str) -> WorkerResult:
    """Return the last well-formed completion block in ``content``."""
    for payload in reversed(_candidate_payloads(content)):
        status = str(payload.get("status", "")).strip().lower()
        summary = payload.get("summary")
        if status not in {"success", "failure"} or not isinstance(summary, str):
            continue
        files = payload.get("files_modified", [])
        if not isinstance(files, list):
            files = []
        error = payload.get("error")
        gap = payload.get("architectural_gap")
        if isinstance(gap, str) and gap.strip().lower() in {"none", "no", "n/a"}:
            gap = None
        changes = payload.get("knowledge_changes")
        return WorkerResult(
            status=status,
            summary=summary.strip(),
            files_modified=[str(path) for path in files if str(path).strip()],
            error=str(error).strip() if error not in (None, "") else "none",
            verdict=_parse_verdict(payload.get("verdict")),
            findings=_parse_findings(payload.get("findings")),
            architectural_gap=str(gap).strip() if gap not in (None, "", False) else None,
            knowledge_changes=changes if isinstance(changes, dict) else {},
            raw=content,
        )
    return missing_signal(content, "Worker output did not contain a structured completion block.")
