"""Verification gate: runs the external pipeline and reduces its output to one outcome."""
from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
import time
from contextlib import suppress
from pathlib import Path
from typing import Any

from devloop.errors import VerificationError
from devloop.models import GateOutcome, LayerResult, LayerVerdict, Run, VerificationReport

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
SCRIPT_ERROR_EXIT_CODE = 2
OUTPUT_TAIL_CHARS = 1000

_STATUS_VERDICTS = {
    "pass": LayerVerdict.PASS,
    "passed": LayerVerdict.PASS,
    "ok": LayerVerdict.PASS,
    "fail": LayerVerdict.FAIL,
    "failed": LayerVerdict.FAIL,
    "error": LayerVerdict.FAIL,
    "skip": LayerVerdict.SKIP,
    "skipped": LayerVerdict.SKIP,
    "unclear": LayerVerdict.UNCLEAR,
    "warn": LayerVerdict.UNCLEAR,
    "warning": LayerVerdict.UNCLEAR,
}


def _verdict(raw: object) -> LayerVerdict:
    # Anything the pipeline labels in a way we do not know must not count as a pass.
    return _STATUS_VERDICTS.get(str(raw or "").strip().lower(), LayerVerdict.UNCLEAR)


def _json_documents(output: str) -> list[dict[str, Any]]:
    text = output.strip()
    if not text:
        return []
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return [parsed]
    documents: list[dict[str, Any]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            item = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(item, dict):
            documents.append(item)
    return documents


def _layers_document(document: dict[str, Any]) -> list[LayerResult] | None:
    raw_layers = document.get("layers")
    if not isinstance(raw_layers, list):
        return None
    layers: list[LayerResult] = []
    for item in raw_layers:
        if not isinstance(item, dict) or not item.get("name"):
            continue
        layers.append(
            LayerResult(
                name=str(item["name"]),
                verdict=_verdict(item.get("verdict", item.get("status"))),
                detail=str(item.get("detail") or ""),
            )
        )
    return layers


def _failures_document(document: dict[str, Any]) -> list[LayerResult] | None:
    if "passed" not in document or not isinstance(document.get("failures"), list):
        return None
    layers: list[LayerResult] = []
    for item in document["failures"]:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or item.get("type") or "check")
        kind = str(item.get("type") or "").strip()
        detail = str(item.get("message") or "").strip()
        hint = str(item.get("hint") or "").strip()
        if hint:
            detail = f"{detail} Hint: {hint}".strip()
        layers.append(
            LayerResult(
                name=f"{kind}:{name}" if kind and kind != name else name,
                verdict=LayerVerdict.FAIL,
                detail=detail,
            )
        )
    level = str(document.get("layer") or "pipeline")
    stopped_at = document.get("layer_failed")
    if isinstance(stopped_at, str) and stopped_at not in ("", "null"):
        layers.append(
            LayerResult(
                name=f"{level}:after-{stopped_at}",
                verdict=LayerVerdict.SKIP,
                detail=f"Pipeline stopped after the {stopped_at} layer failed.",
            )
        )
    if document.get("passed") is True and not layers:
        layers.append(LayerResult(name=level, verdict=LayerVerdict.PASS))
    return layers


def _check_lines(documents: list[dict[str, Any]]) -> list[LayerResult]:
    layers: list[LayerResult] = []
    for item in documents:
        if "check" not in item or "status" not in item:
            continue
        layers.append(
            LayerResult(
                name=str(item["check"]),
                verdict=_verdict(item["status"]),
                detail=str(item.get("detail") or item.get("message") or ""),
            )
        )
    return layers


def parse_layers(output: str) -> list[LayerResult]:
    documents = _json_documents(output)
    if len(documents) == 1:
        for parser in (_layers_document, _failures_document):
            layers = parser(documents[0])
            if layers is not None:
                return layers
    return _check_lines(documents)


def reduce_outcome(
    layers: list[LayerResult], *, unclear_blocks: bool, pipeline_error: bool = False
) -> GateOutcome:
    # An errored or timed-out pipeline blocks regardless of unclear_blocks.
    verdicts = {layer.verdict for layer in layers}
    if LayerVerdict.FAIL in verdicts:
        return GateOutcome.FAIL
    if pipeline_error:
        return GateOutcome.UNCLEAR
    if LayerVerdict.UNCLEAR in verdicts and unclear_blocks:
        return GateOutcome.UNCLEAR
    return GateOutcome.PASS


def _tail(text: str) -> str:
    return text.strip()[-OUTPUT_TAIL_CHARS:]


class VerificationGate:
    def __init__(
        self,
        command: str,
        *,
        timeout_seconds: float | None = None,
        pass_changed_files: bool = False,
        unclear_blocks: bool = False,
        working_directory: Path | None = None,
    ) -> None:
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.pass_changed_files = pass_changed_files
        self.unclear_blocks = unclear_blocks
        self.working_directory = working_directory

    def _command_payload(self, changed_files: list[str]) -> str | list[str]:
        """Argument vector for plain commands, a shell string when shell syntax is present."""
        command_text = self.command.strip()
        if not command_text:
            raise VerificationError("Verification command is empty.")
        extra = changed_files if self.pass_changed_files else []
        if not SHELL_REQUIRED_PATTERN.search(command_text):
            try:
                return [*shlex.split(command_text), *extra]
            except ValueError:
                pass
        if extra:
            command_text = " ".join([command_text, *(shlex.quote(path) for path in extra)])
        return command_text

    async def _spawn(self, payload: str | list[str]) -> asyncio.subprocess.Process:
        cwd = str(self.working_directory) if self.working_directory else None
        try:
            if isinstance(payload, str):
                return await asyncio.create_subprocess_shell(
                    payload,
                    cwd=cwd,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            return await asyncio.create_subprocess_exec(
                *payload,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise VerificationError(f"Verification command not found: {exc}") from exc

    async def verify(self, run: Run) -> VerificationReport:
        payload = self._command_payload(run.changed_files)
        started = time.monotonic()
        process = await self._spawn(payload)
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            layers = [
                LayerResult(
                    name="pipeline",
                    verdict=LayerVerdict.UNCLEAR,
                    detail=f"Verification timed out after {self.timeout_seconds:.0f}s.",
                )
            ]
            return self._report(layers, None, started, pipeline_error=True)
        except asyncio.CancelledError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise
        return self.evaluate(
            process.returncode if process.returncode is not None else -1,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
            started=started,
        )

    def evaluate(
        self,
        exit_code: int,
        stdout: str,
        stderr: str = "",
        *,
        started: float | None = None,
    ) -> VerificationReport:
        """Turn raw pipeline results into a report."""
        layers = parse_layers(stdout)
        script_error = exit_code == SCRIPT_ERROR_EXIT_CODE and not any(
            layer.verdict == LayerVerdict.FAIL for layer in layers
        )
        if script_error:
            layers.append(
                LayerResult(
                    name="pipeline",
                    verdict=LayerVerdict.UNCLEAR,
                    detail=f"Verification script error: {_tail(stderr or stdout)}",
                )
            )
        elif exit_code != 0 and not any(layer.verdict == LayerVerdict.FAIL for layer in layers):
            layers.append(
                LayerResult(
                    name="pipeline",
                    verdict=LayerVerdict.FAIL,
                    detail=f"Exit code {exit_code}: {_tail(stderr or stdout)}",
                )
            )
        elif exit_code == 0 and not layers:
            layers.append(LayerResult(name="pipeline", verdict=LayerVerdict.PASS))
        return self._report(layers, exit_code, started, pipeline_error=script_error)

    def _report(
        self,
        layers: list[LayerResult],
        exit_code: int | None,
        started: float | None,
        *,
        pipeline_error: bool = False,
    ) -> VerificationReport:
        report = VerificationReport(
            layers=layers,
            outcome=reduce_outcome(
                layers, unclear_blocks=self.unclear_blocks, pipeline_error=pipeline_error
            ),
            exit_code=exit_code,
            duration_seconds=round(time.monotonic() - started, 3) if started is not None else 0.0,
        )
        logger.info(
            "Verification %s: %s",
            report.outcome.value,
            ", ".join(f"{layer.name}={layer.verdict.value}" for layer in layers),
        )
        return report
