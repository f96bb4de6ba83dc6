from __future__ import annotations

import asyncio
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from devloop.backends import ClaudeCodeBackend, CodexBackend, ResilientBackend, RetryPolicy
from devloop.budget import Budget
from devloop.config import BackendName, DevloopConfig, load_config, save_config
from devloop.errors import ConfigError, RunStateError
from devloop.gateway import WorkerGateway
from devloop.knowledge import KnowledgeBase
from devloop.logging_config import setup_logging
from devloop.machine import IMPLEMENTER, PhaseStateMachine, summarize_runs
from devloop.models import Phase, Run
from devloop.record import RecordWriter
from devloop.reflection import ReflectionConsolidator
from devloop.review import ReviewConvergenceEngine
from devloop.specialists import ImplementerAgent, ReviewerAgent, SpecialistAgent
from devloop.state import RunStore
from devloop.verification import VerificationGate

EXIT_COMPLETE = 0
EXIT_BLOCKED = 1
EXIT_INVOCATION_ERROR = 2

DEFAULT_CONFIG = "devloop.toml"


class InvocationError(click.ClickException):
    """Bad arguments, unreadable configuration, or an unusable run store."""

    exit_code = EXIT_INVOCATION_ERROR


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: DevloopConfig
    store: RunStore
    machine: PhaseStateMachine


def _resolve_path(repo_root: Path, value: str) -> Path:
    path = Path(value)
    if not path.is_absolute():
        path = repo_root / path
    return path.resolve()


def _load(repo_root: Path, config_value: str) -> tuple[Path, DevloopConfig]:
    config_path = _resolve_path(repo_root, config_value)
    try:
        return config_path, load_config(config_path)
    except ConfigError as exc:
        raise InvocationError(str(exc)) from exc


def _open_store(repo_root: Path, config: DevloopConfig) -> RunStore:
    try:
        return RunStore(_resolve_path(repo_root, config.state.state_dir))
    except RunStateError as exc:
        raise InvocationError(str(exc)) from exc


def _configure_logging(repo_root: Path, config: DevloopConfig) -> None:
    state_dir = _resolve_path(repo_root, config.state.state_dir)
    log_file = (
        _resolve_path(repo_root, config.logging.file)
        if config.logging.file
        else state_dir / "logs" / "devloop.log"
    )
    setup_logging(config.logging.level, log_file)


def _load_checklists(repo_root: Path, config: DevloopConfig) -> dict[str, str]:
    if not config.review.checklist_dir:
        return {}
    checklist_dir = _resolve_path(repo_root, config.review.checklist_dir)
    checklists: dict[str, str] = {}
    for role in config.review.reviewers:
        path = checklist_dir / f"{role}.md"
        try:
            checklists[role] = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Missing checklist for reviewer {role}: {path}") from exc
    return checklists


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _build_backend(config: DevloopConfig, repo_root: Path) -> ResilientBackend:
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=config.backend.primary,
        primary_backend=_build_single_backend(config.backend.primary, repo_root),
        fallback_name=config.backend.fallback,
        fallback_backend=_build_single_backend(config.backend.fallback, repo_root),
        retry_policy=policy,
    )


def _build_specialists(
    backend: ResilientBackend, config: DevloopConfig
) -> dict[str, SpecialistAgent]:
    specialists: dict[str, SpecialistAgent] = {
        IMPLEMENTER: ImplementerAgent(backend, model=config.agents.implementer_model or None),
    }
    for role in config.review.reviewers:
        specialists[role] = ReviewerAgent(
            backend,
            role=role,
            model=config.agents.reviewer_model or None,
        )
    return specialists


def _load_runtime(repo_root: Path, config_value: str) -> Runtime:
    config_path, config = _load(repo_root, config_value)
    try:
        checklists = _load_checklists(repo_root, config)
    except ConfigError as exc:
        raise InvocationError(str(exc)) from exc
    store = _open_store(repo_root, config)
    _configure_logging(repo_root, config)

    backend = _build_backend(config, repo_root)
    gateway = WorkerGateway(
        store,
        _build_specialists(backend, config),
        store.state_dir / "checkpoints",
    )
    for hooked in (backend, backend.primary_backend, backend.fallback_backend):
        hooked.event_hook = gateway.capture_event

    knowledge = KnowledgeBase(_resolve_path(repo_root, config.state.knowledge_dir))
    reviewers = list(config.review.reviewers)
    machine = PhaseStateMachine(
        store=store,
        gateway=gateway,
        gate=VerificationGate(
            config.project.verify_command,
            timeout_seconds=config.project.verify_timeout_seconds,
            pass_changed_files=config.project.pass_changed_files,
            unclear_blocks=config.project.unclear_blocks,
            working_directory=repo_root,
        ),
        review=ReviewConvergenceEngine(
            gateway,
            reviewers,
            checklists,
            knowledge=knowledge,
            max_iterations=config.review.max_iterations,
            similarity_threshold=config.review.similarity_threshold,
        ),
        reflection=ReflectionConsolidator(gateway, knowledge, reviewers),
        budget=Budget.from_config(config.budget),
        knowledge=knowledge,
        reviewers=reviewers,
        checklists=checklists,
        require_checklists=bool(config.review.checklist_dir),
        record_writer=RecordWriter(store.state_dir / "records"),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        machine=machine,
    )


def _report(run: Run) -> int:
    click.echo(f"Run ID: {run.run_id}")
    click.echo(f"Phase: {run.phase.value}")
    click.echo(f"Iteration: {run.iteration}")
    if run.phase == Phase.COMPLETE:
        return EXIT_COMPLETE
    if run.escalation is not None:
        click.echo(f"Escalation: {run.escalation.reason}")
        for item in run.escalation.open_findings:
            click.echo(f"  {item}")
    return EXIT_BLOCKED


def _drive(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except RunStateError as exc:
        raise InvocationError(str(exc)) from exc


@click.group()
def cli() -> None:
    """Development-loop orchestrator."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path, config = _load(repo_root, config_value)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    store = _open_store(repo_root, config)
    knowledge = KnowledgeBase(_resolve_path(repo_root, config.state.knowledge_dir))
    for role in (IMPLEMENTER, *config.review.reviewers):
        knowledge.role_dir(role).mkdir(parents=True, exist_ok=True)

    click.echo(f"Initialized devloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {store.state_dir}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")
    click.echo(f"Reviewers: {', '.join(config.review.reviewers)}")


@cli.command("start")
@click.argument("task")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def start_command(task: str, config_value: str) -> None:
    if not task.strip():
        raise InvocationError("Task description must not be empty.")
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    run = _drive(runtime.machine.start(task))
    sys.exit(_report(run))


@cli.command("resume")
@click.argument("run_id", required=False)
@click.option("--all", "resume_all", is_flag=True, default=False, help="Resume every active run.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def resume_command(run_id: str | None, resume_all: bool, config_value: str) -> None:
    if bool(run_id) == resume_all:
        raise click.UsageError("Give exactly one of RUN_ID or --all.")
    runtime = _load_runtime(Path.cwd().resolve(), config_value)
    if run_id:
        run = _drive(runtime.machine.drive(run_id))
        sys.exit(_report(run))

    runs = _drive(runtime.machine.recover())
    if not runs:
        click.echo("No active runs.")
        return
    codes = [_report(run) for run in runs]
    sys.exit(max(codes))


def _status_text(rows: list[dict[str, Any]]) -> str:
    if not rows:
        return "No runs found."
    lines = [f"{'RUN':<34} {'PHASE':<15} {'ITER':>4}  {'AGENT':<12} TASK"]
    for row in rows:
        task = row["task"].splitlines()[0] if row["task"] else ""
        if len(task) > 60:
            task = f"{task[:57]}..."
        lines.append(
            f"{row['run_id']:<34} {row['phase']:<15} {row['iteration']:>4}  "
            f"{str(row['agent'])[:12]:<12} {task}"
        )
    return "\n".join(lines)


@cli.command("status")
@click.option("--active-only", is_flag=True, default=False)
@click.option("--complete-only", is_flag=True, default=False)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(
    active_only: bool, complete_only: bool, output_format: str, config_value: str
) -> None:
    if active_only and complete_only:
        raise click.UsageError("--active-only and --complete-only are mutually exclusive.")
    repo_root = Path.cwd().resolve()
    _, config = _load(repo_root, config_value)
    store = _open_store(repo_root, config)
    try:
        runs = store.list_runs()
    except RunStateError as exc:
        raise InvocationError(str(exc)) from exc
    rows = summarize_runs(runs, active_only=active_only, complete_only=complete_only)
    if output_format == "json":
        payload = {
            "runs": rows,
            "total": len(runs),
            "active": sum(1 for run in runs if not run.phase.terminal),
            "complete": sum(1 for run in runs if run.phase == Phase.COMPLETE),
            "blocked": sum(1 for run in runs if run.phase == Phase.BLOCKED),
        }
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    click.echo(_status_text(rows))
