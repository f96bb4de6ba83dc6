import json
import sys
from pathlib import Path

import pytest
from click.testing import CliRunner

from devloop.backends import ResilientBackend, RetryPolicy
from devloop.cli import cli
from devloop.config import load_config, save_config

from fakes import ScriptedBackend


@pytest.fixture()
def repo(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    monkeypatch.chdir(root)
    backend = ScriptedBackend()
    monkeypatch.setattr(
        "devloop.cli._build_backend",
        lambda config, repo_root: ResilientBackend(
            primary_name="claude",
            primary_backend=backend,
            fallback_name="claude",
            fallback_backend=backend,
            retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=5.0),
        ),
    )
    monkeypatch.setattr("devloop.cli._configure_logging", lambda repo_root, config: None)
    return root


def _set_verify_command(config_path: Path, command: str) -> None:
    config = load_config(config_path)
    config.project.verify_command = command
    save_config(config_path, config)


def test_cli_full_lifecycle_commands(repo: Path) -> None:
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--backend", "codex"])
    assert init_result.exit_code == 0
    assert (repo / "devloop.toml").exists()
    assert (repo / ".devloop" / "knowledge" / "implementer").is_dir()
    assert (repo / ".devloop" / "knowledge" / "security-reviewer").is_dir()
    assert load_config(repo / "devloop.toml").backend.primary == "codex"

    _set_verify_command(repo / "devloop.toml", f"{sys.executable} -c \"print('verify ok')\"")

    start_result = runner.invoke(cli, ["start", "Add a health check endpoint"])
    assert start_result.exit_code == 0, start_result.output
    assert "Run ID:" in start_result.output
    assert "Phase: complete" in start_result.output

    status_result = runner.invoke(cli, ["status", "--format", "json"])
    assert status_result.exit_code == 0
    payload = json.loads(status_result.output)
    assert payload["total"] == 1
    assert payload["complete"] == 1
    assert payload["runs"][0]["phase"] == "complete"
    assert payload["runs"][0]["task"] == "Add a health check endpoint"

    text_result = runner.invoke(cli, ["status"])
    assert text_result.exit_code == 0
    assert payload["runs"][0]["run_id"] in text_result.output

    records = list((repo / ".devloop" / "records").glob("run-*.md"))
    assert len(records) == 1


def test_blocked_run_exits_with_one(repo: Path) -> None:
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _set_verify_command(repo / "devloop.toml", str(repo / "missing-verify-script"))

    result = runner.invoke(cli, ["start", "Add a health check endpoint"])

    assert result.exit_code == 1
    assert "Phase: blocked" in result.output
    assert "Escalation: Verification pipeline unusable" in result.output

    active = runner.invoke(cli, ["status", "--active-only", "--format", "json"])
    assert json.loads(active.output)["runs"] == []
    assert json.loads(active.output)["blocked"] == 1


def test_status_flags_are_mutually_exclusive(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["status", "--active-only", "--complete-only"])

    assert result.exit_code == 2
    assert "mutually exclusive" in result.output


def test_resume_unknown_run_is_an_invocation_error(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["resume", "run-does-not-exist"])

    assert result.exit_code == 2
    assert "Run not found" in result.output


def test_resume_requires_run_id_or_all(repo: Path) -> None:
    runner = CliRunner()

    assert runner.invoke(cli, ["resume"]).exit_code == 2
    assert runner.invoke(cli, ["resume", "run-x", "--all"]).exit_code == 2


def test_resume_all_without_active_runs(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["resume", "--all"])

    assert result.exit_code == 0
    assert "No active runs." in result.output


def test_invalid_config_is_an_invocation_error(repo: Path) -> None:
    (repo / "devloop.toml").write_text("[review]\nmax_iterations = 0\n", encoding="utf-8")

    result = CliRunner().invoke(cli, ["status"])

    assert result.exit_code == 2
    assert "max_iterations" in result.output


def test_empty_task_is_rejected(repo: Path) -> None:
    result = CliRunner().invoke(cli, ["start", "   "])

    assert result.exit_code == 2
