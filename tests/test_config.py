import tomllib
from pathlib import Path

import pytest

from devloop import __version__
from devloop.budget import Budget
from devloop.config import DevloopConfig, dumps_toml, load_config, save_config
from devloop.errors import ConfigError
from devloop.models import Phase


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "devloop.toml"
    config = DevloopConfig.default()
    config.project.name = "devloop-test"
    config.project.verify_command = "make verify"
    config.project.unclear_blocks = True
    config.backend.primary = "codex"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.review.reviewers = ["security-reviewer", "test-reviewer"]
    config.review.max_iterations = 4
    config.review.similarity_threshold = 0.9
    config.budget.validation_max_rounds = 2
    config.state.state_dir = ".loop"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.project.name == "devloop-test"
    assert loaded.project.verify_command == "make verify"
    assert loaded.project.unclear_blocks is True
    assert loaded.backend.primary == "codex"
    assert loaded.backend.fallback == "claude"
    assert loaded.backend.max_retries == 3
    assert loaded.review.reviewers == ["security-reviewer", "test-reviewer"]
    assert loaded.review.max_iterations == 4
    assert loaded.review.similarity_threshold == pytest.approx(0.9)
    assert loaded.budget.validation_max_rounds == 2
    assert loaded.state.state_dir == ".loop"


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.review.max_iterations == 5
    assert loaded.review.reviewers == ["security-reviewer", "test-reviewer", "code-reviewer"]
    assert loaded.backend.primary == "claude"


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(DevloopConfig.default())

    for section in ("[project]", "[backend]", "[agents]", "[review]", "[budget]", "[state]"):
        assert section in rendered
    assert "max_retries" in rendered
    assert "similarity_threshold" in rendered
    assert "run_timeout_seconds" in rendered


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "devloop.toml"
    config_path.write_text("[review]\nmax_iteration = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="max_iteration"):
        load_config(config_path)


def test_unknown_section_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "devloop.toml"
    config_path.write_text("[workflow]\nmode = 'fast'\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="workflow"):
        load_config(config_path)


def test_implementer_cannot_be_a_reviewer(tmp_path: Path) -> None:
    config_path = tmp_path / "devloop.toml"
    config_path.write_text('[review]\nreviewers = ["implementer"]\n', encoding="utf-8")

    with pytest.raises(ConfigError, match="reserved"):
        load_config(config_path)


def test_malformed_toml_is_a_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "devloop.toml"
    config_path.write_text("[review\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="Could not read config"):
        load_config(config_path)


def test_budget_is_built_from_config() -> None:
    config = DevloopConfig.default()
    config.budget.planning_max_rounds = 2
    config.budget.implementation_timeout_seconds = 120.0

    budget = Budget.from_config(config.budget)

    assert budget.max_rounds(Phase.PLANNING) == 2
    assert budget.for_phase(Phase.IMPLEMENTATION).timeout_seconds == 120.0
    assert budget.max_rounds(Phase.CODE_REVIEW) is None
    assert budget.run_timeout_seconds == 3600.0


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]


def test_pyproject_declares_no_readme() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert "readme" not in pyproject["project"]
    assert pyproject["project"]["scripts"]["devloop"] == "devloop.cli:cli"
