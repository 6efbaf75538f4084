"""
ralph-town — unit tests for layered config loading

File: tests/unit/config/test_config_loader.py
Last updated: 2026-10-19

Purpose
- Validate precedence (CLI > env > file > defaults) and file-format handling.

What this test file should cover
- TOML, JSON and YAML config files.
- RALPH_ env mapping and type coercion.
- Path normalization relative to the config file.
- Credential resolution and runtime credential checks.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ralph_town.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_run_config,
    resolve_credentials,
    validate_runtime_credentials,
)
from ralph_town.config.schema import ConfigValidationError
from ralph_town.domain.models import Credentials, ExecutionMode, RuntimeKind

_TOML = """
[meta]
schema_version = 1

[execution]
mode = "sequential"
max_concurrent = 2
workspace = "work"

[observability]
log_dir = "logs"

[[acceptance_criteria]]
id = "health"
description = "GET /health returns 200"
backpressure = "npm test -- health"
"""


def _write(path: Path, text: str) -> Path:
    path.write_text(text, encoding="utf-8")
    return path


def test_toml_file_overrides_defaults(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path / "ralph.toml", _TOML), environ={})

    assert config["execution"]["max_concurrent"] == 2
    assert config["execution"]["max_iterations_per_criterion"] == 3
    assert config["acceptance_criteria"][0]["id"] == "health"


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    path = _write(tmp_path / "ralph.toml", _TOML)
    environ = {"RALPH_EXECUTION_MAX_CONCURRENT": "4", "RALPH_BUDGET_MAX_TOKENS": "5000"}

    from_env = load_config(path, environ=environ)
    assert from_env["execution"]["max_concurrent"] == 4
    assert from_env["budget"]["max_tokens"] == 5000

    from_cli = load_config(
        path,
        environ=environ,
        cli_overrides={"execution.max_concurrent": 7, "execution.mode": None},
    )
    assert from_cli["execution"]["max_concurrent"] == 7
    assert from_cli["execution"]["mode"] == "sequential"


def test_env_booleans_and_optional_bindings(tmp_path: Path) -> None:
    path = _write(tmp_path / "ralph.toml", _TOML)
    config = load_config(
        path,
        environ={
            "RALPH_OBSERVABILITY_LOG_TO_STDOUT": "yes",
            "RALPH_EXECUTION_MAX_TOTAL_ITERATIONS": "9",
            "RALPH_GIT_FEATURE_BRANCH": "feature/health",
        },
    )

    assert config["observability"]["log_to_stdout"] is True
    assert config["execution"]["max_total_iterations"] == 9
    assert config["git"]["feature_branch"] == "feature/health"


@pytest.mark.parametrize(
    ("env_name", "raw", "fragment"),
    [
        ("RALPH_EXECUTION_MAX_CONCURRENT", "many", "-> execution.max_concurrent must be an integer"),
        ("RALPH_CLOUD_CREATE_TIMEOUT_S", "soon", "-> cloud.create_timeout_s must be a number"),
        ("RALPH_GIT_CREATE_PR", "maybe", "-> git.create_pr must be a boolean"),
    ],
)
def test_env_coercion_errors(tmp_path: Path, env_name: str, raw: str, fragment: str) -> None:
    path = _write(tmp_path / "ralph.toml", _TOML)

    with pytest.raises(ConfigLoadError) as info:
        load_config(path, environ={env_name: raw})

    assert str(info.value).startswith(f"{env_name} {fragment}")


def test_credentials_section_has_no_env_bindings(tmp_path: Path) -> None:
    path = _write(tmp_path / "ralph.toml", _TOML)

    config = load_config(path, environ={"RALPH_CREDENTIALS_GITHUB_TOKEN_ENV": "OTHER"})

    assert config["credentials"]["github_token_env"] == "GITHUB_TOKEN"


def test_json_and_yaml_files(tmp_path: Path) -> None:
    payload = {
        "meta": {"schema_version": 1},
        "acceptance_criteria": [{"id": "lint", "check_command": "npm run lint"}],
        "execution": {"mode": "parallel"},
    }
    json_path = _write(tmp_path / "ralph.json", json.dumps(payload))
    yaml_path = _write(
        tmp_path / "ralph.yaml",
        "meta:\n  schema_version: 1\n"
        "execution:\n  mode: parallel\n"
        "acceptance_criteria:\n  - id: lint\n    check_command: npm run lint\n",
    )

    from_json = load_config(json_path, environ={})
    from_yaml = load_config(yaml_path, environ={})

    assert from_json == from_yaml
    assert from_json["acceptance_criteria"][0]["backpressure"] == "npm run lint"


@pytest.mark.parametrize(
    ("name", "text", "fragment"),
    [
        ("ralph.toml", "[execution\nmode =", "invalid TOML in"),
        ("ralph.json", "{not json", "invalid JSON in"),
        ("ralph.yml", "key: [unclosed", "invalid YAML in"),
        ("ralph.json", "[1, 2]", "config root must be an object"),
    ],
)
def test_unreadable_files_raise_load_error(
    tmp_path: Path, name: str, text: str, fragment: str
) -> None:
    path = _write(tmp_path / name, text)

    with pytest.raises(ConfigLoadError, match=fragment):
        load_config(path, environ={})


def test_missing_explicit_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_missing_default_file_falls_back_to_env(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(
        environ={
            "RALPH_TASK": "Add a /health endpoint",
            "RALPH_EXECUTION_TASK_BACKPRESSURE": "npm test",
        }
    )

    assert config["task"] == "Add a /health endpoint"
    assert config["acceptance_criteria"] == []


def test_validation_errors_surface_after_merge(tmp_path: Path) -> None:
    path = _write(tmp_path / "ralph.toml", _TOML)

    with pytest.raises(ConfigValidationError) as info:
        load_config(path, environ={"RALPH_EXECUTION_MODE": "fanout"})

    assert [issue.path for issue in info.value.issues] == ["execution.mode"]


def test_paths_resolve_against_config_directory(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    config_dir = (tmp_path / "project").resolve()
    config_dir.mkdir()
    path = _write(config_dir / "ralph.toml", _TOML)
    monkeypatch.setenv("RALPH_TEST_HOME", str(tmp_path.resolve() / "elsewhere"))

    relative = load_config(path, environ={})
    expanded = load_config(
        path, cli_overrides={"observability.log_dir": "$RALPH_TEST_HOME/logs"}, environ={}
    )

    assert relative["execution"]["workspace"] == (config_dir / "work").as_posix()
    assert relative["observability"]["log_dir"] == (config_dir / "logs").as_posix()
    elsewhere = tmp_path.resolve() / "elsewhere" / "logs"
    assert expanded["observability"]["log_dir"] == elsewhere.as_posix()


def test_load_run_config_types_the_result(tmp_path: Path) -> None:
    run_config = load_run_config(_write(tmp_path / "ralph.toml", _TOML), environ={})

    assert run_config.execution.mode is ExecutionMode.SEQUENTIAL
    assert run_config.execution.runtime is RuntimeKind.LOCAL
    assert [criterion.id for criterion in run_config.criteria] == ["health"]


def test_resolve_credentials_reads_declared_env_names(tmp_path: Path) -> None:
    config = load_config(_write(tmp_path / "ralph.toml", _TOML), environ={})

    credentials = resolve_credentials(
        config, {"ANTHROPIC_API_KEY": " sk-ant-1 ", "GITHUB_TOKEN": "", "OTHER": "x"}
    )

    assert credentials.anthropic_api_key == "sk-ant-1"
    assert credentials.github_token is None
    assert credentials.daytona_api_key is None


def test_runtime_credentials_report_every_missing_secret(tmp_path: Path) -> None:
    config = load_config(
        _write(tmp_path / "ralph.toml", _TOML),
        cli_overrides={"execution.runtime": "cloud", "repository.url": "https://github.com/o/r"},
        environ={},
    )

    with pytest.raises(ConfigLoadError) as info:
        validate_runtime_credentials(config, Credentials())

    message = str(info.value)
    assert message.startswith("missing required secret environment variable values: ")
    assert "credentials.anthropic_api_key_env -> ANTHROPIC_API_KEY" in message
    assert "credentials.daytona_api_key_env -> DAYTONA_API_KEY" in message
    assert "credentials.github_token_env -> GITHUB_TOKEN" in message

    validate_runtime_credentials(
        config,
        Credentials(anthropic_api_key="a", github_token="g", daytona_api_key="d"),
    )


def test_custom_agent_command_does_not_need_anthropic_key(tmp_path: Path) -> None:
    config = load_config(
        _write(tmp_path / "ralph.toml", _TOML),
        cli_overrides={"agent.command": ["my-agent", "--prompt", "{prompt}"]},
        environ={},
    )

    validate_runtime_credentials(config, Credentials())


def test_dump_effective_config_is_sorted_and_redacted() -> None:
    dumped = dump_effective_config(
        {"execution": {"mode": "parallel"}, "agent": {"api_key": "sk-ant-1"}}
    )

    assert dumped == '{"agent":{"api_key":"<redacted>"},"execution":{"mode":"parallel"}}'
