"""
ralph-town — run config loader.

File: src/ralph_town/config/loader.py
Last updated: 2026-10-19

Purpose
- Load the effective run config from defaults, a config file, env vars, and CLI overrides.

What should be included in this file
- Precedence logic: CLI > env (RALPH_) > file > defaults.
- File loading for TOML (``tomllib``), JSON, and YAML (``yaml.safe_load``).
- Deterministic environment variable mapping and coercion.
- Path normalization relative to config file location.
- Startup-time credential resolution and runtime credential checks.

Functional requirements
- Reject invalid/embedded-secret config via schema validation.
- Resolve secrets once into an explicit ``Credentials`` value.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, Literal

import yaml

from ralph_town.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from ralph_town.constants import DEFAULT_AGENT_COMMAND, DEFAULT_CONFIG_FILE, ENV_PREFIX
from ralph_town.domain.models import Credentials, RunConfig, RuntimeKind

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})

ValueKind = Literal["str", "int", "float", "bool"]


@dataclass(frozen=True, slots=True)
class _Binding:
    path: tuple[str, ...]
    value_type: ValueKind


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with deterministic precedence: CLI > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = dict(os.environ if environ is None else environ)

    file_payload = _load_config_file(resolved_path, required=config_path is not None)
    merged = merge_config(default_config(), file_payload)

    env_overrides = _collect_env_overrides(merged, env_map)
    cli_payload = _materialize_cli_overrides(dict(cli_overrides or {}))

    merged = merge_config(merged, env_overrides)
    merged = merge_config(merged, cli_payload)

    normalized = normalize_paths(merged, base_dir=resolved_path.parent)
    return assert_valid_config(normalized)


def load_run_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """Load, validate, and type the run config."""

    return RunConfig.from_config(
        load_config(config_path, cli_overrides=cli_overrides, environ=environ)
    )


def resolve_credentials(
    config: Mapping[str, Any], environ: Mapping[str, str] | None = None
) -> Credentials:
    """Read secret values once from the env var names declared in ``[credentials]``."""

    section = config.get("credentials", {})
    env_map = os.environ if environ is None else environ
    return Credentials.from_environ(section if isinstance(section, Mapping) else {}, env_map)


def validate_runtime_credentials(config: Mapping[str, Any], credentials: Credentials) -> None:
    """Fail fast when the selected runtime lacks a secret it will need."""

    names = config.get("credentials", {})
    execution = config.get("execution", {})
    agent = config.get("agent", {})
    missing: list[str] = []

    command = tuple(agent.get("command", DEFAULT_AGENT_COMMAND))
    if command[:1] == DEFAULT_AGENT_COMMAND[:1] and credentials.anthropic_api_key is None:
        missing.append(f"credentials.anthropic_api_key_env -> {names.get('anthropic_api_key_env')}")
    if (
        execution.get("runtime") == RuntimeKind.CLOUD.value
        and credentials.daytona_api_key is None
    ):
        missing.append(f"credentials.daytona_api_key_env -> {names.get('daytona_api_key_env')}")
    if config.get("repository", {}).get("url") and credentials.github_token is None:
        missing.append(f"credentials.github_token_env -> {names.get('github_token_env')}")

    if missing:
        details = ", ".join(sorted(missing))
        raise ConfigLoadError(f"missing required secret environment variable values: {details}")


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Normalize configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        _normalize_path_field(materialized, field_path, base_dir)
    return materialized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return deterministic JSON dump of redacted effective config."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    suffix = path.suffix.lower()
    try:
        if suffix == ".json":
            parsed = json.loads(path.read_text(encoding="utf-8"))
        elif suffix in _YAML_SUFFIXES:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        else:
            with path.open("rb") as handle:
                parsed = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigLoadError(f"invalid JSON in {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc

    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigLoadError(f"config root must be an object: {path}")
    return parsed


def _collect_env_overrides(
    config: Mapping[str, object], environ: Mapping[str, str]
) -> dict[str, Any]:
    bindings = _build_bindings(config)
    overrides: dict[str, Any] = {}
    for env_name in sorted(bindings):
        raw = environ.get(env_name)
        if raw is None:
            continue
        binding = bindings[env_name]
        value = _coerce_env(raw, binding.value_type, env_name, binding.path)
        _set_nested(overrides, binding.path, value)
    return overrides


def _build_bindings(config: Mapping[str, object]) -> dict[str, _Binding]:
    bindings: dict[str, _Binding] = {}

    for path, value in _iter_scalar_paths(config):
        if path[0] in {"meta", "credentials"}:
            continue
        kind = _kind_for_value(value)
        if kind is None:
            continue
        bindings[_env_name_for_path(path)] = _Binding(path=path, value_type=kind)

    # Optional scalars absent from the defaults.
    optional: tuple[_Binding, ...] = (
        _Binding(("task",), "str"),
        _Binding(("execution", "max_total_iterations"), "int"),
        _Binding(("execution", "workspace"), "str"),
        _Binding(("execution", "task_backpressure"), "str"),
        _Binding(("repository", "url"), "str"),
        _Binding(("repository", "working_dir"), "str"),
        _Binding(("git", "feature_branch"), "str"),
        _Binding(("git", "commit_message"), "str"),
        _Binding(("git", "pr_title"), "str"),
        _Binding(("git", "pr_body"), "str"),
        _Binding(("git", "install_command"), "str"),
        _Binding(("cloud", "api_url"), "str"),
        _Binding(("cloud", "target"), "str"),
    )
    for binding in optional:
        bindings.setdefault(_env_name_for_path(binding.path), binding)

    return bindings


def _iter_scalar_paths(
    payload: Mapping[str, object],
    prefix: tuple[str, ...] = (),
) -> list[tuple[tuple[str, ...], object]]:
    pairs: list[tuple[tuple[str, ...], object]] = []
    for key in sorted(payload):
        value = payload[key]
        path = (*prefix, key)
        if isinstance(value, Mapping):
            pairs.extend(_iter_scalar_paths(value, path))
        else:
            pairs.append((path, value))
    return pairs


def _kind_for_value(value: object) -> ValueKind | None:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "int"
    if isinstance(value, float):
        return "float"
    if isinstance(value, str):
        return "str"
    return None


def _coerce_env(raw: str, value_type: ValueKind, env_name: str, path: tuple[str, ...]) -> object:
    value = raw.strip()
    if value_type == "str":
        return value
    if value_type == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be an integer") from exc
    if value_type == "float":
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{env_name} -> {'.'.join(path)} must be a number") from exc

    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {'.'.join(path)} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _materialize_cli_overrides(cli_overrides: Mapping[str, object]) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key in sorted(cli_overrides):
        value = cli_overrides[key]
        if value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _set_nested(payload, path, value)
    return payload


def _set_nested(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    cursor = target
    for part in path[:-1]:
        next_node = cursor.get(part)
        if not isinstance(next_node, dict):
            next_node = {}
            cursor[part] = next_node
        cursor = next_node
    cursor[path[-1]] = value


def _get_nested(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    cursor: object = payload
    for part in path:
        if not isinstance(cursor, Mapping) or part not in cursor:
            return None
        cursor = cursor[part]
    return cursor


def _normalize_path_field(config: dict[str, Any], path: tuple[str, ...], base_dir: Path) -> None:
    value = _get_nested(config, path)
    if not isinstance(value, str):
        return
    _set_nested(config, path, _normalize_one_path(value, base_dir))


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    expanded = os.path.expandvars(raw)
    candidate = Path(expanded).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


def _env_name_for_path(path: tuple[str, ...]) -> str:
    return ENV_PREFIX + "_".join(part.upper() for part in path)


__all__ = [
    "ConfigLoadError",
    "dump_effective_config",
    "load_config",
    "load_run_config",
    "normalize_paths",
    "resolve_credentials",
    "validate_runtime_credentials",
]
