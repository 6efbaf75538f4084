"""
ralph-town — configuration schema and validation.

File: src/ralph_town/config/schema.py
Last updated: 2026-10-19

Purpose
- Define authoritative run-configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric constraints.
- Acceptance-criteria validation (required fields, unique ids, legacy alias).
- Deterministic deep-merge helpers and redaction of sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Reject embedded secret values; only env var names are accepted.

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from ralph_town import constants
from ralph_town.domain.models import ExecutionMode, RuntimeKind
from ralph_town.sandbox.git_ops import SanitizationError, validate_branch_name

ConfigSchemaVersion: Final[int] = constants.CONFIG_SCHEMA_VERSION
LOG_LEVELS: Final[tuple[str, ...]] = ("CRITICAL", "DEBUG", "ERROR", "INFO", "WARNING")

_ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {
        "secret",
        "token",
        "password",
        "api",
        "key",
        "apikey",
        "private",
        "credential",
        "credentials",
        "auth",
    }
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "private_key",
    "password",
    "secret",
)

# Config paths normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("execution", "workspace"),
    ("observability", "log_dir"),
)

DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "acceptance_criteria": [],
    "execution": {
        "mode": ExecutionMode.SEQUENTIAL.value,
        "runtime": RuntimeKind.LOCAL.value,
        "max_concurrent": constants.DEFAULT_MAX_CONCURRENT,
        "max_iterations_per_criterion": constants.DEFAULT_MAX_ITERATIONS_PER_CRITERION,
        "model": constants.DEFAULT_MODEL,
        "verify_timeout_ms": constants.DEFAULT_VERIFY_TIMEOUT_MS,
        "progress_tail_chars": constants.DEFAULT_PROGRESS_TAIL_CHARS,
        "failure_excerpt_chars": constants.DEFAULT_FAILURE_EXCERPT_CHARS,
        "feedback_commands": [],
    },
    "budget": {"max_tokens": constants.DEFAULT_MAX_TOKENS},
    "retry": {
        "max_attempts": constants.DEFAULT_RETRY_ATTEMPTS,
        "base_delay_ms": constants.DEFAULT_RETRY_BASE_DELAY_MS,
    },
    "agent": {
        "command": list(constants.DEFAULT_AGENT_COMMAND),
        "timeout_ms": constants.DEFAULT_AGENT_TIMEOUT_MS,
    },
    "container": {
        "image": constants.DEFAULT_CONTAINER_IMAGE,
        "base_image": constants.DEFAULT_BASE_IMAGE,
        "setup_commands": list(constants.DEFAULT_SETUP_COMMANDS),
        "workspace_dir": constants.DEFAULT_CONTAINER_WORKSPACE,
    },
    "cloud": {
        "base_image": constants.DEFAULT_BASE_IMAGE,
        "setup_commands": list(constants.DEFAULT_SETUP_COMMANDS),
        "baseline_command": constants.DEFAULT_BASELINE_COMMAND,
        "create_timeout_s": 120.0,
        "workspace_dir": constants.DEFAULT_CLOUD_WORKSPACE,
    },
    "repository": {"branch": constants.DEFAULT_BASE_BRANCH},
    "git": {
        "commit_author": constants.DEFAULT_COMMIT_AUTHOR,
        "commit_email": constants.DEFAULT_COMMIT_EMAIL,
        "create_pr": False,
    },
    "credentials": {
        "anthropic_api_key_env": "ANTHROPIC_API_KEY",
        "github_token_env": "GITHUB_TOKEN",
        "daytona_api_key_env": "DAYTONA_API_KEY",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": ".ralph/logs",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> dict[str, Any]:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade ralph.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the ralph-town runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    return redacted if isinstance(redacted, dict) else {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "execution": _validate_execution,
        "budget": _validate_budget,
        "retry": _validate_retry,
        "agent": _validate_agent,
        "container": _validate_container,
        "cloud": _validate_cloud,
        "repository": _validate_repository,
        "git": _validate_git,
        "credentials": _validate_credentials,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, {*sections, "task", "acceptance_criteria"}, "", issues)

    out: dict[str, Any] = {}
    for key, validator in sections.items():
        _section(payload, key=key, issues=issues, validator=validator, out=out)

    if "task" in payload:
        task = _as_str(payload["task"], "task", issues)
        if task is not None:
            out["task"] = task

    out["acceptance_criteria"] = _validate_criteria(
        payload.get("acceptance_criteria", []), "acceptance_criteria", issues
    )
    _validate_cross_fields(out, issues)
    return out


def _section(
    payload: Mapping[str, object],
    *,
    key: str,
    issues: _IssueCollector,
    validator: Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]],
    out: dict[str, Any],
) -> None:
    raw = payload.get(key)
    if raw is None:
        return
    section_obj = _as_object(raw, key, issues)
    if section_obj is None:
        return
    out[key] = validator(section_obj, key, issues)


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_criteria(value: object, path: str, issues: _IssueCollector) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        issues.add(path, f"expected array, got {type(value).__name__}")
        return []

    allowed = {"id", "description", "steps", "backpressure", "check_command", "passes"}
    seen: set[str] = set()
    out: list[dict[str, Any]] = []
    for index, raw in enumerate(value):
        item_path = f"{path}[{index}]"
        item = _as_object(raw, item_path, issues)
        if item is None:
            continue
        _reject_unknown_keys(item, allowed, item_path, issues)
        criterion: dict[str, Any] = {"steps": [], "passes": False, "description": ""}

        if "id" not in item:
            issues.add(_join(item_path, "id"), "missing required field")
        else:
            criterion_id = _as_str(item["id"], _join(item_path, "id"), issues)
            if criterion_id is not None:
                if criterion_id in seen:
                    issues.add(_join(item_path, "id"), f"duplicate criterion id {criterion_id!r}")
                seen.add(criterion_id)
                # Parallel mode derives a branch from the id.
                _check_branch(criterion_id, _join(item_path, "id"), issues)
                criterion["id"] = criterion_id

        backpressure_key = "backpressure" if "backpressure" in item else "check_command"
        if backpressure_key not in item:
            issues.add(_join(item_path, "backpressure"), "missing required field")
        else:
            command = _as_str(item[backpressure_key], _join(item_path, backpressure_key), issues)
            if command is not None:
                criterion["backpressure"] = command

        if "description" in item:
            if isinstance(item["description"], str):
                criterion["description"] = item["description"].strip()
            else:
                issues.add(_join(item_path, "description"), "expected string")
        if "steps" in item:
            steps = _as_str_list(item["steps"], _join(item_path, "steps"), issues)
            if steps is not None:
                criterion["steps"] = steps
        if "passes" in item:
            passes = _as_bool(item["passes"], _join(item_path, "passes"), issues)
            if passes is not None:
                criterion["passes"] = passes
        out.append(criterion)
    return out


def _validate_execution(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    int_fields = {
        "max_concurrent",
        "max_iterations_per_criterion",
        "max_total_iterations",
        "verify_timeout_ms",
        "progress_tail_chars",
        "failure_excerpt_chars",
    }
    allowed = {*int_fields, "mode", "runtime", "model", "workspace", "feedback_commands",
               "task_backpressure"}
    _reject_unknown_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "mode" in payload:
        mode = _as_enum(
            payload["mode"], _join(path, "mode"), issues,
            allowed_values=tuple(item.value for item in ExecutionMode),
        )
        if mode is not None:
            out["mode"] = mode
    if "runtime" in payload:
        runtime = _as_enum(
            payload["runtime"], _join(path, "runtime"), issues,
            allowed_values=tuple(item.value for item in RuntimeKind),
        )
        if runtime is not None:
            out["runtime"] = runtime
    for key in sorted(int_fields & payload.keys()):
        parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
        if parsed is not None:
            out[key] = parsed
    for key in ("model", "task_backpressure"):
        if key in payload:
            parsed_text = _as_str(payload[key], _join(path, key), issues)
            if parsed_text is not None:
                out[key] = parsed_text
    if "workspace" in payload:
        workspace = _as_path_text(payload["workspace"], _join(path, "workspace"), issues)
        if workspace is not None:
            out["workspace"] = workspace
    if "feedback_commands" in payload:
        commands = _as_str_list(
            payload["feedback_commands"], _join(path, "feedback_commands"), issues
        )
        if commands is not None:
            out["feedback_commands"] = commands
    return out


def _validate_budget(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"max_tokens"}, path, issues)
    out: dict[str, Any] = {}
    if "max_tokens" in payload:
        parsed = _as_int(payload["max_tokens"], _join(path, "max_tokens"), issues, minimum=1)
        if parsed is not None:
            out["max_tokens"] = parsed
    return out


def _validate_retry(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"max_attempts", "base_delay_ms"}, path, issues)
    out: dict[str, Any] = {}
    if "max_attempts" in payload:
        parsed = _as_int(payload["max_attempts"], _join(path, "max_attempts"), issues, minimum=1)
        if parsed is not None:
            out["max_attempts"] = parsed
    if "base_delay_ms" in payload:
        parsed = _as_int(payload["base_delay_ms"], _join(path, "base_delay_ms"), issues, minimum=0)
        if parsed is not None:
            out["base_delay_ms"] = parsed
    return out


def _validate_agent(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"command", "timeout_ms"}, path, issues)
    out: dict[str, Any] = {}
    if "command" in payload:
        command = _as_str_list(payload["command"], _join(path, "command"), issues)
        if command is not None:
            if not command:
                issues.add(_join(path, "command"), "must not be empty")
            elif not any("{prompt}" in part for part in command):
                issues.add(_join(path, "command"), "must contain a {prompt} placeholder")
            else:
                out["command"] = command
    if "timeout_ms" in payload:
        parsed = _as_int(payload["timeout_ms"], _join(path, "timeout_ms"), issues, minimum=1)
        if parsed is not None:
            out["timeout_ms"] = parsed
    return out


def _validate_container(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(
        payload, {"image", "base_image", "setup_commands", "workspace_dir"}, path, issues
    )
    out = _copy_text_fields(payload, ("image", "base_image", "workspace_dir"), path, issues)
    if "setup_commands" in payload:
        commands = _as_str_list(payload["setup_commands"], _join(path, "setup_commands"), issues)
        if commands is not None:
            out["setup_commands"] = commands
    return out


def _validate_cloud(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    text_fields = ("api_url", "target", "base_image", "baseline_command", "workspace_dir")
    _reject_unknown_keys(payload, {*text_fields, "setup_commands", "create_timeout_s"}, path, issues)
    out = _copy_text_fields(payload, text_fields, path, issues)
    if "setup_commands" in payload:
        commands = _as_str_list(payload["setup_commands"], _join(path, "setup_commands"), issues)
        if commands is not None:
            out["setup_commands"] = commands
    if "create_timeout_s" in payload:
        parsed = _as_float(
            payload["create_timeout_s"], _join(path, "create_timeout_s"), issues, minimum=1.0
        )
        if parsed is not None:
            out["create_timeout_s"] = parsed
    return out


def _validate_repository(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"url", "branch", "working_dir"}, path, issues)
    out = _copy_text_fields(payload, ("url", "branch", "working_dir"), path, issues)
    if "branch" in out:
        _check_branch(out["branch"], _join(path, "branch"), issues)
    return out


def _validate_git(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    text_fields = (
        "feature_branch",
        "commit_author",
        "commit_email",
        "commit_message",
        "pr_title",
        "pr_body",
        "install_command",
    )
    _reject_unknown_keys(payload, {*text_fields, "create_pr"}, path, issues)
    out = _copy_text_fields(payload, text_fields, path, issues)
    if "feature_branch" in out:
        _check_branch(out["feature_branch"], _join(path, "feature_branch"), issues)
    if "create_pr" in payload:
        create_pr = _as_bool(payload["create_pr"], _join(path, "create_pr"), issues)
        if create_pr is not None:
            out["create_pr"] = create_pr
    return out


def _validate_credentials(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"anthropic_api_key_env", "github_token_env", "daytona_api_key_env"}
    _reject_unknown_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    for key in sorted(allowed & payload.keys()):
        env_name = _as_env_name(payload[key], _join(path, key), issues)
        if env_name is not None:
            out[key] = env_name
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        level = _as_enum(
            raw_level.upper() if isinstance(raw_level, str) else raw_level,
            _join(path, "log_level"),
            issues,
            allowed_values=LOG_LEVELS,
        )
        if level is not None:
            out["log_level"] = level
    if "log_dir" in payload:
        log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if log_dir is not None:
            out["log_dir"] = log_dir
    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    criteria = config.get("acceptance_criteria") or []
    execution = config.get("execution", {})
    if not criteria:
        if "task" not in config:
            issues.add("acceptance_criteria", "at least one acceptance criterion or a task is required")
        elif "task_backpressure" not in execution:
            issues.add(
                "execution.task_backpressure",
                "a task without acceptance criteria requires a verification command",
            )

    git = config.get("git", {})
    repository = config.get("repository", {})
    if git.get("create_pr") and "url" not in repository:
        issues.add("git.create_pr", "requires repository.url")


def _check_branch(value: str, path: str, issues: _IssueCollector) -> None:
    try:
        validate_branch_name(value, field=path)
    except SanitizationError as exc:
        issues.add(path, str(exc))


def _copy_text_fields(
    payload: Mapping[str, object],
    keys: Sequence[str],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in keys:
        if key in payload:
            parsed = _as_str(payload[key], _join(path, key), issues)
            if parsed is not None:
                out[key] = parsed
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_str_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if not isinstance(value, (list, tuple)):
        issues.add(path, f"expected array of strings, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            issues.add(f"{path}[{index}]", f"expected string, got {type(item).__name__}")
            return None
        out.append(item)
    return out


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_env_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if not _ENV_NAME_PATTERN.fullmatch(parsed):
        issues.add(path, "must be an env var name (example: ANTHROPIC_API_KEY)")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(
                key_path,
                "embedded secret values are forbidden; use an *_env key with an env var name",
            )
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized.endswith("_env"):
        return False
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, list):
        return [_deep_copy_value(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_deep_copy_value(item) for item in value)
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
