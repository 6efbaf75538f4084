"""Run configuration: defaults, validation, and layered loading."""

from ralph_town.config.loader import (
    ConfigLoadError,
    dump_effective_config,
    load_config,
    load_run_config,
    normalize_paths,
    resolve_credentials,
    validate_runtime_credentials,
)
from ralph_town.config.schema import (
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "load_run_config",
    "merge_config",
    "normalize_paths",
    "redact_config",
    "resolve_credentials",
    "validate_config",
    "validate_runtime_credentials",
]
