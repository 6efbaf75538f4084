"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Config schema.
CONFIG_SCHEMA_VERSION: Final[int] = 1
DEFAULT_CONFIG_FILE: Final[str] = "ralph.toml"
ENV_PREFIX: Final[str] = "RALPH_"

# Iteration and verification limits.
DEFAULT_MAX_ITERATIONS_PER_CRITERION: Final[int] = 3
DEFAULT_MAX_CONCURRENT: Final[int] = 3
DEFAULT_VERIFY_TIMEOUT_MS: Final[int] = 120_000
DEFAULT_EXECUTE_TIMEOUT_MS: Final[int] = 120_000
DEFAULT_AGENT_TIMEOUT_MS: Final[int] = 600_000
DEFAULT_MAX_TOKENS: Final[int] = 100_000

# Synthetic exit code reported when a command is killed on timeout.
TIMEOUT_EXIT_CODE: Final[int] = 124

# Retry policy for transient backend failures.
DEFAULT_RETRY_ATTEMPTS: Final[int] = 3
DEFAULT_RETRY_BASE_DELAY_MS: Final[int] = 1_000

# Agent defaults.
DEFAULT_MODEL: Final[str] = "haiku"
DEFAULT_AGENT_COMMAND: Final[tuple[str, ...]] = (
    "claude",
    "-p",
    "{prompt}",
    "--model",
    "{model}",
    "--output-format",
    "json",
    "--permission-mode",
    "acceptEdits",
)

# Progress log.
PROGRESS_FILENAME: Final[str] = "progress.txt"
DEFAULT_PROGRESS_TAIL_CHARS: Final[int] = 2_000
DEFAULT_FAILURE_EXCERPT_CHARS: Final[int] = 1_000

# Git workflow.
DEFAULT_BASE_BRANCH: Final[str] = "main"
DEFAULT_PARALLEL_BRANCH_PREFIX: Final[str] = "feature/ralph"
DEFAULT_COMMIT_AUTHOR: Final[str] = "Ralph Agent"
DEFAULT_COMMIT_EMAIL: Final[str] = "ralph@example.com"
DEFAULT_REPO_DIRNAME: Final[str] = "repo"

# Backend images and workspaces.
DEFAULT_CONTAINER_IMAGE: Final[str] = "ralph-town-agent:latest"
DEFAULT_BASE_IMAGE: Final[str] = "node:22-slim"
DEFAULT_SETUP_COMMANDS: Final[tuple[str, ...]] = (
    "apt-get update && apt-get install -y --no-install-recommends git ca-certificates gh"
    " && rm -rf /var/lib/apt/lists/*",
    "npm install -g @anthropic-ai/claude-code",
)
DEFAULT_CONTAINER_WORKSPACE: Final[str] = "/workspace"
DEFAULT_CLOUD_WORKSPACE: Final[str] = "/home/daytona/workspace"
DEFAULT_BASELINE_COMMAND: Final[str] = "node --version"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_AGENT_COMMAND",
    "DEFAULT_AGENT_TIMEOUT_MS",
    "DEFAULT_BASELINE_COMMAND",
    "DEFAULT_BASE_BRANCH",
    "DEFAULT_BASE_IMAGE",
    "DEFAULT_CLOUD_WORKSPACE",
    "DEFAULT_COMMIT_AUTHOR",
    "DEFAULT_COMMIT_EMAIL",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_CONTAINER_IMAGE",
    "DEFAULT_CONTAINER_WORKSPACE",
    "DEFAULT_EXECUTE_TIMEOUT_MS",
    "DEFAULT_FAILURE_EXCERPT_CHARS",
    "DEFAULT_MAX_CONCURRENT",
    "DEFAULT_MAX_ITERATIONS_PER_CRITERION",
    "DEFAULT_MAX_TOKENS",
    "DEFAULT_MODEL",
    "DEFAULT_PARALLEL_BRANCH_PREFIX",
    "DEFAULT_PROGRESS_TAIL_CHARS",
    "DEFAULT_REPO_DIRNAME",
    "DEFAULT_RETRY_ATTEMPTS",
    "DEFAULT_RETRY_BASE_DELAY_MS",
    "DEFAULT_SETUP_COMMANDS",
    "DEFAULT_VERIFY_TIMEOUT_MS",
    "ENV_PREFIX",
    "PROGRESS_FILENAME",
    "TIMEOUT_EXIT_CODE",
]
