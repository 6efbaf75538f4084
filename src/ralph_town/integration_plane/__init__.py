"""Integration plane: repository workflow around a run."""

from ralph_town.integration_plane.git_workflow import (
    BackendGitWorkflow,
    GitWorkflow,
    GitWorkflowError,
    parallel_branch_name,
    parse_github_repo,
)

__all__ = [
    "BackendGitWorkflow",
    "GitWorkflow",
    "GitWorkflowError",
    "parallel_branch_name",
    "parse_github_repo",
]
