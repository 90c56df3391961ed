"""External collaborators: git / GitHub CLI and the GitHub issue tracker."""

from agentflow.integrations.git import (
    DiffStatsProvider,
    GitCli,
    GitCommandError,
    GitOperations,
    GitResult,
    parse_numstat,
    parse_pr_number,
)
from agentflow.integrations.github import (
    GitHubAPIError,
    GitHubTracker,
    IssueDetail,
    RateLimitError,
    Tracker,
)

__all__ = [
    # Git
    "DiffStatsProvider",
    "GitCli",
    "GitCommandError",
    "GitOperations",
    "GitResult",
    "parse_numstat",
    "parse_pr_number",
    # GitHub
    "GitHubAPIError",
    "GitHubTracker",
    "IssueDetail",
    "RateLimitError",
    "Tracker",
]
