# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - GITHUB INTEGRATION PACKAGE
# =============================================================================
"""
GitHub Integration Package

Components:
    - GitHubClient: REST/GraphQL client (contents, pulls, reviews, merges,
      workflow runs, issues)
    - RepoStager: shallow, branch-pinned working copies for LLM context
    - events: typed inbound webhook events
    - webhook_handler: signature verification and dispatch (import it from
      ``adl.github.webhook_handler``)

Usage:
    from adl.github import GitHubClient, GitHubAPIError

    client = GitHubClient(token="ghp_xxx", repo="owner/repo")
    pr = client.get_pull(12)
"""

from adl.github.client import (
    GitHubClient,
    GitHubAPIError,
    NotFoundError,
    RateLimit,
    RateLimitError,
    create_github_client,
)
from adl.github.events import parse_event
from adl.github.repo_stager import RepoStager

__all__ = [
    "GitHubClient",
    "GitHubAPIError",
    "NotFoundError",
    "RateLimit",
    "RateLimitError",
    "create_github_client",
    "parse_event",
    "RepoStager",
]
