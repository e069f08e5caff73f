# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - SERVICE BASE MODULE
# =============================================================================
"""
Shared context and helpers for the loop's services.

Every service (Heartbeat, Planner, Enforcer, Strategist, Troubleshooter)
shares:
- ServiceContext: access to the external clients and the state store
- Document names used in the target repository
- Helpers for fetching repository documents concurrently
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from adl.engine.state_manager import StateManager
    from adl.github.client import GitHubClient
    from adl.github.repo_stager import RepoStager
    from agents.llm_client import GeminiCLIClient
    from agents.task_agent import TaskAgentClient
    from monitoring.metrics import MetricsCollector

logger = logging.getLogger(__name__)


# =============================================================================
# REPOSITORY DOCUMENTS
# =============================================================================

GOALS_DOC = "GOALS.md"
TASKS_DOC = "TASKS.md"
CONTEXT_MAP_DOC = "CONTEXT_MAP.md"
LESSONS_DOC = "AGENTS.md"
POLICY_DOC = "CONSTITUTION.md"


# =============================================================================
# SERVICE CONTEXT
# =============================================================================


@dataclass
class ServiceContext:
    """
    Shared context passed to every service.

    ``config`` is the ``orchestrator`` configuration section merged with
    the GitHub target (``branch``).
    """
    github_client: 'GitHubClient'
    task_agent: 'TaskAgentClient'
    llm_client: 'GeminiCLIClient'
    state_manager: 'StateManager'
    repo_stager: 'RepoStager'
    metrics: Optional['MetricsCollector'] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def owner(self) -> str:
        return self.github_client.owner

    @property
    def repo(self) -> str:
        return self.github_client.name

    @property
    def branch(self) -> str:
        return self.config.get("branch", "main")

    @property
    def token(self) -> str:
        return self.github_client.token

    @property
    def source(self) -> str:
        return f"sources/github/{self.owner}/{self.repo}"


# =============================================================================
# SHARED HELPERS
# =============================================================================


async def fetch_documents(ctx: ServiceContext, paths: List[str], ref: str) -> Dict[str, str]:
    """
    Fetch several repository documents at one ref concurrently.

    Returns:
        Mapping of path to decoded text

    Raises:
        GitHubAPIError: If any document cannot be fetched
    """
    contents = await asyncio.gather(*(
        asyncio.to_thread(ctx.github_client.get_file_content, path, ref)
        for path in paths
    ))
    return dict(zip(paths, contents))


@contextmanager
def track_cycle(ctx: ServiceContext, component: str) -> Iterator[Dict[str, str]]:
    """Record a cycle in the metrics collector, if one is configured."""
    if ctx.metrics is None:
        yield {"outcome": "success"}
        return
    with ctx.metrics.track_cycle(component) as cycle:
        yield cycle


__all__ = [
    "ServiceContext",
    "fetch_documents",
    "track_cycle",
    "GOALS_DOC",
    "TASKS_DOC",
    "CONTEXT_MAP_DOC",
    "LESSONS_DOC",
    "POLICY_DOC",
]
