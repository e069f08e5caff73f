# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - NOTIFIERS
# =============================================================================
"""
Notification and Recovery

AgentNotifier delivers a message to the persisted agent session. When the
stored session id has gone stale (404) it re-points the lifecycle state to
the first session that is still working or waiting, and resends there.

HumanNotifier is the escalation channel for conditions the loop cannot
resolve itself: it files a labelled issue on the target repository.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, TYPE_CHECKING

from adl.github.client import GitHubAPIError
from agents.task_agent import RECOVERABLE_STATES, SessionNotFoundError, TaskAgentError

if TYPE_CHECKING:
    from adl.engine.state_manager import StateManager
    from adl.github.client import GitHubClient
    from agents.task_agent import TaskAgentClient

logger = logging.getLogger(__name__)

BLOCKED_LABEL = "adl-blocked"


class AgentNotifier:
    """Sends messages to the active agent session, recovering stale ids."""

    def __init__(self, task_agent: "TaskAgentClient", state_manager: "StateManager"):
        self.task_agent = task_agent
        self.state_manager = state_manager

    async def notify(self, message: str) -> Optional[str]:
        """
        Send a message to the persisted agent session.

        Returns:
            The session id that received the message, or None when there
            was no session or delivery failed

        Raises:
            StorageError: If the lifecycle state cannot be read or updated
        """
        state = await self.state_manager.read()
        session_id = state.current_task_id
        if not session_id:
            logger.info("No active agent session, skipping notification")
            return None

        try:
            await asyncio.to_thread(self.task_agent.send_message, session_id, message)
            return session_id
        except SessionNotFoundError:
            logger.warning(f"Session {session_id} is stale, looking for an active session")
            return await self._recover(message)
        except TaskAgentError as e:
            logger.error(f"Failed to notify session {session_id}: {e}")
            return None

    async def _recover(self, message: str) -> Optional[str]:
        try:
            sessions = await asyncio.to_thread(self.task_agent.list_sessions)
        except TaskAgentError as e:
            logger.error(f"Could not list sessions for recovery: {e}")
            return None

        candidate = next((s for s in sessions if s.state in RECOVERABLE_STATES), None)
        if candidate is None:
            logger.error("No active session found to recover to, message dropped")
            return None

        try:
            await asyncio.to_thread(self.task_agent.send_message, candidate.id, message)
        except TaskAgentError as e:
            logger.error(f"Failed to notify recovered session {candidate.id}: {e}")
            return None

        await self.state_manager.set_current_task(candidate.id)
        logger.info(f"Recovered to session {candidate.id} ({candidate.state.value})")
        return candidate.id


class HumanNotifier:
    """Escalates to humans by filing an issue on the target repository."""

    def __init__(self, github_client: "GitHubClient", labels: Optional[List[str]] = None):
        self.github_client = github_client
        self.labels = labels or [BLOCKED_LABEL]

    async def escalate(self, title: str, body: str, labels: Optional[List[str]] = None) -> Optional[int]:
        """
        File an escalation issue.

        Args:
            labels: Override the notifier's default labels

        Returns:
            The issue number, or None if filing failed (logged)
        """
        try:
            issue = await asyncio.to_thread(
                self.github_client.create_issue, title, body, labels or self.labels
            )
        except GitHubAPIError as e:
            logger.error(f"Failed to file escalation issue '{title}': {e}")
            return None

        number = issue.get("number")
        logger.warning(f"Escalated to humans in issue #{number}: {title}")
        return number


__all__ = ["AgentNotifier", "HumanNotifier", "BLOCKED_LABEL"]
