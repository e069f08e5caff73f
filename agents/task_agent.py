# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - TASK AGENT CLIENT
# =============================================================================
"""
Task Agent Client

Client for the Jules task-execution agent API. The orchestrator never
plans or writes code itself: it creates agent sessions, sends them
messages, and reads their reported state.

Session states (owned by the agent):
    STATE_UNSPECIFIED, QUEUED, PLANNING, AWAITING_PLAN_APPROVAL,
    IN_PROGRESS, AWAITING_USER_FEEDBACK, PAUSED, FAILED, COMPLETED

Aggregation (evaluated in this order over all listed sessions):
    1. any FAILED / PAUSED / AWAITING_PLAN_APPROVAL / UNSPECIFIED -> blocked
    2. any AWAITING_USER_FEEDBACK                                  -> waiting_for_input
    3. any QUEUED / PLANNING / IN_PROGRESS                         -> in_progress
    4. otherwise                                                   -> none_active

A single blocked session halts the loop even while others progress.

Usage:
    client = TaskAgentClient(api_key="...")
    status = client.get_aggregate_status()
    session_id = client.create_repo_session("owner", "repo", "main", plan)
"""

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from adl.errors import ExternalServiceError, StaleReferenceError


logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class TaskAgentError(ExternalServiceError):
    """Raised when the task agent API returns an error."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message, service="task_agent", status_code=status_code)


class SessionNotFoundError(TaskAgentError, StaleReferenceError):
    """Raised when a session id no longer resolves (404)."""

    def __init__(self, session_id: str):
        super().__init__(
            f"Session {session_id} not found (404). It may have been deleted.",
            status_code=404,
        )
        self.session_id = session_id


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class SessionState(Enum):
    UNSPECIFIED = "STATE_UNSPECIFIED"
    QUEUED = "QUEUED"
    PLANNING = "PLANNING"
    AWAITING_PLAN_APPROVAL = "AWAITING_PLAN_APPROVAL"
    IN_PROGRESS = "IN_PROGRESS"
    AWAITING_USER_FEEDBACK = "AWAITING_USER_FEEDBACK"
    PAUSED = "PAUSED"
    FAILED = "FAILED"
    COMPLETED = "COMPLETED"

    @classmethod
    def from_api(cls, value: Optional[str]) -> "SessionState":
        """Map an API state string; unknown values count as unspecified."""
        if not value:
            return cls.UNSPECIFIED
        if value == "UNSPECIFIED":
            return cls.UNSPECIFIED
        try:
            return cls(value)
        except ValueError:
            logger.warning(f"Unknown session state {value!r}, treating as unspecified")
            return cls.UNSPECIFIED


BLOCKED_STATES = frozenset({
    SessionState.FAILED,
    SessionState.PAUSED,
    SessionState.AWAITING_PLAN_APPROVAL,
    SessionState.UNSPECIFIED,
})
ACTIVE_STATES = frozenset({
    SessionState.QUEUED,
    SessionState.PLANNING,
    SessionState.IN_PROGRESS,
})
# Sessions a stale reference may be re-pointed to
RECOVERABLE_STATES = (
    SessionState.IN_PROGRESS,
    SessionState.AWAITING_USER_FEEDBACK,
    SessionState.PLANNING,
)


class AggregateKind(Enum):
    NONE_ACTIVE = "none_active"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_INPUT = "waiting_for_input"
    BLOCKED = "blocked"


@dataclass
class AgentSession:
    """One unit of agent work as reported by the API."""
    id: str
    state: SessionState
    name: str = ""
    title: str = ""
    url: Optional[str] = None
    create_time: Optional[str] = None
    update_time: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "AgentSession":
        name = data.get("name", "")
        session_id = data.get("id") or name.rsplit("/", 1)[-1]
        return cls(
            id=session_id,
            state=SessionState.from_api(data.get("state")),
            name=name,
            title=data.get("title", ""),
            url=data.get("url"),
            create_time=data.get("createTime"),
            update_time=data.get("updateTime"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state.value,
            "title": self.title,
            "url": self.url,
            "create_time": self.create_time,
            "update_time": self.update_time,
        }


@dataclass
class AggregateStatus:
    status: AggregateKind
    blocked_count: int = 0
    sessions: List[AgentSession] = field(default_factory=list)

    @property
    def blocked_sessions(self) -> List[AgentSession]:
        return [s for s in self.sessions if s.state in BLOCKED_STATES]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "blockedCount": self.blocked_count,
            "sessions": [s.to_dict() for s in self.sessions],
        }


def aggregate_status(sessions: List[AgentSession]) -> AggregateStatus:
    """Reduce a session listing to one aggregate status."""
    states = [s.state for s in sessions]
    blocked_count = sum(1 for s in states if s in BLOCKED_STATES)

    if blocked_count:
        kind = AggregateKind.BLOCKED
    elif SessionState.AWAITING_USER_FEEDBACK in states:
        kind = AggregateKind.WAITING_FOR_INPUT
    elif any(s in ACTIVE_STATES for s in states):
        kind = AggregateKind.IN_PROGRESS
    else:
        kind = AggregateKind.NONE_ACTIVE

    return AggregateStatus(status=kind, blocked_count=blocked_count, sessions=list(sessions))


# =============================================================================
# TASK AGENT CLIENT
# =============================================================================

class TaskAgentClient:
    """
    Jules API client.

    Attributes:
        api_key: API key sent as ``x-goog-api-key``
        base_url: API base URL
    """

    DEFAULT_BASE_URL = "https://jules.googleapis.com/v1alpha"
    DEFAULT_TIMEOUT = 30
    DEFAULT_PAGE_SIZE = 100

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        timeout: int = None,
        retry_count: int = 3,
    ):
        self.api_key = api_key or os.environ.get("JULES_API_KEY")
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.timeout = timeout or self.DEFAULT_TIMEOUT

        if not self.api_key:
            raise ValueError(
                "Task agent API key required. Set JULES_API_KEY environment variable "
                "or pass api_key parameter."
            )

        self._session = requests.Session()
        self._session.headers.update({
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        })
        adapter = HTTPAdapter(max_retries=Retry(
            total=retry_count,
            backoff_factor=0.5,
            status_forcelist=[500, 502, 503, 504],
            allowed_methods=["GET"],
        ))
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    # =========================================================================
    # SESSION OPERATIONS
    # =========================================================================

    def list_sessions(self, page_size: int = DEFAULT_PAGE_SIZE) -> List[AgentSession]:
        data = self._request("GET", "/sessions", params={"pageSize": page_size})
        return [AgentSession.from_api(s) for s in data.get("sessions", [])]

    def get_session(self, session_id: str) -> AgentSession:
        """
        Get a session by id.

        Raises:
            SessionNotFoundError: If the id is stale
        """
        data = self._request("GET", f"/sessions/{session_id}", session_id=session_id)
        return AgentSession.from_api(data)

    def create_session(
        self,
        source: str,
        branch: str,
        prompt: str,
        title: str = None,
        automation_mode: str = "AUTO_CREATE_PR",
    ) -> str:
        """
        Create a session scoped to a source and starting branch.

        Args:
            source: Source resource name, e.g. ``sources/github/owner/repo``
            branch: Starting branch
            prompt: Instruction for the agent

        Returns:
            The new session id
        """
        body: Dict[str, Any] = {
            "prompt": prompt,
            "sourceContext": {
                "source": source,
                "githubRepoContext": {"startingBranch": branch},
            },
            "automationMode": automation_mode,
        }
        if title:
            body["title"] = title

        data = self._request("POST", "/sessions", data=body)
        session_id = data.get("id") or data.get("name", "").rsplit("/", 1)[-1]
        if not session_id:
            raise TaskAgentError("Session created without a name or id")

        logger.info(f"Created task agent session: {session_id}")
        return session_id

    def create_repo_session(self, owner: str, repo: str, branch: str, prompt: str) -> str:
        return self.create_session(f"sources/github/{owner}/{repo}", branch, prompt)

    def send_message(self, session_id: str, text: str) -> None:
        """
        Send a message to a session.

        Raises:
            SessionNotFoundError: If the session vanished
        """
        self._request(
            "POST",
            f"/sessions/{session_id}:sendMessage",
            data={"prompt": text},
            session_id=session_id,
        )
        logger.info(f"Sent message to task agent session: {session_id}")

    def list_activities(self, session_id: str, page_size: int = 50) -> List[Dict[str, Any]]:
        data = self._request(
            "GET",
            f"/sessions/{session_id}/activities",
            params={"pageSize": page_size},
            session_id=session_id,
        )
        return data.get("activities", [])

    def latest_agent_message(self, session_id: str) -> Optional[str]:
        """Text of the most recent message the agent posted, if any."""
        messages = [
            a for a in self.list_activities(session_id)
            if a.get("agentMessaged", {}).get("agentMessage")
        ]
        if not messages:
            return None
        latest = max(messages, key=lambda a: a.get("createTime", ""))
        return latest["agentMessaged"]["agentMessage"]

    def get_aggregate_status(self, page_size: int = DEFAULT_PAGE_SIZE) -> AggregateStatus:
        return aggregate_status(self.list_sessions(page_size))

    # =========================================================================
    # HTTP METHODS
    # =========================================================================

    def _request(
        self,
        method: str,
        endpoint: str,
        data: dict = None,
        params: dict = None,
        session_id: str = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"Task agent API: {method} {endpoint}")

        try:
            response = self._session.request(
                method=method,
                url=url,
                json=data,
                params=params,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout:
            raise TaskAgentError(f"Request timed out: {method} {endpoint}")
        except requests.exceptions.RequestException as e:
            raise TaskAgentError(f"Request failed: {e}")

        if response.status_code == 404 and session_id:
            raise SessionNotFoundError(session_id)

        if response.status_code >= 400:
            try:
                message = response.json().get("error", {}).get("message", response.text)
            except ValueError:
                message = response.text
            logger.error(f"Task agent API error [{response.status_code}]: {message}")
            raise TaskAgentError(message, status_code=response.status_code)

        if not response.content:
            return {}
        return response.json()

    def close(self):
        if self._session:
            self._session.close()


def create_task_agent_client(config: Dict[str, Any]) -> TaskAgentClient:
    """Create a client from the ``agent`` configuration section."""
    return TaskAgentClient(
        api_key=config.get("api_key"),
        base_url=config.get("base_url"),
        timeout=config.get("timeout"),
    )


__all__ = [
    "TaskAgentClient",
    "TaskAgentError",
    "SessionNotFoundError",
    "SessionState",
    "AggregateKind",
    "AgentSession",
    "AggregateStatus",
    "aggregate_status",
    "BLOCKED_STATES",
    "ACTIVE_STATES",
    "RECOVERABLE_STATES",
    "create_task_agent_client",
]
