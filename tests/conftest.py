"""Shared fixtures: a real file-backed state store and mocked external clients."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from adl.engine.retry import RetryPolicy
from adl.engine.state_manager import FileStateBackend, StateManager
from adl.errors import StateConflictError
from adl.services._base import ServiceContext
from tests.helpers import FakeStager, make_aggregate


@pytest.fixture
def state_path(tmp_path):
    return tmp_path / "state" / ".adl-state.json"


@pytest.fixture
def state_manager(state_path):
    backend = FileStateBackend({"file": {"path": str(state_path)}})
    policy = RetryPolicy(max_attempts=5, base_delay=0, retry_on=(StateConflictError,))
    return StateManager(backend, max_iterations=10, conflict_policy=policy)


@pytest.fixture
def github_client():
    client = MagicMock()
    client.owner = "acme"
    client.name = "widgets"
    client.token = "ghs_testtoken"
    client.get_file_content.side_effect = lambda path, ref=None: f"# {path} @ {ref}"
    client.get_file.side_effect = lambda path, ref=None: {
        "path": path,
        "sha": f"sha-{path}",
        "content": f"# {path}\n",
    }
    return client


@pytest.fixture
def task_agent():
    agent = MagicMock()
    agent.create_session.return_value = "abc123"
    agent.list_sessions.return_value = []
    agent.get_aggregate_status.return_value = make_aggregate()
    agent.latest_agent_message.return_value = None
    return agent


@pytest.fixture
def llm_client():
    client = MagicMock()
    client.generate = AsyncMock(return_value="generated text")
    return client


@pytest.fixture
def stager(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    return FakeStager(work)


@pytest.fixture
def ctx(github_client, task_agent, llm_client, state_manager, stager):
    return ServiceContext(
        github_client=github_client,
        task_agent=task_agent,
        llm_client=llm_client,
        state_manager=state_manager,
        repo_stager=stager,
        config={"branch": "main"},
    )
