"""Test doubles and builders shared across test modules."""

import json
from contextlib import asynccontextmanager

import requests

from agents.task_agent import AgentSession, aggregate_status


class FakeStager:
    """Stands in for RepoStager; records staging calls and releases."""

    def __init__(self, path):
        self.path = str(path)
        self.staged_refs = []
        self.released = 0

    @asynccontextmanager
    async def staged(self, owner, repo, branch, token=None):
        self.staged_refs.append((owner, repo, branch))
        try:
            yield self.path
        finally:
            self.released += 1


def make_session(session_id, state):
    return AgentSession(id=session_id, state=state, name=f"sessions/{session_id}")


def make_aggregate(*sessions):
    return aggregate_status(list(sessions))


def make_response(status_code=200, body=None, text=None, headers=None):
    response = requests.Response()
    response.status_code = status_code
    if text is not None:
        response._content = text.encode("utf-8")
    elif body is not None:
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    else:
        response._content = b""
    response.encoding = "utf-8"
    response.headers.update(headers or {})
    return response
