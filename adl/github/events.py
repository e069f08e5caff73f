# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - INBOUND EVENTS
# =============================================================================
"""
Inbound GitHub Events

Webhook payloads are validated at the boundary and turned into one of a
closed set of event types:

    PullRequestEvent   pull_request (opened / synchronize / reopened / ...)
    PushEvent          push
    WorkflowRunEvent   workflow_run
    PingEvent          ping
    UnsupportedEvent   anything else

Handlers dispatch on the type instead of probing payload shapes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from adl.errors import ParseError


class EventParseError(ParseError):
    """Raised when a supported event's payload lacks required fields."""
    pass


@dataclass(frozen=True)
class PullRequestEvent:
    action: str
    number: int
    head_sha: str
    head_ref: str
    base_ref: str
    draft: bool = False


@dataclass(frozen=True)
class PushEvent:
    ref: str
    after: str
    commit_messages: List[str] = field(default_factory=list)

    @property
    def branch(self) -> Optional[str]:
        prefix = "refs/heads/"
        return self.ref[len(prefix):] if self.ref.startswith(prefix) else None


@dataclass(frozen=True)
class WorkflowRunEvent:
    action: str
    run_id: int
    name: str
    head_sha: str
    conclusion: Optional[str]
    pull_request_numbers: List[int] = field(default_factory=list)


@dataclass(frozen=True)
class PingEvent:
    zen: str = ""


@dataclass(frozen=True)
class UnsupportedEvent:
    name: str
    action: str = ""


InboundEvent = Union[PullRequestEvent, PushEvent, WorkflowRunEvent, PingEvent, UnsupportedEvent]


def _require(payload: Dict[str, Any], *keys: str) -> Any:
    value: Any = payload
    for key in keys:
        if not isinstance(value, dict) or key not in value:
            raise EventParseError(f"Missing field: {'.'.join(keys)}")
        value = value[key]
    return value


def parse_event(event_name: str, payload: Dict[str, Any]) -> InboundEvent:
    """
    Build a typed event from the X-GitHub-Event name and JSON payload.

    Raises:
        EventParseError: If a supported event lacks required fields
    """
    event_name = (event_name or "").lower()
    action = payload.get("action", "") if isinstance(payload, dict) else ""

    if event_name == "pull_request":
        return PullRequestEvent(
            action=action,
            number=int(_require(payload, "pull_request", "number")),
            head_sha=_require(payload, "pull_request", "head", "sha"),
            head_ref=_require(payload, "pull_request", "head", "ref"),
            base_ref=_require(payload, "pull_request", "base", "ref"),
            draft=bool(payload["pull_request"].get("draft", False)),
        )

    if event_name == "push":
        commits = payload.get("commits") or []
        messages = [c.get("message", "") for c in commits]
        head = payload.get("head_commit") or {}
        if head.get("message") and head["message"] not in messages:
            messages.append(head["message"])
        return PushEvent(
            ref=_require(payload, "ref"),
            after=_require(payload, "after"),
            commit_messages=messages,
        )

    if event_name == "workflow_run":
        run = _require(payload, "workflow_run")
        return WorkflowRunEvent(
            action=action,
            run_id=int(_require(run, "id")),
            name=run.get("name", ""),
            head_sha=_require(run, "head_sha"),
            conclusion=run.get("conclusion"),
            pull_request_numbers=[
                int(pr["number"]) for pr in run.get("pull_requests") or [] if "number" in pr
            ],
        )

    if event_name == "ping":
        return PingEvent(zen=payload.get("zen", ""))

    return UnsupportedEvent(name=event_name, action=action)


__all__ = [
    "PullRequestEvent",
    "PushEvent",
    "WorkflowRunEvent",
    "PingEvent",
    "UnsupportedEvent",
    "InboundEvent",
    "EventParseError",
    "parse_event",
]
