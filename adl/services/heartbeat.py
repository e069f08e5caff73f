# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - HEARTBEAT
# =============================================================================
"""
Heartbeat Controller

The top-level control loop. Every tick (scheduler, poll loop or HTTP
trigger) is independent: it reads the lifecycle state, polls the task
agent, and dispatches.

    stopped                        -> nothing
    none_active                    -> Planner
    none_active, iteration cap hit -> stop + escalate
    waiting_for_input              -> Troubleshooter
    blocked                        -> stop + escalate
    in_progress                    -> nothing

The dispatch decision (``decide``) is a pure function of the state
snapshot and the aggregate agent status.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, TYPE_CHECKING

from adl.engine.state_manager import LifecycleState
from adl.services._base import ServiceContext, track_cycle
from agents.task_agent import AggregateKind, AggregateStatus, SessionState, TaskAgentError
from monitoring.logger import cycle_context

if TYPE_CHECKING:
    from adl.services.notifier import HumanNotifier
    from adl.services.planner import Planner
    from adl.services.troubleshooter import Troubleshooter

logger = logging.getLogger(__name__)

FALLBACK_QUESTION = (
    "The agent is waiting for input. Review the current task against the "
    "repository context and provide the details needed to proceed."
)


class HeartbeatState(Enum):
    STOPPED = "stopped"
    NO_TASK = "no_task"
    IN_PROGRESS = "in_progress"
    WAITING_INPUT = "waiting_input"
    BLOCKED = "blocked"
    ITERATION_LIMIT = "iteration_limit"


@dataclass
class HeartbeatResult:
    state: HeartbeatState
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"state": self.state.value, **self.details}


def decide(state: LifecycleState, aggregate: AggregateStatus) -> HeartbeatState:
    """Pure dispatch decision for one tick."""
    if state.is_stopped:
        return HeartbeatState.STOPPED

    kind = aggregate.status
    if kind is AggregateKind.BLOCKED:
        return HeartbeatState.BLOCKED
    if kind is AggregateKind.WAITING_FOR_INPUT:
        return HeartbeatState.WAITING_INPUT
    if kind is AggregateKind.IN_PROGRESS:
        return HeartbeatState.IN_PROGRESS
    if state.iteration_count >= state.max_iterations:
        return HeartbeatState.ITERATION_LIMIT
    return HeartbeatState.NO_TASK


class Heartbeat:
    """One controller tick per ``run`` call."""

    def __init__(
        self,
        ctx: ServiceContext,
        planner: "Planner",
        troubleshooter: "Troubleshooter",
        human_notifier: "HumanNotifier",
    ):
        self.ctx = ctx
        self.planner = planner
        self.troubleshooter = troubleshooter
        self.human_notifier = human_notifier

    async def run(self) -> HeartbeatResult:
        ctx = self.ctx
        with cycle_context("heartbeat"), track_cycle(ctx, "heartbeat") as cycle:
            state = await ctx.state_manager.read()
            if state.is_stopped:
                logger.info("Loop is stopped, nothing to do")
                cycle["outcome"] = HeartbeatState.STOPPED.value
                return HeartbeatResult(HeartbeatState.STOPPED)

            aggregate = await asyncio.to_thread(ctx.task_agent.get_aggregate_status)
            decision = decide(state, aggregate)
            logger.info(
                f"Agent status {aggregate.status.value} "
                f"({len(aggregate.sessions)} sessions), dispatching {decision.value}"
            )
            cycle["outcome"] = decision.value

            if decision is HeartbeatState.NO_TASK:
                plan = await self.planner.run()
                return HeartbeatResult(decision, {"plan": plan.to_dict()})

            if decision is HeartbeatState.WAITING_INPUT:
                return await self._troubleshoot(state, aggregate)

            if decision is HeartbeatState.BLOCKED:
                return await self._halt_blocked(aggregate)

            if decision is HeartbeatState.ITERATION_LIMIT:
                return await self._halt_iteration_limit(state)

            return HeartbeatResult(decision)

    async def _troubleshoot(self, state: LifecycleState, aggregate: AggregateStatus) -> HeartbeatResult:
        session_id = state.current_task_id
        if not session_id:
            waiting = next(
                (s for s in aggregate.sessions if s.state is SessionState.AWAITING_USER_FEEDBACK),
                None,
            )
            session_id = waiting.id if waiting else None

        if not session_id:
            logger.warning("An agent is waiting for input but no session could be identified")
            return HeartbeatResult(HeartbeatState.WAITING_INPUT, {"session_id": None})

        question = await self._derive_question(session_id)
        result = await self.troubleshooter.run(session_id, question)
        return HeartbeatResult(HeartbeatState.WAITING_INPUT, result.to_dict())

    async def _derive_question(self, session_id: str) -> str:
        try:
            message = await asyncio.to_thread(self.ctx.task_agent.latest_agent_message, session_id)
        except TaskAgentError as e:
            logger.warning(f"Could not read activities of session {session_id}: {e}")
            message = None
        return message or FALLBACK_QUESTION

    async def _halt_blocked(self, aggregate: AggregateStatus) -> HeartbeatResult:
        await self.ctx.state_manager.stop_loop()
        logger.warning(f"{aggregate.blocked_count} blocked session(s), loop stopped")

        lines = "\n".join(
            f"- `{s.id}`: {s.state.value}" + (f" ({s.url})" if s.url else "")
            for s in aggregate.blocked_sessions
        )
        issue = await self.human_notifier.escalate(
            f"ADL loop stopped: {aggregate.blocked_count} blocked agent session(s)",
            "The autonomous loop stopped because these agent sessions are blocked:\n\n"
            f"{lines}\n\n"
            "Resolve them, then restart the loop with `POST /loop/start`.",
        )
        return HeartbeatResult(
            HeartbeatState.BLOCKED,
            {"blocked_count": aggregate.blocked_count, "issue": issue},
        )

    async def _halt_iteration_limit(self, state: LifecycleState) -> HeartbeatResult:
        await self.ctx.state_manager.stop_loop()
        logger.warning(
            f"Iteration limit reached ({state.iteration_count}/{state.max_iterations}), loop stopped"
        )
        issue = await self.human_notifier.escalate(
            "ADL loop stopped: iteration limit reached",
            f"The loop planned {state.iteration_count} tasks without a merge "
            f"(limit {state.max_iterations}).\n\n"
            "Review the open work, then restart the loop with `POST /loop/start`.",
        )
        return HeartbeatResult(
            HeartbeatState.ITERATION_LIMIT,
            {"iteration_count": state.iteration_count, "issue": issue},
        )


__all__ = ["Heartbeat", "HeartbeatResult", "HeartbeatState", "decide", "FALLBACK_QUESTION"]
