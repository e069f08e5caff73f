# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - PLANNER
# =============================================================================
"""
Planner Service

Creates the next agent task from the repository's planning documents.

Workflow Position:
    Heartbeat (none_active) --> PLANNER --> agent session created
    Strategist (after merge) --> PLANNER

Steps:
    1. Idempotency guard: if the persisted session is still queued,
       planning or in progress, do nothing. A stale (404) reference is
       logged and planning continues.
    2. Stage the repository at the target branch.
    3. Fetch GOALS.md, TASKS.md, CONTEXT_MAP.md and AGENTS.md.
    4. Ask the LLM for a plan for the highest-priority task.
    5. Create an agent session with the plan as its instruction.
    6. Persist the session id and increment the iteration counter.

Any failure aborts the cycle and propagates to the caller; the staged
repository is always released.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from adl.services._base import (
    ServiceContext,
    fetch_documents,
    track_cycle,
    GOALS_DOC,
    TASKS_DOC,
    CONTEXT_MAP_DOC,
    LESSONS_DOC,
)
from agents.prompts import build_planner_prompt
from agents.task_agent import ACTIVE_STATES, SessionNotFoundError
from monitoring.logger import cycle_context

logger = logging.getLogger(__name__)


class PlanOutcome(Enum):
    CREATED = "created"
    ALREADY_ACTIVE = "already_active"


@dataclass
class PlanResult:
    outcome: PlanOutcome
    session_id: Optional[str] = None
    iteration_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "session_id": self.session_id,
            "iteration_count": self.iteration_count,
        }


class Planner:
    """Plans the next task and hands it to the task agent."""

    PLANNING_DOCUMENTS = [GOALS_DOC, TASKS_DOC, CONTEXT_MAP_DOC, LESSONS_DOC]

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def run(self) -> PlanResult:
        """
        Run one planning cycle.

        Returns:
            PlanResult describing whether a session was created

        Raises:
            StagingError, ExternalServiceError, ModelError, InvocationError,
            StorageError: The cycle is aborted, nothing is retried
        """
        with cycle_context("planner"), track_cycle(self.ctx, "planner") as cycle:
            active = await self._active_session()
            if active:
                logger.info(f"Session {active} is still active, not creating a new task")
                cycle["outcome"] = "already_active"
                return PlanResult(PlanOutcome.ALREADY_ACTIVE, session_id=active)

            ctx = self.ctx
            async with ctx.repo_stager.staged(ctx.owner, ctx.repo, ctx.branch, ctx.token) as path:
                docs = await fetch_documents(ctx, self.PLANNING_DOCUMENTS, ctx.branch)

                prompt = build_planner_prompt(
                    goals=docs[GOALS_DOC],
                    tasks=docs[TASKS_DOC],
                    context_map=docs[CONTEXT_MAP_DOC],
                    agents=docs[LESSONS_DOC],
                )
                logger.info("Generating plan")
                plan = await ctx.llm_client.generate(prompt, working_dir=path)

                session_id = await asyncio.to_thread(
                    ctx.task_agent.create_session, ctx.source, ctx.branch, plan
                )

            state = await ctx.state_manager.update(lambda s: {
                "current_task_id": session_id,
                "iteration_count": s.iteration_count + 1,
            })

            logger.info(
                f"Created session {session_id} (iteration {state.iteration_count})"
            )
            cycle["outcome"] = "created"
            return PlanResult(PlanOutcome.CREATED, session_id, state.iteration_count)

    async def _active_session(self) -> Optional[str]:
        """Persisted session id if it is still working, else None."""
        state = await self.ctx.state_manager.read()
        if not state.current_task_id:
            return None

        try:
            session = await asyncio.to_thread(
                self.ctx.task_agent.get_session, state.current_task_id
            )
        except SessionNotFoundError:
            logger.warning(
                f"Persisted session {state.current_task_id} no longer exists, planning anew"
            )
            return None

        if session.state in ACTIVE_STATES:
            return session.id
        return None


__all__ = ["Planner", "PlanResult", "PlanOutcome"]
