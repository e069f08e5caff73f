# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - STRATEGIST
# =============================================================================
"""
Strategist Service

Post-merge learning cycle. Two event sources can announce the same merge
(the Enforcer right after it merges, and the ``push`` webhook), so a cycle
is guarded twice per commit SHA:

    - an in-process set, checked and filled before the first await
    - a time-boxed lease in the state backend, shared across instances

Pipeline:
    1. Stage the repository at the tracked branch
    2. Build the merge diff from the commit's changed files
       (no file changes: end the cycle without writes)
    3. Fetch AGENTS.md and TASKS.md
    4. Ask the LLM for an updated AGENTS.md (dated lessons entry) and an
       updated TASKS.md (completed work moved, new tasks, reprioritised)
    5. Commit both documents back to the branch
    6. Restart the loop (status started, iteration count 0)
    7. Run the Planner

Errors are filed as an incident issue instead of being retried.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set, TYPE_CHECKING

from adl.engine.state_manager import DEFAULT_LEASE_SECONDS
from adl.services._base import ServiceContext, track_cycle, LESSONS_DOC, TASKS_DOC
from agents.prompts import build_lessons_prompt, build_tasks_prompt, strip_code_fence
from monitoring.logger import cycle_context

if TYPE_CHECKING:
    from adl.services.notifier import HumanNotifier
    from adl.services.planner import Planner, PlanResult

logger = logging.getLogger(__name__)

LESSONS_COMMIT_MESSAGE = "chore: update agent memory after merge"
TASKS_COMMIT_MESSAGE = "chore: update tasks after merge"
COMMIT_MARKERS = (LESSONS_COMMIT_MESSAGE, TASKS_COMMIT_MESSAGE)

INCIDENT_TITLE = "❌ Strategist Error"
INCIDENT_LABEL = "adl-error"


class StrategistOutcome(Enum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    NO_CHANGES = "no_changes"
    ERROR = "error"


@dataclass
class StrategistResult:
    outcome: StrategistOutcome
    commit_sha: str
    plan: Optional["PlanResult"] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "commit_sha": self.commit_sha,
            "plan": self.plan.to_dict() if self.plan else None,
            "error": self.error,
        }


def format_merge_diff(files: List[Dict[str, Any]]) -> str:
    """Render commit files as a unified-diff-like text."""
    return "\n\n".join(
        f"--- a/{f['filename']}\n+++ b/{f['filename']}\n{f.get('patch') or ''}"
        for f in files
    )


def is_strategist_commit(message: str) -> bool:
    return any(marker in (message or "") for marker in COMMIT_MARKERS)


class Strategist:
    """Learns from merged work and restarts the loop."""

    def __init__(
        self,
        ctx: ServiceContext,
        planner: "Planner",
        human_notifier: "HumanNotifier",
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ):
        self.ctx = ctx
        self.planner = planner
        self.human_notifier = human_notifier
        self.lease_seconds = lease_seconds
        self._processing: Set[str] = set()

    def is_processing(self, commit_sha: str) -> bool:
        return commit_sha in self._processing

    async def run(self, commit_sha: str) -> StrategistResult:
        """
        Run the learning cycle for a merge commit.

        Never raises for cycle failures: they are filed as an incident issue
        and reported in the result.
        """
        if commit_sha in self._processing:
            logger.info(f"Already processing cycle for {commit_sha}, skipping")
            return StrategistResult(StrategistOutcome.DUPLICATE, commit_sha)

        self._processing.add(commit_sha)
        leased = False

        with cycle_context("strategist", commit_sha=commit_sha), \
                track_cycle(self.ctx, "strategist") as cycle:
            try:
                leased = await self.ctx.state_manager.acquire_commit_lease(
                    commit_sha, self.lease_seconds
                )
                if not leased:
                    logger.info(f"Another instance holds the lease for {commit_sha}, skipping")
                    result = StrategistResult(StrategistOutcome.DUPLICATE, commit_sha)
                else:
                    result = await self._cycle(commit_sha)
            except Exception as e:
                logger.error(f"Strategist cycle for {commit_sha} failed: {e}", exc_info=True)
                await self._file_incident(commit_sha, e)
                result = StrategistResult(StrategistOutcome.ERROR, commit_sha, error=str(e))
            finally:
                self._processing.discard(commit_sha)
                if leased:
                    await self._release_lease(commit_sha)

            cycle["outcome"] = result.outcome.value
            return result

    async def _cycle(self, commit_sha: str) -> StrategistResult:
        ctx = self.ctx
        client = ctx.github_client

        async with ctx.repo_stager.staged(ctx.owner, ctx.repo, ctx.branch, ctx.token) as path:
            commit = await asyncio.to_thread(client.get_commit, commit_sha)
            merge_diff = format_merge_diff(commit.get("files") or [])
            if not merge_diff:
                logger.info(f"Commit {commit_sha} has no file changes, skipping")
                return StrategistResult(StrategistOutcome.NO_CHANGES, commit_sha)

            lessons_file, tasks_file = await asyncio.gather(
                asyncio.to_thread(client.get_file, LESSONS_DOC, ctx.branch),
                asyncio.to_thread(client.get_file, TASKS_DOC, ctx.branch),
            )

            logger.info("Extracting lessons")
            lessons = strip_code_fence(await ctx.llm_client.generate(
                build_lessons_prompt(lessons_file["content"], merge_diff),
                working_dir=path,
            ))

            logger.info("Updating task backlog")
            tasks = strip_code_fence(await ctx.llm_client.generate(
                build_tasks_prompt(tasks_file["content"], merge_diff),
                working_dir=path,
            ))

        await self._commit(LESSONS_DOC, lessons, lessons_file, LESSONS_COMMIT_MESSAGE)
        await self._commit(TASKS_DOC, tasks, tasks_file, TASKS_COMMIT_MESSAGE)

        logger.info("Restarting loop")
        await ctx.state_manager.start_loop()

        logger.info("Triggering planner")
        plan = await self.planner.run()
        return StrategistResult(StrategistOutcome.COMPLETED, commit_sha, plan=plan)

    async def _commit(self, path: str, content: str, current: Dict[str, Any], message: str) -> None:
        if content == current["content"]:
            logger.info(f"{path} unchanged, not committing")
            return
        await asyncio.to_thread(
            self.ctx.github_client.update_file,
            path, content, message, self.ctx.branch, current["sha"],
        )
        logger.info(f"Committed {path}")

    async def _release_lease(self, commit_sha: str) -> None:
        try:
            await self.ctx.state_manager.release_commit_lease(commit_sha)
        except Exception as e:
            logger.warning(f"Could not release lease for {commit_sha}: {e}")

    async def _file_incident(self, commit_sha: str, error: Exception) -> None:
        body = (
            f"The Strategist failed while processing merge commit `{commit_sha}`.\n\n"
            f"```\n{type(error).__name__}: {error}\n```\n\n"
            "The loop was not restarted automatically."
        )
        await self.human_notifier.escalate(INCIDENT_TITLE, body, labels=[INCIDENT_LABEL])


__all__ = [
    "Strategist",
    "StrategistResult",
    "StrategistOutcome",
    "format_merge_diff",
    "is_strategist_commit",
    "COMMIT_MARKERS",
    "LESSONS_COMMIT_MESSAGE",
    "TASKS_COMMIT_MESSAGE",
    "INCIDENT_TITLE",
    "INCIDENT_LABEL",
]
