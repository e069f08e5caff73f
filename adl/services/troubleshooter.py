# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - TROUBLESHOOTER
# =============================================================================
"""
Troubleshooter Service

Answers a blocking question from an agent session using repository
context (CONTEXT_MAP.md and CONSTITUTION.md) and sends the answer back to
that session.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict

from adl.services._base import (
    ServiceContext,
    fetch_documents,
    track_cycle,
    CONTEXT_MAP_DOC,
    POLICY_DOC,
)
from agents.prompts import build_troubleshooter_prompt
from monitoring.logger import cycle_context

logger = logging.getLogger(__name__)


@dataclass
class TroubleshootResult:
    session_id: str
    answer: str

    def to_dict(self) -> Dict[str, Any]:
        return {"session_id": self.session_id, "answer": self.answer[:500]}


class Troubleshooter:
    """Unblocks agent sessions waiting for input."""

    def __init__(self, ctx: ServiceContext):
        self.ctx = ctx

    async def run(self, session_id: str, question: str) -> TroubleshootResult:
        """
        Answer ``question`` for ``session_id``.

        Raises:
            SessionNotFoundError: If the session vanished before the answer was sent
        """
        ctx = self.ctx
        with cycle_context("troubleshooter", session_id=session_id), \
                track_cycle(ctx, "troubleshooter"):
            logger.info(f"Answering question for session {session_id}")

            async with ctx.repo_stager.staged(ctx.owner, ctx.repo, ctx.branch, ctx.token) as path:
                docs = await fetch_documents(ctx, [CONTEXT_MAP_DOC, POLICY_DOC], ctx.branch)
                prompt = build_troubleshooter_prompt(
                    question=question,
                    context_map=docs[CONTEXT_MAP_DOC],
                    constitution=docs[POLICY_DOC],
                )
                answer = await ctx.llm_client.generate(prompt, working_dir=path)

            await asyncio.to_thread(ctx.task_agent.send_message, session_id, answer)
            logger.info(f"Sent answer to session {session_id}")
            return TroubleshootResult(session_id, answer)


__all__ = ["Troubleshooter", "TroubleshootResult"]
