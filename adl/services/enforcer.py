# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - ENFORCER
# =============================================================================
"""
Enforcer Service

Gates a pull request before it is merged. Each step gates the next:

    1. CI gate
       - any relevant run failed / timed out -> fetch the failing job's log
         tail, forward a failure report to the agent, stop
       - any relevant run still pending       -> stop silently; a later
         workflow_run event re-triggers the review
       Runs concluded skipped / neutral / cancelled are ignored.
    2. Audit
       - stage the repository at the PR's base branch
       - fetch CONSTITUTION.md and TASKS.md at the base branch
       - fetch the PR diff and ask the LLM for {compliant, violations}
    3. Action
       - non-compliant: request changes listing the violations and forward
         them to the agent
       - compliant: approve, convert a draft to ready for review, squash
         merge, then hand the merge commit to the Strategist

Any uncaught error is posted as a comment on the pull request and
re-raised. The staged repository is released on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from adl.engine.retry import RetryPolicy
from adl.github.client import GitHubAPIError
from adl.services._base import (
    ServiceContext,
    fetch_documents,
    track_cycle,
    POLICY_DOC,
    TASKS_DOC,
)
from agents.audit import AuditResult, parse_audit_result
from agents.prompts import build_audit_prompt
from monitoring.logger import cycle_context

if TYPE_CHECKING:
    from adl.services.notifier import AgentNotifier
    from adl.services.strategist import Strategist

logger = logging.getLogger(__name__)


# =============================================================================
# CI GATE
# =============================================================================

IGNORED_CONCLUSIONS = frozenset({"skipped", "neutral", "cancelled"})
FAILING_CONCLUSIONS = frozenset({"failure", "timed_out"})
PENDING_STATUSES = frozenset({"in_progress", "queued", "waiting", "requested", "pending"})

LOG_TAIL_LINES = 80


class CIState(Enum):
    PASSING = "passing"
    PENDING = "pending"
    FAILING = "failing"


@dataclass
class CIStatus:
    state: CIState
    failed_run: Optional[Dict[str, Any]] = None
    runs: List[Dict[str, Any]] = field(default_factory=list)


def evaluate_runs(runs: List[Dict[str, Any]]) -> CIStatus:
    """Reduce the workflow runs of a commit to one CI verdict."""
    relevant = [r for r in runs if r.get("conclusion") not in IGNORED_CONCLUSIONS]

    failed = next((r for r in relevant if r.get("conclusion") in FAILING_CONCLUSIONS), None)
    if failed is not None:
        return CIStatus(CIState.FAILING, failed_run=failed, runs=relevant)

    if any(r.get("status") in PENDING_STATUSES for r in relevant):
        return CIStatus(CIState.PENDING, runs=relevant)

    return CIStatus(CIState.PASSING, runs=relevant)


def tail_lines(text: str, count: int = LOG_TAIL_LINES) -> str:
    return "\n".join(text.rstrip().splitlines()[-count:])


# =============================================================================
# MESSAGES
# =============================================================================

APPROVAL_BODY = "✅ Constitution compliant. LGTM!"


def _numbered(violations: List[str]) -> str:
    return "\n".join(f"{i}. {v}" for i, v in enumerate(violations, 1))


def format_violation_review(violations: List[str]) -> str:
    return (
        "## 🚨 Constitution Violation Detected\n\n"
        "@jules The following violations were found:\n\n"
        f"{_numbered(violations)}\n\n"
        "Please address these issues before merging."
    )


def format_violation_message(violations: List[str]) -> str:
    return (
        "Constitution Violation Detected:\n\n"
        f"{_numbered(violations)}\n\n"
        "Please fix these issues immediately."
    )


def format_ci_failure_message(pr_number: int, run: Dict[str, Any], job_name: str, log_tail: str) -> str:
    return (
        f"CI Failure Detected on PR #{pr_number}:\n\n"
        f"Workflow: {run.get('name', 'unknown')}\n"
        f"Job: {job_name}\n"
        f"Conclusion: {run.get('conclusion')}\n\n"
        f"Log tail (last {LOG_TAIL_LINES} lines):\n"
        f"```\n{log_tail}\n```\n\n"
        "Please fix the failing checks and push an update."
    )


# =============================================================================
# ENFORCER
# =============================================================================


class ReviewOutcome(Enum):
    SKIPPED = "skipped"
    CI_PENDING = "ci_pending"
    CI_FAILED = "ci_failed"
    CHANGES_REQUESTED = "changes_requested"
    MERGED = "merged"


@dataclass
class ReviewResult:
    outcome: ReviewOutcome
    pr_number: int
    violations: List[str] = field(default_factory=list)
    merge_sha: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "pr_number": self.pr_number,
            "violations": self.violations,
            "merge_sha": self.merge_sha,
            "reason": self.reason,
        }


class Enforcer:
    """Merge gate for agent pull requests."""

    def __init__(
        self,
        ctx: ServiceContext,
        notifier: "AgentNotifier",
        strategist: Optional["Strategist"] = None,
        log_retry: Optional[RetryPolicy] = None,
    ):
        self.ctx = ctx
        self.notifier = notifier
        self.strategist = strategist
        # Job logs can lag behind job completion
        self.log_retry = log_retry or RetryPolicy(
            max_attempts=3,
            base_delay=2.0,
            backoff_factor=2.0,
            retry_on=(GitHubAPIError,),
            name="CI log fetch",
        )

    async def review_pull_request(self, pr_number: int) -> ReviewResult:
        """
        Run the merge gate for one pull request.

        Raises:
            Exception: Any uncaught error, after it was posted on the PR
        """
        with cycle_context("enforcer", pr_number=pr_number), \
                track_cycle(self.ctx, "enforcer") as cycle:
            try:
                result = await self._review(pr_number)
            except Exception as e:
                logger.error(f"Review of PR #{pr_number} failed: {e}", exc_info=True)
                await self._report_error(pr_number, e)
                raise
            cycle["outcome"] = result.outcome.value

        if result.outcome is ReviewOutcome.MERGED and result.merge_sha and self.strategist:
            await self.strategist.run(result.merge_sha)

        return result

    async def _review(self, pr_number: int) -> ReviewResult:
        ctx = self.ctx
        pr = await asyncio.to_thread(ctx.github_client.get_pull, pr_number)

        if pr.get("state") != "open":
            logger.info(f"PR #{pr_number} is {pr.get('state')}, skipping")
            return ReviewResult(ReviewOutcome.SKIPPED, pr_number, reason=f"PR is {pr.get('state')}")

        # Step 1: CI gate
        head_sha = pr["head"]["sha"]
        runs = await asyncio.to_thread(ctx.github_client.list_workflow_runs, head_sha)
        ci = evaluate_runs(runs)

        if ci.state is CIState.FAILING:
            logger.warning(f"CI failed for PR #{pr_number} ({ci.failed_run.get('name')})")
            await self.notifier.notify(await self._ci_failure_report(pr_number, ci.failed_run))
            return ReviewResult(ReviewOutcome.CI_FAILED, pr_number, reason=ci.failed_run.get("name", ""))

        if ci.state is CIState.PENDING:
            logger.info(f"CI still running for PR #{pr_number}, waiting for completion")
            return ReviewResult(ReviewOutcome.CI_PENDING, pr_number)

        # Step 2: audit
        base = pr["base"]["ref"]
        audit = await self._audit(pr_number, base)

        # Step 3: action
        if not audit.compliant:
            logger.info(f"PR #{pr_number} has {len(audit.violations)} violation(s)")
            await asyncio.to_thread(
                ctx.github_client.create_review,
                pr_number,
                format_violation_review(audit.violations),
                "REQUEST_CHANGES",
            )
            await self.notifier.notify(format_violation_message(audit.violations))
            return ReviewResult(ReviewOutcome.CHANGES_REQUESTED, pr_number, violations=audit.violations)

        await asyncio.to_thread(ctx.github_client.create_review, pr_number, APPROVAL_BODY, "APPROVE")

        if pr.get("draft"):
            logger.info(f"PR #{pr_number} is a draft, marking ready for review")
            await asyncio.to_thread(ctx.github_client.mark_ready_for_review, pr["node_id"])

        merge = await asyncio.to_thread(ctx.github_client.merge_pull, pr_number, "squash")
        merge_sha = merge.get("sha")
        logger.info(f"Merged PR #{pr_number} as {merge_sha}")

        return ReviewResult(ReviewOutcome.MERGED, pr_number, merge_sha=merge_sha)

    async def _audit(self, pr_number: int, base: str) -> AuditResult:
        ctx = self.ctx
        async with ctx.repo_stager.staged(ctx.owner, ctx.repo, base, ctx.token) as path:
            docs = await fetch_documents(ctx, [POLICY_DOC, TASKS_DOC], base)
            diff = await asyncio.to_thread(ctx.github_client.get_pull_diff, pr_number)

            prompt = build_audit_prompt(
                constitution=docs[POLICY_DOC],
                tasks=docs[TASKS_DOC],
                diff=diff,
            )
            logger.info(f"Auditing PR #{pr_number} against {POLICY_DOC}")
            answer = await ctx.llm_client.generate(prompt, working_dir=path)

        return parse_audit_result(answer)

    async def _ci_failure_report(self, pr_number: int, run: Dict[str, Any]) -> str:
        client = self.ctx.github_client
        jobs = await asyncio.to_thread(client.list_run_jobs, run["id"])
        job = next((j for j in jobs if j.get("conclusion") in FAILING_CONCLUSIONS), None)

        if job is None:
            return format_ci_failure_message(pr_number, run, "unknown", "(no failed job found)")

        try:
            logs = await self.log_retry.execute(
                lambda attempt: asyncio.to_thread(client.get_job_logs, job["id"])
            )
            log_tail = tail_lines(logs)
        except GitHubAPIError as e:
            logger.warning(f"Could not fetch logs for job {job['id']}: {e}")
            log_tail = f"(logs unavailable: {e})"

        return format_ci_failure_message(pr_number, run, job.get("name", "unknown"), log_tail)

    async def _report_error(self, pr_number: int, error: Exception) -> None:
        try:
            await asyncio.to_thread(
                self.ctx.github_client.add_comment,
                pr_number,
                f"❌ Error during PR review: {error}",
            )
        except GitHubAPIError as e:
            logger.error(f"Could not post error comment on PR #{pr_number}: {e}")

    async def review_latest_open_pull(self) -> Optional[ReviewResult]:
        """Review the most recently updated open pull request, if any."""
        pulls = await asyncio.to_thread(
            self.ctx.github_client.list_pulls, "open", "updated", "desc", 1
        )
        if not pulls:
            logger.info("No open pull requests to review")
            return None
        return await self.review_pull_request(pulls[0]["number"])


__all__ = [
    "Enforcer",
    "ReviewOutcome",
    "ReviewResult",
    "CIState",
    "CIStatus",
    "evaluate_runs",
    "tail_lines",
    "format_violation_review",
    "format_violation_message",
    "format_ci_failure_message",
    "APPROVAL_BODY",
    "IGNORED_CONCLUSIONS",
    "FAILING_CONCLUSIONS",
    "PENDING_STATUSES",
]
