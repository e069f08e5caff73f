"""Tests for the Enforcer merge gate."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from adl.engine.retry import RetryPolicy
from adl.errors import AuditParseError
from adl.github.client import GitHubAPIError, NotFoundError
from adl.services.enforcer import (
    APPROVAL_BODY,
    CIState,
    Enforcer,
    ReviewOutcome,
    evaluate_runs,
    tail_lines,
)


def run(conclusion=None, status="completed", name="CI", run_id=1):
    return {"id": run_id, "name": name, "status": status, "conclusion": conclusion}


def pull(number=12, draft=False, state="open"):
    return {
        "number": number,
        "state": state,
        "draft": draft,
        "node_id": "PR_node12",
        "head": {"sha": "head-sha", "ref": "feature"},
        "base": {"ref": "main"},
    }


@pytest.fixture
def notifier():
    n = MagicMock()
    n.notify = AsyncMock(return_value="abc123")
    return n


@pytest.fixture
def strategist():
    s = MagicMock()
    s.run = AsyncMock()
    return s


@pytest.fixture
def enforcer(ctx, notifier, strategist):
    gh = ctx.github_client
    gh.get_pull.return_value = pull()
    gh.list_workflow_runs.return_value = [run("success")]
    gh.get_pull_diff.return_value = "diff --git a/app.py b/app.py\n+print('hi')\n"
    gh.merge_pull.return_value = {"sha": "merge-sha", "merged": True}
    ctx.llm_client.generate.return_value = json.dumps({"compliant": True, "violations": []})
    return Enforcer(ctx, notifier, strategist, log_retry=RetryPolicy(max_attempts=2, base_delay=0))


class TestEvaluateRuns:

    def test_no_runs_is_passing(self):
        assert evaluate_runs([]).state is CIState.PASSING

    def test_ignored_conclusions(self):
        runs = [run("skipped"), run("neutral"), run("cancelled"), run("success")]
        assert evaluate_runs(runs).state is CIState.PASSING

    def test_failure_wins_over_pending(self):
        runs = [run(None, status="in_progress"), run("timed_out", name="Tests")]
        status = evaluate_runs(runs)
        assert status.state is CIState.FAILING
        assert status.failed_run["name"] == "Tests"

    def test_pending(self):
        assert evaluate_runs([run(None, status="queued")]).state is CIState.PENDING


def test_tail_lines():
    text = "\n".join(str(i) for i in range(200)) + "\n"
    tail = tail_lines(text, 3)
    assert tail == "197\n198\n199"


class TestReview:

    async def test_pending_ci_stops_silently(self, enforcer, ctx, notifier):
        ctx.github_client.list_workflow_runs.return_value = [run(None, status="in_progress")]

        result = await enforcer.review_pull_request(12)

        assert result.outcome is ReviewOutcome.CI_PENDING
        ctx.llm_client.generate.assert_not_awaited()
        ctx.github_client.create_review.assert_not_called()
        notifier.notify.assert_not_awaited()

    async def test_ci_failure_forwards_log_tail(self, enforcer, ctx, notifier):
        gh = ctx.github_client
        gh.list_workflow_runs.return_value = [run("failure", name="Tests", run_id=77)]
        gh.list_run_jobs.return_value = [
            {"id": 1, "name": "lint", "conclusion": "success"},
            {"id": 2, "name": "pytest", "conclusion": "failure"},
        ]
        gh.get_job_logs.return_value = "setup\nFAILED test_app.py::test_x\n"

        result = await enforcer.review_pull_request(12)

        assert result.outcome is ReviewOutcome.CI_FAILED
        gh.list_run_jobs.assert_called_once_with(77)
        gh.get_job_logs.assert_called_once_with(2)
        message = notifier.notify.await_args.args[0]
        assert "CI Failure Detected on PR #12" in message
        assert "Job: pytest" in message
        assert "FAILED test_app.py::test_x" in message
        ctx.llm_client.generate.assert_not_awaited()

    async def test_ci_failure_retries_lagging_logs(self, enforcer, ctx, notifier):
        gh = ctx.github_client
        gh.list_workflow_runs.return_value = [run("failure")]
        gh.list_run_jobs.return_value = [{"id": 2, "name": "pytest", "conclusion": "failure"}]
        gh.get_job_logs.side_effect = [NotFoundError("logs"), "late log line"]

        await enforcer.review_pull_request(12)

        assert gh.get_job_logs.call_count == 2
        assert "late log line" in notifier.notify.await_args.args[0]

    async def test_violations_request_changes(self, enforcer, ctx, notifier, strategist):
        ctx.llm_client.generate.return_value = json.dumps(
            {"compliant": False, "violations": ["Uses print", "No tests"]}
        )

        result = await enforcer.review_pull_request(12)

        assert result.outcome is ReviewOutcome.CHANGES_REQUESTED
        assert result.violations == ["Uses print", "No tests"]
        number, body, event = ctx.github_client.create_review.call_args.args
        assert (number, event) == (12, "REQUEST_CHANGES")
        assert "1. Uses print\n2. No tests" in body
        assert "Uses print" in notifier.notify.await_args.args[0]
        ctx.github_client.merge_pull.assert_not_called()
        strategist.run.assert_not_awaited()

    async def test_compliant_draft_is_approved_readied_and_merged(self, enforcer, ctx, strategist):
        ctx.github_client.get_pull.return_value = pull(draft=True)

        result = await enforcer.review_pull_request(12)

        assert result.outcome is ReviewOutcome.MERGED
        assert result.merge_sha == "merge-sha"
        ctx.github_client.create_review.assert_called_once_with(12, APPROVAL_BODY, "APPROVE")
        ctx.github_client.mark_ready_for_review.assert_called_once_with("PR_node12")
        ctx.github_client.merge_pull.assert_called_once_with(12, "squash")
        strategist.run.assert_awaited_once_with("merge-sha")

        audit_prompt = ctx.llm_client.generate.await_args.args[0]
        assert "# CONSTITUTION.md @ main" in audit_prompt
        assert "print('hi')" in audit_prompt
        assert ctx.repo_stager.released == 1

    async def test_ready_pull_is_not_marked_again(self, enforcer, ctx):
        await enforcer.review_pull_request(12)
        ctx.github_client.mark_ready_for_review.assert_not_called()

    async def test_closed_pull_is_skipped(self, enforcer, ctx):
        ctx.github_client.get_pull.return_value = pull(state="closed")

        result = await enforcer.review_pull_request(12)

        assert result.outcome is ReviewOutcome.SKIPPED
        ctx.github_client.list_workflow_runs.assert_not_called()

    async def test_error_is_commented_and_reraised(self, enforcer, ctx, strategist):
        ctx.github_client.merge_pull.side_effect = GitHubAPIError("Merge conflict", 405)

        with pytest.raises(GitHubAPIError):
            await enforcer.review_pull_request(12)

        number, body = ctx.github_client.add_comment.call_args.args
        assert number == 12
        assert body.startswith("❌ Error during PR review:")
        assert "Merge conflict" in body
        strategist.run.assert_not_awaited()

    async def test_unparseable_audit_is_an_error(self, enforcer, ctx):
        ctx.llm_client.generate.return_value = "I have no opinion."

        with pytest.raises(AuditParseError):
            await enforcer.review_pull_request(12)

        ctx.github_client.merge_pull.assert_not_called()
        ctx.github_client.add_comment.assert_called_once()
        assert ctx.repo_stager.released == 1

    async def test_review_latest_open_pull(self, enforcer, ctx):
        ctx.github_client.list_pulls.return_value = [{"number": 12}]
        result = await enforcer.review_latest_open_pull()
        assert result.pr_number == 12

        ctx.github_client.list_pulls.return_value = []
        assert await enforcer.review_latest_open_pull() is None
