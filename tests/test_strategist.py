"""Tests for the Strategist post-merge cycle."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from adl.engine.state_manager import FileStateBackend, StateManager
from adl.services.planner import PlanOutcome, PlanResult
from adl.services.strategist import (
    INCIDENT_LABEL,
    INCIDENT_TITLE,
    LESSONS_COMMIT_MESSAGE,
    TASKS_COMMIT_MESSAGE,
    Strategist,
    StrategistOutcome,
    format_merge_diff,
    is_strategist_commit,
)

MERGE_SHA = "merge-sha"


@pytest.fixture
def planner():
    p = MagicMock()
    p.run = AsyncMock(return_value=PlanResult(PlanOutcome.CREATED, "next-1", 1))
    return p


@pytest.fixture
def human_notifier():
    h = MagicMock()
    h.escalate = AsyncMock(return_value=42)
    return h


@pytest.fixture
def strategist(ctx, planner, human_notifier):
    ctx.github_client.get_commit.return_value = {
        "sha": MERGE_SHA,
        "files": [{"filename": "app.py", "patch": "@@ -1 +1 @@\n-old\n+new"}],
    }
    return Strategist(ctx, planner, human_notifier)


def test_format_merge_diff():
    diff = format_merge_diff([{"filename": "a.py", "patch": "+x"}, {"filename": "b.bin"}])
    assert diff == "--- a/a.py\n+++ b/a.py\n+x\n\n--- a/b.bin\n+++ b/b.bin\n"


def test_is_strategist_commit():
    assert is_strategist_commit(f"{TASKS_COMMIT_MESSAGE}\n\nbody")
    assert not is_strategist_commit("feat: widgets")
    assert not is_strategist_commit(None)


async def test_cycle_commits_documents_restarts_and_plans(strategist, ctx, planner):
    await ctx.state_manager.update({"status": "stopped", "iteration_count": 4})

    result = await strategist.run(MERGE_SHA)

    assert result.outcome is StrategistOutcome.COMPLETED
    assert result.plan.session_id == "next-1"

    commits = [c.args for c in ctx.github_client.update_file.call_args_list]
    assert commits == [
        ("AGENTS.md", "generated text", LESSONS_COMMIT_MESSAGE, "main", "sha-AGENTS.md"),
        ("TASKS.md", "generated text", TASKS_COMMIT_MESSAGE, "main", "sha-TASKS.md"),
    ]
    prompts = [c.args[0] for c in ctx.llm_client.generate.await_args_list]
    assert all("+new" in p for p in prompts)

    state = await ctx.state_manager.read()
    assert state.status == "started"
    assert state.iteration_count == 0
    planner.run.assert_awaited_once()
    assert ctx.repo_stager.released == 1


async def test_simultaneous_triggers_write_once(strategist, ctx):
    first, second = await asyncio.gather(strategist.run(MERGE_SHA), strategist.run(MERGE_SHA))

    outcomes = sorted(r.outcome.value for r in (first, second))
    assert outcomes == ["completed", "duplicate"]
    assert ctx.github_client.update_file.call_count == 2
    assert not strategist.is_processing(MERGE_SHA)


async def test_lease_held_by_another_instance(strategist, ctx, state_path, planner):
    other = StateManager(FileStateBackend({"file": {"path": str(state_path)}}))
    assert await other.acquire_commit_lease(MERGE_SHA)

    result = await strategist.run(MERGE_SHA)

    assert result.outcome is StrategistOutcome.DUPLICATE
    ctx.github_client.get_commit.assert_not_called()
    ctx.github_client.update_file.assert_not_called()
    planner.run.assert_not_awaited()


async def test_lease_is_released_after_cycle(strategist, ctx, state_path):
    await strategist.run(MERGE_SHA)

    other = StateManager(FileStateBackend({"file": {"path": str(state_path)}}))
    assert await other.acquire_commit_lease(MERGE_SHA)


async def test_empty_diff_ends_without_writes(strategist, ctx, planner):
    ctx.github_client.get_commit.return_value = {"sha": MERGE_SHA, "files": []}

    result = await strategist.run(MERGE_SHA)

    assert result.outcome is StrategistOutcome.NO_CHANGES
    ctx.llm_client.generate.assert_not_awaited()
    ctx.github_client.update_file.assert_not_called()
    planner.run.assert_not_awaited()


async def test_unchanged_document_is_not_committed(strategist, ctx):
    ctx.llm_client.generate.side_effect = ["# AGENTS.md\n", "```markdown\n# New tasks\n```"]

    await strategist.run(MERGE_SHA)

    commits = [c.args[0] for c in ctx.github_client.update_file.call_args_list]
    assert commits == ["TASKS.md"]
    assert ctx.github_client.update_file.call_args.args[1] == "# New tasks\n"


async def test_failure_files_incident(strategist, ctx, human_notifier, planner):
    ctx.github_client.update_file.side_effect = RuntimeError("409 conflict")

    result = await strategist.run(MERGE_SHA)

    assert result.outcome is StrategistOutcome.ERROR
    assert result.error == "409 conflict"
    title, body = human_notifier.escalate.await_args.args
    assert title == INCIDENT_TITLE
    assert MERGE_SHA in body
    assert human_notifier.escalate.await_args.kwargs["labels"] == [INCIDENT_LABEL]
    planner.run.assert_not_awaited()
    assert not strategist.is_processing(MERGE_SHA)
