"""Tests for the lifecycle state store."""

import json

import pytest

from adl.engine.retry import RetryPolicy
from adl.engine.state_manager import (
    FileStateBackend,
    LifecycleState,
    StateBackendError,
    StateManager,
    StateValidationError,
)
from adl.errors import ConfigurationError, StateConflictError


class ConcurrentWriterBackend(FileStateBackend):
    """Lets another writer land a change just before the first conditional write."""

    def __init__(self, config, bump=10):
        super().__init__(config)
        self.bump = bump
        self.interfered = False

    async def store(self, data, expected_version=None):
        if expected_version and not self.interfered:
            self.interfered = True
            current = await self.load()
            current["iteration_count"] += self.bump
            current["version"] += 1
            await super().store(current)
        await super().store(data, expected_version)


def _manager(state_path, backend_cls=FileStateBackend, **kwargs):
    backend = backend_cls({"file": {"path": str(state_path)}}, **kwargs)
    policy = RetryPolicy(max_attempts=5, base_delay=0, retry_on=(StateConflictError,))
    return StateManager(backend, max_iterations=10, conflict_policy=policy)


class TestRead:

    async def test_absent_record_is_created_with_defaults(self, state_manager, state_path):
        assert not state_path.exists()

        state = await state_manager.read()

        assert state.status == "started"
        assert state.current_task_id is None
        assert state.iteration_count == 0
        assert state.max_iterations == 10
        assert state_path.exists()

    async def test_repeated_reads_create_the_record_once(self, state_manager, state_path):
        first = await state_manager.read()
        stored = json.loads(state_path.read_text())
        second = await state_manager.read()

        assert first.version == second.version == 1
        assert json.loads(state_path.read_text()) == stored

    async def test_read_after_concurrent_creation_returns_existing(self, state_path):
        manager = _manager(state_path)
        existing = LifecycleState.default().to_dict()
        existing.update(current_task_id="other", version=3)

        original_load = manager.backend.load
        calls = {"n": 0}

        async def racing_load():
            calls["n"] += 1
            if calls["n"] == 1:
                # Nothing there yet; another instance creates it before our store
                await FileStateBackend.store(manager.backend, existing)
                return None
            return await original_load()

        manager.backend.load = racing_load
        state = await manager.read()

        assert state.current_task_id == "other"
        assert state.version == 3

    async def test_invalid_json_surfaces_as_storage_error(self, state_manager, state_path):
        state_path.write_text("{not json")
        with pytest.raises(StateBackendError):
            await state_manager.read()

    async def test_invalid_status_is_rejected(self, state_manager, state_path):
        state_path.write_text(json.dumps({"status": "paused", "iteration_count": 0}))
        with pytest.raises(StateValidationError):
            await state_manager.read()


class TestUpdate:

    async def test_update_merges_and_bumps_version(self, state_manager):
        await state_manager.read()

        state = await state_manager.update({"current_task_id": "abc123"})

        assert state.current_task_id == "abc123"
        assert state.version == 2
        assert (await state_manager.read()).current_task_id == "abc123"

    async def test_callable_changes_see_fresh_state(self, state_manager):
        await state_manager.update({"iteration_count": 4})
        state = await state_manager.update(lambda s: {"iteration_count": s.iteration_count + 1})
        assert state.iteration_count == 5

    async def test_unknown_fields_are_rejected(self, state_manager):
        with pytest.raises(StateValidationError):
            await state_manager.update({"colour": "blue"})

    async def test_stale_conditional_write_is_rejected(self, state_manager):
        await state_manager.read()
        with pytest.raises(StateConflictError) as exc_info:
            await state_manager.backend.store({"version": 9}, expected_version=5)
        assert exc_info.value.expected_version == 5
        assert exc_info.value.actual_version == 1

    async def test_conflicting_update_is_reapplied_without_losing_the_other_write(self, state_path):
        manager = _manager(state_path, backend_cls=ConcurrentWriterBackend, bump=10)
        await manager.read()

        count = await manager.increment_iteration()

        assert manager.backend.interfered
        assert count == 11

    async def test_write_is_unconditional_and_stamps_time(self, state_manager):
        state = await state_manager.read()
        state.current_task_id = "xyz"
        state.last_updated = ""

        written = await state_manager.write(state)

        assert written.last_updated
        assert (await state_manager.read()).current_task_id == "xyz"


class TestConvenienceOperations:

    async def test_stop_and_start_loop(self, state_manager):
        await state_manager.update({"iteration_count": 7})

        stopped = await state_manager.stop_loop()
        assert stopped.is_stopped
        assert stopped.iteration_count == 7

        started = await state_manager.start_loop()
        assert started.status == "started"
        assert started.iteration_count == 0

    async def test_set_current_task_and_increment(self, state_manager):
        await state_manager.set_current_task("abc123")
        assert await state_manager.increment_iteration() == 1
        assert await state_manager.increment_iteration() == 2
        state = await state_manager.read()
        assert state.current_task_id == "abc123"

    async def test_reset_restores_defaults(self, state_manager):
        await state_manager.update({"current_task_id": "abc", "iteration_count": 3, "status": "stopped"})

        state = await state_manager.reset()

        assert state.status == "started"
        assert state.current_task_id is None
        assert state.iteration_count == 0
        assert state.version > 1

    async def test_health_check(self, state_manager):
        await state_manager.read()
        health = await state_manager.health_check()
        assert health["healthy"] is True
        assert health["exists"] is True


class TestCommitLeases:

    async def test_second_owner_cannot_take_a_held_lease(self, state_path):
        first = _manager(state_path)
        second = _manager(state_path)

        assert await first.acquire_commit_lease("deadbeef", 60)
        assert not await second.acquire_commit_lease("deadbeef", 60)

        await first.release_commit_lease("deadbeef")
        assert await second.acquire_commit_lease("deadbeef", 60)

    async def test_expired_lease_can_be_taken(self, state_path):
        first = _manager(state_path)
        second = _manager(state_path)

        assert await first.acquire_commit_lease("cafe", -1)
        assert await second.acquire_commit_lease("cafe", 60)

    async def test_release_by_non_owner_is_ignored(self, state_path):
        first = _manager(state_path)
        second = _manager(state_path)

        await first.acquire_commit_lease("f00d", 60)
        await second.release_commit_lease("f00d")

        assert not await second.acquire_commit_lease("f00d", 60)

    async def test_leases_are_per_commit(self, state_manager):
        assert await state_manager.acquire_commit_lease("a", 60)
        assert await state_manager.acquire_commit_lease("b", 60)


class TestCreate:

    async def test_file_backend_from_config(self, tmp_path):
        manager = await StateManager.create({
            "backend": "file",
            "file": {"path": str(tmp_path / "s.json")},
            "max_iterations": 4,
        })
        assert isinstance(manager.backend, FileStateBackend)
        assert (await manager.read()).max_iterations == 4

    async def test_unknown_backend(self):
        with pytest.raises(ConfigurationError):
            await StateManager.create({"backend": "dynamo"})


class TestLifecycleState:

    def test_from_dict_ignores_unknown_keys(self):
        state = LifecycleState.from_dict({"status": "stopped", "legacy": 1})
        assert state.is_stopped

    def test_negative_iteration_count_is_invalid(self):
        with pytest.raises(StateValidationError):
            LifecycleState.from_dict({"iteration_count": -1})
