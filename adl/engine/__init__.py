# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - ENGINE PACKAGE
# =============================================================================
"""
Engine Package

1. state_manager: the persisted lifecycle record, optimistic updates and
   commit leases
2. retry: the retry policy shared by every call site that retries

Usage:
    from adl.engine import StateManager, RetryPolicy

    state_manager = await StateManager.create(config["state"])
    state = await state_manager.update({"current_task_id": "abc123"})
"""

from adl.engine.retry import RetryPolicy, retry_on_types
from adl.engine.state_manager import (
    LifecycleState,
    LoopStatus,
    StateManager,
    FileStateBackend,
    RedisStateBackend,
)

__all__ = [
    "RetryPolicy",
    "retry_on_types",
    "LifecycleState",
    "LoopStatus",
    "StateManager",
    "FileStateBackend",
    "RedisStateBackend",
]
