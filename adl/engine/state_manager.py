# =============================================================================
# AUTONOMOUS DEVELOPMENT LOOP - STATE MANAGER
# =============================================================================
"""
State Manager Module

This module persists the lifecycle's single record of truth: whether the
autonomous loop is running, which agent session is active, and how many
planning iterations have run since the last merge.

It enables the system to:
1. Create a default record on first read
2. Apply read-modify-write updates without losing concurrent writes
3. Hold time-boxed leases (e.g. one Strategist cycle per commit SHA)

Supported Backends:
    - File: JSON document on disk (default, single instance)
    - Redis: shared document with WATCH/MULTI conditional writes

Persisted layout (one JSON document at a well-known key):
    {
        "status": "started",
        "current_task_id": null,
        "last_updated": "2024-01-01T00:00:00+00:00",
        "iteration_count": 0,
        "max_iterations": 10,
        "version": 1
    }
"""

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from adl.engine.retry import RetryPolicy
from adl.errors import ConfigurationError, StateConflictError, StorageError


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateBackendError(StorageError):
    """Raised when a backend operation fails."""
    pass


class StateValidationError(StorageError):
    """Raised when a stored record does not describe a valid state."""
    pass


# =============================================================================
# DATA STRUCTURES
# =============================================================================

DEFAULT_STATE_KEY = ".adl-state.json"
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_LEASE_SECONDS = 30 * 60


class LoopStatus(Enum):
    """Whether the autonomous loop is allowed to act."""
    STARTED = "started"
    STOPPED = "stopped"


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class LifecycleState:
    """
    The single persisted lifecycle record.

    ``version`` is the optimistic-concurrency token: every successful write
    increments it, and conditional writes are rejected when the stored
    version differs from the one the writer read.
    """
    status: str = LoopStatus.STARTED.value
    current_task_id: Optional[str] = None
    last_updated: str = ""
    iteration_count: int = 0
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    version: int = 0

    @property
    def is_stopped(self) -> bool:
        return self.status == LoopStatus.STOPPED.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def default(cls, max_iterations: int = DEFAULT_MAX_ITERATIONS) -> "LifecycleState":
        return cls(last_updated=_utc_now(), max_iterations=max_iterations)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LifecycleState":
        known = {f.name for f in fields(cls)}
        state = cls(**{k: v for k, v in data.items() if k in known})
        state.validate()
        return state

    def validate(self) -> None:
        valid_statuses = {s.value for s in LoopStatus}
        if self.status not in valid_statuses:
            raise StateValidationError(f"Invalid status: {self.status!r}")
        if not isinstance(self.iteration_count, int) or self.iteration_count < 0:
            raise StateValidationError(
                f"iteration_count must be a non-negative integer, got {self.iteration_count!r}"
            )

    def merged(self, changes: Dict[str, Any]) -> "LifecycleState":
        """Return a copy with the given fields replaced."""
        data = self.to_dict()
        unknown = set(changes) - set(data)
        if unknown:
            raise StateValidationError(f"Unknown state fields: {sorted(unknown)}")
        data.update(changes)
        return LifecycleState.from_dict(data)


StateChanges = Union[Dict[str, Any], Callable[[LifecycleState], Dict[str, Any]]]


# =============================================================================
# STATE BACKEND INTERFACE
# =============================================================================

class StateBackendInterface(ABC):
    """
    Abstract interface for lifecycle state storage.

    ``store`` takes an ``expected_version``:
        - None: unconditional overwrite
        - 0: the record must not exist yet
        - n: the stored record must currently be at version n

    A mismatch raises StateConflictError.
    """

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored record, or None if absent."""
        pass

    @abstractmethod
    async def store(self, data: Dict[str, Any], expected_version: Optional[int] = None) -> None:
        """Persist the record, honouring expected_version."""
        pass

    @abstractmethod
    async def acquire_lease(self, key: str, owner: str, ttl_seconds: int) -> bool:
        """Take a time-boxed lease; False if someone else holds it."""
        pass

    @abstractmethod
    async def release_lease(self, key: str, owner: str) -> None:
        """Release a lease held by owner. Missing leases are ignored."""
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        pass

    async def close(self) -> None:
        pass


# =============================================================================
# FILE BACKEND
# =============================================================================

class FileStateBackend(StateBackendInterface):
    """
    File-based state persistence using JSON.

    Suitable for single-instance deployments. Writes are atomic (temp file
    + replace) and version checks run under a process-wide lock. Leases are
    kept in a sibling document ``<name>.leases.json``.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize file state backend.

        Args:
            config: Configuration containing:
                - file.path: Path to the state document
        """
        file_config = config.get("file", {})

        self.file_path = Path(file_config.get("path", f"state/{DEFAULT_STATE_KEY}"))
        self.lease_path = self.file_path.with_name(self.file_path.stem + ".leases.json")

        self.logger = logging.getLogger("adl.state.file")
        self._lock = threading.RLock()

        self.file_path.parent.mkdir(parents=True, exist_ok=True)

    def _read_json(self, path: Path) -> Optional[Dict[str, Any]]:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            self.logger.error(f"Invalid JSON in {path}: {e}")
            raise StateBackendError(f"Invalid state file {path}: {e}")
        except OSError as e:
            raise StateBackendError(f"Failed to read {path}: {e}")

    def _write_json(self, path: Path, data: Dict[str, Any]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
            temp_path.replace(path)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StateBackendError(f"Failed to write {path}: {e}")

    async def load(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._read_json(self.file_path)

    async def store(self, data: Dict[str, Any], expected_version: Optional[int] = None) -> None:
        with self._lock:
            if expected_version is not None:
                current = self._read_json(self.file_path)
                actual = current.get("version", 0) if current else 0
                if actual != expected_version:
                    raise StateConflictError(
                        f"State version is {actual}, expected {expected_version}",
                        expected_version=expected_version,
                        actual_version=actual,
                    )
            self._write_json(self.file_path, data)
            self.logger.debug(f"Saved state version {data.get('version')}")

    async def acquire_lease(self, key: str, owner: str, ttl_seconds: int) -> bool:
        with self._lock:
            leases = self._read_json(self.lease_path) or {}
            now = time.time()
            leases = {k: v for k, v in leases.items() if v.get("expires_at", 0) > now}

            holder = leases.get(key)
            if holder and holder.get("owner") != owner:
                return False

            leases[key] = {"owner": owner, "expires_at": now + ttl_seconds}
            self._write_json(self.lease_path, leases)
            return True

    async def release_lease(self, key: str, owner: str) -> None:
        with self._lock:
            leases = self._read_json(self.lease_path) or {}
            holder = leases.get(key)
            if holder and holder.get("owner") == owner:
                del leases[key]
                self._write_json(self.lease_path, leases)

    async def health_check(self) -> Dict[str, Any]:
        try:
            data = await self.load()
            return {
                "healthy": True,
                "backend": "file",
                "file_path": str(self.file_path),
                "exists": data is not None,
                "last_updated": (data or {}).get("last_updated"),
            }
        except StorageError as e:
            return {"healthy": False, "backend": "file", "error": str(e)}


# =============================================================================
# REDIS BACKEND
# =============================================================================

class RedisStateBackend(StateBackendInterface):
    """
    Redis-based state persistence.

    Recommended when more than one service instance shares the lifecycle
    record: conditional writes use WATCH/MULTI and leases use SET NX EX, so
    both hold across instances.

    Keys:
        adl:{project_id}:state        the lifecycle document
        adl:{project_id}:lease:{key}  lease holders
    """

    def __init__(self, config: Dict[str, Any]):
        redis_config = config.get("redis", {})

        self.redis_url = redis_config.get("url", "redis://localhost:6379/0")
        self.key_prefix = redis_config.get("key_prefix", "adl")
        self.project_id = config.get("project_id", "default")

        self.logger = logging.getLogger("adl.state.redis")
        self._client = None

    async def _get_client(self):
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(self.redis_url, decode_responses=True)
            self.logger.info("Connected to Redis state backend")
        return self._client

    @property
    def state_key(self) -> str:
        return f"{self.key_prefix}:{self.project_id}:state"

    def _lease_key(self, key: str) -> str:
        return f"{self.key_prefix}:{self.project_id}:lease:{key}"

    async def load(self) -> Optional[Dict[str, Any]]:
        try:
            client = await self._get_client()
            raw = await client.get(self.state_key)
        except Exception as e:
            raise StateBackendError(f"Redis get failed: {e}")
        return json.loads(raw) if raw else None

    async def store(self, data: Dict[str, Any], expected_version: Optional[int] = None) -> None:
        from redis.exceptions import WatchError

        payload = json.dumps(data, default=str)
        try:
            client = await self._get_client()
            if expected_version is None:
                await client.set(self.state_key, payload)
                return

            async with client.pipeline(transaction=True) as pipe:
                await pipe.watch(self.state_key)
                raw = await pipe.get(self.state_key)
                actual = json.loads(raw).get("version", 0) if raw else 0
                if actual != expected_version:
                    await pipe.unwatch()
                    raise StateConflictError(
                        f"State version is {actual}, expected {expected_version}",
                        expected_version=expected_version,
                        actual_version=actual,
                    )
                pipe.multi()
                pipe.set(self.state_key, payload)
                await pipe.execute()
        except WatchError:
            raise StateConflictError(
                "State changed while writing", expected_version=expected_version
            )
        except StorageError:
            raise
        except Exception as e:
            raise StateBackendError(f"Redis set failed: {e}")

    async def acquire_lease(self, key: str, owner: str, ttl_seconds: int) -> bool:
        try:
            client = await self._get_client()
            acquired = await client.set(self._lease_key(key), owner, nx=True, ex=ttl_seconds)
        except Exception as e:
            raise StateBackendError(f"Redis lease acquire failed: {e}")
        return bool(acquired)

    async def release_lease(self, key: str, owner: str) -> None:
        try:
            client = await self._get_client()
            lease_key = self._lease_key(key)
            if await client.get(lease_key) == owner:
                await client.delete(lease_key)
        except Exception as e:
            raise StateBackendError(f"Redis lease release failed: {e}")

    async def health_check(self) -> Dict[str, Any]:
        try:
            client = await self._get_client()
            await client.ping()
            return {
                "healthy": True,
                "backend": "redis",
                "url": self.redis_url.split("@")[-1],
                "project_id": self.project_id,
            }
        except Exception as e:
            return {"healthy": False, "backend": "redis", "error": str(e)}

    async def close(self) -> None:
        if self._client:
            await self._client.close()
            self._client = None


# =============================================================================
# STATE MANAGER
# =============================================================================

class StateManager:
    """
    Lifecycle state operations on top of a storage backend.

    All mutations go through ``update``, which re-reads and re-applies the
    change when a concurrent writer got there first.
    """

    def __init__(
        self,
        backend: StateBackendInterface,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        conflict_policy: Optional[RetryPolicy] = None,
    ):
        self.backend = backend
        self.max_iterations = max_iterations
        self.owner_id = uuid.uuid4().hex
        self.conflict_policy = conflict_policy or RetryPolicy(
            max_attempts=5,
            base_delay=0.05,
            backoff_factor=2.0,
            retry_on=(StateConflictError,),
            name="state update",
        )
        self.logger = logging.getLogger("adl.state")

    @classmethod
    async def create(cls, config: Dict[str, Any]) -> "StateManager":
        """
        Create a state manager from configuration.

        Args:
            config: ``state`` configuration section with ``backend`` set to
                ``file`` (default) or ``redis``
        """
        backend_name = config.get("backend", "file")
        if backend_name == "file":
            backend = FileStateBackend(config)
        elif backend_name == "redis":
            backend = RedisStateBackend(config)
        else:
            raise ConfigurationError(f"Unknown state backend: {backend_name}")

        return cls(backend, max_iterations=int(config.get("max_iterations", DEFAULT_MAX_ITERATIONS)))

    # =========================================================================
    # CORE OPERATIONS
    # =========================================================================

    async def read(self) -> LifecycleState:
        """
        Read the lifecycle state, creating the default record if absent.

        Raises:
            StorageError: If the backend fails
        """
        data = await self.backend.load()
        if data is not None:
            return LifecycleState.from_dict(data)

        self.logger.info("State record does not exist, creating default state")
        default = LifecycleState.default(self.max_iterations)
        default.version = 1
        try:
            await self.backend.store(default.to_dict(), expected_version=0)
            return default
        except StateConflictError:
            # Another writer created it first
            data = await self.backend.load()
            if data is None:
                raise StateBackendError("State record vanished after concurrent creation")
            return LifecycleState.from_dict(data)

    async def write(self, state: LifecycleState) -> LifecycleState:
        """Unconditionally overwrite the record, stamping last_updated."""
        state.validate()
        state.last_updated = _utc_now()
        state.version = state.version + 1
        await self.backend.store(state.to_dict())
        return state

    async def update(self, changes: StateChanges) -> LifecycleState:
        """
        Read, merge and conditionally write the record.

        Args:
            changes: Field values to set, or a callable computing them from
                the freshly read state

        Returns:
            The state as written

        Raises:
            StateConflictError: If concurrent writers won every attempt
            StorageError: If the backend fails
        """

        async def _attempt(attempt: int) -> LifecycleState:
            current = await self.read()
            delta = changes(current) if callable(changes) else changes
            new_state = current.merged(delta)
            new_state.last_updated = _utc_now()
            new_state.version = current.version + 1
            await self.backend.store(new_state.to_dict(), expected_version=current.version)
            return new_state

        state = await self.conflict_policy.execute(_attempt)
        self.logger.debug(f"State updated to version {state.version}")
        return state

    # =========================================================================
    # CONVENIENCE OPERATIONS
    # =========================================================================

    async def stop_loop(self) -> LifecycleState:
        self.logger.info("Stopping loop")
        return await self.update({"status": LoopStatus.STOPPED.value})

    async def start_loop(self) -> LifecycleState:
        """Restart the loop and reset the iteration count."""
        self.logger.info("Starting loop")
        return await self.update({"status": LoopStatus.STARTED.value, "iteration_count": 0})

    async def set_current_task(self, task_id: Optional[str]) -> LifecycleState:
        return await self.update({"current_task_id": task_id})

    async def increment_iteration(self) -> int:
        state = await self.update(lambda s: {"iteration_count": s.iteration_count + 1})
        return state.iteration_count

    async def reset(self) -> LifecycleState:
        """Restore the default record."""
        self.logger.warning("Resetting lifecycle state to defaults")

        def _defaults(current: LifecycleState) -> Dict[str, Any]:
            default = LifecycleState.default(self.max_iterations).to_dict()
            default.pop("version")
            default.pop("last_updated")
            return default

        return await self.update(_defaults)

    # =========================================================================
    # LEASES
    # =========================================================================

    async def acquire_commit_lease(self, commit_sha: str, ttl_seconds: int = DEFAULT_LEASE_SECONDS) -> bool:
        return await self.backend.acquire_lease(f"commit:{commit_sha}", self.owner_id, ttl_seconds)

    async def release_commit_lease(self, commit_sha: str) -> None:
        await self.backend.release_lease(f"commit:{commit_sha}", self.owner_id)

    async def health_check(self) -> Dict[str, Any]:
        return await self.backend.health_check()

    async def close(self) -> None:
        await self.backend.close()


__all__ = [
    "LoopStatus",
    "LifecycleState",
    "StateBackendInterface",
    "FileStateBackend",
    "RedisStateBackend",
    "StateManager",
    "StateBackendError",
    "StateValidationError",
    "DEFAULT_STATE_KEY",
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_LEASE_SECONDS",
]
