"""
Memory Lock Manager
===================

Serializes writes to shared persona memory across agent sessions using
short-lived file locks plus optimistic version numbers.

Flow:
    1. acquire_lock()            -> lock_id + current version (or a typed failure)
    2. caller edits its copy of the content
    3. update_with_versioning()  -> validates the lock, appends version N+1,
                                    releases the lock

Guarantees:
- At most one live lock per memory id. A lock past its ``expires_at`` is
  treated as absent and reclaimed by whoever looks at it next.
- Versions written through update_with_versioning() are 1, 2, 3, ... with no
  gaps, because a writer must hold the unit's lock.
- Acquisition never waits: it succeeds or fails immediately.

Within one process, check-then-create on a memory id is serialized with a
per-id asyncio.Lock. Across processes the check and the write are separate
filesystem operations, so two processes racing on the same id can both be
granted a lock. Lock expiry is the only crash recovery; nothing renews a lock.

Example Usage:
    ```python
    manager = MemoryLockManager(CoordinationConfig.from_env())
    await manager.initialize()

    acquired = await manager.acquire_lock("style-guide", "architect", "session-42")
    if acquired.success:
        result = await manager.update_with_versioning(
            "style-guide", "architect", new_content, acquired.lock_id, "session-42"
        )
    ```
"""

from __future__ import annotations

import asyncio
import logging
import time
import weakref
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional
from uuid import uuid4

from persona_coord.config import CoordinationConfig
from persona_coord.core.errors import StorageInitError
from persona_coord.core.lock_store import LockRecord, LockStore
from persona_coord.core.memory_scope import MemoryUnit
from persona_coord.core.secure_logging import sanitize_for_log
from persona_coord.core.version_store import VersionRecord, VersionStore, compute_checksum

logger = logging.getLogger(__name__)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


class LockFailureReason(str, Enum):
    """Why a lock or update request was refused."""
    LOCKED = "locked"                      # another live lock holds the unit
    VERSION_CONFLICT = "version_conflict"  # expected_version is stale
    NOT_LOCKED = "not_locked"              # update without any lock on the unit
    INVALID_LOCK = "invalid_lock"          # update with someone else's lock id
    LOCK_EXPIRED = "lock_expired"          # update with a lock past its TTL
    IO_ERROR = "io_error"                  # storage failure


@dataclass
class LockAcquisitionResult:
    success: bool
    lock_id: Optional[str] = None
    current_version: Optional[int] = None
    error: Optional[str] = None
    reason: Optional[LockFailureReason] = None
    locked_by: Optional[str] = None
    expires_at: Optional[float] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value if self.reason else None
        return data


@dataclass
class MemoryUpdateResult:
    success: bool
    new_version: Optional[int] = None
    conflicts: List[str] = field(default_factory=list)
    error: Optional[str] = None
    reason: Optional[LockFailureReason] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["reason"] = self.reason.value if self.reason else None
        return data


class MemoryLockManager:
    """Lock Coordinator over a LockStore and a VersionStore."""

    def __init__(self, config: Optional[CoordinationConfig] = None):
        self.config = config or CoordinationConfig.from_env()
        self.lock_store = LockStore(self.config.locks_dir)
        self.version_store = VersionStore(self.config.versions_dir, self.config.max_versions)

        # Per-memory-id guards for check-then-write sequences in this process.
        # An entry lives only while some coroutine holds or awaits its guard.
        self._unit_guards: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._initialized = False

    @property
    def lock_timeout(self) -> float:
        return self.config.lock_timeout_seconds

    def _guard_for(self, memory_id: str) -> asyncio.Lock:
        guard = self._unit_guards.get(memory_id)
        if guard is None:
            guard = asyncio.Lock()
            self._unit_guards[memory_id] = guard
        return guard

    async def initialize(self) -> None:
        """
        Create the storage directories and reclaim locks that expired while
        nobody was running.

        Raises:
            StorageInitError: a storage directory could not be created
        """
        if self._initialized:
            return

        for store, directory in (
            (self.lock_store, self.config.locks_dir),
            (self.version_store, self.config.versions_dir),
        ):
            try:
                await store.initialize()
            except OSError as e:
                logger.error(f"[MemoryLockManager] Failed to create {directory}: {e}")
                raise StorageInitError(directory, e) from e

        cleaned = await self.cleanup_expired_locks()
        if cleaned > 0:
            logger.info(f"[MemoryLockManager] Pre-cleaned {cleaned} expired lock(s) at startup")

        self._initialized = True
        logger.info(f"[MemoryLockManager] Initialized (base: {self.config.base_dir})")

    async def shutdown(self) -> None:
        """Run a final expired-lock sweep."""
        await self.cleanup_expired_locks()
        logger.info("[MemoryLockManager] Shutdown completed")

    # =========================================================================
    # Locking
    # =========================================================================

    async def acquire_lock(
        self,
        memory_id: str,
        persona: str,
        locked_by: str,
        project_hash: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> LockAcquisitionResult:
        """
        Try to take the write lock on a memory unit. Never waits.

        If ``expected_version`` is given and differs from the stored version,
        nothing is written and the failure carries the real current version.
        """
        unit = MemoryUnit.create(memory_id, persona, project_hash)
        lock_file = self.lock_store.path_for(unit)

        async with self._guard_for(unit.memory_id):
            try:
                existing = await self.lock_store.load(lock_file)
                if existing is not None:
                    if not existing.is_expired():
                        logger.debug(
                            f"[MemoryLockManager] {sanitize_for_log(memory_id)} held by "
                            f"{sanitize_for_log(existing.locked_by)} "
                            f"(expires in {existing.time_remaining():.1f}s)"
                        )
                        return LockAcquisitionResult(
                            success=False,
                            error=(
                                f"Memory {memory_id} is locked by {existing.locked_by} "
                                f"until {_iso(existing.expires_at)}"
                            ),
                            reason=LockFailureReason.LOCKED,
                            locked_by=existing.locked_by,
                            expires_at=existing.expires_at,
                        )

                    logger.info(
                        f"[MemoryLockManager] Reclaiming expired lock on {sanitize_for_log(memory_id)} "
                        f"(expired {-existing.time_remaining():.1f}s ago)"
                    )
                    await self.lock_store.remove(lock_file)

                current_version = await self.get_current_version(memory_id, persona, project_hash)

                if expected_version is not None and expected_version != current_version:
                    return LockAcquisitionResult(
                        success=False,
                        current_version=current_version,
                        error=f"Version conflict: expected {expected_version}, current is {current_version}",
                        reason=LockFailureReason.VERSION_CONFLICT,
                    )

                now = time.time()
                record = LockRecord(
                    lock_id=str(uuid4()),
                    memory_id=unit.memory_id,
                    persona=unit.persona,
                    project_hash=unit.project_hash,
                    locked_by=locked_by,
                    locked_at=now,
                    expires_at=now + self.lock_timeout,
                    version=current_version,
                )
                await self.lock_store.save(record)

            except OSError as e:
                logger.error(f"[MemoryLockManager] Failed to acquire lock on {sanitize_for_log(memory_id)}: {e}")
                return LockAcquisitionResult(
                    success=False,
                    error=f"Lock acquisition failed: {e}",
                    reason=LockFailureReason.IO_ERROR,
                )

        logger.debug(
            f"[MemoryLockManager] Lock {record.lock_id[:8]}... granted on {unit.describe()} "
            f"to {sanitize_for_log(locked_by)} at version {current_version}"
        )
        return LockAcquisitionResult(
            success=True,
            lock_id=record.lock_id,
            current_version=current_version,
            expires_at=record.expires_at,
        )

    async def release_lock(self, lock_id: str) -> bool:
        """Remove the lock with ``lock_id``. Unknown ids return False."""
        try:
            for lock_file, record in await self.lock_store.scan():
                if record.lock_id == lock_id:
                    await self.lock_store.remove(lock_file)
                    logger.debug(f"[MemoryLockManager] Released lock {sanitize_for_log(lock_id)}")
                    return True
        except OSError as e:
            logger.error(f"[MemoryLockManager] Failed to release lock {sanitize_for_log(lock_id)}: {e}")
            return False

        logger.warning(f"[MemoryLockManager] Lock {sanitize_for_log(lock_id)} not found")
        return False

    async def get_active_lock(self, memory_id: str) -> Optional[LockRecord]:
        """The live lock on ``memory_id``, reclaiming it first if it has expired."""
        lock_file = self.lock_file_for(memory_id)
        record = await self.lock_store.load(lock_file)
        if record is not None and record.is_expired():
            await self.lock_store.remove(lock_file)
            return None
        return record

    # =========================================================================
    # Versioned Updates
    # =========================================================================

    async def update_with_versioning(
        self,
        memory_id: str,
        persona: str,
        content: str,
        lock_id: str,
        author: str,
        project_hash: Optional[str] = None,
    ) -> MemoryUpdateResult:
        """
        Append ``content`` as the next version and release the lock.

        The caller must hold the live lock on the unit whose id is ``lock_id``.
        """
        unit = MemoryUnit.create(memory_id, persona, project_hash)
        lock_file = self.lock_store.path_for(unit)

        async with self._guard_for(unit.memory_id):
            lock = await self.lock_store.load(lock_file)
            if lock is None:
                return MemoryUpdateResult(
                    success=False,
                    error="Memory is not locked",
                    reason=LockFailureReason.NOT_LOCKED,
                )

            if lock.lock_id != lock_id:
                return MemoryUpdateResult(
                    success=False,
                    error="Invalid lock ID",
                    reason=LockFailureReason.INVALID_LOCK,
                )

            if lock.is_expired():
                await self.lock_store.remove(lock_file)
                return MemoryUpdateResult(
                    success=False,
                    error="Lock has expired",
                    reason=LockFailureReason.LOCK_EXPIRED,
                )

            try:
                history = await self.version_store.read_for_update(unit)
                current_version = max((r.version for r in history), default=0)
                entry = VersionRecord(
                    version=current_version + 1,
                    content=content,
                    author=author,
                    checksum=compute_checksum(content),
                    timestamp=time.time(),
                )
                await self.version_store.write(unit, history + [entry])
            except OSError as e:
                logger.error(f"[MemoryLockManager] Failed to write version for {unit.describe()}: {e}")
                return MemoryUpdateResult(
                    success=False,
                    error=f"Update failed: {e}",
                    reason=LockFailureReason.IO_ERROR,
                )

            await self.lock_store.remove(lock_file)

        logger.debug(f"[MemoryLockManager] Updated {unit.describe()} to version {entry.version}")
        return MemoryUpdateResult(success=True, new_version=entry.version)

    # =========================================================================
    # Read Accessors (degrade to defaults, never raise for storage errors)
    # =========================================================================

    async def _read_history(self, unit: MemoryUnit) -> List[VersionRecord]:
        try:
            return await self.version_store.read(unit)
        except (OSError, ValueError) as e:
            logger.warning(f"[MemoryLockManager] Failed to read versions for {unit.describe()}: {e}")
            return []

    async def get_version_history(
        self,
        memory_id: str,
        persona: str,
        project_hash: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[VersionRecord]:
        """Most recent versions first, at most ``limit`` (config default 10)."""
        unit = MemoryUnit.create(memory_id, persona, project_hash)
        if limit is None:
            limit = self.config.default_history_limit
        history = await self._read_history(unit)
        return history[: max(limit, 0)]

    async def get_current_version(
        self,
        memory_id: str,
        persona: str,
        project_hash: Optional[str] = None,
    ) -> int:
        """Highest stored version, 0 when the unit has never been written."""
        unit = MemoryUnit.create(memory_id, persona, project_hash)
        history = await self._read_history(unit)
        return max((r.version for r in history), default=0)

    async def get_memory_version(
        self,
        memory_id: str,
        persona: str,
        version: int,
        project_hash: Optional[str] = None,
    ) -> Optional[VersionRecord]:
        """A specific retained version, or None if it never existed or was trimmed."""
        unit = MemoryUnit.create(memory_id, persona, project_hash)
        for record in await self._read_history(unit):
            if record.version == version:
                return record
        return None

    async def detect_conflicts(
        self,
        memory_id: str,
        persona: str,
        base_version: int,
        project_hash: Optional[str] = None,
    ) -> List[str]:
        """
        Describe every retained version written after ``base_version``, newest
        first. An empty list means the caller's view is current.
        """
        unit = MemoryUnit.create(memory_id, persona, project_hash)
        history = await self._read_history(unit)
        return [
            f"Version {record.version} by {record.author} at {_iso(record.timestamp)}"
            for record in history
            if record.version > base_version
        ]

    # =========================================================================
    # Maintenance
    # =========================================================================

    async def cleanup_expired_locks(self) -> int:
        """Delete every lock whose TTL has elapsed. Returns how many were removed."""
        cleaned = 0
        now = time.time()
        try:
            for lock_file, record in await self.lock_store.scan():
                if record.is_expired(now) and await self.lock_store.remove(lock_file):
                    cleaned += 1
        except OSError as e:
            logger.error(f"[MemoryLockManager] Expired-lock sweep failed: {e}")

        if cleaned > 0:
            logger.debug(f"[MemoryLockManager] Cleaned up {cleaned} expired lock(s)")
        return cleaned

    def lock_file_for(self, memory_id: str) -> Path:
        return self.lock_store.path_for_id(memory_id)
