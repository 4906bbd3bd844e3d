"""
Lock Store
==========

Durable, keyed storage of at most one lock record per memory id. The store is
the arbiter of lock existence: a record exists iff its file exists.

Lock File Format:
    ~/.persona-agents/locks/
    ├── project-notes.lock
    │   {
    │     "lock_id": "f47ac10b-58cc-4372-a567-0e02b2c3d479",
    │     "memory_id": "project-notes",
    │     "persona": "architect",
    │     "project_hash": null,
    │     "locked_by": "session-1234",
    │     "locked_at": 1736895345.123,
    │     "expires_at": 1736895405.123,
    │     "version": 3
    │   }
    └── style-guide.lock

The store never interprets expiry; that is the coordinator's job.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from persona_coord.core import file_io
from persona_coord.core.memory_scope import LOCK_FILE_SUFFIX, MemoryUnit, validate_identifier

logger = logging.getLogger(__name__)


@dataclass
class LockRecord:
    """A write permit on one memory unit."""
    lock_id: str
    memory_id: str
    persona: str
    locked_by: str
    locked_at: float
    expires_at: float
    version: int  # version the lock was issued against
    project_hash: Optional[str] = None

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at

    def time_remaining(self) -> float:
        """Seconds until expiry (negative once expired)."""
        return self.expires_at - time.time()

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LockRecord":
        return cls(
            lock_id=str(data["lock_id"]),
            memory_id=str(data["memory_id"]),
            persona=str(data["persona"]),
            locked_by=str(data["locked_by"]),
            locked_at=float(data["locked_at"]),
            expires_at=float(data["expires_at"]),
            version=int(data.get("version", 0)),
            project_hash=data.get("project_hash"),
        )


class LockStore:
    """File-backed lock records, one ``<memory_id>.lock`` per unit."""

    def __init__(self, locks_dir: Path):
        self.locks_dir = locks_dir

    async def initialize(self) -> None:
        await file_io.ensure_dir(self.locks_dir)

    def path_for_id(self, memory_id: str) -> Path:
        # Locks are keyed by memory id alone, whatever the scope
        validate_identifier("memory_id", memory_id)
        return self.locks_dir / f"{memory_id}{LOCK_FILE_SUFFIX}"

    def path_for(self, unit: MemoryUnit) -> Path:
        return self.path_for_id(unit.memory_id)

    async def load(self, lock_file: Path) -> Optional[LockRecord]:
        """
        Read a lock record. Missing files read as None.

        A corrupted record (empty, not JSON, missing fields) cannot be
        honoured by anyone, so it is removed and read as None.
        """
        try:
            data = await file_io.read_json(lock_file)
            return LockRecord.from_dict(data)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"[LockStore] Corrupted lock file {lock_file.name} ({e}), removing")
            await file_io.remove_file(lock_file)
            return None
        except OSError as e:
            logger.warning(f"[LockStore] Failed to read lock file {lock_file.name}: {e}")
            return None

    async def save(self, record: LockRecord) -> None:
        """Persist ``record``, replacing any record for the same memory id."""
        lock_file = self.path_for_id(record.memory_id)
        await file_io.write_json_atomic(lock_file, record.to_dict())

    async def remove(self, lock_file: Path) -> bool:
        return await file_io.remove_file(lock_file)

    async def scan(self) -> List[Tuple[Path, LockRecord]]:
        """All readable lock records currently on disk."""
        records: List[Tuple[Path, LockRecord]] = []
        for name in await file_io.list_dir(self.locks_dir):
            if not name.endswith(LOCK_FILE_SUFFIX):
                continue
            lock_file = self.locks_dir / name
            record = await self.load(lock_file)
            if record is not None:
                records.append((lock_file, record))
        return records
