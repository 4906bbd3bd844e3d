"""
Version Store
=============

Append-style history of content versions per memory unit, one JSON array per
unit sorted descending by version and capped at ``max_versions`` entries (the
oldest are evicted silently on write).

    ~/.persona-agents/versions/
    ├── personas/architect/style-guide.json
    └── projects/a1b2c3/project-notes.json
        [
          {"version": 2, "content": "...", "timestamp": 1736895400.0,
           "author": "session-1234", "checksum": "9f86d0..."},
          {"version": 1, ...}
        ]
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List

import aiofiles.os

from persona_coord.core import file_io
from persona_coord.core.memory_scope import MemoryUnit

logger = logging.getLogger(__name__)

DEFAULT_MAX_VERSIONS = 50


def compute_checksum(content: str) -> str:
    """Content fingerprint used when reporting conflicts; never for validation."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


@dataclass
class VersionRecord:
    """One immutable version of a memory unit's content."""
    version: int
    content: str
    author: str
    checksum: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "VersionRecord":
        return cls(
            version=int(data["version"]),
            content=str(data["content"]),
            author=str(data.get("author", "")),
            checksum=str(data.get("checksum", "")),
            timestamp=float(data.get("timestamp", 0.0)),
        )


class VersionStore:
    """File-backed bounded version history."""

    def __init__(self, versions_dir: Path, max_versions: int = DEFAULT_MAX_VERSIONS):
        self.versions_dir = versions_dir
        self.max_versions = max_versions

    async def initialize(self) -> None:
        await file_io.ensure_dir(self.versions_dir)

    def path_for(self, unit: MemoryUnit) -> Path:
        return unit.version_file(self.versions_dir)

    async def read(self, unit: MemoryUnit) -> List[VersionRecord]:
        """
        Full retained history, newest first. A unit with no file has no history.

        Raises:
            ValueError: the history file is corrupted
            OSError: the history file could not be read
        """
        try:
            data = await file_io.read_json(self.path_for(unit))
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            raise ValueError(f"corrupted version file {self.path_for(unit)}: {e}") from e

        if not isinstance(data, list):
            raise ValueError(f"version file {self.path_for(unit)} is not a JSON array")
        try:
            records = [VersionRecord.from_dict(entry) for entry in data]
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed version entry in {self.path_for(unit)}: {e}") from e
        return sorted(records, key=lambda r: r.version, reverse=True)

    async def read_for_update(self, unit: MemoryUnit) -> List[VersionRecord]:
        """
        History for a writer about to append.

        A corrupted file is moved aside to ``*.corrupt`` and an empty history is
        returned so the unit can keep accepting writes. Read errors propagate.
        """
        try:
            return await self.read(unit)
        except ValueError as e:
            path = self.path_for(unit)
            quarantine = path.with_name(path.name + ".corrupt")
            logger.warning(f"[VersionStore] {e}; moving it to {quarantine.name} and starting fresh")
            try:
                await aiofiles.os.rename(path, quarantine)
            except FileNotFoundError:
                pass
            return []

    async def write(self, unit: MemoryUnit, records: List[VersionRecord]) -> None:
        """Persist ``records`` newest first, trimmed to ``max_versions``."""
        retained = sorted(records, key=lambda r: r.version, reverse=True)[: self.max_versions]
        await file_io.write_json_atomic(self.path_for(unit), [r.to_dict() for r in retained])
