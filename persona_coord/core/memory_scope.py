"""
Memory unit addressing.

A memory unit is a named document owned by a persona, optionally narrowed to a
single project. The two scopes are modelled as distinct types so that every
place that derives a storage path has to handle both explicitly:

    PersonaScope("architect")               -> versions/personas/architect/<id>.json
    ProjectScope("architect", "a1b2c3")     -> versions/projects/a1b2c3/<id>.json

Locks are keyed by memory id alone: ``locks/<id>.lock``.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

LOCK_FILE_SUFFIX = ".lock"


def validate_identifier(kind: str, value: str) -> str:
    """Reject identifiers that are empty or could escape their storage directory."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{kind} must be a non-empty string")
    if "/" in value or "\\" in value or "\x00" in value or value in (".", ".."):
        raise ValueError(f"{kind} contains illegal path characters: {value!r}")
    return value


@dataclass(frozen=True)
class PersonaScope:
    """Memory shared by every project a persona works on."""
    persona: str

    def __post_init__(self):
        validate_identifier("persona", self.persona)

    @property
    def project_hash(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class ProjectScope:
    """Memory private to one project of a persona."""
    persona: str
    project_hash: str

    def __post_init__(self):
        validate_identifier("persona", self.persona)
        validate_identifier("project_hash", self.project_hash)


MemoryScope = Union[PersonaScope, ProjectScope]


@dataclass(frozen=True)
class MemoryUnit:
    """Addressable subject of locks and versions: (memory_id, persona, project_hash?)."""
    memory_id: str
    scope: MemoryScope

    def __post_init__(self):
        validate_identifier("memory_id", self.memory_id)

    @classmethod
    def create(
        cls,
        memory_id: str,
        persona: str,
        project_hash: Optional[str] = None,
    ) -> "MemoryUnit":
        """Build a unit from the flat (memoryId, persona, projectHash?) triple."""
        if project_hash:
            scope: MemoryScope = ProjectScope(persona=persona, project_hash=project_hash)
        else:
            scope = PersonaScope(persona=persona)
        return cls(memory_id=memory_id, scope=scope)

    @property
    def persona(self) -> str:
        return self.scope.persona

    @property
    def project_hash(self) -> Optional[str]:
        return self.scope.project_hash

    def version_file(self, versions_dir: Path) -> Path:
        if isinstance(self.scope, ProjectScope):
            return versions_dir / "projects" / self.scope.project_hash / f"{self.memory_id}.json"
        if isinstance(self.scope, PersonaScope):
            return versions_dir / "personas" / self.scope.persona / f"{self.memory_id}.json"
        raise TypeError(f"Unknown memory scope: {type(self.scope).__name__}")

    def describe(self) -> str:
        if isinstance(self.scope, ProjectScope):
            return f"{self.memory_id}@{self.scope.persona}/{self.scope.project_hash}"
        return f"{self.memory_id}@{self.scope.persona}"
