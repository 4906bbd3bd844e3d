"""
Auth collaborator contract.

The coordination layer never decides who a caller is. It consumes two things:

    CredentialVerifier      token -> AgentIdentity (role + permissions) or None
    HealthCredentialIssuer  short-lived bearer token for authenticated probes

StaticTokenAuthority implements both with opaque in-memory tokens. Nothing is
issued at construction; identities exist only after provision() is called.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, runtime_checkable

from persona_coord.core.secure_logging import mask_token, sanitize_for_log

logger = logging.getLogger(__name__)

HEALTH_MONITOR_ROLE = "health-monitor"
MEMORY_WRITE = "memory:write"


@dataclass(frozen=True)
class AgentIdentity:
    agent_id: str
    role: str
    permissions: List[str] = field(default_factory=list)

    def has_permission(self, permission: str) -> bool:
        return "*" in self.permissions or permission in self.permissions


@runtime_checkable
class CredentialVerifier(Protocol):
    def verify_credential(self, token: str) -> Optional[AgentIdentity]:
        ...


@runtime_checkable
class HealthCredentialIssuer(Protocol):
    def issue_health_credential(self) -> Optional[str]:
        ...


@dataclass
class _Grant:
    identity: AgentIdentity
    expires_at: Optional[float]


class StaticTokenAuthority:
    """In-memory token table satisfying both collaborator contracts."""

    def __init__(self):
        self._grants: Dict[str, _Grant] = {}

    def provision(self, identity: AgentIdentity, ttl_seconds: Optional[float] = None) -> str:
        """Issue a new opaque token for ``identity``."""
        token = secrets.token_urlsafe(32)
        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        self._grants[token] = _Grant(identity=identity, expires_at=expires_at)
        logger.info(
            f"[StaticTokenAuthority] Provisioned {sanitize_for_log(identity.agent_id)} "
            f"({identity.role}) token {mask_token(token)}"
        )
        return token

    def revoke(self, token: str) -> bool:
        return self._grants.pop(token, None) is not None

    def verify_credential(self, token: str) -> Optional[AgentIdentity]:
        grant = self._grants.get(token)
        if grant is None:
            return None
        if grant.expires_at is not None and time.time() > grant.expires_at:
            self._grants.pop(token, None)
            return None
        return grant.identity

    def issue_health_credential(self) -> Optional[str]:
        """Token of a provisioned health-monitor identity, if any."""
        for token in list(self._grants):
            identity = self.verify_credential(token)
            if identity is not None and identity.role == HEALTH_MONITOR_ROLE:
                return token
        return None
