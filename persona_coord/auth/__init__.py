"""Auth collaborator contracts consumed by the coordination layer."""

from persona_coord.auth.credentials import (
    HEALTH_MONITOR_ROLE,
    MEMORY_WRITE,
    AgentIdentity,
    CredentialVerifier,
    HealthCredentialIssuer,
    StaticTokenAuthority,
)

__all__ = [
    "HEALTH_MONITOR_ROLE",
    "MEMORY_WRITE",
    "AgentIdentity",
    "CredentialVerifier",
    "HealthCredentialIssuer",
    "StaticTokenAuthority",
]
