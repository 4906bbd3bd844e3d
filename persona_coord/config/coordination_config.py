"""
Coordination Configuration
==========================

Single source of truth for every tunable used by the lock coordinator, the
service registry, the health monitor and the staleness reaper. All values can
be overridden through environment variables with the ``PERSONA_COORD_`` prefix.

Bad values never crash startup: they are logged and the default is used.

Environment Variables:
----------------------
- PERSONA_COORD_HOME: Base directory for locks and versions (default: ~/.persona-agents)
- PERSONA_COORD_LOCK_TIMEOUT: Lock TTL in seconds (default: 60.0)
- PERSONA_COORD_MAX_VERSIONS: Versions retained per memory unit (default: 50)
- PERSONA_COORD_HISTORY_LIMIT: Default history page size (default: 10)
- PERSONA_COORD_LOCK_CLEANUP_INTERVAL: Expired-lock sweep period (default: 300.0)
- PERSONA_COORD_HEALTH_INTERVAL: Per-service probe period (default: 30.0)
- PERSONA_COORD_HEALTH_TIMEOUT: Active probe deadline (default: 5.0)
- PERSONA_COORD_SERVICE_TIMEOUT: Heartbeat age before a service is stale (default: 90.0)
- PERSONA_COORD_SERVICE_CLEANUP_INTERVAL: Stale-service sweep period (default: 60.0)
- PERSONA_COORD_API_HOST / PERSONA_COORD_API_PORT: HTTP API bind (default: 127.0.0.1:3000)

Usage:
    from persona_coord.config import CoordinationConfig

    config = CoordinationConfig.from_env()
    manager = MemoryLockManager(config)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


# =============================================================================
# DEFAULT VALUES
# =============================================================================

_DEFAULT_LOCK_TIMEOUT = 60.0
_DEFAULT_MAX_VERSIONS = 50
_DEFAULT_HISTORY_LIMIT = 10
_DEFAULT_LOCK_CLEANUP_INTERVAL = 300.0  # 5 minutes

_DEFAULT_HEALTH_INTERVAL = 30.0
_DEFAULT_HEALTH_TIMEOUT = 5.0
_DEFAULT_SERVICE_TIMEOUT = 90.0
_DEFAULT_SERVICE_CLEANUP_INTERVAL = 60.0

_DEFAULT_API_HOST = "127.0.0.1"
_DEFAULT_API_PORT = 3000


def _default_base_dir() -> Path:
    return Path.home() / ".persona-agents"


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"[CoordinationConfig] Invalid float for {key}={raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"[CoordinationConfig] {key} must be positive (got {value}), using {default}")
        return default
    return value


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"[CoordinationConfig] Invalid int for {key}={raw!r}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"[CoordinationConfig] {key} must be positive (got {value}), using {default}")
        return default
    return value


@dataclass
class CoordinationConfig:
    """Configuration for the coordination layer."""

    # Storage
    base_dir: Path = field(default_factory=_default_base_dir)

    # Lock coordinator
    lock_timeout_seconds: float = _DEFAULT_LOCK_TIMEOUT
    max_versions: int = _DEFAULT_MAX_VERSIONS
    default_history_limit: int = _DEFAULT_HISTORY_LIMIT
    lock_cleanup_interval_seconds: float = _DEFAULT_LOCK_CLEANUP_INTERVAL

    # Service registry / health monitor
    health_check_interval_seconds: float = _DEFAULT_HEALTH_INTERVAL
    health_check_timeout_seconds: float = _DEFAULT_HEALTH_TIMEOUT
    service_timeout_seconds: float = _DEFAULT_SERVICE_TIMEOUT
    service_cleanup_interval_seconds: float = _DEFAULT_SERVICE_CLEANUP_INTERVAL

    # HTTP API
    api_host: str = _DEFAULT_API_HOST
    api_port: int = _DEFAULT_API_PORT

    @property
    def locks_dir(self) -> Path:
        return self.base_dir / "locks"

    @property
    def versions_dir(self) -> Path:
        return self.base_dir / "versions"

    @classmethod
    def from_env(cls) -> "CoordinationConfig":
        """Load configuration from environment variables."""
        home = os.getenv("PERSONA_COORD_HOME")
        return cls(
            base_dir=Path(home).expanduser() if home else _default_base_dir(),
            lock_timeout_seconds=_env_float("PERSONA_COORD_LOCK_TIMEOUT", _DEFAULT_LOCK_TIMEOUT),
            max_versions=_env_int("PERSONA_COORD_MAX_VERSIONS", _DEFAULT_MAX_VERSIONS),
            default_history_limit=_env_int("PERSONA_COORD_HISTORY_LIMIT", _DEFAULT_HISTORY_LIMIT),
            lock_cleanup_interval_seconds=_env_float(
                "PERSONA_COORD_LOCK_CLEANUP_INTERVAL", _DEFAULT_LOCK_CLEANUP_INTERVAL
            ),
            health_check_interval_seconds=_env_float(
                "PERSONA_COORD_HEALTH_INTERVAL", _DEFAULT_HEALTH_INTERVAL
            ),
            health_check_timeout_seconds=_env_float(
                "PERSONA_COORD_HEALTH_TIMEOUT", _DEFAULT_HEALTH_TIMEOUT
            ),
            service_timeout_seconds=_env_float(
                "PERSONA_COORD_SERVICE_TIMEOUT", _DEFAULT_SERVICE_TIMEOUT
            ),
            service_cleanup_interval_seconds=_env_float(
                "PERSONA_COORD_SERVICE_CLEANUP_INTERVAL", _DEFAULT_SERVICE_CLEANUP_INTERVAL
            ),
            api_host=os.getenv("PERSONA_COORD_API_HOST", _DEFAULT_API_HOST),
            api_port=_env_int("PERSONA_COORD_API_PORT", _DEFAULT_API_PORT),
        )
