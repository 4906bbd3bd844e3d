"""
Staleness Reaper
================

Two scheduled sweeps on independent periods:

    services  every service_cleanup_interval_seconds (60s): unregister any
              endpoint whose last_seen is older than the service timeout
    locks     every lock_cleanup_interval_seconds (300s): delete lock files
              past their expires_at

Lock reclamation also happens lazily whenever the coordinator inspects a lock;
the lock sweep only catches units nobody is touching.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from persona_coord.config import CoordinationConfig
from persona_coord.core.memory_lock_manager import MemoryLockManager
from persona_coord.core.service_registry import ServiceRegistry

logger = logging.getLogger(__name__)


class StalenessReaper:
    """Owns the periodic cleanup tasks for a registry and a lock coordinator."""

    def __init__(
        self,
        registry: Optional[ServiceRegistry] = None,
        lock_manager: Optional[MemoryLockManager] = None,
        config: Optional[CoordinationConfig] = None,
    ):
        self.registry = registry
        self.lock_manager = lock_manager
        self.config = config or CoordinationConfig.from_env()
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def sweep_services(self) -> List[str]:
        if self.registry is None:
            return []
        removed = await self.registry.cleanup_stale_services()
        if removed:
            logger.info(f"[StalenessReaper] Removed {len(removed)} stale service(s)")
        return removed

    async def sweep_locks(self) -> int:
        if self.lock_manager is None:
            return 0
        cleaned = await self.lock_manager.cleanup_expired_locks()
        if cleaned:
            logger.info(f"[StalenessReaper] Reclaimed {cleaned} expired lock(s)")
        return cleaned

    def start(self) -> None:
        if self.is_running:
            return
        if self.registry is not None:
            self._tasks.append(asyncio.create_task(
                self._run_every(self.config.service_cleanup_interval_seconds, self.sweep_services),
                name="reaper-services",
            ))
        if self.lock_manager is not None:
            self._tasks.append(asyncio.create_task(
                self._run_every(self.config.lock_cleanup_interval_seconds, self.sweep_locks),
                name="reaper-locks",
            ))
        logger.info(
            f"[StalenessReaper] Started (services every {self.config.service_cleanup_interval_seconds}s, "
            f"locks every {self.config.lock_cleanup_interval_seconds}s)"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("[StalenessReaper] Stopped")

    async def _run_every(self, interval: float, sweep: Callable[[], Awaitable[object]]) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                await sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[StalenessReaper] Sweep {sweep.__name__} failed: {e}")
