"""
Coordination runtime.

Wires the lock coordinator, the service registry, the staleness reaper and
the health metrics collector together, and owns their start/stop order:

    start:  storage -> metrics collector -> reaper -> self-registration
    stop:   self-unregistration -> metrics collector -> reaper -> registry -> locks
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from persona_coord import __version__
from persona_coord.config import CoordinationConfig
from persona_coord.core.health_metrics import HealthMetricsCollector
from persona_coord.core.memory_lock_manager import MemoryLockManager
from persona_coord.core.service_registry import (
    ServiceEndpoint,
    ServiceMetadata,
    ServiceRegistry,
    ServiceStatus,
    ServiceType,
)
from persona_coord.core.staleness_reaper import StalenessReaper

logger = logging.getLogger(__name__)

MANAGEMENT_SERVICE_NAME = "persona-management-service"


class CoordinationRuntime:
    """Owns one coordinator, registry, reaper and metrics collector."""

    def __init__(
        self,
        config: Optional[CoordinationConfig] = None,
        credential_verifier=None,
        credential_issuer=None,
    ):
        self.config = config or CoordinationConfig.from_env()
        self.credential_verifier = credential_verifier
        self.lock_manager = MemoryLockManager(self.config)
        self.registry = ServiceRegistry(self.config, credential_issuer=credential_issuer)
        self.reaper = StalenessReaper(self.registry, self.lock_manager, self.config)
        self.metrics = HealthMetricsCollector(self.registry)
        self.management_service_id: Optional[str] = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self, self_register: bool = True) -> None:
        if self._started:
            return

        await self.lock_manager.initialize()
        await self.metrics.start(self.config.health_check_interval_seconds)
        self.reaper.start()

        if self_register:
            self.management_service_id = await self.registry.register(ServiceEndpoint(
                name=MANAGEMENT_SERVICE_NAME,
                type=ServiceType.MANAGEMENT,
                host=self.config.api_host,
                port=self.config.api_port,
                status=ServiceStatus.HEALTHY,
                metadata=ServiceMetadata(version=__version__, start_time=time.time()),
                health_endpoint="/health",
                tags=["management", "core", "api"],
            ))

        self._started = True
        logger.info(f"[CoordinationRuntime] Started (base: {self.config.base_dir})")

    async def stop(self) -> None:
        if not self._started:
            return

        if self.management_service_id:
            await self.registry.unregister(self.management_service_id)
            self.management_service_id = None

        await self.metrics.stop()
        await self.reaper.stop()
        await self.registry.shutdown()
        await self.lock_manager.shutdown()

        self._started = False
        logger.info("[CoordinationRuntime] Stopped")
