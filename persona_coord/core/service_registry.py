"""
Service Registry
================

In-memory table of the service endpoints that make up a persona deployment
(global persona servers, per-project servers, the management service).

Identity:
    An endpoint's id is derived from (type, name, host, port), so registering
    the same tuple twice updates the existing entry instead of adding another.

Liveness:
    Every registered endpoint gets a recurring health probe (see
    ServiceHealthMonitor). Probe results are applied here and only here; the
    entry's ``status`` is what discovery and failover consult. Entries whose
    ``last_seen`` is older than ``service_timeout_seconds`` are removed by
    cleanup_stale_services(), which the StalenessReaper calls on a schedule.

Events are published on ``registry.events`` (see event_channel.ServiceEvent).

Usage:
    registry = ServiceRegistry(config)
    service_id = await registry.register(ServiceEndpoint(
        name="architect-global",
        type=ServiceType.GLOBAL_PERSONA_SERVER,
        host="127.0.0.1",
        port=3001,
        health_endpoint="/health",
        metadata=ServiceMetadata(persona="architect"),
    ))
    peer = registry.find_failover(service_id)
"""

from __future__ import annotations

import copy
import hashlib
import logging
import random
import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from persona_coord.config import CoordinationConfig
from persona_coord.core.event_channel import EventChannel, ServiceEvent
from persona_coord.core.secure_logging import sanitize_for_log

if TYPE_CHECKING:
    from persona_coord.auth.credentials import HealthCredentialIssuer
    from persona_coord.core.health_monitor import HealthCheckResult, ServiceHealthMonitor

logger = logging.getLogger(__name__)


class ServiceType(str, Enum):
    GLOBAL = "global"
    PROJECT = "project"
    MANAGEMENT = "management"
    GLOBAL_PERSONA_SERVER = "global-persona-server"


class ServiceStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    STOPPING = "stopping"


@dataclass
class ServiceMetadata:
    persona: Optional[str] = None
    project_hash: Optional[str] = None
    working_directory: Optional[str] = None
    version: Optional[str] = None
    start_time: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)
    extra: Dict[str, Any] = field(default_factory=dict)

    def merge(self, patch: Dict[str, Any]) -> None:
        """Overwrite known fields from ``patch``; anything else lands in ``extra``."""
        known = {f.name for f in fields(self)} - {"extra"}
        for key, value in patch.items():
            if key in known:
                setattr(self, key, value)
            elif key == "extra" and isinstance(value, dict):
                self.extra.update(value)
            else:
                self.extra[key] = value


@dataclass
class ServiceEndpoint:
    """A registered service instance. ``id`` is assigned by the registry."""
    name: str
    type: ServiceType
    host: str
    port: int
    status: ServiceStatus = ServiceStatus.STARTING
    metadata: ServiceMetadata = field(default_factory=ServiceMetadata)
    health_endpoint: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    id: str = ""

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServiceEndpoint":
        metadata = data.get("metadata") or {}
        return cls(
            name=data["name"],
            type=ServiceType(data["type"]),
            host=data["host"],
            port=int(data["port"]),
            status=ServiceStatus(data.get("status", ServiceStatus.STARTING.value)),
            metadata=ServiceMetadata(**metadata) if isinstance(metadata, dict) else metadata,
            health_endpoint=data.get("health_endpoint"),
            tags=list(data.get("tags") or []),
            id=data.get("id", ""),
        )


def generate_service_id(service_type: ServiceType, name: str, host: str, port: int) -> str:
    """First 16 hex chars of sha256("<type>-<name>-<host>-<port>")."""
    key = f"{ServiceType(service_type).value}-{name}-{host}-{port}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]


@dataclass
class ServiceFilter:
    """Conjunction of the criteria that are set; ``tags`` matches if any tag is shared."""
    type: Optional[ServiceType] = None
    persona: Optional[str] = None
    project_hash: Optional[str] = None
    status: Optional[ServiceStatus] = None
    tags: Optional[List[str]] = None

    def matches(self, service: ServiceEndpoint) -> bool:
        if self.type is not None and service.type != self.type:
            return False
        if self.persona and service.metadata.persona != self.persona:
            return False
        if self.project_hash and service.metadata.project_hash != self.project_hash:
            return False
        if self.status is not None and service.status != self.status:
            return False
        if self.tags and not any(tag in service.tags for tag in self.tags):
            return False
        return True


@dataclass
class ServiceStatusChange:
    """Payload of ``service-status-changed``."""
    service: ServiceEndpoint
    old_status: ServiceStatus
    new_status: ServiceStatus
    health_result: "HealthCheckResult"


class ServiceRegistry:
    """
    Registry of service endpoints with health monitoring and failover lookup.

    Only this class mutates the service table. Lookups return copies, so a
    caller holding an endpoint cannot change registry state through it.
    """

    def __init__(
        self,
        config: Optional[CoordinationConfig] = None,
        credential_issuer: Optional["HealthCredentialIssuer"] = None,
        events: Optional[EventChannel] = None,
    ):
        from persona_coord.core.health_monitor import ServiceHealthMonitor

        self.config = config or CoordinationConfig.from_env()
        self.events = events or EventChannel()
        self._services: Dict[str, ServiceEndpoint] = {}
        self.health_monitor: ServiceHealthMonitor = ServiceHealthMonitor(
            lookup=self._lookup,
            on_result=self._apply_health_result,
            interval=self.config.health_check_interval_seconds,
            timeout=self.config.health_check_timeout_seconds,
            service_timeout=self.config.service_timeout_seconds,
            credential_issuer=credential_issuer,
        )

    @property
    def service_timeout(self) -> float:
        return self.config.service_timeout_seconds

    def _lookup(self, service_id: str) -> Optional[ServiceEndpoint]:
        # Live entry for the monitor; never handed to callers
        return self._services.get(service_id)

    # =========================================================================
    # Registration
    # =========================================================================

    async def register(self, endpoint: ServiceEndpoint) -> str:
        """Upsert ``endpoint`` and start probing it. Returns the derived id."""
        service_id = generate_service_id(endpoint.type, endpoint.name, endpoint.host, endpoint.port)

        service = copy.deepcopy(endpoint)
        service.id = service_id
        service.metadata.last_seen = time.time()

        was_registered = service_id in self._services
        self._services[service_id] = service

        await self.health_monitor.stop_monitoring(service_id)
        self.health_monitor.start_monitoring(service_id)

        event = ServiceEvent.UPDATED if was_registered else ServiceEvent.REGISTERED
        self.events.emit(event, copy.deepcopy(service))
        logger.info(f"[ServiceRegistry] {event.value}: {sanitize_for_log(service.name)} ({service_id})")
        return service_id

    async def unregister(self, service_id: str) -> bool:
        service = self._services.pop(service_id, None)
        if service is None:
            return False

        await self.health_monitor.stop_monitoring(service_id)
        self.events.emit(ServiceEvent.UNREGISTERED, copy.deepcopy(service))
        logger.info(f"[ServiceRegistry] Service unregistered: {sanitize_for_log(service.name)} ({service_id})")
        return True

    async def heartbeat(self, service_id: str, metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Refresh ``last_seen`` and merge ``metadata``. False for unknown ids."""
        service = self._services.get(service_id)
        if service is None:
            return False

        if metadata:
            service.metadata.merge(metadata)
        service.metadata.last_seen = time.time()

        self.events.emit(ServiceEvent.HEARTBEAT, copy.deepcopy(service))
        logger.debug(f"[ServiceRegistry] Heartbeat from {sanitize_for_log(service.name)} ({service_id})")
        return True

    # =========================================================================
    # Discovery
    # =========================================================================

    def _select(self, service_filter: Optional[ServiceFilter]) -> List[ServiceEndpoint]:
        if service_filter is None:
            return list(self._services.values())
        return [s for s in self._services.values() if service_filter.matches(s)]

    def discover(self, service_filter: Optional[ServiceFilter] = None) -> List[ServiceEndpoint]:
        return [copy.deepcopy(s) for s in self._select(service_filter)]

    def get(self, service_id: str) -> Optional[ServiceEndpoint]:
        service = self._services.get(service_id)
        return copy.deepcopy(service) if service else None

    def get_by_name(self, name: str) -> Optional[ServiceEndpoint]:
        for service in self._services.values():
            if service.name == name:
                return copy.deepcopy(service)
        return None

    def find_healthy(
        self,
        service_filter: Optional[ServiceFilter] = None,
        exclude: Iterable[str] = (),
    ) -> Optional[ServiceEndpoint]:
        """A random healthy endpoint matching ``service_filter``, or None."""
        criteria = copy.copy(service_filter) if service_filter else ServiceFilter()
        criteria.status = ServiceStatus.HEALTHY
        excluded = set(exclude)
        candidates = [s for s in self._select(criteria) if s.id not in excluded]
        if not candidates:
            return None
        return copy.deepcopy(random.choice(candidates))

    def find_failover(self, failed_id: str) -> Optional[ServiceEndpoint]:
        """
        A healthy peer with the same type, persona and project as ``failed_id``.
        Never returns the failed endpoint itself.
        """
        failed = self._services.get(failed_id)
        if failed is None:
            return None

        candidates = [
            s for s in self._select(ServiceFilter(type=failed.type, status=ServiceStatus.HEALTHY))
            if s.id != failed_id
            and s.metadata.persona == failed.metadata.persona
            and s.metadata.project_hash == failed.metadata.project_hash
        ]
        if not candidates:
            logger.warning(f"[ServiceRegistry] No failover available for {sanitize_for_log(failed.name)}")
            return None
        return copy.deepcopy(random.choice(candidates))

    def stats(self) -> Dict[str, Any]:
        services = list(self._services.values())
        by_type: Dict[str, int] = {}
        by_status: Dict[str, int] = {}
        for service in services:
            by_type[service.type.value] = by_type.get(service.type.value, 0) + 1
            by_status[service.status.value] = by_status.get(service.status.value, 0) + 1

        return {
            "total": len(services),
            "healthy": by_status.get(ServiceStatus.HEALTHY.value, 0),
            "unhealthy": by_status.get(ServiceStatus.UNHEALTHY.value, 0),
            "byType": by_type,
            "byStatus": by_status,
        }

    # =========================================================================
    # Health and staleness
    # =========================================================================

    def _apply_health_result(self, result: "HealthCheckResult") -> None:
        """Apply a probe result to the table and publish it."""
        service = self._services.get(result.service_id)
        if service is None:
            # Unregistered while the probe was in flight
            return

        if result.status == ServiceStatus.HEALTHY and result.active:
            service.metadata.last_seen = result.timestamp

        if service.status != result.status:
            old_status = service.status
            service.status = result.status
            self.events.emit(
                ServiceEvent.STATUS_CHANGED,
                ServiceStatusChange(
                    service=copy.deepcopy(service),
                    old_status=old_status,
                    new_status=result.status,
                    health_result=result,
                ),
            )
            logger.info(
                f"[ServiceRegistry] Service {sanitize_for_log(service.name)} status: "
                f"{old_status.value} -> {result.status.value}"
            )

        self.events.emit(ServiceEvent.HEALTH_CHECK_RESULT, result)

    async def cleanup_stale_services(self, now: Optional[float] = None) -> List[str]:
        """Unregister every endpoint not seen within the service timeout."""
        now = now if now is not None else time.time()
        stale = [
            service_id
            for service_id, service in self._services.items()
            if now - service.metadata.last_seen > self.service_timeout
        ]
        for service_id in stale:
            logger.debug(f"[ServiceRegistry] Removing stale service: {service_id}")
            await self.unregister(service_id)
        return stale

    async def shutdown(self) -> None:
        await self.health_monitor.stop_all()
        self._services.clear()
        self.events.emit(ServiceEvent.SHUTDOWN, None)
        logger.info("[ServiceRegistry] Shutdown completed")

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_id: str) -> bool:
        return service_id in self._services
