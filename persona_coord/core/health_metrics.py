"""
System health aggregation over the service registry.

Subscribes to the registry's event channel, keeps a bounded log of health
errors and recent probe latencies, and produces SystemHealthMetrics snapshots
either on demand or on a fixed interval.

    overall = "unhealthy"  if unhealthy >= total / 2 (and at least one is unhealthy)
              "degraded"   if any service is unhealthy
              "healthy"    otherwise
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil

from persona_coord.core.event_channel import ServiceEvent
from persona_coord.core.health_monitor import HealthCheckResult
from persona_coord.core.service_registry import ServiceRegistry, ServiceStatus, ServiceStatusChange

logger = logging.getLogger(__name__)

MAX_METRICS_HISTORY = 1000
MAX_ERROR_HISTORY = 500
MAX_RECENT_RESULTS = 200


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class HealthError:
    id: str
    service_id: str
    service_name: str
    timestamp: float
    error: str
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


@dataclass
class SystemHealthMetrics:
    timestamp: float
    overall: str
    services: Dict[str, int]
    response_time: Dict[str, float]
    uptime: float
    memory: Dict[str, float]
    errors: List[HealthError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "overall": self.overall,
            "services": dict(self.services),
            "response_time": dict(self.response_time),
            "uptime": self.uptime,
            "memory": dict(self.memory),
            "errors": [e.to_dict() for e in self.errors],
        }


def _percentile(sorted_values: List[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(int(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def overall_status(total: int, unhealthy: int) -> str:
    if unhealthy <= 0:
        return "healthy"
    if unhealthy >= total / 2:
        return "unhealthy"
    return "degraded"


class HealthMetricsCollector:
    """Observability consumer of registry events."""

    def __init__(self, registry: ServiceRegistry):
        self.registry = registry
        self._errors: Deque[HealthError] = deque(maxlen=MAX_ERROR_HISTORY)
        self._metrics: Deque[SystemHealthMetrics] = deque(maxlen=MAX_METRICS_HISTORY)
        self._recent_results: Deque[HealthCheckResult] = deque(maxlen=MAX_RECENT_RESULTS)
        self._start_time = time.time()
        self._process = psutil.Process()
        self._task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self) -> None:
        """Subscribe to the registry's events. Idempotent."""
        if self._unsubscribers:
            return
        events = self.registry.events
        self._unsubscribers = [
            events.subscribe(ServiceEvent.STATUS_CHANGED, self._on_status_changed),
            events.subscribe(ServiceEvent.HEALTH_CHECK_RESULT, self._on_health_result),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_status_changed(self, change: ServiceStatusChange) -> None:
        if change.new_status == ServiceStatus.UNHEALTHY:
            self.add_error(
                change.service.id,
                change.service.name,
                f"Service became unhealthy (was {change.old_status.value})",
                ErrorSeverity.HIGH,
            )

    def _on_health_result(self, result: HealthCheckResult) -> None:
        self._recent_results.append(result)
        if result.status == ServiceStatus.UNHEALTHY and result.error:
            service = self.registry.get(result.service_id)
            if service is not None:
                self.add_error(result.service_id, service.name, result.error, ErrorSeverity.MEDIUM)

    # =========================================================================
    # Errors
    # =========================================================================

    def add_error(
        self,
        service_id: str,
        service_name: str,
        error: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
    ) -> str:
        health_error = HealthError(
            id=f"error-{uuid.uuid4().hex[:12]}",
            service_id=service_id,
            service_name=service_name,
            timestamp=time.time(),
            error=error,
            severity=ErrorSeverity(severity),
        )
        self._errors.append(health_error)
        logger.error(f"[HealthMetrics] Health error ({health_error.severity.value}): {service_name} - {error}")
        return health_error.id

    def resolve_error(self, error_id: str) -> bool:
        for health_error in self._errors:
            if health_error.id == error_id:
                health_error.resolved = True
                logger.info(f"[HealthMetrics] Health error resolved: {health_error.service_name} - {health_error.error}")
                return True
        return False

    def get_active_errors(self) -> List[HealthError]:
        return [e for e in self._errors if not e.resolved]

    def get_error_history(self, limit: int = 100) -> List[HealthError]:
        """Most recent first."""
        return sorted(self._errors, key=lambda e: e.timestamp, reverse=True)[:limit]

    # =========================================================================
    # Metrics
    # =========================================================================

    def _memory_snapshot(self) -> Dict[str, float]:
        try:
            used = float(self._process.memory_info().rss)
            total = float(psutil.virtual_memory().total)
        except psutil.Error as e:
            logger.warning(f"[HealthMetrics] Could not read memory usage: {e}")
            return {"used": 0.0, "total": 0.0, "percentage": 0.0}
        return {
            "used": used,
            "total": total,
            "percentage": (used / total) * 100 if total else 0.0,
        }

    def collect_metrics(self) -> SystemHealthMetrics:
        stats = self.registry.stats()
        latencies = sorted(r.response_time for r in self._recent_results if r.response_time is not None)

        metrics = SystemHealthMetrics(
            timestamp=time.time(),
            overall=overall_status(stats["total"], stats["unhealthy"]),
            services={
                "total": stats["total"],
                "healthy": stats["healthy"],
                "unhealthy": stats["unhealthy"],
                "starting": stats["byStatus"].get(ServiceStatus.STARTING.value, 0),
                "stopping": stats["byStatus"].get(ServiceStatus.STOPPING.value, 0),
            },
            response_time={
                "average": sum(latencies) / len(latencies) if latencies else 0.0,
                "p95": _percentile(latencies, 0.95),
                "p99": _percentile(latencies, 0.99),
            },
            uptime=time.time() - self._start_time,
            memory=self._memory_snapshot(),
            errors=self.get_active_errors(),
        )
        self._metrics.append(metrics)
        return metrics

    def get_metrics_history(self, limit: int = 100) -> List[SystemHealthMetrics]:
        if limit <= 0:
            return []
        return list(self._metrics)[-limit:]

    def dashboard(self) -> Dict[str, Any]:
        current = self.collect_metrics()
        return {
            "current": current.to_dict(),
            "history": [m.to_dict() for m in self.get_metrics_history(100)],
            "errors": [e.to_dict() for e in self.get_error_history(50)],
            "services": [s.to_dict() for s in self.registry.discover()],
        }

    # =========================================================================
    # Periodic collection
    # =========================================================================

    async def start(self, interval: float = 30.0) -> None:
        self.attach()
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._collection_loop(interval))
        logger.info(f"[HealthMetrics] Monitoring started (interval: {interval}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.detach()
        logger.info("[HealthMetrics] Monitoring stopped")

    async def _collection_loop(self, interval: float) -> None:
        while True:
            try:
                await asyncio.sleep(interval)
                self.collect_metrics()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[HealthMetrics] Error collecting metrics: {e}")
