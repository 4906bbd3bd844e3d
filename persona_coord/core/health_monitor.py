"""
Service Health Monitor
======================

One recurring probe per registered endpoint.

Probe kinds:
    passive  endpoint declares no health_endpoint; healthy iff it was seen
             within the service timeout
    active   HTTP GET on the health endpoint with a hard timeout; healthy
             iff the response status is 2xx. An absolute URL is probed as
             given, a bare path is joined onto http://host:port

Global persona servers require an authenticated probe. A bearer token is
requested from the credential issuer when one is configured; a missing token
is logged and the probe goes out without it.

Probes never raise: every failure becomes an unhealthy HealthCheckResult.
The monitor does not touch registry state itself. Each result is handed to
the ``on_result`` callback, which belongs to the registry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import aiohttp

from persona_coord.core.service_registry import ServiceEndpoint, ServiceStatus, ServiceType

logger = logging.getLogger(__name__)

AUTHENTICATED_SERVICE_TYPES = frozenset({ServiceType.GLOBAL_PERSONA_SERVER})


def health_url(service: ServiceEndpoint) -> str:
    """URL the active probe requests for ``service``."""
    endpoint = service.health_endpoint or ""
    if urlsplit(endpoint).scheme in ("http", "https"):
        return endpoint
    if endpoint and not endpoint.startswith("/"):
        endpoint = "/" + endpoint
    return f"{service.base_url}{endpoint}"


@dataclass
class HealthCheckResult:
    service_id: str
    status: ServiceStatus
    timestamp: float
    response_time: Optional[float] = None  # milliseconds
    error: Optional[str] = None
    details: Optional[Any] = None
    active: bool = False  # True when an HTTP probe was made

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service_id": self.service_id,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "response_time": self.response_time,
            "error": self.error,
            "details": self.details,
        }


class ServiceHealthMonitor:
    """Periodic per-endpoint prober."""

    def __init__(
        self,
        lookup: Callable[[str], Optional[ServiceEndpoint]],
        on_result: Callable[[HealthCheckResult], None],
        interval: float = 30.0,
        timeout: float = 5.0,
        service_timeout: float = 90.0,
        credential_issuer=None,
    ):
        self._lookup = lookup
        self._on_result = on_result
        self.interval = interval
        self.timeout = timeout
        self.service_timeout = service_timeout
        self.credential_issuer = credential_issuer

        self._tasks: Dict[str, asyncio.Task] = {}
        self._http_session: Optional[aiohttp.ClientSession] = None

    def is_monitoring(self, service_id: str) -> bool:
        task = self._tasks.get(service_id)
        return task is not None and not task.done()

    @property
    def monitored_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def start_monitoring(self, service_id: str) -> None:
        if self.is_monitoring(service_id):
            return
        self._tasks[service_id] = asyncio.create_task(
            self._monitor_loop(service_id), name=f"health-probe-{service_id}"
        )

    async def stop_monitoring(self, service_id: str) -> None:
        task = self._tasks.pop(service_id, None)
        if task is None:
            return
        if task is asyncio.current_task():
            # A probe callback unregistering its own service; the loop exits on the next lookup
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop_all(self) -> None:
        for service_id in list(self._tasks):
            await self.stop_monitoring(service_id)

        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
        self._http_session = None

    async def _monitor_loop(self, service_id: str) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                service = self._lookup(service_id)
                if service is None:
                    break
                result = await self.perform_health_check(service)
                self._on_result(result)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[HealthMonitor] Monitoring error for {service_id}: {e}")

        if self._tasks.get(service_id) is asyncio.current_task():
            del self._tasks[service_id]

    # =========================================================================
    # Probes
    # =========================================================================

    async def perform_health_check(self, service: ServiceEndpoint) -> HealthCheckResult:
        if not service.health_endpoint:
            return self._passive_check(service)
        return await self._active_check(service)

    def _passive_check(self, service: ServiceEndpoint) -> HealthCheckResult:
        now = time.time()
        age = now - service.metadata.last_seen
        recent = age < self.service_timeout
        return HealthCheckResult(
            service_id=service.id,
            status=ServiceStatus.HEALTHY if recent else ServiceStatus.UNHEALTHY,
            timestamp=now,
            response_time=0.0,
            error=None if recent else f"No heartbeat for {age:.0f}s",
        )

    def _auth_headers(self, service: ServiceEndpoint) -> Dict[str, str]:
        if service.type not in AUTHENTICATED_SERVICE_TYPES:
            return {}
        token = None
        if self.credential_issuer is not None:
            try:
                token = self.credential_issuer.issue_health_credential()
            except Exception as e:
                logger.warning(f"[HealthMonitor] Credential issuer failed for {service.name}: {e}")
        if not token:
            logger.warning(f"[HealthMonitor] No auth token available for {service.name} health check")
            return {}
        logger.debug(f"[HealthMonitor] Using auth token for {service.name} health check")
        return {"Authorization": f"Bearer {token}"}

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._http_session

    async def _active_check(self, service: ServiceEndpoint) -> HealthCheckResult:
        url = health_url(service)
        result = HealthCheckResult(
            service_id=service.id,
            status=ServiceStatus.UNHEALTHY,
            timestamp=time.time(),
            active=True,
        )
        start_time = time.time()

        try:
            session = await self._get_session()
            async with session.get(
                url,
                headers=self._auth_headers(service),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                result.response_time = (time.time() - start_time) * 1000

                if 200 <= response.status < 300:
                    result.status = ServiceStatus.HEALTHY
                    try:
                        result.details = await response.json(content_type=None)
                    except (aiohttp.ContentTypeError, ValueError):
                        pass
                else:
                    result.error = f"HTTP {response.status}: {response.reason}"

        except asyncio.TimeoutError:
            result.error = f"Timeout after {self.timeout}s"
            result.response_time = self.timeout * 1000
        except Exception as e:
            result.error = str(e) or type(e).__name__
            result.response_time = (time.time() - start_time) * 1000

        result.timestamp = time.time()
        return result
