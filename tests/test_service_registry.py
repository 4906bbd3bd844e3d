"""Tests for the service registry: identity, discovery, failover, heartbeats, staleness."""

import time

import pytest

from persona_coord.core.event_channel import ServiceEvent
from persona_coord.core.health_monitor import HealthCheckResult
from persona_coord.core.service_registry import (
    ServiceEndpoint,
    ServiceFilter,
    ServiceMetadata,
    ServiceStatus,
    ServiceStatusChange,
    ServiceType,
    generate_service_id,
)


def _endpoint(name="architect", port=3001, service_type=ServiceType.GLOBAL, persona="architect",
              project_hash=None, status=ServiceStatus.HEALTHY, tags=None):
    return ServiceEndpoint(
        name=name,
        type=service_type,
        host="127.0.0.1",
        port=port,
        status=status,
        metadata=ServiceMetadata(persona=persona, project_hash=project_hash),
        tags=list(tags or []),
    )


class _Recorder:
    def __init__(self, registry, *events):
        self.seen = []
        for event in events:
            registry.events.subscribe(event, lambda payload, e=event: self.seen.append((e, payload)))

    def names(self):
        return [event for event, _ in self.seen]


def test_service_id_is_deterministic():
    first = generate_service_id(ServiceType.GLOBAL, "architect", "127.0.0.1", 3001)
    assert first == generate_service_id(ServiceType.GLOBAL, "architect", "127.0.0.1", 3001)
    assert len(first) == 16
    assert first != generate_service_id(ServiceType.PROJECT, "architect", "127.0.0.1", 3001)


@pytest.mark.asyncio
async def test_reregistering_same_tuple_updates_in_place(registry):
    recorder = _Recorder(registry, ServiceEvent.REGISTERED, ServiceEvent.UPDATED)

    first = await registry.register(_endpoint())
    second = await registry.register(_endpoint(tags=["v2"]))

    assert first == second
    assert len(registry) == 1
    assert recorder.names() == [ServiceEvent.REGISTERED, ServiceEvent.UPDATED]
    assert registry.get(first).tags == ["v2"]
    assert registry.health_monitor.is_monitoring(first)


@pytest.mark.asyncio
async def test_register_stamps_last_seen(registry):
    endpoint = _endpoint()
    endpoint.metadata.last_seen = 0.0

    service_id = await registry.register(endpoint)

    assert time.time() - registry.get(service_id).metadata.last_seen < 5


@pytest.mark.asyncio
async def test_unregister(registry):
    recorder = _Recorder(registry, ServiceEvent.UNREGISTERED)
    service_id = await registry.register(_endpoint())

    assert await registry.unregister(service_id) is True
    assert await registry.unregister(service_id) is False
    assert registry.get(service_id) is None
    assert not registry.health_monitor.is_monitoring(service_id)
    assert recorder.seen[0][1].id == service_id


@pytest.mark.asyncio
async def test_discover_filters(registry):
    await registry.register(_endpoint("a", 1, ServiceType.GLOBAL, "architect", tags=["core"]))
    await registry.register(_endpoint("b", 2, ServiceType.PROJECT, "architect", "h1", tags=["ui"]))
    await registry.register(_endpoint("c", 3, ServiceType.PROJECT, "tester", "h1",
                                      status=ServiceStatus.UNHEALTHY))

    assert len(registry.discover()) == 3
    assert {s.name for s in registry.discover(ServiceFilter(type=ServiceType.PROJECT))} == {"b", "c"}
    assert {s.name for s in registry.discover(ServiceFilter(persona="architect"))} == {"a", "b"}
    assert {s.name for s in registry.discover(ServiceFilter(project_hash="h1", persona="tester"))} == {"c"}
    assert {s.name for s in registry.discover(ServiceFilter(status=ServiceStatus.HEALTHY))} == {"a", "b"}
    assert {s.name for s in registry.discover(ServiceFilter(tags=["ui", "missing"]))} == {"b"}


@pytest.mark.asyncio
async def test_lookups_return_copies(registry):
    service_id = await registry.register(_endpoint())

    snapshot = registry.get(service_id)
    snapshot.status = ServiceStatus.STOPPING
    snapshot.tags.append("mutated")

    assert registry.get(service_id).status == ServiceStatus.HEALTHY
    assert registry.get(service_id).tags == []
    assert registry.get_by_name("architect").id == service_id
    assert registry.get_by_name("nobody") is None


@pytest.mark.asyncio
async def test_find_healthy_only_returns_healthy(registry):
    await registry.register(_endpoint("down", 1, status=ServiceStatus.UNHEALTHY))
    assert registry.find_healthy(ServiceFilter(persona="architect")) is None

    await registry.register(_endpoint("up", 2))
    for _ in range(10):
        assert registry.find_healthy(ServiceFilter(persona="architect")).name == "up"


@pytest.mark.asyncio
async def test_failover_returns_equivalent_healthy_peer(registry):
    failed = await registry.register(_endpoint("p1", 1, ServiceType.PROJECT, "architect", "h1"))
    await registry.register(_endpoint("p2", 2, ServiceType.PROJECT, "architect", "h1"))
    await registry.register(_endpoint("other-project", 3, ServiceType.PROJECT, "architect", "h2"))
    await registry.register(_endpoint("other-persona", 4, ServiceType.PROJECT, "tester", "h1"))
    await registry.register(_endpoint("sick", 5, ServiceType.PROJECT, "architect", "h1",
                                      status=ServiceStatus.UNHEALTHY))

    for _ in range(20):
        peer = registry.find_failover(failed)
        assert peer.name == "p2"


@pytest.mark.asyncio
async def test_failover_never_returns_failed_service(registry):
    only = await registry.register(_endpoint("solo", 1))
    assert registry.find_failover(only) is None
    assert registry.find_failover("unknown-id") is None


@pytest.mark.asyncio
async def test_heartbeat_merges_metadata(registry):
    recorder = _Recorder(registry, ServiceEvent.HEARTBEAT)
    service_id = await registry.register(_endpoint())
    before = registry.get(service_id).metadata.last_seen

    assert await registry.heartbeat(service_id, {"version": "2.1.0", "load": 0.4})
    service = registry.get(service_id)

    assert service.metadata.version == "2.1.0"
    assert service.metadata.extra == {"load": 0.4}
    assert service.metadata.last_seen >= before
    assert len(recorder.seen) == 1
    assert await registry.heartbeat("unknown-id") is False


@pytest.mark.asyncio
async def test_stats(registry):
    await registry.register(_endpoint("a", 1, ServiceType.GLOBAL))
    await registry.register(_endpoint("b", 2, ServiceType.PROJECT, status=ServiceStatus.UNHEALTHY))
    await registry.register(_endpoint("c", 3, ServiceType.PROJECT, status=ServiceStatus.STARTING))

    stats = registry.stats()

    assert stats["total"] == 3
    assert stats["healthy"] == 1
    assert stats["unhealthy"] == 1
    assert stats["byType"] == {"global": 1, "project": 2}
    assert stats["byStatus"] == {"healthy": 1, "unhealthy": 1, "starting": 1}


@pytest.mark.asyncio
async def test_health_result_transition_emits_status_change(registry):
    recorder = _Recorder(registry, ServiceEvent.STATUS_CHANGED, ServiceEvent.HEALTH_CHECK_RESULT)
    service_id = await registry.register(_endpoint(status=ServiceStatus.STARTING))

    healthy = HealthCheckResult(service_id, ServiceStatus.HEALTHY, time.time(), active=True)
    registry._apply_health_result(healthy)
    registry._apply_health_result(healthy)

    assert recorder.names() == [
        ServiceEvent.STATUS_CHANGED,
        ServiceEvent.HEALTH_CHECK_RESULT,
        ServiceEvent.HEALTH_CHECK_RESULT,
    ]
    change = recorder.seen[0][1]
    assert isinstance(change, ServiceStatusChange)
    assert change.old_status == ServiceStatus.STARTING
    assert change.new_status == ServiceStatus.HEALTHY
    assert change.health_result is healthy
    assert registry.get(service_id).status == ServiceStatus.HEALTHY


@pytest.mark.asyncio
async def test_only_active_healthy_probe_refreshes_last_seen(registry):
    service_id = await registry.register(_endpoint())
    registry._services[service_id].metadata.last_seen = 100.0

    registry._apply_health_result(HealthCheckResult(service_id, ServiceStatus.HEALTHY, 200.0))
    assert registry.get(service_id).metadata.last_seen == 100.0

    registry._apply_health_result(HealthCheckResult(service_id, ServiceStatus.UNHEALTHY, 300.0, active=True))
    assert registry.get(service_id).metadata.last_seen == 100.0

    registry._apply_health_result(HealthCheckResult(service_id, ServiceStatus.HEALTHY, 400.0, active=True))
    assert registry.get(service_id).metadata.last_seen == 400.0


@pytest.mark.asyncio
async def test_stale_services_are_removed(registry):
    stale = await registry.register(_endpoint("stale", 1))
    fresh = await registry.register(_endpoint("fresh", 2))
    registry._services[stale].metadata.last_seen = time.time() - 120

    removed = await registry.cleanup_stale_services()

    assert removed == [stale]
    assert [s.id for s in registry.discover()] == [fresh]
    assert not registry.health_monitor.is_monitoring(stale)


@pytest.mark.asyncio
async def test_shutdown_clears_and_emits(registry):
    recorder = _Recorder(registry, ServiceEvent.SHUTDOWN)
    await registry.register(_endpoint())

    await registry.shutdown()

    assert len(registry) == 0
    assert recorder.seen == [(ServiceEvent.SHUTDOWN, None)]
    assert registry.health_monitor.monitored_count == 0


def test_endpoint_dict_roundtrip_preserves_enums():
    endpoint = _endpoint(service_type=ServiceType.GLOBAL_PERSONA_SERVER, tags=["a"])
    data = endpoint.to_dict()

    assert data["type"] == "global-persona-server"
    assert data["status"] == "healthy"
    restored = ServiceEndpoint.from_dict(data)
    assert restored.type == ServiceType.GLOBAL_PERSONA_SERVER
    assert restored.metadata.persona == "architect"
