"""Tests for system health aggregation."""

import time

import pytest

from persona_coord.core.health_metrics import ErrorSeverity, HealthMetricsCollector, overall_status
from persona_coord.core.health_monitor import HealthCheckResult
from persona_coord.core.service_registry import ServiceEndpoint, ServiceStatus, ServiceType


@pytest.mark.parametrize(
    "total,unhealthy,expected",
    [(0, 0, "healthy"), (4, 0, "healthy"), (4, 1, "degraded"), (4, 2, "unhealthy"), (3, 2, "unhealthy")],
)
def test_overall_status(total, unhealthy, expected):
    assert overall_status(total, unhealthy) == expected


async def _register(registry, name, port, status):
    return await registry.register(ServiceEndpoint(
        name=name, type=ServiceType.PROJECT, host="127.0.0.1", port=port, status=status,
    ))


@pytest.mark.asyncio
async def test_collect_metrics_counts_and_latency(registry):
    collector = HealthMetricsCollector(registry)
    collector.attach()

    healthy = await _register(registry, "a", 1, ServiceStatus.HEALTHY)
    await _register(registry, "b", 2, ServiceStatus.HEALTHY)
    await _register(registry, "c", 3, ServiceStatus.STARTING)

    for latency in (10.0, 20.0, 30.0):
        registry._apply_health_result(
            HealthCheckResult(healthy, ServiceStatus.HEALTHY, time.time(), response_time=latency, active=True)
        )

    metrics = collector.collect_metrics()

    assert metrics.overall == "healthy"
    assert metrics.services == {"total": 3, "healthy": 2, "unhealthy": 0, "starting": 1, "stopping": 0}
    assert metrics.response_time["average"] == pytest.approx(20.0)
    assert metrics.response_time["p95"] == 30.0
    assert metrics.memory["used"] > 0
    assert collector.get_metrics_history() == [metrics]


@pytest.mark.asyncio
async def test_unhealthy_transition_records_errors(registry):
    collector = HealthMetricsCollector(registry)
    collector.attach()
    service_id = await _register(registry, "flaky", 1, ServiceStatus.HEALTHY)

    registry._apply_health_result(
        HealthCheckResult(service_id, ServiceStatus.UNHEALTHY, time.time(), error="HTTP 500: down", active=True)
    )

    errors = collector.get_active_errors()
    assert {e.severity for e in errors} == {ErrorSeverity.HIGH, ErrorSeverity.MEDIUM}
    assert any(e.error == "Service became unhealthy (was healthy)" for e in errors)
    assert collector.collect_metrics().overall == "unhealthy"

    for error in errors:
        assert collector.resolve_error(error.id)
    assert collector.get_active_errors() == []
    assert len(collector.get_error_history()) == 2
    assert collector.resolve_error("missing") is False


@pytest.mark.asyncio
async def test_detach_stops_recording(registry):
    collector = HealthMetricsCollector(registry)
    collector.attach()
    collector.detach()
    service_id = await _register(registry, "x", 1, ServiceStatus.HEALTHY)

    registry._apply_health_result(
        HealthCheckResult(service_id, ServiceStatus.UNHEALTHY, time.time(), error="down", active=True)
    )

    assert collector.get_error_history() == []


@pytest.mark.asyncio
async def test_error_history_is_newest_first(registry):
    collector = HealthMetricsCollector(registry)
    first = collector.add_error("s1", "one", "first")
    second = collector.add_error("s2", "two", "second", ErrorSeverity.CRITICAL)
    collector._errors[0].timestamp -= 10

    history = collector.get_error_history(limit=1)

    assert [e.id for e in history] == [second]
    assert first != second
