"""
Coordination core: lock coordinator, version and lock stores, service
registry, health monitoring and staleness sweeps.
"""

__all__ = [
    "MemoryLockManager",
    "LockAcquisitionResult",
    "MemoryUpdateResult",
    "LockFailureReason",
    "ServiceRegistry",
    "ServiceEndpoint",
    "ServiceFilter",
    "ServiceType",
    "ServiceStatus",
    "ServiceEvent",
    "HealthCheckResult",
    "HealthMetricsCollector",
    "StalenessReaper",
    "CoordinationRuntime",
]

_lazy_modules = {
    "MemoryLockManager": (".memory_lock_manager", "MemoryLockManager"),
    "LockAcquisitionResult": (".memory_lock_manager", "LockAcquisitionResult"),
    "MemoryUpdateResult": (".memory_lock_manager", "MemoryUpdateResult"),
    "LockFailureReason": (".memory_lock_manager", "LockFailureReason"),
    "ServiceRegistry": (".service_registry", "ServiceRegistry"),
    "ServiceEndpoint": (".service_registry", "ServiceEndpoint"),
    "ServiceFilter": (".service_registry", "ServiceFilter"),
    "ServiceType": (".service_registry", "ServiceType"),
    "ServiceStatus": (".service_registry", "ServiceStatus"),
    "ServiceEvent": (".event_channel", "ServiceEvent"),
    "HealthCheckResult": (".health_monitor", "HealthCheckResult"),
    "HealthMetricsCollector": (".health_metrics", "HealthMetricsCollector"),
    "StalenessReaper": (".staleness_reaper", "StalenessReaper"),
    "CoordinationRuntime": (".runtime", "CoordinationRuntime"),
}

_loaded_modules = {}


def __getattr__(name: str):
    if name in _lazy_modules:
        if name not in _loaded_modules:
            module_path, attr_name = _lazy_modules[name]
            import importlib
            module = importlib.import_module(module_path, package=__name__)
            _loaded_modules[name] = getattr(module, attr_name)
        return _loaded_modules[name]
    raise AttributeError(f"module 'persona_coord.core' has no attribute '{name}'")
