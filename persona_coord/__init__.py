"""
Persona Coordination - locks, versions and service discovery for persona agents.

Exports are resolved lazily so that importing the package (for example to
read ``__version__``) does not pull in aiohttp, psutil or FastAPI.
"""

__all__ = [
    "CoordinationConfig",
    "CoordinationRuntime",
    "MemoryLockManager",
    "ServiceRegistry",
    "StalenessReaper",
    "create_app",
]

__version__ = "1.0.0"

_lazy_modules = {
    "CoordinationConfig": (".config", "CoordinationConfig"),
    "CoordinationRuntime": (".core.runtime", "CoordinationRuntime"),
    "MemoryLockManager": (".core.memory_lock_manager", "MemoryLockManager"),
    "ServiceRegistry": (".core.service_registry", "ServiceRegistry"),
    "StalenessReaper": (".core.staleness_reaper", "StalenessReaper"),
    "create_app": (".api.coordination_api", "create_app"),
}

_loaded_modules = {}


def __getattr__(name: str):
    """Lazy import handler - imports modules only when accessed."""
    if name in _lazy_modules:
        if name not in _loaded_modules:
            module_path, attr_name = _lazy_modules[name]
            import importlib
            module = importlib.import_module(module_path, package=__name__)
            _loaded_modules[name] = getattr(module, attr_name)
        return _loaded_modules[name]
    raise AttributeError(f"module 'persona_coord' has no attribute '{name}'")
