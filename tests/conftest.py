"""
Pytest configuration and shared fixtures for the persona coordination tests.

This file contains:
- Configuration fixtures rooted in a per-test temporary directory
- Fresh coordinator and registry instances
- Marker registration
"""

import sys
from pathlib import Path

import pytest

from persona_coord.config import CoordinationConfig
from persona_coord.core.memory_lock_manager import MemoryLockManager
from persona_coord.core.service_registry import ServiceRegistry

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture
def coord_config(tmp_path):
    """Configuration with storage under tmp_path and probes effectively disabled."""
    return CoordinationConfig(
        base_dir=tmp_path / "persona-agents",
        lock_timeout_seconds=60.0,
        health_check_interval_seconds=3600.0,
        health_check_timeout_seconds=2.0,
        service_timeout_seconds=90.0,
        service_cleanup_interval_seconds=3600.0,
        lock_cleanup_interval_seconds=3600.0,
    )


@pytest.fixture
async def lock_manager(coord_config):
    manager = MemoryLockManager(coord_config)
    await manager.initialize()
    yield manager
    await manager.shutdown()


@pytest.fixture
async def registry(coord_config):
    reg = ServiceRegistry(coord_config)
    yield reg
    await reg.shutdown()


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )


def pytest_report_header(config):
    """Add custom header to pytest report."""
    return [
        "Persona Coordination Test Suite",
        f"Project Root: {project_root}",
    ]
