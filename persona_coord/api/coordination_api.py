"""
Coordination HTTP API
=====================

REST surface over the lock coordinator, the service registry and the health
metrics collector.

Endpoints:
- GET    /health                                   - Liveness of this process
- POST   /api/locks/acquire                        - Acquire a memory lock (409 on contention)
- DELETE /api/locks/{lock_id}                      - Release a lock (404 if unknown)
- POST   /api/locks/update                         - Versioned update under a lock (409 on failure)
- GET    /api/memory/{persona}/{memory_id}/history   - Recent versions
- GET    /api/memory/{persona}/{memory_id}/version   - Current version number
- GET    /api/memory/{persona}/{memory_id}/versions/{n} - One retained version
- GET    /api/memory/{persona}/{memory_id}/conflicts - Versions written after base_version
- GET    /api/services                             - Discover services
- POST   /api/services/register                    - Register (or update) a service
- GET    /api/services/stats                       - Registry statistics
- GET    /api/services/{id}                        - One service
- DELETE /api/services/{id}                        - Unregister
- POST   /api/services/{id}/heartbeat              - Heartbeat with optional metadata
- GET    /api/services/{id}/failover               - Healthy peer for a failed service
- GET    /api/health/metrics | dashboard | errors  - Health aggregation
- POST   /api/health/errors/{id}/resolve           - Mark a health error resolved

Mutating memory endpoints require the ``memory:write`` permission when the
runtime has a credential verifier. Without one, the gate is open.

Usage:
    curl -X POST http://127.0.0.1:3000/api/locks/acquire \\
        -H "Content-Type: application/json" \\
        -d '{"memory_id": "style-guide", "persona": "architect", "locked_by": "session-42"}'
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from persona_coord import __version__
from persona_coord.auth.credentials import MEMORY_WRITE, AgentIdentity
from persona_coord.config import CoordinationConfig
from persona_coord.core.runtime import CoordinationRuntime
from persona_coord.core.secure_logging import sanitize_for_log
from persona_coord.core.service_registry import (
    ServiceEndpoint,
    ServiceFilter,
    ServiceMetadata,
    ServiceStatus,
    ServiceType,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["coordination"])

_process_start = time.time()


# ============================================================================
# Request Models
# ============================================================================

class AcquireLockRequest(BaseModel):
    memory_id: str = Field(..., min_length=1)
    persona: str = Field(..., min_length=1)
    locked_by: str = Field(..., min_length=1, description="Caller identity, usually a session id")
    project_hash: Optional[str] = None
    expected_version: Optional[int] = Field(None, ge=0, description="Fail unless this is the current version")


class UpdateMemoryRequest(BaseModel):
    memory_id: str = Field(..., min_length=1)
    persona: str = Field(..., min_length=1)
    content: str
    lock_id: str = Field(..., min_length=1)
    author: str = Field(..., min_length=1)
    project_hash: Optional[str] = None


class RegisterServiceRequest(BaseModel):
    name: str = Field(..., min_length=1)
    type: ServiceType
    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    status: ServiceStatus = ServiceStatus.STARTING
    metadata: Dict[str, Any] = Field(default_factory=dict)
    health_endpoint: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


# ============================================================================
# Dependencies
# ============================================================================

def get_runtime(request: Request) -> CoordinationRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Coordination runtime not available")
    return runtime


def require_memory_write(
    runtime: CoordinationRuntime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> Optional[AgentIdentity]:
    """Permission gate for mutating memory operations."""
    verifier = runtime.credential_verifier
    if verifier is None:
        return None

    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    identity = verifier.verify_credential(authorization[7:].strip())
    if identity is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    if not identity.has_permission(MEMORY_WRITE):
        logger.warning(f"[CoordinationAPI] {sanitize_for_log(identity.agent_id)} lacks {MEMORY_WRITE}")
        raise HTTPException(status_code=403, detail=f"Permission denied: {MEMORY_WRITE} required")
    return identity


def _bad_request(e: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(e))


# ============================================================================
# Health
# ============================================================================

@router.get("/health")
async def health(runtime: CoordinationRuntime = Depends(get_runtime)) -> Dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "uptime": time.time() - _process_start,
        "version": __version__,
        "services": len(runtime.registry),
    }


# ============================================================================
# Locks and versions
# ============================================================================

@router.post("/api/locks/acquire")
async def acquire_lock(
    body: AcquireLockRequest,
    runtime: CoordinationRuntime = Depends(get_runtime),
    _identity: Optional[AgentIdentity] = Depends(require_memory_write),
):
    try:
        result = await runtime.lock_manager.acquire_lock(
            body.memory_id,
            body.persona,
            body.locked_by,
            project_hash=body.project_hash,
            expected_version=body.expected_version,
        )
    except ValueError as e:
        raise _bad_request(e)

    if not result.success:
        raise HTTPException(status_code=409, detail=result.to_dict())
    return result.to_dict()


@router.delete("/api/locks/{lock_id}")
async def release_lock(
    lock_id: str,
    runtime: CoordinationRuntime = Depends(get_runtime),
    _identity: Optional[AgentIdentity] = Depends(require_memory_write),
):
    if not await runtime.lock_manager.release_lock(lock_id):
        raise HTTPException(status_code=404, detail="Lock not found")
    return {"status": "lock released"}


@router.post("/api/locks/update")
async def update_memory(
    body: UpdateMemoryRequest,
    runtime: CoordinationRuntime = Depends(get_runtime),
    _identity: Optional[AgentIdentity] = Depends(require_memory_write),
):
    try:
        result = await runtime.lock_manager.update_with_versioning(
            body.memory_id,
            body.persona,
            body.content,
            body.lock_id,
            body.author,
            project_hash=body.project_hash,
        )
    except ValueError as e:
        raise _bad_request(e)

    if not result.success:
        raise HTTPException(status_code=409, detail=result.to_dict())
    return result.to_dict()


@router.get("/api/memory/{persona}/{memory_id}/history")
async def version_history(
    persona: str,
    memory_id: str,
    project_hash: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=0),
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    try:
        history = await runtime.lock_manager.get_version_history(
            memory_id, persona, project_hash=project_hash, limit=limit
        )
    except ValueError as e:
        raise _bad_request(e)
    return {"versions": [record.to_dict() for record in history], "total": len(history)}


@router.get("/api/memory/{persona}/{memory_id}/version")
async def current_version(
    persona: str,
    memory_id: str,
    project_hash: Optional[str] = None,
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    try:
        version = await runtime.lock_manager.get_current_version(memory_id, persona, project_hash)
    except ValueError as e:
        raise _bad_request(e)
    return {"memory_id": memory_id, "version": version}


@router.get("/api/memory/{persona}/{memory_id}/versions/{version}")
async def version_at(
    persona: str,
    memory_id: str,
    version: int,
    project_hash: Optional[str] = None,
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    try:
        record = await runtime.lock_manager.get_memory_version(
            memory_id, persona, version, project_hash=project_hash
        )
    except ValueError as e:
        raise _bad_request(e)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Version {version} not found")
    return record.to_dict()


@router.get("/api/memory/{persona}/{memory_id}/conflicts")
async def conflicts(
    persona: str,
    memory_id: str,
    base_version: int = Query(..., ge=0),
    project_hash: Optional[str] = None,
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    try:
        found = await runtime.lock_manager.detect_conflicts(
            memory_id, persona, base_version, project_hash=project_hash
        )
    except ValueError as e:
        raise _bad_request(e)
    return {"base_version": base_version, "conflicts": found, "has_conflicts": bool(found)}


# ============================================================================
# Services
# ============================================================================

@router.get("/api/services")
async def list_services(
    type: Optional[ServiceType] = None,
    persona: Optional[str] = None,
    project_hash: Optional[str] = None,
    status: Optional[ServiceStatus] = None,
    tags: Optional[List[str]] = Query(None),
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    services = runtime.registry.discover(ServiceFilter(
        type=type, persona=persona, project_hash=project_hash, status=status, tags=tags,
    ))
    return {"success": True, "services": [s.to_dict() for s in services], "total": len(services)}


@router.post("/api/services/register")
async def register_service(body: RegisterServiceRequest, runtime: CoordinationRuntime = Depends(get_runtime)):
    metadata = ServiceMetadata()
    metadata.merge(body.metadata)
    service_id = await runtime.registry.register(ServiceEndpoint(
        name=body.name,
        type=body.type,
        host=body.host,
        port=body.port,
        status=body.status,
        metadata=metadata,
        health_endpoint=body.health_endpoint,
        tags=list(body.tags),
    ))
    return {"success": True, "service_id": service_id}


@router.get("/api/services/stats")
async def service_stats(runtime: CoordinationRuntime = Depends(get_runtime)):
    return runtime.registry.stats()


@router.get("/api/services/{service_id}")
async def get_service(service_id: str, runtime: CoordinationRuntime = Depends(get_runtime)):
    service = runtime.registry.get(service_id)
    if service is None:
        raise HTTPException(status_code=404, detail="Service not found")
    return {"success": True, "service": service.to_dict()}


@router.delete("/api/services/{service_id}")
async def unregister_service(service_id: str, runtime: CoordinationRuntime = Depends(get_runtime)):
    if not await runtime.registry.unregister(service_id):
        raise HTTPException(status_code=404, detail="Service not found")
    return {"success": True}


@router.post("/api/services/{service_id}/heartbeat")
async def service_heartbeat(
    service_id: str,
    metadata: Optional[Dict[str, Any]] = Body(None),
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    if not await runtime.registry.heartbeat(service_id, metadata):
        raise HTTPException(status_code=404, detail="Service not found")
    return {"success": True}


@router.get("/api/services/{service_id}/failover")
async def failover_service(service_id: str, runtime: CoordinationRuntime = Depends(get_runtime)):
    peer = runtime.registry.find_failover(service_id)
    if peer is None:
        raise HTTPException(status_code=404, detail="No healthy failover service")
    return {"success": True, "service": peer.to_dict()}


# ============================================================================
# Health aggregation
# ============================================================================

@router.get("/api/health/metrics")
async def health_metrics(runtime: CoordinationRuntime = Depends(get_runtime)):
    return runtime.metrics.collect_metrics().to_dict()


@router.get("/api/health/dashboard")
async def health_dashboard(runtime: CoordinationRuntime = Depends(get_runtime)):
    return runtime.metrics.dashboard()


@router.get("/api/health/errors")
async def health_errors(
    limit: int = Query(100, ge=1),
    active_only: bool = False,
    runtime: CoordinationRuntime = Depends(get_runtime),
):
    if active_only:
        errors = runtime.metrics.get_active_errors()
    else:
        errors = runtime.metrics.get_error_history(limit)
    return {"errors": [e.to_dict() for e in errors], "total": len(errors)}


@router.post("/api/health/errors/{error_id}/resolve")
async def resolve_health_error(error_id: str, runtime: CoordinationRuntime = Depends(get_runtime)):
    if not runtime.metrics.resolve_error(error_id):
        raise HTTPException(status_code=404, detail="Health error not found")
    return {"success": True}


# ============================================================================
# Application
# ============================================================================

def create_app(
    runtime: Optional[CoordinationRuntime] = None,
    config: Optional[CoordinationConfig] = None,
    self_register: Optional[bool] = None,
) -> FastAPI:
    """
    Build the FastAPI application. The runtime is started and stopped with
    the app's lifespan.
    """
    runtime = runtime or CoordinationRuntime(config)
    if self_register is None:
        self_register = os.getenv("PERSONA_COORD_SELF_REGISTER", "true").lower() == "true"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.start(self_register=self_register)
        try:
            yield
        finally:
            await runtime.stop()

    app = FastAPI(title="Persona Coordination Service", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router)
    return app
