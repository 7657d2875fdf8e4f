"""AdPulse — Sync & Queue API Routes."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from app.core.errors import IntegrationNotFound
from app.core.logging import get_logger
from app.services.sync_service import SyncService

logger = get_logger("api.sync")

router = APIRouter(tags=["Sync"])


def get_service(request: Request) -> SyncService:
    """Dependency — the service instance built in the app lifespan."""
    return request.app.state.sync_service


# ── Response Models ──


class EnqueueResponse(BaseModel):
    status: str = "queued"
    job_id: int


class IntegrationStatusResponse(BaseModel):
    integration_id: int
    tenant_id: str
    provider: str
    active: bool
    sync_status: str
    last_sync_at: Optional[str] = None
    last_error: Optional[str] = None


class QueueStatusResponse(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0


class JobResponse(BaseModel):
    id: int
    kind: str
    payload: Dict[str, Any]
    attempt_count: int
    max_attempts: int
    state: str
    created_at: str
    dedupe_key: Optional[str] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


# ── Integrations ──


@router.post("/integrations/{integration_id}/sync", response_model=EnqueueResponse, status_code=202)
async def sync_integration(integration_id: int, service: SyncService = Depends(get_service)):
    """Enqueue an on-demand sync for one integration."""
    try:
        job_id = service.request_sync(integration_id)
    except IntegrationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return EnqueueResponse(job_id=job_id)


@router.post("/tenants/{tenant_id}/sync", response_model=EnqueueResponse, status_code=202)
async def sync_tenant(tenant_id: str, service: SyncService = Depends(get_service)):
    """Enqueue a sync of every active integration of a tenant."""
    return EnqueueResponse(job_id=service.request_tenant_sync(tenant_id))


@router.get("/integrations/{integration_id}/status", response_model=IntegrationStatusResponse)
async def integration_status(integration_id: int, service: SyncService = Depends(get_service)):
    try:
        return service.integration_status(integration_id)
    except IntegrationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/integrations/{integration_id}/disconnect")
async def disconnect_integration(integration_id: int, service: SyncService = Depends(get_service)):
    """Deactivate an integration. Synced history is kept."""
    try:
        integration = service.disconnect(integration_id)
    except IntegrationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"status": "disconnected", "integration_id": integration.id, "active": integration.active}


# ── Queue ──


@router.get("/queue/status", response_model=QueueStatusResponse)
async def queue_status(service: SyncService = Depends(get_service)):
    return service.queue_status()


@router.delete("/queue")
async def purge_queue(service: SyncService = Depends(get_service)):
    """Administrative clear: waiting and finished jobs are dropped."""
    removed = service.purge_queue()
    return {"status": "purged", "removed": removed}


@router.get("/queue/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: int, service: SyncService = Depends(get_service)):
    job = service.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.to_record()
