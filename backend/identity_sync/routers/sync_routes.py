"""
Sync job routes.
Manual triggers, job status, on-demand enrichment and per-tenant runs.
"""
from dataclasses import asdict
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from identity_sync import __version__
from identity_sync.bootstrap import Pipeline
from identity_sync.scheduler import UnknownJobError
from identity_sync.services.channels import ChannelNotConfiguredError, ChannelSyncEngine
from identity_sync.schemas import (
    ChannelSyncStatsResponse,
    EnrichRequest,
    EnrichmentStatsResponse,
    HealthResponse,
    JobStatusResponse,
    JobTriggerResponse,
)


router = APIRouter(prefix="/api/v1/sync", tags=["Sync"])


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline not initialised"
        )
    return pipeline


@router.get("/jobs", response_model=List[JobStatusResponse])
async def list_jobs(pipeline: Pipeline = Depends(get_pipeline)):
    """Status of every scheduled job."""
    return pipeline.scheduler.all_statuses()


@router.get("/jobs/{name}", response_model=JobStatusResponse)
async def get_job(name: str, pipeline: Pipeline = Depends(get_pipeline)):
    try:
        return pipeline.scheduler.get_status(name)
    except UnknownJobError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {name}")


@router.post("/jobs/{name}/trigger", response_model=JobTriggerResponse)
async def trigger_job(name: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Run a job now. A job that is already running is skipped, not queued."""
    try:
        run = await pipeline.scheduler.trigger(name)
    except UnknownJobError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown job: {name}")

    return {
        "job": name,
        "status": run.status.value,
        "result": asdict(run.result) if run.result else None,
    }


@router.post("/enrich", response_model=EnrichmentStatsResponse)
async def enrich_records(body: EnrichRequest, pipeline: Pipeline = Depends(get_pipeline)):
    stats = await pipeline.enrichment.enrich(body.record_ids)
    return stats.to_dict()


async def require_tenant(tenant_id: str, pipeline: Pipeline) -> None:
    if await pipeline.tenants.get(tenant_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown tenant: {tenant_id}")


async def run_channel_for_tenant(engine: ChannelSyncEngine, tenant_id: str, pipeline: Pipeline):
    await require_tenant(tenant_id, pipeline)
    try:
        stats = await engine.sync_tenant(tenant_id)
    except ChannelNotConfiguredError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return stats.to_dict()


@router.post("/tenants/{tenant_id}/enrich", response_model=EnrichmentStatsResponse)
async def enrich_tenant(tenant_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Enrich every pending or failed record of one tenant. Inactive tenants are skipped."""
    await require_tenant(tenant_id, pipeline)
    stats = await pipeline.enrichment.enrich_pending_for_tenant(tenant_id)
    return stats.to_dict()


@router.post("/tenants/{tenant_id}/email-sync", response_model=ChannelSyncStatsResponse)
async def email_sync_tenant(tenant_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Push due records of one tenant to Mailchimp."""
    return await run_channel_for_tenant(pipeline.email_engine, tenant_id, pipeline)


@router.post("/tenants/{tenant_id}/note-sync", response_model=ChannelSyncStatsResponse)
async def note_sync_tenant(tenant_id: str, pipeline: Pipeline = Depends(get_pipeline)):
    """Send handwritten notes for due records of one tenant."""
    return await run_channel_for_tenant(pipeline.note_engine, tenant_id, pipeline)


@router.get("/health", response_model=HealthResponse)
async def health(pipeline: Pipeline = Depends(get_pipeline)):
    return {
        "status": "healthy",
        "version": __version__,
        "scheduler_running": pipeline.scheduler.scheduler.running,
        "jobs": list(pipeline.scheduler.jobs),
        "details": {"environment": pipeline.settings.ENVIRONMENT},
    }
