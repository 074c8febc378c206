"""Pydantic schemas for request/response validation."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class JobStatusResponse(BaseModel):
    """Scheduled job status."""
    name: str
    status: str
    cron: str
    timezone: str
    next_sync: Optional[str] = None
    next_sync_formatted: Optional[str] = None
    last_sync: Optional[str] = None
    last_result: str
    sync_mode: str
    is_running: bool


class JobResultResponse(BaseModel):
    ok: bool
    message: str
    count: int = 0


class JobTriggerResponse(BaseModel):
    """Outcome of a manual trigger."""
    job: str
    status: str = Field(..., pattern="^(completed|failed|skipped)$")
    result: Optional[JobResultResponse] = None


class EnrichRequest(BaseModel):
    record_ids: List[int] = Field(..., min_length=1, max_length=1000)


class EnrichmentErrorEntry(BaseModel):
    record_id: int
    hash_prefix: str
    error: str
    retry_count: int = 0


class EnrichmentStatsResponse(BaseModel):
    total: int
    enriched: int
    failed: int
    skipped: int
    retried: int
    errors: List[EnrichmentErrorEntry] = []


class HealthResponse(BaseModel):
    status: str
    version: str
    scheduler_running: bool
    jobs: List[str]
    details: Dict[str, Any] = {}


class ChannelSyncErrorEntry(BaseModel):
    record_id: int
    tenant_id: str
    error: str


class ChannelSyncStatsResponse(BaseModel):
    channel: str
    tenants_processed: int
    tenants_skipped: int
    tenant_errors: int
    due: int
    pushed: int
    failed: int
    errors: List[ChannelSyncErrorEntry] = []
