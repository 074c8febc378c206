# backend/identity_sync/services/sync_jobs.py
"""
Scheduled job handlers.

- pixel_sync: ingest every active tenant, then enrich the new/updated records
- email_sync: delta-push enriched contacts to the email list
- note_sync:  delta-send handwritten notes for handwritten_connect tenants
"""

import logging

from identity_sync.config import Settings
from identity_sync.scheduler import JobResult, JobScheduler
from identity_sync.services.channels.base import ChannelSyncEngine, ChannelSyncStats
from identity_sync.services.enrichment_engine import EnrichmentEngine
from identity_sync.services.ingestion_service import PixelIngestionService

logger = logging.getLogger(__name__)

PIXEL_SYNC = "pixel_sync"
EMAIL_SYNC = "email_sync"
NOTE_SYNC = "note_sync"


def _channel_result(stats: ChannelSyncStats, noun: str, verb: str) -> JobResult:
    errors = stats.failed + stats.tenant_errors
    if stats.pushed:
        message = f"{verb} {stats.pushed} {noun} across {stats.tenants_processed} tenant(s)"
    elif errors:
        message = f"Completed with {errors} errors"
    else:
        message = f"No new/updated {noun} to sync"
    return JobResult(ok=errors == 0, message=message, count=stats.pushed)


class SyncJobs:
    """Job handlers bound to the pipeline services."""

    def __init__(
        self,
        ingestion: PixelIngestionService,
        enrichment: EnrichmentEngine,
        email_engine: ChannelSyncEngine,
        note_engine: ChannelSyncEngine
    ):
        self.ingestion = ingestion
        self.enrichment = enrichment
        self.email_engine = email_engine
        self.note_engine = note_engine

    async def run_pixel_sync(self) -> JobResult:
        stats = await self.ingestion.sync_all()

        record_ids = stats.created_ids + stats.updated_ids
        enriched = 0
        if record_ids:
            enrichment = await self.enrichment.enrich(record_ids)
            enriched = enrichment.enriched

        message = (
            f"Pixel sync: {len(stats.created_ids)} new, {len(stats.updated_ids)} updated, "
            f"{enriched} enriched"
        )
        if stats.tenant_errors:
            message += f", {stats.tenant_errors} tenant errors"
        return JobResult(ok=stats.tenant_errors == 0, message=message, count=stats.synced)

    async def run_email_sync(self) -> JobResult:
        stats = await self.email_engine.sync_all()
        return _channel_result(stats, "contacts", "Synced")

    async def run_note_sync(self) -> JobResult:
        stats = await self.note_engine.sync_all()
        return _channel_result(stats, "handwritten notes", "Sent")


def register_jobs(scheduler: JobScheduler, jobs: SyncJobs, settings: Settings) -> None:
    scheduler.register(PIXEL_SYNC, settings.PIXEL_SYNC_CRON, jobs.run_pixel_sync)
    scheduler.register(NOTE_SYNC, settings.NOTE_SYNC_CRON, jobs.run_note_sync)
    scheduler.register(EMAIL_SYNC, settings.EMAIL_SYNC_CRON, jobs.run_email_sync)
    logger.info(f"All sync jobs scheduled in {settings.SYNC_TIMEZONE}")
