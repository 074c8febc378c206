"""Builds the pipeline object graph from settings."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine

from identity_sync.config import Settings
from identity_sync.database import create_engine_from_url, create_session_factory, init_models
from identity_sync.scheduler import JobScheduler
from identity_sync.services.channels import ChannelSyncEngine, HandwryttenChannel, MailchimpChannel
from identity_sync.services.credentials import (
    CredentialCache,
    ResolverAuthenticator,
    SignedTokenStrategy,
    TokenExchangeStrategy,
)
from identity_sync.services.enrichment_engine import EnrichmentEngine
from identity_sync.services.identity_resolver import IdentityResolverClient
from identity_sync.services.ingestion_service import PixelIngestionService
from identity_sync.services.pixel_client import PixelIngestionClient
from identity_sync.services.retry import RetryPolicy
from identity_sync.services.sync_jobs import SyncJobs, register_jobs
from identity_sync.services.tenant_registry import TenantRegistry
from identity_sync.storage import InMemoryRecordStore, RecordStore, SQLRecordStore

logger = logging.getLogger(__name__)

MEMORY_DATABASE_URL = "memory://"


@dataclass
class Pipeline:
    settings: Settings
    store: RecordStore
    http_client: httpx.AsyncClient
    tenants: TenantRegistry
    authenticator: ResolverAuthenticator
    ingestion: PixelIngestionService
    enrichment: EnrichmentEngine
    email_engine: ChannelSyncEngine
    note_engine: ChannelSyncEngine
    jobs: SyncJobs
    scheduler: JobScheduler
    engine: Optional[AsyncEngine] = None

    async def startup(self, start_scheduler: bool = True) -> None:
        if self.engine is not None:
            await init_models(self.engine)
            logger.info("✅ Database tables ready")
        if start_scheduler:
            self.scheduler.start()

    async def shutdown(self) -> None:
        self.scheduler.shutdown()
        await self.http_client.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_store(settings: Settings):
    """Returns (store, engine); engine is None for the in-memory store."""
    if settings.DATABASE_URL == MEMORY_DATABASE_URL:
        return InMemoryRecordStore(), None
    engine = create_engine_from_url(settings.DATABASE_URL, echo=settings.LOG_LEVEL == "DEBUG")
    return SQLRecordStore(create_session_factory(engine)), engine


def build_pipeline(
    settings: Settings,
    store: Optional[RecordStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
) -> Pipeline:
    engine = None
    if store is None:
        store, engine = build_store(settings)
    if http_client is None:
        http_client = httpx.AsyncClient()

    tenants = TenantRegistry(store)

    authenticator = ResolverAuthenticator(
        exchange=TokenExchangeStrategy(
            http_client,
            origin=settings.RESOLVER_ORIGIN,
            key_id=settings.RESOLVER_KEY_ID,
            api_key=settings.RESOLVER_API_KEY,
            cache=CredentialCache(),
            timeout=settings.RESOLVER_TOKEN_TIMEOUT_SECONDS,
            sleep=sleep
        ),
        signed=SignedTokenStrategy(settings.RESOLVER_KEY_ID, settings.RESOLVER_API_KEY)
    )
    resolver = IdentityResolverClient(
        http_client,
        authenticator,
        origin=settings.RESOLVER_ORIGIN,
        template_id=settings.RESOLVER_TEMPLATE_ID,
        timeout=settings.RESOLVER_TIMEOUT_SECONDS
    )
    enrichment = EnrichmentEngine(
        store,
        resolver,
        tenants,
        authenticator=authenticator,
        policy=RetryPolicy(
            max_retries=settings.ENRICHMENT_MAX_RETRIES,
            base_delay=settings.ENRICHMENT_RETRY_BASE_SECONDS,
            multiplier=settings.ENRICHMENT_RETRY_MULTIPLIER
        ),
        batch_size=settings.ENRICHMENT_BATCH_SIZE,
        concurrency=settings.ENRICHMENT_CONCURRENCY,
        batch_pause=settings.ENRICHMENT_BATCH_PAUSE_SECONDS,
        error_cap=settings.ENRICHMENT_ERROR_CAP,
        sleep=sleep
    )

    ingestion = PixelIngestionService(
        store,
        PixelIngestionClient(http_client, settings.PIXEL_ENDPOINT_URL, timeout=settings.PIXEL_TIMEOUT_SECONDS),
        tenants
    )

    email_engine = ChannelSyncEngine(
        MailchimpChannel(
            http_client,
            api_key=settings.MAILCHIMP_API_KEY,
            list_id=settings.MAILCHIMP_LIST_ID,
            timeout=settings.CHANNEL_TIMEOUT_SECONDS
        ),
        store,
        tenants,
        sleep=sleep
    )
    note_engine = ChannelSyncEngine(
        HandwryttenChannel(
            http_client,
            api_key=settings.HANDWRYTTEN_API_KEY,
            base_url=settings.HANDWRYTTEN_BASE_URL,
            card_id=settings.NOTE_CARD_ID,
            default_sender=settings.NOTE_DEFAULT_SENDER,
            timezone=settings.SYNC_TIMEZONE,
            timeout=settings.CHANNEL_TIMEOUT_SECONDS
        ),
        store,
        tenants,
        sleep=sleep
    )

    jobs = SyncJobs(ingestion, enrichment, email_engine, note_engine)
    scheduler = JobScheduler(timezone=settings.SYNC_TIMEZONE)
    register_jobs(scheduler, jobs, settings)

    return Pipeline(
        settings=settings,
        store=store,
        http_client=http_client,
        tenants=tenants,
        authenticator=authenticator,
        ingestion=ingestion,
        enrichment=enrichment,
        email_engine=email_engine,
        note_engine=note_engine,
        jobs=jobs,
        scheduler=scheduler,
        engine=engine
    )
