# backend/identity_sync/services/enrichment_engine.py
"""
Enrichment Engine

Resolves visitor hashes into identities and writes the flattened result onto
the identity record.

Flow per batch:
1. Filter candidates (pending/failed, or completed but missing name/email)
2. Skip records of tenants that are not active
3. Pre-warm resolver auth once if anything is left to do
4. Process candidates in sub-batches; inside a sub-batch calls run
   concurrently under a semaphore, with a short pause between sub-batches

A failing record is marked failed and counted; it never fails the batch.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from identity_sync.models import IdentityRecord
from identity_sync.services.credentials import ResolverAuthenticator
from identity_sync.services.email_selection import map_enrichment_to_fields
from identity_sync.services.identity_resolver import IdentityResolverClient
from identity_sync.services.retry import RetryExhausted, RetryPolicy, call_with_retry
from identity_sync.services.tenant_registry import TenantRegistry
from identity_sync.storage.base import RecordStore

logger = logging.getLogger(__name__)

CANDIDATE_STATUSES = {None, "", "pending", "failed"}
PLACEHOLDER_VALUES = {None, "", "N/A"}
IDENTITY_FIELDS = ("first_name", "last_name", "email")
NO_DATA_ERROR = "No enrichment data available"
MAX_ERROR_LENGTH = 500


def has_identity_fields(record: IdentityRecord) -> bool:
    """True when first name, last name and email all hold real values."""
    for name in IDENTITY_FIELDS:
        value = getattr(record, name)
        if isinstance(value, str):
            value = value.strip()
        if value in PLACEHOLDER_VALUES:
            return False
    return True


def needs_enrichment(record: IdentityRecord) -> bool:
    if record.enrichment_status in CANDIDATE_STATUSES:
        return True
    return not has_identity_fields(record)


@dataclass
class RecordOutcome:
    record_id: int
    status: str  # enriched, failed, skipped
    retries: int = 0
    error: Optional[str] = None


@dataclass
class EnrichmentStats:
    total: int = 0
    enriched: int = 0
    failed: int = 0
    skipped: int = 0
    retried: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error_cap: int = 10

    def add_error(self, record: IdentityRecord, error: str, retry_count: int = 0) -> None:
        if len(self.errors) >= self.error_cap:
            return
        self.errors.append({
            "record_id": record.id,
            "hash_prefix": (record.visitor_hash or "")[:8],
            "error": error[:MAX_ERROR_LENGTH],
            "retry_count": retry_count,
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "enriched": self.enriched,
            "failed": self.failed,
            "skipped": self.skipped,
            "retried": self.retried,
            "errors": list(self.errors),
        }


class EnrichmentEngine:
    """Batch enrichment with retry, bounded concurrency and tenant gating."""

    def __init__(
        self,
        store: RecordStore,
        resolver: IdentityResolverClient,
        tenants: TenantRegistry,
        authenticator: Optional[ResolverAuthenticator] = None,
        policy: Optional[RetryPolicy] = None,
        batch_size: int = 10,
        concurrency: int = 3,
        batch_pause: float = 0.2,
        error_cap: int = 10,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        if batch_size < 1 or concurrency < 1:
            raise ValueError("batch_size and concurrency must be at least 1")
        self.store = store
        self.resolver = resolver
        self.tenants = tenants
        self.authenticator = authenticator
        self.policy = policy or RetryPolicy()
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.batch_pause = batch_pause
        self.error_cap = error_cap
        self._sleep = sleep

    async def enrich(self, record_ids: Iterable[int]) -> EnrichmentStats:
        """Enrich the given records (non-candidates are skipped)."""
        records = await self.store.get_records(list(record_ids))
        return await self.enrich_batch(records)

    async def enrich_pending_for_tenant(self, tenant_id: str) -> EnrichmentStats:
        records = await self.store.list_records(tenant_id)
        return await self.enrich_batch(records)

    async def enrich_batch(self, records: List[IdentityRecord]) -> EnrichmentStats:
        stats = EnrichmentStats(total=len(records), error_cap=self.error_cap)

        tenant_active: Dict[str, bool] = {}
        candidates = []
        for record in records:
            if not needs_enrichment(record):
                stats.skipped += 1
                continue
            if record.tenant_id not in tenant_active:
                tenant_active[record.tenant_id] = await self.tenants.is_active(record.tenant_id)
            if not tenant_active[record.tenant_id]:
                stats.skipped += 1
                continue
            candidates.append(record)

        inactive = [t for t, active in tenant_active.items() if not active]
        if inactive:
            logger.info(f"⏭️  Skipping enrichment for inactive tenants: {', '.join(sorted(inactive))}")

        if not candidates:
            logger.info(f"No records need enrichment ({stats.skipped} skipped)")
            return stats

        if self.authenticator is not None:
            try:
                await self.authenticator.ensure_fresh()
            except Exception as e:
                logger.warning(f"Resolver auth pre-warm failed: {e}")

        semaphore = asyncio.Semaphore(self.concurrency)
        total_batches = (len(candidates) + self.batch_size - 1) // self.batch_size
        logger.info(
            f"🚀 Enriching {len(candidates)} records in {total_batches} batches "
            f"(concurrency {self.concurrency}, {stats.skipped} skipped)"
        )

        async def guarded(record: IdentityRecord) -> RecordOutcome:
            async with semaphore:
                return await self.enrich_record(record)

        for i in range(0, len(candidates), self.batch_size):
            batch = candidates[i:i + self.batch_size]
            batch_num = (i // self.batch_size) + 1

            results = await asyncio.gather(*[guarded(r) for r in batch], return_exceptions=True)

            for record, result in zip(batch, results):
                if isinstance(result, Exception):
                    stats.failed += 1
                    stats.add_error(record, f"Unexpected error: {result}")
                    logger.error(f"❌ Enrichment crashed for record {record.id}: {result}")
                    continue
                if result.retries > 0:
                    stats.retried += 1
                if result.status == "enriched":
                    stats.enriched += 1
                else:
                    stats.failed += 1
                    stats.add_error(record, result.error or "unknown error", result.retries)

            logger.info(f"📦 Enrichment batch {batch_num}/{total_batches} done")
            if i + self.batch_size < len(candidates) and self.batch_pause:
                await self._sleep(self.batch_pause)

        processed = stats.total - stats.skipped
        success_rate = (stats.enriched / processed * 100) if processed else 0.0
        logger.info(
            f"✅ Enrichment complete: {stats.enriched} enriched, {stats.failed} failed, "
            f"{stats.skipped} skipped, {stats.retried} retried ({success_rate:.1f}% success)"
        )
        return stats

    async def enrich_record(self, record: IdentityRecord) -> RecordOutcome:
        """Resolve one record and persist the outcome."""
        prefix = (record.visitor_hash or "")[:8]

        try:
            identity, retries = await call_with_retry(
                lambda: self.resolver.lookup(record.visitor_hash),
                self.policy,
                sleep=self._sleep,
                label=f"{prefix}..."
            )
        except RetryExhausted as e:
            error = str(e.last_error)[:MAX_ERROR_LENGTH] or type(e.last_error).__name__
            await self.store.update_record(record.id, {
                "enrichment_status": "failed",
                "enrichment_error": error,
                "retry_count": e.retries,
            })
            logger.warning(f"❌ Enrichment failed for {prefix}... after {e.retries} retries: {error}")
            return RecordOutcome(record_id=record.id, status="failed", retries=e.retries, error=error)

        if not identity:
            await self.store.update_record(record.id, {
                "enrichment_status": "failed",
                "enrichment_error": NO_DATA_ERROR,
                "retry_count": retries,
            })
            return RecordOutcome(record_id=record.id, status="failed", retries=retries, error=NO_DATA_ERROR)

        fields = map_enrichment_to_fields(identity, record.visitor_hash)
        fields.update({
            "enrichment_status": "completed",
            "enrichment_error": None,
            "retry_count": retries,
            "enrichment_data": identity,
        })
        await self.store.update_record(record.id, fields)
        logger.info(f"✅ Enriched {prefix}... (record {record.id})")
        return RecordOutcome(record_id=record.id, status="enriched", retries=retries)
