# backend/identity_sync/services/channels/base.py
"""
Base classes for downstream channel delta sync.

A Channel knows which records it can take, how to push one, and which
per-record timestamp tracks its progress. ChannelSyncEngine does the rest:
tenant gating, delta selection, pacing and stamping.

Delta rule: a record is due when it has the channel's required fields and
either was never pushed or changed (updated_at) after the last push.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from identity_sync.models import IdentityRecord, TenantAccount, utcnow
from identity_sync.services.pacing import BatchProcessor
from identity_sync.services.tenant_registry import TenantRegistry
from identity_sync.storage.base import RecordStore

logger = logging.getLogger(__name__)


class ChannelPushError(Exception):
    """The channel provider rejected or failed a push."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ChannelNotConfiguredError(Exception):
    """Channel credentials are missing."""


def _present(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return value is not None


class Channel(ABC):
    """One downstream destination with its own sync cursor."""

    name: str = "channel"
    synced_at_field: str = ""

    # Pacing
    batch_size: int = 50
    delay_between_items: float = 0.0
    delay_between_batches: float = 0.0

    required_fields: tuple = ()

    @abstractmethod
    def is_configured(self) -> bool:
        pass

    def tenant_enabled(self, tenant: TenantAccount) -> bool:
        return True

    def has_required_fields(self, record: IdentityRecord) -> bool:
        return all(_present(getattr(record, name)) for name in self.required_fields)

    def is_due(self, record: IdentityRecord) -> bool:
        if not self.has_required_fields(record):
            return False
        synced_at = getattr(record, self.synced_at_field)
        if synced_at is None:
            return True
        return record.updated_at is not None and record.updated_at > synced_at

    @abstractmethod
    async def push(self, tenant: TenantAccount, record: IdentityRecord) -> Dict[str, Any]:
        """
        Push one record.

        Raises:
            ChannelPushError: when the provider did not accept the record
        """
        pass


@dataclass
class ChannelSyncStats:
    channel: str
    tenants_processed: int = 0
    tenants_skipped: int = 0
    tenant_errors: int = 0
    due: int = 0
    pushed: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    error_cap: int = 10

    def add_error(self, record: IdentityRecord, error: str) -> None:
        if len(self.errors) < self.error_cap:
            self.errors.append({
                "record_id": record.id,
                "tenant_id": record.tenant_id,
                "error": error[:500],
            })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "tenants_processed": self.tenants_processed,
            "tenants_skipped": self.tenants_skipped,
            "tenant_errors": self.tenant_errors,
            "due": self.due,
            "pushed": self.pushed,
            "failed": self.failed,
            "errors": list(self.errors),
        }


class ChannelSyncEngine:
    """Delta-sync one channel across all active tenants."""

    def __init__(
        self,
        channel: Channel,
        store: RecordStore,
        tenants: TenantRegistry,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        error_cap: int = 10
    ):
        self.channel = channel
        self.store = store
        self.tenants = tenants
        self._clock = clock
        self._sleep = sleep
        self.error_cap = error_cap

    def _new_stats(self) -> ChannelSyncStats:
        return ChannelSyncStats(channel=self.channel.name, error_cap=self.error_cap)

    async def sync_all(self) -> ChannelSyncStats:
        """
        Raises:
            ChannelNotConfiguredError: when the channel has no credentials
        """
        if not self.channel.is_configured():
            raise ChannelNotConfiguredError(f"{self.channel.name} channel is not configured")

        stats = self._new_stats()
        for tenant in await self.tenants.active_tenants():
            if not self.channel.tenant_enabled(tenant):
                stats.tenants_skipped += 1
                logger.info(f"⏭️  {self.channel.name}: tenant {tenant.tenant_id} not enabled for this channel")
                continue
            try:
                await self._sync_tenant(tenant, stats)
            except Exception as e:
                stats.tenant_errors += 1
                logger.error(f"❌ {self.channel.name} sync failed for tenant {tenant.tenant_id}: {e}")

        logger.info(
            f"✅ {self.channel.name} sync complete: {stats.pushed} pushed, {stats.failed} failed, "
            f"{stats.tenants_processed} tenants ({stats.tenants_skipped} skipped)"
        )
        return stats

    async def sync_tenant(self, tenant_id: str) -> ChannelSyncStats:
        if not self.channel.is_configured():
            raise ChannelNotConfiguredError(f"{self.channel.name} channel is not configured")

        stats = self._new_stats()
        tenant = await self.tenants.get(tenant_id)
        if tenant is None or not tenant.is_active or not self.channel.tenant_enabled(tenant):
            stats.tenants_skipped += 1
            status = tenant.status if tenant else "not found"
            logger.info(f"⏭️  {self.channel.name}: tenant {tenant_id} skipped ({status})")
            return stats

        await self._sync_tenant(tenant, stats)
        return stats

    async def _sync_tenant(self, tenant: TenantAccount, stats: ChannelSyncStats) -> None:
        records = await self.store.list_records(tenant.tenant_id)
        due = [r for r in records if self.channel.is_due(r)]
        stats.tenants_processed += 1
        stats.due += len(due)

        logger.info(
            f"📤 {self.channel.name} delta sync for tenant {tenant.tenant_id}: "
            f"{len(due)} due of {len(records)} records"
        )
        if not due:
            return

        async def push_one(record: IdentityRecord) -> bool:
            try:
                await self.channel.push(tenant, record)
            except Exception as e:
                stats.failed += 1
                stats.add_error(record, str(e))
                logger.warning(f"❌ {self.channel.name} push failed for record {record.id}: {e}")
                return False

            await self.store.stamp_channel_synced(record.id, self.channel.synced_at_field, self._clock())
            stats.pushed += 1
            return True

        batcher = BatchProcessor(
            batch_size=self.channel.batch_size,
            delay_between_batches=self.channel.delay_between_batches,
            delay_between_items=self.channel.delay_between_items,
            sleep=self._sleep,
            label=self.channel.name
        )
        await batcher.process_in_batches(due, push_one)
