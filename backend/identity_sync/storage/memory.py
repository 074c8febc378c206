# backend/identity_sync/storage/memory.py
"""
In-memory record store for development and tests.
Same contract as SQLRecordStore, no database required.
"""

import itertools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from identity_sync.models import IdentityRecord, TenantAccount, TenantWatermark, utcnow
from identity_sync.storage.base import (
    RecordStore,
    RECORD_FIELDS,
    TENANT_FIELDS,
    check_fields,
    check_channel_field,
)

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):
    """Dict-backed store keyed the same way the SQL tables are."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._tenants: Dict[str, TenantAccount] = {}
        self._records: Dict[int, IdentityRecord] = {}
        self._by_hash: Dict[Tuple[str, str], int] = {}
        self._watermarks: Dict[str, TenantWatermark] = {}
        self._ids = itertools.count(1)
        logger.info("Using in-memory record store (no database connection)")

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def list_tenants(self) -> List[TenantAccount]:
        return list(self._tenants.values())

    async def get_tenant(self, tenant_id: str) -> Optional[TenantAccount]:
        return self._tenants.get(tenant_id)

    async def upsert_tenant(self, tenant_id: str, **fields) -> TenantAccount:
        check_fields(fields, TENANT_FIELDS, "tenant")
        now = self._clock()
        tenant = self._tenants.get(tenant_id)
        if tenant is None:
            tenant = TenantAccount(
                tenant_id=tenant_id,
                account_name=fields.get("account_name") or f"Account {tenant_id}",
                account_level=fields.get("account_level"),
                status=fields.get("status", "active"),
                settings=fields.get("settings") or {},
                created_at=now,
                updated_at=now
            )
            self._tenants[tenant_id] = tenant
        else:
            for key, value in fields.items():
                setattr(tenant, key, value)
            tenant.updated_at = now
        return tenant

    # ------------------------------------------------------------------
    # Identity records
    # ------------------------------------------------------------------

    async def get_record(self, record_id: int) -> Optional[IdentityRecord]:
        return self._records.get(record_id)

    async def get_records(self, record_ids: List[int]) -> List[IdentityRecord]:
        return [self._records[i] for i in sorted(set(record_ids)) if i in self._records]

    async def get_record_by_hash(self, tenant_id: str, visitor_hash: str) -> Optional[IdentityRecord]:
        record_id = self._by_hash.get((tenant_id, visitor_hash))
        return self._records.get(record_id) if record_id is not None else None

    async def list_records(self, tenant_id: str) -> List[IdentityRecord]:
        return [r for _, r in sorted(self._records.items()) if r.tenant_id == tenant_id]

    async def upsert_record(
        self,
        tenant_id: str,
        visitor_hash: str,
        fields: Dict[str, Any]
    ) -> Tuple[IdentityRecord, bool, bool]:
        check_fields(fields, RECORD_FIELDS, "record")
        existing = await self.get_record_by_hash(tenant_id, visitor_hash)
        if existing is not None:
            changed = self._apply(existing, fields)
            return existing, False, changed

        now = self._clock()
        record = IdentityRecord(
            id=next(self._ids),
            tenant_id=tenant_id,
            visitor_hash=visitor_hash,
            source="pixel_endpoint",
            enrichment_status="pending",
            retry_count=0,
            captured_at=now,
            created_at=now,
            updated_at=now
        )
        for key, value in fields.items():
            setattr(record, key, value)

        self._records[record.id] = record
        self._by_hash[(tenant_id, visitor_hash)] = record.id
        return record, True, True

    async def update_record(self, record_id: int, fields: Dict[str, Any]) -> Optional[IdentityRecord]:
        check_fields(fields, RECORD_FIELDS, "record")
        record = self._records.get(record_id)
        if record is None:
            return None
        self._apply(record, fields)
        return record

    async def stamp_channel_synced(self, record_id: int, field: str, synced_at: datetime) -> bool:
        check_channel_field(field)
        record = self._records.get(record_id)
        if record is None:
            return False
        current = getattr(record, field)
        if current is not None and current >= synced_at:
            return False
        setattr(record, field, synced_at)
        return True

    def _apply(self, record: IdentityRecord, fields: Dict[str, Any]) -> bool:
        changed = {k: v for k, v in fields.items() if getattr(record, k) != v}
        if not changed:
            return False
        for key, value in changed.items():
            setattr(record, key, value)
        record.updated_at = self._clock()
        return True

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    async def get_watermark(self, tenant_id: str) -> Optional[TenantWatermark]:
        return self._watermarks.get(tenant_id)

    async def advance_watermark(
        self,
        tenant_id: str,
        synced_at: Optional[datetime],
        record_count: int
    ) -> bool:
        now = self._clock()
        mark = self._watermarks.get(tenant_id)
        if mark is None:
            mark = TenantWatermark(
                tenant_id=tenant_id,
                last_synced_at=None,
                synced_count=0,
                last_batch_count=0,
                sync_runs=0,
                created_at=now
            )
            self._watermarks[tenant_id] = mark

        mark.synced_count += record_count
        mark.last_batch_count = record_count
        mark.sync_runs += 1
        mark.updated_at = now

        if synced_at is None:
            return False
        if mark.last_synced_at is not None and synced_at <= mark.last_synced_at:
            return False
        mark.last_synced_at = synced_at
        return True
