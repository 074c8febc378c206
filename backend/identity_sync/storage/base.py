"""
Base interface for record stores.
Every pipeline stage talks to persistence through this interface only.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from identity_sync.models import (
    IdentityRecord,
    TenantAccount,
    TenantWatermark,
    CAPTURE_FIELDS,
    ENRICHMENT_FIELDS,
    CHANNEL_SYNC_FIELDS,
)

TENANT_FIELDS = frozenset({"account_name", "account_level", "status", "settings"})
RECORD_FIELDS = CAPTURE_FIELDS | ENRICHMENT_FIELDS


def check_fields(fields: Dict[str, Any], allowed: Iterable[str], kind: str) -> None:
    """Reject writes to columns the caller does not own."""
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown {kind} field(s): {', '.join(sorted(unknown))}")


def check_channel_field(field: str) -> None:
    if field not in CHANNEL_SYNC_FIELDS:
        raise ValueError(f"Unknown channel sync field: {field}")


class RecordStore(ABC):
    """
    Persistence for identity records, tenant accounts and watermarks.

    Writers coordinate only through two disciplines:
    - (tenant_id, visitor_hash) is unique; upsert_record never duplicates
    - watermarks and channel timestamps only advance ("advance if greater")
    """

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_tenants(self) -> List[TenantAccount]:
        pass

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[TenantAccount]:
        pass

    @abstractmethod
    async def upsert_tenant(self, tenant_id: str, **fields) -> TenantAccount:
        """Create the tenant or update the given fields."""
        pass

    # ------------------------------------------------------------------
    # Identity records
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_record(self, record_id: int) -> Optional[IdentityRecord]:
        pass

    @abstractmethod
    async def get_records(self, record_ids: List[int]) -> List[IdentityRecord]:
        """Records for the given ids, in id order. Unknown ids are ignored."""
        pass

    @abstractmethod
    async def get_record_by_hash(self, tenant_id: str, visitor_hash: str) -> Optional[IdentityRecord]:
        pass

    @abstractmethod
    async def list_records(self, tenant_id: str) -> List[IdentityRecord]:
        pass

    @abstractmethod
    async def upsert_record(
        self,
        tenant_id: str,
        visitor_hash: str,
        fields: Dict[str, Any]
    ) -> Tuple[IdentityRecord, bool, bool]:
        """
        Insert or update by (tenant_id, visitor_hash).

        New records start with enrichment_status='pending'. updated_at only
        moves when a field value actually changes.

        Returns:
            (record, created, changed). changed is True for a new record
            and for an existing one whose values were modified.
        """
        pass

    @abstractmethod
    async def update_record(self, record_id: int, fields: Dict[str, Any]) -> Optional[IdentityRecord]:
        """Apply field changes; updated_at moves only if something changed."""
        pass

    @abstractmethod
    async def stamp_channel_synced(self, record_id: int, field: str, synced_at: datetime) -> bool:
        """
        Advance a per-channel sync timestamp if synced_at is later than the stored one.
        Never touches updated_at.

        Returns:
            True if the timestamp moved
        """
        pass

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_watermark(self, tenant_id: str) -> Optional[TenantWatermark]:
        pass

    @abstractmethod
    async def advance_watermark(
        self,
        tenant_id: str,
        synced_at: Optional[datetime],
        record_count: int
    ) -> bool:
        """
        Record one ingestion run for the tenant.

        Counts are always accumulated; last_synced_at is set to synced_at only
        when it is strictly greater than the stored value.

        Returns:
            True if last_synced_at moved
        """
        pass
