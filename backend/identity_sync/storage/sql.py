# backend/identity_sync/storage/sql.py
"""
SQLAlchemy-backed record store.

Uniqueness of (tenant_id, visitor_hash) is enforced by the table constraint;
a racing insert that loses falls back to updating the winner's row.
Watermark and channel timestamp writes are conditional UPDATEs, so concurrent
writers can only move them forward.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from identity_sync.models import IdentityRecord, TenantAccount, TenantWatermark, utcnow
from identity_sync.storage.base import (
    RecordStore,
    RECORD_FIELDS,
    TENANT_FIELDS,
    check_fields,
    check_channel_field,
)

logger = logging.getLogger(__name__)


class SQLRecordStore(RecordStore):
    """Record store over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self._clock = clock

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    async def list_tenants(self) -> List[TenantAccount]:
        async with self.session_factory() as session:
            result = await session.execute(select(TenantAccount).order_by(TenantAccount.id))
            return list(result.scalars().all())

    async def get_tenant(self, tenant_id: str) -> Optional[TenantAccount]:
        async with self.session_factory() as session:
            return await self._find_tenant(session, tenant_id)

    async def upsert_tenant(self, tenant_id: str, **fields) -> TenantAccount:
        check_fields(fields, TENANT_FIELDS, "tenant")
        async with self.session_factory() as session:
            tenant = await self._find_tenant(session, tenant_id)
            now = self._clock()
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
                session.add(tenant)
            else:
                for key, value in fields.items():
                    setattr(tenant, key, value)
                tenant.updated_at = now
            await session.commit()
            return tenant

    async def _find_tenant(self, session: AsyncSession, tenant_id: str) -> Optional[TenantAccount]:
        result = await session.execute(
            select(TenantAccount).where(TenantAccount.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Identity records
    # ------------------------------------------------------------------

    async def get_record(self, record_id: int) -> Optional[IdentityRecord]:
        async with self.session_factory() as session:
            return await session.get(IdentityRecord, record_id)

    async def get_records(self, record_ids: List[int]) -> List[IdentityRecord]:
        if not record_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityRecord)
                .where(IdentityRecord.id.in_(set(record_ids)))
                .order_by(IdentityRecord.id)
            )
            return list(result.scalars().all())

    async def get_record_by_hash(self, tenant_id: str, visitor_hash: str) -> Optional[IdentityRecord]:
        async with self.session_factory() as session:
            return await self._find_record(session, tenant_id, visitor_hash)

    async def list_records(self, tenant_id: str) -> List[IdentityRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(IdentityRecord)
                .where(IdentityRecord.tenant_id == tenant_id)
                .order_by(IdentityRecord.id)
            )
            return list(result.scalars().all())

    async def upsert_record(
        self,
        tenant_id: str,
        visitor_hash: str,
        fields: Dict[str, Any]
    ) -> Tuple[IdentityRecord, bool, bool]:
        check_fields(fields, RECORD_FIELDS, "record")
        async with self.session_factory() as session:
            existing = await self._find_record(session, tenant_id, visitor_hash)
            if existing is not None:
                changed = self._apply(existing, fields)
                await session.commit()
                return existing, False, changed

            now = self._clock()
            record = IdentityRecord(
                tenant_id=tenant_id,
                visitor_hash=visitor_hash,
                source="pixel_endpoint",
                enrichment_status="pending",
                retry_count=0,
                captured_at=now,
                created_at=now,
                updated_at=now,
                **fields
            )
            session.add(record)
            try:
                await session.commit()
                return record, True, True
            except IntegrityError:
                # Another writer inserted the same (tenant, hash) first
                await session.rollback()
                logger.info(f"Upsert race on {tenant_id}/{visitor_hash[:8]}..., updating existing row")

        async with self.session_factory() as session:
            existing = await self._find_record(session, tenant_id, visitor_hash)
            if existing is None:
                raise RuntimeError(f"Record {tenant_id}/{visitor_hash[:8]}... vanished during upsert")
            changed = self._apply(existing, fields)
            await session.commit()
            return existing, False, changed

    async def update_record(self, record_id: int, fields: Dict[str, Any]) -> Optional[IdentityRecord]:
        check_fields(fields, RECORD_FIELDS, "record")
        async with self.session_factory() as session:
            record = await session.get(IdentityRecord, record_id)
            if record is None:
                return None
            self._apply(record, fields)
            await session.commit()
            return record

    async def stamp_channel_synced(self, record_id: int, field: str, synced_at: datetime) -> bool:
        check_channel_field(field)
        column = getattr(IdentityRecord, field)
        async with self.session_factory() as session:
            result = await session.execute(
                update(IdentityRecord)
                .where(
                    IdentityRecord.id == record_id,
                    or_(column.is_(None), column < synced_at)
                )
                .values({field: synced_at})
            )
            await session.commit()
            return result.rowcount > 0

    async def _find_record(
        self,
        session: AsyncSession,
        tenant_id: str,
        visitor_hash: str
    ) -> Optional[IdentityRecord]:
        result = await session.execute(
            select(IdentityRecord).where(
                IdentityRecord.tenant_id == tenant_id,
                IdentityRecord.visitor_hash == visitor_hash
            )
        )
        return result.scalar_one_or_none()

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
        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantWatermark).where(TenantWatermark.tenant_id == tenant_id)
            )
            return result.scalar_one_or_none()

    async def advance_watermark(
        self,
        tenant_id: str,
        synced_at: Optional[datetime],
        record_count: int
    ) -> bool:
        await self._ensure_watermark(tenant_id)
        now = self._clock()

        async with self.session_factory() as session:
            await session.execute(
                update(TenantWatermark)
                .where(TenantWatermark.tenant_id == tenant_id)
                .values(
                    synced_count=TenantWatermark.synced_count + record_count,
                    last_batch_count=record_count,
                    sync_runs=TenantWatermark.sync_runs + 1,
                    updated_at=now
                )
            )

            advanced = False
            if synced_at is not None:
                result = await session.execute(
                    update(TenantWatermark)
                    .where(
                        TenantWatermark.tenant_id == tenant_id,
                        or_(
                            TenantWatermark.last_synced_at.is_(None),
                            TenantWatermark.last_synced_at < synced_at
                        )
                    )
                    .values(last_synced_at=synced_at)
                )
                advanced = result.rowcount > 0

            await session.commit()
            return advanced

    async def _ensure_watermark(self, tenant_id: str) -> None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TenantWatermark.id).where(TenantWatermark.tenant_id == tenant_id)
            )
            if result.scalar_one_or_none() is not None:
                return
            now = self._clock()
            session.add(TenantWatermark(
                tenant_id=tenant_id,
                last_synced_at=None,
                synced_count=0,
                last_batch_count=0,
                sync_runs=0,
                created_at=now,
                updated_at=now
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
