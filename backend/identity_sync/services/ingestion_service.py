# backend/identity_sync/services/ingestion_service.py
"""
Pixel Ingestion Service

Delta-syncs identity events from the pixel endpoint for every active tenant:
1. Read the tenant watermark
2. Fetch events since the watermark (full sync when none)
3. Upsert events by (tenant, hash) in feed order
4. Advance the watermark to the max event timestamp if it moved forward

A tenant failure is logged and counted; it never stops the other tenants.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from identity_sync.services.pixel_client import PixelIngestionClient
from identity_sync.services.tenant_registry import TenantRegistry
from identity_sync.storage.base import RecordStore

logger = logging.getLogger(__name__)

HASH_PATTERN = re.compile(r"^[0-9a-f]{32}$")

# Pixel feeds have used several spellings over time
HASH_KEYS = ("hash", "md5")
TIMESTAMP_KEYS = ("timestamp", "ts")
VAR1_KEYS = ("var", "var1")
SESSION_KEYS = ("session", "session_id", "gtmcb")

# Epoch values above this are milliseconds
EPOCH_MS_THRESHOLD = 1e12


def _first(event: Dict[str, Any], keys) -> Any:
    for key in keys:
        value = event.get(key)
        if value not in (None, ""):
            return value
    return None


def normalize_hash(value: Any) -> Optional[str]:
    """Lowercase 32-char hex MD5, or None if the value is not one."""
    if not isinstance(value, str):
        return None
    candidate = value.strip().lower()
    return candidate if HASH_PATTERN.match(candidate) else None


def parse_event_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an event timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings and epoch seconds or milliseconds
    (as numbers or numeric strings). Returns None when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return None
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > EPOCH_MS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None

    return None


def event_to_fields(event: Dict[str, Any]) -> Dict[str, Any]:
    """Map a raw pixel event onto capture columns of an identity record."""
    fields: Dict[str, Any] = {}

    url = event.get("url")
    if url:
        fields["url"] = str(url)
        fields["last_page_viewed"] = str(url)

    session = _first(event, SESSION_KEYS)
    if session is not None:
        fields["session_id"] = str(session)

    var1 = _first(event, VAR1_KEYS)
    if var1 is not None:
        fields["var1"] = str(var1)

    var2 = event.get("var2")
    if var2 not in (None, ""):
        fields["var2"] = str(var2)

    event_ts = parse_event_timestamp(_first(event, TIMESTAMP_KEYS))
    if event_ts is not None:
        fields["event_ts"] = event_ts

    return fields


@dataclass
class TenantIngestionResult:
    tenant_id: str
    fetched: int = 0
    created_ids: List[int] = field(default_factory=list)
    updated_ids: List[int] = field(default_factory=list)
    invalid: int = 0
    watermark: Optional[datetime] = None
    watermark_advanced: bool = False


@dataclass
class IngestionStats:
    tenants_processed: int = 0
    tenant_errors: int = 0
    fetched: int = 0
    invalid: int = 0
    created_ids: List[int] = field(default_factory=list)
    updated_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def synced(self) -> int:
        return len(self.created_ids) + len(self.updated_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenants_processed": self.tenants_processed,
            "tenant_errors": self.tenant_errors,
            "fetched": self.fetched,
            "invalid": self.invalid,
            "created": len(self.created_ids),
            "updated": len(self.updated_ids),
            "errors": self.errors,
        }


class PixelIngestionService:
    """Per-tenant delta ingestion from the pixel endpoint."""

    def __init__(self, store: RecordStore, client: PixelIngestionClient, tenants: TenantRegistry):
        self.store = store
        self.client = client
        self.tenants = tenants

    async def sync_all(self) -> IngestionStats:
        """Ingest every active tenant; failures are isolated per tenant."""
        stats = IngestionStats()
        active = await self.tenants.active_tenants()
        logger.info(f"🔄 Pixel sync starting for {len(active)} active tenants")

        for tenant in active:
            try:
                result = await self.sync_tenant(tenant.tenant_id)
            except Exception as e:
                stats.tenant_errors += 1
                stats.errors.append({"tenant_id": tenant.tenant_id, "error": str(e)[:500]})
                logger.error(f"❌ Pixel sync failed for tenant {tenant.tenant_id}: {e}")
                continue

            stats.tenants_processed += 1
            stats.fetched += result.fetched
            stats.invalid += result.invalid
            stats.created_ids.extend(result.created_ids)
            stats.updated_ids.extend(result.updated_ids)

        logger.info(
            f"✅ Pixel sync complete: {len(stats.created_ids)} new, {len(stats.updated_ids)} updated, "
            f"{stats.invalid} invalid, {stats.tenant_errors} tenant errors"
        )
        return stats

    async def sync_tenant(self, tenant_id: str) -> TenantIngestionResult:
        """
        Fetch and upsert one tenant's events since its watermark.

        Raises:
            PixelEndpointError: when the endpoint cannot be read; the watermark
                is left untouched so the next run re-fetches
        """
        result = TenantIngestionResult(tenant_id=tenant_id)
        watermark = await self.store.get_watermark(tenant_id)
        since = watermark.last_synced_at if watermark else None

        if since is None:
            logger.info(f"📥 Full sync for tenant {tenant_id} (no watermark)")
        else:
            logger.info(f"📥 Delta sync for tenant {tenant_id} since {since.isoformat()}")

        payload = await self.client.fetch(tenant_id, since)
        result.fetched = len(payload.events)

        max_ts: Optional[datetime] = None
        for event in payload.events:
            event_ts = parse_event_timestamp(_first(event, TIMESTAMP_KEYS))
            if event_ts is not None and (max_ts is None or event_ts > max_ts):
                max_ts = event_ts

            visitor_hash = normalize_hash(_first(event, HASH_KEYS))
            if visitor_hash is None:
                result.invalid += 1
                continue

            record, created, changed = await self.store.upsert_record(
                tenant_id, visitor_hash, event_to_fields(event)
            )
            if created:
                result.created_ids.append(record.id)
            elif changed and record.id not in result.created_ids and record.id not in result.updated_ids:
                result.updated_ids.append(record.id)

        if result.invalid:
            logger.warning(f"⚠️ Skipped {result.invalid} events without a valid hash for tenant {tenant_id}")

        result.watermark_advanced = await self.store.advance_watermark(
            tenant_id,
            max_ts,
            len(result.created_ids) + len(result.updated_ids)
        )
        result.watermark = max_ts

        logger.info(
            f"✅ Tenant {tenant_id}: {result.fetched} events, {len(result.created_ids)} new, "
            f"{len(result.updated_ids)} updated"
            + (f", watermark → {max_ts.isoformat()}" if result.watermark_advanced else "")
        )
        return result
