# backend/identity_sync/services/tenant_registry.py
"""
Tenant registry: which CIDs are eligible for each pipeline stage.

A tenant whose status is anything other than 'active' is skipped entirely
by ingestion, enrichment and both channel engines.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from identity_sync.models import TenantAccount
from identity_sync.storage.base import RecordStore

logger = logging.getLogger(__name__)

NOTE_ACCOUNT_LEVEL = "handwritten_connect"


@dataclass
class NoteChannelSettings:
    """Per-tenant note settings stored under settings['note']."""
    enabled: bool = True
    sender_name: Optional[str] = None
    message_template: Optional[str] = None
    handwriting_id: Optional[str] = None
    return_address: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]]) -> "NoteChannelSettings":
        note = (settings or {}).get("note") or {}
        return cls(
            enabled=note.get("enabled", True) is not False,
            sender_name=note.get("sender_name") or None,
            message_template=note.get("message_template") or None,
            handwriting_id=note.get("handwriting_id") or None,
            return_address=note.get("return_address") or {}
        )


class TenantRegistry:
    """Read-side view over tenant accounts."""

    def __init__(self, store: RecordStore):
        self.store = store

    async def active_tenants(self) -> List[TenantAccount]:
        tenants = await self.store.list_tenants()
        active = []
        for tenant in tenants:
            if tenant.is_active:
                active.append(tenant)
            else:
                logger.info(f"⏭️  Skipping tenant {tenant.tenant_id}: status is {tenant.status}")
        return active

    async def is_active(self, tenant_id: str) -> bool:
        tenant = await self.store.get_tenant(tenant_id)
        return tenant is not None and tenant.is_active

    async def get(self, tenant_id: str) -> Optional[TenantAccount]:
        return await self.store.get_tenant(tenant_id)

    @staticmethod
    def note_settings(tenant: TenantAccount) -> NoteChannelSettings:
        return NoteChannelSettings.from_settings(tenant.settings)

    @staticmethod
    def note_channel_enabled(tenant: TenantAccount) -> bool:
        """Handwritten notes are a paid tier and can also be switched off per tenant."""
        if tenant.account_level != NOTE_ACCOUNT_LEVEL:
            return False
        return TenantRegistry.note_settings(tenant).enabled
