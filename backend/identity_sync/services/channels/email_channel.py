# backend/identity_sync/services/channels/email_channel.py
"""Mailchimp audience sync."""

import hashlib
import logging
from typing import Any, Dict, Optional

import httpx

from identity_sync.models import IdentityRecord, TenantAccount
from identity_sync.services.channels.base import Channel, ChannelNotConfiguredError, ChannelPushError

logger = logging.getLogger(__name__)


def subscriber_hash(email: str) -> str:
    return hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()


def mailchimp_base_url(api_key: str) -> str:
    """API keys end in the datacenter, e.g. 'abc123-us21'."""
    datacenter = api_key.rsplit("-", 1)[1] if "-" in api_key else "us1"
    return f"https://{datacenter}.api.mailchimp.com/3.0"


class MailchimpChannel(Channel):
    """Upserts contacts into one Mailchimp list, tagged with their tenant id."""

    name = "email"
    synced_at_field = "email_synced_at"

    batch_size = 100
    delay_between_items = 0.0
    delay_between_batches = 0.1

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        list_id: Optional[str],
        timeout: float = 30.0
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.list_id = list_id
        self.timeout = timeout
        self.base_url = mailchimp_base_url(api_key) if api_key else None

    def is_configured(self) -> bool:
        return bool(self.api_key and self.list_id)

    def has_required_fields(self, record: IdentityRecord) -> bool:
        email = (record.email or "").strip()
        if not email or email == "N/A":
            return False
        return bool((record.first_name or "").strip() or (record.last_name or "").strip())

    def build_member(self, tenant: TenantAccount, record: IdentityRecord) -> Dict[str, Any]:
        return {
            "email_address": record.email.strip(),
            "status_if_new": "subscribed",
            "merge_fields": {
                "FNAME": record.first_name or "",
                "LNAME": record.last_name or "",
            },
            "tags": [tenant.tenant_id],
        }

    async def push(self, tenant: TenantAccount, record: IdentityRecord) -> Dict[str, Any]:
        if not self.is_configured():
            raise ChannelNotConfiguredError("Mailchimp API key or list ID not configured")

        url = f"{self.base_url}/lists/{self.list_id}/members/{subscriber_hash(record.email)}"
        try:
            response = await self.http_client.put(
                url,
                json=self.build_member(tenant, record),
                headers={
                    "Authorization": f"apikey {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise ChannelPushError(f"Mailchimp request failed: {e}") from e

        if not response.is_success:
            raise ChannelPushError(
                f"Mailchimp returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        logger.debug(f"Mailchimp synced record {record.id} with tag {tenant.tenant_id}")
        try:
            return response.json()
        except ValueError:
            return {}
