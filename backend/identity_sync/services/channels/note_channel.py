# backend/identity_sync/services/channels/note_channel.py
"""Handwrytten handwritten-note sync."""

import hashlib
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import httpx
import pytz

from identity_sync.models import IdentityRecord, TenantAccount, utcnow
from identity_sync.services.channels.base import Channel, ChannelNotConfiguredError, ChannelPushError
from identity_sync.services.tenant_registry import NoteChannelSettings, TenantRegistry

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE_TEMPLATE = (
    "Hi {firstName},\n\n"
    "Thank you for your interest in our services! We appreciate you visiting our "
    "website and hope to connect with you soon."
)
SIGNATURE_MARKERS = ("–", "Sincerely", "Best regards")
RETURN_ADDRESS_REQUIRED = ("name", "address1", "city", "state", "zip")


def render_message(template: str, record: IdentityRecord, sender_name: str) -> str:
    """Fill placeholders and append a signature unless the template already signs off."""
    first = record.first_name or ""
    last = record.last_name or ""
    message = (
        template
        .replace("{firstName}", first or "there")
        .replace("{lastName}", last)
        .replace("{fullName}", f"{first} {last}".strip() or "there")
        .replace("{city}", record.city or "")
        .replace("{state}", record.state or "")
    )
    if message and not any(marker in message for marker in SIGNATURE_MARKERS):
        message += f"\n\n– {sender_name}"
    return message


def build_return_address(config: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Return address payload, or None when incomplete."""
    if not config:
        return None
    if not all(config.get(key) for key in RETURN_ADDRESS_REQUIRED):
        return None
    address = {key: config[key] for key in RETURN_ADDRESS_REQUIRED}
    if config.get("address2"):
        address["address2"] = config["address2"]
    address["country"] = config.get("country") or "US"
    return address


def idempotency_key(tenant_id: str, record_id: int, day: str) -> str:
    return hashlib.md5(f"{tenant_id}-{record_id}-{day}".encode("utf-8")).hexdigest()


class HandwryttenChannel(Channel):
    """Sends one handwritten card per due record."""

    name = "note"
    synced_at_field = "note_synced_at"

    batch_size = 5
    delay_between_items = 0.5
    delay_between_batches = 5.0

    required_fields = ("first_name", "last_name", "address", "city", "state", "zip")

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        base_url: str = "https://api.handwrytten.com/v1",
        card_id: str = "1",
        default_sender: str = "Robbie at Sphere DSG",
        timezone: str = "America/Chicago",
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.http_client = http_client
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.card_id = card_id
        self.default_sender = default_sender
        self.timezone = pytz.timezone(timezone)
        self.timeout = timeout
        self._clock = clock

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def tenant_enabled(self, tenant: TenantAccount) -> bool:
        return TenantRegistry.note_channel_enabled(tenant)

    def has_required_fields(self, record: IdentityRecord) -> bool:
        if record.enrichment_status != "completed":
            return False
        return super().has_required_fields(record)

    def local_day(self) -> str:
        return self._clock().astimezone(self.timezone).date().isoformat()

    def build_payload(self, tenant: TenantAccount, record: IdentityRecord) -> Dict[str, Any]:
        note_settings: NoteChannelSettings = TenantRegistry.note_settings(tenant)
        sender = note_settings.sender_name or self.default_sender
        template = note_settings.message_template or DEFAULT_MESSAGE_TEMPLATE

        payload: Dict[str, Any] = {
            "recipient": {
                "name": f"{record.first_name} {record.last_name}".strip(),
                "address1": record.address,
                "city": record.city,
                "state": record.state,
                "zip": record.zip,
                "country": "US",
            },
            "card_id": self.card_id,
            "message": render_message(template, record, sender),
        }
        if note_settings.handwriting_id:
            payload["handwriting_id"] = note_settings.handwriting_id

        return_address = build_return_address(note_settings.return_address)
        if return_address:
            payload["return_address"] = return_address
        return payload

    async def push(self, tenant: TenantAccount, record: IdentityRecord) -> Dict[str, Any]:
        if not self.is_configured():
            raise ChannelNotConfiguredError("Handwrytten API key not configured")

        payload = self.build_payload(tenant, record)
        key = idempotency_key(tenant.tenant_id, record.id, self.local_day())

        try:
            response = await self.http_client.post(
                f"{self.base_url}/orders/singleStepOrder",
                json=payload,
                headers={
                    "X-Api-Key": self.api_key,
                    "Content-Type": "application/json",
                    "Idempotency-Key": key,
                },
                timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise ChannelPushError(f"Handwrytten request failed: {e}") from e

        if not response.is_success:
            raise ChannelPushError(
                f"Handwrytten returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code
            )

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        logger.info(f"✉️  Note sent for record {record.id} (order {data.get('order_id') or data.get('id')})")
        return data
