# backend/identity_sync/services/pixel_client.py
"""HTTP client for the pixel event endpoint."""

import logging
from datetime import datetime
from typing import Optional

import httpx

from identity_sync.services.pixel_response import PixelPayload, classify_pixel_response

logger = logging.getLogger(__name__)


class PixelEndpointError(Exception):
    """Pixel endpoint unreachable or answered with a non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class PixelIngestionClient:
    """Fetches identity events for one tenant since its watermark."""

    def __init__(self, http_client: httpx.AsyncClient, endpoint_url: str, timeout: float = 30.0):
        self.http_client = http_client
        self.endpoint_url = endpoint_url
        self.timeout = timeout

    async def fetch(self, tenant_id: str, since: Optional[datetime] = None) -> PixelPayload:
        """
        GET the pixel endpoint for a tenant.

        Args:
            tenant_id: Tenant CID
            since: Watermark; omitted for a full sync

        Returns:
            Classified payload

        Raises:
            PixelEndpointError: on network failure, timeout or non-2xx status
        """
        params = {"cid": tenant_id}
        if since is not None:
            params["since"] = since.isoformat()

        try:
            response = await self.http_client.get(
                self.endpoint_url,
                params=params,
                headers={"Accept": "application/json"},
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise PixelEndpointError(f"Pixel endpoint timeout for {tenant_id}: {e}") from e
        except httpx.HTTPError as e:
            raise PixelEndpointError(f"Pixel endpoint unreachable for {tenant_id}: {e}") from e

        if not response.is_success:
            raise PixelEndpointError(
                f"Pixel endpoint returned {response.status_code} for {tenant_id}",
                status_code=response.status_code
            )

        payload = classify_pixel_response(response.headers.get("content-type"), response.content)
        if payload.is_malformed:
            logger.warning(f"⚠️ Malformed pixel response for {tenant_id}: {payload.reason}")
        return payload
