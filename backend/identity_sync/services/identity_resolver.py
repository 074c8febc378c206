# backend/identity_sync/services/identity_resolver.py
"""
Identity resolver client (Audience Acuity).

Looks up a visitor hash against the resolver's identity endpoints in order;
a 404 moves on to the next endpoint, any other error status is raised.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from identity_sync.services.credentials import ResolverAuthenticator

logger = logging.getLogger(__name__)

LOOKUP_ENDPOINTS = (
    ("/v2/identities/byMd5", "md5"),
    ("/v2/identities/byHash", "hash"),
    ("/v2/identities/byEmail", "email"),
)


class ResolverHTTPError(Exception):
    """Non-2xx, non-404 answer from the resolver."""

    def __init__(self, status_code: int, text: str = ""):
        super().__init__(f"HTTP {status_code}: {text[:200]}")
        self.status_code = status_code
        self.text = text


def extract_identity(data: Any) -> Optional[Dict[str, Any]]:
    """
    Pull the identity object out of a resolver response.

    The resolver has answered with a bare list, an {"identities": [...]}
    envelope and a bare identity object over time.
    """
    if isinstance(data, list):
        first = data[0] if data else None
        return first if isinstance(first, dict) and first else None
    if isinstance(data, dict):
        identities = data.get("identities")
        if isinstance(identities, list):
            first = identities[0] if identities else None
            return first if isinstance(first, dict) and first else None
        return data or None
    return None


class IdentityResolverClient:
    """Hash → identity lookups."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        authenticator: ResolverAuthenticator,
        origin: str,
        template_id: int,
        timeout: float = 25.0
    ):
        self.http_client = http_client
        self.authenticator = authenticator
        self.origin = origin.rstrip("/")
        self.template_id = template_id
        self.timeout = timeout

    async def lookup(self, visitor_hash: str) -> Optional[Dict[str, Any]]:
        """
        Resolve a visitor hash.

        Returns:
            Identity dict, or None when every endpoint answered 404 or an empty body

        Raises:
            ResolverHTTPError: for any non-404 error status
            httpx.TimeoutException / httpx.NetworkError: on transport failures
        """
        auth_header = await self.authenticator.get_auth_header()
        prefix = visitor_hash[:8]

        for path, param in LOOKUP_ENDPOINTS:
            response = await self.http_client.get(
                f"{self.origin}{path}",
                params={param: visitor_hash, "template": self.template_id},
                headers={
                    "Authorization": auth_header,
                    "Accept": "application/json",
                },
                timeout=self.timeout
            )

            if response.status_code == 404:
                logger.debug(f"404 from {path} for {prefix}... - trying next endpoint")
                continue

            if not response.is_success:
                raise ResolverHTTPError(response.status_code, response.text)

            if not response.content.strip():
                continue

            try:
                identity = extract_identity(response.json())
            except ValueError:
                logger.warning(f"⚠️ Unparseable resolver response from {path} for {prefix}...")
                continue

            if identity:
                logger.info(f"✅ Resolver match for {prefix}... via {path}")
                return identity

        logger.info(f"No resolver data for {prefix}...")
        return None
