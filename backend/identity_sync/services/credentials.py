# backend/identity_sync/services/credentials.py
"""
Resolver authentication.

Two ways to authenticate against the identity resolver:
- TokenExchangeStrategy: trade key id + secret for a short-lived access token
- SignedTokenStrategy: build a self-signed bearer value from a timestamp and the secret

ResolverAuthenticator prefers the token exchange and falls back to signed
tokens once the exchange has failed, remembering the choice until reset().
"""

import asyncio
import hashlib
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx

from identity_sync.models import utcnow

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_BUFFER = timedelta(minutes=5)
PREWARM_REFRESH_BUFFER = timedelta(minutes=10)
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600

BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class ResolverNotConfiguredError(Exception):
    """Resolver key id / secret missing."""


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("base36 encoding needs a non-negative integer")
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


@dataclass
class CachedToken:
    access_token: str
    expires_at: datetime


class CredentialCache:
    """Expiry-aware holder for one access token."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._token: Optional[CachedToken] = None

    def get(self, min_ttl: timedelta = DEFAULT_REFRESH_BUFFER) -> Optional[str]:
        """Return the cached token if it stays valid for at least min_ttl."""
        if self._token is None:
            return None
        if self._token.expires_at <= self._clock() + min_ttl:
            return None
        return self._token.access_token

    def put(self, access_token: str, expires_in: float) -> None:
        self._token = CachedToken(
            access_token=access_token,
            expires_at=self._clock() + timedelta(seconds=expires_in)
        )

    def clear(self) -> None:
        self._token = None

    def remaining(self) -> Optional[timedelta]:
        if self._token is None:
            return None
        return self._token.expires_at - self._clock()


class AuthStrategy(ABC):
    """One way of producing an Authorization header for the resolver."""

    name: str = "base"

    @abstractmethod
    async def authorize(self, min_ttl: timedelta = DEFAULT_REFRESH_BUFFER) -> Optional[str]:
        """Return an Authorization header value, or None if this strategy cannot."""
        pass


class TokenExchangeStrategy(AuthStrategy):
    """GET {origin}/v2/oauth → access_token + expires_in, cached until near expiry."""

    name = "token_exchange"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        origin: str,
        key_id: Optional[str],
        api_key: Optional[str],
        cache: Optional[CredentialCache] = None,
        timeout: float = 15.0,
        retries: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.http_client = http_client
        self.origin = origin.rstrip("/")
        self.key_id = key_id
        self.api_key = api_key
        self.cache = cache or CredentialCache()
        self.timeout = timeout
        self.retries = retries
        self.retry_delay = retry_delay
        self._sleep = sleep

    async def authorize(self, min_ttl: timedelta = DEFAULT_REFRESH_BUFFER) -> Optional[str]:
        token = self.cache.get(min_ttl)
        if token is None and await self.refresh():
            token = self.cache.get(timedelta(0))
        return f"Bearer {token}" if token else None

    async def refresh(self, retries: Optional[int] = None) -> bool:
        """Exchange credentials for a new token. Returns False when every attempt failed."""
        if not self.key_id or not self.api_key:
            logger.warning("Resolver credentials missing - cannot exchange for a token")
            return False

        attempts = retries or self.retries
        for attempt in range(1, attempts + 1):
            try:
                logger.info(f"🔑 Resolver token exchange attempt {attempt}/{attempts}")
                response = await self.http_client.get(
                    f"{self.origin}/v2/oauth",
                    # The provider expects the API key as client_id and the key id as client_secret
                    params={"client_id": self.api_key, "client_secret": self.key_id},
                    headers={"Accept": "application/json"},
                    timeout=self.timeout
                )
                if response.is_success:
                    data = response.json()
                    access_token = data.get("access_token")
                    if access_token:
                        expires_in = data.get("expires_in") or DEFAULT_TOKEN_LIFETIME_SECONDS
                        self.cache.put(access_token, expires_in)
                        logger.info(f"✅ Resolver token refreshed (expires in {round(expires_in / 60)} minutes)")
                        return True
                    logger.warning("Resolver token exchange returned no access_token")
                else:
                    logger.warning(f"Resolver token exchange failed: {response.status_code}")
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Resolver token exchange attempt {attempt} failed: {e}")

            if attempt < attempts:
                await self._sleep(self.retry_delay)

        logger.error(f"❌ Resolver token exchange failed after {attempts} attempts")
        return False


class SignedTokenStrategy(AuthStrategy):
    """Bearer {key_id}{ts36}{md5(ts36 + secret)} where ts36 is epoch millis in base 36."""

    name = "signed_token"

    def __init__(
        self,
        key_id: Optional[str],
        api_key: Optional[str],
        millis: Callable[[], int] = lambda: int(time.time() * 1000)
    ):
        self.key_id = key_id
        self.api_key = api_key
        self._millis = millis

    async def authorize(self, min_ttl: timedelta = DEFAULT_REFRESH_BUFFER) -> Optional[str]:
        if not self.key_id or not self.api_key:
            return None
        stamp = to_base36(self._millis())
        signature = hashlib.md5(f"{stamp}{self.api_key}".encode("utf-8")).hexdigest()
        return f"Bearer {self.key_id}{stamp}{signature}"


class ResolverAuthenticator:
    """Selects and remembers the auth strategy that works."""

    def __init__(self, exchange: TokenExchangeStrategy, signed: SignedTokenStrategy):
        self.exchange = exchange
        self.signed = signed
        self.method: Optional[str] = None

    async def get_auth_header(self) -> str:
        """
        Raises:
            ResolverNotConfiguredError: when neither strategy can produce a header
        """
        if self.method != self.signed.name:
            header = await self.exchange.authorize()
            if header:
                self.method = self.exchange.name
                return header
            logger.warning("Token exchange unavailable, falling back to signed tokens")
            self.method = self.signed.name

        header = await self.signed.authorize()
        if header is None:
            raise ResolverNotConfiguredError("Missing resolver credentials")
        return header

    async def ensure_fresh(self, min_ttl: timedelta = PREWARM_REFRESH_BUFFER) -> bool:
        """Pre-warm before a sync run: make sure a token outlives min_ttl."""
        remaining = self.exchange.cache.remaining()
        if self.exchange.cache.get(min_ttl) is not None:
            logger.info(f"Resolver token valid for {int(remaining.total_seconds() // 60)} more minutes")
            self.method = self.exchange.name
            return True

        if await self.exchange.refresh(retries=5):
            self.method = self.exchange.name
            return True

        logger.warning("Resolver token pre-warm failed - sync will use signed tokens")
        return False

    def reset(self) -> None:
        self.exchange.cache.clear()
        self.method = None
        logger.info("Resolver auth cache cleared")
