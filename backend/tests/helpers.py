# tests/helpers.py
"""Shared fakes and builders for the test suite."""

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from identity_sync.config import Settings
from identity_sync.storage.base import RecordStore


FIXED_NOW = datetime(2024, 7, 1, 15, 0, tzinfo=timezone.utc)


def md5_of(email: str) -> str:
    return hashlib.md5(email.strip().lower().encode("utf-8")).hexdigest()


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSleep:
    """Async sleep stand-in that records requested delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def json_response(data: Any, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(data).encode("utf-8"),
        headers={"content-type": "application/json"}
    )


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def identity_payload(email: str = "jane@example.com", **overrides) -> Dict[str, Any]:
    """A resolver identity as returned by the byMd5 endpoint."""
    identity = {
        "firstName": "Jane",
        "lastName": "Doe",
        "address": "12 Main St",
        "city": "Austin",
        "state": "TX",
        "zip": "78701",
        "gender": "F",
        "birthDate": "1980-04-02",
        "emails": [
            {"email": email, "md5": md5_of(email), "qualityLevel": 1, "rankOrder": 1},
        ],
        "ips": ["203.0.113.7"],
        "data": {
            "householdIncome": "$200K to $249K",
            "homeOwnership": "Home Owner",
            "age": 44,
            "householdPersons": "3",
        },
    }
    identity.update(overrides)
    return identity


async def add_enriched_record(store: RecordStore, tenant_id: str, visitor_email: str, **fields):
    """
    Insert a record hashed from visitor_email and mark it enriched with a
    full postal address. Keyword fields override the enriched values,
    including email.
    """
    record, _, _ = await store.upsert_record(tenant_id, md5_of(visitor_email), {})
    values = {
        "enrichment_status": "completed",
        "first_name": "Jane",
        "last_name": "Doe",
        "email": visitor_email,
        "address": "12 Main St",
        "city": "Austin",
        "state": "TX",
        "zip": "78701",
    }
    values.update(fields)
    return await store.update_record(record.id, values)


def clone_response(response: httpx.Response) -> httpx.Response:
    """Fresh copy of a canned response so a handler can serve it more than once."""
    return httpx.Response(response.status_code, content=response.content, headers=response.headers)


class FakeUpstream:
    """
    One MockTransport handler standing in for every external service:
    pixel feed, resolver (token + lookups), Mailchimp and Handwrytten.
    """

    def __init__(
        self,
        feeds: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        identity: Optional[Dict[str, Any]] = None
    ):
        self.feeds = feeds or {}
        self.identity = identity if identity is not None else identity_payload()
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host

        if host == "pixel.test":
            return json_response(self.feeds.get(request.url.params["cid"], []))
        if host == "resolver.test":
            if request.url.path == "/v2/oauth":
                return json_response({"access_token": "resolver-token", "expires_in": 3600})
            return json_response([self.identity])
        if host.endswith("api.mailchimp.com") or host == "handwrytten.test":
            return json_response({"id": "ok"})
        return httpx.Response(404)

    def sent_to(self, host_suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.host.endswith(host_suffix)]


def pipeline_settings(**overrides):
    """Settings wired to FakeUpstream hosts with an in-memory store."""
    values = {
        "DATABASE_URL": "memory://",
        "ENABLE_SCHEDULER": False,
        "PIXEL_ENDPOINT_URL": "https://pixel.test/pixelEndpoint",
        "RESOLVER_ORIGIN": "https://resolver.test",
        "RESOLVER_KEY_ID": "key-id",
        "RESOLVER_API_KEY": "secret",
        "MAILCHIMP_API_KEY": "abc123-us21",
        "MAILCHIMP_LIST_ID": "list-1",
        "HANDWRYTTEN_API_KEY": "hw-key",
        "HANDWRYTTEN_BASE_URL": "https://handwrytten.test/v1",
    }
    values.update(overrides)
    return Settings(**values)
