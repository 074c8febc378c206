# tests/services/test_identity_resolver.py
"""
Tests for the identity resolver client and retry classification

Run with: pytest backend/tests/services/test_identity_resolver.py -v
"""

from unittest.mock import AsyncMock, Mock

import httpx
import pytest

from identity_sync.services.credentials import ResolverNotConfiguredError
from identity_sync.services.identity_resolver import (
    IdentityResolverClient,
    ResolverHTTPError,
    extract_identity,
)
from identity_sync.services.retry import (
    ErrorKind,
    RetryExhausted,
    RetryPolicy,
    call_with_retry,
    classify_error,
)

from tests.helpers import identity_payload, json_response, md5_of, mock_client


HASH = md5_of("jane@example.com")


@pytest.fixture
def authenticator():
    auth = Mock()
    auth.get_auth_header = AsyncMock(return_value="Bearer test-token")
    return auth


def build_client(handler, authenticator):
    return IdentityResolverClient(
        mock_client(handler),
        authenticator,
        origin="https://resolver.test",
        template_id=210723778,
        timeout=5
    )


# ============================================================================
# TEST: Response shapes
# ============================================================================

class TestExtractIdentity:

    def test_list_takes_first(self):
        assert extract_identity([{"firstName": "A"}, {"firstName": "B"}]) == {"firstName": "A"}

    def test_identities_envelope(self):
        assert extract_identity({"identities": [{"firstName": "A"}]}) == {"firstName": "A"}

    def test_bare_object(self):
        assert extract_identity({"firstName": "A"}) == {"firstName": "A"}

    @pytest.mark.parametrize("data", [[], {}, {"identities": []}, None, "text", [None]])
    def test_empty_shapes(self, data):
        assert extract_identity(data) is None


# ============================================================================
# TEST: Lookup
# ============================================================================

class TestLookup:

    @pytest.mark.asyncio
    async def test_first_endpoint_hit(self, authenticator):
        requests = []

        def handler(request):
            requests.append(request)
            return json_response([identity_payload()])

        identity = await build_client(handler, authenticator).lookup(HASH)

        assert identity["firstName"] == "Jane"
        assert len(requests) == 1
        assert requests[0].url.path == "/v2/identities/byMd5"
        assert requests[0].url.params["md5"] == HASH
        assert requests[0].url.params["template"] == "210723778"
        assert requests[0].headers["Authorization"] == "Bearer test-token"

    @pytest.mark.asyncio
    async def test_404_moves_to_next_endpoint(self, authenticator):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith("byHash"):
                return json_response({"identities": [identity_payload()]})
            return httpx.Response(404)

        identity = await build_client(handler, authenticator).lookup(HASH)

        assert identity["lastName"] == "Doe"
        assert paths == ["/v2/identities/byMd5", "/v2/identities/byHash"]

    @pytest.mark.asyncio
    async def test_all_404_is_no_data(self, authenticator):
        identity = await build_client(lambda r: httpx.Response(404), authenticator).lookup(HASH)
        assert identity is None

    @pytest.mark.asyncio
    async def test_empty_bodies_are_no_data(self, authenticator):
        identity = await build_client(lambda r: httpx.Response(200, content=b""), authenticator).lookup(HASH)
        assert identity is None

    @pytest.mark.asyncio
    async def test_error_status_raised(self, authenticator):
        handler = lambda r: httpx.Response(503, text="upstream unavailable")

        with pytest.raises(ResolverHTTPError) as exc_info:
            await build_client(handler, authenticator).lookup(HASH)

        assert exc_info.value.status_code == 503


# ============================================================================
# TEST: Error classification & retry loop
# ============================================================================

class TestErrorClassification:

    @pytest.mark.parametrize("exc", [
        ResolverHTTPError(500),
        ResolverHTTPError(503),
        ResolverHTTPError(429),
        httpx.ReadTimeout("timed out"),
        httpx.ConnectError("getaddrinfo ENOTFOUND"),
        httpx.RemoteProtocolError("Server disconnected without sending a response."),
        Exception("read ECONNRESET"),
    ])
    def test_transient(self, exc):
        assert classify_error(exc) == ErrorKind.TRANSIENT

    @pytest.mark.parametrize("exc", [
        ResolverHTTPError(401),
        ResolverHTTPError(403),
        ResolverHTTPError(404),
        Exception("Key not active"),
        Exception("Invalid API key supplied"),
        ResolverNotConfiguredError("Missing resolver credentials"),
    ])
    def test_permanent(self, exc):
        assert classify_error(exc) == ErrorKind.PERMANENT

    def test_unknown(self):
        assert classify_error(ValueError("something odd")) == ErrorKind.UNKNOWN


class TestRetryLoop:

    def test_delay_schedule(self):
        policy = RetryPolicy(max_retries=3, base_delay=1.0, multiplier=2.0)
        assert [policy.delay_for(n) for n in range(3)] == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_recovers_after_transient_errors(self, sleep):
        func = AsyncMock(side_effect=[ResolverHTTPError(502), ResolverHTTPError(429), {"ok": True}])

        result, retries = await call_with_retry(func, RetryPolicy(), sleep=sleep)

        assert result == {"ok": True}
        assert retries == 2
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_exhausts_retries(self, sleep):
        func = AsyncMock(side_effect=ResolverHTTPError(500, "down"))

        with pytest.raises(RetryExhausted) as exc_info:
            await call_with_retry(func, RetryPolicy(max_retries=3), sleep=sleep)

        assert exc_info.value.retries == 3
        assert func.await_count == 4
        assert sleep.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_permanent_error_not_retried(self, sleep):
        func = AsyncMock(side_effect=ResolverHTTPError(401, "unauthorized"))

        with pytest.raises(RetryExhausted) as exc_info:
            await call_with_retry(func, RetryPolicy(), sleep=sleep)

        assert exc_info.value.retries == 0
        assert func.await_count == 1
        assert sleep.delays == []
