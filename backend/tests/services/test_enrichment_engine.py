# tests/services/test_enrichment_engine.py
"""
Tests for the enrichment engine

Coverage:
- Candidate filtering and tenant gating
- Transient retry with growing backoff
- Permanent errors fail without retry
- Bounded concurrency and sub-batch pauses
- Outcome persistence and error cap

Run with: pytest backend/tests/services/test_enrichment_engine.py -v
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from identity_sync.services.enrichment_engine import (
    EnrichmentEngine,
    has_identity_fields,
    needs_enrichment,
)
from identity_sync.services.identity_resolver import ResolverHTTPError
from identity_sync.services.retry import RetryPolicy

from tests.helpers import add_enriched_record, identity_payload, md5_of


class FakeResolver:
    """Scripted resolver that also measures how many lookups overlap."""

    def __init__(self, script=None, default=None):
        self.script = {h: list(outcomes) for h, outcomes in (script or {}).items()}
        self.default = default if default is not None else identity_payload()
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def lookup(self, visitor_hash):
        self.calls.append(visitor_hash)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            for _ in range(3):
                await asyncio.sleep(0)
            outcomes = self.script.get(visitor_hash)
            outcome = outcomes.pop(0) if outcomes else self.default
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.in_flight -= 1


@pytest.fixture
def authenticator():
    auth = Mock()
    auth.ensure_fresh = AsyncMock(return_value=True)
    return auth


def build_engine(store, tenants, resolver, sleep, authenticator=None, **kwargs):
    return EnrichmentEngine(
        store,
        resolver,
        tenants,
        authenticator=authenticator,
        policy=RetryPolicy(max_retries=3, base_delay=1.0, multiplier=2.0),
        sleep=sleep,
        **kwargs
    )


async def add_pending(store, tenant_id, count):
    ids = []
    for i in range(count):
        record, _, _ = await store.upsert_record(tenant_id, md5_of(f"visitor{i}@example.com"), {})
        ids.append(record.id)
    return ids


# ============================================================================
# TEST: Candidate rules
# ============================================================================

class TestCandidates:

    @pytest.mark.asyncio
    async def test_pending_and_failed_are_candidates(self, seeded_store):
        record, _, _ = await seeded_store.upsert_record("cid-active", md5_of("a@example.com"), {})
        assert needs_enrichment(record)

        await seeded_store.update_record(record.id, {"enrichment_status": "failed"})
        assert needs_enrichment(record)

    @pytest.mark.asyncio
    async def test_completed_with_placeholder_email_is_candidate(self, seeded_store):
        record = await add_enriched_record(seeded_store, "cid-active", "a@example.com", email="N/A")

        assert record.visitor_hash == md5_of("a@example.com")
        assert record.email == "N/A"
        assert not has_identity_fields(record)
        assert needs_enrichment(record)

    @pytest.mark.asyncio
    async def test_completed_record_is_not_candidate(self, seeded_store):
        record = await add_enriched_record(seeded_store, "cid-active", "a@example.com")
        assert not needs_enrichment(record)

    @pytest.mark.asyncio
    async def test_skips_without_calls_or_prewarm(self, seeded_store, tenants, sleep, authenticator):
        record = await add_enriched_record(seeded_store, "cid-active", "a@example.com")
        resolver = FakeResolver()
        engine = build_engine(seeded_store, tenants, resolver, sleep, authenticator)

        stats = await engine.enrich([record.id])

        assert stats.skipped == 1
        assert stats.enriched == 0
        assert resolver.calls == []
        authenticator.ensure_fresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_suspended_tenant_records_skipped(self, seeded_store, tenants, sleep):
        ids = await add_pending(seeded_store, "cid-suspended", 2)
        resolver = FakeResolver()
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        stats = await engine.enrich(ids)

        assert stats.skipped == 2
        assert resolver.calls == []
        records = await seeded_store.get_records(ids)
        assert all(r.enrichment_status == "pending" for r in records)


# ============================================================================
# TEST: Outcomes
# ============================================================================

class TestOutcomes:

    @pytest.mark.asyncio
    async def test_success_writes_flattened_fields(self, seeded_store, tenants, sleep, authenticator):
        record, _, _ = await seeded_store.upsert_record("cid-active", md5_of("jane@example.com"), {})
        engine = build_engine(seeded_store, tenants, FakeResolver(), sleep, authenticator)

        stats = await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert stats.enriched == 1
        assert record.enrichment_status == "completed"
        assert record.first_name == "Jane"
        assert record.email == "jane@example.com"
        assert record.enrichment_error is None
        assert record.retry_count == 0
        assert record.enrichment_data["lastName"] == "Doe"
        authenticator.ensure_fresh.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transient_errors_retried_with_backoff(self, seeded_store, tenants, sleep):
        h = md5_of("jane@example.com")
        record, _, _ = await seeded_store.upsert_record("cid-active", h, {})
        resolver = FakeResolver(script={h: [ResolverHTTPError(503), ResolverHTTPError(503)]})
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        stats = await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert len(resolver.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert sleep.delays[1] > sleep.delays[0]
        assert record.enrichment_status == "completed"
        assert record.retry_count == 2
        assert stats.retried == 1

    @pytest.mark.asyncio
    async def test_permanent_error_fails_immediately(self, seeded_store, tenants, sleep):
        h = md5_of("jane@example.com")
        record, _, _ = await seeded_store.upsert_record("cid-active", h, {})
        resolver = FakeResolver(script={h: [ResolverHTTPError(401, "unauthorized")]})
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        stats = await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert len(resolver.calls) == 1
        assert sleep.delays == []
        assert record.enrichment_status == "failed"
        assert "401" in record.enrichment_error
        assert record.retry_count == 0
        assert stats.failed == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, seeded_store, tenants, sleep):
        h = md5_of("jane@example.com")
        record, _, _ = await seeded_store.upsert_record("cid-active", h, {})
        resolver = FakeResolver(script={h: [ResolverHTTPError(500, "down")] * 4})
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        stats = await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert len(resolver.calls) == 4
        assert record.enrichment_status == "failed"
        assert record.retry_count == 3
        assert stats.errors[0]["retry_count"] == 3
        assert stats.errors[0]["hash_prefix"] == h[:8]

    @pytest.mark.asyncio
    async def test_no_data_marks_failed(self, seeded_store, tenants, sleep):
        h = md5_of("jane@example.com")
        record, _, _ = await seeded_store.upsert_record("cid-active", h, {})
        resolver = FakeResolver(script={h: [None]})
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        stats = await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert stats.failed == 1
        assert record.enrichment_status == "failed"
        assert record.enrichment_error == "No enrichment data available"

    @pytest.mark.asyncio
    async def test_failed_record_retried_on_next_run(self, seeded_store, tenants, sleep):
        h = md5_of("jane@example.com")
        record, _, _ = await seeded_store.upsert_record("cid-active", h, {})
        resolver = FakeResolver(script={h: [None]})
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        await engine.enrich([record.id])
        await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert record.enrichment_status == "completed"
        assert record.enrichment_error is None

    @pytest.mark.asyncio
    async def test_placeholder_record_re_enriched(self, seeded_store, tenants, sleep):
        record = await add_enriched_record(seeded_store, "cid-active", "jane@example.com", email="N/A")
        engine = build_engine(seeded_store, tenants, FakeResolver(), sleep)

        stats = await engine.enrich([record.id])
        record = await seeded_store.get_record(record.id)

        assert stats.enriched == 1
        assert record.email == "jane@example.com"


# ============================================================================
# TEST: Batching
# ============================================================================

class TestBatching:

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, seeded_store, tenants, sleep):
        ids = await add_pending(seeded_store, "cid-active", 12)
        resolver = FakeResolver()
        engine = build_engine(seeded_store, tenants, resolver, sleep, concurrency=3, batch_size=10)

        stats = await engine.enrich(ids)

        assert stats.enriched == 12
        assert len(resolver.calls) == 12
        assert 1 < resolver.max_in_flight <= 3
        # One pause between the two sub-batches, none after the last
        assert sleep.delays == [0.2]

    @pytest.mark.asyncio
    async def test_error_list_capped(self, seeded_store, tenants, sleep):
        ids = await add_pending(seeded_store, "cid-active", 15)
        resolver = FakeResolver(default=ResolverHTTPError(403, "forbidden"))
        engine = build_engine(seeded_store, tenants, resolver, sleep, error_cap=10)

        stats = await engine.enrich(ids)

        assert stats.failed == 15
        assert len(stats.errors) == 10

    @pytest.mark.asyncio
    async def test_enrich_pending_for_tenant(self, seeded_store, tenants, sleep):
        await add_pending(seeded_store, "cid-active", 2)
        await add_pending(seeded_store, "cid-notes", 3)
        resolver = FakeResolver()
        engine = build_engine(seeded_store, tenants, resolver, sleep)

        stats = await engine.enrich_pending_for_tenant("cid-notes")

        assert stats.total == 3
        assert stats.enriched == 3
        assert len(resolver.calls) == 3

    def test_invalid_settings_rejected(self, store, tenants):
        with pytest.raises(ValueError):
            EnrichmentEngine(store, FakeResolver(), tenants, concurrency=0)

